"""Best-effort user notifications for background compliance failures.

Notifications carry a single generic message; no per-field detail or PHI.
"""

import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def notify(self, message: str, level: str = "error") -> None: ...


class LoggingNotifier:
    """Default notifier: routes user-facing messages to the log."""

    def notify(self, message: str, level: str = "error") -> None:
        log_level = logging.getLevelName(level.upper())
        if not isinstance(log_level, int):
            log_level = logging.ERROR
        logger.log(log_level, "Notification: %s", message)

