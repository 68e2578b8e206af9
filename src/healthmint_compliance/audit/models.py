"""Audit log entry and delivery result models."""

import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from ..phi.sanitizer import mask_ip_address

SENSITIVE_ACTIONS: frozenset[str] = frozenset(
    {
        "PHI_ACCESS",
        "PHI_DOWNLOAD",
        "PHI_EXPORT",
        "CONSENT_GRANTED",
        "CONSENT_REVOKED",
        "CONSENT_CHANGE",
        "EMERGENCY_ACCESS",
        "AUTHORIZATION_FAILURE",
        "BREACH_ATTEMPT",
    }
)

VALID_SEVERITIES = ("info", "warning", "error", "critical")


class DeliveryState(Enum):
    CREATED = "created"
    DELIVERED = "delivered"
    QUEUED = "queued"
    LOCAL_FALLBACK = "local_fallback"
    RETRY_QUEUED = "retry_queued"
    ABANDONED = "abandoned"


def _utc_now() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(frozen=True)
class AuditLogEntry:
    """Immutable record of a compliance-relevant action."""

    action: str
    details: dict[str, Any] = field(default_factory=dict)
    actor: str | None = None
    ip: str | None = None
    user_agent: str | None = None
    severity: str = "info"
    timestamp: str = field(default_factory=_utc_now)
    entry_id: str = field(default_factory=lambda: str(uuid4()))

    def __post_init__(self) -> None:
        # Callers keep their own reference to details; the entry holds a private copy.
        object.__setattr__(self, "details", copy.deepcopy(dict(self.details)))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.entry_id,
            "action": self.action,
            "timestamp": self.timestamp,
            "actor": self.actor,
            "ip": self.ip,
            "userAgent": self.user_agent,
            "severity": self.severity,
            "details": copy.deepcopy(self.details),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuditLogEntry":
        return cls(
            action=data["action"],
            details=data.get("details") or {},
            actor=data.get("actor"),
            ip=data.get("ip"),
            user_agent=data.get("userAgent"),
            severity=data.get("severity", "info"),
            timestamp=data["timestamp"],
            entry_id=data["id"],
        )


@dataclass
class RetryQueueEntry:
    entry: AuditLogEntry
    attempts: int = 1
    last_attempt: str = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry": self.entry.to_dict(),
            "attempts": self.attempts,
            "lastAttempt": self.last_attempt,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RetryQueueEntry":
        return cls(
            entry=AuditLogEntry.from_dict(data["entry"]),
            attempts=int(data.get("attempts", 1)),
            last_attempt=data.get("lastAttempt") or _utc_now(),
        )


@dataclass
class DeliveryResult:
    """Outcome of ``create_audit_log``. Never raised, always returned."""

    success: bool
    state: DeliveryState
    entry_id: str | None = None
    stored: bool = False
    queued: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"success": self.success}
        if self.stored:
            result["stored"] = True
        if self.queued:
            result["queued"] = True
        if self.error:
            result["error"] = self.error
        return result


@dataclass
class RetryReport:
    attempted: int = 0
    delivered: int = 0
    failed: int = 0
    abandoned: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "attempted": self.attempted,
            "delivered": self.delivered,
            "failed": self.failed,
            "abandoned": self.abandoned,
            "skipped": self.skipped,
        }


def redact_audit_entries(entries: list[AuditLogEntry]) -> list[dict[str, Any]]:
    """Display form of entries for viewers without PHI privileges.

    IPv4 addresses keep their first two octets and details are reduced to
    ``action`` and ``timestamp``.
    """
    redacted = []
    for entry in entries:
        row = entry.to_dict()
        row["ip"] = mask_ip_address(entry.ip)
        row["details"] = {"action": entry.action, "timestamp": entry.timestamp}
        redacted.append(row)
    return redacted
