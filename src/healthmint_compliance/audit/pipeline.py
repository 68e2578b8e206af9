"""Tiered audit delivery with local fallback and bounded retry.

HIPAA Citation: 45 CFR 164.312(b) - Audit Controls

Sensitive actions are delivered immediately; everything else is batched.
Failed deliveries are kept in the local log and in a bounded retry queue.
Sensitive entries from actors without credentials are stored locally and
sent by the next retry pass that runs with credentials. Entries that keep
failing past ``max_attempts`` are abandoned: removed from the retry queue
but left in the local log for manual recovery.
Delivery problems never propagate to callers; ``create_audit_log``
returns a ``DeliveryResult`` instead.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import Any

from ..config import AuditConfig
from ..errors import DeliveryError, PermanentAbandon, ValidationError
from ..notifications import LoggingNotifier, Notifier
from ..phi.sanitizer import DataSanitizer
from ..storage.buffer import LocalBuffer
from ..transport.base import Transport
from .context import get_audit_context
from .models import (
    SENSITIVE_ACTIONS,
    VALID_SEVERITIES,
    AuditLogEntry,
    DeliveryResult,
    DeliveryState,
    RetryQueueEntry,
    RetryReport,
)
from .queue import PersistentQueue

logger = logging.getLogger(__name__)

LOCAL_LOG_KEY = "audit.local_log"
BATCH_QUEUE_KEY = "audit.batch_queue"
RETRY_QUEUE_KEY = "audit.retry_queue"
ABANDONED_KEY = "audit.abandoned"
FALLBACK_QUEUE_KEY = "audit.fallback_queue"

# Detail keys written by the pipeline helpers and the consent ledger. They
# hold record identifiers, not free text, so PHI masking skips them.
STRUCTURAL_DETAIL_KEYS = frozenset({"action", "consentType", "dataId", "fieldPath", "phase"})

FAILURE_NOTIFICATION = "Audit logging is temporarily unavailable; entries are stored locally"


def _entry_id(item: dict[str, Any]) -> str:
    return item["id"]


def _retry_entry_id(item: dict[str, Any]) -> str:
    return item["entry"]["id"]


class AuditPipeline:
    """Routes audit entries to the transport, the batch queue or the local log."""

    def __init__(
        self,
        transport: Transport | None,
        buffer: LocalBuffer,
        config: AuditConfig | None = None,
        sanitizer: DataSanitizer | None = None,
        notifier: Notifier | None = None,
    ):
        self._transport = transport
        self._buffer = buffer
        self._config = config or AuditConfig()
        self._sanitizer = sanitizer or DataSanitizer()
        self._notifier = notifier or LoggingNotifier()
        self._sensitive_actions = SENSITIVE_ACTIONS | frozenset(self._config.sensitive_actions)

        self._local_log = PersistentQueue(buffer, LOCAL_LOG_KEY, self._config.max_local_log)
        self._batch_queue = PersistentQueue(buffer, BATCH_QUEUE_KEY, self._config.max_batch_queue)
        self._retry_queue = PersistentQueue(buffer, RETRY_QUEUE_KEY, self._config.max_retry_queue)
        self._abandoned = PersistentQueue(buffer, ABANDONED_KEY, self._config.max_local_log)
        self._fallback_queue = PersistentQueue(
            buffer, FALLBACK_QUEUE_KEY, self._config.max_local_log
        )

        self._flush_lock = asyncio.Lock()
        self._retry_lock = asyncio.Lock()
        self._failure_notified = False
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def config(self) -> AuditConfig:
        return self._config

    def is_sensitive(self, action: str) -> bool:
        return action in self._sensitive_actions

    # --- entry creation -----------------------------------------------------

    def build_entry(
        self,
        action: str,
        details: dict[str, Any] | None = None,
        severity: str = "info",
    ) -> AuditLogEntry:
        """Build an entry for the current actor with PHI scrubbed from details.

        Raises:
            ValidationError: If the action is empty or the severity unknown.
        """
        if not isinstance(action, str) or not action.strip():
            raise ValidationError("Audit action must be a non-empty string")
        if severity not in VALID_SEVERITIES:
            raise ValidationError(
                f"Invalid audit severity {severity!r}, expected one of {VALID_SEVERITIES}"
            )

        ctx = get_audit_context()
        return AuditLogEntry(
            action=action.strip(),
            details=self._sanitizer.scrub(details or {}, STRUCTURAL_DETAIL_KEYS),
            actor=ctx.actor,
            ip=ctx.client_ip,
            user_agent=ctx.user_agent,
            severity=severity,
        )

    async def create_audit_log(
        self,
        action: str,
        details: dict[str, Any] | None = None,
        severity: str = "info",
    ) -> DeliveryResult:
        entry = self.build_entry(action, details, severity)
        try:
            if self.is_sensitive(entry.action):
                return await self._send_immediate(entry)
            return await self._enqueue(entry)
        except Exception as e:
            logger.error("Audit pipeline failure for entry %s: %s", entry.entry_id, e)
            self._notify_failure()
            return DeliveryResult(
                success=False,
                state=DeliveryState.CREATED,
                entry_id=entry.entry_id,
                error=str(e),
            )

    async def log_data_access(
        self,
        data_id: str,
        purpose: str,
        action: str = "VIEW",
        metadata: dict[str, Any] | None = None,
    ) -> DeliveryResult:
        details = {"dataId": data_id, "purpose": purpose, "action": action}
        details.update(metadata or {})
        return await self.create_audit_log("DATA_ACCESS", details)

    async def log_field_access(self, data_id: str, field_path: str, purpose: str) -> DeliveryResult:
        return await self.create_audit_log(
            "FIELD_ACCESS",
            {"dataId": data_id, "fieldPath": field_path, "purpose": purpose},
        )

    @asynccontextmanager
    async def audit_operation(self, action: str, details: dict[str, Any] | None = None):
        """Log start and completion (or failure) of the enclosed block."""
        start_time = datetime.now(UTC)

        def phase_details(phase: str) -> dict[str, Any]:
            result = dict(details or {})
            result["phase"] = phase
            if phase != "started":
                result["duration_ms"] = int(
                    (datetime.now(UTC) - start_time).total_seconds() * 1000
                )
            return result

        await self.create_audit_log(action, phase_details("started"))
        try:
            yield
        except Exception as e:
            failed = phase_details("failed")
            failed["error"] = type(e).__name__
            await self.create_audit_log(action, failed, severity="error")
            raise
        await self.create_audit_log(action, phase_details("completed"))

    # --- delivery -----------------------------------------------------------

    async def _deliver(self, path: str, body: dict[str, Any]) -> None:
        if self._transport is None:
            raise DeliveryError("No transport configured")
        try:
            await asyncio.wait_for(
                self._transport.post(path, body), timeout=self._config.delivery_timeout
            )
        except TimeoutError as e:
            raise DeliveryError(
                f"Delivery to {path} timed out after {self._config.delivery_timeout}s"
            ) from e

    async def _send_immediate(self, entry: AuditLogEntry) -> DeliveryResult:
        if not get_audit_context().is_authenticated:
            logger.warning(
                "No credentials for sensitive action %s; storing entry %s locally",
                entry.action,
                entry.entry_id,
            )
            await self._append_local([entry])
            await self._fallback_queue.push(entry.to_dict())
            return DeliveryResult(
                success=True,
                state=DeliveryState.LOCAL_FALLBACK,
                entry_id=entry.entry_id,
                stored=True,
            )

        try:
            await self._deliver(self._config.log_path, entry.to_dict())
        except Exception as e:
            await self._record_failure([entry], e)
            return DeliveryResult(
                success=False,
                state=DeliveryState.RETRY_QUEUED,
                entry_id=entry.entry_id,
                stored=True,
                queued=True,
                error=str(e),
            )

        self._failure_notified = False
        logger.debug("Delivered sensitive audit entry %s", entry.entry_id)
        return DeliveryResult(success=True, state=DeliveryState.DELIVERED, entry_id=entry.entry_id)

    async def _enqueue(self, entry: AuditLogEntry) -> DeliveryResult:
        await self._batch_queue.push(entry.to_dict())
        if await self._batch_queue.length() >= self._config.batch_threshold:
            await self.flush()
        return DeliveryResult(
            success=True, state=DeliveryState.QUEUED, entry_id=entry.entry_id, queued=True
        )

    async def flush(self) -> int:
        """Deliver the whole batch queue. Returns the number of entries delivered.

        A failed flush leaves the entries queued for the next trigger.
        """
        async with self._flush_lock:
            items = await self._batch_queue.items()
            if not items:
                return 0

            try:
                await self._deliver(self._config.batch_path, {"entries": items})
            except Exception as e:
                await self._record_failure([AuditLogEntry.from_dict(i) for i in items], e)
                return 0

            delivered = {_entry_id(i) for i in items}
            await self._batch_queue.remove_where(lambda i: _entry_id(i) in delivered)
            await self._retry_queue.remove_where(lambda r: _retry_entry_id(r) in delivered)
            self._failure_notified = False
            logger.info("Flushed %d audit entries", len(items))
            return len(items)

    async def _record_failure(self, entries: list[AuditLogEntry], error: Exception) -> None:
        logger.warning("Audit delivery failed for %d entries: %s", len(entries), error)
        await self._append_local(entries)

        retrying = {_retry_entry_id(r) for r in await self._retry_queue.items()}
        await self._retry_queue.extend(
            [
                RetryQueueEntry(entry=e, attempts=1).to_dict()
                for e in entries
                if e.entry_id not in retrying
            ]
        )
        self._notify_failure()

    async def _append_local(self, entries: list[AuditLogEntry]) -> None:
        def merge(items: list[dict[str, Any]]) -> list[dict[str, Any]]:
            present = {_entry_id(i) for i in items}
            return items + [e.to_dict() for e in entries if e.entry_id not in present]

        await self._local_log.update(merge)

    def _notify_failure(self) -> None:
        if self._failure_notified:
            return
        self._failure_notified = True
        try:
            self._notifier.notify(FAILURE_NOTIFICATION, "warning")
        except Exception as e:
            logger.error("Notifier failed: %s", e)

    # --- retry --------------------------------------------------------------

    def backoff_seconds(self, attempts: int) -> float:
        delay = self._config.retry_backoff_base * (2 ** max(attempts - 1, 0))
        return min(delay, self._config.retry_backoff_max)

    def _is_due(self, record: RetryQueueEntry, now: datetime) -> bool:
        try:
            last = datetime.fromisoformat(record.last_attempt)
        except ValueError:
            return True
        return last + timedelta(seconds=self.backoff_seconds(record.attempts)) <= now

    async def retry_failed(self, force: bool = False) -> RetryReport:
        """Run one retry pass over the retry queue.

        Entries are skipped until their backoff has elapsed unless ``force``
        is set. A failure increments ``attempts``; an entry whose attempts
        exceed ``max_attempts`` is abandoned.

        Entries stored locally for lack of credentials are sent first, once
        the current context is authenticated. A failed send moves them to
        the retry queue for the next pass, under the same attempt ceiling.
        """
        report = RetryReport()
        async with self._retry_lock:
            queued = await self._retry_queue.items()
            await self._redeliver_fallback(report)

            now = datetime.now(UTC)
            for raw in queued:
                record = RetryQueueEntry.from_dict(raw)
                entry_id = record.entry.entry_id

                # A concurrent flush may have delivered the entry already.
                if not await self._is_retrying(entry_id):
                    continue

                if record.attempts > self._config.max_attempts:
                    await self._abandon(record)
                    report.abandoned += 1
                    continue
                if not force and not self._is_due(record, now):
                    report.skipped += 1
                    continue

                report.attempted += 1
                try:
                    await self._deliver(self._config.log_path, record.entry.to_dict())
                except Exception as e:
                    if not await self._is_retrying(entry_id):
                        continue
                    record.attempts += 1
                    record.last_attempt = datetime.now(UTC).isoformat()
                    if record.attempts > self._config.max_attempts:
                        logger.debug("Final delivery attempt for %s failed: %s", entry_id, e)
                        await self._abandon(record)
                        report.abandoned += 1
                    else:
                        await self._replace_retry(record)
                        report.failed += 1
                    continue

                await self._retry_queue.remove_where(lambda r: _retry_entry_id(r) == entry_id)
                await self._batch_queue.remove_where(lambda i: _entry_id(i) == entry_id)
                report.delivered += 1

        if report.delivered:
            self._failure_notified = False
        if report.attempted or report.abandoned:
            logger.info(
                "Audit retry pass: %d delivered, %d failed, %d abandoned",
                report.delivered,
                report.failed,
                report.abandoned,
            )
        return report

    async def _is_retrying(self, entry_id: str) -> bool:
        return any(_retry_entry_id(r) == entry_id for r in await self._retry_queue.items())

    async def _redeliver_fallback(self, report: RetryReport) -> None:
        pending = await self._fallback_queue.items()
        if not pending:
            return
        if self._transport is None or not get_audit_context().is_authenticated:
            report.skipped += len(pending)
            return

        for raw in pending:
            entry = AuditLogEntry.from_dict(raw)
            entry_id = entry.entry_id
            report.attempted += 1
            try:
                await self._deliver(self._config.log_path, entry.to_dict())
            except Exception as e:
                await self._fallback_queue.remove_where(lambda i: _entry_id(i) == entry_id)
                await self._record_failure([entry], e)
                report.failed += 1
                continue
            await self._fallback_queue.remove_where(lambda i: _entry_id(i) == entry_id)
            report.delivered += 1

    async def _replace_retry(self, record: RetryQueueEntry) -> None:
        entry_id = record.entry.entry_id

        def replace(items: list[dict[str, Any]]) -> list[dict[str, Any]]:
            return [record.to_dict() if _retry_entry_id(i) == entry_id else i for i in items]

        await self._retry_queue.update(replace)

    async def _abandon(self, record: RetryQueueEntry) -> None:
        entry_id = record.entry.entry_id
        abandon = PermanentAbandon(entry_id, record.attempts)
        logger.error("%s", abandon)
        await self._retry_queue.remove_where(lambda r: _retry_entry_id(r) == entry_id)
        await self._batch_queue.remove_where(lambda i: _entry_id(i) == entry_id)
        await self._append_local([record.entry])
        await self._abandoned.push(record.to_dict())

    # --- inspection ---------------------------------------------------------

    async def local_log(self) -> list[AuditLogEntry]:
        return [AuditLogEntry.from_dict(i) for i in await self._local_log.items()]

    async def batch_queue(self) -> list[AuditLogEntry]:
        return [AuditLogEntry.from_dict(i) for i in await self._batch_queue.items()]

    async def retry_queue(self) -> list[RetryQueueEntry]:
        return [RetryQueueEntry.from_dict(i) for i in await self._retry_queue.items()]

    async def abandoned(self) -> list[RetryQueueEntry]:
        return [RetryQueueEntry.from_dict(i) for i in await self._abandoned.items()]

    async def fallback_queue(self) -> list[AuditLogEntry]:
        return [AuditLogEntry.from_dict(i) for i in await self._fallback_queue.items()]

    # --- background loop ----------------------------------------------------

    async def start(self) -> None:
        """Start the background flush and retry task."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())

    async def stop(self) -> None:
        """Stop the background task and flush remaining entries."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.flush()

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._config.retry_interval)
                await self.flush()
                await self.retry_failed()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in audit retry loop: %s", e)

