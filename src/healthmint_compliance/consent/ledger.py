"""Per-subject, per-purpose consent tracking.

HIPAA Citation: 45 CFR 164.508 - Uses and disclosures for which an
authorization is required

The local buffer holds the latest decision per ``(subject, type)`` and an
append-only history. The local write is authoritative; remote persistence
is best effort and a failure there never rolls the local decision back.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from ..audit.context import get_audit_context
from ..audit.pipeline import AuditPipeline
from ..config import ConsentConfig
from ..errors import DeliveryError, ValidationError
from ..notifications import LoggingNotifier, Notifier
from ..phi.sanitizer import DataSanitizer
from ..storage.buffer import LocalBuffer
from ..transport.base import Transport
from .models import (
    SPECIAL_CATEGORIES,
    ConsentRecord,
    ConsentResult,
    ConsentType,
    DataAccessDecision,
)

logger = logging.getLogger(__name__)

STATE_KEY_PREFIX = "consent.state."
HISTORY_KEY_PREFIX = "consent.history."

RECORD_FAILED_NOTIFICATION = "Failed to record consent"
REQUEST_FAILED_NOTIFICATION = "Failed to request consent"

ConsentRequester = Callable[[ConsentType, str | None], Awaitable[bool]]


class ConsentLedger:
    """Records consent decisions and answers consent queries."""

    def __init__(
        self,
        transport: Transport | None,
        buffer: LocalBuffer,
        pipeline: AuditPipeline | None = None,
        config: ConsentConfig | None = None,
        sanitizer: DataSanitizer | None = None,
        notifier: Notifier | None = None,
        requester: ConsentRequester | None = None,
        delivery_timeout: float = 10.0,
    ):
        self._transport = transport
        self._buffer = buffer
        self._pipeline = pipeline
        self._config = config or ConsentConfig()
        self._sanitizer = sanitizer or DataSanitizer()
        self._notifier = notifier or LoggingNotifier()
        self._requester = requester
        self._delivery_timeout = delivery_timeout
        self._lock = asyncio.Lock()

    def resolve_subject(self, subject_id: str | None = None) -> str:
        if subject_id:
            return subject_id
        ctx = get_audit_context()
        if ctx.actor:
            return ctx.actor
        logger.warning(
            "No authenticated subject; using fallback subject id %r",
            self._config.fallback_subject_id,
        )
        return self._config.fallback_subject_id

    async def current_consent(
        self, consent_type: ConsentType | str, subject_id: str | None = None
    ) -> ConsentRecord | None:
        consent_type = ConsentType.parse(consent_type)
        subject = self.resolve_subject(subject_id)
        state = await self._buffer.get(STATE_KEY_PREFIX + subject, {})
        raw = state.get(consent_type.value)
        return ConsentRecord.from_dict(raw) if raw else None

    async def has_consent(
        self, consent_type: ConsentType | str, subject_id: str | None = None
    ) -> bool:
        record = await self.current_consent(consent_type, subject_id)
        return record is not None and record.granted

    async def get_consent_history(
        self,
        consent_type: ConsentType | str | None = None,
        subject_id: str | None = None,
    ) -> list[ConsentRecord]:
        """All decisions of the subject in the order they were recorded."""
        wanted = ConsentType.parse(consent_type) if consent_type is not None else None
        subject = self.resolve_subject(subject_id)
        history = await self._buffer.get(HISTORY_KEY_PREFIX + subject, [])
        records = [ConsentRecord.from_dict(raw) for raw in history]
        if wanted is not None:
            records = [r for r in records if r.consent_type is wanted]
        return records

    async def record_consent(
        self,
        consent_type: ConsentType | str,
        granted: bool,
        details: dict[str, Any] | None = None,
        purpose: str | None = None,
        subject_id: str | None = None,
    ) -> ConsentResult:
        """Record a grant or revocation.

        Raises:
            InvalidConsentType: If ``consent_type`` is not a known type.
            ValidationError: If ``granted`` is not a bool.
        """
        consent_type = ConsentType.parse(consent_type)
        if not isinstance(granted, bool):
            raise ValidationError(f"granted must be a bool, got {type(granted).__name__}")

        record = ConsentRecord(
            subject_id=self.resolve_subject(subject_id),
            consent_type=consent_type,
            granted=granted,
            purpose=purpose,
            details=self._sanitizer.scrub(details or {}),
        )

        result = ConsentResult(success=True, record=record)
        try:
            await self._store_locally(record)
        except Exception as e:
            logger.error("Failed to store consent locally: %s", e)
            result.success = False
            result.error = str(e)

        try:
            await self._persist_remotely(record)
            result.persisted_remotely = True
        except Exception as e:
            logger.warning(
                "Remote persistence of %s consent failed: %s", consent_type.value, e
            )
            result.error = result.error or str(e)

        if not result.success or not result.persisted_remotely:
            self._notify(RECORD_FAILED_NOTIFICATION)

        await self._audit(
            "CONSENT_GRANTED" if granted else "CONSENT_REVOKED",
            {
                "consentType": consent_type.value,
                "granted": granted,
                "purpose": purpose,
                "persistedRemotely": result.persisted_remotely,
            },
        )
        return result

    async def _store_locally(self, record: ConsentRecord) -> None:
        state_key = STATE_KEY_PREFIX + record.subject_id
        history_key = HISTORY_KEY_PREFIX + record.subject_id
        async with self._lock:
            state = await self._buffer.get(state_key, {})
            state[record.consent_type.value] = record.to_dict()
            await self._buffer.set(state_key, state)

            history = await self._buffer.get(history_key, [])
            history.append(record.to_dict())
            await self._buffer.set(history_key, history)

    async def _persist_remotely(self, record: ConsentRecord) -> None:
        if self._transport is None:
            raise DeliveryError("No transport configured")
        try:
            await asyncio.wait_for(
                self._transport.post(self._config.consent_path, record.to_dict()),
                timeout=self._delivery_timeout,
            )
        except TimeoutError as e:
            raise DeliveryError("Consent delivery timed out") from e

    async def verify_consent(
        self,
        consent_type: ConsentType | str,
        purpose: str | None = None,
        subject_id: str | None = None,
    ) -> bool:
        """Current decision, optionally subject to a freshness window.

        Without a valid consent and with ``auto_request`` configured, the
        consent-request flow runs and its decision is returned.
        """
        consent_type = ConsentType.parse(consent_type)
        await self._audit(
            "CONSENT_VERIFICATION", {"consentType": consent_type.value, "purpose": purpose}
        )

        record = await self.current_consent(consent_type, subject_id)
        granted = record is not None and record.granted
        if granted and self._config.max_age_days is not None:
            if record.age_days() > self._config.max_age_days:
                logger.info("Consent %s has expired", consent_type.value)
                granted = False

        if not granted and self._config.auto_request:
            return await self.request_consent(consent_type, purpose, subject_id)
        return granted

    async def request_consent(
        self,
        consent_type: ConsentType | str,
        purpose: str | None = None,
        subject_id: str | None = None,
    ) -> bool:
        """Ask the subject through the configured requester and record the answer."""
        consent_type = ConsentType.parse(consent_type)
        await self._audit(
            "CONSENT_REQUESTED", {"consentType": consent_type.value, "purpose": purpose}
        )

        if self._requester is None:
            logger.warning("No consent requester configured; treating as not granted")
            return False

        try:
            decision = bool(await self._requester(consent_type, purpose))
        except Exception as e:
            logger.error("Consent request for %s failed: %s", consent_type.value, e)
            self._notify(REQUEST_FAILED_NOTIFICATION)
            return False

        await self.record_consent(
            consent_type,
            decision,
            details={"requested": True},
            purpose=purpose,
            subject_id=subject_id,
        )
        return decision

    async def validate_data_access(
        self,
        data_type: str,
        purpose: str | None = None,
        subject_id: str | None = None,
    ) -> DataAccessDecision:
        if data_type not in SPECIAL_CATEGORIES:
            return DataAccessDecision(is_permitted=True)

        if await self.has_consent(ConsentType.DATA_SHARING, subject_id):
            return DataAccessDecision(is_permitted=True)

        logger.info("Access to %s data for %r requires consent", data_type, purpose)
        return DataAccessDecision(
            is_permitted=False,
            requires_consent=True,
            consent_type=ConsentType.DATA_SHARING,
        )

    async def _audit(self, action: str, details: dict[str, Any]) -> None:
        if self._pipeline is None:
            return
        await self._pipeline.create_audit_log(action, details)

    def _notify(self, message: str) -> None:
        try:
            self._notifier.notify(message, "error")
        except Exception as e:
            logger.error("Notifier failed: %s", e)
