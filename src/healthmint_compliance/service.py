"""Caller-facing compliance API.

``ComplianceService`` is an explicit object owning the detector, sanitizer,
verifier, cryptographer, consent ledger and audit pipeline. Construct one
per application (``ComplianceService.from_config``) and pass it to callers.

Error policy: detection, sanitization and verification return fail-closed
safe defaults instead of raising. Fatal errors (validation, encryption)
propagate, and any other failure inside encrypt or decrypt is re-raised as
an encryption error. Recoverable delivery errors reaching the audit or
consent boundary become failed result objects.
"""

import logging
from pathlib import Path
from typing import Any

import asyncpg

from .audit.models import AuditLogEntry, DeliveryResult, DeliveryState
from .audit.pipeline import AuditPipeline
from .config import ComplianceConfig
from .consent.ledger import ConsentLedger, ConsentRequester
from .consent.models import ConsentRecord, ConsentResult, ConsentType, DataAccessDecision
from .errors import DEFAULT_ERROR_POLICY, DecryptionError, EncryptionError, ErrorPolicy
from .notifications import LoggingNotifier, Notifier
from .phi.deidentification import DeIdentificationReport, DeIdentificationVerifier
from .phi.detector import ContainsPHIResult, PHIDetector
from .phi.encryption import FieldCryptographer, KeyManager
from .phi.patterns import PHIPatternRegistry
from .phi.sanitizer import DataSanitizer, SanitizeMode, SanitizeOptions
from .secrets import get_installation_seed, get_server_secret
from .storage.buffer import LocalBuffer, MemoryBuffer
from .transport.base import Transport
from .transport.http import HttpTransport
from .transport.postgres import PostgresTransport

logger = logging.getLogger(__name__)


class ComplianceService:
    def __init__(
        self,
        config: ComplianceConfig | None = None,
        transport: Transport | None = None,
        buffer: LocalBuffer | None = None,
        registry: PHIPatternRegistry | None = None,
        cryptographer: FieldCryptographer | None = None,
        notifier: Notifier | None = None,
        requester: ConsentRequester | None = None,
        policy: ErrorPolicy = DEFAULT_ERROR_POLICY,
    ):
        self.config = config or ComplianceConfig()
        self.policy = policy
        self.transport = transport
        self.buffer = buffer or MemoryBuffer()
        self.notifier = notifier or LoggingNotifier()

        self.detector = PHIDetector(registry or self._registry())
        self.sanitizer = DataSanitizer(detector=self.detector)
        self.verifier = DeIdentificationVerifier(self.detector)
        self.cryptographer = cryptographer or FieldCryptographer(self._key_manager())

        self.pipeline = AuditPipeline(
            transport,
            self.buffer,
            config=self.config.audit,
            sanitizer=self.sanitizer,
            notifier=self.notifier,
        )
        self.consent = ConsentLedger(
            transport,
            self.buffer,
            pipeline=self.pipeline,
            config=self.config.consent,
            sanitizer=self.sanitizer,
            notifier=self.notifier,
            requester=requester,
            delivery_timeout=self.config.audit.delivery_timeout,
        )

    def _registry(self) -> PHIPatternRegistry:
        registry = PHIPatternRegistry()
        if self.config.custom_patterns_path is not None:
            count = registry.load_custom_patterns(self.config.custom_patterns_path)
            logger.info("Loaded %d custom PHI patterns", count)
        return registry

    def _key_manager(self) -> KeyManager:
        enc = self.config.encryption
        return KeyManager(
            installation_seed=enc.installation_seed or get_installation_seed(),
            server_secret=get_server_secret(env_var=enc.secret_env_var),
            key_env_var=enc.key_env_var,
            key_file=enc.key_file,
        )

    @classmethod
    def from_config(
        cls,
        config: ComplianceConfig,
        buffer: LocalBuffer | None = None,
        pool: asyncpg.Pool | None = None,
        **kwargs: Any,
    ) -> "ComplianceService":
        """Build a service with the transport the configuration describes.

        A database pool takes precedence over ``transport.base_url``.
        """
        transport: Transport | None = None
        if pool is not None:
            transport = PostgresTransport(
                pool,
                audit_path=config.audit.log_path,
                batch_path=config.audit.batch_path,
                consent_path=config.consent.consent_path,
            )
        elif config.transport.base_url:
            transport = HttpTransport(config.transport.base_url, timeout=config.transport.timeout)
        else:
            logger.warning("No transport configured; audit and consent records stay local")

        return cls(config, transport=transport, buffer=buffer, **kwargs)

    # --- PHI, fail closed ---------------------------------------------------

    def contains_phi(self, text: object) -> ContainsPHIResult:
        try:
            return self.detector.contains_phi(text)
        except Exception as e:
            if not self.policy.returns_safe_default("contains_phi"):
                raise
            logger.error("PHI detection failed: %s", e)
            return ContainsPHIResult(has_phi=False, types=[])

    def sanitize(
        self,
        data: Any,
        mode: SanitizeMode | str = SanitizeMode.DEFAULT,
        include_fields: list[str] | None = None,
        exclude_fields: list[str] | None = None,
    ) -> Any:
        """Sanitized copy of ``data``, or None if sanitization fails."""
        try:
            options = SanitizeOptions.build(mode, include_fields, exclude_fields)
            return self.sanitizer.sanitize(data, options)
        except Exception as e:
            if not self.policy.returns_safe_default("sanitize"):
                raise
            logger.error("Sanitization failed: %s", e)
            return None

    def verify_deidentification(self, data: Any) -> DeIdentificationReport:
        try:
            return self.verifier.verify(data)
        except Exception as e:
            if not self.policy.returns_safe_default("verify_deidentification"):
                raise
            logger.error("De-identification verification failed: %s", e)
            return DeIdentificationReport.failed_closed()

    # --- encryption, errors propagate ---------------------------------------

    def encrypt(self, value: Any, key: bytes | str | None = None) -> str:
        try:
            return self.cryptographer.encrypt(value, key)
        except Exception as e:
            if self.policy.is_fatal(e):
                raise
            raise EncryptionError(f"Encryption failed: {e}") from e

    def decrypt(self, ciphertext: str, key: bytes | str | None = None) -> Any:
        try:
            return self.cryptographer.decrypt(ciphertext, key)
        except Exception as e:
            if self.policy.is_fatal(e):
                raise
            raise DecryptionError(f"Decryption failed: {e}") from e

    # --- audit and consent --------------------------------------------------

    async def create_audit_log(
        self, action: str, details: dict[str, Any] | None = None, severity: str = "info"
    ) -> DeliveryResult:
        try:
            return await self.pipeline.create_audit_log(action, details, severity)
        except Exception as e:
            if not self.policy.is_recoverable(e):
                raise
            logger.warning("Audit log %s not recorded: %s", action, e)
            return DeliveryResult(success=False, state=DeliveryState.CREATED, error=str(e))

    async def record_consent(
        self,
        consent_type: ConsentType | str,
        granted: bool,
        details: dict[str, Any] | None = None,
        purpose: str | None = None,
    ) -> ConsentResult:
        try:
            return await self.consent.record_consent(consent_type, granted, details, purpose)
        except Exception as e:
            if not self.policy.is_recoverable(e):
                raise
            logger.warning("Consent for %s not recorded: %s", consent_type, e)
            return ConsentResult(success=False, error=str(e))

    async def has_consent(self, consent_type: ConsentType | str) -> bool:
        return await self.consent.has_consent(consent_type)

    async def get_consent_history(
        self, consent_type: ConsentType | str | None = None
    ) -> list[ConsentRecord]:
        return await self.consent.get_consent_history(consent_type)

    async def verify_consent(
        self, consent_type: ConsentType | str, purpose: str | None = None
    ) -> bool:
        return await self.consent.verify_consent(consent_type, purpose)

    async def validate_data_access(
        self, data_type: str, purpose: str | None = None
    ) -> DataAccessDecision:
        return await self.consent.validate_data_access(data_type, purpose)

    async def pending_audit_entries(self) -> list[AuditLogEntry]:
        return await self.pipeline.local_log()

    async def start(self) -> None:
        await self.pipeline.start()

    async def close(self) -> None:
        """Stop background work, flush queued entries and release the transport."""
        await self.pipeline.stop()
        if self.transport is not None:
            await self.transport.close()


def default_buffer_dir() -> Path:
    return Path.home() / ".healthmint-compliance" / "buffer"
