"""Error taxonomy for the compliance engine.

Every error carries a stable ``code`` so callers (and the audit trail) can
tell failures apart without parsing messages. ``ErrorPolicy`` states which
errors propagate to the caller and which are absorbed into result objects.
"""

from dataclasses import dataclass, field
from typing import Any


class ComplianceError(Exception):
    """Base class for compliance engine errors."""

    code = "COMPLIANCE_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(f"[{self.code}] {message}")


class ValidationError(ComplianceError):
    """Raised for malformed input (unknown consent type, bad field, bad mode)."""

    code = "VALIDATION_ERROR"


class InvalidConsentType(ValidationError):
    """Raised when a consent type is outside the fixed enumeration."""

    code = "INVALID_CONSENT_TYPE"

    def __init__(self, consent_type: object):
        super().__init__(
            f"Invalid consent type: {consent_type!r}",
            {"consent_type": str(consent_type)},
        )


class EncryptionError(ComplianceError):
    """Raised when a value cannot be encrypted or no key material is available."""

    code = "ENCRYPTION_ERROR"


class DecryptionError(EncryptionError):
    """Raised when ciphertext cannot be authenticated with the given key."""

    code = "DECRYPTION_ERROR"


class DeliveryError(ComplianceError):
    """Raised by transports when a record could not be delivered."""

    code = "DELIVERY_ERROR"


class PermanentAbandon(DeliveryError):
    """Retry ceiling exceeded. Reported and logged, never raised to callers."""

    code = "PERMANENT_ABANDON"

    def __init__(self, entry_id: str, attempts: int):
        super().__init__(
            f"Audit entry {entry_id} abandoned after {attempts} delivery attempts",
            {"entry_id": entry_id, "attempts": attempts},
        )


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""


class CredentialInConfigError(Exception):
    """Raised when credentials are detected in configuration files."""


@dataclass(frozen=True)
class ErrorPolicy:
    """Which errors are fatal to the caller and which are recoverable."""

    fatal: tuple[type[BaseException], ...] = (ValidationError, EncryptionError)
    recoverable: tuple[type[BaseException], ...] = (DeliveryError,)
    safe_default_operations: frozenset[str] = field(
        default_factory=lambda: frozenset({"sanitize", "contains_phi", "verify_deidentification"})
    )

    def is_fatal(self, error: BaseException) -> bool:
        return isinstance(error, self.fatal) and not isinstance(error, self.recoverable)

    def is_recoverable(self, error: BaseException) -> bool:
        return isinstance(error, self.recoverable)

    def returns_safe_default(self, operation: str) -> bool:
        return operation in self.safe_default_operations


DEFAULT_ERROR_POLICY = ErrorPolicy()
