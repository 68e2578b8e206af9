"""PHI (Protected Health Information) handling module.

HIPAA Reference: 164.514(b) - De-identification Standard

Pattern-based PHI detection, field-aware sanitization, Safe Harbor
verification and field-level encryption.
"""

from .patterns import PHIPattern, PHIPatternRegistry
from .detector import ContainsPHIResult, PHIDetection, PHIDetector, contains_phi
from .sanitizer import (
    DataSanitizer,
    FieldKind,
    SanitizeMode,
    SanitizeOptions,
    mask_ip_address,
    sanitize_input_value,
)
from .deidentification import DeIdentificationReport, DeIdentificationVerifier, Issue, IssueType
from .encryption import (
    EncryptedField,
    FieldCryptographer,
    KeyManager,
    KeyRotator,
    KeySource,
    content_hash,
    derive_key,
)

__all__ = [
    "ContainsPHIResult",
    "DataSanitizer",
    "DeIdentificationReport",
    "DeIdentificationVerifier",
    "EncryptedField",
    "FieldCryptographer",
    "FieldKind",
    "Issue",
    "IssueType",
    "KeyManager",
    "KeyRotator",
    "KeySource",
    "PHIDetection",
    "PHIDetector",
    "PHIPattern",
    "PHIPatternRegistry",
    "SanitizeMode",
    "SanitizeOptions",
    "contains_phi",
    "content_hash",
    "derive_key",
    "mask_ip_address",
    "sanitize_input_value",
]
