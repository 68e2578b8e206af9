"""Field-aware sanitization of nested records.

HIPAA Reference: 164.514(b) - De-identification Standard

Keys are classified into a ``FieldKind`` through an explicit lookup table;
each mode maps kinds to transforms, falling back to the ``OTHER`` rule for
PHI fields without a dedicated transform. The input is never mutated.
"""

import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..errors import ValidationError
from .detector import PHIDetector
from .patterns import PHI_FIELDS

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"
EMAIL_MASK_WIDTH = 7

_REDACTION_TOKEN = re.compile(r"^\[REDACTED(?: [^\[\]]+)?\]$")
_SCRIPT_BLOCK = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_INLINE_HANDLER_DQ = re.compile(r"on\w+=\"[^\"]*\"")
_INLINE_HANDLER_SQ = re.compile(r"on\w+='[^']*'")
_IPV4 = re.compile(r"^(\d{1,3})\.(\d{1,3})\.\d{1,3}\.\d{1,3}$")


class SanitizeMode(Enum):
    DEFAULT = "default"
    REDACT = "redact"
    MASK = "mask"


class FieldKind(Enum):
    NAME = "name"
    EMAIL = "email"
    PHONE = "phone"
    SSN = "ssn"
    ADDRESS = "address"
    ZIP = "zip"
    DATE_OF_BIRTH = "date_of_birth"
    AGE = "age"
    RECORD_NUMBER = "record_number"
    CLINICAL = "clinical"
    OTHER = "other"


FIELD_KINDS: dict[str, FieldKind] = {
    "name": FieldKind.NAME,
    "firstName": FieldKind.NAME,
    "lastName": FieldKind.NAME,
    "fullName": FieldKind.NAME,
    "email": FieldKind.EMAIL,
    "phone": FieldKind.PHONE,
    "phoneNumber": FieldKind.PHONE,
    "ssn": FieldKind.SSN,
    "socialSecurityNumber": FieldKind.SSN,
    "address": FieldKind.ADDRESS,
    "zip": FieldKind.ZIP,
    "zipCode": FieldKind.ZIP,
    "dob": FieldKind.DATE_OF_BIRTH,
    "dateOfBirth": FieldKind.DATE_OF_BIRTH,
    "age": FieldKind.AGE,
    "medicalRecordNumber": FieldKind.RECORD_NUMBER,
    "mrn": FieldKind.RECORD_NUMBER,
    "insuranceNumber": FieldKind.RECORD_NUMBER,
    "diagnosis": FieldKind.CLINICAL,
    "medication": FieldKind.CLINICAL,
    "treatment": FieldKind.CLINICAL,
    "labResults": FieldKind.CLINICAL,
}


def field_kind(field_name: str) -> FieldKind:
    return FIELD_KINDS.get(field_name, FieldKind.OTHER)


@dataclass
class SanitizeOptions:
    mode: SanitizeMode = SanitizeMode.DEFAULT
    include_fields: frozenset[str] | None = None
    exclude_fields: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def build(
        cls,
        mode: "SanitizeMode | str" = SanitizeMode.DEFAULT,
        include_fields: Iterable[str] | None = None,
        exclude_fields: Iterable[str] | None = None,
    ) -> "SanitizeOptions":
        if isinstance(mode, str):
            try:
                mode = SanitizeMode(mode)
            except ValueError as e:
                raise ValidationError(f"Unknown sanitize mode: {mode!r}") from e
        return cls(
            mode=mode,
            include_fields=frozenset(include_fields) if include_fields is not None else None,
            exclude_fields=frozenset(exclude_fields or ()),
        )


def is_redaction_token(value: Any) -> bool:
    return isinstance(value, str) and bool(_REDACTION_TOKEN.match(value))


# --- default-mode transforms ---------------------------------------------


def generalize_age(value: Any) -> Any:
    """Ages of 90 and over collapse into a single "90+" bucket."""
    try:
        age = float(value)
    except (TypeError, ValueError):
        return value
    if age >= 90:
        return "90+"
    return value


def truncate_zip(value: Any) -> Any:
    if value is None:
        return None
    digits = re.sub(r"\D", "", str(value))
    if len(digits) < 3:
        return "*****"
    return digits[:3] + "**"


def normalize_email(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower()
    return value


def year_only(value: Any) -> Any:
    if not isinstance(value, str):
        return REDACTED if value is not None else None
    match = re.search(r"\b(19|20)\d{2}\b", value)
    return match.group(0) if match else REDACTED


def redact_default(value: Any) -> Any:
    if isinstance(value, str):
        return REDACTED
    return None


# --- mask-mode transforms --------------------------------------------------


def mask_email(value: Any) -> Any:
    if not isinstance(value, str) or "@" not in value:
        return mask_default(value)
    username, _, domain = value.partition("@")
    if not username:
        return "*" * EMAIL_MASK_WIDTH + "@" + domain
    last = username[-1] if len(username) > 1 else ""
    return username[0] + "*" * EMAIL_MASK_WIDTH + last + "@" + domain


def mask_ssn(value: Any) -> Any:
    digits = re.sub(r"\D", "", str(value)) if value is not None else ""
    if len(digits) < 4:
        return "***-**-****"
    return "***-**-" + digits[-4:]


def mask_name(value: Any) -> Any:
    if not isinstance(value, str) or not value:
        return mask_default(value)
    return value[0] + "*" * (len(value) - 1)


def mask_phone(value: Any) -> Any:
    if not isinstance(value, str):
        return mask_default(value)
    positions = [i for i, ch in enumerate(value) if ch.isdigit()]
    if len(positions) < 4:
        return "*" * len(value)
    start = (len(positions) - 4) // 2
    hidden = set(positions[start : start + 4])
    return "".join("*" if i in hidden else ch for i, ch in enumerate(value))


def mask_default(value: Any) -> Any:
    if isinstance(value, str):
        if len(value) > 2:
            return value[0] + "*" * (len(value) - 2) + value[-1]
        return "*" * len(value)
    return None


Transform = Callable[[Any], Any]

DEFAULT_RULES: dict[FieldKind, Transform] = {
    FieldKind.AGE: generalize_age,
    FieldKind.ZIP: truncate_zip,
    FieldKind.EMAIL: normalize_email,
    FieldKind.DATE_OF_BIRTH: year_only,
    FieldKind.OTHER: redact_default,
}

MASK_RULES: dict[FieldKind, Transform] = {
    FieldKind.EMAIL: mask_email,
    FieldKind.SSN: mask_ssn,
    FieldKind.NAME: mask_name,
    FieldKind.PHONE: mask_phone,
    FieldKind.OTHER: mask_default,
}


def _redact_rule(field_name: str) -> Transform:
    token = f"[REDACTED {field_name.upper()}]"

    def redact(value: Any) -> Any:
        return token if isinstance(value, str) else None

    return redact


def sanitize_input_value(value: Any) -> Any:
    """Strip script blocks and inline event handlers from user input strings."""
    if isinstance(value, str):
        value = _SCRIPT_BLOCK.sub("", value)
        value = _INLINE_HANDLER_DQ.sub("", value)
        value = _INLINE_HANDLER_SQ.sub("", value)
    return value


def mask_ip_address(ip: str | None) -> str | None:
    """Keep the first two IPv4 octets: ``10.1.2.3`` -> ``10.1.*.*``."""
    if not ip:
        return ip
    match = _IPV4.match(ip)
    if match:
        return f"{match.group(1)}.{match.group(2)}.*.*"
    return ip


class DataSanitizer:
    """Applies mode-specific transforms to PHI fields of arbitrary records."""

    def __init__(
        self,
        phi_fields: frozenset[str] = PHI_FIELDS,
        detector: PHIDetector | None = None,
    ):
        self._phi_fields = phi_fields
        self._detector = detector or PHIDetector()

    def is_phi_field(self, field_name: str) -> bool:
        return field_name in self._phi_fields

    def sanitize(self, data: Any, options: SanitizeOptions | None = None) -> Any:
        """Return a sanitized copy of ``data``."""
        options = options or SanitizeOptions()
        return self._walk(data, options, "")

    def scrub(self, data: Any, preserve_keys: Iterable[str] = ()) -> Any:
        """Redact PHI fields and mask PHI embedded in any remaining free text.

        Used for records leaving the process (audit details, consent details).
        Values under ``preserve_keys`` are identifiers rather than free text
        and are not masked.
        """
        redacted = self.sanitize(data, SanitizeOptions(mode=SanitizeMode.REDACT))
        return self._mask_free_text(redacted, frozenset(preserve_keys))

    def _mask_free_text(self, data: Any, preserve_keys: frozenset[str]) -> Any:
        if isinstance(data, list):
            return [self._mask_free_text(item, preserve_keys) for item in data]
        if isinstance(data, dict):
            return {
                key: value if key in preserve_keys else self._mask_free_text(value, preserve_keys)
                for key, value in data.items()
            }
        if isinstance(data, str) and not is_redaction_token(data):
            return self._detector.mask_phi(data)
        return data

    def _walk(self, data: Any, options: SanitizeOptions, path: str) -> Any:
        if isinstance(data, list):
            return [self._walk(item, options, path) for item in data]
        if not isinstance(data, dict):
            return data

        result: dict[str, Any] = {}
        for key, value in data.items():
            key_str = str(key)
            child_path = f"{path}.{key_str}" if path else key_str
            if key_str in options.exclude_fields or child_path in options.exclude_fields:
                continue

            if self._should_transform(key_str, options):
                result[key] = self._transform(key_str, value, options.mode)
            elif isinstance(value, dict | list):
                result[key] = self._walk(value, options, child_path)
            else:
                result[key] = value
        return result

    def _should_transform(self, field_name: str, options: SanitizeOptions) -> bool:
        if not self.is_phi_field(field_name):
            return False
        if options.include_fields is not None and field_name not in options.include_fields:
            return False
        return True

    def _transform(self, field_name: str, value: Any, mode: SanitizeMode) -> Any:
        if value is None or is_redaction_token(value):
            return value

        if mode is SanitizeMode.REDACT:
            return _redact_rule(field_name)(value)

        kind = field_kind(field_name)
        rules = MASK_RULES if mode is SanitizeMode.MASK else DEFAULT_RULES
        return self._apply_rule(rules.get(kind, rules[FieldKind.OTHER]), value)

    def _apply_rule(self, rule: Transform, value: Any) -> Any:
        """Apply a scalar rule to every leaf of a nested PHI value."""
        if isinstance(value, dict):
            return {key: self._apply_rule(rule, item) for key, item in value.items()}
        if isinstance(value, list):
            return [self._apply_rule(rule, item) for item in value]
        if value is None or is_redaction_token(value):
            return value
        return rule(value)
