"""PHI pattern definitions and identifier field tables.

HIPAA Reference: 164.514(b)(2) - Safe Harbor identifiers

The pattern table drives free-text detection; the identifier field lists
drive field-name classification for the sanitizer and the de-identification
verifier. All tables are process-wide constants; a registry instance can be
extended with custom patterns without touching the built-ins.
"""

import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


@dataclass(frozen=True)
class PHIPattern:
    """A pattern for detecting PHI in free text."""

    name: str
    pattern: re.Pattern
    severity: str
    description: str
    false_positive_hints: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if self.severity not in ("critical", "high", "medium", "low"):
            raise ValueError(f"Invalid severity: {self.severity}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PHIPattern":
        flags = 0
        if data.get("case_insensitive", False):
            flags = re.IGNORECASE
        return cls(
            name=data["name"],
            pattern=re.compile(data["pattern"], flags),
            severity=data["severity"],
            description=data.get("description", ""),
            false_positive_hints=tuple(data.get("false_positive_hints", [])),
        )


BUILTIN_PATTERNS: tuple[PHIPattern, ...] = (
    PHIPattern(
        name="ssn",
        pattern=re.compile(r"\b\d{3}[-\s]\d{2}[-\s]\d{4}\b"),
        severity="critical",
        description="Social Security Number (XXX-XX-XXXX)",
    ),
    PHIPattern(
        name="email",
        pattern=re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
        severity="high",
        description="Email address",
    ),
    PHIPattern(
        name="phone",
        pattern=re.compile(r"(?:\+?1[-.\s]?)?(?:\(\d{3}\)|\b\d{3})[-.\s]?\d{3}[-.\s]?\d{4}\b"),
        severity="high",
        description="Phone number (US format)",
        false_positive_hints=("May match ten-digit account or order numbers",),
    ),
    PHIPattern(
        name="dob",
        pattern=re.compile(
            r"\b(?:0?[1-9]|1[0-2])[/-](?:0?[1-9]|[12]\d|3[01])[/-](?:\d{4}|\d{2})\b"
            r"|\b(?:19|20)\d{2}-(?:0[1-9]|1[0-2])-(?:0[1-9]|[12]\d|3[01])\b"
            r"|\b(?:dob|date[_\s]?of[_\s]?birth|birth[_\s]?date)\s*[:=]\s*\S+",
            re.IGNORECASE,
        ),
        severity="critical",
        description="Date of birth or calendar date",
        false_positive_hints=("Any calendar date matches, including visit or file dates",),
    ),
    PHIPattern(
        name="medicalRecordNumber",
        pattern=re.compile(
            r"\b(?:MRN|medical[_\s]?record(?:[_\s]?(?:number|no|num))?)\s*[:#=]?\s*[A-Z0-9-]{4,}\b",
            re.IGNORECASE,
        ),
        severity="critical",
        description="Medical record number",
    ),
    PHIPattern(
        name="zipCode",
        pattern=re.compile(r"\b\d{5}(?:-\d{4})?\b"),
        severity="medium",
        description="US ZIP code (five digits, optional +4)",
        false_positive_hints=("Any five-digit number matches",),
    ),
)

# Field-name substrings. Matching is case-insensitive and ignores
# separators, so "medical_record_number" and "medicalRecordNumber" agree.
DIRECT_IDENTIFIERS: tuple[str, ...] = (
    "name",
    "address",
    "street",
    "email",
    "phone",
    "fax",
    "ssn",
    "socialsecurity",
    "medicalrecordnumber",
    "mrn",
    "insurance",
    "healthplan",
    "account",
    "license",
    "certificate",
    "vehicle",
    "deviceid",
    "serialnumber",
    "url",
    "ipaddress",
    "biometric",
    "fingerprint",
    "photo",
)

INDIRECT_IDENTIFIERS: tuple[str, ...] = (
    "zip",
    "postal",
    "date",
    "dob",
    "birth",
    "age",
)

# Short indirect tokens only match whole words of a field name ("age" must
# not match "page" or "message"). Direct identifiers always match as
# substrings so that "patientssn" and "SSNumber" are caught.
WORD_MATCH_MAX_LENGTH = 3

# Exact (case-sensitive) keys the sanitizer treats as PHI fields.
PHI_FIELDS: frozenset[str] = frozenset(
    {
        "name",
        "firstName",
        "lastName",
        "fullName",
        "email",
        "address",
        "phone",
        "phoneNumber",
        "dob",
        "dateOfBirth",
        "ssn",
        "socialSecurityNumber",
        "medicalRecordNumber",
        "mrn",
        "insuranceNumber",
        "age",
        "zip",
        "zipCode",
        "diagnosis",
        "medication",
        "treatment",
        "labResults",
    }
)

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_SEPARATORS = re.compile(r"[\s_\-.]+")


def field_words(field_name: str) -> list[str]:
    """Split a field name into lower-case words (camelCase, snake_case, kebab-case)."""
    spaced = _CAMEL_BOUNDARY.sub(" ", field_name)
    return [w for w in _SEPARATORS.split(spaced.lower()) if w]


def match_identifier(
    field_name: str, identifiers: tuple[str, ...], whole_word_max: int = 0
) -> str | None:
    """Return the first identifier token the field name contains, if any.

    Tokens no longer than ``whole_word_max`` must equal a whole word of the
    field name; longer tokens match anywhere in the separator-free name.
    """
    words = field_words(field_name)
    compact = "".join(words)
    for token in identifiers:
        if len(token) <= whole_word_max:
            if token in words:
                return token
        elif token in compact:
            return token
    return None


class PHIPatternRegistry:
    """Registry of PHI detection patterns."""

    def __init__(self) -> None:
        self._patterns: dict[str, PHIPattern] = {}
        for pattern in BUILTIN_PATTERNS:
            self._patterns[pattern.name] = pattern

    @property
    def patterns(self) -> list[PHIPattern]:
        return list(self._patterns.values())

    def add_pattern(self, pattern: PHIPattern) -> None:
        self._patterns[pattern.name] = pattern

    def remove_pattern(self, name: str) -> bool:
        if name in self._patterns:
            del self._patterns[name]
            return True
        return False

    def get_pattern(self, name: str) -> PHIPattern | None:
        return self._patterns.get(name)

    def get_patterns_by_severity(self, severity: str) -> list[PHIPattern]:
        return [p for p in self._patterns.values() if p.severity == severity]

    def load_custom_patterns(self, config_path: Path) -> int:
        if not config_path.exists():
            raise FileNotFoundError(f"Pattern config not found: {config_path}")

        with open(config_path, "rb") as f:
            data = tomllib.load(f)

        count = 0
        for pattern_data in data.get("patterns", []):
            self.add_pattern(PHIPattern.from_dict(pattern_data))
            count += 1

        return count

    def clear_custom_patterns(self) -> None:
        builtin_names = {p.name for p in BUILTIN_PATTERNS}
        for name in [n for n in self._patterns if n not in builtin_names]:
            del self._patterns[name]
