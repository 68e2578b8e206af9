"""Safe Harbor de-identification verification.

HIPAA Reference: 164.514(b)(2) - Safe Harbor method

Two verdicts are reported. ``is_deidentified`` means no issue of any kind
was found. ``passes_hipaa`` only requires the absence of direct
identifiers; indirect identifiers and PHI embedded in free text may remain.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .detector import PHIDetector
from .patterns import (
    DIRECT_IDENTIFIERS,
    INDIRECT_IDENTIFIERS,
    WORD_MATCH_MAX_LENGTH,
    match_identifier,
)

REMOVE_FIELD = "Remove this field completely"
REMOVE_EMBEDDED_PHI = "Remove or redact PHI from this text"

INDIRECT_RECOMMENDATIONS: dict[str, str] = {
    "zip": "Truncate ZIP code to the first 3 digits",
    "postal": "Truncate postal code to the first 3 digits",
    "date": "Remove the day from this date (keep month and year at most)",
    "dob": "Remove the day from the date of birth (keep month and year at most)",
    "birth": "Remove the day from the date of birth (keep month and year at most)",
    "age": "Aggregate ages 90 and over into a single 90+ category",
}


class IssueType(Enum):
    DIRECT_IDENTIFIER = "direct_identifier"
    INDIRECT_IDENTIFIER = "indirect_identifier"
    EMBEDDED_PHI = "embedded_phi"


@dataclass(frozen=True)
class Issue:
    type: IssueType
    field: str
    recommendation: str
    phi_types: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "type": self.type.value,
            "field": self.field,
            "recommendation": self.recommendation,
        }
        if self.phi_types:
            result["phiTypes"] = list(self.phi_types)
        return result


@dataclass
class DeIdentificationReport:
    issues: list[Issue] = field(default_factory=list)
    is_deidentified: bool = True
    passes_hipaa: bool = True

    @classmethod
    def from_issues(cls, issues: list[Issue]) -> "DeIdentificationReport":
        return cls(
            issues=issues,
            is_deidentified=not issues,
            passes_hipaa=not any(i.type is IssueType.DIRECT_IDENTIFIER for i in issues),
        )

    @classmethod
    def failed_closed(cls) -> "DeIdentificationReport":
        """Report used when verification itself fails: no issues, no passes."""
        return cls(issues=[], is_deidentified=False, passes_hipaa=False)

    def issues_of(self, issue_type: IssueType) -> list[Issue]:
        return [i for i in self.issues if i.type is issue_type]

    def to_dict(self) -> dict[str, Any]:
        return {
            "isDeIdentified": self.is_deidentified,
            "issues": [i.to_dict() for i in self.issues],
            "passesHIPAA": self.passes_hipaa,
        }


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str | list | dict | tuple | set):
        return len(value) == 0
    return False


class DeIdentificationVerifier:
    """Walks a record and reports Safe Harbor identifier issues by dotted path."""

    def __init__(self, detector: PHIDetector | None = None):
        self._detector = detector or PHIDetector()

    def verify(self, data: Any) -> DeIdentificationReport:
        issues: list[Issue] = []
        if isinstance(data, dict):
            self._walk(data, "", issues)
        elif isinstance(data, list):
            self._walk_list(data, "", issues)
        return DeIdentificationReport.from_issues(issues)

    def _walk(self, obj: dict, path: str, issues: list[Issue]) -> None:
        for key, value in obj.items():
            key_str = str(key)
            current = f"{path}.{key_str}" if path else key_str

            flagged = self._check_field(key_str, value, current, issues)

            if isinstance(value, dict):
                self._walk(value, current, issues)
            elif isinstance(value, list):
                self._walk_list(value, current, issues)
            elif isinstance(value, str) and not flagged:
                result = self._detector.contains_phi(value)
                if result.has_phi:
                    issues.append(
                        Issue(
                            type=IssueType.EMBEDDED_PHI,
                            field=current,
                            recommendation=REMOVE_EMBEDDED_PHI,
                            phi_types=tuple(result.types),
                        )
                    )

    def _walk_list(self, items: list, path: str, issues: list[Issue]) -> None:
        for index, item in enumerate(items):
            if isinstance(item, dict):
                self._walk(item, f"{path}[{index}]", issues)

    def _check_field(self, key: str, value: Any, path: str, issues: list[Issue]) -> bool:
        """Flag identifier field names. Returns True if the field was flagged."""
        if _is_empty(value):
            return False

        if match_identifier(key, DIRECT_IDENTIFIERS):
            issues.append(
                Issue(type=IssueType.DIRECT_IDENTIFIER, field=path, recommendation=REMOVE_FIELD)
            )
            return True

        token = match_identifier(key, INDIRECT_IDENTIFIERS, WORD_MATCH_MAX_LENGTH)
        if token:
            issues.append(
                Issue(
                    type=IssueType.INDIRECT_IDENTIFIER,
                    field=path,
                    recommendation=INDIRECT_RECOMMENDATIONS[token],
                )
            )
            return True

        return False
