"""Consent record models."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from ..errors import InvalidConsentType

# Data categories that may only be accessed with a granted data-sharing consent.
SPECIAL_CATEGORIES: frozenset[str] = frozenset({"genetic", "mentalHealth"})


class ConsentType(Enum):
    DATA_SHARING = "data_sharing"
    RESEARCH = "research"
    MARKETING = "marketing"
    THIRD_PARTY = "third_party"
    EMERGENCY = "emergency"

    @classmethod
    def parse(cls, value: "ConsentType | str") -> "ConsentType":
        """Coerce a string to a consent type.

        Raises:
            InvalidConsentType: If the value is not one of the fixed types.
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise InvalidConsentType(value) from None


@dataclass(frozen=True)
class ConsentRecord:
    """A single consent decision of one subject for one consent type."""

    subject_id: str
    consent_type: ConsentType
    granted: bool
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    purpose: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def decided_at(self) -> datetime:
        return datetime.fromisoformat(self.timestamp)

    def age_days(self, now: datetime | None = None) -> float:
        now = now or datetime.now(UTC)
        return (now - self.decided_at).total_seconds() / 86400

    def to_dict(self) -> dict[str, Any]:
        return {
            "subjectId": self.subject_id,
            "consentType": self.consent_type.value,
            "granted": self.granted,
            "timestamp": self.timestamp,
            "purpose": self.purpose,
            "details": dict(self.details),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConsentRecord":
        return cls(
            subject_id=data["subjectId"],
            consent_type=ConsentType.parse(data["consentType"]),
            granted=bool(data["granted"]),
            timestamp=data["timestamp"],
            purpose=data.get("purpose"),
            details=data.get("details") or {},
        )


@dataclass
class ConsentResult:
    """Outcome of ``record_consent``.

    ``success`` reflects the local write, which is authoritative;
    ``persisted_remotely`` reports whether the transport accepted it.
    """

    success: bool
    record: ConsentRecord | None = None
    persisted_remotely: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "success": self.success,
            "persistedRemotely": self.persisted_remotely,
        }
        if self.record is not None:
            result["record"] = self.record.to_dict()
        if self.error:
            result["error"] = self.error
        return result


@dataclass(frozen=True)
class DataAccessDecision:
    is_permitted: bool
    requires_consent: bool = False
    consent_type: ConsentType | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "isPermitted": self.is_permitted,
            "requiresConsent": self.requires_consent,
            "consentType": self.consent_type.value if self.consent_type else None,
        }
