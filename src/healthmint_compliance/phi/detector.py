"""PHI detection in free text.

HIPAA Reference: 164.514(b) - De-identification Standard

``contains_phi`` is deliberately over-inclusive: callers use it to gate
consent prompts and redaction, so a false positive costs a prompt while a
miss leaks PHI.
"""

from dataclasses import dataclass, field

from .patterns import PHIPatternRegistry


@dataclass(frozen=True)
class ContainsPHIResult:
    """Which pattern types matched a piece of text."""

    has_phi: bool
    types: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"hasPHI": self.has_phi, "types": list(self.types)}


@dataclass
class PHIDetection:
    """A single PHI match inside a value."""

    pattern_name: str
    matched_value: str
    location: str
    context: str
    severity: str
    false_positive_hints: tuple[str, ...] = ()

    @property
    def masked_value(self) -> str:
        if len(self.matched_value) <= 4:
            return "***"
        return (
            self.matched_value[:2] + "*" * (len(self.matched_value) - 4) + self.matched_value[-2:]
        )


class PHIDetector:
    """Detects PHI in strings using the pattern registry."""

    def __init__(self, registry: PHIPatternRegistry | None = None):
        self._registry = registry or PHIPatternRegistry()

    @property
    def registry(self) -> PHIPatternRegistry:
        return self._registry

    def contains_phi(self, text: object) -> ContainsPHIResult:
        """Report every pattern type present in ``text``.

        Non-string input never contains PHI.
        """
        if not isinstance(text, str) or not text:
            return ContainsPHIResult(has_phi=False, types=[])

        types = [p.name for p in self._registry.patterns if p.pattern.search(text)]
        return ContainsPHIResult(has_phi=bool(types), types=types)

    def scan_value(self, value: str, location: str) -> list[PHIDetection]:
        detections: list[PHIDetection] = []
        for pattern in self._registry.patterns:
            for match in pattern.pattern.finditer(value):
                start = max(0, match.start() - 20)
                end = min(len(value), match.end() + 20)
                context = value[start:end]
                if start > 0:
                    context = "..." + context
                if end < len(value):
                    context = context + "..."

                detections.append(
                    PHIDetection(
                        pattern_name=pattern.name,
                        matched_value=match.group(0),
                        location=location,
                        context=context,
                        severity=pattern.severity,
                        false_positive_hints=pattern.false_positive_hints,
                    )
                )
        return detections

    def mask_phi(self, value: str) -> str:
        """Replace every detected match in ``value`` with its masked form."""
        spans: list[tuple[int, int, str]] = []
        for detection_pattern in self._registry.patterns:
            for match in detection_pattern.pattern.finditer(value):
                masked = PHIDetection(
                    pattern_name=detection_pattern.name,
                    matched_value=match.group(0),
                    location="",
                    context="",
                    severity=detection_pattern.severity,
                ).masked_value
                spans.append((match.start(), match.end(), masked))

        result = value
        last_start = len(value) + 1
        for start, end, masked in sorted(spans, key=lambda s: s[0], reverse=True):
            if end > last_start:
                continue
            result = result[:start] + masked + result[end:]
            last_start = start
        return result


_default_detector = PHIDetector()


def contains_phi(text: object) -> ContainsPHIResult:
    """Module-level convenience around the built-in pattern table."""
    return _default_detector.contains_phi(text)
