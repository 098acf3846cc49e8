"""
Candidate dataclass for field extraction.

The pattern strategy proposes one FieldCandidate per matching stored pattern;
the context and position strategies propose at most one per field. Selection
and confidence adjustments never change a candidate's value.
"""

from dataclasses import dataclass, replace
from typing import Optional

# Candidate methods
METHOD_PATTERN = "pattern"
METHOD_CONTEXT = "context"
METHOD_POSITION = "position"
METHOD_NONE = "none"

MIN_CONFIDENCE = 0.0
MAX_CONFIDENCE = 100.0


def clamp_confidence(value: float) -> float:
    """Clamp a confidence to [0, 100]."""
    return max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, float(value)))


@dataclass
class FieldCandidate:
    """
    A proposed raw value for one field.

    Attributes:
        value: Raw matched text (trimmed)
        confidence: 0..100
        method: pattern | context | position | none
        pattern_id: Id of the stored pattern that produced it (pattern method only)
        position: Line index searched (position method only)
    """
    value: str
    confidence: float
    method: str
    pattern_id: Optional[str] = None
    position: Optional[int] = None

    def __post_init__(self):
        self.confidence = clamp_confidence(self.confidence)

    @property
    def is_empty(self) -> bool:
        return not self.value

    def with_confidence(self, confidence: float) -> 'FieldCandidate':
        """Copy with a new (clamped) confidence; value untouched."""
        return replace(self, confidence=clamp_confidence(confidence))


def empty_candidate() -> FieldCandidate:
    """Candidate returned when no strategy found anything."""
    return FieldCandidate(value="", confidence=0.0, method=METHOD_NONE)


def create_candidate(
    raw_value: Optional[str],
    confidence: float,
    method: str,
    pattern_id: Optional[str] = None,
    position: Optional[int] = None
) -> Optional[FieldCandidate]:
    """
    Build a candidate from a regex capture, or None if the capture is blank.

    Args:
        raw_value: Captured text
        confidence: Unclamped confidence
        method: Strategy name
        pattern_id: Source pattern id if any
        position: Line index if any

    Returns:
        FieldCandidate or None
    """
    if raw_value is None:
        return None

    value = raw_value.strip()
    if not value:
        return None

    return FieldCandidate(
        value=value,
        confidence=confidence,
        method=method,
        pattern_id=pattern_id,
        position=position
    )
