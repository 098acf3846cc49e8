"""
Exception types for the extraction core.

Only conditions the caller must act on are exceptions. Per-field misses,
low confidence, learner no-ops and escalation failures are returned as
values and logged.

    ExtractionError (base)
    ├── PatternStoreUnavailableError
    ├── ExtractionNotFoundError
    └── EscalationError
"""

from typing import Optional


class ExtractionError(Exception):
    """
    Base exception for the extraction core.

    Attributes:
        message: Human-readable error message
        details: Extra context for logs
    """

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class PatternStoreUnavailableError(ExtractionError):
    """Raised when the pattern/extraction persistence layer cannot be reached."""

    def __init__(self, operation: str, reason: Optional[str] = None):
        super().__init__(
            f"Pattern store unavailable during: {operation}",
            {"operation": operation, "reason": reason},
        )


class ExtractionNotFoundError(ExtractionError):
    """Raised when an extraction id does not exist."""

    def __init__(self, extraction_id: str):
        super().__init__(
            f"Extraction not found: {extraction_id}",
            {"extraction_id": extraction_id},
        )


class EscalationError(ExtractionError):
    """Raised by escalated extractors; never crosses the escalation boundary."""

    def __init__(self, extractor: str, reason: Optional[str] = None):
        super().__init__(
            f"Escalated extraction failed: {extractor}",
            {"extractor": extractor, "reason": reason},
        )


__all__ = [
    'ExtractionError',
    'PatternStoreUnavailableError',
    'ExtractionNotFoundError',
    'EscalationError',
]
