"""
Pydantic models for patterns, extraction attempts, corrections and
structured invoice records.
"""

import time
import uuid
from decimal import Decimal
from enum import Enum
from pydantic import BaseModel, Field
from typing import Dict, Optional

from autofactura.utils.candidates import FieldCandidate


class FieldId(str, Enum):
    """Invoice fields known to the extraction core."""
    TAX_ID = "taxId"
    DATE = "date"
    TOTAL = "total"
    TAX = "tax"
    SUBTOTAL = "subtotal"
    ISSUER = "issuer"  # Only escalated extractors fill this


# Fields handled by the pattern/context/position pipeline
EXTRACTABLE_FIELDS = (
    FieldId.TAX_ID,
    FieldId.DATE,
    FieldId.TOTAL,
    FieldId.TAX,
    FieldId.SUBTOTAL,
)

MONEY_FIELDS = (FieldId.TOTAL, FieldId.TAX, FieldId.SUBTOTAL)


def _new_id() -> str:
    return str(uuid.uuid4())


def _now_ms() -> int:
    return int(time.time() * 1000)


class ExtractionPattern(BaseModel):
    """A stored extraction rule for one field."""
    id: str = Field(default_factory=_new_id)
    field: FieldId
    kind: str = "regex"
    matcher: str
    weight: float = 1.0
    success_count: int = 0
    failure_count: int = 0
    accuracy: Optional[float] = None  # Percentage, unset until first outcome

    class Config:
        from_attributes = True


class Correction(BaseModel):
    """A human-supplied value for a field of a past extraction."""
    id: str = Field(default_factory=_new_id)
    extraction_id: str
    field_name: FieldId
    extracted_value: str = ""
    corrected_value: str
    source: str = "manual"
    timestamp: int = Field(default_factory=_now_ms)


class ExtractionAttempt(BaseModel):
    """One run of the pipeline over one document's recognized text."""
    id: str = Field(default_factory=_new_id)
    source_document_id: Optional[str] = None
    raw_text: str
    candidates_per_field: Dict[FieldId, FieldCandidate] = {}
    chosen_values: Dict[FieldId, str] = {}
    overall_confidence: int = 0
    method_used: str = "pattern"
    timestamp_ms: int = Field(default_factory=_now_ms)


class InvoiceRecord(BaseModel):
    """Structured invoice fields, from the cheap pipeline or an escalated extractor."""
    tax_id: str = ""
    issuer: str = ""
    date: str = ""  # YYYY-MM-DD
    total: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    subtotal: Decimal = Decimal("0")
    confidence: float = 0.0
    method: str = "pattern"

    def value_for(self, field: FieldId) -> str:
        """Return a field as display text ('' when missing or zero)."""
        if field == FieldId.TAX_ID:
            return self.tax_id
        if field == FieldId.ISSUER:
            return self.issuer
        if field == FieldId.DATE:
            return self.date
        amount = getattr(self, field.value)
        return str(amount) if amount else ""


class FieldValue(BaseModel):
    """Value and confidence of one field in a caller-facing result."""
    value: str
    confidence: float


class ExtractionOutcome(BaseModel):
    """
    Caller-facing result of extract().

    When accepted is False the fields map is empty and record is None:
    no guessed values are ever returned below the acceptance threshold.
    """
    extraction_id: Optional[str] = None
    fields: Dict[FieldId, FieldValue] = {}
    overall_confidence: int = 0
    accepted: bool = False
    method_used: str = "pattern"
    state: str = "rejected"
    record: Optional[InvoiceRecord] = None
