"""
Arithmetic cross-checks between subtotal, tax and total.

Consistent amounts raise the confidence of the candidates involved. Values
are never changed, and the input mapping is left untouched: callers get
adjusted copies.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Mapping, Optional, Tuple

from autofactura.config import settings
from autofactura.models.invoice import FieldId
from autofactura.utils.candidates import FieldCandidate, clamp_confidence
from autofactura.utils.money import ZERO, parse_amount

logger = logging.getLogger(__name__)

SUM_BOOST = 1.15
TAX_RATE_BOOST = 1.10


@dataclass(frozen=True)
class ConsistencyReport:
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    sum_consistent: bool
    tax_rate_consistent: bool


def _value(candidates: Mapping[FieldId, FieldCandidate], field: FieldId) -> Decimal:
    candidate = candidates.get(field)
    return parse_amount(candidate.value) if candidate is not None else ZERO


def check_amounts(
    subtotal: Decimal,
    tax: Decimal,
    total: Decimal,
    tax_rate: Decimal,
    tolerance: Decimal
) -> Tuple[bool, bool]:
    """
    Returns (sum_consistent, tax_rate_consistent).

    - sum: |subtotal + tax - total| <= tolerance * total, total > 0
    - rate: |subtotal * rate - tax| <= tolerance * subtotal * rate, tax > 0
    """
    sum_consistent = total > 0 and abs(subtotal + tax - total) <= tolerance * total

    expected_tax = subtotal * tax_rate
    tax_rate_consistent = tax > 0 and abs(expected_tax - tax) <= tolerance * expected_tax

    return sum_consistent, tax_rate_consistent


def validate_consistency(
    candidates: Mapping[FieldId, FieldCandidate],
    tax_rate: Optional[float] = None,
    tolerance: Optional[float] = None
) -> Tuple[Dict[FieldId, FieldCandidate], ConsistencyReport]:
    """
    Boost money-field confidences when the amounts add up.

    Args:
        candidates: Winning candidate per field
        tax_rate: Fixed tax rate (default settings.FIXED_TAX_RATE)
        tolerance: Relative tolerance (default settings.CONSISTENCY_TOLERANCE)

    Returns:
        (adjusted candidates, report). Sum consistency multiplies subtotal,
        tax and total by 1.15; tax-rate consistency multiplies tax by 1.10.
        Everything is capped at 100.
    """
    rate = Decimal(str(tax_rate if tax_rate is not None else settings.FIXED_TAX_RATE))
    tol = Decimal(str(tolerance if tolerance is not None else settings.CONSISTENCY_TOLERANCE))

    subtotal = _value(candidates, FieldId.SUBTOTAL)
    tax = _value(candidates, FieldId.TAX)
    total = _value(candidates, FieldId.TOTAL)

    sum_ok, rate_ok = check_amounts(subtotal, tax, total, rate, tol)

    adjusted: Dict[FieldId, FieldCandidate] = {}
    for field, candidate in candidates.items():
        confidence = candidate.confidence
        if sum_ok and field in (FieldId.SUBTOTAL, FieldId.TAX, FieldId.TOTAL):
            confidence = clamp_confidence(confidence * SUM_BOOST)
        if rate_ok and field == FieldId.TAX:
            confidence = clamp_confidence(confidence * TAX_RATE_BOOST)
        adjusted[field] = candidate.with_confidence(confidence)

    report = ConsistencyReport(
        subtotal=subtotal,
        tax=tax,
        total=total,
        sum_consistent=sum_ok,
        tax_rate_consistent=rate_ok,
    )
    logger.debug("Consistency checked", extra={
        "subtotal": str(subtotal),
        "tax": str(tax),
        "total": str(total),
        "sum_consistent": sum_ok,
        "tax_rate_consistent": rate_ok,
    })
    return adjusted, report
