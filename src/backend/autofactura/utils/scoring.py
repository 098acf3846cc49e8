"""
Candidate arbitration.

Pure functions over lists of FieldCandidate; nothing here touches the
pattern store or the document text.
"""

from typing import List, Optional

from autofactura.models.invoice import FieldId, MONEY_FIELDS
from autofactura.utils.candidates import FieldCandidate, clamp_confidence, empty_candidate
from autofactura.utils.dates import normalize_date
from autofactura.utils.money import amounts_agree, parse_amount

__all__ = ['select_best_candidate', 'values_agree', 'AGREEMENT_BOOST']

# Applied to the top candidate when another strategy found the same value
AGREEMENT_BOOST = 1.2


def values_agree(field: FieldId, a: Optional[str], b: Optional[str]) -> bool:
    """
    Field-aware value equality.

    - tax id: case-insensitive
    - date: equal after normalization
    - money: within 0.01
    - anything else: exact (trimmed)
    """
    if not a or not b:
        return False

    if field == FieldId.TAX_ID:
        return a.strip().upper() == b.strip().upper()

    if field == FieldId.DATE:
        return normalize_date(a) == normalize_date(b)

    if field in MONEY_FIELDS:
        left, right = parse_amount(a), parse_amount(b)
        if not left and not right:
            return a.strip() == b.strip()
        return amounts_agree(left, right)

    return a.strip() == b.strip()


def select_best_candidate(
    field: FieldId,
    candidates: List[Optional[FieldCandidate]]
) -> FieldCandidate:
    """
    Pick the winning candidate for a field.

    Candidates are sorted by confidence (stable, so strategy order breaks
    ties). If at least one other candidate agrees with the top one, the
    top confidence is multiplied by AGREEMENT_BOOST, capped at 100.

    Args:
        field: Field being arbitrated
        candidates: Strategy outputs; None entries are ignored

    Returns:
        The top candidate, or an empty candidate (method "none") when
        nothing was found. Inputs are never mutated.

    Example:
        >>> best = select_best_candidate(FieldId.TOTAL, [pattern_hit, context_hit])
    """
    present = [c for c in candidates if c is not None and not c.is_empty]
    if not present:
        return empty_candidate()

    ranked = sorted(present, key=lambda c: c.confidence, reverse=True)
    best = ranked[0]

    agreeing = sum(1 for c in ranked if values_agree(field, c.value, best.value))
    if agreeing > 1:
        return best.with_confidence(clamp_confidence(best.confidence * AGREEMENT_BOOST))

    return best
