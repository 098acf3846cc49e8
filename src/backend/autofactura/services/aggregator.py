"""
Overall confidence for an extraction attempt.

overall = sum(confidence * weight) / sum(weight) over fields with a
non-empty value, rounded half-up to an int. Empty fields carry no weight,
so a missing field lowers coverage, not the score.
"""

import math
from typing import Dict, Mapping, Optional

from autofactura.config import settings
from autofactura.models.invoice import FieldId
from autofactura.utils.candidates import FieldCandidate


class ConfidenceAggregator:
    """Weighted field confidence and the accept/reject decision."""

    def __init__(self, weights: Optional[Mapping[str, int]] = None,
                 acceptance_threshold: Optional[int] = None):
        raw = weights if weights is not None else settings.FIELD_WEIGHTS
        total = sum(raw.values())
        if total != 100:
            raise ValueError(f"Field weights must sum to 100, got {total}")

        self.weights: Dict[FieldId, int] = {FieldId(name): weight for name, weight in raw.items()}
        self.acceptance_threshold = (
            acceptance_threshold if acceptance_threshold is not None else settings.ACCEPTANCE_THRESHOLD
        )

    def overall(self, candidates: Mapping[FieldId, FieldCandidate]) -> int:
        """
        >>> ConfidenceAggregator().overall({FieldId.TAX_ID: tax_id_90, FieldId.TOTAL: total_80})
        85
        """
        weighted_sum = 0.0
        weight_sum = 0
        for field, weight in self.weights.items():
            candidate = candidates.get(field)
            if candidate is None or candidate.is_empty:
                continue
            weighted_sum += candidate.confidence * weight
            weight_sum += weight

        if weight_sum == 0:
            return 0
        return int(math.floor(weighted_sum / weight_sum + 0.5))

    def is_accepted(self, overall: int) -> bool:
        return overall >= self.acceptance_threshold
