"""
Correction-driven learner.

A human correction says "field F of extraction E is really V". If V occurs
in E's raw text, the word right before it becomes a keyword and a new
pattern `keyword [:.\\s]* <shape of F>` is stored and loaded. If V does not
occur, nothing is learned.

Learning is best-effort: a poor keyword yields a poor pattern, and the
accuracy ranking demotes it as failures accumulate.
"""

import logging
import re
from typing import List, Optional

from autofactura.config import settings
from autofactura.models.invoice import Correction, EXTRACTABLE_FIELDS, ExtractionPattern
from autofactura.services.pattern_store import InvalidPattern, PatternStore, compile_pattern
from autofactura.utils.errors import ExtractionNotFoundError, PatternStoreUnavailableError
from autofactura.utils.scoring import values_agree
from autofactura.utils.shapes import shape_for

logger = logging.getLogger(__name__)

CONTEXT_CHARS = 30
CONTEXT_TOKENS = 3
# Trimmed from keyword edges so "RFC:" and "$" don't end up as the keyword
KEYWORD_EDGE_CHARS = ':;,.$#*=-|'
# Between keyword and value; covers the trailing dot of abbreviations like R.F.C.
KEYWORD_SEPARATOR = r'[:.\s]*'


def context_tokens(raw_text: str, value_index: int) -> List[str]:
    """Up to 3 whitespace tokens in the 30 chars before value_index."""
    context = raw_text[max(0, value_index - CONTEXT_CHARS):value_index]
    return context.split()[-CONTEXT_TOKENS:]


def pick_keyword(tokens: List[str]) -> Optional[str]:
    """Nearest token to the value, lower-cased, with punctuation edges trimmed."""
    for token in reversed(tokens):
        keyword = token.strip(KEYWORD_EDGE_CHARS).lower()
        if keyword:
            return keyword
    return None


def build_matcher(keyword: str, shape: str) -> str:
    return re.escape(keyword) + KEYWORD_SEPARATOR + shape


class CorrectionLearner:
    """Derives patterns from corrections and feeds pattern outcome stats."""

    def __init__(self, pattern_store: PatternStore, extraction_repository,
                 learned_weight: Optional[float] = None):
        self.pattern_store = pattern_store
        self.extraction_repository = extraction_repository
        self.learned_weight = (
            learned_weight if learned_weight is not None else settings.LEARNED_PATTERN_WEIGHT
        )

    def learn(self, correction: Correction) -> Optional[ExtractionPattern]:
        """
        Learn from one correction.

        Returns:
            The new pattern, or None when nothing was learned.

        Raises:
            ExtractionNotFoundError: correction points at an unknown extraction
        """
        attempt = self.extraction_repository.get_attempt(correction.extraction_id)
        if attempt is None:
            raise ExtractionNotFoundError(correction.extraction_id)

        field = correction.field_name
        log_context = {
            "extraction_id": correction.extraction_id,
            "field_name": field.value,
        }

        self._record_wrong_pattern(attempt, correction)

        if field not in EXTRACTABLE_FIELDS:
            logger.info("No value shape for field, nothing to learn", extra=log_context)
            return None

        corrected = (correction.corrected_value or "").strip()
        index = attempt.raw_text.find(corrected) if corrected else -1
        if index < 0:
            logger.info("Corrected value not in raw text, nothing to learn", extra=log_context)
            return None

        keyword = pick_keyword(context_tokens(attempt.raw_text, index))
        if keyword is None:
            logger.info("No context before corrected value, nothing to learn", extra=log_context)
            return None

        matcher = build_matcher(keyword, shape_for(field))
        pattern = ExtractionPattern(
            field=field,
            matcher=matcher,
            weight=self.learned_weight,
            success_count=1,
        )

        compiled = compile_pattern(pattern)
        if isinstance(compiled, InvalidPattern):
            logger.warning("Learned matcher does not compile", extra={**log_context, "reason": compiled.reason})
            return None

        try:
            existing = self.pattern_store.repository.list_patterns(field)
            if any(p.matcher == matcher for p in existing):
                logger.info("Learned pattern already stored", extra={**log_context, "matcher": matcher})
                return None
            created = self.pattern_store.add_pattern(pattern)
        except PatternStoreUnavailableError:
            logger.warning("Could not store learned pattern", extra=log_context, exc_info=True)
            return None

        logger.info("Learned pattern", extra={
            **log_context,
            "keyword": keyword,
            "matcher": matcher,
            "pattern_id": created.id,
        })
        return created

    def _record_wrong_pattern(self, attempt, correction: Correction) -> None:
        """A stored pattern that chose a value the human corrected gets a failure."""
        candidate = attempt.candidates_per_field.get(correction.field_name)
        if candidate is None or not candidate.pattern_id:
            return
        if values_agree(correction.field_name, candidate.value, correction.corrected_value):
            return

        try:
            self.pattern_store.record_pattern_outcome(candidate.pattern_id, success=False)
        except PatternStoreUnavailableError:
            logger.warning("Could not record pattern failure", extra={
                "pattern_id": candidate.pattern_id,
            }, exc_info=True)
