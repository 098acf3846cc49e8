"""
Field extractor: runs an ordered list of strategies per field and
arbitrates their candidates.

Strategies:
1. PatternStrategy  - stored patterns, one candidate per matching pattern
2. ContextStrategy  - keyword hit, then a field shape in the next N chars
3. PositionStrategy - field shape near the line where the field usually sits

Each strategy is a callable (field, document) -> list of candidates; an
empty list means "nothing found". Arbitration is select_best_candidate.
"""

import logging
import math
import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from autofactura.config import settings
from autofactura.models.invoice import EXTRACTABLE_FIELDS, FieldId
from autofactura.services.pattern_store import PatternStore
from autofactura.utils.candidates import (
    FieldCandidate,
    METHOD_CONTEXT,
    METHOD_PATTERN,
    METHOD_POSITION,
    create_candidate,
)
from autofactura.utils.scoring import select_best_candidate
from autofactura.utils.shapes import regex_for

logger = logging.getLogger(__name__)

DEFAULT_PATTERN_ACCURACY = 80.0
CONTEXT_CONFIDENCE = 75.0
POSITION_CONFIDENCE = 65.0

# Keywords are tried in order; the first one whose window holds a value wins
CONTEXT_KEYWORDS: Dict[FieldId, Tuple[str, ...]] = {
    FieldId.TAX_ID: ('rfc', 'r.f.c', 'registro federal'),
    FieldId.DATE: ('fecha', 'date', 'día', 'emitida', 'emision'),
    FieldId.TOTAL: ('cargo', 'total', 'importe total', 'monto total', 'total a pagar', 'tarjeta'),
    FieldId.TAX: ('iva', 'i.v.a', 'impuesto', 'tax'),
    FieldId.SUBTOTAL: ('subtotal', 'sub total', 'sub-total', 'importe', 'energia', 'energía'),
}

# Keyword must start a word and not follow "sub " or "sub-" (SUB TOTAL is not TOTAL)
KEYWORD_GUARD = r'(?<!\w)(?<!sub\s)(?<!sub-)'

# Relative line position where a field usually sits on a ticket
EXPECTED_POSITIONS: Dict[FieldId, float] = {
    FieldId.TAX_ID: 0.10,
    FieldId.DATE: 0.15,
    FieldId.SUBTOTAL: 0.80,
    FieldId.TAX: 0.85,
    FieldId.TOTAL: 0.90,
}

LINES_BEFORE = 2
LINES_AFTER = 3  # exclusive upper bound: [i-2, i+3)


@dataclass(frozen=True)
class Document:
    """
    Recognized text of one document.

    raw_text keeps line breaks for the position strategy; text is the
    whitespace-collapsed form searched by patterns and keywords.
    """
    raw_text: str
    text: str
    lines: Tuple[str, ...]

    @classmethod
    def from_text(cls, raw_text: str) -> 'Document':
        raw_text = raw_text or ""
        return cls(
            raw_text=raw_text,
            text=re.sub(r'\s+', ' ', raw_text).strip(),
            lines=tuple(line.strip() for line in raw_text.splitlines() if line.strip()),
        )


Strategy = Callable[[FieldId, Document], List[FieldCandidate]]


class PatternStrategy:
    """Stored patterns for the field, in store priority order."""

    def __init__(self, store: PatternStore):
        self.store = store

    def __call__(self, field: FieldId, document: Document) -> List[FieldCandidate]:
        candidates = []
        for compiled in self.store.compiled_patterns(field):
            match = compiled.regex.search(document.text)
            if not match:
                continue

            pattern = compiled.pattern
            accuracy = pattern.accuracy if pattern.accuracy is not None else DEFAULT_PATTERN_ACCURACY
            weight = pattern.weight if pattern.weight is not None else 1.0

            candidate = create_candidate(
                match.group(1),
                accuracy * weight,
                METHOD_PATTERN,
                pattern_id=pattern.id,
            )
            if candidate is not None:
                candidates.append(candidate)

        return candidates


class ContextStrategy:
    """First keyword (at a word start) followed by the field shape within the window."""

    def __init__(self, keywords: Optional[Dict[FieldId, Sequence[str]]] = None,
                 window: Optional[int] = None):
        self.keywords = keywords or CONTEXT_KEYWORDS
        self.window = window or settings.CONTEXT_WINDOW_CHARS
        self._keyword_res = {
            f: [re.compile(KEYWORD_GUARD + re.escape(k), re.IGNORECASE) for k in words]
            for f, words in self.keywords.items()
        }

    def __call__(self, field: FieldId, document: Document) -> List[FieldCandidate]:
        shape = regex_for(field)
        for keyword_re in self._keyword_res.get(field, []):
            hit = keyword_re.search(document.text)
            if not hit:
                continue

            window = document.text[hit.start():hit.start() + self.window]
            match = shape.search(window)
            candidate = create_candidate(match.group(1), CONTEXT_CONFIDENCE, METHOD_CONTEXT) if match else None
            if candidate is not None:
                return [candidate]

        return []


class PositionStrategy:
    """Field shape in the few lines around the field's usual relative position."""

    def __init__(self, positions: Optional[Dict[FieldId, float]] = None):
        self.positions = positions or EXPECTED_POSITIONS

    def __call__(self, field: FieldId, document: Document) -> List[FieldCandidate]:
        relative = self.positions.get(field)
        if relative is None or not document.lines:
            return []

        line_index = math.floor(len(document.lines) * relative)
        start = max(0, line_index - LINES_BEFORE)
        end = min(len(document.lines), line_index + LINES_AFTER)
        search_text = ' '.join(document.lines[start:end])

        match = regex_for(field).search(search_text)
        if not match:
            return []

        candidate = create_candidate(match.group(1), POSITION_CONFIDENCE, METHOD_POSITION, position=line_index)
        return [candidate] if candidate is not None else []


@dataclass
class FieldExtraction:
    """Winner and every candidate considered for one field."""
    best: FieldCandidate
    candidates: List[FieldCandidate]


class FieldExtractor:
    """Runs the strategy list for each field and keeps the best candidate."""

    def __init__(self, store: PatternStore, strategies: Optional[List[Strategy]] = None):
        self.store = store
        self.strategies: List[Strategy] = strategies if strategies is not None else [
            PatternStrategy(store),
            ContextStrategy(),
            PositionStrategy(),
        ]

    def extract_field(self, field: FieldId, document: Document) -> FieldExtraction:
        candidates: List[FieldCandidate] = []
        for strategy in self.strategies:
            candidates.extend(strategy(field, document))

        best = select_best_candidate(field, candidates)
        logger.debug("Field extracted", extra={
            "field_name": field.value,
            "value": best.value,
            "confidence": best.confidence,
            "method": best.method,
            "candidate_count": len(candidates),
        })
        return FieldExtraction(best=best, candidates=candidates)

    def extract_all(self, document: Document,
                    fields: Sequence[FieldId] = EXTRACTABLE_FIELDS) -> Dict[FieldId, FieldExtraction]:
        return {field: self.extract_field(field, document) for field in fields}
