"""
Pattern store: per-field extraction rules with historical accuracy.

Patterns are data (regex strings) persisted through a PatternRepository.
They are compiled once when the store (re)loads; a pattern that fails to
compile becomes an InvalidPattern and is skipped for that field only.

The compiled snapshot (PatternCache) is immutable. reload() builds a new
one and swaps the reference under a writer lock, so readers never lock.
The snapshot only changes on an explicit reload (seeding, learning).
"""

import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple, Union

from autofactura.config import settings
from autofactura.models.invoice import ExtractionPattern, FieldId
from autofactura.utils.errors import PatternStoreUnavailableError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DefaultPattern:
    """A canonical bootstrap pattern with an example it is meant to match."""
    field: FieldId
    matcher: str
    weight: float
    example: str
    notes: Optional[str] = None

    def to_pattern(self) -> ExtractionPattern:
        return ExtractionPattern(field=self.field, matcher=self.matcher, weight=self.weight)


# Canonical patterns for Mexican receipts (Spanish labels).
# Amount captures allow OCR-inserted spaces; values are cleaned on parse.
DEFAULT_PATTERNS: Tuple[DefaultPattern, ...] = (
    # Tax id (RFC)
    DefaultPattern(
        field=FieldId.TAX_ID,
        matcher=r'RFC[:\s]*([A-ZÑ&]{3,4}\d{6}[A-Z0-9]{3})',
        weight=1.5,
        example="RFC: CFE370814QI0",
    ),
    DefaultPattern(
        field=FieldId.TAX_ID,
        matcher=r'([A-ZÑ&]{3,4}\d{6}[A-Z0-9]{3})',
        weight=1.0,
        example="CFE370814QI0",
        notes="Bare shape, anywhere in the text",
    ),

    # Date
    DefaultPattern(
        field=FieldId.DATE,
        matcher=r'fecha[:\s]*(\d{1,2}[-\/]\d{1,2}[-\/]\d{2,4})',
        weight=1.5,
        example="FECHA: 15/03/2024",
    ),
    DefaultPattern(
        field=FieldId.DATE,
        matcher=r'fecha[:\s]*(\d{1,2}[-\/][A-Z]{3}(?:[-\/]\d{2,4})?)',
        weight=1.4,
        example="FECHA 15-MAR-2024",
        notes="Spanish month abbreviation, year optional",
    ),
    DefaultPattern(
        field=FieldId.DATE,
        matcher=r'(\d{1,2}[-\/]\d{1,2}[-\/]\d{4})',
        weight=1.0,
        example="15/03/2024",
    ),

    # Total
    DefaultPattern(
        field=FieldId.TOTAL,
        matcher=r'cargo[\s\.]+a[\s\.]+tarjeta[\s\.]*.*?\$?\s*([\d,\s]+\.?\d{1,2})',
        weight=2.0,
        example="CARGO A TARJETA ....... $1,160.00",
        notes="Card charge line on utility receipts",
    ),
    DefaultPattern(
        field=FieldId.TOTAL,
        matcher=r'cargo[\s\.]+(?:a[\s\.]+)?tarjeta[\s\.]*.*?([\d,]+\.[0-9])',
        weight=1.9,
        example="CARGO TARJETA 1,160.0",
    ),
    DefaultPattern(
        field=FieldId.TOTAL,
        matcher=r'(?<!sub)(?<!sub\s)(?<!sub-)(?:gran\s+)?total[:\s]*\$?\s*-?\(?\s*([\d,\s]+\.?\d{0,2})',
        weight=1.5,
        example="TOTAL $116.00",
        notes="Never matches inside SUBTOTAL / SUB TOTAL / SUB-TOTAL",
    ),
    DefaultPattern(
        field=FieldId.TOTAL,
        matcher=r'importe\s+total[:\s]*\$?\s*([\d,\s]+\.?\d{0,2})',
        weight=1.3,
        example="IMPORTE TOTAL 116.00",
    ),

    # Tax (IVA)
    DefaultPattern(
        field=FieldId.TAX,
        matcher=r'\bIVA[:\s]*\$?\s*([\d,\s]+\.?\d{0,2})',
        weight=1.5,
        example="IVA $16.00",
    ),
    DefaultPattern(
        field=FieldId.TAX,
        matcher=r'impuesto[:\s]*\$?\s*([\d,\s]+\.?\d{0,2})',
        weight=1.2,
        example="IMPUESTO 16.00",
    ),

    # Subtotal
    DefaultPattern(
        field=FieldId.SUBTOTAL,
        matcher=r'energ[ií]a[\s\.]*\$?\s*([\d,\s]+\.?\d{0,2})',
        weight=1.6,
        example="ENERGIA ...... $1,000.00",
        notes="Electricity bills list the energy charge as the pre-tax amount",
    ),
    DefaultPattern(
        field=FieldId.SUBTOTAL,
        matcher=r'subtotal[:\s]*\$?\s*([\d,\s]+\.?\d{0,2})',
        weight=1.5,
        example="SUBTOTAL $100.00",
    ),
    DefaultPattern(
        field=FieldId.SUBTOTAL,
        matcher=r'sub[\s-]?total[:\s]*\$?\s*([\d,\s]+\.?\d{0,2})',
        weight=1.3,
        example="SUB-TOTAL 100.00",
    ),
)


@dataclass(frozen=True)
class CompiledPattern:
    pattern: ExtractionPattern
    regex: re.Pattern


@dataclass(frozen=True)
class InvalidPattern:
    pattern: ExtractionPattern
    reason: str


CompileResult = Union[CompiledPattern, InvalidPattern]


def compile_pattern(pattern: ExtractionPattern) -> CompileResult:
    """
    Compile a stored pattern (case-insensitive).

    A usable matcher must be a regex with at least one capture group;
    group 1 is the field value.
    """
    if pattern.kind != "regex":
        return InvalidPattern(pattern, f"unsupported pattern kind: {pattern.kind}")

    try:
        regex = re.compile(pattern.matcher, re.IGNORECASE)
    except re.error as e:
        return InvalidPattern(pattern, f"regex error: {e}")

    if regex.groups < 1:
        return InvalidPattern(pattern, "matcher has no capture group")

    return CompiledPattern(pattern, regex)


def order_patterns(patterns: List[ExtractionPattern]) -> List[ExtractionPattern]:
    """Accuracy descending (unset last), then weight descending. Stable."""
    return sorted(
        patterns,
        key=lambda p: (
            p.accuracy is None,
            -(p.accuracy or 0.0),
            -(p.weight if p.weight is not None else 1.0),
        )
    )


@dataclass(frozen=True)
class PatternCache:
    """Immutable per-field snapshot of ordered, compiled patterns."""
    by_field: Mapping[FieldId, Tuple[CompiledPattern, ...]] = field(default_factory=dict)
    invalid: Tuple[InvalidPattern, ...] = ()

    @classmethod
    def build(cls, patterns: List[ExtractionPattern]) -> 'PatternCache':
        grouped: Dict[FieldId, List[CompiledPattern]] = {}
        invalid: List[InvalidPattern] = []

        for pattern in order_patterns(patterns):
            result = compile_pattern(pattern)
            if isinstance(result, InvalidPattern):
                invalid.append(result)
                continue
            grouped.setdefault(pattern.field, []).append(result)

        return cls(
            by_field={f: tuple(items) for f, items in grouped.items()},
            invalid=tuple(invalid),
        )

    def compiled(self, field_id: FieldId) -> Tuple[CompiledPattern, ...]:
        return self.by_field.get(field_id, ())

    def count(self) -> int:
        return sum(len(items) for items in self.by_field.values())


class PatternStore:
    """Owns the pattern cache and the only write paths into the pattern table."""

    def __init__(self, repository, min_pattern_count: Optional[int] = None):
        self.repository = repository
        self.min_pattern_count = (
            min_pattern_count if min_pattern_count is not None else settings.MIN_PATTERN_COUNT
        )
        self._cache: Optional[PatternCache] = None
        self._write_lock = threading.Lock()

    # Reads

    def snapshot(self) -> PatternCache:
        """
        Current snapshot. The first read loads it; if the repository is
        unavailable the read degrades to an empty snapshot and the next
        read tries again.
        """
        cache = self._cache
        if cache is not None:
            return cache

        try:
            return self.reload()
        except PatternStoreUnavailableError:
            logger.warning("Pattern store unavailable, extracting without patterns", exc_info=True)
            return PatternCache()

    def compiled_patterns(self, field_id: FieldId) -> List[CompiledPattern]:
        return list(self.snapshot().compiled(field_id))

    def load_patterns(self, field_id: FieldId) -> List[ExtractionPattern]:
        """Ordered usable patterns for a field; [] when the store is unavailable."""
        return [c.pattern for c in self.snapshot().compiled(field_id)]

    # Writes

    def reload(self) -> PatternCache:
        """
        Rebuild the snapshot from the repository and swap it in.

        Raises:
            PatternStoreUnavailableError: repository read failed; the previous
                snapshot stays in place
        """
        with self._write_lock:
            patterns = self.repository.list_patterns()
            cache = PatternCache.build(patterns)
            self._cache = cache

        for bad in cache.invalid:
            logger.warning("Skipping invalid pattern", extra={
                "pattern_id": bad.pattern.id,
                "field_name": bad.pattern.field.value,
                "reason": bad.reason,
            })

        logger.info("Patterns loaded", extra={
            "pattern_count": cache.count(),
            "invalid_count": len(cache.invalid),
        })
        return cache

    def seed_defaults(self) -> int:
        """
        Insert the default patterns that are missing when the table holds
        fewer than min_pattern_count rows. Returns the number inserted.

        Raises:
            PatternStoreUnavailableError: repository read/write failed
        """
        total = self.repository.count()
        if total >= self.min_pattern_count:
            logger.debug("Pattern seeding not needed", extra={"pattern_count": total})
            return 0

        existing = {(p.field, p.matcher) for p in self.repository.list_patterns()}
        inserted = 0
        for default in DEFAULT_PATTERNS:
            if (default.field, default.matcher) in existing:
                continue
            self.repository.create(default.to_pattern())
            inserted += 1

        logger.info("Seeded default patterns", extra={
            "inserted": inserted,
            "previous_count": total,
        })
        return inserted

    def reseed_if_needed(self) -> int:
        """Seed when below the minimum, then reload. Failures propagate."""
        inserted = self.seed_defaults()
        self.reload()
        return inserted

    def add_pattern(self, pattern: ExtractionPattern) -> ExtractionPattern:
        """Persist a new pattern and reload so later extractions use it."""
        created = self.repository.create(pattern)
        self.reload()
        return created

    def record_pattern_outcome(self, pattern_id: str, success: bool) -> Optional[ExtractionPattern]:
        """
        Count one success/failure for a pattern and recompute its accuracy.

        Serialized per pattern row by the repository. The snapshot is not
        reloaded here; the new ranking applies after the next reload.
        """
        updated = self.repository.update_stats(pattern_id, success)
        if updated is None:
            logger.warning("Outcome for unknown pattern", extra={"pattern_id": pattern_id})
            return None

        logger.debug("Pattern outcome recorded", extra={
            "pattern_id": pattern_id,
            "success": success,
            "accuracy": updated.accuracy,
        })
        return updated
