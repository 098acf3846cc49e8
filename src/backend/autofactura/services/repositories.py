"""
Persistence adapters for patterns, extraction attempts and corrections.

Two implementations share each contract:
- InMemory*: thread-safe dicts, the default for tests and local runs
- Supabase*: tables extraction_patterns / ocr_extractions / ocr_corrections

Stat updates are read-modify-write serialized per pattern row. Supabase
client failures surface as PatternStoreUnavailableError; callers decide
whether that is fatal.
"""

import logging
import threading
from collections import defaultdict
from typing import Dict, List, Optional, Protocol

from autofactura.config import settings
from autofactura.models.invoice import Correction, ExtractionAttempt, ExtractionPattern, FieldId
from autofactura.utils.errors import PatternStoreUnavailableError

logger = logging.getLogger(__name__)


class PatternRepository(Protocol):
    def list_patterns(self, field: Optional[FieldId] = None) -> List[ExtractionPattern]: ...

    def count(self) -> int: ...

    def create(self, pattern: ExtractionPattern) -> ExtractionPattern: ...

    def update_stats(self, pattern_id: str, success: bool) -> Optional[ExtractionPattern]: ...


class ExtractionRepository(Protocol):
    def save_attempt(self, attempt: ExtractionAttempt) -> ExtractionAttempt: ...

    def get_attempt(self, extraction_id: str) -> Optional[ExtractionAttempt]: ...

    def save_correction(self, correction: Correction) -> Correction: ...

    def list_corrections(self, extraction_id: str) -> List[Correction]: ...


def apply_outcome(pattern: ExtractionPattern, success: bool) -> ExtractionPattern:
    """Return a copy with one more success/failure and accuracy recomputed as a percentage."""
    success_count = pattern.success_count + (1 if success else 0)
    failure_count = pattern.failure_count + (0 if success else 1)
    total = success_count + failure_count
    return pattern.model_copy(update={
        "success_count": success_count,
        "failure_count": failure_count,
        "accuracy": (success_count / total) * 100 if total else None,
    })


class _RowLocks:
    """Lazily created lock per row id."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)

    def for_row(self, row_id: str) -> threading.Lock:
        with self._guard:
            return self._locks[row_id]


class InMemoryPatternRepository:
    """Pattern rows kept in a dict; insertion order is preserved."""

    def __init__(self, patterns: Optional[List[ExtractionPattern]] = None):
        self._rows: Dict[str, ExtractionPattern] = {}
        self._table_lock = threading.Lock()
        self._row_locks = _RowLocks()
        for pattern in patterns or []:
            self._rows[pattern.id] = pattern

    def list_patterns(self, field: Optional[FieldId] = None) -> List[ExtractionPattern]:
        with self._table_lock:
            rows = list(self._rows.values())
        if field is None:
            return rows
        return [p for p in rows if p.field == field]

    def count(self) -> int:
        with self._table_lock:
            return len(self._rows)

    def get(self, pattern_id: str) -> Optional[ExtractionPattern]:
        with self._table_lock:
            return self._rows.get(pattern_id)

    def create(self, pattern: ExtractionPattern) -> ExtractionPattern:
        with self._table_lock:
            self._rows[pattern.id] = pattern
        return pattern

    def update_stats(self, pattern_id: str, success: bool) -> Optional[ExtractionPattern]:
        with self._row_locks.for_row(pattern_id):
            current = self.get(pattern_id)
            if current is None:
                return None
            updated = apply_outcome(current, success)
            with self._table_lock:
                self._rows[pattern_id] = updated
            return updated


class InMemoryExtractionRepository:
    """Extraction attempts and corrections kept in dicts."""

    def __init__(self):
        self._attempts: Dict[str, ExtractionAttempt] = {}
        self._corrections: Dict[str, List[Correction]] = defaultdict(list)
        self._lock = threading.Lock()

    def save_attempt(self, attempt: ExtractionAttempt) -> ExtractionAttempt:
        with self._lock:
            self._attempts[attempt.id] = attempt
        return attempt

    def get_attempt(self, extraction_id: str) -> Optional[ExtractionAttempt]:
        with self._lock:
            return self._attempts.get(extraction_id)

    def save_correction(self, correction: Correction) -> Correction:
        with self._lock:
            self._corrections[correction.extraction_id].append(correction)
        return correction

    def list_corrections(self, extraction_id: str) -> List[Correction]:
        with self._lock:
            return list(self._corrections.get(extraction_id, []))


def _pattern_from_row(row: dict) -> ExtractionPattern:
    return ExtractionPattern(
        id=str(row['id']),
        field=FieldId(row['field_name']),
        kind=row.get('pattern_type') or 'regex',
        matcher=row['pattern_value'],
        weight=row.get('confidence_weight') or 1.0,
        success_count=row.get('success_count') or 0,
        failure_count=row.get('failure_count') or 0,
        accuracy=row.get('accuracy'),
    )


def _pattern_to_row(pattern: ExtractionPattern) -> dict:
    return {
        'id': pattern.id,
        'field_name': pattern.field.value,
        'pattern_type': pattern.kind,
        'pattern_value': pattern.matcher,
        'confidence_weight': pattern.weight,
        'success_count': pattern.success_count,
        'failure_count': pattern.failure_count,
        'accuracy': pattern.accuracy,
    }


class SupabasePatternRepository:
    """Patterns in the extraction_patterns table."""

    def __init__(self, client, table: Optional[str] = None):
        self.supabase = client
        self.table = table or settings.PATTERNS_TABLE
        self._row_locks = _RowLocks()

    def list_patterns(self, field: Optional[FieldId] = None) -> List[ExtractionPattern]:
        try:
            query = self.supabase.table(self.table).select('*')
            if field is not None:
                query = query.eq('field_name', field.value)
            response = query.execute()
        except Exception as e:
            raise PatternStoreUnavailableError("list_patterns", str(e)) from e

        patterns = []
        for row in response.data or []:
            try:
                patterns.append(_pattern_from_row(row))
            except (KeyError, ValueError):
                logger.warning("Skipping unreadable pattern row", extra={
                    "pattern_id": row.get('id'),
                    "field_name": row.get('field_name'),
                })
        return patterns

    def count(self) -> int:
        try:
            response = self.supabase.table(self.table).select('id', count='exact').execute()
        except Exception as e:
            raise PatternStoreUnavailableError("count", str(e)) from e
        if response.count is not None:
            return response.count
        return len(response.data or [])

    def get(self, pattern_id: str) -> Optional[ExtractionPattern]:
        try:
            response = self.supabase.table(self.table).select('*').eq(
                'id', pattern_id
            ).limit(1).execute()
        except Exception as e:
            raise PatternStoreUnavailableError("get_pattern", str(e)) from e
        if not response.data:
            return None
        return _pattern_from_row(response.data[0])

    def create(self, pattern: ExtractionPattern) -> ExtractionPattern:
        try:
            response = self.supabase.table(self.table).insert(_pattern_to_row(pattern)).execute()
        except Exception as e:
            raise PatternStoreUnavailableError("create_pattern", str(e)) from e
        if response.data:
            return _pattern_from_row(response.data[0])
        return pattern

    def update_stats(self, pattern_id: str, success: bool) -> Optional[ExtractionPattern]:
        with self._row_locks.for_row(pattern_id):
            current = self.get(pattern_id)
            if current is None:
                return None
            updated = apply_outcome(current, success)
            try:
                self.supabase.table(self.table).update({
                    'success_count': updated.success_count,
                    'failure_count': updated.failure_count,
                    'accuracy': updated.accuracy,
                }).eq('id', pattern_id).execute()
            except Exception as e:
                raise PatternStoreUnavailableError("update_stats", str(e)) from e
            return updated


class SupabaseExtractionRepository:
    """Extraction attempts in ocr_extractions, corrections in ocr_corrections."""

    def __init__(self, client, extractions_table: Optional[str] = None,
                 corrections_table: Optional[str] = None):
        self.supabase = client
        self.extractions_table = extractions_table or settings.EXTRACTIONS_TABLE
        self.corrections_table = corrections_table or settings.CORRECTIONS_TABLE

    def save_attempt(self, attempt: ExtractionAttempt) -> ExtractionAttempt:
        data = attempt.model_dump(mode='json')
        row = {
            'id': data['id'],
            'source_document_id': data['source_document_id'],
            'raw_text': data['raw_text'],
            'candidates': data['candidates_per_field'],
            'extracted_data': data['chosen_values'],
            'confidence_score': data['overall_confidence'],
            'extraction_method': data['method_used'],
            'timestamp_ms': data['timestamp_ms'],
        }
        try:
            self.supabase.table(self.extractions_table).insert(row).execute()
        except Exception as e:
            raise PatternStoreUnavailableError("save_attempt", str(e)) from e
        return attempt

    def get_attempt(self, extraction_id: str) -> Optional[ExtractionAttempt]:
        try:
            response = self.supabase.table(self.extractions_table).select('*').eq(
                'id', extraction_id
            ).limit(1).execute()
        except Exception as e:
            raise PatternStoreUnavailableError("get_attempt", str(e)) from e

        if not response.data:
            return None

        row = response.data[0]
        return ExtractionAttempt.model_validate({
            'id': row['id'],
            'source_document_id': row.get('source_document_id'),
            'raw_text': row.get('raw_text') or '',
            'candidates_per_field': row.get('candidates') or {},
            'chosen_values': row.get('extracted_data') or {},
            'overall_confidence': row.get('confidence_score') or 0,
            'method_used': row.get('extraction_method') or 'pattern',
            'timestamp_ms': row.get('timestamp_ms') or 0,
        })

    def save_correction(self, correction: Correction) -> Correction:
        try:
            self.supabase.table(self.corrections_table).insert(
                correction.model_dump(mode='json')
            ).execute()
        except Exception as e:
            raise PatternStoreUnavailableError("save_correction", str(e)) from e
        return correction

    def list_corrections(self, extraction_id: str) -> List[Correction]:
        try:
            response = self.supabase.table(self.corrections_table).select('*').eq(
                'extraction_id', extraction_id
            ).execute()
        except Exception as e:
            raise PatternStoreUnavailableError("list_corrections", str(e)) from e
        return [Correction.model_validate(row) for row in response.data or []]
