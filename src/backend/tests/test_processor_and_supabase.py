"""
Tests for document processing and the Supabase persistence adapters.

OCR and the Supabase client are mocked.
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from unittest.mock import Mock

import pytest

from autofactura.models.invoice import Correction, ExtractionAttempt, FieldId
from autofactura.services.processor import DocumentProcessor, compute_file_hash
from autofactura.services.repositories import (
    SupabaseExtractionRepository,
    SupabasePatternRepository,
)
from autofactura.utils.candidates import METHOD_PATTERN, FieldCandidate
from autofactura.utils.errors import PatternStoreUnavailableError


PATTERN_ROW = {
    'id': 'p1',
    'field_name': 'total',
    'pattern_type': 'regex',
    'pattern_value': r'total[:\s]*\$?\s*([\d,\s]+\.?\d{0,2})',
    'confidence_weight': 1.5,
    'success_count': 1,
    'failure_count': 0,
    'accuracy': 100.0,
}


class TestDocumentProcessor:
    """OCR text goes to the engine; images also go along for vision."""

    def _processor(self, text="TOTAL $116.00"):
        engine = Mock()
        ocr = Mock()
        ocr.extract_text_from_file.return_value = text
        return DocumentProcessor(engine=engine, ocr_service=ocr), engine, ocr

    def test_image_bytes_are_forwarded(self):
        processor, engine, ocr = self._processor()
        data = b"\xff\xd8\xff fake jpeg"

        processor.process(data, "image/jpeg", "ticket.jpg")

        ocr.extract_text_from_file.assert_called_once_with(data, "image/jpeg", "ticket.jpg")
        engine.extract.assert_called_once_with(
            "TOTAL $116.00",
            image_bytes=data,
            source_document_id=compute_file_hash(data),
        )

    def test_pdf_sends_text_only(self):
        processor, engine, _ = self._processor()

        processor.process(b"%PDF-1.4", "application/pdf", "recibo.pdf", source_document_id="doc-7")

        kwargs = engine.extract.call_args.kwargs
        assert kwargs["image_bytes"] is None
        assert kwargs["source_document_id"] == "doc-7"

    def test_empty_ocr_still_reaches_engine(self):
        processor, engine, _ = self._processor(text="")

        processor.process(b"blank", "image/png", "blank.png")

        assert engine.extract.call_args.args[0] == ""

    def test_hash_is_stable(self):
        assert compute_file_hash(b"abc") == compute_file_hash(b"abc")
        assert compute_file_hash(b"abc") != compute_file_hash(b"abd")


class TestSupabasePatternRepository:

    def test_list_patterns_by_field(self):
        client = Mock()
        query = client.table.return_value.select.return_value
        query.eq.return_value.execute.return_value = Mock(data=[PATTERN_ROW])

        patterns = SupabasePatternRepository(client, table="extraction_patterns").list_patterns(FieldId.TOTAL)

        client.table.assert_called_with("extraction_patterns")
        query.eq.assert_called_with('field_name', 'total')
        assert len(patterns) == 1
        assert patterns[0].id == 'p1'
        assert patterns[0].field == FieldId.TOTAL
        assert patterns[0].weight == 1.5

    def test_unreadable_row_is_skipped(self):
        client = Mock()
        bad_row = dict(PATTERN_ROW, id='p2', field_name='folio')
        client.table.return_value.select.return_value.execute.return_value = Mock(data=[bad_row, PATTERN_ROW])

        patterns = SupabasePatternRepository(client).list_patterns()

        assert [p.id for p in patterns] == ['p1']

    def test_client_failure_is_unavailable(self):
        client = Mock()
        client.table.return_value.select.return_value.execute.side_effect = ConnectionError("down")

        with pytest.raises(PatternStoreUnavailableError):
            SupabasePatternRepository(client).list_patterns()

    def test_count_uses_exact_count(self):
        client = Mock()
        client.table.return_value.select.return_value.execute.return_value = Mock(count=14, data=[])

        assert SupabasePatternRepository(client).count() == 14
        client.table.return_value.select.assert_called_with('id', count='exact')

    def test_update_stats_writes_counts(self):
        client = Mock()
        lookup = client.table.return_value.select.return_value.eq.return_value.limit.return_value
        lookup.execute.return_value = Mock(data=[PATTERN_ROW])

        updated = SupabasePatternRepository(client).update_stats('p1', success=False)

        assert updated.success_count == 1
        assert updated.failure_count == 1
        assert updated.accuracy == 50.0
        client.table.return_value.update.assert_called_with({
            'success_count': 1,
            'failure_count': 1,
            'accuracy': 50.0,
        })

    def test_update_stats_unknown_row(self):
        client = Mock()
        lookup = client.table.return_value.select.return_value.eq.return_value.limit.return_value
        lookup.execute.return_value = Mock(data=[])

        assert SupabasePatternRepository(client).update_stats('missing', success=True) is None
        client.table.return_value.update.assert_not_called()


class TestSupabaseExtractionRepository:

    def test_save_attempt_row(self):
        client = Mock()
        attempt = ExtractionAttempt(
            raw_text="TOTAL 116.00",
            candidates_per_field={FieldId.TOTAL: FieldCandidate("116.00", 100, METHOD_PATTERN, pattern_id="p1")},
            chosen_values={FieldId.TOTAL: "116.00"},
            overall_confidence=100,
        )

        SupabaseExtractionRepository(client).save_attempt(attempt)

        row = client.table.return_value.insert.call_args.args[0]
        assert row['id'] == attempt.id
        assert row['extracted_data'] == {'total': '116.00'}
        assert row['candidates']['total']['pattern_id'] == 'p1'
        assert row['confidence_score'] == 100

    def test_get_attempt_round_trip_of_row(self):
        client = Mock()
        lookup = client.table.return_value.select.return_value.eq.return_value.limit.return_value
        lookup.execute.return_value = Mock(data=[{
            'id': 'e1',
            'source_document_id': 'doc-1',
            'raw_text': 'TOTAL 116.00',
            'candidates': {
                'total': {'value': '116.00', 'confidence': 100, 'method': 'pattern',
                          'pattern_id': 'p1', 'position': None},
            },
            'extracted_data': {'total': '116.00'},
            'confidence_score': 100,
            'extraction_method': 'pattern',
            'timestamp_ms': 1700000000000,
        }])

        attempt = SupabaseExtractionRepository(client).get_attempt('e1')

        assert attempt.source_document_id == 'doc-1'
        assert attempt.candidates_per_field[FieldId.TOTAL].pattern_id == 'p1'
        assert attempt.chosen_values[FieldId.TOTAL] == '116.00'

    def test_missing_attempt(self):
        client = Mock()
        lookup = client.table.return_value.select.return_value.eq.return_value.limit.return_value
        lookup.execute.return_value = Mock(data=[])

        assert SupabaseExtractionRepository(client).get_attempt('missing') is None

    def test_correction_insert_failure(self):
        client = Mock()
        client.table.return_value.insert.return_value.execute.side_effect = ConnectionError("down")
        correction = Correction(extraction_id='e1', field_name=FieldId.TOTAL, corrected_value='118.00')

        with pytest.raises(PatternStoreUnavailableError):
            SupabaseExtractionRepository(client).save_correction(correction)
