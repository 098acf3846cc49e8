"""
Test suite for the escalation policy.

Tests cover:
- OCR text quality classification
- Vision escalation on garbage text, falling through to text escalation
- Text escalation on low confidence or missing critical fields
- Timeouts, exceptions and malformed answers leave the cheap result in place
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import threading
from decimal import Decimal
from unittest.mock import Mock

from autofactura.models.invoice import FieldId, InvoiceRecord
from autofactura.services.escalation import (
    EscalationPolicy,
    EscalationState,
    assess_text_quality,
)


CLEAN_TEXT = (
    "COMISION FEDERAL DE ELECTRICIDAD RFC: CFE370814QI0 "
    "FECHA: 15/03/2024 TOTAL $116.00"
)
GARBAGE_TEXT = "NN " * 20

RECORD = InvoiceRecord(
    tax_id="CFE370814QI0",
    issuer="CFE",
    date="2024-03-15",
    total=Decimal("116.00"),
    tax=Decimal("16.00"),
    subtotal=Decimal("100.00"),
)

COMPLETE_VALUES = {
    FieldId.TAX_ID: "CFE370814QI0",
    FieldId.ISSUER: "CFE",
    FieldId.TOTAL: "116.00",
}


class TestTextQuality:

    def test_clean_text(self):
        quality = assess_text_quality(CLEAN_TEXT)
        assert not quality.is_garbage
        assert quality.garbage_tokens == 0

    def test_too_many_garbage_tokens(self):
        quality = assess_text_quality(GARBAGE_TEXT)
        assert quality.garbage_tokens == 20
        assert quality.is_garbage

    def test_few_normal_characters(self):
        quality = assess_text_quality("#" * 60)
        assert quality.normal_char_ratio == 0.0
        assert quality.is_garbage

    def test_short_text(self):
        assert assess_text_quality("RFC").is_garbage
        assert assess_text_quality("").is_garbage


class TestVisionEscalation:
    """Garbage text with an image goes to the vision extractor first."""

    def test_vision_replaces_cheap_result(self):
        vision = Mock(return_value=RECORD)
        text = Mock(return_value=RECORD)
        policy = EscalationPolicy(text_extractor=text, vision_extractor=vision)

        result = policy.resolve(GARBAGE_TEXT, {}, 30, False, image_bytes=b"jpeg")

        assert result.state == EscalationState.ACCEPTED
        assert result.method_used == "vision"
        assert result.record.confidence == 98.0
        assert result.record.method == "vision"
        assert result.record.total == Decimal("116.00")
        assert EscalationState.ESCALATED_VISION in result.trail
        vision.assert_called_once_with(b"jpeg")
        text.assert_not_called()

    def test_vision_nothing_falls_through_to_text(self):
        vision = Mock(return_value=None)
        text = Mock(return_value=RECORD)
        policy = EscalationPolicy(text_extractor=text, vision_extractor=vision)

        result = policy.resolve(GARBAGE_TEXT, {}, 30, False, image_bytes=b"jpeg")

        assert result.method_used == "text"
        assert result.record.confidence == 95.0
        assert result.trail[-2:] == [EscalationState.ESCALATED_TEXT, EscalationState.ACCEPTED]

    def test_no_image_skips_vision(self):
        vision = Mock(return_value=RECORD)
        policy = EscalationPolicy(vision_extractor=vision)

        result = policy.resolve(GARBAGE_TEXT, {}, 30, False)

        vision.assert_not_called()
        assert result.state == EscalationState.REJECTED

    def test_disabled_extractor_is_skipped(self):
        vision = Mock(return_value=RECORD)
        vision.is_enabled = Mock(return_value=False)
        policy = EscalationPolicy(vision_extractor=vision)

        result = policy.resolve(GARBAGE_TEXT, {}, 30, False, image_bytes=b"jpeg")

        vision.assert_not_called()
        assert result.record is None


class TestTextEscalation:
    """Low confidence or a missing critical field goes to the text extractor."""

    def test_confident_complete_result_is_kept(self):
        text = Mock(return_value=RECORD)
        policy = EscalationPolicy(text_extractor=text)

        result = policy.resolve(CLEAN_TEXT, COMPLETE_VALUES, 90, True)

        text.assert_not_called()
        assert result.state == EscalationState.ACCEPTED
        assert result.method_used == "pattern"
        assert result.record is None

    def test_low_confidence_escalates(self):
        text = Mock(return_value=RECORD)
        policy = EscalationPolicy(text_extractor=text)

        result = policy.resolve(CLEAN_TEXT, COMPLETE_VALUES, 70, True)

        text.assert_called_once_with(CLEAN_TEXT)
        assert result.method_used == "text"

    def test_missing_critical_field_escalates(self):
        text = Mock(return_value=RECORD)
        policy = EscalationPolicy(text_extractor=text)
        values = {FieldId.TAX_ID: "CFE370814QI0", FieldId.ISSUER: "", FieldId.TOTAL: "116.00"}

        result = policy.resolve(CLEAN_TEXT, values, 90, True)

        assert result.method_used == "text"

    def test_zero_amount_counts_as_missing(self):
        policy = EscalationPolicy()
        values = {FieldId.TAX_ID: "CFE370814QI0", FieldId.ISSUER: "CFE", FieldId.TOTAL: "0.00"}
        assert policy.missing_critical_fields(values) == [FieldId.TOTAL]

    def test_critical_fields_are_configurable(self):
        text = Mock(return_value=RECORD)
        policy = EscalationPolicy(text_extractor=text, critical_fields=["total"])
        values = {FieldId.TOTAL: "116.00"}

        policy.resolve(CLEAN_TEXT, values, 90, True)

        text.assert_not_called()

    def test_dict_answer_is_validated(self):
        text = Mock(return_value={"tax_id": "CFE370814QI0", "total": "116.00"})
        policy = EscalationPolicy(text_extractor=text)

        result = policy.resolve(CLEAN_TEXT, {}, 30, False)

        assert result.record.total == Decimal("116.00")
        assert result.record.confidence == 95.0


class TestEscalationFailures:
    """Failures inside an escalated extractor never propagate."""

    def test_exception_keeps_cheap_result(self):
        text = Mock(side_effect=RuntimeError("boom"))
        policy = EscalationPolicy(text_extractor=text)

        result = policy.resolve(CLEAN_TEXT, {}, 65, True)

        assert result.state == EscalationState.ACCEPTED
        assert result.method_used == "pattern"
        assert result.record is None

    def test_timeout_keeps_cheap_result(self):
        release = threading.Event()

        def slow(_text):
            release.wait(2)
            return RECORD

        policy = EscalationPolicy(text_extractor=slow, timeout=0.05)
        try:
            result = policy.resolve(CLEAN_TEXT, {}, 30, False)
        finally:
            release.set()

        assert result.state == EscalationState.REJECTED
        assert result.record is None

    def test_malformed_output_is_ignored(self):
        text = Mock(return_value="not a record")
        policy = EscalationPolicy(text_extractor=text)

        result = policy.resolve(CLEAN_TEXT, {}, 65, True)

        assert result.record is None
        assert result.method_used == "pattern"

    def test_invalid_amount_is_ignored(self):
        text = Mock(return_value={"total": "not a number"})
        policy = EscalationPolicy(text_extractor=text)

        assert policy.resolve(CLEAN_TEXT, {}, 65, True).record is None

    def test_rejected_without_extractors(self):
        result = EscalationPolicy().resolve(CLEAN_TEXT, {}, 30, False)

        assert result.state == EscalationState.REJECTED
        assert result.trail == [
            EscalationState.START,
            EscalationState.RAN_CHEAP_EXTRACTION,
            EscalationState.REJECTED,
        ]
