"""
Tests for the OpenAI-backed escalated extractors.

The OpenAI client is mocked; no network calls are made.
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import io
import json
import logging
from decimal import Decimal
from unittest.mock import Mock

import pytest
from PIL import Image

from autofactura.services.llm_extractor import (
    OpenAITextExtractor,
    OpenAIVisionExtractor,
    detect_image_mime_type,
    fix_tax_id_misreads,
    normalize_llm_answer,
    tax_id_for_issuer,
)
from autofactura.utils.errors import EscalationError


ANSWER = {
    "rfc": "CFE370814010",
    "emisor": "CFE",
    "fecha": "2025-09-30",
    "importeTotal": 1842.0,
    "iva": 254.07,
    "subtotal": 1587.93,
}


def mock_client(content):
    client = Mock()
    message = Mock(content=content)
    client.chat.completions.create.return_value = Mock(choices=[Mock(message=message)])
    return client


class TestNormalizeAnswer:
    """The model's JSON answer becomes an InvoiceRecord."""

    def test_full_answer(self):
        record = normalize_llm_answer(ANSWER)

        assert record.tax_id == "CFE370814QI0"
        assert record.issuer == "CFE"
        assert record.date == "2025-09-30"
        assert record.total == Decimal("1842.00")
        assert record.tax == Decimal("254.07")
        assert record.subtotal == Decimal("1587.93")

    def test_nothing_usable(self):
        assert normalize_llm_answer({}) is None
        assert normalize_llm_answer({"rfc": None, "importeTotal": 0, "emisor": ""}) is None
        assert normalize_llm_answer("not a dict") is None

    def test_missing_tax_is_derived(self):
        record = normalize_llm_answer({"rfc": "CFE370814QI0", "importeTotal": 116, "subtotal": 100})
        assert record.tax == Decimal("16.00")

    def test_missing_subtotal_is_derived(self):
        record = normalize_llm_answer({"rfc": "CFE370814QI0", "importeTotal": 116, "iva": 16})
        assert record.subtotal == Decimal("100.00")

    def test_missing_total_is_derived(self):
        record = normalize_llm_answer({"rfc": "CFE370814QI0", "subtotal": 100, "iva": 16})
        assert record.total == Decimal("116.00")

    def test_lone_total_means_no_tax(self):
        record = normalize_llm_answer({"emisor": "Tienda OXXO Centro", "importeTotal": 50})

        assert record.subtotal == Decimal("50.00")
        assert record.tax == Decimal("0")
        assert record.tax_id == "OMA830818IW1"

    def test_day_first_date_is_normalized(self):
        record = normalize_llm_answer({"rfc": "CFE370814QI0", "fecha": "30-SEP-2025"})
        assert record.date == "2025-09-30"

    def test_invalid_tax_id_is_kept_with_warning(self, caplog):
        with caplog.at_level(logging.WARNING):
            record = normalize_llm_answer({"rfc": "ABC001301ABC", "importeTotal": 10})

        assert record.tax_id == "ABC001301ABC"
        assert "invalid tax id" in caplog.text


class TestTaxIdHelpers:

    def test_utility_tail_misread(self):
        assert fix_tax_id_misreads("CFE370814010") == "CFE370814QI0"
        assert fix_tax_id_misreads("cfe-370814-oi0") == "CFE370814QI0"

    def test_other_tax_ids_untouched(self):
        assert fix_tax_id_misreads("BAZX060710BSA") == "BAZX060710BSA"

    def test_issuer_lookup(self):
        assert tax_id_for_issuer("COMISION FEDERAL DE ELECTRICIDAD") == "CFE370814QI0"
        assert tax_id_for_issuer("Walmart Express") == "WNM9709244W4"
        assert tax_id_for_issuer("Tienda sin nombre") == ""
        assert tax_id_for_issuer("") == ""


class TestTextExtractor:

    def test_answer_is_stamped(self):
        client = mock_client(json.dumps(ANSWER))
        extractor = OpenAITextExtractor(client=client, enabled=True)

        record = extractor("RFC CFE370814010 TOTAL 1842.00")

        assert record.confidence == 95.0
        assert record.method == "text"
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["temperature"] == 0.1
        assert "RFC CFE370814010 TOTAL 1842.00" in kwargs["messages"][1]["content"]

    def test_disabled_returns_none(self):
        client = mock_client(json.dumps(ANSWER))
        extractor = OpenAITextExtractor(client=client, enabled=False)

        assert extractor("TOTAL 1842.00") is None
        client.chat.completions.create.assert_not_called()

    def test_malformed_json_raises(self):
        extractor = OpenAITextExtractor(client=mock_client("not json"), enabled=True)
        with pytest.raises(EscalationError):
            extractor("TOTAL 1842.00")

    def test_empty_content_raises(self):
        extractor = OpenAITextExtractor(client=mock_client(None), enabled=True)
        with pytest.raises(EscalationError):
            extractor("TOTAL 1842.00")

    def test_api_error_raises(self):
        client = Mock()
        client.chat.completions.create.side_effect = RuntimeError("rate limited")
        extractor = OpenAITextExtractor(client=client, enabled=True)

        with pytest.raises(EscalationError):
            extractor("TOTAL 1842.00")

    def test_unusable_answer_returns_none(self):
        extractor = OpenAITextExtractor(client=mock_client(json.dumps({"rfc": None})), enabled=True)
        assert extractor("TOTAL 1842.00") is None


class TestVisionExtractor:

    def test_image_is_sent_as_data_url(self):
        client = mock_client(json.dumps(ANSWER))
        extractor = OpenAIVisionExtractor(client=client, enabled=True, model="gpt-4o")

        record = extractor(b"\xff\xd8\xff")

        assert record.confidence == 98.0
        assert record.method == "vision"
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o"
        image_part = kwargs["messages"][1]["content"][1]
        assert image_part["image_url"]["url"].startswith("data:image/jpeg;base64,")

    def test_no_image_returns_none(self):
        client = mock_client(json.dumps(ANSWER))
        assert OpenAIVisionExtractor(client=client, enabled=True)(b"") is None
        client.chat.completions.create.assert_not_called()

    def test_png_is_labelled_as_png(self):
        client = mock_client(json.dumps(ANSWER))
        buffer = io.BytesIO()
        Image.new("RGB", (4, 4), "white").save(buffer, format="PNG")

        OpenAIVisionExtractor(client=client, enabled=True)(buffer.getvalue())

        kwargs = client.chat.completions.create.call_args.kwargs
        image_part = kwargs["messages"][1]["content"][1]
        assert image_part["image_url"]["url"].startswith("data:image/png;base64,")


class TestDetectImageMimeType:
    """Image type comes from the bytes, not the extractor default."""

    def _encode(self, image_format):
        buffer = io.BytesIO()
        Image.new("RGB", (4, 4), "white").save(buffer, format=image_format)
        return buffer.getvalue()

    def test_known_formats(self):
        assert detect_image_mime_type(self._encode("JPEG")) == "image/jpeg"
        assert detect_image_mime_type(self._encode("PNG")) == "image/png"
        assert detect_image_mime_type(self._encode("TIFF")) == "image/tiff"

    def test_unreadable_bytes_use_default(self):
        assert detect_image_mime_type(b"not an image", default="image/webp") == "image/webp"
