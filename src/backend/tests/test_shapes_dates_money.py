"""
Tests for the value helpers shared by every extraction strategy.

Tests cover:
- Tax id (RFC) shape vs. full validity
- Receipt date normalization (day first, Spanish months, missing years)
- Amount parsing with OCR noise
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from datetime import date
from decimal import Decimal

from autofactura.models.invoice import FieldId
from autofactura.utils.dates import normalize_date
from autofactura.utils.money import ZERO, amounts_agree, format_money, parse_amount
from autofactura.utils.shapes import is_valid_tax_id, matches_tax_id_shape, regex_for


class TestTaxIdShape:
    """Shape match is structural only; validity also checks the embedded date."""

    def test_utility_tax_id_matches_shape(self):
        assert matches_tax_id_shape("CFE370814QI0")

    def test_digit_tail_still_matches_shape(self):
        """The OCR misread of QI0 as 010 is indistinguishable by shape alone."""
        assert matches_tax_id_shape("CFE370814010")

    def test_four_letter_prefix(self):
        assert matches_tax_id_shape("BAZX060710BSA")

    def test_wrong_lengths_rejected(self):
        assert not matches_tax_id_shape("CFE37081QI0")
        assert not matches_tax_id_shape("CF370814QI0")
        assert not matches_tax_id_shape("")

    def test_month_out_of_range_is_invalid(self):
        assert not is_valid_tax_id("ABC001301ABC")

    def test_first_of_january_is_valid(self):
        assert is_valid_tax_id("ABC010101ABC")

    def test_day_out_of_range_is_invalid(self):
        assert not is_valid_tax_id("ABC010132ABC")

    def test_validity_ignores_case(self):
        assert is_valid_tax_id("cfe370814qi0")

    def test_field_regex_finds_tax_id_in_line(self):
        match = regex_for(FieldId.TAX_ID).search("R.F.C. CFE370814QI0 MEXICO")
        assert match.group(1) == "CFE370814QI0"


class TestNormalizeDate:
    """Receipt dates end up as YYYY-MM-DD."""

    def test_day_first_with_slashes(self):
        assert normalize_date("15/03/2024") == "2024-03-15"

    def test_two_digit_year_uses_current_century(self):
        assert normalize_date("15-03-24", today=date(2025, 6, 1)) == "2024-03-15"

    def test_spanish_month_without_year(self):
        assert normalize_date("15-MAR", today=date(2025, 6, 1)) == "2025-03-15"

    def test_spanish_month_with_year(self):
        assert normalize_date("30-SEP-2025") == "2025-09-30"

    def test_month_first_is_swapped(self):
        assert normalize_date("03/25/2024") == "2024-03-25"

    def test_iso_input_is_kept(self):
        assert normalize_date("2025-10-17") == "2025-10-17"

    def test_unreadable_text_is_returned_stripped(self):
        assert normalize_date("  sin fecha ") == "sin fecha"

    def test_impossible_date_is_returned_as_is(self):
        assert normalize_date("31/02/2024") == "31/02/2024"

    def test_empty(self):
        assert normalize_date("") == ""


class TestParseAmount:
    """Amounts are Decimals rounded to cents; unreadable input is zero."""

    def test_thousands_separator_and_symbol(self):
        assert parse_amount("$1,160.00") == Decimal("1160.00")

    def test_ocr_space_inside_number(self):
        assert parse_amount("1 160.50") == Decimal("1160.50")

    def test_parentheses_and_minus_are_dropped(self):
        assert parse_amount("(116.00)") == Decimal("116.00")
        assert parse_amount("-$116") == Decimal("116.00")

    def test_unreadable_is_zero(self):
        assert parse_amount("abc") == ZERO
        assert parse_amount(None) == ZERO
        assert parse_amount("") == ZERO

    def test_amounts_agree_within_a_cent(self):
        assert amounts_agree(Decimal("116.00"), Decimal("116.01"))
        assert not amounts_agree(Decimal("116.00"), Decimal("116.02"))

    def test_format_money(self):
        assert format_money(Decimal("1234.5")) == "$1,234.50"
        assert format_money(None) == "N/A"
