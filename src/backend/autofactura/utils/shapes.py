"""
Field-typed value shapes shared by the context/position strategies and
the correction learner.

Each shape has exactly one capture group around the value.
"""

import re

from autofactura.models.invoice import FieldId

# 3-4 letters (Ñ and & allowed) + 6 digits + 3 alphanumerics
TAX_ID_SHAPE = r'([A-ZÑ&]{3,4}\d{6}[A-Z0-9]{3})'

# D{1,2}[-/]M{1,2}[-/]Y{2,4}
DATE_SHAPE = r'(\d{1,2}[-\/]\d{1,2}[-\/]\d{2,4})'

# Optional $ - ( ) prefix, "," or space thousands groups, 0-2 decimals
MONEY_SHAPE = r'[\$\-\(\)]*\s*((?:\d{1,3}(?:[,\s]\d{3})+|\d+)(?:\.\d{0,2})?)'

TAX_ID_RE = re.compile(TAX_ID_SHAPE)
DATE_RE = re.compile(DATE_SHAPE)
MONEY_RE = re.compile(MONEY_SHAPE)

# Full RFC check: the six digits must be a YYMMDD date
_VALID_TAX_ID_RE = re.compile(
    r'^[A-ZÑ&]{3,4}\d{2}(?:0[1-9]|1[0-2])(?:0[1-9]|[12]\d|3[01])[A-Z0-9]{3}$'
)


def shape_for(field: FieldId) -> str:
    """Return the regex source of the value shape for a field."""
    if field == FieldId.TAX_ID:
        return TAX_ID_SHAPE
    if field == FieldId.DATE:
        return DATE_SHAPE
    return MONEY_SHAPE


def regex_for(field: FieldId) -> re.Pattern:
    """Return the compiled (case-sensitive) value shape for a field."""
    if field == FieldId.TAX_ID:
        return TAX_ID_RE
    if field == FieldId.DATE:
        return DATE_RE
    return MONEY_RE


def matches_tax_id_shape(value: str) -> bool:
    """
    Shape-only check: length and character classes.

    >>> matches_tax_id_shape("CFE370814QI0")
    True
    >>> matches_tax_id_shape("CFE370814010")
    True
    """
    return TAX_ID_RE.fullmatch(value or "") is not None


def is_valid_tax_id(value: str) -> bool:
    """
    Full tax id check including month 01-12 and day 01-31.

    >>> is_valid_tax_id("ABC010101ABC")
    True
    >>> is_valid_tax_id("ABC001301ABC")
    False
    """
    if not value:
        return False
    return _VALID_TAX_ID_RE.match(value.upper()) is not None
