"""
Money parsing for Mexican receipts.

Receipts print amounts US-style (1,234.56) but OCR frequently injects
spaces inside the number (1 234.56) or around the decimal point.
Negative markers (-, parentheses) are accepted and dropped by
parse_amount since invoice amounts are never negative.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Optional
import re

CENTS = Decimal("0.01")
ZERO = Decimal("0")

# Receipts over this are assumed to be OCR noise (joined numbers)
MAX_RECEIPT_AMOUNT = Decimal("10000000")


class MoneyFormat(Enum):
    """Money format locale hints."""
    US = "US"  # 1,234.56
    EUROPEAN = "EUROPEAN"  # 1.234,56
    AUTO = "AUTO"


def parse_money(
    amount_str: str,
    format_hint: Optional[MoneyFormat] = None,
    allow_negative: bool = False
) -> Optional[Decimal]:
    """
    Parse a money string.

    Args:
        amount_str: String containing amount (e.g., "$1,234.56", "MXN 1 234.56")
        format_hint: Optional locale hint (US, EUROPEAN, AUTO)
        allow_negative: Whether to allow negative amounts

    Returns:
        Decimal amount or None if parsing fails

    Examples:
        >>> parse_money("$1,234.56")
        Decimal('1234.56')
        >>> parse_money("($12.34)", allow_negative=True)
        Decimal('-12.34')
    """
    if not amount_str or not isinstance(amount_str, str):
        return None

    is_negative = False
    cleaned = amount_str.strip()

    if cleaned.startswith('(') and cleaned.endswith(')'):
        if not allow_negative:
            return None
        is_negative = True
        cleaned = cleaned[1:-1].strip()

    if cleaned.startswith('-'):
        if not allow_negative:
            return None
        is_negative = True
        cleaned = cleaned[1:].strip()

    # Currency symbols and codes (MXN, USD, ...)
    cleaned = re.sub(r'[$€]\s*|[A-Z]{3}\s*', '', cleaned, flags=re.IGNORECASE)
    cleaned = cleaned.strip()

    if not cleaned:
        return None

    detected_format = format_hint or MoneyFormat.AUTO
    if detected_format == MoneyFormat.AUTO:
        detected_format = _detect_money_format(cleaned)

    try:
        if detected_format == MoneyFormat.EUROPEAN:
            result = Decimal(cleaned.replace('.', '').replace(' ', '').replace(',', '.'))
        else:
            result = Decimal(cleaned.replace(',', '').replace(' ', ''))
    except (InvalidOperation, ValueError):
        return None

    if not result.is_finite() or abs(result) > MAX_RECEIPT_AMOUNT:
        return None

    return -result if is_negative else result


def _detect_money_format(amount_str: str) -> MoneyFormat:
    """European only when a dot thousands separator precedes a 2-digit comma decimal."""
    if re.search(r'\.\d{3},\d{2}$', amount_str):
        return MoneyFormat.EUROPEAN
    return MoneyFormat.US


def parse_amount(value: Optional[str]) -> Decimal:
    """
    Parse an extracted amount into a non-negative Decimal with 2 places.

    Anything unparseable is Decimal('0'), which the rest of the core
    treats as "missing".

    >>> parse_amount("$1,160.00")
    Decimal('1160.00')
    >>> parse_amount("(116.0)")
    Decimal('116.00')
    >>> parse_amount("n/a")
    Decimal('0')
    """
    if not value:
        return ZERO

    cleaned = value.strip().strip('()').lstrip('-').strip()
    result = parse_money(cleaned, format_hint=MoneyFormat.US)
    if result is None:
        return ZERO
    return result.quantize(CENTS, rounding=ROUND_HALF_UP)


def amounts_agree(a: Decimal, b: Decimal, tolerance: Decimal = CENTS) -> bool:
    """Numeric equality within tolerance (default one cent)."""
    return abs(a - b) <= tolerance


def format_money(amount: Optional[Decimal]) -> str:
    """
    Format a Decimal amount as pesos.

    >>> format_money(Decimal('1234.5'))
    '$1,234.50'
    """
    if amount is None:
        return 'N/A'
    return f"${amount.quantize(CENTS, rounding=ROUND_HALF_UP):,}"
