"""
Date normalization for receipt dates.

Mexican receipts print day first. Month may be a Spanish abbreviation
(15-MAR, 15/MAR/24) and the year may be missing or two digits.
"""

import re
from datetime import date
from typing import Optional

ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})$")

SPANISH_MONTHS = {
    'ENE': 1, 'FEB': 2, 'MAR': 3, 'ABR': 4,
    'MAY': 5, 'JUN': 6, 'JUL': 7, 'AGO': 8,
    'SEP': 9, 'OCT': 10, 'NOV': 11, 'DIC': 12,
}


def normalize_date(date_str: str, today: Optional[date] = None) -> str:
    """
    Normalize a receipt date to YYYY-MM-DD.

    Args:
        date_str: Raw date text, D{1,2}[-/]M{1,2}[-/]Y{2,4}, D-MON[-Y] or already ISO
        today: Reference date for missing years and century (defaults to today)

    Returns:
        ISO date string, or the stripped input when it cannot be read as a date

    Examples:
        >>> normalize_date("15/03/2024")
        '2024-03-15'
        >>> normalize_date("03-25-24")
        '2024-03-25'
    """
    if not date_str:
        return ""

    raw = date_str.strip()

    iso = ISO_DATE_RE.match(raw)
    if iso:
        try:
            return date(int(iso.group(1)), int(iso.group(2)), int(iso.group(3))).isoformat()
        except ValueError:
            return raw

    parts = re.split(r'[-/]', raw)
    if len(parts) < 2:
        return raw

    today = today or date.today()
    day_text, month_text = parts[0].strip(), parts[1].strip()
    year_text = parts[2].strip() if len(parts) > 2 else ""

    if month_text.isdigit():
        month = int(month_text)
    else:
        month = SPANISH_MONTHS.get(month_text.upper()[:3])
        if month is None:
            return raw

    if not day_text.isdigit():
        return raw
    day = int(day_text)

    if not year_text:
        year = today.year
    elif not year_text.isdigit():
        return raw
    elif len(year_text) == 2:
        year = (today.year // 100) * 100 + int(year_text)
    else:
        year = int(year_text)

    # MM-DD-YYYY slipped through
    if month > 12 and day <= 12:
        day, month = month, day

    try:
        return date(year, month, day).isoformat()
    except ValueError:
        return raw
