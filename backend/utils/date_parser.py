"""Date parsing utilities for legacy care records."""

from __future__ import annotations

from datetime import date, datetime

# Reasonable date bounds for resident records
MIN_VALID_YEAR = 1900
MAX_VALID_YEAR = 2100

# UK day-first formats are tried before anything else; legacy care systems
# never export month-first dates.
DATE_FORMATS = (
    "%Y-%m-%d",  # ISO 8601
    "%d/%m/%Y",  # UK format
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%Y/%m/%d",
    "%d %b %Y",  # 05 Mar 1941
    "%d %B %Y",  # 05 March 1941
    "%Y%m%d",  # Compact
)


def parse_flexible_date(value: str | date | None) -> date | None:
    """Parse a date from the formats seen in legacy care exports.

    Supports the following formats:
    - ISO 8601: YYYY-MM-DD, optionally with a time component
    - UK format: DD/MM/YYYY, DD-MM-YYYY, DD.MM.YYYY
    - Written: 05 Mar 1941 / 05 March 1941
    - Compact: YYYYMMDD

    Validates that:
    - The date is a real calendar date (no 30 Feb, etc.)
    - The year is between 1900 and 2100

    Args:
        value: Date string, date/datetime object, or None

    Returns:
        Parsed date, or None if parsing fails or input is None

    Examples:
        >>> parse_flexible_date("1941-03-05")
        datetime.date(1941, 3, 5)
        >>> parse_flexible_date("05/03/1941")
        datetime.date(1941, 3, 5)
        >>> parse_flexible_date("2024-02-30")  # Invalid date
        None
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = str(value).strip()
    if not text:
        return None

    if "T" in text and len(text) > 10:
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        except ValueError:
            parsed = None
        if parsed and MIN_VALID_YEAR <= parsed.year <= MAX_VALID_YEAR:
            return parsed

    for fmt in DATE_FORMATS:
        try:
            parsed = datetime.strptime(text, fmt).date()
        except ValueError:
            # strptime raises ValueError for invalid dates like 30 Feb
            continue
        if parsed.year < MIN_VALID_YEAR or parsed.year > MAX_VALID_YEAR:
            continue
        return parsed

    return None


def format_uk_date(value: date) -> str:
    """Format a date the way UK legacy systems export it (DD/MM/YYYY)."""
    return value.strftime("%d/%m/%Y")


def age_on(date_of_birth: date, reference: date) -> int:
    """Return the age in whole years on the reference date."""
    years = reference.year - date_of_birth.year
    if (reference.month, reference.day) < (date_of_birth.month, date_of_birth.day):
        years -= 1
    return years
