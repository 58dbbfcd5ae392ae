"""NHS number checks (modulus 11)."""

from __future__ import annotations

import re

_NON_DIGITS = re.compile(r"[\s\-]")
_TEN_DIGITS = re.compile(r"^\d{10}$")

CHECK_WEIGHTS = (10, 9, 8, 7, 6, 5, 4, 3, 2)


def normalize_nhs_number(value: object) -> str:
    """Strip the spaces and dashes legacy systems put in NHS numbers."""
    return _NON_DIGITS.sub("", str(value or ""))


def compute_check_digit(first_nine: str) -> int | None:
    """Compute the NHS modulus 11 check digit.

    Args:
        first_nine: The first nine digits of the number

    Returns:
        The check digit, or None when the digits cannot form a valid number
        (a computed value of 10 is never issued)
    """
    if len(first_nine) != 9 or not first_nine.isdigit():
        return None
    total = sum(int(d) * w for d, w in zip(first_nine, CHECK_WEIGHTS))
    remainder = total % 11
    check = 0 if remainder == 0 else 11 - remainder
    if check == 10:
        return None
    return check


def is_valid_format(value: object) -> bool:
    return bool(_TEN_DIGITS.match(normalize_nhs_number(value)))


def is_valid_nhs_number(value: object) -> bool:
    """Return True if the value is a 10 digit NHS number with a valid check digit."""
    digits = normalize_nhs_number(value)
    if not _TEN_DIGITS.match(digits):
        return False
    return compute_check_digit(digits[:9]) == int(digits[9])


def complete_nhs_number(value: object) -> str | None:
    """Append the check digit to a nine digit NHS number prefix."""
    digits = normalize_nhs_number(value)
    check = compute_check_digit(digits)
    if check is None:
        return None
    return f"{digits}{check}"
