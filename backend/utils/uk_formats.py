"""UK contact-detail formats: phone numbers, postcodes, email addresses."""

from __future__ import annotations

import re

UK_PHONE_PATTERN = re.compile(r"^(\+44|0)[0-9\s\-\(\)]{8,15}$")
UK_POSTCODE_PATTERN = re.compile(r"^[A-Z]{1,2}[0-9][A-Z0-9]?\s?[0-9][A-Z]{2}$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

_PHONE_PUNCTUATION = re.compile(r"[\s\-\(\)]")


def is_uk_phone(value: object) -> bool:
    return bool(UK_PHONE_PATTERN.match(str(value or "").strip()))


def normalize_phone_uk(value: object) -> str:
    """Normalize a UK phone number to international form (+44...)."""
    digits = _PHONE_PUNCTUATION.sub("", str(value or "").strip())
    if digits.startswith("0"):
        return "+44" + digits[1:]
    return digits


def phone_to_national(value: object) -> str:
    """Convert an international UK number back to national form (0...)."""
    text = _PHONE_PUNCTUATION.sub("", str(value or "").strip())
    if text.startswith("+44"):
        return "0" + text[3:]
    return text


def is_uk_postcode(value: object) -> bool:
    return bool(UK_POSTCODE_PATTERN.match(str(value or "").strip().upper()))


def normalize_postcode_uk(value: object) -> str:
    """Uppercase a postcode and put the single space before the inward code."""
    compact = re.sub(r"\s+", "", str(value or "")).upper()
    if len(compact) > 3:
        return f"{compact[:-3]} {compact[-3:]}"
    return compact


def is_email(value: object) -> bool:
    return bool(EMAIL_PATTERN.match(str(value or "").strip()))
