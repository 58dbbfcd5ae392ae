"""Shared utility functions for the care records migration backend."""

from .date_parser import age_on, format_uk_date, parse_flexible_date
from .nhs_number import complete_nhs_number, is_valid_nhs_number, normalize_nhs_number
from .uk_formats import (
    is_email,
    is_uk_phone,
    is_uk_postcode,
    normalize_phone_uk,
    normalize_postcode_uk,
    phone_to_national,
)

__all__ = [
    "age_on",
    "complete_nhs_number",
    "format_uk_date",
    "is_email",
    "is_uk_phone",
    "is_uk_postcode",
    "is_valid_nhs_number",
    "normalize_nhs_number",
    "normalize_phone_uk",
    "normalize_postcode_uk",
    "parse_flexible_date",
    "phone_to_national",
]
