"""Value-shape compatibility between sampled legacy values and canonical fields.

A field literally named "Notes" whose values all look like identifiers should
not map to free text; these scores let the engine see that.
"""

from __future__ import annotations

import re
from datetime import date
from decimal import Decimal
from typing import Any, Iterable

from utils import is_email, is_uk_phone, is_uk_postcode, parse_flexible_date
from utils.nhs_number import is_valid_format, is_valid_nhs_number

from .canonical_schema import CanonicalField, ValueShape
from .medications import DOSE_PATTERN

_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9\-_.]{0,39}$")
_PERSON_NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z'\-\. ,()]{0,80}$")
_LIST_DELIMITERS = re.compile(r"[;,|\n]")

# Score when no values were sampled: the shape is unknown, not wrong
NEUTRAL_SCORE = 0.5

NO_KNOWN_VALUES = frozenset({"none", "nkda", "nil", "n/a", "no known allergies"})


def non_empty(values: Iterable[Any]) -> list[Any]:
    result = []
    for value in values:
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        if isinstance(value, (list, tuple, dict)) and not value:
            continue
        result.append(value)
    return result


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float, Decimal)):
        return True
    try:
        float(str(value).replace(",", ""))
        return True
    except ValueError:
        return False


def _identifier_like(value: Any) -> bool:
    if isinstance(value, (int,)) and not isinstance(value, bool):
        return True
    if not isinstance(value, str):
        return False
    text = value.strip()
    if not _IDENTIFIER_PATTERN.match(text) or not any(c.isdigit() for c in text):
        return False
    # Dashed or dotted digit runs are dates, not identifiers
    if any(sep in text for sep in "-.") and parse_flexible_date(text):
        return False
    return True


def value_score(value: Any, target: CanonicalField) -> float:
    """Score one non-empty value against a canonical field (0.0 to 1.0)."""
    shape = target.shape
    text = value.strip() if isinstance(value, str) else str(value)

    if shape == ValueShape.IDENTIFIER:
        return 1.0 if _identifier_like(value) else 0.0

    if shape == ValueShape.NHS_NUMBER:
        if is_valid_nhs_number(text):
            return 1.0
        return 0.5 if is_valid_format(text) else 0.0

    if shape == ValueShape.PERSON_NAME:
        if not isinstance(value, str) or not _PERSON_NAME_PATTERN.match(text):
            return 0.0
        return 1.0 if len(text.split()) <= 6 else 0.3

    if shape == ValueShape.DATE:
        if isinstance(value, date):
            return 1.0
        return 1.0 if parse_flexible_date(text) else 0.0

    if shape == ValueShape.PHONE:
        return 1.0 if is_uk_phone(text) else 0.0

    if shape == ValueShape.EMAIL:
        return 1.0 if is_email(text) else 0.0

    if shape == ValueShape.POSTCODE:
        return 1.0 if is_uk_postcode(text) else 0.0

    if shape == ValueShape.NUMERIC:
        if not _is_number(value):
            return 0.0
        if target.value_range:
            number = float(str(value).replace(",", ""))
            low, high = target.value_range
            return 1.0 if low <= number <= high else 0.3
        return 1.0

    if shape == ValueShape.ENUM:
        return 1.0 if text.lower() in target.allowed_values else 0.0

    if shape == ValueShape.MEDICATION_LIST:
        if isinstance(value, (list, tuple)):
            return 1.0
        if DOSE_PATTERN.search(text):
            return 1.0
        if _LIST_DELIMITERS.search(text) and any(c.isalpha() for c in text):
            return 0.4
        return 0.1

    if shape == ValueShape.TEXT_LIST:
        if isinstance(value, (list, tuple)):
            return 1.0
        if text.lower() in NO_KNOWN_VALUES or (
            _LIST_DELIMITERS.search(text) and any(c.isalpha() for c in text)
        ):
            return 1.0
        return 0.7 if any(c.isalpha() for c in text) and not _identifier_like(value) else 0.1

    if shape == ValueShape.FREE_TEXT:
        if not isinstance(value, str):
            return 0.0
        if " " in text and any(c.isalpha() for c in text):
            return 1.0
        if _identifier_like(value):
            return 0.0
        return 0.4

    # SHORT_TEXT
    if isinstance(value, (list, tuple, dict)):
        return 0.0
    if _is_number(value):
        return 0.8
    return 1.0 if len(text) <= 40 else 0.3


def shape_score(values: Iterable[Any], target: CanonicalField) -> float:
    """Mean compatibility of sampled values with a canonical field.

    Identifier fields are additionally scaled by the share of distinct values,
    since identifiers are unique per resident.
    """
    sample = non_empty(values)
    if not sample:
        return NEUTRAL_SCORE

    scores = [value_score(v, target) for v in sample]
    score = sum(scores) / len(scores)

    if target.shape == ValueShape.IDENTIFIER:
        distinct = len({str(v).strip() for v in sample})
        score *= distinct / len(sample)
    return round(score, 4)
