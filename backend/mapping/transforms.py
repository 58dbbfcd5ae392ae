"""Named, invertible value transforms applied by accepted field mappings.

Each transform declares its inverse and whether it is lossy. A lossy
transform may drop information the inverse cannot restore (letter case,
spacing, default values filled in); round-tripping through it reproduces the
logical value only modulo that loss.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Callable

from utils import (
    format_uk_date,
    normalize_nhs_number,
    normalize_phone_uk,
    normalize_postcode_uk,
    parse_flexible_date,
    phone_to_national,
)

from .canonical_schema import CARE_LEVELS, CanonicalField, FUNDING_TYPES, ValueShape
from .medications import decompose_medications, medications_to_text

LIST_DELIMITERS = re.compile(r"\s*[;|\n]\s*|\s*,\s*")


class TransformError(ValueError):
    """Raised when a value cannot be transformed."""


@dataclass(frozen=True)
class Transform:
    """A value transform with its inverse."""

    name: str
    forward: Callable[[Any], Any]
    inverse: Callable[[Any], Any]
    lossy: bool = False
    description: str = ""


def _identity(value: Any) -> Any:
    return value


def _strip(value: Any) -> Any:
    if isinstance(value, str):
        return " ".join(value.split())
    return value


def _title_case(value: Any) -> Any:
    if value is None:
        return None
    text = " ".join(str(value).split())
    # Capitalize each alphabetic run so O'Brien and Smith-Jones survive
    return re.sub(r"[A-Za-z]+", lambda m: m.group(0).capitalize(), text)


def _parse_date(value: Any) -> Any:
    if value is None:
        return None
    parsed = parse_flexible_date(value)
    if parsed is None:
        raise TransformError(f"Unrecognized date: {value!r}")
    return parsed.isoformat()


def _format_date(value: Any) -> Any:
    if value is None:
        return None
    parsed = value if isinstance(value, date) else date.fromisoformat(str(value))
    return format_uk_date(parsed)


def _to_number(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    if isinstance(value, Decimal):
        return float(value)
    text = str(value).replace(",", "").strip()
    try:
        number = float(text)
    except ValueError as e:
        raise TransformError(f"Not a number: {value!r}") from e
    return int(number) if number.is_integer() and "." not in text else number


def _nhs_number(value: Any) -> Any:
    if value is None:
        return None
    return normalize_nhs_number(value)


def _phone(value: Any) -> Any:
    if value is None:
        return None
    return normalize_phone_uk(value)


def _phone_inverse(value: Any) -> Any:
    if value is None:
        return None
    return phone_to_national(value)


def _postcode(value: Any) -> Any:
    if value is None:
        return None
    return normalize_postcode_uk(value)


def _lowercase(value: Any) -> Any:
    if value is None:
        return None
    return str(value).strip().lower()


def _split_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    return [part for part in LIST_DELIMITERS.split(str(value)) if part]


def _join_list(value: Any) -> Any:
    if not value:
        return None
    return "; ".join(str(item) for item in value)


def _medications(value: Any) -> Any:
    return [entry.to_dict() for entry in decompose_medications(value)]


def _medications_inverse(value: Any) -> Any:
    if not value:
        return None
    return medications_to_text(value)


def normalize_care_level(value: Any) -> str | None:
    """Map legacy dependency wording onto the canonical care levels."""
    if value is None:
        return None
    text = str(value).strip().lower()
    for level in CARE_LEVELS:
        if text == level.lower():
            return level
    if ("end" in text and "life" in text) or "palliative" in text:
        return "End of life care"
    if "dementia" in text or "emi" in text.split():
        return "Dementia care"
    if "nursing" in text:
        return "Nursing care"
    if "high" in text:
        return "High dependency"
    if "low" in text or "residential" in text:
        return "Low dependency"
    if "medium" in text or "moderate" in text:
        return "Medium dependency"
    raise TransformError(f"Unrecognized care level: {value!r}")


def normalize_gender(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip().lower()
    mapping = {"m": "Male", "male": "Male", "f": "Female", "female": "Female"}
    if text in mapping:
        return mapping[text]
    if text in ("u", "unknown", "not known", "not stated"):
        return "Unknown"
    return "Other"


def normalize_funding_type(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip().lower()
    for funding in FUNDING_TYPES:
        if text == funding.lower():
            return funding
    if text in ("self", "private", "self funded"):
        return "Self-funded"
    if text in ("la", "council", "local authority funded"):
        return "Local authority"
    if text in ("chc", "nhs", "continuing healthcare"):
        return "NHS continuing healthcare"
    raise TransformError(f"Unrecognized funding type: {value!r}")


TRANSFORMS: dict[str, Transform] = {
    t.name: t
    for t in (
        Transform("identity", _identity, _identity),
        Transform("strip", _strip, _identity, lossy=True, description="Collapse whitespace"),
        Transform("title_case", _title_case, _identity, lossy=True, description="Title-case names"),
        Transform("parse_date", _parse_date, _format_date, description="Any supported date to ISO 8601"),
        Transform("to_number", _to_number, _identity),
        Transform("nhs_number", _nhs_number, _identity, lossy=True, description="Strip NHS number spacing"),
        Transform("phone_uk", _phone, _phone_inverse, lossy=True, description="UK phone to +44 form"),
        Transform("postcode_uk", _postcode, _identity, lossy=True, description="Uppercase, single space"),
        Transform("lowercase", _lowercase, _identity, lossy=True),
        Transform("split_list", _split_list, _join_list, lossy=True, description="Delimited text to list"),
        Transform(
            "decompose_medications",
            _medications,
            _medications_inverse,
            lossy=True,
            description="Free-text medication list to structured entries",
        ),
        Transform("care_level", normalize_care_level, _identity, lossy=True),
        Transform("gender", normalize_gender, _identity, lossy=True),
        Transform("funding_type", normalize_funding_type, _identity, lossy=True),
    )
}

_SHAPE_TRANSFORMS = {
    ValueShape.IDENTIFIER: "strip",
    ValueShape.NHS_NUMBER: "nhs_number",
    ValueShape.PERSON_NAME: "title_case",
    ValueShape.DATE: "parse_date",
    ValueShape.PHONE: "phone_uk",
    ValueShape.EMAIL: "lowercase",
    ValueShape.POSTCODE: "postcode_uk",
    ValueShape.NUMERIC: "to_number",
    ValueShape.MEDICATION_LIST: "decompose_medications",
    ValueShape.TEXT_LIST: "split_list",
    ValueShape.FREE_TEXT: "strip",
    ValueShape.SHORT_TEXT: "strip",
}

_FIELD_TRANSFORMS = {
    "care_level": "care_level",
    "gender": "gender",
    "funding_type": "funding_type",
}


def get_transform(name: str) -> Transform:
    """Look up a transform by name.

    Raises:
        KeyError: If no transform has that name
    """
    return TRANSFORMS[name]


def transform_for(target: CanonicalField) -> str:
    """Default transform name for a canonical field."""
    if target.name in _FIELD_TRANSFORMS:
        return _FIELD_TRANSFORMS[target.name]
    return _SHAPE_TRANSFORMS.get(target.shape, "strip")
