"""Per-field type inference by majority vote over sampled values."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable

from utils import is_email, is_uk_phone, is_uk_postcode, parse_flexible_date
from utils.nhs_number import is_valid_format, is_valid_nhs_number


class FieldType(str, Enum):
    """Inferred field types."""

    IDENTIFIER = "identifier"  # NHS number (modulus 11 checksum)
    DATE = "date"
    NUMERIC = "numeric"
    PHONE = "phone"
    POSTCODE = "postcode"
    EMAIL = "email"
    ENUMERATED = "enumerated"
    FREE_TEXT = "free_text"
    LIST = "list"
    EMPTY = "empty"


# Share of votes a type needs before it is accepted for the field
TYPE_THRESHOLDS = {
    FieldType.IDENTIFIER: 0.8,
    FieldType.DATE: 0.7,
    FieldType.NUMERIC: 0.8,
    FieldType.PHONE: 0.6,
    FieldType.POSTCODE: 0.7,
    FieldType.EMAIL: 0.8,
    FieldType.LIST: 0.7,
}

MAX_ENUM_VALUES = 10
MIN_ENUM_SAMPLES = 5


@dataclass
class FieldTypeInference:
    """Inferred type for one field."""

    field: str
    field_type: FieldType
    confidence: float
    sample_size: int
    distinct_values: int
    checksum_valid_ratio: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "type": self.field_type.value,
            "confidence": round(self.confidence, 3),
            "sample_size": self.sample_size,
            "distinct_values": self.distinct_values,
            "checksum_valid_ratio": self.checksum_valid_ratio,
        }


def classify_value(value: Any) -> FieldType:
    """Classify a single non-empty value."""
    if isinstance(value, (list, tuple)):
        return FieldType.LIST
    if isinstance(value, date):
        return FieldType.DATE
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return FieldType.NUMERIC

    text = str(value).strip()
    if is_valid_format(text) and text.replace(" ", "").replace("-", "").isdigit():
        return FieldType.IDENTIFIER
    if parse_flexible_date(text):
        return FieldType.DATE
    if is_email(text):
        return FieldType.EMAIL
    if is_uk_postcode(text):
        return FieldType.POSTCODE
    if is_uk_phone(text):
        return FieldType.PHONE
    try:
        float(text.replace(",", ""))
        return FieldType.NUMERIC
    except ValueError:
        return FieldType.FREE_TEXT


def infer_field_type(
    field: str, values: Iterable[Any], sample_size: int = 100
) -> FieldTypeInference:
    """Infer the type of one field from its values.

    The first ``sample_size`` non-empty values vote. The winning structured
    type is accepted only when its share of the vote reaches the type's
    threshold; otherwise the field is free text. Free-text fields with few
    distinct values across enough samples are enumerated.

    Args:
        field: Field name
        values: Field values in record order
        sample_size: Maximum number of non-empty values to sample

    Returns:
        FieldTypeInference with the winning type and the share of sampled
        values supporting it as confidence
    """
    sample: list[Any] = []
    for value in values:
        if value is None or (isinstance(value, str) and not value.strip()):
            continue
        sample.append(value)
        if len(sample) >= sample_size:
            break

    if not sample:
        return FieldTypeInference(field, FieldType.EMPTY, 1.0, 0, 0)

    votes = Counter(classify_value(v) for v in sample)
    total = len(sample)
    distinct = len({str(v).strip().lower() for v in sample})

    checksum_ratio = None
    if votes[FieldType.IDENTIFIER]:
        valid = sum(1 for v in sample if is_valid_nhs_number(v))
        checksum_ratio = round(valid / votes[FieldType.IDENTIFIER], 3)

    structured = [(t, n) for t, n in votes.most_common() if t != FieldType.FREE_TEXT]
    if structured:
        winner, count = structured[0]
        share = count / total
        if share >= TYPE_THRESHOLDS[winner]:
            return FieldTypeInference(
                field, winner, share, total, distinct, checksum_ratio
            )
        text_share = max(votes[FieldType.FREE_TEXT] / total, 1.0 - share)
    else:
        text_share = 1.0

    if (
        total >= MIN_ENUM_SAMPLES
        and distinct <= MAX_ENUM_VALUES
        and distinct / total <= 0.5
    ):
        return FieldTypeInference(
            field, FieldType.ENUMERATED, text_share, total, distinct, checksum_ratio
        )
    return FieldTypeInference(
        field, FieldType.FREE_TEXT, text_share, total, distinct, checksum_ratio
    )


def infer_types(
    rows: list[dict[str, Any]], fields: list[str], sample_size: int = 100
) -> dict[str, FieldTypeInference]:
    """Infer types for every field across parsed rows."""
    return {
        name: infer_field_type(name, (row.get(name) for row in rows), sample_size)
        for name in fields
    }
