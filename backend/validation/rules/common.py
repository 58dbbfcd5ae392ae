"""Helpers shared by the validation rules."""

from __future__ import annotations

from datetime import date
from typing import Any

from mapping.medications import decompose_medications
from utils import parse_flexible_date

DATE_FIELDS = ("date_of_birth", "admission_date")


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


def record_date(record: dict[str, Any], field_name: str) -> date | None:
    value = record.get(field_name)
    if is_blank(value):
        return None
    return parse_flexible_date(value)


def medication_entries(record: dict[str, Any]) -> list[dict[str, Any]]:
    """Structured medication entries, whether or not the record was decomposed."""
    value = record.get("current_medications")
    if is_blank(value):
        return []
    if isinstance(value, list) and all(isinstance(item, dict) for item in value):
        return value
    return [entry.to_dict() for entry in decompose_medications(value)]


def medication_names(record: dict[str, Any]) -> set[str]:
    return {
        str(entry.get("name", "")).strip().lower()
        for entry in medication_entries(record)
        if entry.get("name")
    }


def text_items(value: Any) -> list[str]:
    """Lower-cased items of a list field (or a delimited string)."""
    if is_blank(value):
        return []
    if isinstance(value, (list, tuple)):
        return [str(item).strip().lower() for item in value if not is_blank(item)]
    return [part.strip().lower() for part in str(value).replace("|", ";").replace(",", ";").split(";") if part.strip()]


def has_resident_name(record: dict[str, Any]) -> bool:
    if not is_blank(record.get("full_name")):
        return True
    return not is_blank(record.get("first_name")) and not is_blank(record.get("last_name"))
