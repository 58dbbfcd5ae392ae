"""NHS number rules."""

from __future__ import annotations

from typing import Any

from utils import complete_nhs_number, is_valid_nhs_number, normalize_nhs_number

from ..models import RuleContext, Severity, ValidationFinding
from .common import is_blank


def nhs_number_format_rule(context: RuleContext) -> list[ValidationFinding]:
    """NHS numbers must be ten digits once spacing is removed."""
    value = context.record.get("nhs_number")
    if is_blank(value):
        return []
    digits = normalize_nhs_number(value)
    if len(digits) == 10 and digits.isdigit():
        return []
    suggestion = complete_nhs_number(digits) if len(digits) == 9 else None
    return [
        ValidationFinding(
            rule_id="NHS_NUMBER_FORMAT",
            severity=Severity.ERROR,
            field="nhs_number",
            message=f"NHS number must be 10 digits, got {len(digits)} character(s)",
            suggested_fix=suggestion,
        )
    ]


def nhs_number_checksum_rule(context: RuleContext) -> list[ValidationFinding]:
    """Ten-digit NHS numbers must carry a valid modulus 11 check digit."""
    value = context.record.get("nhs_number")
    if is_blank(value):
        return []
    digits = normalize_nhs_number(value)
    if len(digits) != 10 or not digits.isdigit() or is_valid_nhs_number(digits):
        return []
    return [
        ValidationFinding(
            rule_id="NHS_NUMBER_CHECKSUM",
            severity=Severity.ERROR,
            field="nhs_number",
            message="NHS number check digit is invalid",
        )
    ]


def fix_nhs_number(record: dict[str, Any]) -> dict[str, Any]:
    """Strip spacing and recompute the check digit for nine-digit values.

    A ten-digit number with the wrong check digit is left alone.
    """
    value = record.get("nhs_number")
    if is_blank(value):
        return record
    digits = normalize_nhs_number(value)
    if len(digits) == 9 and digits.isdigit():
        completed = complete_nhs_number(digits)
        if completed:
            digits = completed
    if digits.isdigit():
        record["nhs_number"] = digits
    return record
