"""Format rules for contact details, dates and controlled vocabularies."""

from __future__ import annotations

from contextlib import suppress
from typing import Any

from mapping.canonical_schema import CARE_LEVELS
from mapping.transforms import TransformError, normalize_care_level
from utils import (
    is_email,
    is_uk_phone,
    is_uk_postcode,
    normalize_phone_uk,
    normalize_postcode_uk,
    parse_flexible_date,
)

from ..models import RuleContext, Severity, ValidationFinding
from .common import DATE_FIELDS, is_blank

PHONE_FIELDS = ("phone_number", "emergency_contact_phone")


def phone_format_rule(context: RuleContext) -> list[ValidationFinding]:
    findings = []
    for name in PHONE_FIELDS:
        value = context.record.get(name)
        if is_blank(value) or is_uk_phone(value):
            continue
        findings.append(
            ValidationFinding(
                rule_id="PHONE_FORMAT",
                severity=Severity.WARNING,
                field=name,
                message=f"'{value}' is not a UK phone number",
            )
        )
    return findings


def fix_phone(record: dict[str, Any]) -> dict[str, Any]:
    for name in PHONE_FIELDS:
        value = record.get(name)
        if not is_blank(value) and is_uk_phone(value):
            record[name] = normalize_phone_uk(value)
    return record


def postcode_format_rule(context: RuleContext) -> list[ValidationFinding]:
    value = context.record.get("postcode")
    if is_blank(value) or is_uk_postcode(value):
        return []
    return [
        ValidationFinding(
            rule_id="POSTCODE_FORMAT",
            severity=Severity.WARNING,
            field="postcode",
            message=f"'{value}' is not a UK postcode",
        )
    ]


def fix_postcode(record: dict[str, Any]) -> dict[str, Any]:
    value = record.get("postcode")
    if not is_blank(value) and is_uk_postcode(normalize_postcode_uk(value)):
        record["postcode"] = normalize_postcode_uk(value)
    return record


def email_format_rule(context: RuleContext) -> list[ValidationFinding]:
    value = context.record.get("email")
    if is_blank(value) or is_email(value):
        return []
    return [
        ValidationFinding(
            rule_id="EMAIL_FORMAT",
            severity=Severity.WARNING,
            field="email",
            message=f"'{value}' is not an email address",
        )
    ]


def fix_email(record: dict[str, Any]) -> dict[str, Any]:
    value = record.get("email")
    if isinstance(value, str):
        record["email"] = value.strip().lower()
    return record


def date_format_rule(context: RuleContext) -> list[ValidationFinding]:
    """Dates must be recognizable; ISO 8601 is suggested when they are not ISO."""
    findings = []
    for name in DATE_FIELDS:
        value = context.record.get(name)
        if is_blank(value):
            continue
        parsed = parse_flexible_date(value)
        if parsed is None:
            findings.append(
                ValidationFinding(
                    rule_id="DATE_FORMAT",
                    severity=Severity.ERROR,
                    field=name,
                    message=f"'{value}' is not a recognizable date",
                )
            )
        elif str(value) != parsed.isoformat():
            findings.append(
                ValidationFinding(
                    rule_id="DATE_FORMAT",
                    severity=Severity.INFO,
                    field=name,
                    message=f"'{value}' is not in YYYY-MM-DD format",
                    suggested_fix=parsed.isoformat(),
                )
            )
    return findings


def fix_dates(record: dict[str, Any]) -> dict[str, Any]:
    for name in DATE_FIELDS:
        value = record.get(name)
        if is_blank(value):
            continue
        parsed = parse_flexible_date(value)
        if parsed is not None:
            record[name] = parsed.isoformat()
    return record


def care_level_rule(context: RuleContext) -> list[ValidationFinding]:
    value = context.record.get("care_level")
    if is_blank(value) or value in CARE_LEVELS:
        return []
    try:
        suggestion = normalize_care_level(value)
    except TransformError:
        suggestion = None
    return [
        ValidationFinding(
            rule_id="CARE_LEVEL_VOCABULARY",
            severity=Severity.ERROR,
            field="care_level",
            message=f"'{value}' is not a recognized care level",
            suggested_fix=suggestion,
        )
    ]


def fix_care_level(record: dict[str, Any]) -> dict[str, Any]:
    value = record.get("care_level")
    if is_blank(value):
        return record
    with suppress(TransformError):
        record["care_level"] = normalize_care_level(value)
    return record
