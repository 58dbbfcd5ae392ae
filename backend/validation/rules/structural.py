"""Structural completeness rules."""

from __future__ import annotations

import re
from typing import Any

from ..models import RuleContext, Severity, ValidationFinding
from .common import has_resident_name, is_blank

_RUNS_OF_SPACE = re.compile(r"\s{2,}")


def resident_id_required_rule(context: RuleContext) -> list[ValidationFinding]:
    """Every resident record needs its source identifier."""
    if not is_blank(context.record.get("resident_id")):
        return []
    return [
        ValidationFinding(
            rule_id="RESIDENT_ID_REQUIRED",
            severity=Severity.ERROR,
            field="resident_id",
            message="Resident ID is missing",
        )
    ]


def resident_name_required_rule(context: RuleContext) -> list[ValidationFinding]:
    if has_resident_name(context.record):
        return []
    return [
        ValidationFinding(
            rule_id="RESIDENT_NAME_REQUIRED",
            severity=Severity.ERROR,
            field="full_name",
            message="Resident has neither a full name nor a first and last name",
        )
    ]


def _tidy(value: str) -> str:
    return _RUNS_OF_SPACE.sub(" ", value.strip())


def whitespace_rule(context: RuleContext) -> list[ValidationFinding]:
    """Flag text values with stray leading, trailing or repeated whitespace."""
    findings: list[ValidationFinding] = []
    for name, value in context.record.items():
        if isinstance(value, str) and value and "\n" not in value and _tidy(value) != value:
            findings.append(
                ValidationFinding(
                    rule_id="WHITESPACE",
                    severity=Severity.INFO,
                    field=name,
                    message=f"'{name}' has stray whitespace",
                    suggested_fix=_tidy(value),
                )
            )
    return findings


def fix_whitespace(record: dict[str, Any]) -> dict[str, Any]:
    for name, value in record.items():
        if isinstance(value, str) and "\n" not in value:
            record[name] = _tidy(value)
    return record
