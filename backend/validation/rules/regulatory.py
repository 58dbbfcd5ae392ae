"""Regulatory field presence, data minimisation and professional standards."""

from __future__ import annotations

from mapping.canonical_schema import CANONICAL_SCHEMA, CQC_REQUIRED_FIELDS

from ..models import RuleContext, Severity, ValidationFinding
from .common import has_resident_name, is_blank, medication_entries

# Record fields each UK regulator expects, by jurisdiction
REGULATOR_FIELDS: dict[str, tuple[str, str, tuple[str, ...]]] = {
    "england": ("CQC_REQUIRED_FIELD", "CQC", CQC_REQUIRED_FIELDS),
    "scotland": (
        "CARE_INSPECTORATE_REQUIRED_FIELD",
        "Care Inspectorate",
        CQC_REQUIRED_FIELDS + ("care_requirements",),
    ),
    "wales": ("CIW_REQUIRED_FIELD", "CIW", CQC_REQUIRED_FIELDS + ("preferred_language",)),
    "northern_ireland": ("RQIA_REQUIRED_FIELD", "RQIA", CQC_REQUIRED_FIELDS),
}

ADDITIONAL_FIELDS_KEY = "additional_fields"


def _present(record: dict, field_name: str) -> bool:
    if field_name == "full_name":
        return has_resident_name(record)
    return not is_blank(record.get(field_name))


def required_fields_rule(jurisdiction: str):
    """Build the field-presence rule for one jurisdiction's regulator."""
    rule_id, regulator, fields = REGULATOR_FIELDS[jurisdiction]

    def check(context: RuleContext) -> list[ValidationFinding]:
        return [
            ValidationFinding(
                rule_id=rule_id,
                severity=Severity.WARNING,
                field=name,
                message=f"{regulator} expects '{name}' on every resident record",
            )
            for name in fields
            if not _present(context.record, name)
        ]

    check.__name__ = f"{jurisdiction}_required_fields_rule"
    return rule_id, check


def data_minimisation_rule(context: RuleContext) -> list[ValidationFinding]:
    """GDPR: flag personal data carried outside the canonical schema."""
    extras = sorted(
        name
        for name in context.record
        if name not in CANONICAL_SCHEMA and name != ADDITIONAL_FIELDS_KEY
    )
    extras += sorted((context.record.get(ADDITIONAL_FIELDS_KEY) or {}).keys())
    if not extras:
        return []
    return [
        ValidationFinding(
            rule_id="GDPR_DATA_MINIMISATION",
            severity=Severity.INFO,
            field=ADDITIONAL_FIELDS_KEY,
            message=(
                f"{len(extras)} field(s) outside the resident schema are carried over: "
                f"{', '.join(extras)}; confirm they are needed"
            ),
        )
    ]


def care_requirements_rule(context: RuleContext) -> list[ValidationFinding]:
    """Residents on medication should have their care requirements recorded."""
    if not medication_entries(context.record) or not is_blank(
        context.record.get("care_requirements")
    ):
        return []
    return [
        ValidationFinding(
            rule_id="CARE_REQUIREMENTS_DOCUMENTED",
            severity=Severity.WARNING,
            field="care_requirements",
            message="Medications are recorded but care requirements are not",
        )
    ]
