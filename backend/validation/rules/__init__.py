"""Built-in validation rules organized by category."""

from __future__ import annotations

from ..models import RuleCategory, Severity
from ..registry import ValidationRule
from .clinical import (
    admission_date_rule,
    allergy_contraindication_rule,
    beers_criteria_rule,
    date_of_birth_rule,
    drug_interaction_rule,
    high_risk_dose_rule,
    medication_structure_rule,
)
from .formats import (
    care_level_rule,
    date_format_rule,
    email_format_rule,
    fix_care_level,
    fix_dates,
    fix_email,
    fix_phone,
    fix_postcode,
    phone_format_rule,
    postcode_format_rule,
)
from .identifiers import fix_nhs_number, nhs_number_checksum_rule, nhs_number_format_rule
from .referential import duplicate_identifier_findings, orphan_reference_findings
from .regulatory import (
    REGULATOR_FIELDS,
    care_requirements_rule,
    data_minimisation_rule,
    required_fields_rule,
)
from .structural import (
    fix_whitespace,
    resident_id_required_rule,
    resident_name_required_rule,
    whitespace_rule,
)

_S = RuleCategory.STRUCTURAL
_I = RuleCategory.IDENTIFIER
_C = RuleCategory.CLINICAL
_F = RuleCategory.FORMAT
_R = RuleCategory.REGULATORY


def _regulator_rules() -> list[ValidationRule]:
    rules = []
    for jurisdiction in REGULATOR_FIELDS:
        rule_id, check = required_fields_rule(jurisdiction)
        rules.append(
            ValidationRule(
                rule_id,
                _R,
                check,
                Severity.WARNING,
                f"Regulator field presence ({jurisdiction})",
                jurisdictions=frozenset({jurisdiction}),
            )
        )
    return rules


# Fixers run in this order on auto-fix, whitespace first
DEFAULT_RULES: list[ValidationRule] = [
    ValidationRule("WHITESPACE", _S, whitespace_rule, Severity.INFO, "Stray whitespace", fixer=fix_whitespace),
    ValidationRule("RESIDENT_ID_REQUIRED", _S, resident_id_required_rule, description="Resident ID present"),
    ValidationRule("RESIDENT_NAME_REQUIRED", _S, resident_name_required_rule, description="Resident name present"),
    ValidationRule("NHS_NUMBER_FORMAT", _I, nhs_number_format_rule, description="NHS number is 10 digits", fixer=fix_nhs_number),
    ValidationRule("NHS_NUMBER_CHECKSUM", _I, nhs_number_checksum_rule, description="NHS number check digit"),
    ValidationRule("DATE_FORMAT", _F, date_format_rule, description="Recognizable dates", fixer=fix_dates),
    ValidationRule("DATE_OF_BIRTH", _C, date_of_birth_rule, description="Date of birth plausibility"),
    ValidationRule("ADMISSION_DATE", _C, admission_date_rule, description="Admission date plausibility"),
    ValidationRule("MEDICATION_STRUCTURE", _C, medication_structure_rule, description="Medication entries"),
    ValidationRule(
        "ALLERGY_CONTRAINDICATION",
        _C,
        allergy_contraindication_rule,
        description="Penicillin allergy against penicillin-class drugs",
        critical=True,
    ),
    ValidationRule("DRUG_INTERACTION", _C, drug_interaction_rule, Severity.WARNING, "Warfarin with aspirin"),
    ValidationRule("BEERS_CRITERIA", _C, beers_criteria_rule, Severity.WARNING, "Beers criteria over 75"),
    ValidationRule("HIGH_RISK_DOSE", _C, high_risk_dose_rule, description="High-risk drug dose range", critical=True),
    ValidationRule("PHONE_FORMAT", _F, phone_format_rule, Severity.WARNING, "UK phone numbers", fixer=fix_phone),
    ValidationRule("POSTCODE_FORMAT", _F, postcode_format_rule, Severity.WARNING, "UK postcodes", fixer=fix_postcode),
    ValidationRule("EMAIL_FORMAT", _F, email_format_rule, Severity.WARNING, "Email addresses", fixer=fix_email),
    ValidationRule("CARE_LEVEL_VOCABULARY", _F, care_level_rule, description="Care level vocabulary", fixer=fix_care_level),
    *_regulator_rules(),
    ValidationRule("GDPR_DATA_MINIMISATION", _R, data_minimisation_rule, Severity.INFO, "Fields outside the schema"),
    ValidationRule(
        "CARE_REQUIREMENTS_DOCUMENTED",
        _R,
        care_requirements_rule,
        Severity.WARNING,
        "Care requirements recorded with medications",
    ),
]

__all__ = [
    "DEFAULT_RULES",
    "duplicate_identifier_findings",
    "orphan_reference_findings",
]
