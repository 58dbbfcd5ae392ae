"""Clinical plausibility and medication safety rules.

Date rules reject values that cannot be true for a resident (born in the
future, older than 120, admitted before birth). Medication rules look for
known-dangerous combinations and doses outside the safe range for flagged
high-risk drugs.
"""

from __future__ import annotations

from utils import age_on

from ..models import RuleContext, Severity, ValidationFinding
from .common import medication_entries, medication_names, record_date, text_items

MAX_PLAUSIBLE_AGE = 120
ADULT_AGE = 18
BEERS_MIN_AGE = 75

BEERS_CRITERIA_DRUGS = ("diazepam", "amitriptyline", "chlorphenamine")
PENICILLIN_CLASS_DRUGS = (
    "penicillin",
    "amoxicillin",
    "co-amoxiclav",
    "flucloxacillin",
    "phenoxymethylpenicillin",
)

# Single-dose safe ranges for flagged high-risk drugs: (low, high, unit)
HIGH_RISK_DOSE_RANGES: dict[str, tuple[float, float, str]] = {
    "warfarin": (0.5, 15.0, "mg"),
    "digoxin": (62.5, 500.0, "mcg"),
    "methotrexate": (2.5, 25.0, "mg"),
    "lithium": (100.0, 2000.0, "mg"),
    "morphine": (1.0, 200.0, "mg"),
}

_UNIT_FACTORS_MG = {"mg": 1.0, "mcg": 0.001, "g": 1000.0}


def date_of_birth_rule(context: RuleContext) -> list[ValidationFinding]:
    dob = record_date(context.record, "date_of_birth")
    if dob is None:
        return []
    today = context.options.today
    if dob > today:
        return [
            ValidationFinding(
                rule_id="DOB_IN_FUTURE",
                severity=Severity.ERROR,
                field="date_of_birth",
                message=f"Date of birth {dob.isoformat()} is in the future",
            )
        ]
    age = age_on(dob, today)
    if age > MAX_PLAUSIBLE_AGE:
        return [
            ValidationFinding(
                rule_id="DOB_IMPLAUSIBLE",
                severity=Severity.ERROR,
                field="date_of_birth",
                message=f"Date of birth gives an implausible age of {age}",
            )
        ]
    if age < ADULT_AGE:
        return [
            ValidationFinding(
                rule_id="RESIDENT_UNDER_18",
                severity=Severity.WARNING,
                field="date_of_birth",
                message=f"Resident is {age}; adult care homes rarely admit under-18s",
            )
        ]
    return []


def admission_date_rule(context: RuleContext) -> list[ValidationFinding]:
    admitted = record_date(context.record, "admission_date")
    if admitted is None:
        return []
    if admitted > context.options.today:
        return [
            ValidationFinding(
                rule_id="ADMISSION_IN_FUTURE",
                severity=Severity.ERROR,
                field="admission_date",
                message=f"Admission date {admitted.isoformat()} is in the future",
            )
        ]
    dob = record_date(context.record, "date_of_birth")
    if dob is not None and admitted < dob:
        return [
            ValidationFinding(
                rule_id="ADMISSION_BEFORE_BIRTH",
                severity=Severity.ERROR,
                field="admission_date",
                message="Admission date is before the date of birth",
            )
        ]
    return []


def medication_structure_rule(context: RuleContext) -> list[ValidationFinding]:
    """Each medication entry needs a name, and should record a dose."""
    findings = []
    for position, entry in enumerate(medication_entries(context.record)):
        if not entry.get("name"):
            findings.append(
                ValidationFinding(
                    rule_id="MEDICATION_STRUCTURE",
                    severity=Severity.ERROR,
                    field="current_medications",
                    message=f"Medication entry {position + 1} has no drug name",
                )
            )
        elif not entry.get("dose"):
            findings.append(
                ValidationFinding(
                    rule_id="MEDICATION_STRUCTURE",
                    severity=Severity.WARNING,
                    field="current_medications",
                    message=f"No dose recorded for {entry['name']}",
                )
            )
    return findings


def allergy_contraindication_rule(context: RuleContext) -> list[ValidationFinding]:
    allergies = text_items(context.record.get("known_allergies"))
    if not any("penicillin" in allergy for allergy in allergies):
        return []
    conflicting = sorted(
        name
        for name in medication_names(context.record)
        if any(drug in name for drug in PENICILLIN_CLASS_DRUGS)
    )
    if not conflicting:
        return []
    return [
        ValidationFinding(
            rule_id="ALLERGY_CONTRAINDICATION",
            severity=Severity.ERROR,
            field="current_medications",
            message=(
                f"Penicillin allergy recorded alongside {', '.join(conflicting)}: "
                "severe allergic reaction possible"
            ),
        )
    ]


def drug_interaction_rule(context: RuleContext) -> list[ValidationFinding]:
    names = medication_names(context.record)
    if any("warfarin" in n for n in names) and any("aspirin" in n for n in names):
        return [
            ValidationFinding(
                rule_id="DRUG_INTERACTION",
                severity=Severity.WARNING,
                field="current_medications",
                message="Warfarin + Aspirin: increased bleeding risk; monitor INR closely",
            )
        ]
    return []


def beers_criteria_rule(context: RuleContext) -> list[ValidationFinding]:
    """Potentially inappropriate medications for residents over 75."""
    dob = record_date(context.record, "date_of_birth")
    if dob is None or age_on(dob, context.options.today) <= BEERS_MIN_AGE:
        return []
    return [
        ValidationFinding(
            rule_id="BEERS_CRITERIA",
            severity=Severity.WARNING,
            field="current_medications",
            message=f"{name.title()} is potentially inappropriate in older adults (Beers Criteria)",
        )
        for name in sorted(medication_names(context.record))
        if any(drug in name for drug in BEERS_CRITERIA_DRUGS)
    ]


def _dose_in(entry: dict, unit: str) -> float | None:
    try:
        amount = float(entry.get("dose"))
    except (TypeError, ValueError):
        return None
    source_factor = _UNIT_FACTORS_MG.get(str(entry.get("unit") or "").lower())
    if source_factor is None:
        return None
    return amount * source_factor / _UNIT_FACTORS_MG[unit]


def high_risk_dose_rule(context: RuleContext) -> list[ValidationFinding]:
    findings = []
    for entry in medication_entries(context.record):
        name = str(entry.get("name", "")).lower()
        for drug, (low, high, unit) in HIGH_RISK_DOSE_RANGES.items():
            if drug not in name:
                continue
            dose = _dose_in(entry, unit)
            if dose is not None and not low <= dose <= high:
                findings.append(
                    ValidationFinding(
                        rule_id="HIGH_RISK_DOSE",
                        severity=Severity.ERROR,
                        field="current_medications",
                        message=(
                            f"{drug.title()} dose {dose:g}{unit} is outside the safe "
                            f"range {low:g}-{high:g}{unit}"
                        ),
                    )
                )
    return findings
