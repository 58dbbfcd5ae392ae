"""Tests for record validation and dataset quality assessment."""

from __future__ import annotations

from datetime import date
from typing import Any

import pytest

from conftest import make_resident, make_residents
from validation import (
    RuleCategory,
    RuleRegistry,
    Severity,
    ValidationEngine,
    ValidationOptions,
    ValidationRule,
)

TODAY = date(2024, 6, 1)


@pytest.fixture
def engine() -> ValidationEngine:
    return ValidationEngine()


def _options(**kwargs: Any) -> ValidationOptions:
    return ValidationOptions(reference_date=TODAY, **kwargs)


def _rule_ids(result) -> list[str]:
    return [f.rule_id for f in result.findings]


class TestStructuralAndIdentifierRules:
    """Test structural and NHS number rules."""

    def test_clean_record(self, engine: ValidationEngine):
        """Test a complete, well-formed record has no findings."""
        result = engine.validate_record(make_resident(0), options=_options())

        assert result.is_valid
        assert result.findings == []

    def test_missing_resident_id(self, engine: ValidationEngine):
        """Test a missing resident id is a blocking error."""
        record = make_resident(0)
        record["resident_id"] = ""

        result = engine.validate_record(record, options=_options())

        assert not result.is_valid
        assert "RESIDENT_ID_REQUIRED" in _rule_ids(result)

    def test_nine_digit_nhs_number(self, engine: ValidationEngine):
        """Test a nine digit NHS number errors and suggests the completed number."""
        record = make_resident(0)
        record["nhs_number"] = "943 476 591"

        result = engine.validate_record(record, options=_options())

        finding = next(f for f in result.findings if f.rule_id == "NHS_NUMBER_FORMAT")
        assert finding.severity == Severity.ERROR
        assert finding.suggested_fix == "9434765919"
        assert finding.category == RuleCategory.IDENTIFIER

    def test_bad_check_digit(self, engine: ValidationEngine):
        """Test a ten digit number with a wrong check digit is an error."""
        record = make_resident(0)
        record["nhs_number"] = "9434765918"

        result = engine.validate_record(record, options=_options(auto_fix=True))

        assert "NHS_NUMBER_CHECKSUM" in [f.rule_id for f in result.blocking]
        assert result.fixed_record["nhs_number"] == "9434765918"


class TestAutoFix:
    """Test deterministic corrections."""

    def test_fixes_apply_to_a_copy(self, engine: ValidationEngine):
        """Test auto-fix corrects a copy and reports each corrected field."""
        record = make_resident(0)
        record.update(
            nhs_number="943 476 591",
            date_of_birth="05/03/1941",
            care_level="EMI",
            full_name="  Margaret   Smith ",
        )
        original = dict(record)

        result = engine.validate_record(record, options=_options(auto_fix=True))

        assert record == original
        assert result.is_valid
        assert result.fixed_record["nhs_number"] == "9434765919"
        assert result.fixed_record["date_of_birth"] == "1941-03-05"
        assert result.fixed_record["care_level"] == "Dementia care"
        assert result.fixed_record["full_name"] == "Margaret Smith"
        fixed_fields = {f.field for f in result.findings if f.rule_id == "AUTO_FIX"}
        assert fixed_fields == {"nhs_number", "date_of_birth", "care_level", "full_name"}
        assert all(f.severity == Severity.INFO for f in result.findings)

    def test_without_auto_fix(self, engine: ValidationEngine):
        """Test the same record without auto-fix reports the problems instead."""
        record = make_resident(0)
        record.update(date_of_birth="05/03/1941", care_level="EMI")

        result = engine.validate_record(record, options=_options())

        assert result.fixed_record is None
        date_finding = next(f for f in result.findings if f.rule_id == "DATE_FORMAT")
        assert date_finding.severity == Severity.INFO
        assert date_finding.suggested_fix == "1941-03-05"
        care = next(f for f in result.findings if f.rule_id == "CARE_LEVEL_VOCABULARY")
        assert care.severity == Severity.ERROR
        assert care.suggested_fix == "Dementia care"


class TestDateRules:
    """Test date plausibility rules."""

    def test_unrecognizable_date(self, engine: ValidationEngine):
        """Test a value that is not a date is an error."""
        record = make_resident(0)
        record["admission_date"] = "sometime in spring"

        result = engine.validate_record(record, options=_options())

        assert [f.severity for f in result.findings if f.rule_id == "DATE_FORMAT"] == [Severity.ERROR]

    def test_birth_in_future(self, engine: ValidationEngine):
        """Test a future date of birth is an error."""
        record = make_resident(0)
        record["date_of_birth"] = "2030-01-01"

        result = engine.validate_record(record, options=_options())

        assert "DOB_IN_FUTURE" in _rule_ids(result)

    def test_implausible_age(self, engine: ValidationEngine):
        """Test an age over 120 is an error."""
        record = make_resident(0)
        record["date_of_birth"] = "1901-01-01"

        result = engine.validate_record(record, options=_options())

        assert "DOB_IMPLAUSIBLE" in _rule_ids(result)

    def test_admission_before_birth(self, engine: ValidationEngine):
        """Test admission before birth is an error."""
        record = make_resident(0)
        record.update(date_of_birth="1940-01-01", admission_date="1939-01-01")

        result = engine.validate_record(record, options=_options())

        assert "ADMISSION_BEFORE_BIRTH" in _rule_ids(result)


class TestClinicalRules:
    """Test medication safety rules."""

    def test_drug_interaction_is_a_warning(self, engine: ValidationEngine):
        """Test warfarin with aspirin warns but does not block."""
        record = make_resident(0)
        record.update(
            current_medications="Warfarin 5mg OD; Aspirin 75mg OD",
            care_requirements="Monitor INR weekly",
        )

        result = engine.validate_record(record, options=_options())

        assert result.is_valid
        assert result.has_warnings
        assert _rule_ids(result) == ["DRUG_INTERACTION"]

    def test_allergy_contraindication_is_critical(self, engine: ValidationEngine):
        """Test a penicillin allergy with amoxicillin is a critical error."""
        record = make_resident(0)
        record.update(
            known_allergies=["Penicillin"],
            current_medications=[{"name": "Amoxicillin", "dose": "500", "unit": "mg"}],
            care_requirements="Full assistance",
        )

        result = engine.validate_record(record, options=_options())

        finding = next(f for f in result.findings if f.rule_id == "ALLERGY_CONTRAINDICATION")
        assert finding.critical
        assert finding.category == RuleCategory.CLINICAL
        assert not result.is_valid

    def test_high_risk_dose(self, engine: ValidationEngine):
        """Test a dose outside the safe range for a high-risk drug is an error."""
        record = make_resident(0)
        record.update(current_medications="Warfarin 50mg OD", care_requirements="INR checks")

        result = engine.validate_record(record, options=_options())

        assert "HIGH_RISK_DOSE" in [f.rule_id for f in result.blocking]

    def test_beers_criteria_over_75(self, engine: ValidationEngine):
        """Test Beers criteria drugs warn for residents over 75."""
        record = make_resident(0)
        record.update(
            date_of_birth="1930-01-01",
            current_medications="Diazepam 2mg ON",
            care_requirements="Falls risk",
        )

        result = engine.validate_record(record, options=_options())

        assert "BEERS_CRITERIA" in _rule_ids(result)

    def test_medication_without_care_requirements(self, engine: ValidationEngine):
        """Test medications without care requirements raise a professional standards warning."""
        record = make_resident(0)
        record["current_medications"] = "Paracetamol 500mg PRN"

        result = engine.validate_record(record, options=_options())

        assert _rule_ids(result) == ["CARE_REQUIREMENTS_DOCUMENTED"]


class TestRegulatoryRules:
    """Test regulator field presence and data minimisation."""

    def test_missing_cqc_field_warns(self, engine: ValidationEngine):
        """Test a missing CQC field is a warning in England."""
        record = make_resident(0)
        del record["gp_name"]

        result = engine.validate_record(record, options=_options())

        finding = result.findings[0]
        assert (finding.rule_id, finding.field, finding.severity) == (
            "CQC_REQUIRED_FIELD",
            "gp_name",
            Severity.WARNING,
        )
        assert result.is_valid

    def test_jurisdiction_selects_regulator(self, engine: ValidationEngine):
        """Test Scotland's regulator also expects care requirements."""
        result = engine.validate_record(make_resident(0), options=_options(jurisdiction="scotland"))

        assert [(f.rule_id, f.field) for f in result.findings] == [
            ("CARE_INSPECTORATE_REQUIRED_FIELD", "care_requirements")
        ]

    def test_additional_fields_are_flagged(self, engine: ValidationEngine):
        """Test fields outside the schema raise a data minimisation notice."""
        record = make_resident(0)
        record["additional_fields"] = {"Religion Notes": "C of E"}

        result = engine.validate_record(record, options=_options())

        assert [(f.rule_id, f.severity) for f in result.findings] == [
            ("GDPR_DATA_MINIMISATION", Severity.INFO)
        ]


class TestOverrides:
    """Test operator rule overrides."""

    def test_overridden_error_no_longer_blocks(self, engine: ValidationEngine):
        """Test an overridden rule still reports but does not block."""
        record = make_resident(0)
        record["care_level"] = "Band C"

        result = engine.validate_record(
            record, options=_options(overridden_rules=frozenset({"CARE_LEVEL_VOCABULARY"}))
        )

        assert "CARE_LEVEL_VOCABULARY" in _rule_ids(result)
        assert result.is_valid

    def test_disabled_rule_is_not_evaluated(self, engine: ValidationEngine):
        """Test a disabled rule produces no findings."""
        record = make_resident(0)
        record["care_level"] = "Band C"

        result = engine.validate_record(
            record, options=_options(disabled_rules=frozenset({"CARE_LEVEL_VOCABULARY"}))
        )

        assert result.findings == []

    def test_duplicate_rule_id(self):
        """Test two different rules cannot share an id."""
        registry = RuleRegistry()
        registry.register(ValidationRule("X", RuleCategory.FORMAT, lambda c: []))

        with pytest.raises(ValueError):
            registry.register(ValidationRule("X", RuleCategory.CLINICAL, lambda c: []))


class TestDatasetChecks:
    """Test checks across records."""

    def test_duplicate_identifiers(self, engine: ValidationEngine):
        """Test every repeat of an identifier is flagged, the first is kept."""
        records = make_residents(3)
        records[2]["resident_id"] = records[0]["resident_id"]

        results = engine.validate_batch(records, _options())

        assert results[0].is_valid
        duplicate = next(f for f in results[2].findings if f.rule_id == "DUPLICATE_IDENTIFIER")
        assert duplicate.field == "resident_id"
        assert duplicate.category == RuleCategory.REFERENTIAL
        assert not results[2].is_valid

    def test_orphan_references(self, engine: ValidationEngine):
        """Test related records must reference a known resident."""
        records = make_residents(2)
        related = {"medications": [{"resident_id": "R00000"}, {"resident_id": "R99999"}]}

        report = engine.assess(records, _options(), related=related)

        orphans = [f for f in report.findings if f.rule_id == "ORPHAN_REFERENCE"]
        assert len(orphans) == 1
        assert orphans[0].provenance == "medications:1"

        known = engine.assess(records, _options(), related=related, known_resident_ids={"R99999"})
        assert not [f for f in known.findings if f.rule_id == "ORPHAN_REFERENCE"]


class TestQualityReport:
    """Test quality scoring."""

    def test_clean_dataset_scores_100(self, engine: ValidationEngine):
        """Test clean data scores full marks."""
        report = engine.assess(make_residents(10), _options())

        assert report.overall_score == 100.0
        assert report.valid_records == 10
        assert report.meets(70)
        assert report.recommendations == []

    def test_empty_dataset_scores_100(self, engine: ValidationEngine):
        """Test an empty dataset scores 100."""
        report = engine.assess([], _options())

        assert report.overall_score == 100.0
        assert report.total_records == 0

    def test_critical_issue_lowers_score(self, engine: ValidationEngine):
        """Test critical clinical issues are penalized and recommended for review."""
        records = make_residents(10)
        records[0].update(
            known_allergies=["Penicillin"],
            current_medications="Amoxicillin 500mg TDS",
            care_requirements="Full assistance",
        )

        report = engine.assess(records, _options())

        assert report.critical_clinical_issues == 1
        assert report.overall_score < 95
        assert "clinical_safety" in {r.category for r in report.recommendations}
        assert report.category_scores["clinical"] == 90.0

    def test_invalid_data_misses_threshold(self, engine: ValidationEngine):
        """Test records failing identifier and date checks fall below a 90 threshold."""
        records = [
            {"resident_id": f"R{i}", "nhs_number": "123", "date_of_birth": "unknown"}
            for i in range(5)
        ]

        report = engine.assess(records, _options())

        assert not report.meets(90)
        assert "Address data accuracy issues" in [r.title for r in report.recommendations]
        assert report.invalid_records == 5
        assert report.severity_counts["error"] >= 10
        assert report.findings_for(0)
