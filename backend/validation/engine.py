"""Core validation and quality assessment engine.

Usage:
    engine = ValidationEngine()
    result = engine.validate_record(record, index=0,
                                    options=ValidationOptions(auto_fix=True))
    report = engine.assess(records, related={"medications": mar_rows})
"""
from __future__ import annotations

import copy
import logging
import re
from collections import Counter
from collections.abc import Iterable, Sequence
from datetime import timedelta
from typing import Any

from utils import parse_flexible_date

from .models import (
    QualityMetric,
    QualityReport,
    Recommendation,
    RecordValidationResult,
    RuleCategory,
    RuleContext,
    Severity,
    ValidationFinding,
    ValidationOptions,
)
from .registry import RuleRegistry, build_default_registry
from .rules import duplicate_identifier_findings, orphan_reference_findings

logger = logging.getLogger(__name__)

COMPLETENESS_TARGET = 80.0
ACCURACY_TARGET = 85.0
CRITICAL_ISSUE_PENALTY = 10.0
STALE_AFTER = timedelta(days=365)

# Accuracy deductions per finding, by rule id
ACCURACY_PENALTIES = {
    "DOB_IN_FUTURE": 2.0,
    "DOB_IMPLAUSIBLE": 2.0,
    "DATE_FORMAT": 1.0,
    "PHONE_FORMAT": 0.5,
    "NHS_NUMBER_FORMAT": 3.0,
    "NHS_NUMBER_CHECKSUM": 3.0,
}

_PRIORITY_RANK = {"high": 0, "medium": 1, "low": 2}
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}")
_UK_DATE = re.compile(r"^\d{2}/\d{2}/\d{4}")
_EU_DATE = re.compile(r"^\d{2}-\d{2}-\d{4}")


def _date_style(value: str) -> str:
    if _ISO_DATE.match(value):
        return "ISO"
    if _UK_DATE.match(value):
        return "UK"
    if _EU_DATE.match(value):
        return "EU"
    return "OTHER"


def _filled(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, dict)):
        return len(value) > 0
    return True


class ValidationEngine:
    """Validates canonical resident records and scores dataset quality."""

    def __init__(self, registry: RuleRegistry | None = None) -> None:
        self.registry = registry or build_default_registry()

    def validate_record(
        self,
        record: dict[str, Any],
        index: int = 0,
        options: ValidationOptions | None = None,
        datasets: dict[str, Any] | None = None,
        provenance: str | None = None,
    ) -> RecordValidationResult:
        """Validate one record.

        With ``options.auto_fix`` the registered fixers run on a deep copy of
        the record, the rules then run against that copy, and each corrected
        field is reported as an INFO finding. The input record is never
        mutated.

        Args:
            record: Canonical record
            index: Position of the record in its dataset
            options: Validation options
            datasets: Reference data available to rules
            provenance: Provenance key of the source row

        Returns:
            RecordValidationResult with findings and (on auto-fix) the fixed copy
        """
        options = options or ValidationOptions()
        rules = self.registry.active_rules(options.jurisdiction, options.disabled_rules)
        result = RecordValidationResult(
            index=index,
            findings=[],
            overridden_rules=options.overridden_rules,
            provenance=provenance,
        )

        working = record
        if options.auto_fix:
            working = copy.deepcopy(record)
            for rule in rules:
                if rule.fixer is not None:
                    working = rule.fixer(working)
            for name, value in working.items():
                if record.get(name) != value:
                    result.add(
                        ValidationFinding(
                            rule_id="AUTO_FIX",
                            severity=Severity.INFO,
                            field=name,
                            message=f"Corrected '{name}' from {record.get(name)!r}",
                            suggested_fix=value,
                        )
                    )
            result.fixed_record = working

        context = RuleContext(record=working, options=options, datasets=datasets or {})
        for rule in rules:
            for finding in rule(context):
                result.add(finding)
        return result

    def validate_batch(
        self,
        records: Sequence[dict[str, Any]],
        options: ValidationOptions | None = None,
        datasets: dict[str, Any] | None = None,
        provenances: Sequence[str] | None = None,
    ) -> list[RecordValidationResult]:
        """Validate each record, then check identifiers are unique across them."""
        options = options or ValidationOptions()
        results = [
            self.validate_record(
                record,
                index,
                options,
                datasets,
                provenances[index] if provenances else None,
            )
            for index, record in enumerate(records)
        ]
        if "DUPLICATE_IDENTIFIER" not in options.disabled_rules:
            checked = [r.fixed_record if r.fixed_record is not None else rec
                       for r, rec in zip(results, records)]
            for index, finding in duplicate_identifier_findings(checked):
                results[index].add(finding)
        return results

    def assess(
        self,
        dataset: Iterable[dict[str, Any]],
        options: ValidationOptions | None = None,
        related: dict[str, list[dict[str, Any]]] | None = None,
        known_resident_ids: set[str] | None = None,
    ) -> QualityReport:
        """Score the quality of a dataset.

        Args:
            dataset: Canonical resident records
            options: Validation options
            related: Related datasets whose rows reference residents by id
            known_resident_ids: Resident ids that already exist in the target

        Returns:
            QualityReport with an overall 0-100 score, per-metric and
            per-category breakdowns and ranked recommendations
        """
        options = options or ValidationOptions()
        records = list(dataset)
        results = self.validate_batch(records, options)
        checked = [r.fixed_record if r.fixed_record is not None else rec
                   for r, rec in zip(results, records)]

        findings = [f for r in results for f in r.findings]
        orphans: list[ValidationFinding] = []
        if related and "ORPHAN_REFERENCE" not in options.disabled_rules:
            orphans = orphan_reference_findings(checked, related, known_resident_ids)
        all_findings = findings + orphans

        total = len(records)
        valid = sum(1 for r in results if r.is_valid)
        warned = sum(1 for r in results if r.is_valid and r.has_warnings)
        severity_counts = Counter(f.severity.value for f in all_findings)
        critical = sum(1 for f in all_findings if f.critical)

        rule_count = len(self.registry.active_rules(options.jurisdiction, options.disabled_rules))
        evaluations = total * rule_count
        failed_evaluations = len(
            {
                (f.record_index, f.rule_id)
                for f in findings
                if f.severity in (Severity.ERROR, Severity.WARNING)
            }
        )
        passed = max(evaluations - failed_evaluations, 0)

        metrics = self._metrics(checked, results, orphans, options)
        if total == 0:
            overall = 100.0
        else:
            overall = sum(m.score for m in metrics.values()) / len(metrics)
            if evaluations:
                overall = (overall + passed / evaluations * 100) / 2
        overall = max(0.0, min(100.0, overall - critical * CRITICAL_ISSUE_PENALTY))

        report = QualityReport(
            overall_score=round(overall, 1),
            metrics=metrics,
            category_scores=self._category_scores(results, orphans, total),
            total_records=total,
            valid_records=valid,
            invalid_records=total - valid,
            warned_records=warned,
            severity_counts={s.value: severity_counts.get(s.value, 0) for s in Severity},
            critical_clinical_issues=critical,
            recommendations=self._recommendations(
                metrics, severity_counts.get(Severity.ERROR.value, 0), passed, critical
            ),
            findings=all_findings,
            jurisdiction=options.jurisdiction,
        )
        logger.info(
            f"Assessed {total} record(s): score {report.overall_score}, "
            f"{report.invalid_records} invalid, {critical} critical clinical issue(s)"
        )
        return report

    def _metrics(
        self,
        records: list[dict[str, Any]],
        results: list[RecordValidationResult],
        orphans: list[ValidationFinding],
        options: ValidationOptions,
    ) -> dict[str, QualityMetric]:
        if not records:
            return {
                name: QualityMetric(100.0, "No records to assess")
                for name in (
                    "completeness",
                    "accuracy",
                    "consistency",
                    "validity",
                    "uniqueness",
                    "timeliness",
                )
            }

        fields = sorted({k for r in records for k in r if k != "additional_fields"})
        total = len(records)

        # Completeness
        per_field = {
            name: sum(1 for r in records if _filled(r.get(name))) / total * 100
            for name in fields
        }
        completeness = sum(per_field.values()) / len(per_field) if per_field else 100.0
        sparse = [n for n, pct in per_field.items() if pct < COMPLETENESS_TARGET]

        # Accuracy
        rule_hits = Counter(
            f.rule_id for r in results for f in r.findings if f.severity != Severity.INFO
        )
        accuracy = 100.0 - sum(
            ACCURACY_PENALTIES.get(rule_id, 0.0) * count for rule_id, count in rule_hits.items()
        )
        accuracy_issues = [
            f"{count} {rule_id} finding(s)"
            for rule_id, count in sorted(rule_hits.items())
            if rule_id in ACCURACY_PENALTIES
        ]

        # Consistency
        consistency = 100.0
        consistency_issues = []
        for name in fields:
            lowered = name.lower()
            values = [str(r[name]) for r in records if isinstance(r.get(name), str) and r[name]]
            if "date" in lowered or "dob" in lowered:
                if len({_date_style(v) for v in values}) > 1:
                    consistency -= 10
                    consistency_issues.append(f"Inconsistent date formats in '{name}'")
            elif "name" in lowered:
                casing = {
                    "UPPER" if v == v.upper() else "LOWER" if v == v.lower() else "MIXED"
                    for v in values
                }
                if len(casing) > 1:
                    consistency -= 5
                    consistency_issues.append(f"Inconsistent name casing in '{name}'")
        if orphans:
            consistency -= 5 * len(orphans)
            consistency_issues.append(f"{len(orphans)} related record(s) reference unknown residents")

        # Validity
        valid = sum(1 for r in results if r.is_valid)
        validity = valid / total * 100

        # Uniqueness
        duplicates = sum(
            1 for r in results for f in r.findings if f.rule_id == "DUPLICATE_IDENTIFIER"
        )
        uniqueness = 100.0 - duplicates * 10

        # Timeliness
        timeliness = 100.0
        timeliness_issues = []
        today = options.today
        for name in fields:
            lowered = name.lower()
            if "date" not in lowered or "birth" in lowered or "admission" in lowered:
                continue
            dates = [d for d in (parse_flexible_date(r.get(name)) for r in records) if d]
            if not dates:
                continue
            stale = sum(1 for d in dates if today - d > STALE_AFTER) / len(dates)
            if stale:
                timeliness -= stale * 20
                timeliness_issues.append(f"{round(stale * 100)}% of '{name}' entries are over 1 year old")

        def metric(score: float, description: str, issues: list[str]) -> QualityMetric:
            score = round(max(0.0, min(100.0, score)), 1)
            return QualityMetric(score, description.format(score=score), issues)

        return {
            "completeness": metric(
                completeness,
                "{score}% of fields are populated",
                [f"'{n}' is {round(per_field[n])}% complete" for n in sparse],
            ),
            "accuracy": metric(accuracy, "{score}% accuracy on validated values", accuracy_issues),
            "consistency": metric(consistency, "{score}% format consistency", consistency_issues),
            "validity": metric(validity, "{score}% of records pass validation", []),
            "uniqueness": metric(
                uniqueness,
                "{score}% uniqueness for resident identifiers",
                [f"{duplicates} duplicate identifier(s)"] if duplicates else [],
            ),
            "timeliness": metric(timeliness, "{score}% of dated information is current", timeliness_issues),
        }

    @staticmethod
    def _category_scores(
        results: list[RecordValidationResult],
        orphans: list[ValidationFinding],
        total: int,
    ) -> dict[str, float]:
        """Share of records with no ERROR or WARNING in each category."""
        scores = {}
        for category in RuleCategory:
            affected = {
                r.index
                for r in results
                for f in r.findings
                if f.category == category and f.severity != Severity.INFO
            }
            if total == 0:
                scores[category.value] = 100.0
                continue
            score = 100.0 * (1 - len(affected) / total)
            if category == RuleCategory.REFERENTIAL:
                score -= 5 * len(orphans)
            scores[category.value] = round(max(0.0, score), 1)
        return scores

    @staticmethod
    def _recommendations(
        metrics: dict[str, QualityMetric], errors: int, passed: int, critical: int
    ) -> list[Recommendation]:
        recommendations = []
        if metrics["completeness"].score < COMPLETENESS_TARGET:
            recommendations.append(
                Recommendation(
                    "high",
                    "data_quality",
                    "Improve data completeness",
                    "Several fields have low completion rates: "
                    + "; ".join(metrics["completeness"].issues[:5]),
                )
            )
        if metrics["accuracy"].score < ACCURACY_TARGET:
            recommendations.append(
                Recommendation(
                    "high",
                    "data_quality",
                    "Address data accuracy issues",
                    "Invalid identifiers, dates or phone numbers were found: "
                    + "; ".join(metrics["accuracy"].issues),
                )
            )
        if critical:
            recommendations.append(
                Recommendation(
                    "high",
                    "clinical_safety",
                    "Critical clinical safety review required",
                    f"{critical} critical clinical safety issue(s) identified",
                )
            )
        if metrics["uniqueness"].score < 100:
            recommendations.append(
                Recommendation(
                    "medium",
                    "data_quality",
                    "Merge duplicate residents",
                    "; ".join(metrics["uniqueness"].issues),
                )
            )
        if errors > passed * 0.1:
            recommendations.append(
                Recommendation(
                    "medium",
                    "remediation",
                    "Reduce validation errors before migrating",
                    f"{errors} error(s) against {passed} passed check(s)",
                    action_required=False,
                )
            )
        recommendations.sort(key=lambda r: _PRIORITY_RANK[r.priority])
        return recommendations
