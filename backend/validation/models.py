"""Data models for the validation and quality engine."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any


class Severity(str, Enum):
    """Finding severity. ERROR blocks the record unless its rule is overridden."""

    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class RuleCategory(str, Enum):
    STRUCTURAL = "structural"
    IDENTIFIER = "identifier"
    CLINICAL = "clinical"
    FORMAT = "format"
    REGULATORY = "regulatory"
    REFERENTIAL = "referential"


@dataclass(frozen=True)
class ValidationFinding:
    """A single rule finding against one record."""

    rule_id: str
    severity: Severity
    field: str | None
    message: str
    suggested_fix: Any = None
    category: RuleCategory | None = None
    record_index: int | None = None
    provenance: str | None = None
    critical: bool = False

    def located(
        self,
        record_index: int | None,
        provenance: str | None = None,
        category: RuleCategory | None = None,
        critical: bool | None = None,
    ) -> "ValidationFinding":
        return replace(
            self,
            record_index=record_index,
            provenance=provenance or self.provenance,
            category=self.category or category,
            critical=self.critical if critical is None else critical,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "severity": self.severity.value,
            "field": self.field,
            "message": self.message,
            "suggested_fix": self.suggested_fix,
            "category": self.category.value if self.category else None,
            "record_index": self.record_index,
            "provenance": self.provenance,
            "critical": self.critical,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ValidationFinding":
        return cls(
            rule_id=data["rule_id"],
            severity=Severity(data["severity"]),
            field=data.get("field"),
            message=data["message"],
            suggested_fix=data.get("suggested_fix"),
            category=RuleCategory(data["category"]) if data.get("category") else None,
            record_index=data.get("record_index"),
            provenance=data.get("provenance"),
            critical=data.get("critical", False),
        )


@dataclass(frozen=True)
class ValidationOptions:
    """Options controlling record validation and quality assessment.

    Attributes:
        jurisdiction: Regulatory jurisdiction whose field rules apply
        auto_fix: Apply deterministic fixers to a copy of each record
        overridden_rules: Rule ids whose ERROR findings no longer block
        disabled_rules: Rule ids that are not evaluated at all
        reference_date: "Today" for date plausibility checks
    """

    jurisdiction: str = "england"
    auto_fix: bool = False
    overridden_rules: frozenset[str] = frozenset()
    disabled_rules: frozenset[str] = frozenset()
    reference_date: date | None = None

    @property
    def today(self) -> date:
        return self.reference_date or datetime.now(timezone.utc).date()


@dataclass(frozen=True)
class RuleContext:
    """Inputs required to evaluate validation rules against one record."""

    record: dict[str, Any]
    options: ValidationOptions
    datasets: dict[str, Any] = field(default_factory=dict)


@dataclass
class RecordValidationResult:
    """Outcome of validating one record."""

    index: int
    findings: list[ValidationFinding]
    fixed_record: dict[str, Any] | None = None
    overridden_rules: frozenset[str] = frozenset()
    provenance: str | None = None

    @property
    def blocking(self) -> list[ValidationFinding]:
        return [
            f
            for f in self.findings
            if f.severity == Severity.ERROR and f.rule_id not in self.overridden_rules
        ]

    @property
    def is_valid(self) -> bool:
        return not self.blocking

    @property
    def has_warnings(self) -> bool:
        return any(f.severity == Severity.WARNING for f in self.findings)

    def add(self, finding: ValidationFinding) -> None:
        self.findings.append(finding.located(self.index, self.provenance))

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "is_valid": self.is_valid,
            "provenance": self.provenance,
            "findings": [f.to_dict() for f in self.findings],
            "fixed_record": self.fixed_record,
        }


@dataclass
class QualityMetric:
    score: float
    description: str
    issues: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"score": self.score, "description": self.description, "issues": self.issues}


@dataclass
class Recommendation:
    """A ranked remediation recommendation."""

    priority: str  # 'high', 'medium', 'low'
    category: str
    title: str
    description: str
    action_required: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "priority": self.priority,
            "category": self.category,
            "title": self.title,
            "description": self.description,
            "action_required": self.action_required,
        }


@dataclass
class QualityReport:
    """Quality assessment of a dataset."""

    overall_score: float
    metrics: dict[str, QualityMetric]
    category_scores: dict[str, float]
    total_records: int
    valid_records: int
    invalid_records: int
    warned_records: int
    severity_counts: dict[str, int]
    critical_clinical_issues: int
    recommendations: list[Recommendation]
    findings: list[ValidationFinding]
    jurisdiction: str = "england"
    generated_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def meets(self, threshold: float) -> bool:
        return self.overall_score >= threshold

    def findings_for(self, record_index: int) -> list[ValidationFinding]:
        return [f for f in self.findings if f.record_index == record_index]

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall_score": self.overall_score,
            "metrics": {name: m.to_dict() for name, m in self.metrics.items()},
            "category_scores": self.category_scores,
            "total_records": self.total_records,
            "valid_records": self.valid_records,
            "invalid_records": self.invalid_records,
            "warned_records": self.warned_records,
            "severity_counts": self.severity_counts,
            "critical_clinical_issues": self.critical_clinical_issues,
            "recommendations": [r.to_dict() for r in self.recommendations],
            "findings": [f.to_dict() for f in self.findings],
            "jurisdiction": self.jurisdiction,
            "generated_at": self.generated_at,
        }
