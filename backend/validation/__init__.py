"""Data quality and validation engine for migrated resident records.

Usage:
    from validation import ValidationEngine, ValidationOptions

    engine = ValidationEngine()
    result = engine.validate_record(record, options=ValidationOptions(auto_fix=True))
    if not result.is_valid:
        ...
    report = engine.assess(records)
"""

from .engine import ValidationEngine
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
from .registry import RuleRegistry, ValidationRule, build_default_registry

__all__ = [
    # Engine
    "ValidationEngine",
    # Registry
    "RuleRegistry",
    "ValidationRule",
    "build_default_registry",
    # Models
    "QualityMetric",
    "QualityReport",
    "Recommendation",
    "RecordValidationResult",
    "RuleCategory",
    "RuleContext",
    "Severity",
    "ValidationFinding",
    "ValidationOptions",
]
