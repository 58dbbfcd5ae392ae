"""Dataset-level referential consistency checks.

Unlike the per-record rules these look across records: identifiers must be
unique within a dataset, and related records (medication administration
exports, care plans) must reference a resident that exists.
"""

from __future__ import annotations

from typing import Any

from utils import normalize_nhs_number

from ..models import RuleCategory, Severity, ValidationFinding
from .common import is_blank

IDENTIFIER_FIELDS = ("resident_id", "nhs_number")


def _identity(field_name: str, value: Any) -> str:
    if field_name == "nhs_number":
        return normalize_nhs_number(value)
    return str(value).strip().lower()


def duplicate_identifier_findings(
    records: list[dict[str, Any]],
) -> list[tuple[int, ValidationFinding]]:
    """Flag every repeat occurrence of a resident identifier.

    The first occurrence is kept; each later one gets an ERROR naming the
    index of the record it duplicates.
    """
    findings: list[tuple[int, ValidationFinding]] = []
    for field_name in IDENTIFIER_FIELDS:
        first_seen: dict[str, int] = {}
        for index, record in enumerate(records):
            value = record.get(field_name)
            if is_blank(value):
                continue
            key = _identity(field_name, value)
            if key not in first_seen:
                first_seen[key] = index
                continue
            findings.append(
                (
                    index,
                    ValidationFinding(
                        rule_id="DUPLICATE_IDENTIFIER",
                        severity=Severity.ERROR,
                        field=field_name,
                        message=(
                            f"{field_name} '{value}' duplicates record {first_seen[key]}"
                        ),
                        category=RuleCategory.REFERENTIAL,
                    ),
                )
            )
    return findings


def orphan_reference_findings(
    records: list[dict[str, Any]],
    related: dict[str, list[dict[str, Any]]],
    known_resident_ids: set[str] | None = None,
) -> list[ValidationFinding]:
    """Flag related records whose resident_id matches no resident.

    Args:
        records: Resident records in the dataset
        related: Related datasets by name (e.g. "medications")
        known_resident_ids: Resident ids already migrated, also valid targets
    """
    resident_ids = {
        str(r["resident_id"]).strip().lower()
        for r in records
        if not is_blank(r.get("resident_id"))
    }
    resident_ids |= {str(i).strip().lower() for i in known_resident_ids or ()}

    findings = []
    for dataset_name, rows in related.items():
        for index, row in enumerate(rows):
            reference = row.get("resident_id")
            if is_blank(reference):
                message = f"{dataset_name} record {index} has no resident_id"
            elif str(reference).strip().lower() not in resident_ids:
                message = (
                    f"{dataset_name} record {index} references unknown resident '{reference}'"
                )
            else:
                continue
            findings.append(
                ValidationFinding(
                    rule_id="ORPHAN_REFERENCE",
                    severity=Severity.ERROR,
                    field="resident_id",
                    message=message,
                    category=RuleCategory.REFERENTIAL,
                    record_index=index,
                    provenance=f"{dataset_name}:{index}",
                )
            )
    return findings
