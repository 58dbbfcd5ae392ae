"""Field mapping engine.

Infers source-to-canonical field correspondences from a sample of extracted
records, learns from operator feedback, and applies accepted mappings to
records (and back again).

Usage:
    engine = FieldMappingEngine(MappingHistoryStore(db_path))
    proposal = engine.propose(sample, "care_systems_uk", tenant_id)
    plan = MappingPlan.from_proposal(proposal)
    plan.ensure_ready()
    mapped = plan.apply(record)
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Iterable

from errors import MappingError, NotFoundError
from records import ExtractedRecord

from .canonical_schema import CANONICAL_SCHEMA, CanonicalField
from .medications import DEFAULT_FREQUENCY, decompose_medications
from .models import (
    FieldMapping,
    MappingProposal,
    MappingStatus,
    ScoringWeights,
    SubMapping,
    UnmappedField,
)
from .persistence import Adjustment, MappingAction, MappingHistoryStore
from .similarity import name_similarity, source_key
from .transforms import TransformError, get_transform, transform_for
from .value_shape import shape_score

logger = logging.getLogger(__name__)

MIN_LEARNED_CONFIDENCE = 0.1
MAX_CONFIDENCE = 1.0

# Bumped when the exported mapping template layout changes
TEMPLATE_VERSION = 1

MEDICATION_COMPONENTS = ("name", "dose", "unit", "frequency")


@dataclass
class _Candidate:
    source_field: str
    target: CanonicalField
    confidence: float
    name_score: float
    shape_score: float
    method: str


def _jsonable(value: Any) -> Any:
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    return value


class FieldMappingEngine:
    """Proposes, learns and applies field mappings.

    Scoring combines:
    1. Name similarity (token overlap, synonym table, aliases, learned aliases)
    2. Value-shape compatibility of the sampled values

    Identifier and clinical targets weight value shape over name similarity.
    Learned adjustments are read from and written to the history store for
    the (tenant, source-system type) pair only.
    """

    def __init__(
        self,
        store: MappingHistoryStore,
        weights: ScoringWeights | None = None,
        schema: dict[str, CanonicalField] | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            store: History store for proposals, feedback and adjustments
            weights: Default scoring weights
            schema: Canonical schema (defaults to the resident schema)
        """
        self.store = store
        self.weights = weights or ScoringWeights()
        self.schema = schema or CANONICAL_SCHEMA

    def _score(
        self,
        source_field: str,
        values: list[Any],
        target: CanonicalField,
        adjustment: Adjustment | None,
        weights: ScoringWeights,
    ) -> _Candidate:
        learned_alias = bool(adjustment and adjustment.learned_alias)
        name = 1.0 if learned_alias else name_similarity(source_field, target)
        shape = shape_score(values, target)

        if target.shape_weighted:
            name_part = weights.clinical_name_weight * name
            shape_part = weights.clinical_shape_weight * shape
        else:
            name_part = weights.name_weight * name
            shape_part = weights.shape_weight * shape

        confidence = name_part + shape_part
        if adjustment and adjustment.delta:
            confidence = max(
                MIN_LEARNED_CONFIDENCE, min(MAX_CONFIDENCE, confidence + adjustment.delta)
            )

        if learned_alias:
            method = "learned"
        elif name == 1.0:
            method = "alias"
        elif shape_part > name_part:
            method = "value_shape"
        else:
            method = "similarity"

        return _Candidate(
            source_field=source_field,
            target=target,
            confidence=round(max(0.0, min(MAX_CONFIDENCE, confidence)), 4),
            name_score=round(name, 4),
            shape_score=shape,
            method=method,
        )

    def propose(
        self,
        records: Iterable[ExtractedRecord],
        source_system_type: str,
        tenant_id: str,
        pipeline_id: str | None = None,
        weights: ScoringWeights | None = None,
    ) -> MappingProposal:
        """Propose mappings for the fields seen in a sample of records.

        Every target field accepts one primary mapping. Candidates are claimed
        in order of confidence, then value-shape score, then how contested the
        target is; losing candidates become alternates for operator override.

        Args:
            records: Sample of extracted records
            source_system_type: Source system type the sample came from
            tenant_id: Tenant the migration belongs to
            pipeline_id: Pipeline the proposal is recorded against
            weights: Scoring weights overriding the engine defaults

        Returns:
            MappingProposal with primary mappings, alternates and unmapped fields
        """
        weights = weights or self.weights
        sample = list(records)

        field_order: dict[str, int] = {}
        for record in sample:
            for name in record.field_names():
                field_order.setdefault(name, len(field_order))

        adjustments = self.store.get_adjustments(tenant_id, source_system_type)

        candidates: dict[str, list[_Candidate]] = {}
        best_below_floor: dict[str, _Candidate] = {}
        for source_field in field_order:
            values = [record.get(source_field) for record in sample]
            key = source_key(source_field)
            scored = [
                self._score(
                    source_field, values, target, adjustments.get((key, target.name)), weights
                )
                for target in self.schema.values()
            ]
            scored.sort(key=lambda c: (-c.confidence, -c.shape_score))
            accepted = [c for c in scored if c.confidence >= weights.min_candidate_score]
            candidates[source_field] = accepted
            if not accepted and scored:
                best_below_floor[source_field] = scored[0]

        claim_counts = Counter(
            c.target.name for source_candidates in candidates.values() for c in source_candidates
        )
        ordered = sorted(
            (c for source_candidates in candidates.values() for c in source_candidates),
            key=lambda c: (
                -c.confidence,
                -c.shape_score,
                claim_counts[c.target.name],
                field_order[c.source_field],
            ),
        )

        assigned: dict[str, _Candidate] = {}
        claimed: set[str] = set()
        for candidate in ordered:
            if candidate.source_field in assigned or candidate.target.name in claimed:
                continue
            assigned[candidate.source_field] = candidate
            claimed.add(candidate.target.name)

        mappings: list[FieldMapping] = []
        alternates: list[FieldMapping] = []
        unmapped: list[UnmappedField] = []
        decompositions: dict[str, list[list[dict[str, Any]]]] = {}

        for source_field in field_order:
            primary = assigned.get(source_field)
            if primary is not None:
                status = (
                    MappingStatus.ACCEPTED
                    if primary.confidence >= weights.confidence_floor
                    else MappingStatus.PENDING_APPROVAL
                )
                mapping = self._to_mapping(primary, status, tenant_id, source_system_type)
                if mapping.transformation == "decompose_medications":
                    values = [record.get(source_field) for record in sample]
                    mapping.sub_mappings, decompositions[source_field] = (
                        self._decompose(values, mapping.confidence)
                    )
                mappings.append(mapping)
            elif candidates[source_field]:
                best = candidates[source_field][0]
                unmapped.append(
                    UnmappedField(
                        source_field=source_field,
                        reason="all candidate targets are claimed by other fields",
                        best_target=best.target.name,
                        best_confidence=best.confidence,
                    )
                )
            else:
                best = best_below_floor.get(source_field)
                unmapped.append(
                    UnmappedField(
                        source_field=source_field,
                        reason=(
                            f"no candidate reached {weights.min_candidate_score:.2f}"
                        ),
                        best_target=best.target.name if best else None,
                        best_confidence=best.confidence if best else 0.0,
                    )
                )

            others = [
                c
                for c in candidates[source_field]
                if primary is None or c.target.name != primary.target.name
            ]
            for candidate in others[: weights.max_alternates]:
                alternates.append(
                    self._to_mapping(
                        candidate, MappingStatus.ALTERNATE, tenant_id, source_system_type
                    )
                )

        proposal = MappingProposal(
            tenant_id=tenant_id,
            source_system_type=source_system_type,
            mappings=mappings,
            alternates=alternates,
            unmapped=unmapped,
            sample_size=len(sample),
            decompositions=decompositions,
        )
        self.store.save_mappings(mappings + alternates, pipeline_id=pipeline_id)

        stats = proposal.statistics
        logger.info(
            f"Proposed {stats['mapped_fields']} mapping(s) for {source_system_type} "
            f"({stats['pending_approval']} pending approval, "
            f"{stats['unmapped_fields']} unmapped)",
            extra={"tenant_id": tenant_id, "pipeline_id": pipeline_id},
        )
        return proposal

    def _to_mapping(
        self,
        candidate: _Candidate,
        status: MappingStatus,
        tenant_id: str,
        source_system_type: str,
    ) -> FieldMapping:
        return FieldMapping(
            source_field=candidate.source_field,
            target_field=candidate.target.name,
            confidence=candidate.confidence,
            transformation=transform_for(candidate.target),
            status=status,
            name_score=candidate.name_score,
            shape_score=candidate.shape_score,
            method=candidate.method,
            tenant_id=tenant_id,
            source_system_type=source_system_type,
        )

    def _decompose(
        self, values: list[Any], mapping_confidence: float
    ) -> tuple[list[SubMapping], list[list[dict[str, Any]]]]:
        """Decompose sampled medication text into structured sub-mappings.

        Each component's confidence is the mapping confidence scaled by the
        share of decomposed entries in which the component was recognized.
        """
        per_record = [decompose_medications(value) for value in values if value]
        entries = [entry for record_entries in per_record for entry in record_entries]
        if not entries:
            return [], [[] for _ in per_record]

        recognized = {
            "name": sum(entry.confidence for entry in entries) / len(entries),
            "dose": sum(1 for e in entries if e.dose) / len(entries),
            "unit": sum(1 for e in entries if e.unit) / len(entries),
            "frequency": sum(1 for e in entries if e.frequency != DEFAULT_FREQUENCY)
            / len(entries),
        }
        sub_mappings = [
            SubMapping(
                component=component,
                target_field=f"current_medications[].{component}",
                confidence=round(mapping_confidence * recognized[component], 4),
            )
            for component in MEDICATION_COMPONENTS
        ]
        return sub_mappings, [[e.to_dict() for e in rec] for rec in per_record]

    def _require(self, mapping_id: str, tenant_id: str) -> FieldMapping:
        mapping = self.store.get_mapping(mapping_id, tenant_id)
        if mapping is None:
            raise NotFoundError(f"Mapping not found: {mapping_id}")
        return mapping

    def learn(
        self,
        mapping_id: str,
        accepted: bool,
        tenant_id: str,
        corrected_target: str | None = None,
    ) -> FieldMapping:
        """Record operator feedback on a mapping.

        Accepting raises future confidence for this source field and target;
        rejecting lowers it. A correction rejects the mapping and teaches the
        corrected target as an alias for the source field. Adjustments apply
        only to the mapping's own tenant and source-system type.

        Args:
            mapping_id: Mapping the feedback is about
            accepted: Whether the operator accepted the mapping
            tenant_id: Tenant giving the feedback
            corrected_target: Canonical field the source should map to instead

        Returns:
            The mapping now in effect for the source field

        Raises:
            NotFoundError: If the mapping does not exist for the tenant
            ValueError: If the corrected target is not a canonical field
        """
        mapping = self._require(mapping_id, tenant_id)
        scope = (tenant_id, mapping.source_system_type or "")
        key = source_key(mapping.source_field)

        if corrected_target and corrected_target != mapping.target_field:
            if corrected_target not in self.schema:
                raise ValueError(f"Unknown canonical field: {corrected_target}")
            self.store.adjust(*scope, key, mapping.target_field, -self.weights.reject_penalty)
            self.store.adjust(*scope, key, corrected_target, 0.0, learned_alias=True)
            self.store.update_status(
                mapping_id,
                tenant_id,
                MappingStatus.REJECTED,
                MappingAction.CORRECTED,
                {"corrected_target": corrected_target},
            )
            target = self.schema[corrected_target]
            corrected = FieldMapping(
                source_field=mapping.source_field,
                target_field=corrected_target,
                confidence=MAX_CONFIDENCE,
                transformation=transform_for(target),
                status=MappingStatus.ACCEPTED,
                name_score=1.0,
                shape_score=mapping.shape_score,
                method="manual",
                tenant_id=tenant_id,
                source_system_type=mapping.source_system_type,
            )
            pipeline_id = self._pipeline_of(mapping_id, tenant_id)
            self._demote_conflicts(corrected, tenant_id, pipeline_id)
            self.store.save_mappings([corrected], pipeline_id=pipeline_id)
            return corrected

        if accepted:
            self.store.adjust(*scope, key, mapping.target_field, self.weights.accept_boost)
            return self.approve(mapping_id, tenant_id, action=MappingAction.ACCEPTED)

        self.store.adjust(*scope, key, mapping.target_field, -self.weights.reject_penalty)
        self.store.update_status(
            mapping_id, tenant_id, MappingStatus.REJECTED, MappingAction.REJECTED
        )
        mapping.status = MappingStatus.REJECTED
        return mapping

    def approve(
        self,
        mapping_id: str,
        tenant_id: str,
        action: MappingAction = MappingAction.APPROVED,
    ) -> FieldMapping:
        """Approve a pending or alternate mapping, making it the primary one.

        Any other primary mapping for the same source field or the same target
        field in the pipeline becomes an alternate.
        """
        mapping = self._require(mapping_id, tenant_id)
        pipeline_id = self._pipeline_of(mapping_id, tenant_id)
        self._demote_conflicts(mapping, tenant_id, pipeline_id)
        self.store.update_status(mapping_id, tenant_id, MappingStatus.ACCEPTED, action)
        mapping.status = MappingStatus.ACCEPTED
        return mapping

    def _pipeline_of(self, mapping_id: str, tenant_id: str) -> str | None:
        return self.store.get_pipeline_id(mapping_id, tenant_id)

    def _demote_conflicts(
        self, mapping: FieldMapping, tenant_id: str, pipeline_id: str | None
    ) -> None:
        if pipeline_id is None:
            return
        for other in self.store.list_mappings(
            tenant_id,
            pipeline_id,
            statuses=(MappingStatus.ACCEPTED, MappingStatus.PENDING_APPROVAL),
        ):
            if other.mapping_id == mapping.mapping_id:
                continue
            if (
                other.source_field == mapping.source_field
                or other.target_field == mapping.target_field
            ):
                self.store.update_status(
                    other.mapping_id,
                    tenant_id,
                    MappingStatus.ALTERNATE,
                    MappingAction.CORRECTED,
                    {"superseded_by": mapping.mapping_id},
                )

    def plan_for(
        self,
        tenant_id: str,
        pipeline_id: str,
        source_fields: Iterable[str],
        allow_unmapped: bool = False,
    ) -> "MappingPlan":
        """Build the mapping plan currently in effect for a pipeline."""
        primaries = self.store.list_mappings(
            tenant_id,
            pipeline_id,
            statuses=(MappingStatus.ACCEPTED, MappingStatus.PENDING_APPROVAL),
        )
        mapped = {m.source_field for m in primaries}
        unmapped = [f for f in source_fields if f not in mapped]
        return MappingPlan(primaries, unmapped, allow_unmapped=allow_unmapped)

    def export_template(self, tenant_id: str, source_system_type: str) -> dict[str, Any]:
        """Export what a tenant has taught the engine about one source-system type.

        The template holds the learned confidence adjustments and aliases, so
        a second care home moving off the same legacy system can start from
        them.
        """
        adjustments = self.store.get_adjustments(tenant_id, source_system_type)
        return {
            "template_version": TEMPLATE_VERSION,
            "source_system_type": source_system_type,
            "adjustments": [
                {
                    "source_key": a.source_key,
                    "target_field": a.target_field,
                    "delta": a.delta,
                    "learned_alias": a.learned_alias,
                }
                for a in sorted(adjustments.values(), key=lambda a: (a.source_key, a.target_field))
            ],
        }

    def import_template(
        self,
        template: dict[str, Any],
        tenant_id: str,
        source_system_type: str | None = None,
    ) -> int:
        """Load a mapping template into one tenant's learned adjustments.

        Imported adjustments replace the tenant's own for the same source
        field and target; nothing outside the tenant and source-system type
        changes.

        Args:
            template: A template from ``export_template``
            tenant_id: Tenant receiving the template
            source_system_type: Source-system type to file it under
                (default: the type it was exported from)

        Returns:
            Number of adjustments imported

        Raises:
            ValueError: If the template is malformed or names an unknown
                canonical field
        """
        if template.get("template_version") != TEMPLATE_VERSION:
            raise ValueError(
                f"Unsupported mapping template version: {template.get('template_version')}"
            )
        system_type = source_system_type or template.get("source_system_type")
        if not system_type:
            raise ValueError("Mapping template has no source system type")

        entries = template.get("adjustments") or []
        unknown = sorted({e["target_field"] for e in entries} - set(self.schema))
        if unknown:
            raise ValueError(f"Unknown canonical field(s) in template: {', '.join(unknown)}")

        current = self.store.get_adjustments(tenant_id, system_type)
        for entry in entries:
            existing = current.get((entry["source_key"], entry["target_field"]))
            self.store.adjust(
                tenant_id,
                system_type,
                entry["source_key"],
                entry["target_field"],
                float(entry.get("delta", 0.0)) - (existing.delta if existing else 0.0),
                learned_alias=bool(entry.get("learned_alias", False)),
            )
        logger.info(
            f"Imported {len(entries)} mapping adjustment(s) for {tenant_id}/{system_type}"
        )
        return len(entries)


@dataclass
class MappedRecord:
    """Canonical projection of one extracted record."""

    values: dict[str, Any]
    provenance_key: str
    transform_errors: list[dict[str, Any]] = field(default_factory=list)
    unplanned_fields: list[str] = field(default_factory=list)


class MappingPlan:
    """The primary mappings for a pipeline, ready to apply to records.

    Fields the plan has never seen (absent from the sample it was built
    from) are reported on each mapped record as ``unplanned_fields``; with
    ``allow_unmapped`` they travel in ``additional_fields`` like any other
    unmapped field.
    """

    def __init__(
        self,
        mappings: list[FieldMapping],
        unmapped_fields: list[str] | None = None,
        allow_unmapped: bool = False,
    ) -> None:
        self.mappings = [m for m in mappings if m.is_primary]
        self.unmapped_fields = list(unmapped_fields or [])
        self.allow_unmapped = allow_unmapped
        self._known = {m.source_field for m in self.mappings} | set(self.unmapped_fields)

    def covers(self, source_field: str) -> bool:
        return source_field in self._known

    @classmethod
    def from_proposal(
        cls, proposal: MappingProposal, allow_unmapped: bool = False
    ) -> "MappingPlan":
        return cls(
            proposal.mappings,
            [u.source_field for u in proposal.unmapped],
            allow_unmapped=allow_unmapped,
        )

    @property
    def pending(self) -> list[FieldMapping]:
        return [m for m in self.mappings if m.status == MappingStatus.PENDING_APPROVAL]

    def ensure_ready(self) -> None:
        """Check the plan can be applied.

        Raises:
            MappingError: If mappings await approval, two sources claim one
                target, or fields are unmapped without operator permission
        """
        if self.pending:
            fields = [m.source_field for m in self.pending]
            raise MappingError(
                f"{len(fields)} mapping(s) below the confidence floor need approval: "
                f"{', '.join(fields)}",
                source_fields=fields,
            )

        targets = Counter(m.target_field for m in self.mappings)
        contested = sorted(t for t, n in targets.items() if n > 1)
        if contested:
            raise MappingError(
                f"Multiple source fields map to: {', '.join(contested)}",
                source_fields=[m.source_field for m in self.mappings if m.target_field in contested],
            )

        if self.unmapped_fields and not self.allow_unmapped:
            raise MappingError(
                f"{len(self.unmapped_fields)} source field(s) could not be mapped: "
                f"{', '.join(self.unmapped_fields)}",
                source_fields=self.unmapped_fields,
            )

    def apply(self, record: ExtractedRecord) -> MappedRecord:
        """Project an extracted record onto the canonical schema.

        A value that fails its transform is carried through unchanged and
        reported, so validation sees (and flags) the original value.
        """
        values: dict[str, Any] = {}
        errors: list[dict[str, Any]] = []

        for mapping in self.mappings:
            if mapping.status != MappingStatus.ACCEPTED or mapping.source_field not in record:
                continue
            raw = record.get(mapping.source_field)
            if raw is None or (isinstance(raw, str) and not raw.strip()):
                values[mapping.target_field] = None
                continue
            try:
                values[mapping.target_field] = _jsonable(
                    get_transform(mapping.transformation).forward(raw)
                )
            except TransformError as e:
                values[mapping.target_field] = _jsonable(raw)
                errors.append(
                    {
                        "source_field": mapping.source_field,
                        "target_field": mapping.target_field,
                        "message": str(e),
                    }
                )

        unplanned = [name for name in record.field_names() if not self.covers(name)]

        if self.allow_unmapped:
            extras = {
                name: record.fields[name].to_json()
                for name in [*self.unmapped_fields, *unplanned]
                if name in record
            }
            if extras:
                values["additional_fields"] = extras

        return MappedRecord(values, record.provenance.key, errors, unplanned)

    def invert(self, canonical: dict[str, Any]) -> dict[str, Any]:
        """Map a canonical record back to source field names and formats."""
        source: dict[str, Any] = {}
        for mapping in self.mappings:
            if mapping.status != MappingStatus.ACCEPTED or mapping.target_field not in canonical:
                continue
            value = canonical[mapping.target_field]
            source[mapping.source_field] = (
                None if value is None else get_transform(mapping.transformation).inverse(value)
            )
        source.update(canonical.get("additional_fields") or {})
        return source
