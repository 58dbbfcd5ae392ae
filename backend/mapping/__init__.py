"""Field mapping module for legacy care-system exports.

This module infers how legacy source fields correspond to the canonical
resident schema, learns from operator feedback, and applies the accepted
mappings to extracted records.

Usage:
    from mapping import FieldMappingEngine, MappingHistoryStore, MappingPlan

    engine = FieldMappingEngine(MappingHistoryStore(db_path))
    proposal = engine.propose(sample, "care_systems_uk", tenant_id)

    # Operator feedback is scoped to the tenant and source-system type
    engine.learn(mapping_id, accepted=False, tenant_id=tenant_id,
                 corrected_target="room_number")

    plan = MappingPlan.from_proposal(proposal)
    plan.ensure_ready()
    mapped = plan.apply(record)
"""

from .canonical_schema import (
    ALIAS_LOOKUP,
    CANONICAL_SCHEMA,
    CARE_LEVELS,
    CQC_REQUIRED_FIELDS,
    FUNDING_TYPES,
    GENDERS,
    REQUIRED_FIELDS,
    CanonicalField,
    FieldCategory,
    ValueShape,
    get_all_aliases,
)
from .engine import FieldMappingEngine, MappedRecord, MappingPlan
from .medications import (
    MedicationEntry,
    decompose_medications,
    medications_to_text,
    parse_medication_entry,
)
from .models import (
    FieldMapping,
    MappingProposal,
    MappingStatus,
    ScoringWeights,
    SubMapping,
    UnmappedField,
)
from .persistence import Adjustment, AuditLogEntry, MappingAction, MappingHistoryStore
from .similarity import name_similarity, source_key, tokenize
from .transforms import (
    TRANSFORMS,
    Transform,
    TransformError,
    get_transform,
    transform_for,
)
from .value_shape import shape_score, value_score

__all__ = [
    # Engine
    "FieldMappingEngine",
    "MappingPlan",
    "MappedRecord",
    # Models
    "FieldMapping",
    "MappingProposal",
    "MappingStatus",
    "ScoringWeights",
    "SubMapping",
    "UnmappedField",
    # Canonical schema
    "ALIAS_LOOKUP",
    "CANONICAL_SCHEMA",
    "CARE_LEVELS",
    "CQC_REQUIRED_FIELDS",
    "FUNDING_TYPES",
    "GENDERS",
    "REQUIRED_FIELDS",
    "CanonicalField",
    "FieldCategory",
    "ValueShape",
    "get_all_aliases",
    # Scoring
    "name_similarity",
    "shape_score",
    "source_key",
    "tokenize",
    "value_score",
    # Transforms
    "TRANSFORMS",
    "Transform",
    "TransformError",
    "get_transform",
    "transform_for",
    # Medications
    "MedicationEntry",
    "decompose_medications",
    "medications_to_text",
    "parse_medication_entry",
    # Persistence
    "Adjustment",
    "AuditLogEntry",
    "MappingAction",
    "MappingHistoryStore",
]
