"""Field mapping data models."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator


class MappingStatus(str, Enum):
    """Status of a proposed field mapping."""

    ACCEPTED = "accepted"
    PENDING_APPROVAL = "pending_approval"
    ALTERNATE = "alternate"
    REJECTED = "rejected"


class ScoringWeights(BaseModel):
    """Tunable scoring parameters for the mapping engine.

    The defaults are starting points, not established truths; they are exposed
    so they can be tuned against labelled migrations.
    """

    name_weight: float = Field(default=0.6, ge=0.0, le=1.0)
    shape_weight: float = Field(default=0.4, ge=0.0, le=1.0)
    # Identifier and clinical targets trust what the values look like
    clinical_name_weight: float = Field(default=0.3, ge=0.0, le=1.0)
    clinical_shape_weight: float = Field(default=0.7, ge=0.0, le=1.0)
    # Below this a candidate is not proposed at all
    min_candidate_score: float = Field(default=0.5, ge=0.0, le=1.0)
    # Below this an accepted mapping needs operator approval
    confidence_floor: float = Field(default=0.7, ge=0.0, le=1.0)
    max_alternates: int = Field(default=3, ge=0)
    accept_boost: float = 0.05
    reject_penalty: float = 0.1

    @model_validator(mode="after")
    def check_weight_sums(self) -> "ScoringWeights":
        for name, total in (
            ("name_weight + shape_weight", self.name_weight + self.shape_weight),
            (
                "clinical_name_weight + clinical_shape_weight",
                self.clinical_name_weight + self.clinical_shape_weight,
            ),
        ):
            if abs(total - 1.0) > 1e-6:
                raise ValueError(f"{name} must sum to 1.0, got {total}")
        return self


@dataclass
class SubMapping:
    """A structured component produced by decomposing a composite field."""

    component: str
    target_field: str
    confidence: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "component": self.component,
            "target_field": self.target_field,
            "confidence": self.confidence,
        }


@dataclass
class FieldMapping:
    """A proposed correspondence between a source field and a canonical field."""

    source_field: str
    target_field: str
    confidence: float
    transformation: str
    status: MappingStatus
    name_score: float = 0.0
    shape_score: float = 0.0
    method: str = "similarity"  # 'alias', 'learned', 'similarity', 'value_shape', 'manual'
    tenant_id: str | None = None
    source_system_type: str | None = None
    sub_mappings: list[SubMapping] = field(default_factory=list)
    mapping_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    @property
    def is_primary(self) -> bool:
        return self.status in (MappingStatus.ACCEPTED, MappingStatus.PENDING_APPROVAL)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mapping_id": self.mapping_id,
            "source_field": self.source_field,
            "target_field": self.target_field,
            "confidence": round(self.confidence, 4),
            "transformation": self.transformation,
            "status": self.status.value,
            "name_score": round(self.name_score, 4),
            "shape_score": round(self.shape_score, 4),
            "method": self.method,
            "tenant_id": self.tenant_id,
            "source_system_type": self.source_system_type,
            "sub_mappings": [s.to_dict() for s in self.sub_mappings],
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FieldMapping":
        return cls(
            mapping_id=data["mapping_id"],
            source_field=data["source_field"],
            target_field=data["target_field"],
            confidence=data["confidence"],
            transformation=data["transformation"],
            status=MappingStatus(data["status"]),
            name_score=data.get("name_score", 0.0),
            shape_score=data.get("shape_score", 0.0),
            method=data.get("method", "similarity"),
            tenant_id=data.get("tenant_id"),
            source_system_type=data.get("source_system_type"),
            sub_mappings=[SubMapping(**s) for s in data.get("sub_mappings", [])],
            created_at=data.get("created_at") or datetime.now(timezone.utc).isoformat(),
        )


@dataclass
class UnmappedField:
    """A source field with no candidate above the floor."""

    source_field: str
    reason: str
    best_target: str | None = None
    best_confidence: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_field": self.source_field,
            "reason": self.reason,
            "best_target": self.best_target,
            "best_confidence": round(self.best_confidence, 4),
        }


@dataclass
class MappingProposal:
    """Ranked mapping candidates for one source schema."""

    tenant_id: str
    source_system_type: str
    mappings: list[FieldMapping]
    alternates: list[FieldMapping]
    unmapped: list[UnmappedField]
    sample_size: int
    decompositions: dict[str, list[list[dict[str, Any]]]] = field(default_factory=dict)

    def for_source(self, source_field: str) -> FieldMapping | None:
        """Primary mapping for a source field, if any."""
        for mapping in self.mappings:
            if mapping.source_field == source_field:
                return mapping
        return None

    def alternates_for(self, source_field: str) -> list[FieldMapping]:
        return [m for m in self.alternates if m.source_field == source_field]

    @property
    def pending_approval(self) -> list[FieldMapping]:
        return [m for m in self.mappings if m.status == MappingStatus.PENDING_APPROVAL]

    @property
    def statistics(self) -> dict[str, Any]:
        """Confidence distribution: high > 0.9, medium 0.7-0.9, low <= 0.7."""
        confidences = [m.confidence for m in self.mappings]
        total_fields = len(self.mappings) + len(self.unmapped)
        return {
            "total_fields": total_fields,
            "mapped_fields": len(self.mappings),
            "unmapped_fields": len(self.unmapped),
            "pending_approval": len(self.pending_approval),
            "high_confidence": sum(1 for c in confidences if c > 0.9),
            "medium_confidence": sum(1 for c in confidences if 0.7 < c <= 0.9),
            "low_confidence": sum(1 for c in confidences if c <= 0.7),
            "average_confidence": (
                round(sum(confidences) / len(confidences), 4) if confidences else 0.0
            ),
            "mapping_rate": (
                round(len(self.mappings) / total_fields, 4) if total_fields else 0.0
            ),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "source_system_type": self.source_system_type,
            "mappings": [m.to_dict() for m in self.mappings],
            "alternates": [m.to_dict() for m in self.alternates],
            "unmapped": [u.to_dict() for u in self.unmapped],
            "sample_size": self.sample_size,
            "statistics": self.statistics,
        }
