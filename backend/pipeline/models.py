"""Migration pipeline data models."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from config import DEFAULT_BATCH_SIZE
from connectors.capabilities import SYSTEM_CAPABILITIES
from connectors.models import Credentials, ExtractionSelector, SourceSystemDescriptor
from errors import MigrationError
from mapping.models import ScoringWeights
from validation.rules.regulatory import REGULATOR_FIELDS


class PipelineState(str, Enum):
    PREPARING = "preparing"
    ANALYZING = "analyzing"
    MAPPING = "mapping"
    VALIDATING = "validating"
    BACKING_UP = "backing_up"
    MIGRATING = "migrating"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ROLLED_BACK = "rolled_back"


# Stages in execution order
STAGE_ORDER = (
    PipelineState.PREPARING,
    PipelineState.ANALYZING,
    PipelineState.MAPPING,
    PipelineState.VALIDATING,
    PipelineState.BACKING_UP,
    PipelineState.MIGRATING,
    PipelineState.VERIFYING,
    PipelineState.COMPLETED,
)

# No further execution; retention may expire their snapshots
TERMINAL_STATES = frozenset(
    {
        PipelineState.COMPLETED,
        PipelineState.FAILED,
        PipelineState.CANCELLED,
        PipelineState.ROLLED_BACK,
    }
)

ROLLBACK_SOURCES = frozenset(
    {
        PipelineState.MIGRATING,
        PipelineState.VERIFYING,
        PipelineState.COMPLETED,
        PipelineState.FAILED,
    }
)


class SuspensionReason(str, Enum):
    MAPPING_APPROVAL = "mapping_approval"
    QUALITY_OVERRIDE = "quality_override"
    PAUSED = "paused"


class SourceSystemConfig(BaseModel):
    """One legacy system to migrate from."""

    system: SourceSystemDescriptor
    credentials: Credentials | None = None
    selector: ExtractionSelector = Field(default_factory=ExtractionSelector)


class MigrationRequirements(BaseModel):
    timeline_days: int | None = Field(default=None, ge=1)
    downtime_allowance_minutes: int = Field(default=0, ge=0)
    # Minimum overall quality score (0-100) before migrating without override
    quality_threshold: float = Field(default=70.0, ge=0.0, le=100.0)


class UserPreferences(BaseModel):
    notification_cadence: str = "per_batch"
    real_time_updates: bool = True

    @field_validator("notification_cadence")
    @classmethod
    def validate_cadence(cls, v: str) -> str:
        allowed = ("per_batch", "per_stage", "on_completion")
        if v not in allowed:
            raise ValueError(f"notification_cadence must be one of {allowed}")
        return v


class PipelineConfig(BaseModel):
    """Configuration of one migration pipeline."""

    name: str = Field(..., min_length=1, max_length=255)
    source_systems: list[SourceSystemConfig] = Field(..., min_length=1)
    target_system: str = "care_platform"
    requirements: MigrationRequirements = Field(default_factory=MigrationRequirements)
    preferences: UserPreferences = Field(default_factory=UserPreferences)

    batch_size: int = Field(default=DEFAULT_BATCH_SIZE, ge=1, le=10000)
    max_retries: int = Field(default=3, ge=0, le=10)
    retry_base_delay: float = Field(default=0.5, ge=0.0)
    batch_timeout_seconds: float = Field(default=60.0, gt=0.0)
    # A batch fails as a whole when more than this share of its records fail
    error_rate_threshold: float = Field(default=0.1, ge=0.0, le=1.0)
    prefetch_batches: int = Field(default=2, ge=1, le=16)
    # Take a checkpoint snapshot every N committed batches (0 disables)
    checkpoint_snapshot_every: int = Field(default=0, ge=0)

    mapping_sample_size: int = Field(default=100, ge=1)
    scoring_weights: ScoringWeights = Field(default_factory=ScoringWeights)
    allow_unmapped_fields: bool = False

    jurisdiction: str = "england"
    auto_fix: bool = True
    overridden_rules: list[str] = Field(default_factory=list)
    related_datasets: dict[str, list[dict[str, Any]]] = Field(default_factory=dict)

    @field_validator("jurisdiction")
    @classmethod
    def validate_jurisdiction(cls, v: str) -> str:
        if v not in REGULATOR_FIELDS:
            raise ValueError(f"Unknown jurisdiction '{v}'. Valid: {sorted(REGULATOR_FIELDS)}")
        return v

    @model_validator(mode="after")
    def check_batch_limits(self) -> "PipelineConfig":
        """Keep batches within what every source system can export at once."""
        for source in self.source_systems:
            limit = SYSTEM_CAPABILITIES[source.system.system_type].limits.get("max_batch_size")
            if limit is not None and self.batch_size > limit:
                raise ValueError(
                    f"batch_size {self.batch_size} exceeds the {limit} record limit "
                    f"of {source.system.system_type.value}"
                )
        return self


@dataclass(frozen=True)
class StageMessage:
    """Completion report for one pipeline stage.

    Stage code never changes pipeline state itself; it posts one of these on
    the pipeline's queue and the orchestrator decides what happens next.
    """

    pipeline_id: str
    stage: PipelineState
    status: str  # 'completed', 'failed', 'suspended', 'cancelled'
    payload: dict[str, Any] = field(default_factory=dict)
    error: MigrationError | None = None


@dataclass
class MigrationProgress:
    pipeline_id: str
    state: str
    processed: int = 0
    succeeded: int = 0
    warned: int = 0
    failed: int = 0
    total_estimate: int | None = None
    batches_committed: int = 0
    rate_per_second: float = 0.0
    eta_seconds: float | None = None
    updated_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    @property
    def percent_complete(self) -> float | None:
        if not self.total_estimate:
            return None
        return round(min(100.0, self.processed / self.total_estimate * 100), 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pipeline_id": self.pipeline_id,
            "state": self.state,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "warned": self.warned,
            "failed": self.failed,
            "total_estimate": self.total_estimate,
            "batches_committed": self.batches_committed,
            "rate_per_second": round(self.rate_per_second, 2),
            "eta_seconds": None if self.eta_seconds is None else round(self.eta_seconds, 1),
            "percent_complete": self.percent_complete,
            "updated_at": self.updated_at,
        }


@dataclass
class PipelineRecord:
    """Persistent state of one migration pipeline."""

    tenant_id: str
    config: PipelineConfig
    state: PipelineState = PipelineState.PREPARING
    pipeline_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    history: list[dict[str, Any]] = field(default_factory=list)
    metrics: dict[str, Any] = field(default_factory=dict)
    failure_reason: str | None = None
    suspended: SuspensionReason | None = None
    checkpoint: dict[str, Any] | None = None
    snapshot_id: str | None = None
    mapping_ids: list[str] = field(default_factory=list)
    dry_run: bool = False
    quality_override: bool = False
    created_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    updated_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def rollback_available(self) -> bool:
        return self.state in ROLLBACK_SOURCES and self.snapshot_id is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "pipeline_id": self.pipeline_id,
            "tenant_id": self.tenant_id,
            "name": self.config.name,
            "state": self.state.value,
            "history": self.history,
            "metrics": self.metrics,
            "failure_reason": self.failure_reason,
            "suspended": self.suspended.value if self.suspended else None,
            "checkpoint": self.checkpoint,
            "snapshot_id": self.snapshot_id,
            "mapping_ids": self.mapping_ids,
            "dry_run": self.dry_run,
            "quality_override": self.quality_override,
            "rollback_available": self.rollback_available,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
