"""Pydantic schemas for migration pipeline endpoints."""

from typing import Any

from pydantic import BaseModel, Field, field_validator


class ExecuteMigrationRequest(BaseModel):
    """Request model for starting a pipeline."""

    dry_run: bool = False


class RollbackRequest(BaseModel):
    """Request model for rolling a pipeline back.

    Without either field the pipeline's pre-migration snapshot is restored.
    """

    snapshot_id: str | None = None
    at: str | None = None


class ApproveMappingsRequest(BaseModel):
    """Request model for approving pending mappings."""

    mapping_ids: list[str] | None = None
    allow_unmapped: bool = False

    @field_validator("mapping_ids")
    @classmethod
    def validate_mapping_ids_length(cls, v: list[str] | None) -> list[str] | None:
        """Validate that mapping_ids doesn't exceed maximum length."""
        if v is not None and len(v) > 500:
            raise ValueError("Too many mappings. Maximum 500 per request.")
        return v


class MappingFeedbackRequest(BaseModel):
    """Request model for operator feedback on one mapping."""

    accepted: bool
    correction: str | None = Field(default=None, max_length=100)


class PipelineCreatedResponse(BaseModel):
    pipeline_id: str
    state: str


class ProgressResponse(BaseModel):
    pipeline_id: str
    state: str
    processed: int
    succeeded: int
    warned: int
    failed: int
    total_estimate: int | None = None
    batches_committed: int
    rate_per_second: float
    eta_seconds: float | None = None
    percent_complete: float | None = None
    updated_at: str


class FindingsResponse(BaseModel):
    pipeline_id: str
    findings: list[dict[str, Any]]
    total: int
