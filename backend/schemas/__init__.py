"""Shared Pydantic schemas for the care records migration backend.

This module centralizes request/response models used by the routers
to prevent drift between duplicate definitions.
"""

from .migrations import (
    ApproveMappingsRequest,
    ExecuteMigrationRequest,
    FindingsResponse,
    MappingFeedbackRequest,
    PipelineCreatedResponse,
    ProgressResponse,
    RollbackRequest,
)

__all__ = [
    "ApproveMappingsRequest",
    "ExecuteMigrationRequest",
    "FindingsResponse",
    "MappingFeedbackRequest",
    "PipelineCreatedResponse",
    "ProgressResponse",
    "RollbackRequest",
]
