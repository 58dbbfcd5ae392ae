"""Migration pipeline orchestration.

Drives a pipeline from connection through mapping, validation, backup and
batch migration to verification, with cancellation and rollback.

Usage:
    from pipeline import MigrationOrchestrator, PipelineConfig, PipelineRepository

    repository = PipelineRepository(db_path)
    record = repository.create(PipelineRecord(tenant_id="t1", config=config))
    orchestrator = MigrationOrchestrator(record, repository, ...)
    orchestrator.start()
"""

from .batching import BatchPreparer, PreparedBatch, retry_with_backoff, run_with_timeout
from .config_loader import ConfigValidationError, PipelineConfigLoader, substitute_env
from .models import (
    ROLLBACK_SOURCES,
    STAGE_ORDER,
    TERMINAL_STATES,
    MigrationProgress,
    MigrationRequirements,
    PipelineConfig,
    PipelineRecord,
    PipelineState,
    SourceSystemConfig,
    StageMessage,
    SuspensionReason,
    UserPreferences,
)
from .orchestrator import MigrationOrchestrator
from .progress import ProgressTracker
from .repository import PipelineRepository
from .state_machine import ALLOWED_TRANSITIONS, can_transition, check_transition

__all__ = [
    # Orchestration
    "MigrationOrchestrator",
    "ProgressTracker",
    "PipelineRepository",
    # Batches
    "BatchPreparer",
    "PreparedBatch",
    "retry_with_backoff",
    "run_with_timeout",
    # Configuration
    "ConfigValidationError",
    "PipelineConfigLoader",
    "substitute_env",
    # Models
    "MigrationProgress",
    "MigrationRequirements",
    "PipelineConfig",
    "PipelineRecord",
    "PipelineState",
    "SourceSystemConfig",
    "StageMessage",
    "SuspensionReason",
    "UserPreferences",
    # State machine
    "ALLOWED_TRANSITIONS",
    "ROLLBACK_SOURCES",
    "STAGE_ORDER",
    "TERMINAL_STATES",
    "can_transition",
    "check_transition",
]
