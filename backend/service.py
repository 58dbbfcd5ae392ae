"""Migration service facade.

The single entry point used by the HTTP routes (and any other operator
surface). Every call is scoped to a tenant; one orchestrator runs per
pipeline and orchestrators share no mutable state.

Usage:
    service = MigrationService.from_config()
    pipeline_id = service.create_pipeline(config, tenant_id="oakwood")
    service.execute_migration(pipeline_id, tenant_id="oakwood")
    service.get_progress(pipeline_id, tenant_id="oakwood")
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from backup import BackupService, BlobStorage, RestoreCycleReport, RestoreResult, Snapshot
from config import BACKUP_DIR, BACKUP_MIN_FREE_BYTES, BACKUP_RETENTION_DAYS, DB_PATH
from connectors import ConnectorRegistry, build_default_registry
from errors import InvalidTransitionError, NotFoundError, TenantIsolationError
from mapping import FieldMapping, FieldMappingEngine, MappingHistoryStore, MappingStatus
from pipeline import (
    MigrationOrchestrator,
    MigrationProgress,
    PipelineConfig,
    PipelineConfigLoader,
    PipelineRecord,
    PipelineRepository,
    SuspensionReason,
    TERMINAL_STATES,
)
from store import TargetStore
from validation import ValidationEngine

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[MigrationProgress], None]


class MigrationService:
    """Creates, runs and controls migration pipelines."""

    def __init__(
        self,
        repository: PipelineRepository,
        mapping_engine: FieldMappingEngine,
        validator: ValidationEngine,
        store: TargetStore,
        backup: BackupService,
        connectors: ConnectorRegistry | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.repository = repository
        self.mapping_engine = mapping_engine
        self.validator = validator
        self.store = store
        self.backup = backup
        self.connectors = connectors or build_default_registry()
        self._sleep = sleep
        self._lock = threading.Lock()
        self._orchestrators: dict[str, MigrationOrchestrator] = {}

    @classmethod
    def from_config(
        cls,
        db_path: str = DB_PATH,
        backup_dir: str = BACKUP_DIR,
        **kwargs: Any,
    ) -> "MigrationService":
        """Build a service with every store in one SQLite database."""
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        store = TargetStore(db_path)
        return cls(
            repository=PipelineRepository(db_path),
            mapping_engine=FieldMappingEngine(MappingHistoryStore(db_path)),
            validator=ValidationEngine(),
            store=store,
            backup=BackupService(
                BlobStorage(backup_dir),
                store,
                db_path,
                retention_days=BACKUP_RETENTION_DAYS,
                min_free_bytes=BACKUP_MIN_FREE_BYTES,
            ),
            **kwargs,
        )

    # Pipelines

    def create_pipeline(self, config: PipelineConfig, tenant_id: str) -> str:
        """Create a pipeline in ``preparing``; returns its id."""
        record = self.repository.create(PipelineRecord(tenant_id=tenant_id, config=config))
        with self._lock:
            self._orchestrators[record.pipeline_id] = self._build(record)
        logger.info(
            f"Created pipeline {record.pipeline_id} ({config.name}) "
            f"with {len(config.source_systems)} source system(s)",
            extra={"pipeline_id": record.pipeline_id, "tenant_id": tenant_id},
        )
        return record.pipeline_id

    def create_pipelines_from_file(self, path: str | Path, tenant_id: str) -> list[str]:
        """Create one pipeline per configuration in a YAML or JSON file.

        Every configuration in the file is validated before any pipeline is
        created; ``${NAME}`` references are filled in from the environment.

        Raises:
            ConfigValidationError: If any configuration in the file is invalid
        """
        configs = PipelineConfigLoader().load_file(path)
        pipeline_ids = [self.create_pipeline(config, tenant_id) for config in configs]
        logger.info(
            f"Created {len(pipeline_ids)} pipeline(s) from {Path(path).name}",
            extra={"tenant_id": tenant_id},
        )
        return pipeline_ids

    def get_pipeline(self, pipeline_id: str, tenant_id: str) -> dict[str, Any]:
        """Current state, failure reason, recommendations and rollback availability."""
        record = self._orchestrator(pipeline_id, tenant_id).record
        return {
            **record.to_dict(),
            "progress": self.get_progress(pipeline_id, tenant_id).to_dict(),
            "errors": self.repository.list_errors(pipeline_id, tenant_id),
        }

    def list_pipelines(self, tenant_id: str) -> list[dict[str, Any]]:
        return self.repository.list_pipelines(tenant_id)

    def execute_migration(
        self, pipeline_id: str, tenant_id: str, dry_run: bool = False
    ) -> None:
        """Start the pipeline in the background (or resume it after a restart).

        A dry run performs every stage except the snapshot and the writes.
        """
        self._orchestrator(pipeline_id, tenant_id).start(dry_run=dry_run)

    def wait(
        self, pipeline_id: str, tenant_id: str, timeout: float | None = None
    ) -> dict[str, Any]:
        """Block until the pipeline stops running; returns its current state."""
        self._orchestrator(pipeline_id, tenant_id).wait(timeout)
        return self.get_pipeline(pipeline_id, tenant_id)

    def pause(self, pipeline_id: str, tenant_id: str) -> None:
        """Stop a running pipeline at its next batch or stage boundary."""
        self._orchestrator(pipeline_id, tenant_id).pause()

    def resume(self, pipeline_id: str, tenant_id: str) -> None:
        """Continue a paused pipeline from its last committed batch.

        Raises:
            InvalidTransitionError: If the pipeline is not paused
        """
        orchestrator = self._orchestrator(pipeline_id, tenant_id)
        if orchestrator.record.suspended != SuspensionReason.PAUSED:
            raise InvalidTransitionError(
                "Pipeline is not paused", pipeline_id=pipeline_id
            )
        orchestrator.resume()

    def cancel(self, pipeline_id: str, tenant_id: str) -> None:
        self._orchestrator(pipeline_id, tenant_id).cancel()

    def rollback(
        self,
        pipeline_id: str,
        tenant_id: str,
        snapshot_id: str | None = None,
        at: str | None = None,
    ) -> RestoreResult:
        orchestrator = self._orchestrator(pipeline_id, tenant_id)
        return orchestrator.rollback(snapshot_id=snapshot_id, at=at)

    # Progress

    def get_progress(self, pipeline_id: str, tenant_id: str) -> MigrationProgress:
        return self._orchestrator(pipeline_id, tenant_id).progress.snapshot()

    def subscribe_progress(
        self, pipeline_id: str, tenant_id: str, callback: ProgressCallback
    ) -> Callable[[], None]:
        """Push progress updates according to the pipeline's notification cadence.

        ``per_batch`` forwards every update, ``per_stage`` only state changes,
        ``on_completion`` only terminal states (as does turning real-time
        updates off). Returns a function that unsubscribes.
        """
        orchestrator = self._orchestrator(pipeline_id, tenant_id)
        preferences = orchestrator.config.preferences
        cadence = (
            preferences.notification_cadence
            if preferences.real_time_updates
            else "on_completion"
        )
        terminal = {state.value for state in TERMINAL_STATES}
        last_state: list[str | None] = [None]

        def forward(progress: MigrationProgress) -> None:
            changed = progress.state != last_state[0]
            last_state[0] = progress.state
            if cadence == "per_batch":
                callback(progress)
            elif cadence == "per_stage" and changed:
                callback(progress)
            elif cadence == "on_completion" and changed and progress.state in terminal:
                callback(progress)

        return orchestrator.progress.subscribe(forward)

    # Mappings

    def submit_mapping_feedback(
        self,
        mapping_id: str,
        tenant_id: str,
        accepted: bool,
        correction: str | None = None,
    ) -> FieldMapping:
        """Accept, reject or correct a proposed mapping."""
        return self.mapping_engine.learn(
            mapping_id, accepted, tenant_id, corrected_target=correction
        )

    def list_mappings(self, pipeline_id: str, tenant_id: str) -> list[FieldMapping]:
        orchestrator = self._orchestrator(pipeline_id, tenant_id)
        mappings: list[FieldMapping] = []
        for source in orchestrator.config.source_systems:
            mappings.extend(
                self.mapping_engine.store.list_mappings(
                    tenant_id, f"{pipeline_id}/{source.system.system_id}"
                )
            )
        return mappings

    def approve_mappings(
        self,
        pipeline_id: str,
        tenant_id: str,
        mapping_ids: list[str] | None = None,
        allow_unmapped: bool = False,
    ) -> list[FieldMapping]:
        """Approve pending mappings and resume a pipeline waiting on them.

        Args:
            pipeline_id: Pipeline to approve mappings for
            tenant_id: Tenant owning the pipeline
            mapping_ids: Mappings to approve (default: every pending one)
            allow_unmapped: Let unmapped source fields travel as additional fields

        Returns:
            The approved mappings
        """
        orchestrator = self._orchestrator(pipeline_id, tenant_id)
        pipeline_mappings = {m.mapping_id: m for m in self.list_mappings(pipeline_id, tenant_id)}
        if mapping_ids is None:
            mapping_ids = [
                m.mapping_id
                for m in pipeline_mappings.values()
                if m.status == MappingStatus.PENDING_APPROVAL
            ]
        for mapping_id in mapping_ids:
            if mapping_id not in pipeline_mappings:
                raise NotFoundError(f"Mapping {mapping_id} not found in pipeline {pipeline_id}")
        approved = [self.mapping_engine.approve(m, tenant_id) for m in mapping_ids]

        if allow_unmapped and not orchestrator.config.allow_unmapped_fields:
            orchestrator.config.allow_unmapped_fields = True
            self.repository.save(orchestrator.record)
        if orchestrator.record.suspended == SuspensionReason.MAPPING_APPROVAL:
            orchestrator.resume()
        return approved

    def export_mapping_template(self, tenant_id: str, source_system_type: str) -> dict[str, Any]:
        """Export the tenant's learned mappings for one source-system type."""
        return self.mapping_engine.export_template(tenant_id, source_system_type)

    def import_mapping_template(
        self,
        template: dict[str, Any],
        tenant_id: str,
        source_system_type: str | None = None,
    ) -> int:
        """Seed the tenant's learned mappings from an exported template."""
        return self.mapping_engine.import_template(template, tenant_id, source_system_type)

    def override_quality(self, pipeline_id: str, tenant_id: str) -> None:
        """Proceed despite a quality score below the configured threshold."""
        orchestrator = self._orchestrator(pipeline_id, tenant_id)
        record = orchestrator.record
        if record.suspended != SuspensionReason.QUALITY_OVERRIDE:
            raise InvalidTransitionError(
                "Pipeline is not waiting for a quality override", pipeline_id=pipeline_id
            )
        record.quality_override = True
        logger.warning(
            f"Quality threshold overridden for pipeline {pipeline_id} "
            f"(score {record.metrics.get('quality_score')})",
            extra={"pipeline_id": pipeline_id, "tenant_id": tenant_id},
        )
        orchestrator.resume()

    # Quality

    def get_quality_report(self, pipeline_id: str, tenant_id: str) -> dict[str, Any]:
        self._orchestrator(pipeline_id, tenant_id)
        report = self.repository.get_quality_report(pipeline_id, tenant_id)
        if report is None:
            raise NotFoundError(f"No quality report yet for pipeline {pipeline_id}")
        return report

    def list_findings(
        self,
        pipeline_id: str,
        tenant_id: str,
        severity: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        self._orchestrator(pipeline_id, tenant_id)
        return self.repository.list_findings(pipeline_id, tenant_id, severity, limit)

    # Backups

    def list_backups(self, pipeline_id: str, tenant_id: str) -> list[Snapshot]:
        self._orchestrator(pipeline_id, tenant_id)
        return self.backup.list_backups(pipeline_id, tenant_id)

    def restore(self, snapshot_id: str, tenant_id: str) -> RestoreResult:
        """Restore a snapshot through its pipeline's write gate."""
        snapshot = self.backup.get_snapshot(snapshot_id, tenant_id)
        return self._orchestrator(snapshot.pipeline_id, tenant_id).restore_snapshot(snapshot_id)

    def test_restore_cycle(self, pipeline_id: str, tenant_id: str) -> RestoreCycleReport:
        self._orchestrator(pipeline_id, tenant_id)
        return self.backup.test_restore_cycle(pipeline_id, tenant_id)

    # Helpers

    def _build(self, record: PipelineRecord) -> MigrationOrchestrator:
        return MigrationOrchestrator(
            record,
            self.repository,
            self.connectors,
            self.mapping_engine,
            self.validator,
            self.store,
            self.backup,
            sleep=self._sleep,
        )

    def _orchestrator(self, pipeline_id: str, tenant_id: str) -> MigrationOrchestrator:
        """Find the orchestrator for a tenant's pipeline.

        Pipelines created before a restart, and finished pipelines whose
        orchestrator has been evicted, are reloaded from the repository; their
        stored configuration has its credentials masked.

        Raises:
            NotFoundError: If the pipeline does not exist
            TenantIsolationError: If it belongs to another tenant
        """
        with self._lock:
            self._evict_finished(keep=pipeline_id)
            orchestrator = self._orchestrators.get(pipeline_id)
            if orchestrator is None:
                orchestrator = self._build(self.repository.get(pipeline_id, tenant_id))
                self._orchestrators[pipeline_id] = orchestrator
        if orchestrator.tenant_id != tenant_id:
            raise TenantIsolationError(
                f"Pipeline {pipeline_id} is not visible to tenant {tenant_id}"
            )
        return orchestrator

    def _evict_finished(self, keep: str) -> None:
        """Drop orchestrators of finished pipelines that are no longer running."""
        finished = [
            pipeline_id
            for pipeline_id, orchestrator in self._orchestrators.items()
            if pipeline_id != keep
            and orchestrator.record.is_terminal
            and not orchestrator.is_running
        ]
        for pipeline_id in finished:
            del self._orchestrators[pipeline_id]
        if finished:
            logger.debug(f"Evicted {len(finished)} finished pipeline orchestrator(s)")
