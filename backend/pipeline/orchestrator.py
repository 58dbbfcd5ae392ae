"""Migration orchestrator.

One orchestrator drives one pipeline through its stages:

    preparing -> analyzing -> mapping -> validating -> backing_up
              -> migrating -> verifying -> completed

Each stage handler does its work and returns a StageMessage; the message is
posted on the pipeline's queue and the run loop alone decides the next state.
Operator actions (cancel, rollback, approvals) set flags that the run loop
observes at stage and batch boundaries.

Usage:
    orchestrator = MigrationOrchestrator(record, repository, connectors,
                                         mapping_engine, validator, store, backup)
    orchestrator.start(dry_run=False)
    orchestrator.wait()
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from typing import Any

from backup import BackupService, RestoreResult, SnapshotKind
from connectors import BaseConnector, ConnectionHandle, ConnectorRegistry
from errors import (
    CancellationRequested,
    InvalidTransitionError,
    MappingError,
    MigrationError,
    NotFoundError,
)
from fileimport.type_inference import infer_types
from mapping import FieldMappingEngine, MappingPlan
from records import ExtractedRecord
from store import TargetStore
from validation import (
    RuleCategory,
    Severity,
    ValidationEngine,
    ValidationFinding,
    ValidationOptions,
)

from .batching import BatchPreparer, PreparedBatch, retry_with_backoff, run_with_timeout
from .models import (
    ROLLBACK_SOURCES,
    STAGE_ORDER,
    PipelineConfig,
    PipelineRecord,
    PipelineState,
    SourceSystemConfig,
    StageMessage,
    SuspensionReason,
)
from .progress import ProgressTracker
from .repository import PipelineRepository
from .state_machine import check_transition

logger = logging.getLogger(__name__)

# Marks the end of the prefetch stream
_END = object()

# Seconds between cancellation checks while blocked on the prefetch queue
_POLL_INTERVAL = 0.05


@dataclass
class _SourceSession:
    connector: BaseConnector
    handle: ConnectionHandle


class MigrationOrchestrator:
    """Runs one migration pipeline.

    Attributes:
        record: The pipeline record (the live configuration, with credentials)
        progress: Progress counters for the pipeline
    """

    def __init__(
        self,
        record: PipelineRecord,
        repository: PipelineRepository,
        connectors: ConnectorRegistry,
        mapping_engine: FieldMappingEngine,
        validator: ValidationEngine,
        store: TargetStore,
        backup: BackupService,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.record = record
        self.repository = repository
        self.connectors = connectors
        self.mapping_engine = mapping_engine
        self.validator = validator
        self.store = store
        self.backup = backup
        self.progress = ProgressTracker(record.pipeline_id, record.state.value)
        self._sleep = sleep

        self._messages: queue.Queue[StageMessage] = queue.Queue()
        self._state_lock = threading.RLock()
        self._write_gate = threading.Lock()
        self._cancel = threading.Event()
        self._pause = threading.Event()
        self._rollback_requested = False
        self._running = False
        self._thread: threading.Thread | None = None

        self._sources: dict[int, _SourceSession] = {}
        self._samples: dict[int, list[ExtractedRecord]] = {}
        self._plans: dict[int, MappingPlan] = {}
        # Resume position of the current run; dry runs never persist one
        self._position: dict[str, Any] = {}

        self._stages: dict[PipelineState, Callable[[], StageMessage]] = {
            PipelineState.PREPARING: self._stage_preparing,
            PipelineState.ANALYZING: self._stage_analyzing,
            PipelineState.MAPPING: self._stage_mapping,
            PipelineState.VALIDATING: self._stage_validating,
            PipelineState.BACKING_UP: self._stage_backing_up,
            PipelineState.MIGRATING: self._stage_migrating,
            PipelineState.VERIFYING: self._stage_verifying,
        }

        # Counters come back from the last checkpoint, or for a finished
        # pipeline from the progress saved with its final transition
        for saved in (record.checkpoint, record.metrics.get("progress")):
            if saved:
                self.progress.restore(
                    saved.get("succeeded", 0),
                    saved.get("warned", 0),
                    saved.get("failed", 0),
                    saved.get("batches_committed", 0),
                )
        if record.metrics.get("progress"):
            self.progress.set_total(record.metrics["progress"].get("total_estimate"))

    @property
    def pipeline_id(self) -> str:
        return self.record.pipeline_id

    @property
    def tenant_id(self) -> str:
        return self.record.tenant_id

    @property
    def config(self) -> PipelineConfig:
        return self.record.config

    @property
    def is_running(self) -> bool:
        with self._state_lock:
            return self._running

    # Operator controls

    def start(self, dry_run: bool = False) -> None:
        """Start (or resume) the pipeline on a worker thread.

        ``dry_run`` only takes effect for a pipeline that has not started yet.

        Raises:
            InvalidTransitionError: If the pipeline is running, suspended or finished
        """
        with self._state_lock:
            if self._running:
                raise InvalidTransitionError(
                    "Pipeline is already running", pipeline_id=self.pipeline_id
                )
            if self.record.is_terminal:
                raise InvalidTransitionError(
                    f"Pipeline has finished ({self.record.state.value})",
                    pipeline_id=self.pipeline_id,
                )
            if self.record.suspended:
                raise InvalidTransitionError(
                    f"Pipeline is suspended awaiting {self.record.suspended.value}",
                    pipeline_id=self.pipeline_id,
                )
            if self.record.state == PipelineState.PREPARING and len(self.record.history) <= 1:
                self.record.dry_run = dry_run
                self.repository.save(self.record)
            self._launch()

    def resume(self) -> None:
        """Clear a suspension and continue from the suspended stage."""
        with self._state_lock:
            if self.record.suspended is None:
                raise InvalidTransitionError(
                    "Pipeline is not suspended", pipeline_id=self.pipeline_id
                )
            logger.info(
                f"Resuming pipeline {self.pipeline_id} after {self.record.suspended.value}",
                extra={"pipeline_id": self.pipeline_id, "tenant_id": self.tenant_id},
            )
            self.record.suspended = None
            self.record.metrics.pop("suspension_detail", None)
            self.repository.save(self.record)
            self._launch()

    def pause(self) -> None:
        """Stop a running pipeline at its next stage or batch boundary.

        The pipeline is left suspended as ``paused`` with its checkpoint in
        place; ``resume`` continues from there.

        Raises:
            InvalidTransitionError: If the pipeline is not running
        """
        with self._state_lock:
            if not self._running or self.record.is_terminal:
                raise InvalidTransitionError(
                    "Only a running pipeline can be paused", pipeline_id=self.pipeline_id
                )
            self._pause.set()
        logger.info(
            f"Pause requested for pipeline {self.pipeline_id}",
            extra={"pipeline_id": self.pipeline_id, "tenant_id": self.tenant_id},
        )

    def cancel(self, reason: str = "Cancelled by operator") -> None:
        """Request cancellation.

        A running pipeline stops at its next stage or batch boundary; a
        suspended or idle pipeline is cancelled immediately.

        Raises:
            InvalidTransitionError: If the pipeline has already finished
        """
        with self._state_lock:
            check_transition(self.record.state, PipelineState.CANCELLED, self.pipeline_id)
            self._cancel.set()
            if not self._running:
                self._finish_cancel(CancellationRequested(reason, pipeline_id=self.pipeline_id))
        logger.info(
            f"Cancellation requested for pipeline {self.pipeline_id}",
            extra={"pipeline_id": self.pipeline_id, "tenant_id": self.tenant_id},
        )

    def rollback(
        self, snapshot_id: str | None = None, at: datetime | str | None = None
    ) -> RestoreResult:
        """Restore the target store and move the pipeline to rolled_back.

        New batch starts stop at once; the restore waits for an in-flight
        commit to finish. Without arguments the pipeline's pre-migration
        snapshot is restored; with ``at``, the latest snapshot at or before
        that time.

        Raises:
            InvalidTransitionError: If the pipeline cannot roll back
            NotFoundError: If no matching snapshot exists
            BackupError: If the restore fails (the pipeline is then failed)
        """
        with self._state_lock:
            check_transition(
                self.record.state,
                PipelineState.ROLLED_BACK,
                self.pipeline_id,
                has_snapshot=self.record.snapshot_id is not None,
            )
            target_id = self._rollback_target(snapshot_id, at)
            self._rollback_requested = True
            self._cancel.set()

        try:
            with self._write_gate:
                result = self.backup.restore(target_id, self.tenant_id)
        except MigrationError as e:
            self.wait()
            with self._state_lock:
                if not self.record.is_terminal:
                    self._fail(e, PipelineState.ROLLED_BACK)
                else:
                    self.repository.record_error(self.pipeline_id, self.tenant_id, e)
            raise

        self.wait()
        with self._state_lock:
            self.record.metrics["rollback"] = result.to_dict()
            self.repository.clear_checkpoint(self.pipeline_id, self.tenant_id)
            self.record.checkpoint = None
            self._position = {}
            self.progress.reset()
            self._transition(
                PipelineState.ROLLED_BACK, f"restored snapshot {target_id}"
            )
            self._release_sources()
        logger.info(
            f"Pipeline {self.pipeline_id} rolled back to snapshot {target_id}",
            extra={"pipeline_id": self.pipeline_id, "tenant_id": self.tenant_id},
        )
        return result

    def restore_snapshot(self, snapshot_id: str) -> RestoreResult:
        """Restore one of this pipeline's snapshots.

        Where the pipeline's state allows rollback this is a rollback;
        otherwise the restore still passes through the write gate.
        """
        with self._state_lock:
            can_roll_back = (
                self.record.state in ROLLBACK_SOURCES and self.record.snapshot_id is not None
            )
        if can_roll_back:
            return self.rollback(snapshot_id=snapshot_id)
        with self._write_gate:
            return self.backup.restore(snapshot_id, self.tenant_id)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the worker thread exits; returns False on timeout."""
        thread = self._thread
        if thread is None or thread is threading.current_thread():
            return True
        thread.join(timeout)
        return not thread.is_alive()

    # Run loop

    def _launch(self) -> None:
        self._cancel.clear()
        self._pause.clear()
        self._running = True
        self._thread = threading.Thread(
            target=self.run, name=f"pipeline-{self.pipeline_id[:8]}", daemon=True
        )
        self._thread.start()

    def run(self) -> None:
        """Consume stage messages until the pipeline stops or suspends."""
        logger.info(
            f"Running pipeline {self.pipeline_id} from {self.record.state.value}",
            extra={"pipeline_id": self.pipeline_id, "tenant_id": self.tenant_id},
        )
        try:
            stage: PipelineState | None = self.record.state
            while stage is not None:
                self._dispatch(stage)
                stage = self._handle(self._messages.get())
        finally:
            with self._state_lock:
                self._running = False
                if (
                    self._cancel.is_set()
                    and not self._rollback_requested
                    and not self.record.is_terminal
                ):
                    self._finish_cancel(
                        CancellationRequested("Cancelled by operator", pipeline_id=self.pipeline_id)
                    )
                if self.record.is_terminal or self.record.suspended:
                    self._release_sources()

    def _dispatch(self, stage: PipelineState) -> None:
        """Run one stage and post its outcome on the queue."""
        try:
            self._check_cancelled()
            if self._pause.is_set():
                message = self._suspended(stage, SuspensionReason.PAUSED, "Paused by operator")
            else:
                message = self._stages[stage]()
        except CancellationRequested as e:
            message = StageMessage(self.pipeline_id, stage, "cancelled", error=e)
        except MigrationError as e:
            message = StageMessage(
                self.pipeline_id, stage, "failed", error=e.with_context(pipeline_id=self.pipeline_id)
            )
        except Exception as e:
            logger.exception(
                f"Unexpected error in stage {stage.value} of pipeline {self.pipeline_id}"
            )
            message = StageMessage(
                self.pipeline_id,
                stage,
                "failed",
                error=MigrationError(
                    f"Unexpected error in {stage.value}: {e}", pipeline_id=self.pipeline_id
                ),
            )
        self._messages.put(message)

    def _handle(self, message: StageMessage) -> PipelineState | None:
        """Apply a stage outcome; returns the next stage to run, if any."""
        with self._state_lock:
            if self._rollback_requested:
                return None

            if message.status == "completed":
                self.record.metrics.setdefault("stages", {})[message.stage.value] = message.payload
                following = STAGE_ORDER[STAGE_ORDER.index(message.stage) + 1]
                self._transition(following, f"{message.stage.value} completed")
                if following == PipelineState.COMPLETED:
                    self._finish()
                    return None
                return following

            if message.status == "suspended":
                reason = SuspensionReason(message.payload["reason"])
                self.record.suspended = reason
                self.record.metrics["suspension_detail"] = message.payload.get("detail")
                self.repository.save(self.record)
                logger.info(
                    f"Pipeline {self.pipeline_id} suspended in {message.stage.value}: "
                    f"{message.payload.get('detail')}",
                    extra={"pipeline_id": self.pipeline_id, "tenant_id": self.tenant_id},
                )
                return None

            if message.status == "cancelled":
                self._finish_cancel(message.error)
                return None

            self._fail(message.error, message.stage)
            return None

    def _transition(self, target: PipelineState, reason: str | None = None) -> None:
        check_transition(
            self.record.state,
            target,
            self.pipeline_id,
            has_snapshot=self.record.snapshot_id is not None,
        )
        self.record.metrics["progress"] = self.progress.snapshot().to_dict()
        self.repository.transition(self.record, target, reason)
        self.progress.set_state(target.value)

    def _fail(self, error: MigrationError | None, stage: PipelineState) -> None:
        error = error or MigrationError("Unknown failure", pipeline_id=self.pipeline_id)
        error.with_context(pipeline_id=self.pipeline_id)
        self.repository.record_error(self.pipeline_id, self.tenant_id, error)
        self.record.failure_reason = f"{stage.value}: {error.message}"
        self.record.suspended = None
        self._transition(PipelineState.FAILED, error.message)
        logger.error(
            f"Pipeline {self.pipeline_id} failed in {stage.value}: {error.message}",
            extra={"pipeline_id": self.pipeline_id, "tenant_id": self.tenant_id},
        )
        self._apply_retention()

    def _finish_cancel(self, error: MigrationError | None) -> None:
        error = error or CancellationRequested("Cancelled", pipeline_id=self.pipeline_id)
        self.repository.record_error(self.pipeline_id, self.tenant_id, error)
        self.record.suspended = None
        self._transition(PipelineState.CANCELLED, error.message)
        self._apply_retention()

    def _finish(self) -> None:
        self.repository.clear_checkpoint(self.pipeline_id, self.tenant_id)
        self.record.checkpoint = None
        self.repository.save(self.record)
        logger.info(
            f"Pipeline {self.pipeline_id} completed",
            extra={"pipeline_id": self.pipeline_id, "tenant_id": self.tenant_id},
        )
        self._apply_retention()

    def _apply_retention(self) -> None:
        try:
            self.backup.apply_retention(self.repository.is_terminal)
        except MigrationError as e:
            logger.warning(f"Snapshot retention sweep failed: {e}")

    def _check_cancelled(self) -> None:
        if self._cancel.is_set():
            raise CancellationRequested(
                "Cancelled by operator", pipeline_id=self.pipeline_id
            )

    def _rollback_target(self, snapshot_id: str | None, at: datetime | str | None) -> str:
        if snapshot_id:
            snapshot = self.backup.get_snapshot(snapshot_id, self.tenant_id)
            if snapshot.pipeline_id != self.pipeline_id:
                raise NotFoundError(
                    f"Snapshot {snapshot_id} does not belong to pipeline {self.pipeline_id}"
                )
            return snapshot.snapshot_id
        if at is not None:
            snapshot = self.backup.latest_at_or_before(
                self.pipeline_id,
                self.tenant_id,
                at.isoformat() if isinstance(at, datetime) else at,
            )
            if snapshot is None:
                raise NotFoundError(f"No snapshot of {self.pipeline_id} at or before {at}")
            return snapshot.snapshot_id
        return self.record.snapshot_id  # type: ignore[return-value]

    # Sources

    def _session(self, index: int) -> _SourceSession:
        """Connect to a source system on first use."""
        if index not in self._sources:
            source = self.config.source_systems[index]
            descriptor = source.system
            connector = self.connectors.create_connector(
                descriptor.system_type, descriptor.system_id, descriptor.name
            )
            handle = retry_with_backoff(
                lambda: connector.connect(descriptor, source.credentials),
                self.config.max_retries,
                self.config.retry_base_delay,
                f"Connect to {descriptor.name}",
                sleep=self._sleep,
                should_stop=self._cancel.is_set,
            )
            self._sources[index] = _SourceSession(connector, handle)
        return self._sources[index]

    def _release_sources(self) -> None:
        for session in self._sources.values():
            try:
                session.connector.disconnect(session.handle)
            except MigrationError as e:
                logger.warning(f"Disconnect from {session.handle.descriptor.name} failed: {e}")
        self._sources.clear()

    def _sample(self, index: int) -> list[ExtractedRecord]:
        if index not in self._samples:
            source = self.config.source_systems[index]
            session = self._session(index)
            size = self.config.mapping_sample_size
            if source.selector.limit is not None:
                size = min(size, source.selector.limit)
            selector = source.selector.model_copy(update={"limit": size})
            self._samples[index] = list(session.connector.extract(session.handle, selector))
        return self._samples[index]

    def _mapping_scope(self, source: SourceSystemConfig) -> str:
        return f"{self.pipeline_id}/{source.system.system_id}"

    def _plan(self, index: int) -> MappingPlan:
        if index not in self._plans:
            source = self.config.source_systems[index]
            self._plans[index] = self.mapping_engine.plan_for(
                self.tenant_id,
                self._mapping_scope(source),
                _field_names(self._sample(index)),
                allow_unmapped=self.config.allow_unmapped_fields,
            )
        return self._plans[index]

    def _note_unplanned(self, source: SourceSystemConfig, fields: list[str]) -> None:
        """Remember source fields first seen after the mapping sample."""
        with self._state_lock:
            known = self.record.metrics.setdefault("unplanned_fields", {}).setdefault(
                source.system.system_id, []
            )
            known.extend(name for name in fields if name not in known)

    def _check_plans(self) -> list[str]:
        """Rebuild every source's plan; list the sources that cannot migrate yet."""
        self._plans.clear()
        blocked: list[str] = []
        for index, source in enumerate(self.config.source_systems):
            try:
                self._plan(index).ensure_ready()
            except MappingError as e:
                blocked.append(f"{source.system.name}: {e.message}")
                continue
            late = self.record.metrics.get("unplanned_fields", {}).get(source.system.system_id)
            if late and not self.config.allow_unmapped_fields:
                blocked.append(
                    f"{source.system.name}: {len(late)} source field(s) first seen during "
                    f"migration have no mapping: {', '.join(late)}"
                )
        return blocked

    def _validation_options(self) -> ValidationOptions:
        return ValidationOptions(
            jurisdiction=self.config.jurisdiction,
            auto_fix=self.config.auto_fix,
            overridden_rules=frozenset(self.config.overridden_rules),
        )

    # Stages

    def _completed(self, stage: PipelineState, payload: dict[str, Any]) -> StageMessage:
        return StageMessage(self.pipeline_id, stage, "completed", payload)

    def _suspended(
        self, stage: PipelineState, reason: SuspensionReason, detail: str
    ) -> StageMessage:
        return StageMessage(
            self.pipeline_id, stage, "suspended", {"reason": reason.value, "detail": detail}
        )

    def _stage_preparing(self) -> StageMessage:
        """Connect to every source; record rows quarantined on import."""
        self._release_sources()
        payload: dict[str, Any] = {"sources": {}}
        total: int | None = 0
        for index, source in enumerate(self.config.source_systems):
            session = self._session(index)
            details = session.handle.details
            payload["sources"][source.system.system_id] = {
                "name": source.system.name,
                "system_type": source.system.system_type.value,
                "row_count": details.get("row_count"),
                "quarantined_count": details.get("quarantined_count", 0),
            }
            if total is not None and details.get("row_count") is not None:
                rows = details["row_count"]
                if source.selector.limit is not None:
                    rows = min(rows, source.selector.limit)
                total += rows
            else:
                total = None

            quarantined = details.get("quarantined") or []
            if quarantined:
                self.repository.record_findings(
                    self.pipeline_id,
                    self.tenant_id,
                    None,
                    [
                        ValidationFinding(
                            rule_id="QUARANTINED_ROW",
                            severity=Severity.ERROR,
                            field=None,
                            message=f"Row {row['row_number']} not imported: {row['reason']}",
                            category=RuleCategory.STRUCTURAL,
                            provenance=(
                                f"{source.system.system_id}:{details.get('source_name') or ''}:"
                                f"line {row.get('line_number') or row['row_number']}"
                            ),
                        ).to_dict()
                        for row in quarantined
                    ],
                )
        self.progress.set_total(total)
        return self._completed(PipelineState.PREPARING, payload)

    def _stage_analyzing(self) -> StageMessage:
        """Sample each source and infer its field types."""
        payload: dict[str, Any] = {}
        for index, source in enumerate(self.config.source_systems):
            sample = self._sample(index)
            fields = _field_names(sample)
            inferred = infer_types(
                [record.to_dict() for record in sample], fields, len(sample) or 1
            )
            payload[source.system.system_id] = {
                "sample_size": len(sample),
                "fields": {name: inference.to_dict() for name, inference in inferred.items()},
            }
        return self._completed(PipelineState.ANALYZING, payload)

    def _stage_mapping(self) -> StageMessage:
        """Propose mappings per source; suspend while any need the operator."""
        payload: dict[str, Any] = {}
        blocked: list[str] = []
        for index, source in enumerate(self.config.source_systems):
            scope = self._mapping_scope(source)
            if not self.mapping_engine.store.list_mappings(self.tenant_id, scope):
                proposal = self.mapping_engine.propose(
                    self._sample(index),
                    source.system.system_type.value,
                    self.tenant_id,
                    pipeline_id=scope,
                    weights=self.config.scoring_weights,
                )
                self.record.mapping_ids.extend(m.mapping_id for m in proposal.mappings)
                payload[source.system.system_id] = proposal.statistics
                self.repository.save(self.record)

            self._plans.pop(index, None)
            try:
                self._plan(index).ensure_ready()
            except MappingError as e:
                blocked.append(f"{source.system.name}: {e.message}")

        if blocked:
            return self._suspended(
                PipelineState.MAPPING, SuspensionReason.MAPPING_APPROVAL, "; ".join(blocked)
            )
        return self._completed(PipelineState.MAPPING, payload)

    def _stage_validating(self) -> StageMessage:
        """Score the mapped sample; suspend below the quality threshold."""
        dataset: list[dict[str, Any]] = []
        complete = True
        for index, source in enumerate(self.config.source_systems):
            sample = self._sample(index)
            plan = self._plan(index)
            dataset.extend(plan.apply(record).values for record in sample)
            if len(sample) >= self.config.mapping_sample_size:
                complete = False

        # Orphan checks need every resident id, so only a complete sample can run them
        report = self.validator.assess(
            dataset,
            self._validation_options(),
            related=self.config.related_datasets if complete else None,
            known_resident_ids=self.store.resident_ids(self.tenant_id),
        )
        self.repository.save_quality_report(self.pipeline_id, self.tenant_id, report.to_dict())

        threshold = self.config.requirements.quality_threshold
        self.record.metrics["quality_score"] = report.overall_score
        self.record.metrics["recommendations"] = [r.to_dict() for r in report.recommendations]
        self.repository.save(self.record)

        if not report.meets(threshold) and not self.record.quality_override:
            return self._suspended(
                PipelineState.VALIDATING,
                SuspensionReason.QUALITY_OVERRIDE,
                f"Quality score {report.overall_score} is below the threshold {threshold}",
            )
        return self._completed(
            PipelineState.VALIDATING,
            {
                "quality_score": report.overall_score,
                "threshold": threshold,
                "overridden": not report.meets(threshold),
                "sample_complete": complete,
            },
        )

    def _stage_backing_up(self) -> StageMessage:
        """Snapshot the target store before the first write."""
        if self.record.dry_run:
            return self._completed(PipelineState.BACKING_UP, {"skipped": "dry run"})
        snapshot = self.backup.create_snapshot(
            self.pipeline_id, self.tenant_id, SnapshotKind.FULL, label="pre-migration"
        )
        self.record.snapshot_id = snapshot.snapshot_id
        self.repository.save(self.record)
        return self._completed(
            PipelineState.BACKING_UP,
            {"snapshot_id": snapshot.snapshot_id, "record_count": snapshot.record_count},
        )

    def _stage_migrating(self) -> StageMessage:
        """Prepare batches on a prefetch thread and commit them in order.

        Stops early at a batch boundary when the operator pauses, or when a
        batch brings source fields the mapping plan has never seen.
        """
        blocked = self._check_plans()
        if blocked:
            return self._suspended(
                PipelineState.MIGRATING, SuspensionReason.MAPPING_APPROVAL, "; ".join(blocked)
            )

        checkpoint = (
            self.repository.get_checkpoint(self.pipeline_id, self.tenant_id)
            or dict(self._position)
        )
        if checkpoint:
            self.progress.restore(
                checkpoint["succeeded"],
                checkpoint["warned"],
                checkpoint["failed"],
                checkpoint["batches_committed"],
            )
            logger.info(
                f"Resuming pipeline {self.pipeline_id} at batch {checkpoint['batch_index']}",
                extra={"pipeline_id": self.pipeline_id, "tenant_id": self.tenant_id},
            )

        prefetched: queue.Queue[Any] = queue.Queue(maxsize=self.config.prefetch_batches)
        stop = threading.Event()
        executor = ThreadPoolExecutor(
            max_workers=self.config.max_retries + 1,
            thread_name_prefix=f"extract-{self.pipeline_id[:8]}",
        )
        producer = threading.Thread(
            target=self._produce,
            args=(prefetched, stop, executor, checkpoint),
            name=f"prefetch-{self.pipeline_id[:8]}",
            daemon=True,
        )
        producer.start()

        interrupted: StageMessage | None = None
        try:
            while True:
                item = self._take(prefetched)
                if item is _END:
                    break
                if isinstance(item, MappingError) and item.source_fields:
                    self.repository.save(self.record)
                    interrupted = self._suspended(
                        PipelineState.MIGRATING,
                        SuspensionReason.MAPPING_APPROVAL,
                        item.message,
                    )
                    break
                if isinstance(item, Exception):
                    raise item
                self._commit(item)
                if self._pause.is_set():
                    interrupted = self._suspended(
                        PipelineState.MIGRATING,
                        SuspensionReason.PAUSED,
                        f"Paused by operator after {item.batch_id}",
                    )
                    break
        finally:
            stop.set()
            while not prefetched.empty():
                prefetched.get_nowait()
            producer.join(timeout=self.config.batch_timeout_seconds)
            executor.shutdown(wait=False, cancel_futures=True)

        if interrupted is not None:
            return interrupted
        self._position = {}
        progress = self.progress.snapshot()
        return self._completed(
            PipelineState.MIGRATING,
            {
                "processed": progress.processed,
                "succeeded": progress.succeeded,
                "warned": progress.warned,
                "failed": progress.failed,
                "batches": progress.batches_committed,
                "dry_run": self.record.dry_run,
            },
        )

    def _take(self, prefetched: queue.Queue[Any]) -> Any:
        """Wait for the next prepared batch, honouring cancellation."""
        while True:
            self._check_cancelled()
            try:
                return prefetched.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue

    def _produce(
        self,
        prefetched: queue.Queue[Any],
        stop: threading.Event,
        executor: ThreadPoolExecutor,
        checkpoint: dict[str, Any],
    ) -> None:
        """Extract, map and validate batches ahead of the committer."""

        def offer(item: Any) -> bool:
            while not stop.is_set():
                try:
                    prefetched.put(item, timeout=_POLL_INTERVAL)
                    return True
                except queue.Full:
                    continue
            return False

        def stopping() -> bool:
            return stop.is_set() or self._cancel.is_set()

        try:
            batch_index = checkpoint.get("batch_index", 0)
            options = self._validation_options()
            start_source = checkpoint.get("source_index", 0)

            for source_index in range(start_source, len(self.config.source_systems)):
                if stopping():
                    return
                source = self.config.source_systems[source_index]
                resumed = source_index == start_source
                token = checkpoint.get("resume_token") if resumed else None
                extracted = checkpoint.get("extracted", 0) if resumed else 0
                preparer = BatchPreparer(
                    self._plan(source_index),
                    self.validator,
                    options,
                    self.config.error_rate_threshold,
                )
                session = self._session(source_index)

                while not stopping():
                    size = self.config.batch_size
                    if source.selector.limit is not None:
                        size = min(size, source.selector.limit - extracted)
                        if size <= 0:
                            break
                    batch_id = f"batch-{batch_index:05d}"
                    load = partial(
                        self._load_batch, session, source, preparer, token, size,
                        batch_id, batch_index, source_index, extracted,
                    )
                    try:
                        batch = retry_with_backoff(
                            lambda: run_with_timeout(
                                executor, load, self.config.batch_timeout_seconds,
                                f"Batch {batch_id}",
                            ),
                            self.config.max_retries,
                            self.config.retry_base_delay,
                            f"Preparing {batch_id}",
                            sleep=self._sleep,
                            should_stop=stopping,
                        )
                    except MappingError as e:
                        self._note_unplanned(source, e.source_fields)
                        logger.warning(
                            f"Pipeline {self.pipeline_id} stopped before {batch_id}: {e.message}",
                            extra={"pipeline_id": self.pipeline_id, "tenant_id": self.tenant_id},
                        )
                        offer(e)
                        return
                    if batch is None:
                        break
                    if not offer(batch):
                        return
                    token = batch.resume_token
                    extracted = batch.extracted
                    batch_index += 1

            offer(_END)
        except Exception as e:
            offer(e)

    def _commit(self, batch: PreparedBatch) -> None:
        """Write one batch atomically, then count and checkpoint it.

        A cancel that arrives while the batch is being written rolls its
        transaction back; the batch is then neither counted nor checkpointed.
        """
        with self._write_gate:
            try:
                if self._cancel.is_set():
                    raise CancellationRequested(
                        f"Cancelled before committing {batch.batch_id}; batch left uncommitted",
                        pipeline_id=self.pipeline_id,
                        batch_id=batch.batch_id,
                    )
                if batch.rows and not self.record.dry_run:
                    retry_with_backoff(
                        lambda: self.store.write_batch(
                            self.tenant_id,
                            self.pipeline_id,
                            batch.batch_id,
                            batch.rows,
                            should_abort=self._cancel.is_set,
                        ),
                        self.config.max_retries,
                        self.config.retry_base_delay,
                        f"Commit of {batch.batch_id}",
                        sleep=self._sleep,
                    )
            except CancellationRequested:
                self._leave_uncommitted(batch)
                raise
            except MigrationError as e:
                e.with_context(pipeline_id=self.pipeline_id, batch_id=batch.batch_id)
                self.repository.record_findings(
                    self.pipeline_id, self.tenant_id, batch.batch_id, batch.findings
                )
                raise

            self.repository.clear_findings(self.pipeline_id, self.tenant_id, batch.batch_id)
            self.repository.record_findings(
                self.pipeline_id, self.tenant_id, batch.batch_id, batch.findings
            )
            progress = self.progress.record_batch(batch.succeeded, batch.warned, batch.failed)

            position = {
                "source_index": batch.source_index,
                "resume_token": batch.resume_token,
                "extracted": batch.extracted,
                "batch_index": batch.batch_index + 1,
                "batches_committed": progress.batches_committed,
                "succeeded": progress.succeeded,
                "warned": progress.warned,
                "failed": progress.failed,
            }
            self._position = position
            if self.record.dry_run:
                return

            self.repository.save_checkpoint(self.pipeline_id, self.tenant_id, position)
            self.record.checkpoint = position

            every = self.config.checkpoint_snapshot_every
            if every and progress.batches_committed % every == 0:
                self.backup.create_snapshot(
                    self.pipeline_id,
                    self.tenant_id,
                    SnapshotKind.CHECKPOINT,
                    label=f"after {batch.batch_id}",
                )

    def _leave_uncommitted(self, batch: PreparedBatch) -> None:
        """Record a cancelled batch's findings and mark each of its records unwritten."""
        keys = [f["provenance"] for f in batch.findings if f.get("provenance")]
        keys.extend(key for key, _ in batch.rows)
        findings = list(batch.findings)
        findings.extend(
            ValidationFinding(
                rule_id="BATCH_UNCOMMITTED",
                severity=Severity.ERROR,
                field=None,
                message=f"Not written: pipeline cancelled while committing {batch.batch_id}",
                category=RuleCategory.STRUCTURAL,
                provenance=key,
            ).to_dict()
            for key in dict.fromkeys(keys)
        )
        self.repository.record_findings(
            self.pipeline_id, self.tenant_id, batch.batch_id, findings
        )
        with self._state_lock:
            self.record.metrics["uncommitted"] = {
                "batch_id": batch.batch_id,
                "records": batch.size,
            }
        logger.warning(
            f"Batch {batch.batch_id} of pipeline {self.pipeline_id} left uncommitted "
            f"({batch.size} record(s))",
            extra={"pipeline_id": self.pipeline_id, "tenant_id": self.tenant_id},
        )

    def _load_batch(
        self,
        session: _SourceSession,
        source: SourceSystemConfig,
        preparer: BatchPreparer,
        token: str | None,
        size: int,
        batch_id: str,
        batch_index: int,
        source_index: int,
        extracted: int,
    ) -> PreparedBatch | None:
        """Extract one batch from its resume token and prepare it.

        Each attempt starts a fresh extraction from the same token, so a retry
        (or a timed-out attempt still running) never shifts the batch.
        """
        selector = source.selector.model_copy(update={"limit": size})
        stream = session.connector.extract(session.handle, selector, token)
        records = list(stream)
        if not records:
            return None
        batch = preparer.prepare(
            records, batch_id, batch_index, source_index, stream.resume_token
        )
        batch.extracted = extracted + len(records)
        return batch

    def _stage_verifying(self) -> StageMessage:
        """Check the target store holds exactly the records counted as written."""
        progress = self.progress.snapshot()
        payload: dict[str, Any] = {
            "processed": progress.processed,
            "expected_written": progress.succeeded + progress.warned,
        }
        if not self.record.dry_run:
            written = self.store.count(self.tenant_id, self.pipeline_id)
            payload["records_written"] = written
            if written != payload["expected_written"]:
                raise MigrationError(
                    f"Verification failed: target store holds {written} record(s), "
                    f"expected {payload['expected_written']}",
                    pipeline_id=self.pipeline_id,
                )
        return self._completed(PipelineState.VERIFYING, payload)


def _field_names(records: list[ExtractedRecord]) -> list[str]:
    names: dict[str, None] = {}
    for record in records:
        for name in record.field_names():
            names.setdefault(name, None)
    return list(names)
