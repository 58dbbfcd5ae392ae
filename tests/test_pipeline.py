"""Tests for pipeline building blocks: state machine, progress, batches, storage, config."""

from __future__ import annotations

import json
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from conftest import file_source, make_residents, pipeline_config, to_csv
from errors import (
    ConnectionError,
    InvalidTransitionError,
    MappingError,
    NotFoundError,
    TenantIsolationError,
    WriteError,
)
from mapping import FieldMappingEngine, MappingPlan
from pipeline import (
    BatchPreparer,
    ConfigValidationError,
    PipelineConfigLoader,
    PipelineRecord,
    PipelineRepository,
    PipelineState,
    ProgressTracker,
    can_transition,
    check_transition,
    retry_with_backoff,
    run_with_timeout,
    substitute_env,
)
from pipeline.config_loader import EXAMPLE_PIPELINE_CONFIG
from records import ExtractedRecord, Provenance
from validation import ValidationEngine, ValidationOptions

TENANT = "oakwood"


class TestStateMachine:
    """Test allowed pipeline state changes."""

    def test_stages_advance_in_order(self):
        """Test each stage may only move to the next one."""
        assert can_transition(PipelineState.PREPARING, PipelineState.ANALYZING)
        assert can_transition(PipelineState.BACKING_UP, PipelineState.MIGRATING)
        assert not can_transition(PipelineState.PREPARING, PipelineState.MIGRATING)
        assert not can_transition(PipelineState.MIGRATING, PipelineState.VALIDATING)

    @pytest.mark.parametrize(
        "state",
        [s for s in PipelineState if s not in (
            PipelineState.COMPLETED,
            PipelineState.FAILED,
            PipelineState.CANCELLED,
            PipelineState.ROLLED_BACK,
        )],
    )
    def test_running_states_can_abort(self, state):
        """Test every non-terminal state can fail or be cancelled."""
        assert can_transition(state, PipelineState.FAILED)
        assert can_transition(state, PipelineState.CANCELLED)

    def test_terminal_states_are_final(self):
        """Test cancelled and rolled back pipelines go nowhere."""
        for state in (PipelineState.CANCELLED, PipelineState.ROLLED_BACK):
            assert not any(can_transition(state, target) for target in PipelineState)

    def test_rollback_needs_a_snapshot(self):
        """Test rollback from a completed pipeline requires a snapshot."""
        with pytest.raises(InvalidTransitionError, match="no snapshot"):
            check_transition(PipelineState.COMPLETED, PipelineState.ROLLED_BACK)

        check_transition(PipelineState.COMPLETED, PipelineState.ROLLED_BACK, has_snapshot=True)
        check_transition(PipelineState.FAILED, PipelineState.ROLLED_BACK, has_snapshot=True)

    def test_rollback_not_before_migrating(self):
        """Test nothing can be rolled back before writes could have happened."""
        with pytest.raises(InvalidTransitionError):
            check_transition(PipelineState.VALIDATING, PipelineState.ROLLED_BACK, has_snapshot=True)


class TestProgressTracker:
    """Test progress counters."""

    def test_counts_and_rate(self):
        """Test counters accumulate and drive the rate and ETA."""
        ticks = iter([0.0, 2.0])
        tracker = ProgressTracker("p1", clock=lambda: next(ticks))
        tracker.set_total(100)

        tracker.record_batch(8, 1, 1)
        progress = tracker.record_batch(10, 0, 0)

        assert progress.processed == 20
        assert progress.succeeded == 18
        assert progress.batches_committed == 2
        assert progress.rate_per_second == pytest.approx(10.0)
        assert progress.eta_seconds == pytest.approx(8.0)
        assert progress.percent_complete == 20.0

    def test_negative_counts_rejected(self):
        """Test a batch cannot subtract records."""
        with pytest.raises(ValueError):
            ProgressTracker("p1").record_batch(-1, 0, 0)

    def test_restore_never_goes_backwards(self):
        """Test checkpoint restore only raises counters."""
        tracker = ProgressTracker("p1")
        tracker.record_batch(50, 0, 0)

        tracker.restore(succeeded=30, warned=5, failed=0, batches=1)

        progress = tracker.snapshot()
        assert progress.succeeded == 50
        assert progress.warned == 5
        assert progress.processed == 55

    def test_snapshot_is_a_copy(self):
        """Test readers get a copy that later batches do not change."""
        tracker = ProgressTracker("p1")
        before = tracker.snapshot()

        tracker.record_batch(5, 0, 0)

        assert before.processed == 0

    def test_subscribers(self):
        """Test subscribers receive updates until they unsubscribe."""
        tracker = ProgressTracker("p1")
        seen = []
        unsubscribe = tracker.subscribe(lambda p: seen.append(p.processed))

        tracker.record_batch(3, 0, 0)
        unsubscribe()
        tracker.record_batch(3, 0, 0)

        assert seen == [3]

    def test_failing_subscriber_is_isolated(self):
        """Test one broken subscriber does not stop the others."""
        tracker = ProgressTracker("p1")
        seen = []

        def broken(progress):
            raise RuntimeError("boom")

        tracker.subscribe(broken)
        tracker.subscribe(lambda p: seen.append(p.state))
        tracker.set_state("migrating")

        assert seen == ["migrating"]


class TestRetryWithBackoff:
    """Test retry of transient errors."""

    def test_transient_errors_back_off_exponentially(self):
        """Test delays double between retries."""
        attempts = []
        delays = []

        def operation():
            attempts.append(1)
            if len(attempts) < 3:
                raise WriteError("disk busy")
            return "ok"

        result = retry_with_backoff(operation, 3, 0.5, sleep=delays.append)

        assert result == "ok"
        assert delays == [0.5, 1.0]

    def test_permanent_errors_are_not_retried(self):
        """Test non-transient errors propagate on the first attempt."""
        attempts = []

        def operation():
            attempts.append(1)
            raise MappingError("bad mapping")

        with pytest.raises(MappingError):
            retry_with_backoff(operation, 3, 0.0, sleep=lambda _: None)
        assert len(attempts) == 1

    def test_exhausted_retries(self):
        """Test the last transient error propagates once retries run out."""
        attempts = []

        def operation():
            attempts.append(1)
            raise WriteError("still busy")

        with pytest.raises(WriteError):
            retry_with_backoff(operation, 2, 0.0, sleep=lambda _: None)
        assert len(attempts) == 3

    def test_stop_request_ends_retries(self):
        """Test retries stop when a stop is requested."""
        delays = []

        def operation():
            raise WriteError("busy")

        with pytest.raises(WriteError):
            retry_with_backoff(operation, 5, 1.0, sleep=delays.append, should_stop=lambda: True)
        assert delays == []


class TestRunWithTimeout:
    """Test per-batch deadlines."""

    def test_returns_result(self):
        """Test a fast operation returns its result."""
        with ThreadPoolExecutor(max_workers=1) as executor:
            assert run_with_timeout(executor, lambda: 42, 1.0) == 42

    def test_deadline_is_a_transient_connection_error(self):
        """Test a slow operation raises a transient ConnectionError."""
        release = threading.Event()
        executor = ThreadPoolExecutor(max_workers=1)
        try:
            with pytest.raises(ConnectionError, match="timed out") as exc_info:
                run_with_timeout(executor, lambda: release.wait(5), 0.05, "Batch batch-00001")
            assert exc_info.value.transient
        finally:
            release.set()
            executor.shutdown(wait=True)


class TestBatchPreparer:
    """Test mapping and validating a batch away from the store."""

    def _records(self, rows) -> list[ExtractedRecord]:
        return [
            ExtractedRecord.from_raw(row, Provenance(connector_id="csv", source_row_index=i))
            for i, row in enumerate(rows)
        ]

    def _preparer(self, mapping_engine: FieldMappingEngine, rows) -> BatchPreparer:
        proposal = mapping_engine.propose(self._records(rows), "generic_file_import", TENANT)
        return BatchPreparer(
            MappingPlan.from_proposal(proposal),
            ValidationEngine(),
            ValidationOptions(),
            error_rate_threshold=0.1,
        )

    def test_clean_batch(self, mapping_engine: FieldMappingEngine):
        """Test every clean record becomes a writable row keyed by provenance."""
        rows = make_residents(10)
        preparer = self._preparer(mapping_engine, rows)

        batch = preparer.prepare(self._records(rows), "batch-00000", 0, 0, "offset:10")

        assert not batch.rejected
        assert batch.failed == 0
        assert len(batch.rows) == 10
        assert batch.rows[0][0] == "csv::0"
        assert batch.rows[0][1]["resident_id"] == "R00000"

    def test_invalid_records_are_left_out(self, mapping_engine: FieldMappingEngine):
        """Test records with blocking errors are counted failed and not written."""
        rows = make_residents(20)
        rows[4]["nhs_number"] = "9434765918"
        preparer = self._preparer(mapping_engine, rows)

        batch = preparer.prepare(self._records(rows), "batch-00000", 0, 0, "offset:20")

        assert not batch.rejected
        assert batch.failed == 1
        assert len(batch.rows) == 19
        assert "csv::4" not in {key for key, _ in batch.rows}

    def test_error_rate_rejects_whole_batch(self, mapping_engine: FieldMappingEngine):
        """Test a batch over the error-rate threshold writes nothing."""
        rows = make_residents(10)
        for row in rows[:3]:
            row["nhs_number"] = "9434765918"
        preparer = self._preparer(mapping_engine, rows)

        batch = preparer.prepare(self._records(rows), "batch-00000", 0, 0, "offset:10")

        assert batch.rejected
        assert batch.rows == []
        assert batch.counts() == {"succeeded": 0, "warned": 0, "failed": 10}
        rejected = [f for f in batch.findings if f["rule_id"] == "BATCH_ERROR_RATE"]
        assert len(rejected) == 10

    def test_fields_outside_the_plan_stop_the_batch(self, mapping_engine: FieldMappingEngine):
        """Test a batch bringing a field the plan never saw is refused, naming the field."""
        rows = make_residents(10)
        preparer = self._preparer(mapping_engine, rows)
        for row in rows[5:]:
            row["Allergies"] = "Penicillin"

        with pytest.raises(MappingError) as exc_info:
            preparer.prepare(self._records(rows), "batch-00001", 1, 0, "offset:10")

        assert exc_info.value.source_fields == ["Allergies"]
        assert exc_info.value.batch_id == "batch-00001"

    def test_allowed_fields_outside_the_plan_are_kept(self, mapping_engine: FieldMappingEngine):
        """Test with unmapped fields allowed the new field is kept and reported per record."""
        rows = make_residents(10)
        preparer = self._preparer(mapping_engine, rows)
        preparer.plan.allow_unmapped = True
        for row in rows[5:]:
            row["Allergies"] = "Penicillin"

        batch = preparer.prepare(self._records(rows), "batch-00001", 1, 0, "offset:10")

        assert len(batch.rows) == 10
        assert batch.rows[7][1]["additional_fields"] == {"Allergies": "Penicillin"}
        assert "additional_fields" not in batch.rows[0][1]
        unmapped = [f for f in batch.findings if f["rule_id"] == "UNMAPPED_FIELD"]
        assert [f["provenance"] for f in unmapped] == [f"csv::{i}" for i in range(5, 10)]
        assert {f["severity"] for f in unmapped} == {"info"}


class TestPipelineRepository:
    """Test pipeline persistence."""

    @pytest.fixture
    def repository(self, db_path: str) -> PipelineRepository:
        return PipelineRepository(db_path)

    def _record(self, **overrides) -> PipelineRecord:
        config = pipeline_config([file_source(to_csv(make_residents(2)))], **overrides)
        return PipelineRecord(tenant_id=TENANT, config=config)

    def test_round_trip(self, repository: PipelineRepository):
        """Test a stored pipeline loads back with its history."""
        record = repository.create(self._record())
        repository.transition(record, PipelineState.ANALYZING, "preparing completed")

        loaded = repository.get(record.pipeline_id, TENANT)

        assert loaded.state == PipelineState.ANALYZING
        assert [h["to_state"] for h in loaded.history] == ["preparing", "analyzing"]
        assert loaded.config.name == "Oakwood migration"

    def test_other_tenant_is_refused(self, repository: PipelineRepository):
        """Test a pipeline is invisible to other tenants."""
        record = repository.create(self._record())

        with pytest.raises(TenantIsolationError):
            repository.get(record.pipeline_id, "riverside")
        assert repository.list_pipelines("riverside") == []

    def test_missing_pipeline(self, repository: PipelineRepository):
        """Test unknown pipelines raise NotFoundError and count as finished."""
        with pytest.raises(NotFoundError):
            repository.get("nope", TENANT)
        assert repository.is_terminal("nope", TENANT)

    def test_credentials_are_masked(self, repository: PipelineRepository):
        """Test secrets never reach the database."""
        config = pipeline_config(
            [
                {
                    "system": {
                        "system_type": "generic_api",
                        "name": "GP link",
                        "connection": {"base_url": "https://gp-link.example.org"},
                    },
                    "credentials": {"auth_type": "bearer", "token": "top-secret"},
                }
            ]
        )
        record = repository.create(PipelineRecord(tenant_id=TENANT, config=config))

        with repository._connect() as conn:
            stored = conn.execute(
                "SELECT config FROM pipelines WHERE id = ?", (record.pipeline_id,)
            ).fetchone()["config"]

        assert "top-secret" not in stored

    def test_findings_filter_and_clear(self, repository: PipelineRepository):
        """Test findings are listed by severity and cleared per batch."""
        record = repository.create(self._record())
        findings = [
            {"rule_id": "NHS_NUMBER_CHECKSUM", "severity": "error", "provenance": "a:b:0"},
            {"rule_id": "CQC_REGISTRATION", "severity": "warning", "provenance": "a:b:1"},
        ]
        repository.record_findings(record.pipeline_id, TENANT, "batch-00000", findings)

        errors = repository.list_findings(record.pipeline_id, TENANT, severity="error")
        assert [f["rule_id"] for f in errors] == ["NHS_NUMBER_CHECKSUM"]
        assert errors[0]["batch_id"] == "batch-00000"

        repository.clear_findings(record.pipeline_id, TENANT, "batch-00000")
        assert repository.list_findings(record.pipeline_id, TENANT) == []

    def test_checkpoints(self, repository: PipelineRepository):
        """Test a checkpoint is replaced, loaded with the pipeline, and cleared."""
        record = repository.create(self._record())
        repository.save_checkpoint(record.pipeline_id, TENANT, {"batch_index": 1})
        repository.save_checkpoint(record.pipeline_id, TENANT, {"batch_index": 2})

        assert repository.get(record.pipeline_id, TENANT).checkpoint == {"batch_index": 2}

        repository.clear_checkpoint(record.pipeline_id, TENANT)
        assert repository.get_checkpoint(record.pipeline_id, TENANT) is None

    def test_latest_quality_report(self, repository: PipelineRepository):
        """Test the newest quality report is returned."""
        record = repository.create(self._record())
        repository.save_quality_report(record.pipeline_id, TENANT, {"overall_score": 60.0})
        repository.save_quality_report(record.pipeline_id, TENANT, {"overall_score": 85.0})

        assert repository.get_quality_report(record.pipeline_id, TENANT) == {"overall_score": 85.0}
        assert repository.get_quality_report(record.pipeline_id, "riverside") is None


class TestConfigLoader:
    """Test loading pipeline configurations from files."""

    def test_env_substitution(self, monkeypatch):
        """Test ${NAME} references are replaced recursively."""
        monkeypatch.setenv("LEGACY_TOKEN", "abc123")

        result = substitute_env({"credentials": {"token": "${LEGACY_TOKEN}"}, "n": [1, "x"]})

        assert result == {"credentials": {"token": "abc123"}, "n": [1, "x"]}

    def test_missing_env_variable(self, monkeypatch):
        """Test an unset variable is a validation error."""
        monkeypatch.delenv("LEGACY_TOKEN", raising=False)

        with pytest.raises(ConfigValidationError) as exc_info:
            substitute_env("${LEGACY_TOKEN}", "pipelines.yaml")

        assert exc_info.value.errors[0]["error"] == "LEGACY_TOKEN is not set"

    def test_example_config_loads(self, tmp_path: Path, monkeypatch):
        """Test the documented example configuration is valid."""
        monkeypatch.setenv("GP_LINK_TOKEN", "token-value")
        path = tmp_path / "oakwood.yaml"
        path.write_text(EXAMPLE_PIPELINE_CONFIG, encoding="utf-8")

        configs = PipelineConfigLoader().load_file(path)

        assert len(configs) == 1
        config = configs[0]
        assert config.batch_size == 200
        assert config.requirements.quality_threshold == 75
        assert config.source_systems[1].credentials.token.get_secret_value() == "token-value"

    def test_invalid_fields_are_reported(self, tmp_path: Path):
        """Test field errors name the offending field."""
        path = tmp_path / "bad.json"
        path.write_text(
            json.dumps(
                {
                    "name": "Bad",
                    "jurisdiction": "atlantis",
                    "source_systems": [file_source("a\n1\n")],
                }
            ),
            encoding="utf-8",
        )

        with pytest.raises(ConfigValidationError) as exc_info:
            PipelineConfigLoader().load_file(path)

        assert exc_info.value.errors[0]["field"] == "jurisdiction"

    def test_batch_size_over_system_limit(self):
        """Test batch sizes above a source system's export limit are rejected."""
        source = {
            "system": {"system_type": "nhs_spine", "name": "Spine", "connection": {}},
        }

        with pytest.raises(ConfigValidationError, match="Validation failed"):
            PipelineConfigLoader().parse({"name": "Spine", "source_systems": [source], "batch_size": 500})

    def test_directory_collects_all_errors(self, tmp_path: Path):
        """Test a directory load reports errors from every file."""
        (tmp_path / "good.yaml").write_text(
            "name: Good\nsource_systems:\n  - system:\n      system_type: generic_file_import\n"
            "      name: Export\n      connection: {content: \"a\\n1\\n\"}\n",
            encoding="utf-8",
        )
        (tmp_path / "bad.yaml").write_text("name: Bad\nsource_systems: []\n", encoding="utf-8")

        with pytest.raises(ConfigValidationError) as exc_info:
            PipelineConfigLoader(tmp_path).load_directory()

        assert any("bad.yaml" in err["file"] for err in exc_info.value.errors)

    def test_unsupported_extension(self, tmp_path: Path):
        """Test only YAML and JSON files are accepted."""
        path = tmp_path / "pipelines.toml"
        path.write_text("name = 'x'", encoding="utf-8")

        with pytest.raises(ValueError, match="Unsupported"):
            PipelineConfigLoader().load_file(path)
