"""Persistence for migration pipelines.

Pipelines, their state history, errors, record findings, quality reports and
checkpoints are stored per (pipeline, tenant); every query filters by tenant.
Credentials are never persisted: configurations are stored with secrets
masked, and the live configuration is held by the running orchestrator.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

from errors import MigrationError, NotFoundError, TenantIsolationError

from .models import PipelineConfig, PipelineRecord, PipelineState, SuspensionReason

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class PipelineRepository:
    """SQLite-backed pipeline storage.

    Attributes:
        db_path: Path to the SQLite database
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._init_tables()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_tables(self) -> None:
        """Initialize database tables if they don't exist."""
        with self._connect() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS pipelines (
                    id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    state TEXT NOT NULL,
                    config TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS pipeline_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    pipeline_id TEXT NOT NULL,
                    tenant_id TEXT NOT NULL,
                    from_state TEXT,
                    to_state TEXT NOT NULL,
                    reason TEXT,
                    at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS pipeline_errors (
                    id TEXT PRIMARY KEY,
                    pipeline_id TEXT NOT NULL,
                    tenant_id TEXT NOT NULL,
                    batch_id TEXT,
                    provenance TEXT,
                    error_type TEXT NOT NULL,
                    message TEXT NOT NULL,
                    transient INTEGER NOT NULL DEFAULT 0,
                    timestamp TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS record_findings (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    pipeline_id TEXT NOT NULL,
                    tenant_id TEXT NOT NULL,
                    batch_id TEXT,
                    provenance TEXT,
                    severity TEXT NOT NULL,
                    rule_id TEXT NOT NULL,
                    payload TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS quality_reports (
                    id TEXT PRIMARY KEY,
                    pipeline_id TEXT NOT NULL,
                    tenant_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    payload TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS pipeline_checkpoints (
                    pipeline_id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_findings_pipeline
                ON record_findings(tenant_id, pipeline_id, severity)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_errors_pipeline
                ON pipeline_errors(tenant_id, pipeline_id, timestamp)
            """)

    # Pipelines

    def create(self, record: PipelineRecord) -> PipelineRecord:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO pipelines (id, tenant_id, state, config, payload, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.pipeline_id,
                    record.tenant_id,
                    record.state.value,
                    record.config.model_dump_json(),
                    json.dumps(self._payload(record)),
                    record.created_at,
                    record.updated_at,
                ),
            )
            self._history(conn, record, None, record.state, "created")
        return record

    def get(self, pipeline_id: str, tenant_id: str) -> PipelineRecord:
        """Load a pipeline.

        Raises:
            NotFoundError: If no pipeline has this id
            TenantIsolationError: If the pipeline belongs to another tenant
        """
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM pipelines WHERE id = ?", (pipeline_id,)
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Pipeline not found: {pipeline_id}")
            if row["tenant_id"] != tenant_id:
                raise TenantIsolationError(
                    f"Pipeline {pipeline_id} is not visible to tenant {tenant_id}"
                )
            history = conn.execute(
                """
                SELECT from_state, to_state, reason, at FROM pipeline_history
                WHERE pipeline_id = ? AND tenant_id = ? ORDER BY id
                """,
                (pipeline_id, tenant_id),
            ).fetchall()
            checkpoint = conn.execute(
                "SELECT payload FROM pipeline_checkpoints WHERE pipeline_id = ? AND tenant_id = ?",
                (pipeline_id, tenant_id),
            ).fetchone()

        payload = json.loads(row["payload"])
        return PipelineRecord(
            pipeline_id=row["id"],
            tenant_id=row["tenant_id"],
            config=PipelineConfig.model_validate_json(row["config"]),
            state=PipelineState(row["state"]),
            history=[dict(h) for h in history],
            metrics=payload.get("metrics", {}),
            failure_reason=payload.get("failure_reason"),
            suspended=SuspensionReason(payload["suspended"]) if payload.get("suspended") else None,
            checkpoint=json.loads(checkpoint["payload"]) if checkpoint else None,
            snapshot_id=payload.get("snapshot_id"),
            mapping_ids=payload.get("mapping_ids", []),
            dry_run=payload.get("dry_run", False),
            quality_override=payload.get("quality_override", False),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def list_pipelines(self, tenant_id: str) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, state, created_at, updated_at FROM pipelines
                WHERE tenant_id = ? ORDER BY created_at DESC
                """,
                (tenant_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    def save(self, record: PipelineRecord) -> None:
        """Persist a pipeline's current fields and configuration (not its state)."""
        record.updated_at = _now()
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE pipelines SET config = ?, payload = ?, updated_at = ?
                WHERE id = ? AND tenant_id = ?
                """,
                (
                    record.config.model_dump_json(),
                    json.dumps(self._payload(record)),
                    record.updated_at,
                    record.pipeline_id,
                    record.tenant_id,
                ),
            )

    def transition(
        self, record: PipelineRecord, target: PipelineState, reason: str | None = None
    ) -> None:
        """Persist a state change together with its history entry."""
        previous = record.state
        record.state = target
        record.updated_at = _now()
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE pipelines SET state = ?, payload = ?, updated_at = ?
                WHERE id = ? AND tenant_id = ?
                """,
                (
                    target.value,
                    json.dumps(self._payload(record)),
                    record.updated_at,
                    record.pipeline_id,
                    record.tenant_id,
                ),
            )
            self._history(conn, record, previous, target, reason)

    def is_terminal(self, pipeline_id: str, tenant_id: str) -> bool:
        try:
            return self.get(pipeline_id, tenant_id).is_terminal
        except NotFoundError:
            return True

    # Errors and findings

    def record_error(self, pipeline_id: str, tenant_id: str, error: MigrationError) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO pipeline_errors
                (id, pipeline_id, tenant_id, batch_id, provenance, error_type,
                 message, transient, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(uuid.uuid4()),
                    pipeline_id,
                    tenant_id,
                    error.batch_id,
                    error.provenance,
                    error.error_type,
                    error.message,
                    int(error.transient),
                    error.timestamp,
                ),
            )

    def list_errors(self, pipeline_id: str, tenant_id: str) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT batch_id, provenance, error_type, message, transient, timestamp
                FROM pipeline_errors WHERE pipeline_id = ? AND tenant_id = ?
                ORDER BY timestamp
                """,
                (pipeline_id, tenant_id),
            ).fetchall()
        return [{**dict(row), "transient": bool(row["transient"])} for row in rows]

    def record_findings(
        self,
        pipeline_id: str,
        tenant_id: str,
        batch_id: str | None,
        findings: list[dict[str, Any]],
    ) -> None:
        if not findings:
            return
        with self._connect() as conn:
            conn.executemany(
                """
                INSERT INTO record_findings
                (pipeline_id, tenant_id, batch_id, provenance, severity, rule_id, payload)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        pipeline_id,
                        tenant_id,
                        batch_id,
                        f.get("provenance"),
                        f["severity"],
                        f["rule_id"],
                        json.dumps(f),
                    )
                    for f in findings
                ],
            )

    def list_findings(
        self,
        pipeline_id: str,
        tenant_id: str,
        severity: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        query = """
            SELECT batch_id, payload FROM record_findings
            WHERE pipeline_id = ? AND tenant_id = ?
        """
        params: list[Any] = [pipeline_id, tenant_id]
        if severity:
            query += " AND severity = ?"
            params.append(severity)
        query += " ORDER BY id"
        if limit:
            query += " LIMIT ?"
            params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [{**json.loads(row["payload"]), "batch_id": row["batch_id"]} for row in rows]

    def clear_findings(self, pipeline_id: str, tenant_id: str, batch_id: str) -> None:
        """Drop findings of a batch that is about to be re-run."""
        with self._connect() as conn:
            conn.execute(
                """
                DELETE FROM record_findings
                WHERE pipeline_id = ? AND tenant_id = ? AND batch_id = ?
                """,
                (pipeline_id, tenant_id, batch_id),
            )

    # Quality reports

    def save_quality_report(
        self, pipeline_id: str, tenant_id: str, report: dict[str, Any]
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO quality_reports (id, pipeline_id, tenant_id, created_at, payload)
                VALUES (?, ?, ?, ?, ?)
                """,
                (str(uuid.uuid4()), pipeline_id, tenant_id, _now(), json.dumps(report)),
            )

    def get_quality_report(self, pipeline_id: str, tenant_id: str) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT payload FROM quality_reports
                WHERE pipeline_id = ? AND tenant_id = ?
                ORDER BY created_at DESC, rowid DESC LIMIT 1
                """,
                (pipeline_id, tenant_id),
            ).fetchone()
        return json.loads(row["payload"]) if row else None

    # Checkpoints

    def save_checkpoint(
        self, pipeline_id: str, tenant_id: str, checkpoint: dict[str, Any]
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO pipeline_checkpoints
                (pipeline_id, tenant_id, payload, updated_at)
                VALUES (?, ?, ?, ?)
                """,
                (pipeline_id, tenant_id, json.dumps(checkpoint), _now()),
            )

    def get_checkpoint(self, pipeline_id: str, tenant_id: str) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT payload FROM pipeline_checkpoints WHERE pipeline_id = ? AND tenant_id = ?",
                (pipeline_id, tenant_id),
            ).fetchone()
        return json.loads(row["payload"]) if row else None

    def clear_checkpoint(self, pipeline_id: str, tenant_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM pipeline_checkpoints WHERE pipeline_id = ? AND tenant_id = ?",
                (pipeline_id, tenant_id),
            )

    # Helpers

    @staticmethod
    def _payload(record: PipelineRecord) -> dict[str, Any]:
        return {
            "metrics": record.metrics,
            "failure_reason": record.failure_reason,
            "suspended": record.suspended.value if record.suspended else None,
            "snapshot_id": record.snapshot_id,
            "mapping_ids": record.mapping_ids,
            "dry_run": record.dry_run,
            "quality_override": record.quality_override,
        }

    @staticmethod
    def _history(
        conn: sqlite3.Connection,
        record: PipelineRecord,
        previous: PipelineState | None,
        target: PipelineState,
        reason: str | None,
    ) -> None:
        at = _now()
        conn.execute(
            """
            INSERT INTO pipeline_history (pipeline_id, tenant_id, from_state, to_state, reason, at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                record.pipeline_id,
                record.tenant_id,
                previous.value if previous else None,
                target.value,
                reason,
                at,
            ),
        )
        record.history.append(
            {
                "from_state": previous.value if previous else None,
                "to_state": target.value,
                "reason": reason,
                "at": at,
            }
        )
