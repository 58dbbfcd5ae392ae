"""Backup and rollback service.

Captures verified snapshots of a tenant's target-store state before and during
a migration, and restores them on rollback. Snapshot metadata lives in SQLite;
payloads live in content-addressed blob storage.

Usage:
    backups = BackupService(BlobStorage(BACKUP_DIR), target_store, DB_PATH)
    snapshot = backups.create_snapshot(pipeline_id, tenant_id)
    result = backups.restore(snapshot.snapshot_id, tenant_id)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import tempfile
import time
import uuid
from collections.abc import Callable
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator

from config import BACKUP_MIN_FREE_BYTES, BACKUP_RETENTION_DAYS
from errors import BackupError, MigrationError, NotFoundError
from store import TargetStore, state_checksum

from .models import (
    PhaseResult,
    RestoreCycleReport,
    RestoreResult,
    Snapshot,
    SnapshotKind,
)
from .storage import BlobStorage, digests

logger = logging.getLogger(__name__)

SNAPSHOT_FORMAT_VERSION = 1


class BackupService:
    """Creates, lists, restores and expires snapshots.

    Attributes:
        storage: Blob storage for snapshot payloads
        store: Target store whose state is captured
        db_path: SQLite database for snapshot metadata
        retention_days: Days a snapshot is kept once its pipeline has finished
        min_free_bytes: Free space required before a snapshot is attempted
    """

    def __init__(
        self,
        storage: BlobStorage,
        store: TargetStore,
        db_path: str,
        retention_days: int = BACKUP_RETENTION_DAYS,
        min_free_bytes: int = BACKUP_MIN_FREE_BYTES,
    ) -> None:
        self.storage = storage
        self.store = store
        self.db_path = db_path
        self.retention_days = retention_days
        self.min_free_bytes = min_free_bytes
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
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS snapshots (
                    id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    pipeline_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    location TEXT NOT NULL,
                    retain_until TEXT,
                    payload TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_snapshots_pipeline
                ON snapshots(tenant_id, pipeline_id, created_at DESC)
            """)

    def create_snapshot(
        self,
        pipeline_id: str,
        tenant_id: str,
        kind: SnapshotKind = SnapshotKind.FULL,
        label: str | None = None,
    ) -> Snapshot:
        """Capture and verify the tenant's current target-store state.

        The blob is read back and its checksums and decoded state compared
        with what was captured before the snapshot is recorded.

        Raises:
            BackupError: On insufficient storage, an unreadable source, or a
                checksum mismatch on read-back
        """
        free = self.storage.free_bytes()
        if free < self.min_free_bytes:
            raise BackupError(
                f"Insufficient storage for snapshot: {free} bytes free, "
                f"{self.min_free_bytes} required",
                pipeline_id=pipeline_id,
            )

        try:
            rows = self.store.dump(tenant_id)
        except sqlite3.Error as e:
            raise BackupError(
                f"Target store unreadable: {e}", pipeline_id=pipeline_id
            ) from e

        captured_checksum = state_checksum(rows)
        payload = json.dumps(
            {
                "format_version": SNAPSHOT_FORMAT_VERSION,
                "tenant_id": tenant_id,
                "pipeline_id": pipeline_id,
                "state_checksum": captured_checksum,
                "rows": rows,
            },
            sort_keys=True,
        ).encode("utf-8")

        blob = self.storage.write(payload)
        stored = self.storage.read(blob.location)
        sha256, md5 = digests(stored)
        if sha256 != blob.sha256 or md5 != blob.md5:
            raise BackupError(
                "Snapshot checksum mismatch on read-back", pipeline_id=pipeline_id
            )
        if state_checksum(self._decode(stored, blob.location)["rows"]) != captured_checksum:
            raise BackupError(
                "Snapshot state mismatch on read-back", pipeline_id=pipeline_id
            )

        now = datetime.now(timezone.utc)
        snapshot = Snapshot(
            snapshot_id=str(uuid.uuid4()),
            pipeline_id=pipeline_id,
            tenant_id=tenant_id,
            created_at=now.isoformat(),
            location=blob.location,
            checksum=blob.sha256,
            md5=blob.md5,
            state_checksum=captured_checksum,
            record_count=len(rows),
            size_bytes=blob.size_bytes,
            kind=kind,
            label=label,
            retain_until=(now + timedelta(days=self.retention_days)).isoformat(),
            encrypted=blob.encrypted,
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO snapshots
                (id, tenant_id, pipeline_id, kind, created_at, location, retain_until, payload)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    snapshot.snapshot_id,
                    tenant_id,
                    pipeline_id,
                    kind.value,
                    snapshot.created_at,
                    snapshot.location,
                    snapshot.retain_until,
                    json.dumps(snapshot.to_dict()),
                ),
            )
        logger.info(
            f"Created {kind.value} snapshot {snapshot.snapshot_id} "
            f"({snapshot.record_count} records, {snapshot.size_bytes} bytes)",
            extra={"pipeline_id": pipeline_id, "tenant_id": tenant_id},
        )
        return snapshot

    def _decode(self, stored: bytes, location: str) -> dict[str, Any]:
        try:
            return json.loads(self.storage.decode(stored, location))
        except ValueError as e:
            raise BackupError(f"Snapshot payload is not valid JSON: {e}") from e

    def get_snapshot(self, snapshot_id: str, tenant_id: str) -> Snapshot:
        """Get a snapshot by id within a tenant.

        Raises:
            NotFoundError: If the snapshot does not exist for the tenant
        """
        with self._connect() as conn:
            row = conn.execute(
                "SELECT payload FROM snapshots WHERE id = ? AND tenant_id = ?",
                (snapshot_id, tenant_id),
            ).fetchone()
        if row is None:
            raise NotFoundError(f"Snapshot not found: {snapshot_id}")
        return Snapshot.from_dict(json.loads(row["payload"]))

    def list_backups(self, pipeline_id: str, tenant_id: str) -> list[Snapshot]:
        """List a pipeline's snapshots, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT payload FROM snapshots
                WHERE pipeline_id = ? AND tenant_id = ?
                ORDER BY created_at DESC, rowid DESC
                """,
                (pipeline_id, tenant_id),
            ).fetchall()
        return [Snapshot.from_dict(json.loads(row["payload"])) for row in rows]

    def latest_at_or_before(
        self,
        pipeline_id: str,
        tenant_id: str,
        at: str | None = None,
        kinds: tuple[SnapshotKind, ...] = (SnapshotKind.FULL, SnapshotKind.CHECKPOINT),
    ) -> Snapshot | None:
        """Latest snapshot of the given kinds taken at or before ``at``."""
        for snapshot in self.list_backups(pipeline_id, tenant_id):
            if snapshot.kind not in kinds:
                continue
            if at is None or snapshot.created_at <= at:
                return snapshot
        return None

    def restore(
        self,
        snapshot_id: str,
        tenant_id: str,
        capture_current: bool = True,
    ) -> RestoreResult:
        """Restore the tenant's target-store state from a snapshot.

        The current state is captured first as a ``pre_restore`` snapshot, so
        a restore never destroys data that cannot itself be restored.

        Raises:
            NotFoundError: If the snapshot does not exist for the tenant
            BackupError: If the blob fails verification or the restored state
                does not match the snapshot
        """
        snapshot = self.get_snapshot(snapshot_id, tenant_id)
        started_at = datetime.now(timezone.utc).isoformat()
        checks: list[dict[str, Any]] = []

        stored = self.storage.read(snapshot.location)
        sha256, md5 = digests(stored)
        blob_ok = sha256 == snapshot.checksum and md5 == snapshot.md5
        checks.append({"check": "blob_checksum", "passed": blob_ok})
        if not blob_ok:
            raise BackupError(
                f"Snapshot {snapshot_id} failed checksum verification",
                pipeline_id=snapshot.pipeline_id,
            )

        rows = self._decode(stored, snapshot.location)["rows"]
        if state_checksum(rows) != snapshot.state_checksum:
            raise BackupError(
                f"Snapshot {snapshot_id} payload does not match its state checksum",
                pipeline_id=snapshot.pipeline_id,
            )

        pre_restore_id = None
        if capture_current:
            pre_restore_id = self.create_snapshot(
                snapshot.pipeline_id,
                tenant_id,
                kind=SnapshotKind.PRE_RESTORE,
                label=f"before restore of {snapshot_id}",
            ).snapshot_id

        try:
            self.store.replace_all(tenant_id, rows)
        except MigrationError as e:
            raise BackupError(
                f"Restore of {snapshot_id} failed: {e.message}",
                pipeline_id=snapshot.pipeline_id,
            ) from e

        restored_checksum = self.store.checksum(tenant_id)
        match = restored_checksum == snapshot.state_checksum
        checks.append({"check": "state_checksum", "passed": match})
        checks.append(
            {
                "check": "record_count",
                "passed": self.store.count(tenant_id) == snapshot.record_count,
            }
        )
        if not match:
            raise BackupError(
                f"Restored state does not match snapshot {snapshot_id}",
                pipeline_id=snapshot.pipeline_id,
            )

        result = RestoreResult(
            restore_id=str(uuid.uuid4()),
            snapshot_id=snapshot_id,
            pipeline_id=snapshot.pipeline_id,
            tenant_id=tenant_id,
            records_restored=len(rows),
            state_checksum=restored_checksum,
            checksum_match=match,
            started_at=started_at,
            completed_at=datetime.now(timezone.utc).isoformat(),
            pre_restore_snapshot_id=pre_restore_id,
            integrity_checks=checks,
        )
        logger.info(
            f"Restored snapshot {snapshot_id} ({len(rows)} records)",
            extra={"pipeline_id": snapshot.pipeline_id, "tenant_id": tenant_id},
        )
        return result

    def apply_retention(
        self,
        is_terminal: Callable[[str, str], bool],
        now: datetime | None = None,
    ) -> dict[str, int]:
        """Delete expired snapshots of finished pipelines.

        Args:
            is_terminal: Called with (pipeline_id, tenant_id); snapshots of
                pipelines that are still running are never deleted
            now: Current time (defaults to UTC now)

        Returns:
            Counts of deleted snapshots and reclaimed bytes
        """
        cutoff = (now or datetime.now(timezone.utc)).isoformat()
        with self._connect() as conn:
            expired = conn.execute(
                """
                SELECT id, tenant_id, pipeline_id, location FROM snapshots
                WHERE retain_until IS NOT NULL AND retain_until < ?
                """,
                (cutoff,),
            ).fetchall()

        deleted = reclaimed = 0
        for row in expired:
            if not is_terminal(row["pipeline_id"], row["tenant_id"]):
                continue
            with self._connect() as conn:
                conn.execute("DELETE FROM snapshots WHERE id = ?", (row["id"],))
                shared = conn.execute(
                    "SELECT COUNT(*) FROM snapshots WHERE location = ?", (row["location"],)
                ).fetchone()[0]
            if not shared:
                reclaimed += self.storage.delete(row["location"])
            deleted += 1

        if deleted:
            logger.info(f"Retention removed {deleted} snapshot(s), reclaimed {reclaimed} bytes")
        return {"deleted_snapshots": deleted, "reclaimed_bytes": reclaimed}

    def test_restore_cycle(self, pipeline_id: str, tenant_id: str) -> RestoreCycleReport:
        """Run backup, simulated corruption, restore and verify on a scratch copy.

        The tenant's live state is copied into a throwaway store; the live
        store and the snapshot catalogue are never touched.
        """
        report = RestoreCycleReport(pipeline_id=pipeline_id)
        live_checksum = self.store.checksum(tenant_id)

        with tempfile.TemporaryDirectory(prefix="restore-drill-") as scratch_dir:
            scratch_root = Path(scratch_dir)
            scratch_store = TargetStore(str(scratch_root / "target.db"))
            scratch_store.replace_all(tenant_id, self.store.dump(tenant_id))
            scratch = BackupService(
                BlobStorage(scratch_root / "blobs", encryption_key=self.storage.encryption_key),
                scratch_store,
                str(scratch_root / "catalogue.db"),
                retention_days=self.retention_days,
                min_free_bytes=self.min_free_bytes,
            )

            snapshot = None
            started = time.monotonic()
            try:
                snapshot = scratch.create_snapshot(pipeline_id, tenant_id, label="restore drill")
                report.backup_test = PhaseResult(
                    success=True,
                    details={
                        "snapshot_id": snapshot.snapshot_id,
                        "size_bytes": snapshot.size_bytes,
                        "record_count": snapshot.record_count,
                    },
                )
            except BackupError as e:
                report.backup_test = PhaseResult(error=e.message)
            report.backup_test.duration_ms = (time.monotonic() - started) * 1000
            if snapshot is None:
                return report

            self._corrupt(scratch_store, tenant_id, pipeline_id)
            corrupted_checksum = scratch_store.checksum(tenant_id)

            started = time.monotonic()
            try:
                result = scratch.restore(snapshot.snapshot_id, tenant_id, capture_current=False)
                report.restore_test = PhaseResult(
                    success=result.success,
                    details={"records_restored": result.records_restored},
                )
            except BackupError as e:
                report.restore_test = PhaseResult(error=e.message)
            report.restore_test.duration_ms = (time.monotonic() - started) * 1000

            started = time.monotonic()
            restored_checksum = scratch_store.checksum(tenant_id)
            checksum_match = restored_checksum == snapshot.state_checksum
            report.integrity_test = PhaseResult(
                success=checksum_match
                and restored_checksum == live_checksum
                and corrupted_checksum != restored_checksum,
                details={
                    "checksum_match": checksum_match,
                    "corruption_detected": corrupted_checksum != snapshot.state_checksum,
                    "matches_live_state": restored_checksum == live_checksum,
                },
                duration_ms=(time.monotonic() - started) * 1000,
            )

        logger.info(
            f"Restore drill for {pipeline_id}: {'passed' if report.success else 'failed'}",
            extra={"pipeline_id": pipeline_id, "tenant_id": tenant_id},
        )
        return report

    @staticmethod
    def _corrupt(store: TargetStore, tenant_id: str, pipeline_id: str) -> None:
        """Damage a scratch store: alter one record and add a stray one."""
        rows = store.dump(tenant_id)
        if rows:
            rows[0]["payload"] = {**rows[0]["payload"], "__corrupted__": True}
        rows.append(
            {
                "record_key": f"corruption:{uuid.uuid4()}",
                "pipeline_id": pipeline_id,
                "batch_id": "corruption",
                "payload": {"__corrupted__": True},
            }
        )
        store.replace_all(tenant_id, rows)
