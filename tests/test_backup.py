"""Tests for the target store, snapshots and rollback."""

from __future__ import annotations

import gzip
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from cryptography.fernet import Fernet

from backup import BackupService, BlobStorage, SnapshotKind
from conftest import make_residents
from errors import BackupError, CancellationRequested, NotFoundError
from store import TargetStore

TENANT = "oakwood"
PIPELINE = "pipe-1"


def _write(store: TargetStore, start: int, count: int, batch_id: str = "batch-00000") -> None:
    records = make_residents(count, start=start)
    store.write_batch(
        TENANT,
        PIPELINE,
        batch_id,
        [(f"src:export.csv:{start + i}", record) for i, record in enumerate(records)],
    )


class TestTargetStore:
    """Test the tenant-partitioned record store."""

    def test_rewrite_replaces_rows(self, target_store: TargetStore):
        """Test re-writing a batch after a resume does not duplicate records."""
        _write(target_store, 0, 5)
        _write(target_store, 0, 5)

        assert target_store.count(TENANT) == 5
        assert target_store.count(TENANT, PIPELINE) == 5

    def test_tenants_are_partitioned(self, target_store: TargetStore):
        """Test one tenant never sees another tenant's rows."""
        _write(target_store, 0, 3)

        assert target_store.count("riverside") == 0
        assert target_store.dump("riverside") == []
        assert target_store.get("riverside", "src:export.csv:0") is None
        assert target_store.get(TENANT, "src:export.csv:0")["resident_id"] == "R00000"

    def test_checksum_ignores_write_times(self, target_store: TargetStore):
        """Test the state checksum depends only on keys and payloads."""
        _write(target_store, 0, 3)
        before = target_store.checksum(TENANT)

        _write(target_store, 0, 3, batch_id="batch-00009")

        assert target_store.checksum(TENANT) == before

    def test_resident_ids(self, target_store: TargetStore):
        """Test existing resident ids are listed for orphan checks."""
        _write(target_store, 0, 2)

        assert target_store.resident_ids(TENANT) == {"R00000", "R00001"}

    def test_aborted_write_is_rolled_back(self, target_store: TargetStore):
        """Test a write asked to abort before commit leaves nothing behind."""
        _write(target_store, 0, 2)
        records = [(f"src:export.csv:{2 + i}", r) for i, r in enumerate(make_residents(5, start=2))]

        with pytest.raises(CancellationRequested, match="rolled back"):
            target_store.write_batch(
                TENANT, PIPELINE, "batch-00001", records, should_abort=lambda: True
            )

        assert target_store.count(TENANT) == 2
        assert target_store.write_batch(
            TENANT, PIPELINE, "batch-00001", records, should_abort=lambda: False
        ) == 5


class TestSnapshots:
    """Test snapshot creation and restore."""

    def test_snapshot_is_verified_and_listed(self, backup_service: BackupService, target_store: TargetStore):
        """Test a snapshot records checksums and appears in the pipeline's backups."""
        _write(target_store, 0, 4)

        snapshot = backup_service.create_snapshot(PIPELINE, TENANT)

        assert snapshot.record_count == 4
        assert snapshot.state_checksum == target_store.checksum(TENANT)
        assert len(snapshot.checksum) == 64
        assert Path(snapshot.location).exists()
        assert [s.snapshot_id for s in backup_service.list_backups(PIPELINE, TENANT)] == [
            snapshot.snapshot_id
        ]

    def test_restore_returns_to_snapshot_state(self, backup_service: BackupService, target_store: TargetStore):
        """Test restoring a snapshot reproduces exactly the captured state."""
        snapshot = backup_service.create_snapshot(PIPELINE, TENANT)
        _write(target_store, 0, 10)

        result = backup_service.restore(snapshot.snapshot_id, TENANT)

        assert result.success
        assert result.records_restored == 0
        assert target_store.count(TENANT) == 0
        assert target_store.checksum(TENANT) == snapshot.state_checksum

    def test_restore_captures_current_state_first(self, backup_service: BackupService, target_store: TargetStore):
        """Test the state replaced by a restore can itself be restored."""
        snapshot = backup_service.create_snapshot(PIPELINE, TENANT)
        _write(target_store, 0, 6)
        migrated = target_store.checksum(TENANT)

        result = backup_service.restore(snapshot.snapshot_id, TENANT)
        pre_restore = backup_service.get_snapshot(result.pre_restore_snapshot_id, TENANT)
        backup_service.restore(pre_restore.snapshot_id, TENANT)

        assert pre_restore.kind == SnapshotKind.PRE_RESTORE
        assert pre_restore.record_count == 6
        assert target_store.checksum(TENANT) == migrated

    def test_tampered_blob_is_refused(self, backup_service: BackupService, target_store: TargetStore):
        """Test a blob whose bytes changed fails verification and changes nothing."""
        _write(target_store, 0, 3)
        snapshot = backup_service.create_snapshot(PIPELINE, TENANT)
        _write(target_store, 3, 2)
        Path(snapshot.location).write_bytes(b"not the snapshot")

        with pytest.raises(BackupError, match="checksum"):
            backup_service.restore(snapshot.snapshot_id, TENANT)

        assert target_store.count(TENANT) == 5

    def test_insufficient_storage(self, tmp_path: Path, db_path: str, target_store: TargetStore):
        """Test a snapshot is refused when storage is short."""
        service = BackupService(
            BlobStorage(tmp_path / "small"), target_store, db_path, min_free_bytes=2**62
        )

        with pytest.raises(BackupError, match="Insufficient storage"):
            service.create_snapshot(PIPELINE, TENANT)

    def test_other_tenant_cannot_restore(self, backup_service: BackupService):
        """Test snapshots are only visible to their own tenant."""
        snapshot = backup_service.create_snapshot(PIPELINE, TENANT)

        with pytest.raises(NotFoundError):
            backup_service.restore(snapshot.snapshot_id, "riverside")
        assert backup_service.list_backups(PIPELINE, "riverside") == []

    def test_latest_at_or_before(self, backup_service: BackupService, target_store: TargetStore):
        """Test point-in-time lookup picks the newest snapshot not after the time."""
        first = backup_service.create_snapshot(PIPELINE, TENANT)
        _write(target_store, 0, 2)
        second = backup_service.create_snapshot(PIPELINE, TENANT, kind=SnapshotKind.CHECKPOINT)

        assert backup_service.latest_at_or_before(PIPELINE, TENANT).snapshot_id == second.snapshot_id
        assert (
            backup_service.latest_at_or_before(PIPELINE, TENANT, at=first.created_at).snapshot_id
            == first.snapshot_id
        )
        assert backup_service.latest_at_or_before(PIPELINE, TENANT, at="2000-01-01T00:00:00") is None


class TestRetention:
    """Test snapshot expiry."""

    def test_expired_snapshots_of_finished_pipelines(self, tmp_path: Path, db_path: str, target_store: TargetStore):
        """Test expired snapshots are deleted only once their pipeline has finished."""
        service = BackupService(
            BlobStorage(tmp_path / "blobs"), target_store, db_path, retention_days=0, min_free_bytes=0
        )
        snapshot = service.create_snapshot(PIPELINE, TENANT)
        later = datetime.now(timezone.utc) + timedelta(days=1)

        kept = service.apply_retention(lambda pipeline_id, tenant_id: False, now=later)
        assert kept["deleted_snapshots"] == 0

        removed = service.apply_retention(lambda pipeline_id, tenant_id: True, now=later)
        assert removed["deleted_snapshots"] == 1
        assert removed["reclaimed_bytes"] > 0
        assert not Path(snapshot.location).exists()

    def test_shared_blobs_survive(self, tmp_path: Path, db_path: str, target_store: TargetStore):
        """Test a blob still referenced by a live snapshot is not deleted."""
        service = BackupService(
            BlobStorage(tmp_path / "blobs"), target_store, db_path, retention_days=0, min_free_bytes=0
        )
        expiring = service.create_snapshot("old-pipeline", TENANT)
        service.retention_days = 30
        service.create_snapshot("old-pipeline", TENANT)
        later = datetime.now(timezone.utc) + timedelta(days=1)

        removed = service.apply_retention(lambda pipeline_id, tenant_id: True, now=later)

        assert removed["deleted_snapshots"] == 1
        assert Path(expiring.location).exists()


class TestRestoreCycle:
    """Test the backup, corruption, restore and verify drill."""

    def test_drill_passes_all_phases(self, backup_service: BackupService, target_store: TargetStore):
        """Test the drill reports success for backup, restore and integrity."""
        _write(target_store, 0, 25)

        report = backup_service.test_restore_cycle(PIPELINE, TENANT)

        assert report.backup_test.success
        assert report.restore_test.success
        assert report.integrity_test.success
        assert report.success
        assert report.integrity_test.details["corruption_detected"]
        assert report.to_dict()["success"] is True

    def test_drill_leaves_live_state_alone(self, backup_service: BackupService, target_store: TargetStore):
        """Test the drill never touches the live store or snapshot catalogue."""
        _write(target_store, 0, 5)
        live = target_store.checksum(TENANT)

        backup_service.test_restore_cycle(PIPELINE, TENANT)

        assert target_store.checksum(TENANT) == live
        assert backup_service.list_backups(PIPELINE, TENANT) == []


class TestEncryptedSnapshots:
    """Test snapshot blobs encrypted with a configured key."""

    @pytest.fixture
    def key(self) -> str:
        return Fernet.generate_key().decode()

    def _service(self, tmp_path: Path, db_path: str, store: TargetStore, key: str | None) -> BackupService:
        return BackupService(
            BlobStorage(tmp_path / "backups", encryption_key=key), store, db_path, min_free_bytes=0
        )

    def test_blob_is_unreadable_without_the_key(
        self, tmp_path: Path, db_path: str, target_store: TargetStore, key: str
    ):
        """Test an encrypted snapshot holds no resident data in the clear and restores."""
        service = self._service(tmp_path, db_path, target_store, key)
        _write(target_store, 0, 4)

        snapshot = service.create_snapshot(PIPELINE, TENANT)
        _write(target_store, 4, 3)

        assert snapshot.encrypted
        assert snapshot.location.endswith(".enc")
        stored = Path(snapshot.location).read_bytes()
        with pytest.raises(OSError):
            gzip.decompress(stored)
        assert b"R00000" not in stored

        result = service.restore(snapshot.snapshot_id, TENANT)

        assert result.success
        assert target_store.count(TENANT) == 4
        assert target_store.checksum(TENANT) == snapshot.state_checksum

    def test_wrong_key_is_refused(
        self, tmp_path: Path, db_path: str, target_store: TargetStore, key: str
    ):
        """Test a blob cannot be restored with a different key, and nothing changes."""
        _write(target_store, 0, 4)
        snapshot = self._service(tmp_path, db_path, target_store, key).create_snapshot(
            PIPELINE, TENANT
        )
        _write(target_store, 4, 2)
        other = self._service(tmp_path, db_path, target_store, Fernet.generate_key().decode())

        with pytest.raises(BackupError, match="decrypted"):
            other.restore(snapshot.snapshot_id, TENANT)
        assert target_store.count(TENANT) == 6

        unkeyed = self._service(tmp_path, db_path, target_store, None)
        with pytest.raises(BackupError, match="no encryption key"):
            unkeyed.restore(snapshot.snapshot_id, TENANT)

    def test_plain_blobs_stay_readable_after_keying(
        self, tmp_path: Path, db_path: str, target_store: TargetStore, key: str
    ):
        """Test snapshots taken before a key was configured can still be restored."""
        _write(target_store, 0, 2)
        plain = self._service(tmp_path, db_path, target_store, None).create_snapshot(
            PIPELINE, TENANT
        )
        _write(target_store, 2, 2)

        result = self._service(tmp_path, db_path, target_store, key).restore(
            plain.snapshot_id, TENANT
        )

        assert not plain.encrypted
        assert result.success
        assert target_store.count(TENANT) == 2

    def test_invalid_key(self, tmp_path: Path):
        """Test a malformed key is refused up front."""
        with pytest.raises(BackupError, match="Invalid snapshot encryption key"):
            BlobStorage(tmp_path / "backups", encryption_key="not-a-fernet-key")

    def test_drill_with_encryption(
        self, tmp_path: Path, db_path: str, target_store: TargetStore, key: str
    ):
        """Test the restore drill passes against encrypted blobs."""
        _write(target_store, 0, 10)

        report = self._service(tmp_path, db_path, target_store, key).test_restore_cycle(
            PIPELINE, TENANT
        )

        assert report.success
