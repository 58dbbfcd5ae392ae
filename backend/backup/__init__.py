"""Backup and rollback for the migration target store.

Usage:
    from backup import BackupService, BlobStorage

    backups = BackupService(BlobStorage(BACKUP_DIR), target_store, DB_PATH)
    snapshot = backups.create_snapshot(pipeline_id, tenant_id)
    backups.restore(snapshot.snapshot_id, tenant_id)
"""

from .models import PhaseResult, RestoreCycleReport, RestoreResult, Snapshot, SnapshotKind
from .service import BackupService
from .storage import BlobStorage, StoredBlob, digests

__all__ = [
    # Service
    "BackupService",
    # Storage
    "BlobStorage",
    "StoredBlob",
    "digests",
    # Models
    "PhaseResult",
    "RestoreCycleReport",
    "RestoreResult",
    "Snapshot",
    "SnapshotKind",
]
