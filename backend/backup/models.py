"""Backup and restore data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class SnapshotKind(str, Enum):
    FULL = "full"
    CHECKPOINT = "checkpoint"
    PRE_RESTORE = "pre_restore"


@dataclass(frozen=True)
class Snapshot:
    """Immutable record of one captured target-store state.

    ``checksum`` is the sha256 of the stored (compressed) payload; ``md5`` is
    kept alongside it for external tooling. ``state_checksum`` is the checksum
    of the captured records themselves and is what a restore is verified
    against. ``encrypted`` records whether the blob is Fernet-encrypted.
    """

    snapshot_id: str
    pipeline_id: str
    tenant_id: str
    created_at: str
    location: str
    checksum: str
    md5: str
    state_checksum: str
    record_count: int
    size_bytes: int
    kind: SnapshotKind = SnapshotKind.FULL
    label: str | None = None
    retain_until: str | None = None
    encrypted: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "snapshot_id": self.snapshot_id,
            "pipeline_id": self.pipeline_id,
            "tenant_id": self.tenant_id,
            "created_at": self.created_at,
            "location": self.location,
            "checksum": self.checksum,
            "md5": self.md5,
            "state_checksum": self.state_checksum,
            "record_count": self.record_count,
            "size_bytes": self.size_bytes,
            "kind": self.kind.value,
            "label": self.label,
            "retain_until": self.retain_until,
            "encrypted": self.encrypted,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Snapshot":
        return cls(**{**data, "kind": SnapshotKind(data["kind"])})


@dataclass
class RestoreResult:
    restore_id: str
    snapshot_id: str
    pipeline_id: str
    tenant_id: str
    records_restored: int
    state_checksum: str
    checksum_match: bool
    started_at: str
    completed_at: str
    pre_restore_snapshot_id: str | None = None
    integrity_checks: list[dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.checksum_match and all(c["passed"] for c in self.integrity_checks)

    def to_dict(self) -> dict[str, Any]:
        return {
            "restore_id": self.restore_id,
            "snapshot_id": self.snapshot_id,
            "pipeline_id": self.pipeline_id,
            "tenant_id": self.tenant_id,
            "records_restored": self.records_restored,
            "state_checksum": self.state_checksum,
            "checksum_match": self.checksum_match,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "pre_restore_snapshot_id": self.pre_restore_snapshot_id,
            "integrity_checks": self.integrity_checks,
            "success": self.success,
        }


@dataclass
class PhaseResult:
    success: bool = False
    duration_ms: float = 0.0
    details: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "duration_ms": round(self.duration_ms, 2),
            "details": self.details,
            "error": self.error,
        }


@dataclass
class RestoreCycleReport:
    """Outcome of a backup, corruption, restore and verify drill."""

    pipeline_id: str
    backup_test: PhaseResult = field(default_factory=PhaseResult)
    restore_test: PhaseResult = field(default_factory=PhaseResult)
    integrity_test: PhaseResult = field(default_factory=PhaseResult)

    @property
    def success(self) -> bool:
        return self.backup_test.success and self.restore_test.success and self.integrity_test.success

    def to_dict(self) -> dict[str, Any]:
        return {
            "pipeline_id": self.pipeline_id,
            "backup_test": self.backup_test.to_dict(),
            "restore_test": self.restore_test.to_dict(),
            "integrity_test": self.integrity_test.to_dict(),
            "success": self.success,
        }
