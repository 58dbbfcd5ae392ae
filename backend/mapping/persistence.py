"""Persistence layer for field mapping history.

Stores proposed mappings, the feedback operators give on them, and the
confidence adjustments learned from that feedback. Every adjustment is scoped
to one (tenant, source-system type) pair; nothing here is process-wide, and
feedback from one tenant never changes another tenant's scores.

Usage:
    store = MappingHistoryStore(db_path)
    store.save_mappings(proposal.mappings + proposal.alternates)
    adjustments = store.get_adjustments(tenant_id, "care_systems_uk")
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterator

from .models import FieldMapping, MappingStatus

logger = logging.getLogger(__name__)

# Learned adjustments never move a score by more than this
MAX_ADJUSTMENT = 0.9


class MappingAction(str, Enum):
    """Actions recorded in the mapping audit log."""

    PROPOSED = "proposed"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CORRECTED = "corrected"
    APPROVED = "approved"


@dataclass
class Adjustment:
    """Learned confidence adjustment for one source field and target."""

    source_key: str
    target_field: str
    delta: float = 0.0
    learned_alias: bool = False


@dataclass
class AuditLogEntry:
    """An audit log entry for mapping feedback."""

    id: str
    mapping_id: str
    action: MappingAction
    timestamp: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "mapping_id": self.mapping_id,
            "action": self.action.value,
            "timestamp": self.timestamp,
            "details": self.details,
        }


class MappingHistoryStore:
    """Storage for mapping proposals, feedback and learned adjustments.

    Attributes:
        db_path: Path to the SQLite database
    """

    def __init__(self, db_path: str) -> None:
        """Initialize the mapping history store.

        Args:
            db_path: Path to SQLite database file
        """
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
                CREATE TABLE IF NOT EXISTS field_mappings (
                    id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    source_system_type TEXT NOT NULL,
                    pipeline_id TEXT,
                    source_field TEXT NOT NULL,
                    target_field TEXT NOT NULL,
                    confidence REAL NOT NULL,
                    status TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS mapping_adjustments (
                    tenant_id TEXT NOT NULL,
                    source_system_type TEXT NOT NULL,
                    source_key TEXT NOT NULL,
                    target_field TEXT NOT NULL,
                    delta REAL NOT NULL DEFAULT 0,
                    learned_alias INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, source_system_type, source_key, target_field)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS mapping_audit_log (
                    id TEXT PRIMARY KEY,
                    mapping_id TEXT NOT NULL,
                    tenant_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    details TEXT
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_field_mappings_pipeline
                ON field_mappings(tenant_id, pipeline_id)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_audit_mapping
                ON mapping_audit_log(mapping_id, timestamp DESC)
            """)

    def save_mappings(
        self, mappings: list[FieldMapping], pipeline_id: str | None = None
    ) -> None:
        """Save proposed mappings and log their proposal.

        Raises:
            ValueError: If a mapping has no tenant or source-system type
        """
        now = datetime.now(timezone.utc).isoformat()
        with self._connect() as conn:
            for mapping in mappings:
                if not mapping.tenant_id or not mapping.source_system_type:
                    raise ValueError(
                        f"Mapping {mapping.mapping_id} has no tenant or source system type"
                    )
                conn.execute(
                    """
                    INSERT OR REPLACE INTO field_mappings
                    (id, tenant_id, source_system_type, pipeline_id, source_field,
                     target_field, confidence, status, payload, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        mapping.mapping_id,
                        mapping.tenant_id,
                        mapping.source_system_type,
                        pipeline_id,
                        mapping.source_field,
                        mapping.target_field,
                        mapping.confidence,
                        mapping.status.value,
                        json.dumps(mapping.to_dict()),
                        mapping.created_at,
                        now,
                    ),
                )
                self._log(
                    conn,
                    mapping.mapping_id,
                    mapping.tenant_id,
                    MappingAction.PROPOSED,
                    {"target_field": mapping.target_field, "confidence": mapping.confidence},
                )

    def get_mapping(self, mapping_id: str, tenant_id: str) -> FieldMapping | None:
        """Get a mapping by id within a tenant."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT payload, status FROM field_mappings WHERE id = ? AND tenant_id = ?",
                (mapping_id, tenant_id),
            ).fetchone()
        if row is None:
            return None
        mapping = FieldMapping.from_dict(json.loads(row["payload"]))
        mapping.status = MappingStatus(row["status"])
        return mapping

    def get_pipeline_id(self, mapping_id: str, tenant_id: str) -> str | None:
        """Pipeline a mapping was proposed for, if any."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT pipeline_id FROM field_mappings WHERE id = ? AND tenant_id = ?",
                (mapping_id, tenant_id),
            ).fetchone()
        return row["pipeline_id"] if row else None

    def list_mappings(
        self,
        tenant_id: str,
        pipeline_id: str,
        statuses: tuple[MappingStatus, ...] | None = None,
    ) -> list[FieldMapping]:
        """List the mappings proposed for a pipeline."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT payload, status FROM field_mappings
                WHERE tenant_id = ? AND pipeline_id = ?
                ORDER BY created_at, source_field
                """,
                (tenant_id, pipeline_id),
            ).fetchall()

        mappings = []
        for row in rows:
            mapping = FieldMapping.from_dict(json.loads(row["payload"]))
            mapping.status = MappingStatus(row["status"])
            if statuses is None or mapping.status in statuses:
                mappings.append(mapping)
        return mappings

    def update_status(
        self,
        mapping_id: str,
        tenant_id: str,
        status: MappingStatus,
        action: MappingAction,
        details: dict[str, Any] | None = None,
    ) -> bool:
        """Update a mapping's status and record the action.

        Returns:
            True if the mapping exists for the tenant
        """
        now = datetime.now(timezone.utc).isoformat()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE field_mappings SET status = ?, updated_at = ?
                WHERE id = ? AND tenant_id = ?
                """,
                (status.value, now, mapping_id, tenant_id),
            )
            if cursor.rowcount == 0:
                return False
            self._log(conn, mapping_id, tenant_id, action, details or {})
        return True

    def get_adjustments(
        self, tenant_id: str, source_system_type: str
    ) -> dict[tuple[str, str], Adjustment]:
        """Get learned adjustments for one tenant and source-system type."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT source_key, target_field, delta, learned_alias
                FROM mapping_adjustments
                WHERE tenant_id = ? AND source_system_type = ?
                """,
                (tenant_id, source_system_type),
            ).fetchall()
        return {
            (row["source_key"], row["target_field"]): Adjustment(
                source_key=row["source_key"],
                target_field=row["target_field"],
                delta=row["delta"],
                learned_alias=bool(row["learned_alias"]),
            )
            for row in rows
        }

    def adjust(
        self,
        tenant_id: str,
        source_system_type: str,
        source_key: str,
        target_field: str,
        delta: float,
        learned_alias: bool = False,
    ) -> Adjustment:
        """Add ``delta`` to the stored adjustment for a source field and target."""
        now = datetime.now(timezone.utc).isoformat()
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT delta, learned_alias FROM mapping_adjustments
                WHERE tenant_id = ? AND source_system_type = ?
                  AND source_key = ? AND target_field = ?
                """,
                (tenant_id, source_system_type, source_key, target_field),
            ).fetchone()
            current = row["delta"] if row else 0.0
            alias = learned_alias or (bool(row["learned_alias"]) if row else False)
            new_delta = max(-MAX_ADJUSTMENT, min(MAX_ADJUSTMENT, current + delta))
            conn.execute(
                """
                INSERT OR REPLACE INTO mapping_adjustments
                (tenant_id, source_system_type, source_key, target_field,
                 delta, learned_alias, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    tenant_id,
                    source_system_type,
                    source_key,
                    target_field,
                    new_delta,
                    int(alias),
                    now,
                ),
            )
        logger.info(
            f"Adjusted {source_key}->{target_field} for {tenant_id}/{source_system_type} "
            f"by {delta:+.2f} (now {new_delta:+.2f})"
        )
        return Adjustment(source_key, target_field, new_delta, alias)

    def get_audit_log(self, mapping_id: str, tenant_id: str) -> list[AuditLogEntry]:
        """Get the audit trail for a mapping, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, mapping_id, action, timestamp, details
                FROM mapping_audit_log
                WHERE mapping_id = ? AND tenant_id = ?
                ORDER BY timestamp DESC
                """,
                (mapping_id, tenant_id),
            ).fetchall()
        return [
            AuditLogEntry(
                id=row["id"],
                mapping_id=row["mapping_id"],
                action=MappingAction(row["action"]),
                timestamp=row["timestamp"],
                details=json.loads(row["details"]) if row["details"] else {},
            )
            for row in rows
        ]

    def _log(
        self,
        conn: sqlite3.Connection,
        mapping_id: str,
        tenant_id: str,
        action: MappingAction,
        details: dict[str, Any],
    ) -> None:
        conn.execute(
            """
            INSERT INTO mapping_audit_log (id, mapping_id, tenant_id, action, timestamp, details)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                str(uuid.uuid4()),
                mapping_id,
                tenant_id,
                action.value,
                datetime.now(timezone.utc).isoformat(),
                json.dumps(details),
            ),
        )
