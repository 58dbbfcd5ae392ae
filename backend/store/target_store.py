"""Target record store for migrated resident records.

Records are keyed by (tenant, provenance key), so re-writing a batch after a
resume replaces rows instead of duplicating them. Each batch is written in a
single transaction.

Usage:
    store = TargetStore(db_path)
    store.write_batch(tenant_id, pipeline_id, batch_id, [(key, record), ...])
    rows = store.dump(tenant_id)
"""

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
from collections.abc import Callable
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

from errors import CancellationRequested, WriteError

logger = logging.getLogger(__name__)


class TargetStore:
    """SQLite-backed store of migrated records, partitioned by tenant.

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
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS target_records (
                    tenant_id TEXT NOT NULL,
                    record_key TEXT NOT NULL,
                    pipeline_id TEXT,
                    batch_id TEXT,
                    payload TEXT NOT NULL,
                    written_at TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, record_key)
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_target_records_pipeline
                ON target_records(tenant_id, pipeline_id)
            """)

    def write_batch(
        self,
        tenant_id: str,
        pipeline_id: str,
        batch_id: str,
        records: list[tuple[str, dict[str, Any]]],
        should_abort: Callable[[], bool] | None = None,
    ) -> int:
        """Write a batch of records atomically.

        Args:
            tenant_id: Tenant that owns the records
            pipeline_id: Pipeline writing the batch
            batch_id: Batch identifier
            records: (provenance key, canonical record) pairs
            should_abort: Checked after the rows are staged and before the
                transaction commits; a True result rolls the batch back

        Returns:
            Number of records written

        Raises:
            WriteError: If the batch could not be committed; nothing is written
            CancellationRequested: If should_abort asked for a rollback
        """
        now = datetime.now(timezone.utc).isoformat()
        try:
            with self._connect() as conn:
                conn.executemany(
                    """
                    INSERT OR REPLACE INTO target_records
                    (tenant_id, record_key, pipeline_id, batch_id, payload, written_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (tenant_id, key, pipeline_id, batch_id, json.dumps(record, sort_keys=True), now)
                        for key, record in records
                    ],
                )
                if should_abort is not None and should_abort():
                    raise CancellationRequested(
                        f"Write of batch {batch_id} cancelled; transaction rolled back",
                        pipeline_id=pipeline_id,
                        batch_id=batch_id,
                    )
        except sqlite3.Error as e:
            raise WriteError(
                f"Failed to write batch {batch_id}: {e}",
                pipeline_id=pipeline_id,
                batch_id=batch_id,
            ) from e
        logger.debug(f"Wrote {len(records)} record(s) for batch {batch_id}")
        return len(records)

    def get(self, tenant_id: str, record_key: str) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT payload FROM target_records WHERE tenant_id = ? AND record_key = ?",
                (tenant_id, record_key),
            ).fetchone()
        return json.loads(row["payload"]) if row else None

    def count(self, tenant_id: str, pipeline_id: str | None = None) -> int:
        query = "SELECT COUNT(*) FROM target_records WHERE tenant_id = ?"
        params: tuple[Any, ...] = (tenant_id,)
        if pipeline_id is not None:
            query += " AND pipeline_id = ?"
            params += (pipeline_id,)
        with self._connect() as conn:
            return conn.execute(query, params).fetchone()[0]

    def record_keys(self, tenant_id: str, pipeline_id: str | None = None) -> set[str]:
        query = "SELECT record_key FROM target_records WHERE tenant_id = ?"
        params: tuple[Any, ...] = (tenant_id,)
        if pipeline_id is not None:
            query += " AND pipeline_id = ?"
            params += (pipeline_id,)
        with self._connect() as conn:
            return {row["record_key"] for row in conn.execute(query, params)}

    def resident_ids(self, tenant_id: str) -> set[str]:
        """Resident ids already present for the tenant."""
        ids = set()
        for row in self.dump(tenant_id):
            resident_id = row["payload"].get("resident_id")
            if resident_id:
                ids.add(str(resident_id))
        return ids

    def dump(self, tenant_id: str) -> list[dict[str, Any]]:
        """All of a tenant's rows, ordered by record key."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT record_key, pipeline_id, batch_id, payload, written_at
                FROM target_records WHERE tenant_id = ?
                ORDER BY record_key
                """,
                (tenant_id,),
            ).fetchall()
        return [
            {
                "record_key": row["record_key"],
                "pipeline_id": row["pipeline_id"],
                "batch_id": row["batch_id"],
                "payload": json.loads(row["payload"]),
                "written_at": row["written_at"],
            }
            for row in rows
        ]

    def replace_all(self, tenant_id: str, rows: list[dict[str, Any]]) -> None:
        """Replace a tenant's entire state with ``rows`` in one transaction.

        Raises:
            WriteError: If the replacement could not be committed
        """
        try:
            with self._connect() as conn:
                conn.execute("DELETE FROM target_records WHERE tenant_id = ?", (tenant_id,))
                conn.executemany(
                    """
                    INSERT INTO target_records
                    (tenant_id, record_key, pipeline_id, batch_id, payload, written_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            tenant_id,
                            row["record_key"],
                            row.get("pipeline_id"),
                            row.get("batch_id"),
                            json.dumps(row["payload"], sort_keys=True),
                            row.get("written_at") or datetime.now(timezone.utc).isoformat(),
                        )
                        for row in rows
                    ],
                )
        except sqlite3.Error as e:
            raise WriteError(f"Failed to replace state for tenant {tenant_id}: {e}") from e

    def checksum(self, tenant_id: str) -> str:
        return state_checksum(self.dump(tenant_id))


def state_checksum(rows: list[dict[str, Any]]) -> str:
    """sha256 over record keys and payloads, independent of write times."""
    digest = hashlib.sha256()
    for row in sorted(rows, key=lambda r: r["record_key"]):
        digest.update(row["record_key"].encode("utf-8"))
        digest.update(b"\x00")
        digest.update(json.dumps(row["payload"], sort_keys=True).encode("utf-8"))
        digest.update(b"\n")
    return digest.hexdigest()
