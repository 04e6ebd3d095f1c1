from __future__ import annotations

import sqlite3
from typing import Any

from xero_sync.core.errors import PersistenceError
from xero_sync.domain.models import EntityType, SyncLogEntry, SyncStateRecord, SyncStatus
from xero_sync.domain.time_utils import to_iso, utc_now
from xero_sync.infrastructure.repos_sqlite import _execute_with_validation
from xero_sync.infrastructure.repos_sqlite_builders import json_to_db, row_to_sync_log, row_to_sync_state


class SQLiteSyncStateRepository:
    """One row per (entity_type, local_id); rows only ever change status, they are never deleted."""

    def __init__(self, connection: sqlite3.Connection) -> None:
        self._connection = connection

    def get(self, entity_type: EntityType, local_id: int) -> SyncStateRecord | None:
        row = self._connection.execute(
            "SELECT * FROM sync_state WHERE entity_type = ? AND local_id = ?",
            (entity_type.value, local_id),
        ).fetchone()
        return row_to_sync_state(row) if row else None

    def get_by_xero_id(self, entity_type: EntityType, xero_id: str) -> SyncStateRecord | None:
        row = self._connection.execute(
            "SELECT * FROM sync_state WHERE entity_type = ? AND xero_id = ?",
            (entity_type.value, xero_id),
        ).fetchone()
        return row_to_sync_state(row) if row else None

    def upsert(self, record: SyncStateRecord) -> SyncStateRecord:
        cursor = self._connection.cursor()
        params = [
            record.entity_type.value,
            record.local_id,
            record.xero_id,
            record.last_local_hash,
            record.last_remote_hash,
            to_iso(record.last_synced_at),
            to_iso(record.last_local_modified),
            to_iso(record.last_remote_modified),
            record.sync_origin.value if record.sync_origin else None,
            record.status.value,
            json_to_db(record.conflict_data),
            record.correlation_id,
            to_iso(utc_now()),
        ]
        try:
            _execute_with_validation(
                cursor,
                """
                INSERT INTO sync_state (
                    entity_type, local_id, xero_id, last_local_hash, last_remote_hash,
                    last_synced_at, last_local_modified, last_remote_modified,
                    sync_origin, status, conflict_data_json, correlation_id, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (entity_type, local_id) DO UPDATE SET
                    xero_id = excluded.xero_id,
                    last_local_hash = excluded.last_local_hash,
                    last_remote_hash = excluded.last_remote_hash,
                    last_synced_at = excluded.last_synced_at,
                    last_local_modified = excluded.last_local_modified,
                    last_remote_modified = excluded.last_remote_modified,
                    sync_origin = excluded.sync_origin,
                    status = excluded.status,
                    conflict_data_json = excluded.conflict_data_json,
                    correlation_id = excluded.correlation_id,
                    updated_at = excluded.updated_at
                """,
                params,
                "sync_state.upsert",
            )
        except sqlite3.IntegrityError as exc:
            raise PersistenceError(
                f"sync_state for {record.entity_type.value} xero_id={record.xero_id} already linked to another row"
            ) from exc
        stored = self.get(record.entity_type, record.local_id)
        if stored is None:
            raise PersistenceError("sync_state upsert did not persist")
        return stored

    def mark_conflict(
        self,
        entity_type: EntityType,
        local_id: int,
        conflict_data: dict[str, Any],
        correlation_id: str,
    ) -> None:
        self._connection.execute(
            """
            UPDATE sync_state
            SET status = ?, conflict_data_json = ?, correlation_id = ?, updated_at = ?
            WHERE entity_type = ? AND local_id = ?
            """,
            (
                SyncStatus.CONFLICT.value,
                json_to_db(conflict_data),
                correlation_id,
                to_iso(utc_now()),
                entity_type.value,
                local_id,
            ),
        )

    def mark_error(self, entity_type: EntityType, local_id: int, correlation_id: str) -> None:
        self._connection.execute(
            """
            UPDATE sync_state
            SET status = ?, correlation_id = ?, updated_at = ?
            WHERE entity_type = ? AND local_id = ? AND status != ?
            """,
            (
                SyncStatus.ERROR.value,
                correlation_id,
                to_iso(utc_now()),
                entity_type.value,
                local_id,
                SyncStatus.CONFLICT.value,
            ),
        )

    def reopen(self, entity_type: EntityType, local_id: int, *, clear_remote_hash: bool = False) -> None:
        """Returns a conflicted row to ACTIVE so the next forced sync can write it."""
        sql = "UPDATE sync_state SET status = ?, conflict_data_json = NULL, updated_at = ?"
        if clear_remote_hash:
            sql += ", last_remote_hash = NULL"
        sql += " WHERE entity_type = ? AND local_id = ?"
        self._connection.execute(sql, (SyncStatus.ACTIVE.value, to_iso(utc_now()), entity_type.value, local_id))

    def list_conflicts(self) -> list[SyncStateRecord]:
        rows = self._connection.execute(
            "SELECT * FROM sync_state WHERE status = ? ORDER BY updated_at, id",
            (SyncStatus.CONFLICT.value,),
        ).fetchall()
        return [row_to_sync_state(row) for row in rows]

    def count_by_status(self) -> dict[str, int]:
        rows = self._connection.execute("SELECT status, COUNT(*) AS total FROM sync_state GROUP BY status").fetchall()
        return {row["status"]: row["total"] for row in rows}


class SQLiteSyncLogRepository:
    """Append-only audit trail; the table rejects UPDATE and DELETE through triggers."""

    def __init__(self, connection: sqlite3.Connection) -> None:
        self._connection = connection

    def append(self, entry: SyncLogEntry) -> int:
        cursor = self._connection.cursor()
        _execute_with_validation(
            cursor,
            """
            INSERT INTO sync_log (
                correlation_id, entity_type, local_id, xero_id, operation, direction,
                before_snapshot_json, after_snapshot_json, change_hash, status, actor,
                error_message, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                entry.correlation_id,
                entry.entity_type.value,
                entry.local_id,
                entry.xero_id,
                entry.operation.value,
                entry.direction.value,
                json_to_db(entry.before_snapshot),
                json_to_db(entry.after_snapshot),
                entry.change_hash,
                entry.status.value,
                entry.actor,
                entry.error_message,
                to_iso(entry.created_at or utc_now()),
            ],
            "sync_log.append",
        )
        return int(cursor.lastrowid)

    def list_for_entity(self, entity_type: EntityType, local_id: int) -> list[SyncLogEntry]:
        rows = self._connection.execute(
            "SELECT * FROM sync_log WHERE entity_type = ? AND local_id = ? ORDER BY id",
            (entity_type.value, local_id),
        ).fetchall()
        return [row_to_sync_log(row) for row in rows]

    def list_by_correlation(self, correlation_id: str) -> list[SyncLogEntry]:
        rows = self._connection.execute(
            "SELECT * FROM sync_log WHERE correlation_id = ? ORDER BY id",
            (correlation_id,),
        ).fetchall()
        return [row_to_sync_log(row) for row in rows]
