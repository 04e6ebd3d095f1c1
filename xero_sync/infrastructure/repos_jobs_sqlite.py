from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Any

from xero_sync.domain.models import EntityType, JobStatus, SyncDirection, SyncJob
from xero_sync.domain.time_utils import to_iso, utc_now
from xero_sync.infrastructure.repos_sqlite_builders import json_to_db, row_to_sync_job
from xero_sync.infrastructure.sqlite_uow import transaction

logger = logging.getLogger(__name__)


def _dedup_key(entity_type: EntityType, direction: SyncDirection, local_id: int | None) -> str:
    return f"{entity_type.value}:{direction.value}:{local_id if local_id is not None else '*'}"


class SQLiteSyncJobQueue:
    """Durable auto-sync queue; a CLAIMED row is the in-flight marker and survives restarts."""

    def __init__(self, connection: sqlite3.Connection) -> None:
        self._connection = connection

    def enqueue(
        self,
        entity_type: EntityType,
        direction: SyncDirection,
        local_id: int | None = None,
        payload: dict[str, Any] | None = None,
    ) -> int | None:
        now = to_iso(utc_now())
        with transaction(self._connection):
            cursor = self._connection.execute(
                """
                INSERT OR IGNORE INTO sync_jobs (
                    entity_type, direction, local_id, dedup_key, payload_json,
                    status, attempts, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?)
                """,
                (
                    entity_type.value,
                    direction.value,
                    local_id,
                    _dedup_key(entity_type, direction, local_id),
                    json_to_db(payload or {}),
                    JobStatus.PENDING.value,
                    now,
                    now,
                ),
            )
            if cursor.rowcount == 0:
                logger.debug("Job already queued: %s", _dedup_key(entity_type, direction, local_id))
                return None
            return int(cursor.lastrowid)

    def claim_next(self, worker_id: str) -> SyncJob | None:
        with transaction(self._connection, immediate=True):
            row = self._connection.execute(
                "SELECT id FROM sync_jobs WHERE status = ? ORDER BY id LIMIT 1",
                (JobStatus.PENDING.value,),
            ).fetchone()
            if row is None:
                return None
            now = to_iso(utc_now())
            self._connection.execute(
                """
                UPDATE sync_jobs
                SET status = ?, claimed_by = ?, claimed_at = ?, attempts = attempts + 1, updated_at = ?
                WHERE id = ?
                """,
                (JobStatus.CLAIMED.value, worker_id, now, now, row["id"]),
            )
            claimed = self._connection.execute("SELECT * FROM sync_jobs WHERE id = ?", (row["id"],)).fetchone()
        return row_to_sync_job(claimed)

    def complete(self, job_id: int) -> None:
        with transaction(self._connection):
            self._connection.execute(
                "UPDATE sync_jobs SET status = ?, last_error = NULL, updated_at = ? WHERE id = ?",
                (JobStatus.DONE.value, to_iso(utc_now()), job_id),
            )

    def fail(self, job_id: int, error: str, max_attempts: int) -> None:
        with transaction(self._connection):
            row = self._connection.execute("SELECT attempts FROM sync_jobs WHERE id = ?", (job_id,)).fetchone()
            if row is None:
                return
            status = JobStatus.FAILED if int(row["attempts"]) >= max_attempts else JobStatus.PENDING
            self._connection.execute(
                """
                UPDATE sync_jobs
                SET status = ?, last_error = ?, claimed_by = NULL, claimed_at = NULL, updated_at = ?
                WHERE id = ?
                """,
                (status.value, error[:2000], to_iso(utc_now()), job_id),
            )

    def release(self, job_id: int) -> None:
        """Hands a claimed job back untouched; the claim does not count as an attempt."""
        with transaction(self._connection):
            self._connection.execute(
                """
                UPDATE sync_jobs
                SET status = ?, claimed_by = NULL, claimed_at = NULL, attempts = MAX(attempts - 1, 0), updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (JobStatus.PENDING.value, to_iso(utc_now()), job_id, JobStatus.CLAIMED.value),
            )

    def release_stale(self, older_than: datetime) -> int:
        with transaction(self._connection):
            cursor = self._connection.execute(
                """
                UPDATE sync_jobs
                SET status = ?, claimed_by = NULL, claimed_at = NULL, updated_at = ?
                WHERE status = ? AND claimed_at < ?
                """,
                (JobStatus.PENDING.value, to_iso(utc_now()), JobStatus.CLAIMED.value, to_iso(older_than)),
            )
        if cursor.rowcount:
            logger.warning("Released %s stale sync job claim(s)", cursor.rowcount)
        return cursor.rowcount

    def pending_count(self) -> int:
        row = self._connection.execute(
            "SELECT COUNT(*) AS total FROM sync_jobs WHERE status = ?",
            (JobStatus.PENDING.value,),
        ).fetchone()
        return int(row["total"])

    def get(self, job_id: int) -> SyncJob | None:
        row = self._connection.execute("SELECT * FROM sync_jobs WHERE id = ?", (job_id,)).fetchone()
        return row_to_sync_job(row) if row else None
