from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime

from xero_sync.domain.time_utils import parse_timestamp, to_iso, utc_now
from xero_sync.infrastructure.sqlite_uow import transaction


@dataclass(frozen=True)
class XeroConnection:
    tenant_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    is_active: bool = True
    deactivated_reason: str | None = None


class SQLiteXeroConnectionRepository:
    def __init__(self, connection: sqlite3.Connection) -> None:
        self._connection = connection

    def get_current(self) -> XeroConnection | None:
        row = self._connection.execute(
            "SELECT * FROM xero_connections ORDER BY updated_at DESC, id DESC LIMIT 1"
        ).fetchone()
        if row is None:
            return None
        return XeroConnection(
            tenant_id=row["tenant_id"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=parse_timestamp(row["expires_at"]) or utc_now(),
            is_active=bool(row["is_active"]),
            deactivated_reason=row["deactivated_reason"],
        )

    def save_tokens(self, tenant_id: str, access_token: str, refresh_token: str, expires_at: datetime) -> None:
        now = to_iso(utc_now())
        with transaction(self._connection):
            self._connection.execute(
                """
                INSERT INTO xero_connections (
                    tenant_id, access_token, refresh_token, expires_at, is_active, deactivated_reason, updated_at
                )
                VALUES (?, ?, ?, ?, 1, NULL, ?)
                ON CONFLICT (tenant_id) DO UPDATE SET
                    access_token = excluded.access_token,
                    refresh_token = excluded.refresh_token,
                    expires_at = excluded.expires_at,
                    is_active = 1,
                    deactivated_reason = NULL,
                    updated_at = excluded.updated_at
                """,
                (tenant_id, access_token, refresh_token, to_iso(expires_at), now),
            )

    def deactivate(self, tenant_id: str, reason: str) -> None:
        with transaction(self._connection):
            self._connection.execute(
                "UPDATE xero_connections SET is_active = 0, deactivated_reason = ?, updated_at = ? WHERE tenant_id = ?",
                (reason, to_iso(utc_now()), tenant_id),
            )
