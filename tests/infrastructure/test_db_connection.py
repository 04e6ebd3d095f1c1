from __future__ import annotations

from xero_sync.infrastructure.db import MEMORY_DATABASE, get_connection


def test_file_database_uses_wal_and_foreign_keys(tmp_path) -> None:
    connection = get_connection(tmp_path / "nested" / "erp.db")
    try:
        assert connection.execute("PRAGMA journal_mode").fetchone()[0].lower() == "wal"
        assert connection.execute("PRAGMA foreign_keys").fetchone()[0] == 1
        assert connection.execute("SELECT 1 AS one").fetchone()["one"] == 1
    finally:
        connection.close()

    assert (tmp_path / "nested" / "erp.db").exists()


def test_memory_database_skips_wal() -> None:
    connection = get_connection(MEMORY_DATABASE)
    try:
        assert connection.execute("PRAGMA journal_mode").fetchone()[0].lower() == "memory"
        assert connection.execute("PRAGMA foreign_keys").fetchone()[0] == 1
    finally:
        connection.close()
