from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

logger = logging.getLogger(__name__)

DB_FILENAME = "xero_sync.db"
DB_RUNTIME_DIR = Path("logs") / "runtime"
DEFAULT_BUSY_TIMEOUT_MS = 30000
MEMORY_DATABASE = ":memory:"


def _default_db_path() -> Path:
    return Path(__file__).resolve().parents[2] / DB_RUNTIME_DIR / DB_FILENAME


def configure_sqlite_connection(
    connection: sqlite3.Connection,
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    *,
    wal: bool = True,
) -> None:
    """Row access by column name, enforced foreign keys, and WAL for file databases."""
    connection.row_factory = sqlite3.Row
    if wal:
        mode = connection.execute("PRAGMA journal_mode=WAL").fetchone()[0]
        if str(mode).lower() != "wal":
            logger.warning("SQLite refused WAL journal mode, running with %s", mode)
        connection.execute("PRAGMA synchronous=NORMAL")
    connection.execute("PRAGMA foreign_keys=ON")
    connection.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")


def get_connection(
    db_path: Path | str | None = None,
    *,
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    check_same_thread: bool = False,
) -> sqlite3.Connection:
    if str(db_path) == MEMORY_DATABASE:
        connection = sqlite3.connect(MEMORY_DATABASE, check_same_thread=check_same_thread)
        configure_sqlite_connection(connection, busy_timeout_ms=busy_timeout_ms, wal=False)
        return connection

    path = Path(db_path) if db_path else _default_db_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    connection = sqlite3.connect(
        path,
        check_same_thread=check_same_thread,
        timeout=max(1.0, busy_timeout_ms / 1000),
    )
    configure_sqlite_connection(connection, busy_timeout_ms=busy_timeout_ms)
    return connection
