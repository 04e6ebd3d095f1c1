from __future__ import annotations

import argparse
import hashlib
import json
import logging
import sqlite3
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from xero_sync.bootstrap.logging import configure_logging
from xero_sync.bootstrap.settings import load_settings, resolve_log_dir
from xero_sync.infrastructure.db import get_connection

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parents[1] / "migrations"


@dataclass(frozen=True)
class MigrationDefinition:
    version: int
    name: str
    up_sql: Path
    down_sql: Path


class MigrationChecksumError(RuntimeError):
    pass


class MigrationRunner:
    def __init__(self, connection: sqlite3.Connection, migrations_dir: Path | None = None) -> None:
        self.connection = connection
        self.connection.row_factory = sqlite3.Row
        self.migrations_dir = migrations_dir or MIGRATIONS_DIR
        self.migrations = self._discover_migrations()

    def apply_all(self) -> list[int]:
        self._ensure_history_table()
        applied = self._applied_checksums()
        newly_applied: list[int] = []
        for migration in self.migrations:
            if migration.version in applied:
                self._verify_checksum(migration, applied[migration.version])
                continue
            self._apply_migration(migration)
            newly_applied.append(migration.version)
        return newly_applied

    def rollback(self, steps: int = 1) -> list[int]:
        self._ensure_history_table()
        cursor = self.connection.cursor()
        cursor.execute("SELECT version FROM schema_migrations ORDER BY version DESC LIMIT ?", (steps,))
        versions_to_rollback = [row["version"] for row in cursor.fetchall()]
        version_map = {migration.version: migration for migration in self.migrations}
        rolled_back: list[int] = []
        for version in versions_to_rollback:
            self._rollback_migration(version_map[version])
            rolled_back.append(version)
        return rolled_back

    def status(self) -> list[dict[str, object]]:
        self._ensure_history_table()
        rows = self.connection.execute("SELECT version, applied_at FROM schema_migrations").fetchall()
        applied_at = {row["version"]: row["applied_at"] for row in rows}
        return [
            {
                "version": migration.version,
                "name": migration.name,
                "applied": migration.version in applied_at,
                "applied_at": applied_at.get(migration.version),
            }
            for migration in self.migrations
        ]

    def _ensure_history_table(self) -> None:
        self.connection.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                checksum TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
            """
        )
        self.connection.commit()

    def _applied_checksums(self) -> dict[int, str]:
        rows = self.connection.execute("SELECT version, checksum FROM schema_migrations").fetchall()
        return {row["version"]: row["checksum"] for row in rows}

    @staticmethod
    def _checksum(sql_script: str) -> str:
        return hashlib.sha256(sql_script.encode("utf-8")).hexdigest()

    def _verify_checksum(self, migration: MigrationDefinition, stored_checksum: str) -> None:
        current = self._checksum(migration.up_sql.read_text(encoding="utf-8"))
        if current != stored_checksum:
            raise MigrationChecksumError(
                f"Migration {migration.version:03d}_{migration.name} was edited after being applied"
            )

    def _apply_migration(self, migration: MigrationDefinition) -> None:
        sql_script = migration.up_sql.read_text(encoding="utf-8")
        with self.connection:
            if sql_script.strip():
                self.connection.executescript(sql_script)
            self.connection.execute(
                """
                INSERT INTO schema_migrations (version, name, checksum, applied_at)
                VALUES (?, ?, ?, ?)
                """,
                (
                    migration.version,
                    migration.name,
                    self._checksum(sql_script),
                    datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
                ),
            )
            self.connection.execute(f"PRAGMA user_version = {migration.version}")
        logger.info("Applied migration %03d_%s", migration.version, migration.name)

    def _rollback_migration(self, migration: MigrationDefinition) -> None:
        sql_script = migration.down_sql.read_text(encoding="utf-8")
        with self.connection:
            if sql_script.strip():
                self.connection.executescript(sql_script)
            self.connection.execute("DELETE FROM schema_migrations WHERE version = ?", (migration.version,))
            previous = self.connection.execute(
                "SELECT COALESCE(MAX(version), 0) AS version FROM schema_migrations"
            ).fetchone()["version"]
            self.connection.execute(f"PRAGMA user_version = {previous}")
        logger.info("Rolled back migration %03d_%s", migration.version, migration.name)

    def _discover_migrations(self) -> list[MigrationDefinition]:
        definitions: list[MigrationDefinition] = []
        for up_file in sorted(self.migrations_dir.glob("*.up.sql")):
            stem = up_file.name[: -len(".up.sql")]
            version_text, name = stem.split("_", maxsplit=1)
            down_file = self.migrations_dir / f"{stem}.down.sql"
            if not down_file.exists():
                raise FileNotFoundError(f"Missing down migration for {up_file.name}: {down_file}")
            definitions.append(
                MigrationDefinition(version=int(version_text), name=name, up_sql=up_file, down_sql=down_file)
            )
        return definitions


def run_migrations(connection: sqlite3.Connection) -> list[int]:
    return MigrationRunner(connection).apply_all()


def build_cli() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="xero-sync-migrate", description="Manage the xero-sync SQLite schema")
    parser.add_argument("command", choices=["up", "down", "status"], help="Operation to run")
    parser.add_argument("--db", help="Path to the SQLite file (default: XERO_SYNC_DB_PATH or the runtime db)")
    parser.add_argument("--steps", type=int, default=1, help="Number of migrations to roll back")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_cli().parse_args(argv)
    configure_logging(resolve_log_dir())

    db_path = Path(args.db) if args.db else load_settings().db_path
    connection = get_connection(db_path)
    runner = MigrationRunner(connection)
    try:
        if args.command == "up":
            versions = runner.apply_all()
            payload: object = {"command": "up", "versions": versions}
        elif args.command == "down":
            versions = runner.rollback(args.steps)
            payload = {"command": "down", "versions": versions}
        else:
            payload = runner.status()
    finally:
        connection.close()

    logger.info("Migration command finished", extra={"extra": {"command": args.command}})
    sys.stdout.write(json.dumps(payload, ensure_ascii=False) + "\n")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
