from __future__ import annotations

from pathlib import Path

from xero_sync.bootstrap.container import build_container
from xero_sync.bootstrap.settings import SyncSettings
from xero_sync.domain.models import EntityType, RunStatus, SyncDirection
from xero_sync.infrastructure.db import get_connection


def test_build_container_smoke(tmp_path: Path) -> None:
    settings = SyncSettings(db_path=tmp_path / "smoke.db", page_size=25)

    container = build_container(settings)
    try:
        assert container.settings.page_size == 25
        assert container.conflicts_service.count_conflicts() == 0
        assert container.auto_sync.pending_count() == 0
        assert container.orchestrator.status(EntityType.CONTACT, SyncDirection.PULL) is RunStatus.IDLE
        tables = {row["name"] for row in container.connection.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        assert {"customers", "suppliers", "invoices", "payments", "sync_state", "sync_log"} <= tables
    finally:
        container.orchestrator.shutdown()
        container.connection.close()


def test_custom_connection_factory_is_used(tmp_path: Path) -> None:
    requested: list[object] = []

    def connection_factory(db_path):
        requested.append(db_path)
        return get_connection(tmp_path / "factory.db")

    container = build_container(SyncSettings(), connection_factory=connection_factory)
    container.connection.close()

    assert requested == [None]
    assert (tmp_path / "factory.db").exists()
