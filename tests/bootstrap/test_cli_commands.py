from __future__ import annotations

import json

import pytest

from xero_sync.bootstrap.container import build_container
from xero_sync.bootstrap.settings import SyncSettings
from xero_sync.entrypoints import cli


@pytest.fixture
def run_cli(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr(cli, "configure_logging", lambda _log_dir, **_kwargs: None)
    monkeypatch.setattr(cli, "install_exception_hook", lambda _log_dir: None)
    monkeypatch.setattr(cli, "resolve_log_dir", lambda: tmp_path)
    settings = SyncSettings(db_path=tmp_path / "cli.db")

    def _run(*argv: str) -> tuple[int, dict | None]:
        exit_code = cli.main(list(argv), container_factory=lambda: build_container(settings))
        out = capsys.readouterr().out.strip()
        return exit_code, json.loads(out) if out else None

    return _run


def test_conflicts_on_empty_database(run_cli) -> None:
    exit_code, payload = run_cli("conflicts")

    assert exit_code == cli.EXIT_OK
    assert payload == {"count": 0, "conflicts": []}


def test_queue_status(run_cli) -> None:
    exit_code, payload = run_cli("queue", "status")

    assert exit_code == cli.EXIT_OK
    assert payload == {"pending": 0}


def test_unknown_command_is_a_usage_error(run_cli) -> None:
    exit_code, payload = run_cli("teleport")

    assert exit_code == cli.EXIT_USAGE
    assert payload is None


def test_push_accepts_invoices_and_payments(run_cli) -> None:
    exit_code, payload = run_cli("push", "invoices", "--dry-run")

    assert exit_code == cli.EXIT_OK
    assert payload["entity_type"] == "INVOICE"
    assert payload["dry_run"] is True
    assert payload["counts"]["created"] == 0

    exit_code, payload = run_cli("push", "payments", "--dry-run")

    assert exit_code == cli.EXIT_OK
    assert payload["entity_type"] == "PAYMENT"


def test_push_rejects_generic_entities(run_cli) -> None:
    exit_code, _ = run_cli("push", "everything")

    assert exit_code == cli.EXIT_USAGE


def test_manual_data_must_be_a_json_object(run_cli) -> None:
    exit_code, payload = run_cli("resolve", "customer", "1", "manual", "--data", "[1, 2]")

    assert exit_code == cli.EXIT_USAGE
    assert payload is None


def test_invalid_modified_since_is_a_usage_error(run_cli) -> None:
    exit_code, _ = run_cli("pull", "contacts", "--modified-since", "last tuesday")

    assert exit_code == cli.EXIT_USAGE


def test_resolving_a_missing_conflict_reports_the_error(run_cli) -> None:
    exit_code, payload = run_cli("resolve", "customer", "42", "use_remote")

    assert exit_code == cli.EXIT_FAILED
    assert payload["error_type"] == "ConflictNotFoundError"


def test_entity_type_accepts_plural_names() -> None:
    assert cli._entity_type("suppliers").value == "SUPPLIER"
    assert cli._entity_type("Invoice").value == "INVOICE"
