from __future__ import annotations

import json
import re
from types import SimpleNamespace

import xero_sync.__main__ as entry_point
from xero_sync.bootstrap import exception_handler
from xero_sync.core.observability import OperationContext


class _LoggerFake:
    def __init__(self, fail: bool = False) -> None:
        self.calls: list[dict[str, object]] = []
        self._fail = fail

    def critical(self, message: str, incident_id: str, *, exc_info, extra) -> None:  # noqa: ANN001
        if self._fail:
            raise OSError("disk full")
        self.calls.append({"message": message, "incident_id": incident_id, "exc_info": exc_info, "extra": extra})


def test_incident_id_format() -> None:
    assert re.fullmatch(r"INC-[0-9A-F]{12}", exception_handler.generate_incident_id())


def test_global_exception_is_logged_as_critical(monkeypatch) -> None:
    logger = _LoggerFake()
    monkeypatch.setattr(exception_handler, "logging", SimpleNamespace(getLogger=lambda _name: logger))
    monkeypatch.setattr(exception_handler, "generate_incident_id", lambda: "INC-TEST-123")
    monkeypatch.setattr(exception_handler, "_ensure_correlation_id", lambda: "corr-001")

    try:
        raise ValueError("unexpected payload")
    except ValueError as exc:
        incident_id = exception_handler.handle_global_exception(ValueError, exc, exc.__traceback__)

    assert incident_id == "INC-TEST-123"
    assert logger.calls[0]["extra"] == {
        "extra": {"incident_id": "INC-TEST-123", "operation": None},
        "correlation_id": "corr-001",
    }
    assert logger.calls[0]["exc_info"][0] is ValueError


def test_fallback_crash_log_is_written_when_logging_fails(monkeypatch, tmp_path) -> None:
    monkeypatch.setattr(exception_handler, "logging", SimpleNamespace(getLogger=lambda _name: _LoggerFake(fail=True)))
    monkeypatch.setattr(exception_handler, "resolve_log_dir", lambda: tmp_path)
    monkeypatch.setattr(exception_handler, "_ensure_correlation_id", lambda: "corr-999")

    try:
        raise RuntimeError("boom")
    except RuntimeError as exc:
        incident_id = exception_handler.handle_global_exception(RuntimeError, exc, exc.__traceback__)

    (line,) = (tmp_path / "crash.log").read_text(encoding="utf-8").splitlines()
    payload = json.loads(line)
    assert payload["incident_id"] == incident_id
    assert payload["correlation_id"] == "corr-999"
    assert payload["error_type"] == "RuntimeError"
    assert "boom" in payload["stacktrace"]


def test_fallback_record_names_the_running_operation(monkeypatch, tmp_path) -> None:
    monkeypatch.setattr(exception_handler, "logging", SimpleNamespace(getLogger=lambda _name: _LoggerFake(fail=True)))
    monkeypatch.setattr(exception_handler, "resolve_log_dir", lambda: tmp_path)

    with OperationContext("xero_sync.pull.invoice", correlation_id="run-1"):
        try:
            raise KeyError("Contact")
        except KeyError as exc:
            exception_handler.handle_global_exception(KeyError, exc, exc.__traceback__)

    payload = json.loads((tmp_path / "crash.log").read_text(encoding="utf-8"))
    assert payload["operation"] == "xero_sync.pull.invoice"
    assert payload["correlation_id"] == "run-1"


def test_module_entry_point_reports_incident_id(monkeypatch, capsys) -> None:
    def _explode() -> int:
        raise RuntimeError("container wiring failed")

    monkeypatch.setattr(entry_point, "main", _explode)
    monkeypatch.setattr(entry_point, "handle_global_exception", lambda *_args: "INC-ABCDEF123456")

    assert entry_point.run() == 2
    assert capsys.readouterr().err.strip() == exception_handler.incident_message("INC-ABCDEF123456")
