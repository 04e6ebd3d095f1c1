from __future__ import annotations

import json
import logging
import traceback
import uuid
from datetime import datetime, timezone
from types import TracebackType
from typing import Any

from xero_sync.bootstrap.logging import CRASH_LOG_NAME
from xero_sync.bootstrap.settings import resolve_log_dir
from xero_sync.core.observability import (
    generate_correlation_id,
    get_correlation_id,
    get_operation_name,
    set_correlation_id,
)


def generate_incident_id() -> str:
    return f"INC-{uuid.uuid4().hex[:12].upper()}"


def incident_message(incident_id: str) -> str:
    return f"Xero sync stopped on an unexpected error. Incident id: {incident_id}"


def _ensure_correlation_id() -> str:
    correlation_id = get_correlation_id()
    if not correlation_id:
        correlation_id = generate_correlation_id()
        set_correlation_id(correlation_id)
    return correlation_id


def _incident_payload(
    incident_id: str,
    correlation_id: str,
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_traceback: TracebackType | None,
) -> dict[str, Any]:
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "incident_id": incident_id,
        "correlation_id": correlation_id,
        "operation": get_operation_name(),
        "error_type": exc_type.__name__,
        "error_message": str(exc_value),
        "stacktrace": "".join(traceback.format_exception(exc_type, exc_value, exc_traceback)),
    }


def _append_fallback_crash_record(payload: dict[str, Any]) -> None:
    log_dir = resolve_log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)
    with (log_dir / CRASH_LOG_NAME).open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(payload, ensure_ascii=False) + "\n")


def handle_global_exception(
    exc_type: type[BaseException], exc_value: BaseException, exc_traceback: TracebackType | None
) -> str:
    """Logs an unhandled error as CRITICAL and returns the incident id shown to the user.

    If the logging pipeline itself is broken, the incident is appended straight
    to the crash log so it is never lost.
    """
    incident_id = generate_incident_id()
    correlation_id = _ensure_correlation_id()
    logger = logging.getLogger("xero_sync.global_exception")

    try:
        logger.critical(
            "Unhandled exception. incident_id=%s",
            incident_id,
            exc_info=(exc_type, exc_value, exc_traceback),
            extra={
                "extra": {"incident_id": incident_id, "operation": get_operation_name()},
                "correlation_id": correlation_id,
            },
        )
    except Exception:  # noqa: BLE001
        _append_fallback_crash_record(
            _incident_payload(incident_id, correlation_id, exc_type, exc_value, exc_traceback)
        )

    return incident_id
