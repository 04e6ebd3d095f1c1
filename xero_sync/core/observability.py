from __future__ import annotations

import time
import uuid
from contextlib import AbstractContextManager
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any

_CORRELATION_ID: ContextVar[str | None] = ContextVar("xero_sync_correlation_id", default=None)
_RESULT_ID: ContextVar[str | None] = ContextVar("xero_sync_result_id", default=None)
_OPERATION: ContextVar[str | None] = ContextVar("xero_sync_operation", default=None)


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


def get_correlation_id() -> str | None:
    return _CORRELATION_ID.get()


def set_correlation_id(correlation_id: str | None) -> Token[str | None]:
    return _CORRELATION_ID.set(correlation_id)


def reset_correlation_id(token: Token[str | None]) -> None:
    _CORRELATION_ID.reset(token)


def get_result_id() -> str | None:
    return _RESULT_ID.get()


def set_result_id(result_id: str | None) -> Token[str | None]:
    return _RESULT_ID.set(result_id)


def reset_result_id(token: Token[str | None]) -> None:
    _RESULT_ID.reset(token)


def get_operation_name() -> str | None:
    return _OPERATION.get()


class OperationContext(AbstractContextManager["OperationContext"]):
    """Scopes one sync operation: correlation id, operation name and a clean result id.

    Every log line, audit row and result produced inside the block shares the
    correlation id. Passing ``correlation_id`` keeps a follow-up operation
    (a conflict resolution, a queued job) linked to the run that caused it.
    Nested contexts restore the outer values on exit.
    """

    def __init__(self, operation_name: str, correlation_id: str | None = None) -> None:
        self.operation_name = operation_name
        self.correlation_id = correlation_id or generate_correlation_id()
        self._tokens: tuple[Token[str | None], Token[str | None], Token[str | None]] | None = None
        self._started = 0.0

    @property
    def elapsed_ms(self) -> int:
        if not self._started:
            return 0
        return int((time.monotonic() - self._started) * 1000)

    def __enter__(self) -> "OperationContext":
        self._started = time.monotonic()
        self._tokens = (
            set_correlation_id(self.correlation_id),
            _OPERATION.set(self.operation_name),
            set_result_id(None),
        )
        return self

    def __exit__(self, exc_type: object, exc: object, exc_tb: object) -> None:
        if self._tokens is None:
            return None
        correlation_token, operation_token, result_token = self._tokens
        reset_result_id(result_token)
        _OPERATION.reset(operation_token)
        reset_correlation_id(correlation_token)
        self._tokens = None
        return None


def log_event(logger: Any, event_name: str, payload: dict[str, Any], correlation_id: str | None) -> dict[str, Any]:
    """Logs a named sync event at INFO and returns the structured event."""
    result_id = payload.get("result_id")
    if isinstance(result_id, str):
        set_result_id(result_id)

    event = {
        "event": event_name,
        "operation": get_operation_name(),
        "correlation_id": correlation_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "payload": payload,
    }
    logger.info(
        event_name,
        extra={"correlation_id": correlation_id, "result_id": result_id, "extra": event},
    )
    return event
