from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from xero_sync.core.observability import get_correlation_id, get_operation_name, get_result_id
from xero_sync.core.secrets_redactor import LoggingSecretsFilter

DEFAULT_LOG_MAX_BYTES = 1_048_576
DEFAULT_LOG_BACKUP_COUNT = 10
MAIN_LOG_NAME = "sync.log"
OPERATIONAL_ERROR_LOG_NAME = "operational_error.log"
CRASH_LOG_NAME = "crash.log"
CONSOLE_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


class JsonLinesFormatter(logging.Formatter):
    """One JSON object per line, stamped with the sync operation, thread and correlation id."""

    def format(self, record: logging.LogRecord) -> str:
        event: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "thread": record.threadName,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None) or get_correlation_id(),
        }

        operation = get_operation_name()
        if operation:
            event["operation"] = operation

        result_id = getattr(record, "result_id", None) or get_result_id()
        if result_id:
            event["result_id"] = result_id

        payload_extra = getattr(record, "extra", None)
        if isinstance(payload_extra, dict) and payload_extra:
            event["extra"] = payload_extra

        if record.exc_info:
            event["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(event, ensure_ascii=False, default=str)


class LevelRangeFilter(logging.Filter):
    def __init__(self, min_level: int, max_level: int | None = None) -> None:
        super().__init__()
        self._min_level = min_level
        self._max_level = max_level

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno < self._min_level:
            return False
        return self._max_level is None or record.levelno <= self._max_level


@dataclass(frozen=True)
class _LogFile:
    name: str
    min_level: int | None
    max_level: int | None = None


# min_level None means "the configured level".
_LOG_FILES = (
    _LogFile(MAIN_LOG_NAME, None),
    _LogFile(OPERATIONAL_ERROR_LOG_NAME, logging.ERROR, logging.ERROR),
    _LogFile(CRASH_LOG_NAME, logging.CRITICAL),
)


def _safe_int_env(name: str, default: int) -> int:
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    try:
        return int(raw_value)
    except ValueError:
        return default


def _file_handler(log_dir: Path, spec: _LogFile, *, level: int, max_bytes: int, backup_count: int) -> logging.Handler:
    min_level = level if spec.min_level is None else spec.min_level
    handler = RotatingFileHandler(
        log_dir / spec.name,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setLevel(min_level)
    handler.setFormatter(JsonLinesFormatter())
    handler.addFilter(LoggingSecretsFilter())
    handler.addFilter(LevelRangeFilter(min_level, spec.max_level))
    return handler


def _console_handler(level: int) -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    handler.addFilter(LoggingSecretsFilter())
    return handler


def configure_logging(
    log_dir: Path,
    *,
    max_bytes: int | None = None,
    backup_count: int = DEFAULT_LOG_BACKUP_COUNT,
    level: int = logging.INFO,
    console_level: int | None = None,
) -> None:
    """Replaces the root handlers with the rotating sync, error and crash logs.

    ``console_level`` adds a plain-text stderr handler (the CLI ``--verbose`` flag).
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    resolved_max_bytes = max_bytes or _safe_int_env("XERO_SYNC_LOG_MAX_BYTES", DEFAULT_LOG_MAX_BYTES)

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()
    root_logger.setLevel(min(level, console_level) if console_level is not None else level)

    for spec in _LOG_FILES:
        root_logger.addHandler(
            _file_handler(log_dir, spec, level=level, max_bytes=resolved_max_bytes, backup_count=backup_count)
        )
    if console_level is not None:
        root_logger.addHandler(_console_handler(console_level))


def log_operational_error(
    logger: logging.Logger,
    message: str,
    *,
    exc: BaseException | None = None,
    extra: dict[str, Any] | None = None,
) -> None:
    exc_info: Any = (type(exc), exc, exc.__traceback__) if exc is not None else False
    logger.error(message, exc_info=exc_info, extra={"extra": extra} if extra else None)


def write_crash_log(exc_type: type[BaseException], exc: BaseException, tb: Any, log_dir: Path) -> Path:
    log_dir.mkdir(parents=True, exist_ok=True)
    logging.getLogger("xero_sync.crash").critical(
        "Unhandled exception",
        exc_info=(exc_type, exc, tb),
        extra={"extra": {"python": sys.version, "argv": list(sys.argv), "cwd": str(Path.cwd())}},
    )
    return log_dir / CRASH_LOG_NAME


def install_exception_hook(log_dir: Path) -> None:
    def _handler(exc_type, exc, tb) -> None:
        try:
            write_crash_log(exc_type, exc, tb, log_dir)
        except OSError:
            sys.__excepthook__(exc_type, exc, tb)

    sys.excepthook = _handler
