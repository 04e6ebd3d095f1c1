from __future__ import annotations

import logging
from dataclasses import dataclass, field

from xero_sync.core.observability import get_correlation_id, log_event
from xero_sync.domain.ports import ProgressSinkPort

logger = logging.getLogger(__name__)


class LoggingProgressSink:
    def start(self, entity: str, total: int) -> None:
        log_event(logger, "sync_started", {"entity": entity, "total": total}, get_correlation_id())

    def progress(self, entity: str, current: int, message: str) -> None:
        log_event(logger, "sync_progress", {"entity": entity, "current": current, "message": message}, get_correlation_id())

    def complete(self, entity: str, message: str) -> None:
        log_event(logger, "sync_completed", {"entity": entity, "message": message}, get_correlation_id())

    def fail(self, entity: str, error: str) -> None:
        log_event(logger, "sync_failed", {"entity": entity, "error": error}, get_correlation_id())


@dataclass
class RecordingProgressSink:
    events: list[tuple[str, str, object]] = field(default_factory=list)

    def start(self, entity: str, total: int) -> None:
        self.events.append(("start", entity, total))

    def progress(self, entity: str, current: int, message: str) -> None:
        self.events.append(("progress", entity, current))

    def complete(self, entity: str, message: str) -> None:
        self.events.append(("complete", entity, message))

    def fail(self, entity: str, error: str) -> None:
        self.events.append(("fail", entity, error))

    def of_kind(self, kind: str) -> list[tuple[str, str, object]]:
        return [event for event in self.events if event[0] == kind]


class CompositeProgressSink:
    def __init__(self, *sinks: ProgressSinkPort) -> None:
        self._sinks = sinks

    def start(self, entity: str, total: int) -> None:
        for sink in self._sinks:
            sink.start(entity, total)

    def progress(self, entity: str, current: int, message: str) -> None:
        for sink in self._sinks:
            sink.progress(entity, current, message)

    def complete(self, entity: str, message: str) -> None:
        for sink in self._sinks:
            sink.complete(entity, message)

    def fail(self, entity: str, error: str) -> None:
        for sink in self._sinks:
            sink.fail(entity, error)


class ProgressTracker:
    """Throttles per-record notifications to every ``interval`` records plus the final one."""

    def __init__(self, sink: ProgressSinkPort, entity: str, *, interval: int = 10) -> None:
        self._sink = sink
        self._entity = entity
        self._interval = max(1, interval)
        self._last_reported = 0
        self.current = 0

    def start(self, total: int) -> None:
        self._sink.start(self._entity, total)

    def step(self, current: int, total: int | None = None) -> None:
        self.current = current
        if current % self._interval == 0 or (total is not None and current == total):
            self._report(current, total)

    def finish(self, message: str) -> None:
        if self.current and self._last_reported != self.current:
            self._report(self.current, self.current)
        self._sink.complete(self._entity, message)

    def fail(self, error: str) -> None:
        self._sink.fail(self._entity, error)

    def _report(self, current: int, total: int | None) -> None:
        self._last_reported = current
        suffix = f"/{total}" if total else ""
        self._sink.progress(self._entity, current, f"Processed {current}{suffix} {self._entity.lower()} records")
