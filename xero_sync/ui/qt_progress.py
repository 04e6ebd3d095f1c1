from __future__ import annotations

from PySide6.QtCore import QObject, Signal


class QtProgressSink(QObject):
    """Progress sink that re-emits orchestrator notifications as Qt signals.

    Signals are queued across threads, so widgets can connect directly even
    when the sync runs in a worker thread.
    """

    started = Signal(str, int)
    progressed = Signal(str, int, str)
    completed = Signal(str, str)
    failed = Signal(str, str)

    def start(self, entity: str, total: int) -> None:
        self.started.emit(entity, total)

    def progress(self, entity: str, current: int, message: str) -> None:
        self.progressed.emit(entity, current, message)

    def complete(self, entity: str, message: str) -> None:
        self.completed.emit(entity, message)

    def fail(self, entity: str, error: str) -> None:
        self.failed.emit(entity, error)
