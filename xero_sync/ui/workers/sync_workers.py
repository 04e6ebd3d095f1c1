from __future__ import annotations

import logging
import traceback

from PySide6.QtCore import QObject, Signal, Slot

from xero_sync.application.use_cases.sync_xero.orchestrator import SyncOrchestrator
from xero_sync.domain.models import EntityType, SyncDirection
from xero_sync.domain.sync_models import SyncOptions, SyncResult

logger = logging.getLogger(__name__)


class SyncWorker(QObject):
    """Runs one orchestrator call; meant to be moved to a QThread by the caller."""

    finished = Signal(SyncResult)
    failed = Signal(object)

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        entity_type: EntityType | None,
        direction: SyncDirection,
        options: SyncOptions | None = None,
    ) -> None:
        super().__init__()
        self._orchestrator = orchestrator
        self._entity_type = entity_type
        self._direction = direction
        self._options = options or SyncOptions()

    @Slot()
    def run(self) -> None:
        try:
            if self._entity_type is None:
                result = self._orchestrator.sync_all(self._direction, self._options)
            else:
                result = self._orchestrator.run(self._entity_type, self._direction, options=self._options)
        except Exception as exc:
            logger.exception("Error during Xero sync")
            self.failed.emit({"error": exc, "details": traceback.format_exc()})
            return
        self.finished.emit(result)

    @Slot()
    def cancel(self) -> None:
        self._orchestrator.cancel(self._entity_type, self._direction)
