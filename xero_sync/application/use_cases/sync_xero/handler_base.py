from __future__ import annotations

import contextlib
import logging
import sqlite3
from collections.abc import Iterator, Mapping
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Callable

from xero_sync.core.observability import generate_correlation_id, get_correlation_id
from xero_sync.domain.conflict_policy import ConflictOutcome, build_conflict_data, detect_conflicts, evaluate_conflict
from xero_sync.domain.models import (
    EntityType,
    SyncDirection,
    SyncLogEntry,
    SyncLogStatus,
    SyncOperation,
    SyncOrigin,
    SyncStateRecord,
    SyncStatus,
)
from xero_sync.domain.ports import SyncLogRepositoryPort, SyncStateRepositoryPort
from xero_sync.domain.sync_models import ConflictEntry, ErrorDetail, RecordOutcome, RecordResult
from xero_sync.domain.time_utils import to_iso, utc_now
from xero_sync.infrastructure.sqlite_uow import transaction

logger = logging.getLogger(__name__)

_RUN_ACTOR: ContextVar[str | None] = ContextVar("sync_actor", default=None)


@contextlib.contextmanager
def actor_scope(actor: str | None) -> Iterator[None]:
    """Overrides the audit actor for every log row written in this context."""
    token = _RUN_ACTOR.set(actor)
    try:
        yield
    finally:
        _RUN_ACTOR.reset(token)


class SyncHandlerBase:
    """Bookkeeping shared by the per-entity handlers: sync state, audit rows and conflicts.

    None of these helpers open their own transaction except ``register_conflict``
    and ``record_failure``; callers wrap entity writes and ``write_sync_state``
    in one ``transaction()`` so the state row never outlives a failed upsert.
    """

    def __init__(
        self,
        connection: sqlite3.Connection,
        sync_state: SyncStateRepositoryPort,
        sync_log: SyncLogRepositoryPort,
        *,
        actor: str = "xero-sync",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._connection = connection
        self._sync_state = sync_state
        self._sync_log = sync_log
        self._actor = actor
        self._clock = clock

    @staticmethod
    def _correlation_id() -> str:
        return get_correlation_id() or generate_correlation_id()

    def write_sync_state(
        self,
        entity_type: EntityType,
        local_id: int,
        xero_id: str | None,
        *,
        local_hash: str,
        remote_hash: str,
        synced_at: datetime,
        local_modified: datetime | None,
        remote_modified: datetime | None,
        origin: SyncOrigin,
    ) -> SyncStateRecord:
        return self._sync_state.upsert(
            SyncStateRecord(
                entity_type=entity_type,
                local_id=local_id,
                xero_id=xero_id,
                last_local_hash=local_hash,
                last_remote_hash=remote_hash,
                last_synced_at=synced_at,
                last_local_modified=local_modified,
                last_remote_modified=remote_modified,
                sync_origin=origin,
                status=SyncStatus.ACTIVE,
                conflict_data=None,
                correlation_id=self._correlation_id(),
            )
        )

    def append_log(
        self,
        entity_type: EntityType,
        operation: SyncOperation,
        direction: SyncDirection,
        status: SyncLogStatus,
        *,
        local_id: int | None = None,
        xero_id: str | None = None,
        before: Mapping[str, Any] | None = None,
        after: Mapping[str, Any] | None = None,
        change_hash: str | None = None,
        error_message: str | None = None,
        created_at: datetime | None = None,
    ) -> int:
        return self._sync_log.append(
            SyncLogEntry(
                correlation_id=self._correlation_id(),
                entity_type=entity_type,
                operation=operation,
                direction=direction,
                status=status,
                actor=_RUN_ACTOR.get() or self._actor,
                local_id=local_id,
                xero_id=xero_id,
                before_snapshot=dict(before) if before is not None else None,
                after_snapshot=dict(after) if after is not None else None,
                change_hash=change_hash,
                error_message=error_message,
                created_at=created_at or self._clock(),
            )
        )

    def register_conflict(
        self,
        entity_type: EntityType,
        state: SyncStateRecord,
        direction: SyncDirection,
        *,
        entity_name: str,
        local_fields: Mapping[str, Any],
        remote_fields: Mapping[str, Any],
        conflict_fields: tuple[str, ...],
        dry_run: bool = False,
    ) -> RecordResult:
        entry = ConflictEntry(
            entity_type=entity_type,
            local_id=state.local_id,
            xero_id=state.xero_id,
            entity_name=entity_name,
            local_data=dict(local_fields),
            remote_data=dict(remote_fields),
            conflict_fields=conflict_fields,
        )
        logger.warning(
            "Conflict on %s %s (%s): fields=%s",
            entity_type.value,
            state.local_id,
            entity_name,
            ",".join(conflict_fields),
        )
        if not dry_run:
            detected_at = self._clock()
            conflict_data = build_conflict_data(local_fields, remote_fields, conflict_fields, to_iso(detected_at) or "")
            with transaction(self._connection):
                self._sync_state.mark_conflict(entity_type, state.local_id, conflict_data, self._correlation_id())
                self.append_log(
                    entity_type,
                    SyncOperation.CONFLICT,
                    direction,
                    SyncLogStatus.CONFLICT,
                    local_id=state.local_id,
                    xero_id=state.xero_id,
                    before=local_fields,
                    after=remote_fields,
                    error_message=f"Conflicting fields: {', '.join(conflict_fields)}",
                    created_at=detected_at,
                )
        return RecordResult(
            RecordOutcome.CONFLICT,
            entity_type,
            local_id=state.local_id,
            xero_id=state.xero_id,
            conflict=entry,
        )

    def conflict_before_push(
        self,
        entity_type: EntityType,
        state: SyncStateRecord,
        *,
        entity_name: str,
        local_fields: Mapping[str, Any],
        remote_fields: Mapping[str, Any],
        local_modified: datetime | None,
        remote_modified: datetime | None,
        dry_run: bool = False,
    ) -> RecordResult | None:
        """Registers a conflict when Xero and the ERP both changed the record since the last sync."""
        conflict_fields = detect_conflicts(
            local_fields,
            remote_fields,
            state,
            local_modified=local_modified,
            remote_modified=remote_modified,
        )
        decision = evaluate_conflict(conflict_fields, state, SyncOrigin.LOCAL)
        if decision.outcome is not ConflictOutcome.ABORT_CONFLICT:
            return None
        return self.register_conflict(
            entity_type,
            state,
            SyncDirection.PUSH,
            entity_name=entity_name,
            local_fields=local_fields,
            remote_fields=remote_fields,
            conflict_fields=decision.conflict_fields,
            dry_run=dry_run,
        )

    def pending_conflict(self, entity_type: EntityType, state: SyncStateRecord, entity_name: str) -> RecordResult:
        """A row already waiting for an operator; counted again but not re-registered."""
        data = state.conflict_data or {}
        entry = ConflictEntry(
            entity_type=entity_type,
            local_id=state.local_id,
            xero_id=state.xero_id,
            entity_name=entity_name,
            local_data=dict(data.get("local_data") or {}),
            remote_data=dict(data.get("remote_data") or {}),
            conflict_fields=tuple(data.get("conflict_fields") or ()),
        )
        return RecordResult(
            RecordOutcome.CONFLICT,
            entity_type,
            local_id=state.local_id,
            xero_id=state.xero_id,
            conflict=entry,
            note="awaiting resolution",
        )

    def record_failure(
        self,
        entity_type: EntityType,
        direction: SyncDirection,
        exc: Exception,
        *,
        local_id: int | None = None,
        xero_id: str | None = None,
        dry_run: bool = False,
    ) -> ErrorDetail:
        detail = ErrorDetail(
            entity_type=entity_type,
            message=str(exc),
            xero_id=xero_id,
            local_id=local_id,
            error_type=type(exc).__name__,
        )
        if dry_run:
            return detail
        with transaction(self._connection):
            if local_id is not None:
                self._sync_state.mark_error(entity_type, local_id, self._correlation_id())
            self.append_log(
                entity_type,
                SyncOperation.UPDATE if local_id is not None else SyncOperation.CREATE,
                direction,
                SyncLogStatus.ERROR,
                local_id=local_id,
                xero_id=xero_id,
                error_message=f"{type(exc).__name__}: {exc}"[:2000],
            )
        return detail
