from __future__ import annotations

import contextlib
import dataclasses
import logging
import sqlite3
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, ContextManager

from xero_sync.application.use_cases.sync_xero.contact_sync import CONTACT_ENTITY_TYPES, ContactSyncHandler
from xero_sync.application.use_cases.sync_xero.invoice_sync import InvoiceSyncHandler
from xero_sync.application.use_cases.sync_xero.payment_sync import PaymentSyncHandler
from xero_sync.core.errors import ConflictNotFoundError, ValidationError
from xero_sync.core.observability import OperationContext, log_event
from xero_sync.domain.field_ownership import CORE_CONTACT_FIELDS
from xero_sync.domain.models import (
    EntityType,
    SyncDirection,
    SyncLogStatus,
    SyncOperation,
    SyncStateRecord,
    SyncStatus,
)
from xero_sync.domain.ports import SyncStateRepositoryPort, XeroApiPort
from xero_sync.domain.sync_models import RecordOutcome, RecordResult
from xero_sync.domain.time_utils import utc_now
from xero_sync.infrastructure.sqlite_uow import transaction
from xero_sync.infrastructure.xero_payloads import parse_contact

logger = logging.getLogger(__name__)

RESOLUTIONS = ("use_local", "use_remote", "manual")

RunGuard = Callable[[EntityType, SyncDirection], ContextManager[None]]


@dataclass(frozen=True)
class ConflictRecord:
    entity_type: EntityType
    local_id: int
    xero_id: str | None
    local_data: dict[str, Any]
    remote_data: dict[str, Any]
    conflict_fields: tuple[str, ...]
    detected_at: str
    correlation_id: str | None


def _conflict_record(state: SyncStateRecord) -> ConflictRecord:
    data = state.conflict_data or {}
    return ConflictRecord(
        entity_type=state.entity_type,
        local_id=state.local_id,
        xero_id=state.xero_id,
        local_data=dict(data.get("local_data") or {}),
        remote_data=dict(data.get("remote_data") or {}),
        conflict_fields=tuple(data.get("conflict_fields") or ()),
        detected_at=str(data.get("detected_at") or ""),
        correlation_id=state.correlation_id,
    )


class ConflictsService:
    """Lists rows parked in CONFLICT and applies an operator's decision to them.

    Contacts can be resolved any way. Invoices and payments accept
    ``use_local``, which force-pushes the local row, and ``use_remote``, which
    clears the stored remote hash and lets the next pull rewrite the row.
    ``run_guard`` holds the same run locks as a sync of that entity, so a
    resolution never races a running sync.
    """

    def __init__(
        self,
        connection: sqlite3.Connection,
        sync_state: SyncStateRepositoryPort,
        contacts: ContactSyncHandler,
        api: XeroApiPort | None = None,
        *,
        invoices: InvoiceSyncHandler | None = None,
        payments: PaymentSyncHandler | None = None,
        run_guard: RunGuard | None = None,
    ) -> None:
        self._connection = connection
        self._sync_state = sync_state
        self._contacts = contacts
        self._api = api
        self._invoices = invoices
        self._payments = payments
        self._run_guard = run_guard

    def list_conflicts(self) -> list[ConflictRecord]:
        return [_conflict_record(state) for state in self._sync_state.list_conflicts()]

    def count_conflicts(self) -> int:
        return len(self._sync_state.list_conflicts())

    def resolve_conflict(
        self,
        entity_type: EntityType,
        entity_id: int,
        resolution: str,
        manual_data: Mapping[str, Any] | None = None,
    ) -> RecordResult:
        resolution = resolution.strip().lower()
        if resolution not in RESOLUTIONS:
            raise ValidationError(f"Unknown resolution {resolution!r}; expected one of {', '.join(RESOLUTIONS)}")
        state = self._sync_state.get(entity_type, entity_id)
        if state is None or state.status is not SyncStatus.CONFLICT:
            raise ConflictNotFoundError(f"{entity_type.value} {entity_id} has no pending conflict")
        if resolution == "manual" and not manual_data:
            raise ValidationError("Manual resolution requires the field values to apply")

        direction = SyncDirection.PULL if resolution == "use_remote" else SyncDirection.PUSH
        with OperationContext("xero_sync.resolve_conflict") as operation, self._guard(entity_type, direction):
            if entity_type not in CONTACT_ENTITY_TYPES:
                result = self._resolve_document(state, resolution)
            elif resolution == "use_local":
                result = self._contacts.push_record(entity_type, entity_id, force=True)
            elif resolution == "use_remote":
                result = self._use_remote(state)
            else:
                result = self._apply_manual(entity_type, entity_id, manual_data or {})

            with transaction(self._connection):
                self._contacts.append_log(
                    entity_type,
                    SyncOperation.RESOLVE,
                    direction,
                    SyncLogStatus.SUCCESS,
                    local_id=entity_id,
                    xero_id=result.xero_id or state.xero_id,
                    before=(state.conflict_data or {}).get("local_data"),
                    after={"resolution": resolution, "outcome": result.outcome.value},
                )
            log_event(
                logger,
                "conflict_resolved",
                {
                    "entity": entity_type.value,
                    "local_id": entity_id,
                    "resolution": resolution,
                    "outcome": result.outcome.value,
                },
                operation.correlation_id,
            )
        return result

    def _guard(self, entity_type: EntityType, direction: SyncDirection) -> ContextManager[None]:
        if self._run_guard is None:
            return contextlib.nullcontext()
        return self._run_guard(entity_type, direction)

    def _resolve_document(self, state: SyncStateRecord, resolution: str) -> RecordResult:
        if resolution == "manual":
            raise ValidationError(
                f"Manual resolution applies to contacts only; resolve {state.entity_type.value} with use_local or use_remote"
            )
        if resolution == "use_local":
            handler = self._invoices if state.entity_type is EntityType.INVOICE else self._payments
            if handler is None:
                raise ValidationError(f"Pushing {state.entity_type.value} records is not configured")
            return handler.push_record(state.local_id, force=True)
        with transaction(self._connection):
            self._sync_state.reopen(state.entity_type, state.local_id, clear_remote_hash=True)
        logger.info(
            "%s %s reopened; the next pull will apply the Xero version",
            state.entity_type.value,
            state.local_id,
        )
        return RecordResult(RecordOutcome.SKIPPED, state.entity_type, local_id=state.local_id, xero_id=state.xero_id)

    def _use_remote(self, state: SyncStateRecord) -> RecordResult:
        if self._api is None:
            raise ValidationError("Resolving with the Xero version requires a Xero client")
        if not state.xero_id:
            raise ValidationError(f"{state.entity_type.value} {state.local_id} is not linked to a Xero contact")
        raw = self._api.get_contact(state.xero_id)
        if raw is None:
            raise ValidationError(f"Xero contact {state.xero_id} no longer exists")
        remote = parse_contact(raw)
        with transaction(self._connection):
            self._sync_state.reopen(state.entity_type, state.local_id, clear_remote_hash=True)
            results = self._contacts.pull_record(remote, force=True, roles=(state.entity_type,))
        if not results:
            # The contact lost this role in Xero; nothing left to overwrite.
            return RecordResult(RecordOutcome.SKIPPED, state.entity_type, local_id=state.local_id, xero_id=state.xero_id)
        return results[0]

    def _apply_manual(self, entity_type: EntityType, entity_id: int, manual_data: Mapping[str, Any]) -> RecordResult:
        values = {key: value for key, value in manual_data.items() if key in CORE_CONTACT_FIELDS}
        ignored = sorted(set(manual_data) - set(values))
        if ignored:
            logger.warning("Ignoring unknown fields in manual resolution: %s", ", ".join(ignored))
        if not values:
            raise ValidationError("Manual resolution data has no known contact fields")

        repository = self._contacts.repository_for(entity_type)
        local = repository.find_by_id(entity_id)
        if local is None:
            raise ValidationError(f"{entity_type.value} {entity_id} does not exist")
        with transaction(self._connection):
            repository.update(dataclasses.replace(local, **values, updated_at=utc_now()))
        return self._contacts.push_record(entity_type, entity_id, force=True)
