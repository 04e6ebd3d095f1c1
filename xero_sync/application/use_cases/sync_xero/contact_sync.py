from __future__ import annotations

import dataclasses
import logging
import sqlite3
from datetime import datetime
from typing import Any, Callable

from xero_sync.application.use_cases.sync_xero.handler_base import SyncHandlerBase
from xero_sync.core.errors import ExternalServiceError, ValidationError
from xero_sync.domain.canonical import compute_hash, extract_contact_fields
from xero_sync.domain.conflict_policy import ConflictOutcome, detect_conflicts, evaluate_conflict
from xero_sync.domain.field_ownership import merge_with_ownership
from xero_sync.domain.models import (
    EntityType,
    LocalContact,
    LocalCustomer,
    LocalSupplier,
    RemoteContact,
    SyncDirection,
    SyncLogStatus,
    SyncOperation,
    SyncOrigin,
    SyncStateRecord,
    SyncStatus,
)
from xero_sync.domain.numbering import next_customer_number, next_supplier_number
from xero_sync.domain.ports import (
    ContactRepositoryPort,
    SyncLogRepositoryPort,
    SyncStateRepositoryPort,
    XeroApiPort,
)
from xero_sync.domain.sync_models import RecordOutcome, RecordResult
from xero_sync.domain.time_utils import utc_now
from xero_sync.domain.xero_errors import XeroAuthError
from xero_sync.infrastructure.sqlite_uow import transaction
from xero_sync.infrastructure.xero_payloads import build_contact_payload, parse_contact, remote_contact_to_local_fields

logger = logging.getLogger(__name__)

GENERAL_CONTACT_NOTE = "[General Contact - synced from Xero]"
CONTACT_ENTITY_TYPES = (EntityType.CUSTOMER, EntityType.SUPPLIER)


def _record_fields(record: LocalContact) -> dict[str, Any]:
    return {item.name: getattr(record, item.name) for item in dataclasses.fields(record)}


def _only_known(record_type: type, values: dict[str, Any]) -> dict[str, Any]:
    known = {item.name for item in dataclasses.fields(record_type)}
    return {key: value for key, value in values.items() if key in known}


class ContactSyncHandler(SyncHandlerBase):
    """Pulls Xero contacts into customer/supplier rows and pushes those rows back.

    A Xero contact can be a customer, a supplier or both; each role gets its
    own local row and its own sync state, linked only through xero_contact_id.
    """

    def __init__(
        self,
        connection: sqlite3.Connection,
        customers: ContactRepositoryPort,
        suppliers: ContactRepositoryPort,
        sync_state: SyncStateRepositoryPort,
        sync_log: SyncLogRepositoryPort,
        api: XeroApiPort | None = None,
        *,
        general_contact_policy: str = "store",
        actor: str = "xero-sync",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(connection, sync_state, sync_log, actor=actor, clock=clock)
        self._repositories: dict[EntityType, ContactRepositoryPort] = {
            EntityType.CUSTOMER: customers,
            EntityType.SUPPLIER: suppliers,
        }
        self._api = api
        self._general_contact_policy = general_contact_policy

    def repository_for(self, entity_type: EntityType) -> ContactRepositoryPort:
        try:
            return self._repositories[entity_type]
        except KeyError:
            raise ValidationError(f"{entity_type.value} is not a contact entity") from None

    # Pull

    def pull_record(
        self,
        remote: RemoteContact,
        *,
        dry_run: bool = False,
        force: bool = False,
        roles: tuple[EntityType, ...] | None = None,
    ) -> tuple[RecordResult, ...]:
        general = not remote.is_customer and not remote.is_supplier
        if general and self._general_contact_policy == "skip":
            logger.debug("Skipping general contact %s (%s)", remote.contact_id, remote.name)
            return (
                RecordResult(
                    RecordOutcome.SKIPPED,
                    EntityType.CONTACT,
                    xero_id=remote.contact_id,
                    note="general contact skipped by policy",
                ),
            )

        wanted: list[EntityType] = []
        if remote.is_customer or general:
            wanted.append(EntityType.CUSTOMER)
        if remote.is_supplier:
            wanted.append(EntityType.SUPPLIER)
        if roles is not None:
            wanted = [entity_type for entity_type in wanted if entity_type in roles]

        remote_fields = extract_contact_fields(remote)
        remote_hash = compute_hash(remote_fields)
        return tuple(
            self._pull_role(entity_type, remote, remote_fields, remote_hash, general=general, dry_run=dry_run, force=force)
            for entity_type in wanted
        )

    def _find_local(self, entity_type: EntityType, xero_contact_id: str) -> LocalContact | None:
        repository = self.repository_for(entity_type)
        existing = repository.find_by_external_id(xero_contact_id)
        if existing is not None:
            return existing
        state = self._sync_state.get_by_xero_id(entity_type, xero_contact_id)
        return repository.find_by_id(state.local_id) if state else None

    def _pull_role(
        self,
        entity_type: EntityType,
        remote: RemoteContact,
        remote_fields: dict[str, Any],
        remote_hash: str,
        *,
        general: bool,
        dry_run: bool,
        force: bool,
    ) -> RecordResult:
        incoming = remote_contact_to_local_fields(remote)
        existing = self._find_local(entity_type, remote.contact_id)
        if existing is None:
            return self._create_from_remote(entity_type, remote, incoming, remote_hash, general=general, dry_run=dry_run)

        assert existing.id is not None
        state = self._sync_state.get(entity_type, existing.id)
        if not force and state is not None:
            if state.status is SyncStatus.CONFLICT:
                return self.pending_conflict(entity_type, state, existing.name)
            if state.last_remote_hash == remote_hash and state.sync_origin is not SyncOrigin.LOCAL:
                return RecordResult(RecordOutcome.SKIPPED, entity_type, local_id=existing.id, xero_id=remote.contact_id)

        local_fields = extract_contact_fields(existing)
        if not force and state is not None:
            conflict_fields = detect_conflicts(
                local_fields,
                remote_fields,
                state,
                local_modified=existing.updated_at,
                remote_modified=remote.updated_at,
            )
            decision = evaluate_conflict(conflict_fields, state, SyncOrigin.REMOTE)
            if decision.outcome is ConflictOutcome.ABORT_CONFLICT:
                return self.register_conflict(
                    entity_type,
                    state,
                    SyncDirection.PULL,
                    entity_name=existing.name,
                    local_fields=local_fields,
                    remote_fields=remote_fields,
                    conflict_fields=decision.conflict_fields,
                    dry_run=dry_run,
                )

        merged = merge_with_ownership(_record_fields(existing), incoming, SyncDirection.PULL)
        now = self._clock()
        values = _only_known(type(existing), merged)
        values["updated_at"] = now
        updated = dataclasses.replace(existing, **values)
        if dry_run:
            return RecordResult(RecordOutcome.UPDATED, entity_type, local_id=existing.id, xero_id=remote.contact_id)

        repository = self.repository_for(entity_type)
        with transaction(self._connection):
            repository.update(updated)
            new_local_fields = extract_contact_fields(updated)
            self.write_sync_state(
                entity_type,
                existing.id,
                remote.contact_id,
                local_hash=compute_hash(new_local_fields),
                remote_hash=remote_hash,
                synced_at=now,
                local_modified=now,
                remote_modified=remote.updated_at,
                origin=SyncOrigin.REMOTE,
            )
            self.append_log(
                entity_type,
                SyncOperation.UPDATE,
                SyncDirection.PULL,
                SyncLogStatus.SUCCESS,
                local_id=existing.id,
                xero_id=remote.contact_id,
                before=local_fields,
                after=new_local_fields,
                change_hash=remote_hash,
                created_at=now,
            )
        return RecordResult(RecordOutcome.UPDATED, entity_type, local_id=existing.id, xero_id=remote.contact_id)

    def _create_from_remote(
        self,
        entity_type: EntityType,
        remote: RemoteContact,
        incoming: dict[str, Any],
        remote_hash: str,
        *,
        general: bool,
        dry_run: bool,
    ) -> RecordResult:
        record_type = LocalCustomer if entity_type is EntityType.CUSTOMER else LocalSupplier
        merged = merge_with_ownership(None, incoming, SyncDirection.PULL)
        if dry_run:
            return RecordResult(RecordOutcome.CREATED, entity_type, xero_id=remote.contact_id)

        repository = self.repository_for(entity_type)
        now = self._clock()
        with transaction(self._connection, immediate=True):
            existing_numbers = repository.list_numbers()
            if entity_type is EntityType.CUSTOMER:
                number_field = {"customer_number": next_customer_number(existing_numbers)}
            else:
                number_field = {"supplier_number": next_supplier_number(existing_numbers)}
            record = record_type(
                id=None,
                **_only_known(record_type, merged),
                **number_field,
                notes=GENERAL_CONTACT_NOTE if general else "",
                is_active=remote.contact_status.upper() != "ARCHIVED",
                created_at=now,
                updated_at=now,
            )
            created = repository.create(record)
            assert created.id is not None
            local_fields = extract_contact_fields(created)
            self.write_sync_state(
                entity_type,
                created.id,
                remote.contact_id,
                local_hash=compute_hash(local_fields),
                remote_hash=remote_hash,
                synced_at=now,
                local_modified=now,
                remote_modified=remote.updated_at,
                origin=SyncOrigin.REMOTE,
            )
            self.append_log(
                entity_type,
                SyncOperation.CREATE,
                SyncDirection.PULL,
                SyncLogStatus.SUCCESS,
                local_id=created.id,
                xero_id=remote.contact_id,
                after=local_fields,
                change_hash=remote_hash,
                created_at=now,
            )
        logger.info("Created %s %s from Xero contact %s", entity_type.value.lower(), created.id, remote.contact_id)
        return RecordResult(RecordOutcome.CREATED, entity_type, local_id=created.id, xero_id=remote.contact_id)

    # Push

    def push_record(
        self,
        entity_type: EntityType,
        local_id: int,
        *,
        dry_run: bool = False,
        force: bool = False,
    ) -> RecordResult:
        repository = self.repository_for(entity_type)
        local = repository.find_by_id(local_id)
        if local is None:
            raise ValidationError(f"{entity_type.value} {local_id} does not exist")

        state = self._sync_state.get(entity_type, local_id)
        local_fields = extract_contact_fields(local)
        local_hash = compute_hash(local_fields)
        if not force and state is not None:
            if state.status is SyncStatus.CONFLICT:
                return self.pending_conflict(entity_type, state, local.name)
            if (
                local.xero_contact_id
                and state.last_local_hash == local_hash
                and state.sync_origin is not SyncOrigin.REMOTE
            ):
                return RecordResult(RecordOutcome.SKIPPED, entity_type, local_id=local_id, xero_id=local.xero_contact_id)

        remote_before: dict[str, Any] | None = None
        if local.xero_contact_id and state is not None and state.sync_origin is SyncOrigin.REMOTE and not force:
            remote_before = self._conflict_check_before_push(entity_type, local, local_fields, state, dry_run=dry_run)
            if isinstance(remote_before, RecordResult):
                return remote_before

        payload = build_contact_payload(merge_with_ownership(_record_fields(local), {}, SyncDirection.PUSH))
        operation = SyncOperation.UPDATE if local.xero_contact_id else SyncOperation.CREATE
        if dry_run:
            outcome = RecordOutcome.UPDATED if local.xero_contact_id else RecordOutcome.CREATED
            return RecordResult(outcome, entity_type, local_id=local_id, xero_id=local.xero_contact_id)
        if self._api is None:
            raise ValidationError("Pushing contacts requires a Xero client")

        try:
            if local.xero_contact_id:
                response = self._api.update_contact(local.xero_contact_id, payload)
            else:
                response = self._api.create_contact(payload)
        except XeroAuthError:
            raise
        except ExternalServiceError as exc:
            logger.error("Push of %s %s to Xero failed: %s", entity_type.value.lower(), local_id, exc)
            raise

        remote = parse_contact(response)
        now = self._clock()
        linked = dataclasses.replace(
            local,
            xero_contact_id=remote.contact_id,
            xero_updated_at=remote.updated_at or local.xero_updated_at,
            updated_at=now,
        )
        with transaction(self._connection):
            repository.update(linked)
            self.write_sync_state(
                entity_type,
                local_id,
                remote.contact_id,
                local_hash=compute_hash(extract_contact_fields(linked)),
                remote_hash=compute_hash(extract_contact_fields(remote)),
                synced_at=now,
                local_modified=now,
                remote_modified=remote.updated_at,
                origin=SyncOrigin.LOCAL,
            )
            self.append_log(
                entity_type,
                operation,
                SyncDirection.PUSH,
                SyncLogStatus.SUCCESS,
                local_id=local_id,
                xero_id=remote.contact_id,
                before=remote_before,
                after=local_fields,
                change_hash=local_hash,
                created_at=now,
            )
        logger.info("Pushed %s %s to Xero contact %s", entity_type.value.lower(), local_id, remote.contact_id)
        outcome = RecordOutcome.UPDATED if operation is SyncOperation.UPDATE else RecordOutcome.CREATED
        return RecordResult(outcome, entity_type, local_id=local_id, xero_id=remote.contact_id)

    def _conflict_check_before_push(
        self,
        entity_type: EntityType,
        local: LocalContact,
        local_fields: dict[str, Any],
        state: SyncStateRecord,
        *,
        dry_run: bool,
    ) -> dict[str, Any] | RecordResult | None:
        if self._api is None or not local.xero_contact_id:
            return None
        raw = self._api.get_contact(local.xero_contact_id)
        if raw is None:
            return None
        remote = parse_contact(raw)
        remote_fields = extract_contact_fields(remote)
        conflict = self.conflict_before_push(
            entity_type,
            state,
            entity_name=local.name,
            local_fields=local_fields,
            remote_fields=remote_fields,
            local_modified=local.updated_at,
            remote_modified=remote.updated_at,
            dry_run=dry_run,
        )
        return conflict if conflict is not None else remote_fields
