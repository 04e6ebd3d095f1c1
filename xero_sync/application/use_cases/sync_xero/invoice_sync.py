from __future__ import annotations

import dataclasses
import logging
import sqlite3
from datetime import datetime
from typing import Any, Callable

from xero_sync.application.use_cases.sync_xero.handler_base import SyncHandlerBase
from xero_sync.core.errors import ExternalServiceError, MissingParentError, ValidationError
from xero_sync.domain.canonical import compute_hash, extract_invoice_fields, summarize_line_items
from xero_sync.domain.conflict_policy import ConflictOutcome, detect_conflicts, evaluate_conflict
from xero_sync.domain.invoice_totals import compute_invoice_totals
from xero_sync.domain.models import (
    EntityType,
    InvoiceType,
    LocalContact,
    LocalInvoice,
    RemoteInvoice,
    SyncDirection,
    SyncLogStatus,
    SyncOperation,
    SyncOrigin,
    SyncStatus,
)
from xero_sync.domain.ports import (
    ContactRepositoryPort,
    InvoiceRepositoryPort,
    PaymentRepositoryPort,
    SyncLogRepositoryPort,
    SyncStateRepositoryPort,
    XeroApiPort,
)
from xero_sync.domain.sync_models import RecordOutcome, RecordResult
from xero_sync.domain.time_utils import utc_now
from xero_sync.domain.xero_errors import XeroAuthError
from xero_sync.infrastructure.sqlite_uow import transaction
from xero_sync.infrastructure.xero_payloads import build_invoice_payload, parse_invoice

logger = logging.getLogger(__name__)


class InvoiceSyncHandler(SyncHandlerBase):
    """Moves invoices (ACCREC) and bills (ACCPAY) between Xero and their local parent contact."""

    def __init__(
        self,
        connection: sqlite3.Connection,
        invoices: InvoiceRepositoryPort,
        customers: ContactRepositoryPort,
        suppliers: ContactRepositoryPort,
        payments: PaymentRepositoryPort,
        sync_state: SyncStateRepositoryPort,
        sync_log: SyncLogRepositoryPort,
        api: XeroApiPort | None = None,
        *,
        actor: str = "xero-sync",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(connection, sync_state, sync_log, actor=actor, clock=clock)
        self._invoices = invoices
        self._customers = customers
        self._suppliers = suppliers
        self._payments = payments
        self._api = api

    def _resolve_parent(self, remote: RemoteInvoice) -> tuple[int | None, int | None]:
        if remote.invoice_type is InvoiceType.ACCREC:
            customer = self._customers.find_by_external_id(remote.contact_id)
            if customer is None:
                raise MissingParentError(
                    f"Invoice {remote.invoice_number or remote.invoice_id} references customer "
                    f"{remote.contact_id} which has not been synced",
                    parent_type=EntityType.CUSTOMER.value,
                    parent_xero_id=remote.contact_id,
                )
            return customer.id, None
        supplier = self._suppliers.find_by_external_id(remote.contact_id)
        if supplier is None:
            raise MissingParentError(
                f"Bill {remote.invoice_number or remote.invoice_id} references supplier "
                f"{remote.contact_id} which has not been synced",
                parent_type=EntityType.SUPPLIER.value,
                parent_xero_id=remote.contact_id,
            )
        return None, supplier.id

    def _build_local(self, remote: RemoteInvoice, existing: LocalInvoice | None) -> LocalInvoice:
        customer_id, supplier_id = self._resolve_parent(remote)
        payments = self._payments.list_for_invoice(existing.id) if existing and existing.id is not None else []
        totals = compute_invoice_totals(remote.total, payments)
        return LocalInvoice(
            id=existing.id if existing else None,
            invoice_number=remote.invoice_number,
            invoice_type=remote.invoice_type,
            customer_id=customer_id,
            supplier_id=supplier_id,
            xero_invoice_id=remote.invoice_id,
            xero_contact_id=remote.contact_id,
            reference=remote.reference,
            issue_date=remote.issue_date,
            due_date=remote.due_date,
            currency=remote.currency,
            subtotal=remote.subtotal,
            total_tax=remote.total_tax,
            total=remote.total,
            amount_paid=totals.amount_paid,
            amount_due=totals.amount_due,
            status=totals.status,
            xero_status=remote.status,
            line_item_count=len(remote.line_items),
            line_items_summary=summarize_line_items(remote.line_items),
            line_items=remote.line_items,
            xero_updated_at=remote.updated_at,
            created_at=existing.created_at if existing else None,
        )

    def pull_record(self, remote: RemoteInvoice, *, dry_run: bool = False, force: bool = False) -> RecordResult:
        remote_fields = extract_invoice_fields(remote)
        remote_hash = compute_hash(remote_fields)
        existing = self._invoices.find_by_external_id(remote.invoice_id)
        state = self._sync_state.get(EntityType.INVOICE, existing.id) if existing and existing.id else None
        label = remote.invoice_number or remote.invoice_id

        if not force and state is not None:
            if state.status is SyncStatus.CONFLICT:
                return self.pending_conflict(EntityType.INVOICE, state, label)
            if state.last_remote_hash == remote_hash and state.sync_origin is not SyncOrigin.LOCAL:
                return RecordResult(
                    RecordOutcome.SKIPPED,
                    EntityType.INVOICE,
                    local_id=existing.id if existing else None,
                    xero_id=remote.invoice_id,
                )

        local_fields = extract_invoice_fields(existing) if existing else None
        if existing is not None and local_fields is not None and state is not None and not force:
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
                    EntityType.INVOICE,
                    state,
                    SyncDirection.PULL,
                    entity_name=label,
                    local_fields=local_fields,
                    remote_fields=remote_fields,
                    conflict_fields=decision.conflict_fields,
                    dry_run=dry_run,
                )

        record = self._build_local(remote, existing)
        outcome = RecordOutcome.UPDATED if existing else RecordOutcome.CREATED
        if dry_run:
            return RecordResult(outcome, EntityType.INVOICE, local_id=record.id, xero_id=remote.invoice_id)

        now = self._clock()
        with transaction(self._connection):
            if existing is None:
                stored = self._invoices.create(dataclasses.replace(record, created_at=now, updated_at=now))
            else:
                stored = self._invoices.update(dataclasses.replace(record, updated_at=now))
            assert stored.id is not None
            new_local_fields = extract_invoice_fields(stored)
            self.write_sync_state(
                EntityType.INVOICE,
                stored.id,
                remote.invoice_id,
                local_hash=compute_hash(new_local_fields),
                remote_hash=remote_hash,
                synced_at=now,
                local_modified=now,
                remote_modified=remote.updated_at,
                origin=SyncOrigin.REMOTE,
            )
            self.append_log(
                EntityType.INVOICE,
                SyncOperation.UPDATE if existing else SyncOperation.CREATE,
                SyncDirection.PULL,
                SyncLogStatus.SUCCESS,
                local_id=stored.id,
                xero_id=remote.invoice_id,
                before=local_fields,
                after=new_local_fields,
                change_hash=remote_hash,
                created_at=now,
            )
        logger.debug("%s invoice %s from Xero %s", outcome.value.capitalize(), stored.id, remote.invoice_id)
        return RecordResult(outcome, EntityType.INVOICE, local_id=stored.id, xero_id=remote.invoice_id)

    # Push

    def push_candidates(self) -> list[int]:
        return [invoice.id for invoice in self._invoices.list_all() if invoice.id is not None]

    def _pushed_contact(self, invoice: LocalInvoice, label: str) -> LocalContact:
        if invoice.invoice_type is InvoiceType.ACCREC:
            parent_type = EntityType.CUSTOMER
            contact = self._customers.find_by_id(invoice.customer_id) if invoice.customer_id else None
        else:
            parent_type = EntityType.SUPPLIER
            contact = self._suppliers.find_by_id(invoice.supplier_id) if invoice.supplier_id else None
        if contact is None or not contact.xero_contact_id:
            raise MissingParentError(
                f"Invoice {label} belongs to a {parent_type.value.lower()} that has not been pushed to Xero",
                parent_type=parent_type.value,
                parent_xero_id=invoice.xero_contact_id,
            )
        return contact

    def push_record(self, local_id: int, *, dry_run: bool = False, force: bool = False) -> RecordResult:
        invoice = self._invoices.find_by_id(local_id)
        if invoice is None:
            raise ValidationError(f"Invoice {local_id} does not exist")
        label = invoice.invoice_number or f"#{local_id}"

        state = self._sync_state.get(EntityType.INVOICE, local_id)
        local_fields = extract_invoice_fields(invoice)
        local_hash = compute_hash(local_fields)
        if not force and state is not None:
            if state.status is SyncStatus.CONFLICT:
                return self.pending_conflict(EntityType.INVOICE, state, label)
            if invoice.xero_invoice_id and state.last_local_hash == local_hash:
                return RecordResult(
                    RecordOutcome.SKIPPED,
                    EntityType.INVOICE,
                    local_id=local_id,
                    xero_id=invoice.xero_invoice_id,
                )

        contact = self._pushed_contact(invoice, label)
        if not invoice.line_items:
            raise ValidationError(f"Invoice {label} has no line items to send to Xero")

        remote_before: dict[str, Any] | None = None
        if (
            invoice.xero_invoice_id
            and state is not None
            and state.sync_origin is SyncOrigin.REMOTE
            and not force
            and self._api is not None
        ):
            raw = self._api.get_invoice(invoice.xero_invoice_id)
            if raw is not None:
                current = parse_invoice(raw)
                remote_before = extract_invoice_fields(current)
                conflict = self.conflict_before_push(
                    EntityType.INVOICE,
                    state,
                    entity_name=label,
                    local_fields=local_fields,
                    remote_fields=remote_before,
                    local_modified=invoice.updated_at,
                    remote_modified=current.updated_at,
                    dry_run=dry_run,
                )
                if conflict is not None:
                    return conflict

        assert contact.xero_contact_id is not None
        payload = build_invoice_payload(invoice, contact_id=contact.xero_contact_id, contact_name=contact.name)
        operation = SyncOperation.UPDATE if invoice.xero_invoice_id else SyncOperation.CREATE
        outcome = RecordOutcome.UPDATED if invoice.xero_invoice_id else RecordOutcome.CREATED
        if dry_run:
            return RecordResult(outcome, EntityType.INVOICE, local_id=local_id, xero_id=invoice.xero_invoice_id)
        if self._api is None:
            raise ValidationError("Pushing invoices requires a Xero client")

        try:
            if invoice.xero_invoice_id:
                response = self._api.update_invoice(invoice.xero_invoice_id, payload)
            else:
                response = self._api.create_invoice(payload)
        except XeroAuthError:
            raise
        except ExternalServiceError as exc:
            logger.error("Push of invoice %s to Xero failed: %s", label, exc)
            raise

        remote = parse_invoice(response)
        now = self._clock()
        linked = dataclasses.replace(
            invoice,
            xero_invoice_id=remote.invoice_id,
            xero_contact_id=contact.xero_contact_id,
            xero_status=remote.status or invoice.xero_status,
            xero_updated_at=remote.updated_at or invoice.xero_updated_at,
            updated_at=now,
        )
        with transaction(self._connection):
            self._invoices.update(linked)
            new_local_fields = extract_invoice_fields(linked)
            self.write_sync_state(
                EntityType.INVOICE,
                local_id,
                remote.invoice_id,
                local_hash=compute_hash(new_local_fields),
                remote_hash=compute_hash(extract_invoice_fields(remote)),
                synced_at=now,
                local_modified=now,
                remote_modified=remote.updated_at,
                origin=SyncOrigin.LOCAL,
            )
            self.append_log(
                EntityType.INVOICE,
                operation,
                SyncDirection.PUSH,
                SyncLogStatus.SUCCESS,
                local_id=local_id,
                xero_id=remote.invoice_id,
                before=remote_before,
                after=new_local_fields,
                change_hash=local_hash,
                created_at=now,
            )
        logger.info("Pushed invoice %s to Xero %s", label, remote.invoice_id)
        return RecordResult(outcome, EntityType.INVOICE, local_id=local_id, xero_id=remote.invoice_id)
