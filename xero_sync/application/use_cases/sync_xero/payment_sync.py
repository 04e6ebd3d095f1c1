from __future__ import annotations

import dataclasses
import logging
import sqlite3
from collections.abc import Sequence
from datetime import datetime
from decimal import Decimal
from typing import Callable

from xero_sync.application.use_cases.sync_xero.handler_base import SyncHandlerBase
from xero_sync.core.errors import ExternalServiceError, MissingParentError, ValidationError
from xero_sync.domain.canonical import compute_hash, extract_payment_fields
from xero_sync.domain.invoice_totals import InvoiceTotals, compute_invoice_totals, exceeds_variance
from xero_sync.domain.models import (
    EntityType,
    InvoiceStatus,
    LocalInvoice,
    LocalPayment,
    PaymentStatus,
    RemotePayment,
    SyncDirection,
    SyncLogStatus,
    SyncOperation,
    SyncOrigin,
    SyncStatus,
)
from xero_sync.domain.ports import (
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
from xero_sync.infrastructure.xero_payloads import build_payment_payload, parse_payment

logger = logging.getLogger(__name__)

_FAILED_REMOTE_STATUSES = frozenset({"DELETED", "VOIDED"})
# Xero only accepts payments against approved invoices.
_UNPAYABLE_INVOICE_STATUSES = frozenset({"DRAFT", "SUBMITTED", "DELETED", "VOIDED"})


def payment_status_from_remote(remote_status: str) -> PaymentStatus:
    return PaymentStatus.FAILED if remote_status.upper() in _FAILED_REMOTE_STATUSES else PaymentStatus.COMPLETED


def payment_push_problems(
    payment: LocalPayment,
    invoice: LocalInvoice | None,
    other_payments: Sequence[LocalPayment] = (),
) -> list[str]:
    """Every reason Xero would reject this payment, checked before any request is sent."""
    problems: list[str] = []
    if payment.amount <= 0:
        problems.append(f"amount must be greater than 0, got {payment.amount}")
    if payment.status is not PaymentStatus.COMPLETED:
        problems.append(f"payment is {payment.status.value}")
    if invoice is None:
        problems.append(f"invoice {payment.invoice_id} does not exist")
        return problems

    label = invoice.invoice_number or f"#{invoice.id}"
    if not invoice.xero_invoice_id:
        problems.append(f"invoice {label} has not been synced to Xero")
    if payment.currency and invoice.currency and payment.currency.upper() != invoice.currency.upper():
        problems.append(f"currency {payment.currency} does not match invoice currency {invoice.currency}")
    amount_due = compute_invoice_totals(invoice.total, other_payments).amount_due
    if payment.amount > amount_due:
        problems.append(f"amount {payment.amount} exceeds the {amount_due} still due on invoice {label}")
    if invoice.xero_status.upper() in _UNPAYABLE_INVOICE_STATUSES:
        problems.append(f"invoice {label} is {invoice.xero_status.upper()} in Xero")
    return problems


class PaymentSyncHandler(SyncHandlerBase):
    def __init__(
        self,
        connection: sqlite3.Connection,
        payments: PaymentRepositoryPort,
        invoices: InvoiceRepositoryPort,
        sync_state: SyncStateRepositoryPort,
        sync_log: SyncLogRepositoryPort,
        api: XeroApiPort | None = None,
        *,
        variance_threshold: float = 0.05,
        bank_account_code: str = "",
        actor: str = "xero-sync",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(connection, sync_state, sync_log, actor=actor, clock=clock)
        self._payments = payments
        self._invoices = invoices
        self._variance_threshold = variance_threshold
        self._api = api
        self._bank_account_code = bank_account_code

    def recompute_invoice_totals(self, invoice_id: int) -> InvoiceTotals:
        """Re-derives paid, due and status from every stored payment of the invoice."""
        invoice = self._invoices.find_by_id(invoice_id)
        if invoice is None:
            raise ValidationError(f"Invoice {invoice_id} does not exist")
        totals = compute_invoice_totals(invoice.total, self._payments.list_for_invoice(invoice_id))
        with transaction(self._connection):
            self._invoices.update_payment_totals(invoice_id, totals.amount_paid, totals.amount_due, totals.status)
        return totals

    @staticmethod
    def _validate(remote: RemotePayment) -> None:
        if not remote.date:
            raise ValidationError(f"Payment {remote.payment_id} has no date")
        if remote.amount <= 0:
            raise ValidationError(f"Payment {remote.payment_id} amount must be positive, got {remote.amount}")
        if not remote.invoice_id:
            raise ValidationError(f"Payment {remote.payment_id} is not linked to an invoice")

    def _variance_note(
        self,
        remote: RemotePayment,
        invoice: LocalInvoice,
        existing: LocalPayment | None,
        status: PaymentStatus,
    ) -> str | None:
        if status is not PaymentStatus.COMPLETED or invoice.id is None:
            return None
        if not exceeds_variance(invoice.total, remote.amount, self._variance_threshold):
            return None
        others = [
            payment
            for payment in self._payments.list_for_invoice(invoice.id)
            if existing is None or payment.id != existing.id
        ]
        candidate = LocalPayment(id=None, invoice_id=invoice.id, amount=remote.amount, status=status)
        if compute_invoice_totals(invoice.total, [*others, candidate]).status is InvoiceStatus.PAID:
            return None
        note = (
            f"Payment {remote.amount} differs from invoice {invoice.invoice_number} total {invoice.total} "
            f"by more than {Decimal(str(self._variance_threshold)) * 100:.0f}%"
        )
        logger.warning("%s (payment %s)", note, remote.payment_id)
        return note

    def pull_record(self, remote: RemotePayment, *, dry_run: bool = False, force: bool = False) -> RecordResult:
        self._validate(remote)
        invoice = self._invoices.find_by_external_id(remote.invoice_id)
        if invoice is None or invoice.id is None:
            raise MissingParentError(
                f"Payment {remote.payment_id} references invoice {remote.invoice_number or remote.invoice_id} "
                "which has not been synced",
                parent_type=EntityType.INVOICE.value,
                parent_xero_id=remote.invoice_id,
            )

        remote_fields = extract_payment_fields(remote)
        remote_hash = compute_hash(remote_fields)
        existing = self._payments.find_by_external_id(remote.payment_id)
        state = self._sync_state.get(EntityType.PAYMENT, existing.id) if existing and existing.id else None
        if not force and state is not None:
            if state.status is SyncStatus.CONFLICT:
                return self.pending_conflict(EntityType.PAYMENT, state, remote.payment_id)
            if state.last_remote_hash == remote_hash and state.sync_origin is not SyncOrigin.LOCAL:
                return RecordResult(
                    RecordOutcome.SKIPPED,
                    EntityType.PAYMENT,
                    local_id=existing.id if existing else None,
                    xero_id=remote.payment_id,
                )

        status = payment_status_from_remote(remote.status)
        note = self._variance_note(remote, invoice, existing, status)
        outcome = RecordOutcome.UPDATED if existing else RecordOutcome.CREATED
        if dry_run:
            return RecordResult(
                outcome,
                EntityType.PAYMENT,
                local_id=existing.id if existing else None,
                xero_id=remote.payment_id,
                note=note,
            )

        now = self._clock()
        record = LocalPayment(
            id=existing.id if existing else None,
            invoice_id=invoice.id,
            xero_payment_id=remote.payment_id,
            xero_invoice_id=remote.invoice_id,
            payment_date=remote.date,
            amount=remote.amount,
            reference=remote.reference,
            payment_type=remote.payment_type,
            status=status,
            xero_status=remote.status,
            note=existing.note if existing else "",
            currency=remote.currency or invoice.currency,
            xero_updated_at=remote.updated_at,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        local_before = extract_payment_fields(existing) if existing else None
        with transaction(self._connection):
            stored = self._payments.update(record) if existing else self._payments.create(record)
            assert stored.id is not None
            totals = self.recompute_invoice_totals(invoice.id)
            local_fields = extract_payment_fields(stored)
            self.write_sync_state(
                EntityType.PAYMENT,
                stored.id,
                remote.payment_id,
                local_hash=compute_hash(local_fields),
                remote_hash=remote_hash,
                synced_at=now,
                local_modified=now,
                remote_modified=remote.updated_at,
                origin=SyncOrigin.REMOTE,
            )
            after = dict(local_fields)
            if note:
                after["variance_note"] = note
            self.append_log(
                EntityType.PAYMENT,
                SyncOperation.UPDATE if existing else SyncOperation.CREATE,
                SyncDirection.PULL,
                SyncLogStatus.SUCCESS,
                local_id=stored.id,
                xero_id=remote.payment_id,
                before=local_before,
                after=after,
                change_hash=remote_hash,
                created_at=now,
            )
        logger.debug(
            "Payment %s applied to invoice %s: paid=%s due=%s status=%s",
            remote.payment_id,
            invoice.id,
            totals.amount_paid,
            totals.amount_due,
            totals.status.value,
        )
        return RecordResult(outcome, EntityType.PAYMENT, local_id=stored.id, xero_id=remote.payment_id, note=note)

    # Push

    def push_candidates(self) -> list[int]:
        """Local payments Xero has not seen yet; Xero payments cannot be edited once created."""
        return [
            payment.id
            for payment in self._payments.list_all()
            if payment.id is not None and not payment.xero_payment_id
        ]

    def push_record(self, local_id: int, *, dry_run: bool = False, force: bool = False) -> RecordResult:
        payment = self._payments.find_by_id(local_id)
        if payment is None:
            raise ValidationError(f"Payment {local_id} does not exist")
        if payment.xero_payment_id:
            if force:
                raise ValidationError(
                    f"Payment {local_id} already exists in Xero as {payment.xero_payment_id} and cannot be edited"
                )
            return RecordResult(
                RecordOutcome.SKIPPED,
                EntityType.PAYMENT,
                local_id=local_id,
                xero_id=payment.xero_payment_id,
            )

        state = self._sync_state.get(EntityType.PAYMENT, local_id)
        if not force and state is not None and state.status is SyncStatus.CONFLICT:
            return self.pending_conflict(EntityType.PAYMENT, state, f"#{local_id}")

        invoice = self._invoices.find_by_id(payment.invoice_id)
        others = [
            other for other in self._payments.list_for_invoice(payment.invoice_id) if other.id != payment.id
        ]
        problems = payment_push_problems(payment, invoice, others)
        if problems:
            raise ValidationError(f"Payment {local_id} cannot be sent to Xero: {'; '.join(problems)}")
        assert invoice is not None and invoice.xero_invoice_id

        payload = build_payment_payload(
            payment,
            xero_invoice_id=invoice.xero_invoice_id,
            account_code=self._bank_account_code,
        )
        if dry_run:
            return RecordResult(RecordOutcome.CREATED, EntityType.PAYMENT, local_id=local_id)
        if self._api is None:
            raise ValidationError("Pushing payments requires a Xero client")

        try:
            response = self._api.create_payment(payload)
        except XeroAuthError:
            raise
        except ExternalServiceError as exc:
            logger.error("Push of payment %s to Xero failed: %s", local_id, exc)
            raise

        remote = parse_payment(response)
        now = self._clock()
        local_fields = extract_payment_fields(payment)
        linked = dataclasses.replace(
            payment,
            xero_payment_id=remote.payment_id,
            xero_invoice_id=invoice.xero_invoice_id,
            xero_status=remote.status or payment.xero_status,
            xero_updated_at=remote.updated_at,
            updated_at=now,
        )
        with transaction(self._connection):
            self._payments.update(linked)
            new_local_fields = extract_payment_fields(linked)
            self.write_sync_state(
                EntityType.PAYMENT,
                local_id,
                remote.payment_id,
                local_hash=compute_hash(new_local_fields),
                remote_hash=compute_hash(extract_payment_fields(remote)),
                synced_at=now,
                local_modified=now,
                remote_modified=remote.updated_at,
                origin=SyncOrigin.LOCAL,
            )
            self.append_log(
                EntityType.PAYMENT,
                SyncOperation.CREATE,
                SyncDirection.PUSH,
                SyncLogStatus.SUCCESS,
                local_id=local_id,
                xero_id=remote.payment_id,
                after=new_local_fields,
                change_hash=compute_hash(local_fields),
                created_at=now,
            )
        logger.info("Pushed payment %s to Xero %s against invoice %s", local_id, remote.payment_id, invoice.xero_invoice_id)
        return RecordResult(RecordOutcome.CREATED, EntityType.PAYMENT, local_id=local_id, xero_id=remote.payment_id)
