from __future__ import annotations

import dataclasses
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from tests.fakes import xero_invoice
from xero_sync.application.use_cases.sync_xero.payment_sync import payment_push_problems
from xero_sync.core.errors import MissingParentError, ValidationError
from xero_sync.domain.models import (
    EntityType,
    InvoiceLineItem,
    InvoiceType,
    LocalCustomer,
    LocalInvoice,
    LocalPayment,
    PaymentStatus,
    SyncDirection,
    SyncOperation,
    SyncOrigin,
    SyncStateRecord,
    SyncStatus,
    XeroResource,
)
from xero_sync.domain.sync_models import RecordOutcome

LAST_SYNC = datetime(2025, 5, 1, tzinfo=timezone.utc)
LOCAL_EDIT = datetime(2025, 6, 1, tzinfo=timezone.utc)
LINES = (InvoiceLineItem("Site clearance", Decimal("2"), Decimal("50.00"), Decimal("100.00"), "200"),)


@pytest.fixture
def customer(customer_repo) -> LocalCustomer:
    return customer_repo.create(LocalCustomer(id=None, name="Acme", customer_number="C-0001", xero_contact_id="xc-acme"))


def _invoice(invoice_repo, customer, **overrides) -> LocalInvoice:
    values = dict(
        id=None,
        invoice_number="INV-0001",
        invoice_type=InvoiceType.ACCREC,
        customer_id=customer.id,
        currency="GBP",
        total=Decimal("100.00"),
        xero_status="AUTHORISED",
        line_items=LINES,
    )
    values.update(overrides)
    return invoice_repo.create(LocalInvoice(**values))


def test_invoice_is_created_then_updated_then_skipped(invoice_handler, invoice_repo, customer, fake_api, sync_state_repo) -> None:
    invoice = _invoice(invoice_repo, customer)

    created = invoice_handler.push_record(invoice.id)
    stored = invoice_repo.find_by_id(invoice.id)
    invoice_repo.update(dataclasses.replace(stored, reference="Phase 2", updated_at=None))
    updated = invoice_handler.push_record(invoice.id)
    unchanged = invoice_handler.push_record(invoice.id)

    assert created.outcome is RecordOutcome.CREATED
    assert created.xero_id == "xi-1"
    assert fake_api.created_invoices[0]["Status"] == "AUTHORISED"
    assert updated.outcome is RecordOutcome.UPDATED
    assert [xero_id for xero_id, _ in fake_api.updated_invoices] == ["xi-1"]
    assert fake_api.updated_invoices[0][1]["Reference"] == "Phase 2"
    assert fake_api.updated_invoices[0][1]["InvoiceID"] == "xi-1"
    assert unchanged.outcome is RecordOutcome.SKIPPED
    state = sync_state_repo.get(EntityType.INVOICE, invoice.id)
    assert state.xero_id == "xi-1"
    assert state.sync_origin is SyncOrigin.LOCAL


def test_invoice_of_unpushed_customer_is_refused(invoice_handler, invoice_repo, customer_repo, fake_api) -> None:
    unlinked = customer_repo.create(LocalCustomer(id=None, name="New Client", customer_number="C-0002"))
    invoice = _invoice(invoice_repo, unlinked)

    with pytest.raises(MissingParentError):
        invoice_handler.push_record(invoice.id)

    assert fake_api.created_invoices == []


def test_invoice_without_line_items_is_refused(invoice_handler, invoice_repo, customer) -> None:
    invoice = _invoice(invoice_repo, customer, line_items=())

    with pytest.raises(ValidationError, match="no line items"):
        invoice_handler.push_record(invoice.id)


def test_invoice_edited_on_both_sides_is_parked(invoice_handler, invoice_repo, customer, fake_api, sync_state_repo) -> None:
    fake_api.add(
        XeroResource.INVOICES,
        xero_invoice("inv-1", "xc-acme", Reference="Remote ref", UpdatedDateUTC="2025-06-02T09:00:00Z"),
    )
    invoice = _invoice(
        invoice_repo,
        customer,
        xero_invoice_id="inv-1",
        reference="Local ref",
        created_at=LAST_SYNC,
        updated_at=LOCAL_EDIT,
    )
    sync_state_repo.upsert(
        SyncStateRecord(
            entity_type=EntityType.INVOICE,
            local_id=invoice.id,
            xero_id="inv-1",
            last_local_hash="old-local",
            last_remote_hash="old-remote",
            last_synced_at=LAST_SYNC,
            sync_origin=SyncOrigin.REMOTE,
        )
    )

    result = invoice_handler.push_record(invoice.id)

    assert result.outcome is RecordOutcome.CONFLICT
    assert "reference" in result.conflict.conflict_fields
    assert fake_api.updated_invoices == []
    assert sync_state_repo.get(EntityType.INVOICE, invoice.id).status is SyncStatus.CONFLICT


def test_payment_is_pushed_once(payment_handler, invoice_repo, payment_repo, customer, fake_api, sync_state_repo, sync_log_repo) -> None:
    invoice = _invoice(invoice_repo, customer, xero_invoice_id="inv-1")
    payment = payment_repo.create(
        LocalPayment(id=None, invoice_id=invoice.id, payment_date="2025-02-01", amount=Decimal("60.00"), reference="BACS")
    )

    first = payment_handler.push_record(payment.id)
    second = payment_handler.push_record(payment.id)

    assert first.outcome is RecordOutcome.CREATED
    assert fake_api.created_payments == [
        {"Invoice": {"InvoiceID": "inv-1"}, "Amount": 60.0, "Date": "2025-02-01", "Reference": "BACS"}
    ]
    assert second.outcome is RecordOutcome.SKIPPED
    assert payment_repo.find_by_id(payment.id).xero_payment_id == "xp-1"
    assert sync_state_repo.get(EntityType.PAYMENT, payment.id).sync_origin is SyncOrigin.LOCAL
    (entry,) = sync_log_repo.list_for_entity(EntityType.PAYMENT, payment.id)
    assert entry.operation is SyncOperation.CREATE
    assert entry.direction is SyncDirection.PUSH
    assert payment_handler.push_candidates() == []
    with pytest.raises(ValidationError, match="cannot be edited"):
        payment_handler.push_record(payment.id, force=True)


def test_payment_dry_run_sends_nothing(payment_handler, invoice_repo, payment_repo, customer, fake_api) -> None:
    invoice = _invoice(invoice_repo, customer, xero_invoice_id="inv-1")
    payment = payment_repo.create(LocalPayment(id=None, invoice_id=invoice.id, amount=Decimal("10.00")))

    result = payment_handler.push_record(payment.id, dry_run=True)

    assert result.outcome is RecordOutcome.CREATED
    assert fake_api.created_payments == []
    assert payment_repo.find_by_id(payment.id).xero_payment_id is None


def test_invalid_payment_is_refused_before_calling_xero(payment_handler, invoice_repo, payment_repo, customer, fake_api) -> None:
    invoice = _invoice(invoice_repo, customer, xero_invoice_id="inv-1", xero_status="DRAFT")
    payment = payment_repo.create(LocalPayment(id=None, invoice_id=invoice.id, amount=Decimal("10.00")))

    with pytest.raises(ValidationError, match="invoice INV-0001 is DRAFT in Xero"):
        payment_handler.push_record(payment.id)

    assert fake_api.created_payments == []


def _synced_invoice(**overrides) -> LocalInvoice:
    values = dict(
        id=1,
        invoice_number="INV-0001",
        invoice_type=InvoiceType.ACCREC,
        customer_id=1,
        xero_invoice_id="inv-1",
        currency="GBP",
        total=Decimal("100.00"),
        xero_status="AUTHORISED",
    )
    values.update(overrides)
    return LocalInvoice(**values)


@pytest.mark.parametrize(
    ("payment_overrides", "invoice_overrides", "expected"),
    [
        ({"amount": Decimal("0")}, {}, "amount must be greater than 0"),
        ({"currency": "EUR"}, {}, "currency EUR does not match invoice currency GBP"),
        ({"amount": Decimal("150.00")}, {}, "amount 150.00 exceeds the 100.00 still due on invoice INV-0001"),
        ({}, {"xero_invoice_id": None}, "invoice INV-0001 has not been synced to Xero"),
        ({}, {"xero_status": "VOIDED"}, "invoice INV-0001 is VOIDED in Xero"),
        ({"status": PaymentStatus.FAILED}, {}, "payment is FAILED"),
    ],
)
def test_payment_problems(payment_overrides, invoice_overrides, expected) -> None:
    payment = LocalPayment(id=5, invoice_id=1, amount=Decimal("25.00"), currency="GBP")

    problems = payment_push_problems(
        dataclasses.replace(payment, **payment_overrides),
        _synced_invoice(**invoice_overrides),
    )

    assert [problem for problem in problems if expected in problem]


def test_earlier_payments_reduce_what_can_be_paid() -> None:
    earlier = LocalPayment(id=4, invoice_id=1, amount=Decimal("70.00"))
    payment = LocalPayment(id=5, invoice_id=1, amount=Decimal("40.00"))

    assert payment_push_problems(payment, _synced_invoice(), [earlier]) == [
        "amount 40.00 exceeds the 30.00 still due on invoice INV-0001"
    ]
    assert payment_push_problems(dataclasses.replace(payment, amount=Decimal("30.00")), _synced_invoice(), [earlier]) == []


def test_payment_for_missing_invoice() -> None:
    payment = LocalPayment(id=5, invoice_id=99, amount=Decimal("10.00"))

    assert payment_push_problems(payment, None) == ["invoice 99 does not exist"]
