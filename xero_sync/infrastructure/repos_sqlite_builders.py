from __future__ import annotations

import json
from decimal import Decimal
from collections.abc import Iterable
from typing import Any, Mapping

from xero_sync.domain.models import (
    EntityType,
    InvoiceLineItem,
    InvoiceStatus,
    InvoiceType,
    JobStatus,
    LocalCustomer,
    LocalInvoice,
    LocalPayment,
    LocalSupplier,
    PaymentStatus,
    SyncDirection,
    SyncJob,
    SyncLogEntry,
    SyncLogStatus,
    SyncOperation,
    SyncOrigin,
    SyncStateRecord,
    SyncStatus,
)
from xero_sync.domain.time_utils import parse_timestamp

# Columns shared by the customers and suppliers tables, in insert order.
CONTACT_COLUMNS = (
    "name",
    "email",
    "phone",
    "address",
    "city",
    "state",
    "country",
    "postal_code",
    "contact_person",
    "company_reg",
    "website",
    "notes",
    "is_active",
    "is_customer",
    "is_supplier",
    "xero_contact_id",
    "xero_tax_number",
    "xero_ar_tax_type",
    "xero_ap_tax_type",
    "xero_default_currency",
    "xero_updated_at",
)

INVOICE_COLUMNS = (
    "invoice_number",
    "invoice_type",
    "customer_id",
    "supplier_id",
    "xero_invoice_id",
    "xero_contact_id",
    "reference",
    "issue_date",
    "due_date",
    "currency",
    "subtotal",
    "total_tax",
    "total",
    "amount_paid",
    "amount_due",
    "status",
    "xero_status",
    "line_item_count",
    "line_items_summary",
    "line_items_json",
    "xero_updated_at",
)

PAYMENT_COLUMNS = (
    "invoice_id",
    "xero_payment_id",
    "xero_invoice_id",
    "payment_date",
    "amount",
    "reference",
    "payment_type",
    "status",
    "xero_status",
    "note",
    "currency",
    "xero_updated_at",
)


def bool_from_db(value: int | None) -> bool:
    return bool(value) if value is not None else False


def decimal_from_db(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    return Decimal(str(value))


def decimal_to_db(value: Decimal | None) -> str:
    return str(Decimal(value or 0).quantize(Decimal("0.01")))


def json_from_db(value: str | None) -> dict[str, Any] | None:
    if not value:
        return None
    return json.loads(value)


def json_to_db(value: Mapping[str, Any] | None) -> str | None:
    if value is None:
        return None
    return json.dumps(dict(value), ensure_ascii=False, sort_keys=True, default=str)


def line_items_to_db(items: Iterable[InvoiceLineItem]) -> str:
    return json.dumps(
        [
            {
                "description": item.description,
                "quantity": str(item.quantity),
                "unit_amount": str(item.unit_amount),
                "line_amount": str(item.line_amount),
                "account_code": item.account_code,
            }
            for item in items
        ],
        ensure_ascii=False,
    )


def line_items_from_db(value: str | None) -> tuple[InvoiceLineItem, ...]:
    if not value:
        return ()
    return tuple(
        InvoiceLineItem(
            description=item.get("description", ""),
            quantity=decimal_from_db(item.get("quantity")),
            unit_amount=decimal_from_db(item.get("unit_amount")),
            line_amount=decimal_from_db(item.get("line_amount")),
            account_code=item.get("account_code", ""),
        )
        for item in json.loads(value)
    )


def _contact_kwargs(row: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "id": row["id"],
        "name": row["name"],
        "email": row["email"],
        "phone": row["phone"],
        "address": row["address"],
        "city": row["city"],
        "state": row["state"],
        "country": row["country"],
        "postal_code": row["postal_code"],
        "contact_person": row["contact_person"],
        "company_reg": row["company_reg"],
        "website": row["website"],
        "notes": row["notes"],
        "is_active": bool_from_db(row["is_active"]),
        "is_customer": bool_from_db(row["is_customer"]),
        "is_supplier": bool_from_db(row["is_supplier"]),
        "xero_contact_id": row["xero_contact_id"],
        "xero_tax_number": row["xero_tax_number"],
        "xero_ar_tax_type": row["xero_ar_tax_type"],
        "xero_ap_tax_type": row["xero_ap_tax_type"],
        "xero_default_currency": row["xero_default_currency"],
        "xero_updated_at": parse_timestamp(row["xero_updated_at"]),
        "created_at": parse_timestamp(row["created_at"]),
        "updated_at": parse_timestamp(row["updated_at"]),
    }


def row_to_customer(row: Mapping[str, Any]) -> LocalCustomer:
    return LocalCustomer(
        **_contact_kwargs(row),
        customer_number=row["customer_number"],
        customer_type=row["customer_type"],
    )


def row_to_supplier(row: Mapping[str, Any]) -> LocalSupplier:
    return LocalSupplier(
        **_contact_kwargs(row),
        supplier_number=row["supplier_number"],
        supplier_type=row["supplier_type"],
    )


def row_to_invoice(row: Mapping[str, Any]) -> LocalInvoice:
    return LocalInvoice(
        id=row["id"],
        invoice_number=row["invoice_number"],
        invoice_type=InvoiceType(row["invoice_type"]),
        customer_id=row["customer_id"],
        supplier_id=row["supplier_id"],
        xero_invoice_id=row["xero_invoice_id"],
        xero_contact_id=row["xero_contact_id"],
        reference=row["reference"],
        issue_date=row["issue_date"],
        due_date=row["due_date"],
        currency=row["currency"],
        subtotal=decimal_from_db(row["subtotal"]),
        total_tax=decimal_from_db(row["total_tax"]),
        total=decimal_from_db(row["total"]),
        amount_paid=decimal_from_db(row["amount_paid"]),
        amount_due=decimal_from_db(row["amount_due"]),
        status=InvoiceStatus(row["status"]),
        xero_status=row["xero_status"],
        line_item_count=int(row["line_item_count"] or 0),
        line_items_summary=row["line_items_summary"],
        line_items=line_items_from_db(row["line_items_json"]),
        xero_updated_at=parse_timestamp(row["xero_updated_at"]),
        created_at=parse_timestamp(row["created_at"]),
        updated_at=parse_timestamp(row["updated_at"]),
    )


def row_to_payment(row: Mapping[str, Any]) -> LocalPayment:
    return LocalPayment(
        id=row["id"],
        invoice_id=row["invoice_id"],
        xero_payment_id=row["xero_payment_id"],
        xero_invoice_id=row["xero_invoice_id"],
        payment_date=row["payment_date"],
        amount=decimal_from_db(row["amount"]),
        reference=row["reference"],
        payment_type=row["payment_type"],
        status=PaymentStatus(row["status"]),
        xero_status=row["xero_status"],
        note=row["note"],
        currency=row["currency"],
        xero_updated_at=parse_timestamp(row["xero_updated_at"]),
        created_at=parse_timestamp(row["created_at"]),
        updated_at=parse_timestamp(row["updated_at"]),
    )


def row_to_sync_state(row: Mapping[str, Any]) -> SyncStateRecord:
    return SyncStateRecord(
        id=row["id"],
        entity_type=EntityType(row["entity_type"]),
        local_id=row["local_id"],
        xero_id=row["xero_id"],
        last_local_hash=row["last_local_hash"],
        last_remote_hash=row["last_remote_hash"],
        last_synced_at=parse_timestamp(row["last_synced_at"]),
        last_local_modified=parse_timestamp(row["last_local_modified"]),
        last_remote_modified=parse_timestamp(row["last_remote_modified"]),
        sync_origin=SyncOrigin(row["sync_origin"]) if row["sync_origin"] else None,
        status=SyncStatus(row["status"]),
        conflict_data=json_from_db(row["conflict_data_json"]),
        correlation_id=row["correlation_id"],
        updated_at=parse_timestamp(row["updated_at"]),
    )


def row_to_sync_log(row: Mapping[str, Any]) -> SyncLogEntry:
    return SyncLogEntry(
        id=row["id"],
        correlation_id=row["correlation_id"],
        entity_type=EntityType(row["entity_type"]),
        local_id=row["local_id"],
        xero_id=row["xero_id"],
        operation=SyncOperation(row["operation"]),
        direction=SyncDirection(row["direction"]),
        before_snapshot=json_from_db(row["before_snapshot_json"]),
        after_snapshot=json_from_db(row["after_snapshot_json"]),
        change_hash=row["change_hash"],
        status=SyncLogStatus(row["status"]),
        actor=row["actor"],
        error_message=row["error_message"],
        created_at=parse_timestamp(row["created_at"]),
    )


def row_to_sync_job(row: Mapping[str, Any]) -> SyncJob:
    return SyncJob(
        id=row["id"],
        entity_type=EntityType(row["entity_type"]),
        direction=SyncDirection(row["direction"]),
        local_id=row["local_id"],
        status=JobStatus(row["status"]),
        attempts=int(row["attempts"] or 0),
        payload=json_from_db(row["payload_json"]) or {},
        claimed_by=row["claimed_by"],
        claimed_at=parse_timestamp(row["claimed_at"]),
        last_error=row["last_error"],
        created_at=parse_timestamp(row["created_at"]),
    )
