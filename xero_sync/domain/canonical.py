"""Canonical field extraction and content hashing for change detection.

The canonical map is the only thing hashed, so any attribute that should
trigger a re-sync has to be listed in one of the extractors below.
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
from collections.abc import Mapping
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable

from xero_sync.domain.models import EntityType

CanonicalValue = str | bool
CanonicalRecord = dict[str, CanonicalValue]

MISSING = ""

CONTACT_SYNC_FIELDS = (
    "name",
    "email",
    "phone",
    "address",
    "city",
    "state",
    "country",
    "postal_code",
    "contact_person",
    "website",
    "tax_id",
    "is_customer",
    "is_supplier",
)

INVOICE_SYNC_FIELDS = (
    "invoice_number",
    "invoice_type",
    "contact_id",
    "reference",
    "issue_date",
    "due_date",
    "currency",
    "subtotal",
    "total_tax",
    "total",
    "xero_status",
    "line_items",
)

PAYMENT_SYNC_FIELDS = (
    "invoice_id",
    "date",
    "amount",
    "reference",
    "payment_type",
    "xero_status",
)


def _as_mapping(record: Any) -> Mapping[str, Any]:
    if isinstance(record, Mapping):
        return record
    if dataclasses.is_dataclass(record) and not isinstance(record, type):
        return {item.name: getattr(record, item.name) for item in dataclasses.fields(record)}
    raise TypeError(f"Cannot extract sync fields from {type(record).__name__}")


def _text(value: Any) -> str:
    if value is None:
        return MISSING
    if isinstance(value, Enum):
        return str(value.value)
    return str(value).strip()


def _flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes"}
    return bool(value)


def _amount(value: Any) -> str:
    if value is None or value == "":
        return MISSING
    try:
        return str(Decimal(str(value)).quantize(Decimal("0.01")))
    except InvalidOperation:
        return MISSING


def _first(source: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = source.get(key)
        if value not in (None, ""):
            return value
    return None


def summarize_line_items(line_items: Any) -> str:
    """Compact, order-preserving digest input for invoice lines: description|qty|unit|amount;..."""
    if not line_items:
        return MISSING
    if isinstance(line_items, str):
        return line_items
    parts = []
    for item in line_items:
        source = _as_mapping(item)
        parts.append(
            "|".join(
                (
                    _text(source.get("description")),
                    _amount(source.get("quantity")),
                    _amount(source.get("unit_amount")),
                    _amount(source.get("line_amount")),
                )
            )
        )
    return ";".join(parts)


def extract_contact_fields(record: Any) -> CanonicalRecord:
    source = _as_mapping(record)
    return {
        "name": _text(source.get("name")),
        "email": _text(source.get("email")),
        "phone": _text(source.get("phone")),
        "address": _text(source.get("address")),
        "city": _text(source.get("city")),
        "state": _text(source.get("state")),
        "country": _text(source.get("country")),
        "postal_code": _text(source.get("postal_code")),
        "contact_person": _text(source.get("contact_person")),
        "website": _text(source.get("website")),
        "tax_id": _text(_first(source, "xero_tax_number", "tax_number")),
        "is_customer": _flag(source.get("is_customer")),
        "is_supplier": _flag(source.get("is_supplier")),
    }


def extract_invoice_fields(record: Any) -> CanonicalRecord:
    source = _as_mapping(record)
    line_items = source.get("line_items")
    if not line_items:
        line_items = source.get("line_items_summary")
    return {
        "invoice_number": _text(source.get("invoice_number")),
        "invoice_type": _text(source.get("invoice_type")),
        "contact_id": _text(_first(source, "xero_contact_id", "contact_id")),
        "reference": _text(source.get("reference")),
        "issue_date": _text(source.get("issue_date")),
        "due_date": _text(source.get("due_date")),
        "currency": _text(source.get("currency")),
        "subtotal": _amount(source.get("subtotal")),
        "total_tax": _amount(source.get("total_tax")),
        "total": _amount(source.get("total")),
        "xero_status": _text(_first(source, "xero_status", "status")),
        "line_items": summarize_line_items(line_items),
    }


def extract_payment_fields(record: Any) -> CanonicalRecord:
    source = _as_mapping(record)
    return {
        "invoice_id": _text(_first(source, "xero_invoice_id", "invoice_id")),
        "date": _text(_first(source, "payment_date", "date")),
        "amount": _amount(source.get("amount")),
        "reference": _text(source.get("reference")),
        "payment_type": _text(source.get("payment_type")),
        "xero_status": _text(_first(source, "xero_status", "status")),
    }


_EXTRACTORS: dict[EntityType, Callable[[Any], CanonicalRecord]] = {
    EntityType.CONTACT: extract_contact_fields,
    EntityType.CUSTOMER: extract_contact_fields,
    EntityType.SUPPLIER: extract_contact_fields,
    EntityType.INVOICE: extract_invoice_fields,
    EntityType.PAYMENT: extract_payment_fields,
}


def extract_sync_fields(entity_type: EntityType, record: Any) -> CanonicalRecord:
    return _EXTRACTORS[entity_type](record)


def compute_hash(canonical: Mapping[str, Any]) -> str:
    serialized = json.dumps(dict(canonical), sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.md5(serialized.encode("utf-8"), usedforsecurity=False).hexdigest()


def hash_record(entity_type: EntityType, record: Any) -> str:
    return compute_hash(extract_sync_fields(entity_type, record))
