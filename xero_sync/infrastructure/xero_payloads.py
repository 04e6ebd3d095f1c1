"""Translation between Xero's JSON documents and the typed remote records.

Xero's accounting API answers in PascalCase while the official SDKs expose
camelCase, so every reader accepts both spellings.
"""

from __future__ import annotations

from collections.abc import Mapping
from decimal import Decimal, InvalidOperation
from typing import Any

from xero_sync.core.errors import MalformedRecordError
from xero_sync.domain.models import (
    InvoiceLineItem,
    InvoiceType,
    LocalInvoice,
    LocalPayment,
    RemoteContact,
    RemoteInvoice,
    RemotePayment,
    XeroResource,
)
from xero_sync.domain.time_utils import parse_date, parse_timestamp

_PRIMARY_PHONE_TYPES = ("DEFAULT", "MOBILE")
_PRIMARY_ADDRESS_TYPES = ("POBOX", "STREET")


def _pick(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def _field(raw: Mapping[str, Any], pascal: str) -> Any:
    camel = pascal[0].lower() + pascal[1:]
    return _pick(raw, pascal, camel)


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _decimal(value: Any, context: str) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise MalformedRecordError(f"{context} is not a number: {value!r}") from exc


def _flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


def _primary_phone(phones: Any) -> str:
    if not isinstance(phones, list):
        return ""
    numbered = [phone for phone in phones if isinstance(phone, Mapping) and _text(_field(phone, "PhoneNumber"))]
    for phone_type in _PRIMARY_PHONE_TYPES:
        for phone in numbered:
            if _text(_field(phone, "PhoneType")).upper() == phone_type:
                return _text(_field(phone, "PhoneNumber"))
    return _text(_field(numbered[0], "PhoneNumber")) if numbered else ""


def _primary_address(addresses: Any) -> Mapping[str, Any]:
    if not isinstance(addresses, list):
        return {}
    candidates = [address for address in addresses if isinstance(address, Mapping)]
    for address in candidates:
        if _text(_field(address, "AddressType")).upper() in _PRIMARY_ADDRESS_TYPES and _has_address_data(address):
            return address
    return candidates[0] if candidates else {}


def _has_address_data(address: Mapping[str, Any]) -> bool:
    return any(
        _text(_field(address, key))
        for key in ("AddressLine1", "AddressLine2", "City", "Region", "Country", "PostalCode")
    )


def _address_lines(address: Mapping[str, Any]) -> str:
    lines = [_text(_field(address, f"AddressLine{index}")) for index in range(1, 5)]
    return ", ".join(line for line in lines if line)


def _contact_person(persons: Any) -> str:
    if not isinstance(persons, list) or not persons or not isinstance(persons[0], Mapping):
        return ""
    first = persons[0]
    return f"{_text(_field(first, 'FirstName'))} {_text(_field(first, 'LastName'))}".strip()


def _email(raw: Mapping[str, Any]) -> str:
    email = _text(_field(raw, "EmailAddress"))
    if email:
        return email
    extra = _field(raw, "EmailAddresses")
    if isinstance(extra, list) and extra and isinstance(extra[0], Mapping):
        return _text(_field(extra[0], "EmailAddress"))
    return ""


def parse_contact(raw: Mapping[str, Any]) -> RemoteContact:
    contact_id = _text(_field(raw, "ContactID"))
    if not contact_id:
        raise MalformedRecordError("Xero contact without ContactID")
    address = _primary_address(_field(raw, "Addresses"))
    return RemoteContact(
        contact_id=contact_id,
        name=_text(_field(raw, "Name")),
        email=_email(raw),
        phone=_primary_phone(_field(raw, "Phones")),
        address=_address_lines(address),
        city=_text(_field(address, "City")),
        state=_text(_field(address, "Region")),
        country=_text(_field(address, "Country")),
        postal_code=_text(_field(address, "PostalCode")),
        contact_person=_contact_person(_field(raw, "ContactPersons")),
        website=_text(_field(raw, "Website")),
        tax_number=_text(_field(raw, "TaxNumber")),
        is_customer=_flag(_field(raw, "IsCustomer")),
        is_supplier=_flag(_field(raw, "IsSupplier")),
        account_number=_text(_field(raw, "AccountNumber")),
        default_currency=_text(_field(raw, "DefaultCurrency")),
        ar_tax_type=_text(_pick(raw, "AccountsReceivableTaxType", "accountsReceivableTaxType")),
        ap_tax_type=_text(_pick(raw, "AccountsPayableTaxType", "accountsPayableTaxType")),
        contact_status=_text(_field(raw, "ContactStatus")) or "ACTIVE",
        updated_at=parse_timestamp(_field(raw, "UpdatedDateUTC")),
    )


def remote_contact_to_local_fields(remote: RemoteContact) -> dict[str, Any]:
    """Remote contact expressed in local column names, ready for an ownership merge."""
    return {
        "name": remote.name,
        "email": remote.email,
        "phone": remote.phone,
        "address": remote.address,
        "city": remote.city,
        "state": remote.state,
        "country": remote.country,
        "postal_code": remote.postal_code,
        "contact_person": remote.contact_person,
        "website": remote.website,
        "is_customer": remote.is_customer,
        "is_supplier": remote.is_supplier,
        "xero_contact_id": remote.contact_id,
        "xero_tax_number": remote.tax_number,
        "xero_ar_tax_type": remote.ar_tax_type,
        "xero_ap_tax_type": remote.ap_tax_type,
        "xero_default_currency": remote.default_currency,
        "xero_updated_at": remote.updated_at,
    }


def build_contact_payload(fields: Mapping[str, Any]) -> dict[str, Any]:
    """Xero contact document from a push-merged field map (local column names)."""
    payload: dict[str, Any] = {
        "Name": _text(fields.get("name")),
        "IsCustomer": bool(fields.get("is_customer")),
        "IsSupplier": bool(fields.get("is_supplier")),
    }
    if fields.get("xero_contact_id"):
        payload["ContactID"] = fields["xero_contact_id"]
    if _text(fields.get("email")):
        payload["EmailAddress"] = _text(fields.get("email"))
    if _text(fields.get("phone")):
        payload["Phones"] = [{"PhoneType": "DEFAULT", "PhoneNumber": _text(fields.get("phone"))}]
    address_keys = ("address", "city", "state", "country", "postal_code")
    if any(_text(fields.get(key)) for key in address_keys):
        payload["Addresses"] = [
            {
                "AddressType": "POBOX",
                "AddressLine1": _text(fields.get("address")),
                "City": _text(fields.get("city")),
                "Region": _text(fields.get("state")),
                "Country": _text(fields.get("country")),
                "PostalCode": _text(fields.get("postal_code")),
            }
        ]
    contact_person = _text(fields.get("contact_person"))
    if contact_person:
        first_name, _, last_name = contact_person.partition(" ")
        person: dict[str, Any] = {"FirstName": first_name, "LastName": last_name.strip()}
        if _text(fields.get("email")):
            person["EmailAddress"] = _text(fields.get("email"))
        payload["ContactPersons"] = [person]
    if _text(fields.get("website")):
        payload["Website"] = _text(fields.get("website"))
    if "is_active" in fields:
        payload["ContactStatus"] = "ACTIVE" if fields["is_active"] else "ARCHIVED"
    return payload


# Xero moves an invoice to PAID on its own once payments cover it.
_PUSH_INVOICE_STATUS = {"PAID": "AUTHORISED"}


def _line_item_payload(item: InvoiceLineItem) -> dict[str, Any]:
    line: dict[str, Any] = {
        "Description": item.description,
        "Quantity": float(item.quantity),
        "UnitAmount": float(item.unit_amount),
    }
    if item.account_code:
        line["AccountCode"] = item.account_code
    return line


def build_invoice_payload(invoice: LocalInvoice, *, contact_id: str, contact_name: str = "") -> dict[str, Any]:
    """Xero invoice or bill document for a local invoice; line amounts go out tax exclusive."""
    status = (invoice.xero_status or "DRAFT").upper()
    contact: dict[str, Any] = {"ContactID": contact_id}
    if contact_name:
        contact["Name"] = contact_name
    payload: dict[str, Any] = {
        "Type": invoice.invoice_type.value,
        "Contact": contact,
        "Status": _PUSH_INVOICE_STATUS.get(status, status),
        "LineAmountTypes": "Exclusive",
        "LineItems": [_line_item_payload(item) for item in invoice.line_items],
    }
    optional = (
        ("InvoiceID", invoice.xero_invoice_id),
        ("InvoiceNumber", invoice.invoice_number),
        ("Reference", invoice.reference),
        ("Date", invoice.issue_date),
        ("DueDate", invoice.due_date),
        ("CurrencyCode", invoice.currency),
    )
    for key, value in optional:
        if value:
            payload[key] = value
    return payload


def build_payment_payload(payment: LocalPayment, *, xero_invoice_id: str, account_code: str = "") -> dict[str, Any]:
    payload: dict[str, Any] = {
        "Invoice": {"InvoiceID": xero_invoice_id},
        "Amount": float(payment.amount),
    }
    if payment.payment_date:
        payload["Date"] = payment.payment_date
    if payment.reference:
        payload["Reference"] = payment.reference
    if account_code:
        payload["Account"] = {"Code": account_code}
    return payload


def _parse_line_item(raw: Any, index: int, invoice_id: str) -> InvoiceLineItem:
    if not isinstance(raw, Mapping):
        raise MalformedRecordError(f"Invoice {invoice_id} line {index} is not an object")
    context = f"Invoice {invoice_id} line {index}"
    quantity = _decimal(_field(raw, "Quantity"), f"{context} quantity")
    unit_amount = _decimal(_field(raw, "UnitAmount"), f"{context} unit amount")
    line_amount_raw = _field(raw, "LineAmount")
    line_amount = (
        _decimal(line_amount_raw, f"{context} line amount")
        if line_amount_raw not in (None, "")
        else quantity * unit_amount
    )
    return InvoiceLineItem(
        description=_text(_field(raw, "Description")),
        quantity=quantity,
        unit_amount=unit_amount,
        line_amount=line_amount,
        account_code=_text(_field(raw, "AccountCode")),
    )


def parse_invoice(raw: Mapping[str, Any]) -> RemoteInvoice:
    invoice_id = _text(_field(raw, "InvoiceID"))
    if not invoice_id:
        raise MalformedRecordError("Xero invoice without InvoiceID")
    raw_type = _text(_field(raw, "Type")).upper()
    try:
        invoice_type = InvoiceType(raw_type)
    except ValueError as exc:
        raise MalformedRecordError(f"Invoice {invoice_id} has unsupported type {raw_type!r}") from exc
    contact = _field(raw, "Contact")
    contact_id = _text(_field(contact, "ContactID")) if isinstance(contact, Mapping) else ""
    if not contact_id:
        raise MalformedRecordError(f"Invoice {invoice_id} has no contact")
    raw_lines = _field(raw, "LineItems") or []
    if not isinstance(raw_lines, list):
        raise MalformedRecordError(f"Invoice {invoice_id} line items are not a list")
    return RemoteInvoice(
        invoice_id=invoice_id,
        invoice_type=invoice_type,
        contact_id=contact_id,
        invoice_number=_text(_field(raw, "InvoiceNumber")),
        reference=_text(_field(raw, "Reference")),
        issue_date=parse_date(_pick(raw, "DateString", "Date", "date")),
        due_date=parse_date(_pick(raw, "DueDateString", "DueDate", "dueDate")),
        currency=_text(_pick(raw, "CurrencyCode", "currencyCode")),
        subtotal=_decimal(_field(raw, "SubTotal"), f"Invoice {invoice_id} subtotal"),
        total_tax=_decimal(_field(raw, "TotalTax"), f"Invoice {invoice_id} tax"),
        total=_decimal(_field(raw, "Total"), f"Invoice {invoice_id} total"),
        status=_text(_field(raw, "Status")).upper(),
        line_items=tuple(_parse_line_item(line, index, invoice_id) for index, line in enumerate(raw_lines, start=1)),
        updated_at=parse_timestamp(_field(raw, "UpdatedDateUTC")),
    )


def parse_payment(raw: Mapping[str, Any]) -> RemotePayment:
    payment_id = _text(_field(raw, "PaymentID"))
    if not payment_id:
        raise MalformedRecordError("Xero payment without PaymentID")
    invoice = _field(raw, "Invoice")
    invoice = invoice if isinstance(invoice, Mapping) else {}
    return RemotePayment(
        payment_id=payment_id,
        invoice_id=_text(_field(invoice, "InvoiceID")),
        invoice_number=_text(_field(invoice, "InvoiceNumber")),
        date=parse_date(_field(raw, "Date")),
        amount=_decimal(_field(raw, "Amount"), f"Payment {payment_id} amount"),
        reference=_text(_field(raw, "Reference")),
        payment_type=_text(_field(raw, "PaymentType")),
        status=_text(_field(raw, "Status")).upper(),
        currency=_text(_field(invoice, "CurrencyCode")),
        updated_at=parse_timestamp(_field(raw, "UpdatedDateUTC")),
    )


_ID_KEYS = {
    XeroResource.CONTACTS: "ContactID",
    XeroResource.INVOICES: "InvoiceID",
    XeroResource.PAYMENTS: "PaymentID",
}


def remote_id(resource: XeroResource, raw: Any) -> str | None:
    if not isinstance(raw, Mapping):
        return None
    return _text(_field(raw, _ID_KEYS[resource])) or None
