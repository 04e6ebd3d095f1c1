from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any


class EntityType(str, Enum):
    CUSTOMER = "CUSTOMER"
    SUPPLIER = "SUPPLIER"
    CONTACT = "CONTACT"
    INVOICE = "INVOICE"
    PAYMENT = "PAYMENT"


class SyncDirection(str, Enum):
    PULL = "pull"
    PUSH = "push"


class SyncOrigin(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"

    @classmethod
    def for_direction(cls, direction: SyncDirection) -> "SyncOrigin":
        return cls.REMOTE if direction is SyncDirection.PULL else cls.LOCAL


class SyncStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CONFLICT = "CONFLICT"
    ERROR = "ERROR"


class SyncOperation(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    CONFLICT = "CONFLICT"
    RESOLVE = "RESOLVE"


class SyncLogStatus(str, Enum):
    SUCCESS = "SUCCESS"
    CONFLICT = "CONFLICT"
    ERROR = "ERROR"


class RunStatus(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class InvoiceType(str, Enum):
    ACCREC = "ACCREC"
    ACCPAY = "ACCPAY"


class InvoiceStatus(str, Enum):
    DRAFT = "DRAFT"
    PARTIAL = "PARTIAL"
    PAID = "PAID"


class PaymentStatus(str, Enum):
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class JobStatus(str, Enum):
    PENDING = "PENDING"
    CLAIMED = "CLAIMED"
    DONE = "DONE"
    FAILED = "FAILED"


class XeroResource(str, Enum):
    CONTACTS = "Contacts"
    INVOICES = "Invoices"
    PAYMENTS = "Payments"


@dataclass(frozen=True)
class RemoteContact:
    contact_id: str
    name: str = ""
    email: str = ""
    phone: str = ""
    address: str = ""
    city: str = ""
    state: str = ""
    country: str = ""
    postal_code: str = ""
    contact_person: str = ""
    website: str = ""
    tax_number: str = ""
    is_customer: bool = False
    is_supplier: bool = False
    account_number: str = ""
    default_currency: str = ""
    ar_tax_type: str = ""
    ap_tax_type: str = ""
    contact_status: str = "ACTIVE"
    updated_at: datetime | None = None


@dataclass(frozen=True)
class LocalContactFields:
    """Columns shared by the customers and suppliers tables."""

    id: int | None
    name: str
    email: str = ""
    phone: str = ""
    address: str = ""
    city: str = ""
    state: str = ""
    country: str = ""
    postal_code: str = ""
    contact_person: str = ""
    company_reg: str = ""
    website: str = ""
    notes: str = ""
    is_active: bool = True
    is_customer: bool = False
    is_supplier: bool = False
    xero_contact_id: str | None = None
    xero_tax_number: str = ""
    xero_ar_tax_type: str = ""
    xero_ap_tax_type: str = ""
    xero_default_currency: str = ""
    xero_updated_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class LocalCustomer(LocalContactFields):
    customer_number: str = ""
    customer_type: str = "COMPANY"
    is_customer: bool = True


@dataclass(frozen=True)
class LocalSupplier(LocalContactFields):
    supplier_number: str = ""
    supplier_type: str = "SUBCONTRACTOR"
    is_supplier: bool = True


LocalContact = LocalCustomer | LocalSupplier


@dataclass(frozen=True)
class InvoiceLineItem:
    description: str = ""
    quantity: Decimal = Decimal("0")
    unit_amount: Decimal = Decimal("0")
    line_amount: Decimal = Decimal("0")
    account_code: str = ""


@dataclass(frozen=True)
class RemoteInvoice:
    invoice_id: str
    invoice_type: InvoiceType
    contact_id: str
    invoice_number: str = ""
    reference: str = ""
    issue_date: str = ""
    due_date: str = ""
    currency: str = ""
    subtotal: Decimal = Decimal("0")
    total_tax: Decimal = Decimal("0")
    total: Decimal = Decimal("0")
    status: str = ""
    line_items: tuple[InvoiceLineItem, ...] = ()
    updated_at: datetime | None = None


@dataclass(frozen=True)
class LocalInvoice:
    id: int | None
    invoice_number: str
    invoice_type: InvoiceType
    customer_id: int | None = None
    supplier_id: int | None = None
    xero_invoice_id: str | None = None
    xero_contact_id: str = ""
    reference: str = ""
    issue_date: str = ""
    due_date: str = ""
    currency: str = ""
    subtotal: Decimal = Decimal("0")
    total_tax: Decimal = Decimal("0")
    total: Decimal = Decimal("0")
    amount_paid: Decimal = Decimal("0")
    amount_due: Decimal = Decimal("0")
    status: InvoiceStatus = InvoiceStatus.DRAFT
    xero_status: str = ""
    line_item_count: int = 0
    line_items_summary: str = ""
    line_items: tuple[InvoiceLineItem, ...] = ()
    xero_updated_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class RemotePayment:
    payment_id: str
    invoice_id: str = ""
    invoice_number: str = ""
    date: str = ""
    amount: Decimal = Decimal("0")
    reference: str = ""
    payment_type: str = ""
    status: str = ""
    currency: str = ""
    updated_at: datetime | None = None


@dataclass(frozen=True)
class LocalPayment:
    id: int | None
    invoice_id: int
    xero_payment_id: str | None = None
    xero_invoice_id: str = ""
    payment_date: str = ""
    amount: Decimal = Decimal("0")
    reference: str = ""
    payment_type: str = ""
    status: PaymentStatus = PaymentStatus.COMPLETED
    xero_status: str = ""
    note: str = ""
    currency: str = ""
    xero_updated_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class SyncStateRecord:
    entity_type: EntityType
    local_id: int
    xero_id: str | None = None
    last_local_hash: str | None = None
    last_remote_hash: str | None = None
    last_synced_at: datetime | None = None
    last_local_modified: datetime | None = None
    last_remote_modified: datetime | None = None
    sync_origin: SyncOrigin | None = None
    status: SyncStatus = SyncStatus.ACTIVE
    conflict_data: dict[str, Any] | None = None
    correlation_id: str | None = None
    id: int | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class SyncLogEntry:
    correlation_id: str
    entity_type: EntityType
    operation: SyncOperation
    direction: SyncDirection
    status: SyncLogStatus
    actor: str
    local_id: int | None = None
    xero_id: str | None = None
    before_snapshot: dict[str, Any] | None = None
    after_snapshot: dict[str, Any] | None = None
    change_hash: str | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    id: int | None = None


@dataclass(frozen=True)
class SyncJob:
    id: int
    entity_type: EntityType
    direction: SyncDirection
    local_id: int | None
    status: JobStatus
    attempts: int = 0
    payload: dict[str, Any] = field(default_factory=dict)
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class XeroCredential:
    access_token: str
    tenant_id: str
    expires_at: datetime | None = None
