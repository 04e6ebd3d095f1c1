from __future__ import annotations

from collections.abc import Iterable, Iterator
from datetime import datetime
from typing import Any, Protocol

from xero_sync.domain.models import (
    EntityType,
    InvoiceStatus,
    LocalContact,
    LocalInvoice,
    LocalPayment,
    SyncDirection,
    SyncJob,
    SyncLogEntry,
    SyncStateRecord,
    XeroCredential,
    XeroResource,
)


class XeroQuery(Protocol):
    modified_since: datetime | None
    where: str | None
    ids: tuple[str, ...]
    include_archived: bool


class TokenProviderPort(Protocol):
    def get_valid_token(self) -> XeroCredential:
        ...

    def refresh_if_needed(self) -> XeroCredential:
        ...

    def mark_inactive(self, reason: str) -> None:
        ...


class XeroApiPort(Protocol):
    def fetch_page(self, resource: XeroResource, page: int, page_size: int, query: XeroQuery) -> list[dict[str, Any]]:
        ...

    def get_contact(self, xero_id: str) -> dict[str, Any] | None:
        ...

    def create_contact(self, payload: dict[str, Any]) -> dict[str, Any]:
        ...

    def update_contact(self, xero_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        ...

    def get_invoice(self, xero_id: str) -> dict[str, Any] | None:
        ...

    def create_invoice(self, payload: dict[str, Any]) -> dict[str, Any]:
        ...

    def update_invoice(self, xero_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        ...

    def create_payment(self, payload: dict[str, Any]) -> dict[str, Any]:
        ...


class RemoteRecordSource(Protocol):
    pages_fetched: int
    total_fetched: int

    def fetch_all(self, resource: XeroResource, query: XeroQuery, page_size: int | None = None) -> Iterator[dict[str, Any]]:
        ...


class XeroPaginatorFactory(Protocol):
    def __call__(self, cancel_event: Any) -> RemoteRecordSource:
        ...


class ProgressSinkPort(Protocol):
    def start(self, entity: str, total: int) -> None:
        ...

    def progress(self, entity: str, current: int, message: str) -> None:
        ...

    def complete(self, entity: str, message: str) -> None:
        ...

    def fail(self, entity: str, error: str) -> None:
        ...


class ContactRepositoryPort(Protocol):
    def find_by_id(self, entity_id: int) -> LocalContact | None:
        ...

    def find_by_external_id(self, xero_contact_id: str) -> LocalContact | None:
        ...

    def create(self, record: LocalContact) -> LocalContact:
        ...

    def update(self, record: LocalContact) -> LocalContact:
        ...

    def create_many(self, records: Iterable[LocalContact]) -> list[LocalContact]:
        ...

    def list_numbers(self) -> list[str]:
        ...

    def list_all(self, include_inactive: bool = False) -> list[LocalContact]:
        ...


class InvoiceRepositoryPort(Protocol):
    def find_by_id(self, invoice_id: int) -> LocalInvoice | None:
        ...

    def find_by_external_id(self, xero_invoice_id: str) -> LocalInvoice | None:
        ...

    def create(self, record: LocalInvoice) -> LocalInvoice:
        ...

    def update(self, record: LocalInvoice) -> LocalInvoice:
        ...

    def update_payment_totals(self, invoice_id: int, amount_paid: Any, amount_due: Any, status: InvoiceStatus) -> None:
        ...

    def list_all(self) -> list[LocalInvoice]:
        ...


class PaymentRepositoryPort(Protocol):
    def find_by_id(self, payment_id: int) -> LocalPayment | None:
        ...

    def find_by_external_id(self, xero_payment_id: str) -> LocalPayment | None:
        ...

    def create(self, record: LocalPayment) -> LocalPayment:
        ...

    def update(self, record: LocalPayment) -> LocalPayment:
        ...

    def list_for_invoice(self, invoice_id: int) -> list[LocalPayment]:
        ...

    def list_all(self) -> list[LocalPayment]:
        ...


class SyncStateRepositoryPort(Protocol):
    def get(self, entity_type: EntityType, local_id: int) -> SyncStateRecord | None:
        ...

    def get_by_xero_id(self, entity_type: EntityType, xero_id: str) -> SyncStateRecord | None:
        ...

    def upsert(self, record: SyncStateRecord) -> SyncStateRecord:
        ...

    def mark_conflict(self, entity_type: EntityType, local_id: int, conflict_data: dict[str, Any], correlation_id: str) -> None:
        ...

    def mark_error(self, entity_type: EntityType, local_id: int, correlation_id: str) -> None:
        ...

    def reopen(self, entity_type: EntityType, local_id: int, *, clear_remote_hash: bool = False) -> None:
        ...

    def list_conflicts(self) -> list[SyncStateRecord]:
        ...


class SyncLogRepositoryPort(Protocol):
    def append(self, entry: SyncLogEntry) -> int:
        ...

    def list_for_entity(self, entity_type: EntityType, local_id: int) -> list[SyncLogEntry]:
        ...


class SyncJobQueuePort(Protocol):
    def enqueue(
        self,
        entity_type: EntityType,
        direction: SyncDirection,
        local_id: int | None = None,
        payload: dict[str, Any] | None = None,
    ) -> int | None:
        ...

    def claim_next(self, worker_id: str) -> SyncJob | None:
        ...

    def complete(self, job_id: int) -> None:
        ...

    def fail(self, job_id: int, error: str, max_attempts: int) -> None:
        ...

    def release(self, job_id: int) -> None:
        ...

    def release_stale(self, older_than: datetime) -> int:
        ...

    def pending_count(self) -> int:
        ...
