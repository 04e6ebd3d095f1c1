from __future__ import annotations

import importlib
import os
import platform
import sqlite3
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _is_linux_headless() -> bool:
    if platform.system() != "Linux":
        return False
    return not (os.environ.get("DISPLAY") or os.environ.get("WAYLAND_DISPLAY"))


if _is_linux_headless():
    os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")
    os.environ.setdefault("QT_OPENGL", "software")


_UI_BACKEND_ERROR: str | None = None


def _detect_ui_backend_issue() -> str | None:
    try:
        importlib.import_module("PySide6")
        importlib.import_module("PySide6.QtCore")
        return None
    except Exception as exc:  # pragma: no cover - depends on the host
        return f"PySide6/Qt unavailable for UI tests: {exc}"


def pytest_configure(config: pytest.Config) -> None:
    global _UI_BACKEND_ERROR
    config.addinivalue_line("markers", "ui: PySide6 adapter tests")
    _UI_BACKEND_ERROR = _detect_ui_backend_issue()


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    skip_ui = None
    if _UI_BACKEND_ERROR is not None:
        skip_ui = pytest.mark.skip(reason=_UI_BACKEND_ERROR)

    for item in items:
        if "tests/ui/" in item.nodeid:
            item.add_marker(pytest.mark.ui)
        if skip_ui is not None and "ui" in item.keywords:
            item.add_marker(skip_ui)


from tests.fakes import FakeXeroApi, no_sleep
from xero_sync.application.conflicts_service import ConflictsService
from xero_sync.application.use_cases.sync_xero import (
    ContactSyncHandler,
    InvoiceSyncHandler,
    PaymentSyncHandler,
    RecordingProgressSink,
    SyncOrchestrator,
)
from xero_sync.infrastructure.db import MEMORY_DATABASE, get_connection
from xero_sync.infrastructure.migrations import run_migrations
from xero_sync.infrastructure.repos_jobs_sqlite import SQLiteSyncJobQueue
from xero_sync.infrastructure.repos_sqlite import (
    SQLiteCustomerRepository,
    SQLiteInvoiceRepository,
    SQLitePaymentRepository,
    SQLiteSupplierRepository,
)
from xero_sync.infrastructure.repos_sync_state_sqlite import SQLiteSyncLogRepository, SQLiteSyncStateRepository
from xero_sync.infrastructure.xero_paginator import XeroPaginator


@pytest.fixture
def connection() -> sqlite3.Connection:
    conn = get_connection(MEMORY_DATABASE)
    run_migrations(conn)
    yield conn
    conn.close()


@pytest.fixture
def customer_repo(connection: sqlite3.Connection) -> SQLiteCustomerRepository:
    return SQLiteCustomerRepository(connection)


@pytest.fixture
def supplier_repo(connection: sqlite3.Connection) -> SQLiteSupplierRepository:
    return SQLiteSupplierRepository(connection)


@pytest.fixture
def invoice_repo(connection: sqlite3.Connection) -> SQLiteInvoiceRepository:
    return SQLiteInvoiceRepository(connection)


@pytest.fixture
def payment_repo(connection: sqlite3.Connection) -> SQLitePaymentRepository:
    return SQLitePaymentRepository(connection)


@pytest.fixture
def sync_state_repo(connection: sqlite3.Connection) -> SQLiteSyncStateRepository:
    return SQLiteSyncStateRepository(connection)


@pytest.fixture
def sync_log_repo(connection: sqlite3.Connection) -> SQLiteSyncLogRepository:
    return SQLiteSyncLogRepository(connection)


@pytest.fixture
def job_queue(connection: sqlite3.Connection) -> SQLiteSyncJobQueue:
    return SQLiteSyncJobQueue(connection)


@pytest.fixture
def fake_api() -> FakeXeroApi:
    return FakeXeroApi()


@pytest.fixture
def contact_handler(
    connection: sqlite3.Connection,
    customer_repo: SQLiteCustomerRepository,
    supplier_repo: SQLiteSupplierRepository,
    sync_state_repo: SQLiteSyncStateRepository,
    sync_log_repo: SQLiteSyncLogRepository,
    fake_api: FakeXeroApi,
) -> ContactSyncHandler:
    return ContactSyncHandler(connection, customer_repo, supplier_repo, sync_state_repo, sync_log_repo, fake_api)


@pytest.fixture
def invoice_handler(
    connection: sqlite3.Connection,
    invoice_repo: SQLiteInvoiceRepository,
    customer_repo: SQLiteCustomerRepository,
    supplier_repo: SQLiteSupplierRepository,
    payment_repo: SQLitePaymentRepository,
    sync_state_repo: SQLiteSyncStateRepository,
    sync_log_repo: SQLiteSyncLogRepository,
    fake_api: FakeXeroApi,
) -> InvoiceSyncHandler:
    return InvoiceSyncHandler(
        connection,
        invoice_repo,
        customer_repo,
        supplier_repo,
        payment_repo,
        sync_state_repo,
        sync_log_repo,
        fake_api,
    )


@pytest.fixture
def payment_handler(
    connection: sqlite3.Connection,
    payment_repo: SQLitePaymentRepository,
    invoice_repo: SQLiteInvoiceRepository,
    sync_state_repo: SQLiteSyncStateRepository,
    sync_log_repo: SQLiteSyncLogRepository,
    fake_api: FakeXeroApi,
) -> PaymentSyncHandler:
    return PaymentSyncHandler(connection, payment_repo, invoice_repo, sync_state_repo, sync_log_repo, fake_api)


@pytest.fixture
def progress_sink() -> RecordingProgressSink:
    return RecordingProgressSink()


@pytest.fixture
def orchestrator(
    fake_api: FakeXeroApi,
    contact_handler: ContactSyncHandler,
    invoice_handler: InvoiceSyncHandler,
    payment_handler: PaymentSyncHandler,
    progress_sink: RecordingProgressSink,
) -> SyncOrchestrator:
    def paginator_factory(cancel_event):
        return XeroPaginator(fake_api, inter_page_delay=0, cancel_event=cancel_event, sleep=no_sleep)

    instance = SyncOrchestrator(
        paginator_factory,
        contact_handler,
        invoice_handler,
        payment_handler,
        progress_sink=progress_sink,
        reset_delay_completed=60,
        reset_delay_failed=60,
    )
    yield instance
    instance.shutdown()


@pytest.fixture
def conflicts_service(
    connection: sqlite3.Connection,
    sync_state_repo: SQLiteSyncStateRepository,
    contact_handler: ContactSyncHandler,
    fake_api: FakeXeroApi,
    invoice_handler: InvoiceSyncHandler,
    payment_handler: PaymentSyncHandler,
    orchestrator: SyncOrchestrator,
) -> ConflictsService:
    return ConflictsService(
        connection,
        sync_state_repo,
        contact_handler,
        fake_api,
        invoices=invoice_handler,
        payments=payment_handler,
        run_guard=orchestrator.exclusive,
    )
