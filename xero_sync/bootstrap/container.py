from __future__ import annotations

import sqlite3
import threading
from dataclasses import dataclass
from typing import Callable

import requests

from xero_sync.application.auto_sync_service import AutoSyncService
from xero_sync.application.conflicts_service import ConflictsService
from xero_sync.application.use_cases.sync_xero import (
    ContactSyncHandler,
    InvoiceSyncHandler,
    PaymentSyncHandler,
    SyncOrchestrator,
)
from xero_sync.bootstrap.settings import SyncSettings, load_settings
from xero_sync.domain.ports import ProgressSinkPort
from xero_sync.infrastructure.db import get_connection
from xero_sync.infrastructure.migrations import run_migrations
from xero_sync.infrastructure.repos_connections_sqlite import SQLiteXeroConnectionRepository
from xero_sync.infrastructure.repos_jobs_sqlite import SQLiteSyncJobQueue
from xero_sync.infrastructure.repos_sqlite import (
    SQLiteCustomerRepository,
    SQLiteInvoiceRepository,
    SQLitePaymentRepository,
    SQLiteSupplierRepository,
)
from xero_sync.infrastructure.repos_sync_state_sqlite import SQLiteSyncLogRepository, SQLiteSyncStateRepository
from xero_sync.infrastructure.xero_client import XeroHttpClient
from xero_sync.infrastructure.xero_client_puros import RetryPolicy
from xero_sync.infrastructure.xero_paginator import XeroPaginator
from xero_sync.infrastructure.xero_token_provider import XeroTokenProvider


@dataclass
class AppContainer:
    settings: SyncSettings
    connection: sqlite3.Connection
    sync_state: SQLiteSyncStateRepository
    sync_log: SQLiteSyncLogRepository
    token_provider: XeroTokenProvider
    xero_client: XeroHttpClient
    contact_handler: ContactSyncHandler
    invoice_handler: InvoiceSyncHandler
    payment_handler: PaymentSyncHandler
    orchestrator: SyncOrchestrator
    conflicts_service: ConflictsService
    job_queue: SQLiteSyncJobQueue
    auto_sync: AutoSyncService


ConnectionFactory = Callable[..., sqlite3.Connection]


def build_container(
    settings: SyncSettings | None = None,
    connection_factory: ConnectionFactory = get_connection,
    session: requests.Session | None = None,
    progress_sink: ProgressSinkPort | None = None,
) -> AppContainer:
    settings = settings or load_settings()
    connection = connection_factory(settings.db_path)
    run_migrations(connection)

    customers = SQLiteCustomerRepository(connection)
    suppliers = SQLiteSupplierRepository(connection)
    invoices = SQLiteInvoiceRepository(connection)
    payments = SQLitePaymentRepository(connection)
    sync_state = SQLiteSyncStateRepository(connection)
    sync_log = SQLiteSyncLogRepository(connection)
    job_queue = SQLiteSyncJobQueue(connection)

    http_session = session or requests.Session()
    token_provider = XeroTokenProvider(
        SQLiteXeroConnectionRepository(connection),
        client_id=settings.client_id,
        client_secret=settings.client_secret,
        token_url=settings.token_url,
        session=http_session,
        timeout=settings.request_timeout_seconds,
    )
    xero_client = XeroHttpClient(
        token_provider,
        base_url=settings.api_base_url,
        timeout=settings.request_timeout_seconds,
        session=http_session,
        rate_limit_default_wait=settings.rate_limit_default_wait_seconds,
    )
    retry_policy = RetryPolicy(
        max_attempts=settings.max_attempts,
        base_backoff_seconds=settings.base_backoff_seconds,
        max_backoff_seconds=settings.max_backoff_seconds,
        rate_limit_default_wait_seconds=settings.rate_limit_default_wait_seconds,
        max_rate_limit_retries=settings.max_rate_limit_retries,
    )

    def paginator_factory(cancel_event: threading.Event) -> XeroPaginator:
        return XeroPaginator(
            xero_client,
            policy=retry_policy,
            page_size=settings.page_size,
            inter_page_delay=settings.inter_page_delay_seconds,
            max_pages=settings.max_pages,
            max_consecutive_empty_pages=settings.max_consecutive_empty_pages,
            cancel_event=cancel_event,
        )

    contact_handler = ContactSyncHandler(
        connection,
        customers,
        suppliers,
        sync_state,
        sync_log,
        xero_client,
        general_contact_policy=settings.general_contact_policy,
        actor=settings.actor,
    )
    invoice_handler = InvoiceSyncHandler(
        connection,
        invoices,
        customers,
        suppliers,
        payments,
        sync_state,
        sync_log,
        xero_client,
        actor=settings.actor,
    )
    payment_handler = PaymentSyncHandler(
        connection,
        payments,
        invoices,
        sync_state,
        sync_log,
        xero_client,
        variance_threshold=settings.amount_variance_threshold,
        bank_account_code=settings.payment_account_code,
        actor=settings.actor,
    )
    orchestrator = SyncOrchestrator(
        paginator_factory,
        contact_handler,
        invoice_handler,
        payment_handler,
        progress_sink=progress_sink,
        progress_interval=settings.progress_interval,
        reset_delay_completed=settings.reset_delay_completed_seconds,
        reset_delay_failed=settings.reset_delay_failed_seconds,
    )
    conflicts_service = ConflictsService(
        connection,
        sync_state,
        contact_handler,
        xero_client,
        invoices=invoice_handler,
        payments=payment_handler,
        run_guard=orchestrator.exclusive,
    )
    auto_sync = AutoSyncService(
        job_queue,
        orchestrator,
        max_attempts=settings.job_max_attempts,
    )

    return AppContainer(
        settings=settings,
        connection=connection,
        sync_state=sync_state,
        sync_log=sync_log,
        token_provider=token_provider,
        xero_client=xero_client,
        contact_handler=contact_handler,
        invoice_handler=invoice_handler,
        payment_handler=payment_handler,
        orchestrator=orchestrator,
        conflicts_service=conflicts_service,
        job_queue=job_queue,
        auto_sync=auto_sync,
    )
