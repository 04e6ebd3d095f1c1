"""Handlers and orchestration for the Xero two-way sync."""

from xero_sync.application.use_cases.sync_xero.contact_sync import ContactSyncHandler
from xero_sync.application.use_cases.sync_xero.handler_base import actor_scope
from xero_sync.application.use_cases.sync_xero.invoice_sync import InvoiceSyncHandler
from xero_sync.application.use_cases.sync_xero.orchestrator import SyncOrchestrator
from xero_sync.application.use_cases.sync_xero.payment_sync import PaymentSyncHandler
from xero_sync.application.use_cases.sync_xero.progress import (
    CompositeProgressSink,
    LoggingProgressSink,
    RecordingProgressSink,
)

__all__ = [
    "CompositeProgressSink",
    "ContactSyncHandler",
    "InvoiceSyncHandler",
    "LoggingProgressSink",
    "PaymentSyncHandler",
    "RecordingProgressSink",
    "SyncOrchestrator",
    "actor_scope",
]
