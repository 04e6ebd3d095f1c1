from __future__ import annotations

import contextlib
import functools
import logging
import threading
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from xero_sync.application.use_cases.sync_xero.contact_sync import CONTACT_ENTITY_TYPES, ContactSyncHandler
from xero_sync.application.use_cases.sync_xero.handler_base import SyncHandlerBase, actor_scope
from xero_sync.application.use_cases.sync_xero.invoice_sync import InvoiceSyncHandler
from xero_sync.application.use_cases.sync_xero.payment_sync import PaymentSyncHandler
from xero_sync.application.use_cases.sync_xero.progress import LoggingProgressSink, ProgressTracker
from xero_sync.bootstrap.logging import log_operational_error
from xero_sync.core.errors import AppError, SyncAlreadyRunningError
from xero_sync.core.observability import OperationContext, log_event
from xero_sync.domain.models import EntityType, RunStatus, SyncDirection, XeroResource
from xero_sync.domain.ports import ProgressSinkPort, RemoteRecordSource, XeroPaginatorFactory
from xero_sync.domain.sync_models import (
    ConflictEntry,
    ErrorDetail,
    RecordOutcome,
    RecordResult,
    SyncCounts,
    SyncOptions,
    SyncResult,
    summarize_counts,
)
from xero_sync.domain.time_utils import utc_now
from xero_sync.domain.xero_errors import XeroAuthError, XeroRetriesExhaustedError
from xero_sync.infrastructure.xero_client_puros import XeroQuery
from xero_sync.infrastructure.xero_payloads import parse_contact, parse_invoice, parse_payment, remote_id

logger = logging.getLogger(__name__)

RunKey = tuple[EntityType, SyncDirection]

# Order matters both ways: invoices link to contacts and payments link to invoices.
PULL_ORDER = (EntityType.CONTACT, EntityType.INVOICE, EntityType.PAYMENT)
PUSH_ORDER = PULL_ORDER


def lock_entities(entity_type: EntityType) -> tuple[EntityType, ...]:
    """Entities whose rows a run of this type writes; a CONTACT run writes customers and suppliers."""
    return CONTACT_ENTITY_TYPES if entity_type is EntityType.CONTACT else (entity_type,)


@dataclass
class _RunAccumulator:
    counts: SyncCounts = field(default_factory=SyncCounts)
    errors: list[ErrorDetail] = field(default_factory=list)
    conflicts: list[ConflictEntry] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)

    def add(self, result: RecordResult) -> None:
        self.counts.record(result)
        if result.conflict is not None:
            self.conflicts.append(result.conflict)
        if result.note and result.outcome is not RecordOutcome.CONFLICT:
            self.notes.append(f"{result.entity_type.value} {result.xero_id or result.local_id}: {result.note}")

    def add_error(self, detail: ErrorDetail) -> None:
        self.counts.errors += 1
        self.errors.append(detail)


class SyncOrchestrator:
    """Runs syncs that never overlap on the same table and direction, reporting to the progress sink.

    Per-record failures are counted and the run goes on; authentication
    failures and exhausted retries abort the run as FAILED. Either way the
    returned result carries the full breakdown.
    """

    def __init__(
        self,
        paginator_factory: XeroPaginatorFactory,
        contacts: ContactSyncHandler,
        invoices: InvoiceSyncHandler,
        payments: PaymentSyncHandler,
        *,
        progress_sink: ProgressSinkPort | None = None,
        progress_interval: int = 10,
        reset_delay_completed: float = 3.0,
        reset_delay_failed: float = 5.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._paginator_factory = paginator_factory
        self._contacts = contacts
        self._invoices = invoices
        self._payments = payments
        self._sink = progress_sink or LoggingProgressSink()
        self._progress_interval = progress_interval
        self._reset_delays = {RunStatus.COMPLETED: reset_delay_completed, RunStatus.FAILED: reset_delay_failed}
        self._clock = clock
        self._state_lock = threading.Lock()
        self._run_locks: dict[RunKey, threading.Lock] = {}
        self._statuses: dict[RunKey, RunStatus] = {}
        self._cancel_events: dict[RunKey, threading.Event] = {}
        self._reset_timers: dict[RunKey, threading.Timer] = {}

    # Public API

    def run(
        self,
        entity_type: EntityType,
        direction: SyncDirection,
        *,
        options: SyncOptions | None = None,
    ) -> SyncResult:
        options = options or SyncOptions()
        with self.exclusive(entity_type, direction):
            return self._run_locked((entity_type, direction), options)

    @contextlib.contextmanager
    def exclusive(self, entity_type: EntityType, direction: SyncDirection) -> Iterator[None]:
        """Holds the run locks of every table this (entity, direction) writes.

        Locks are taken without waiting and in a fixed order, so a CONTACT pull
        and a CUSTOMER pull can never write the same rows at once. Raises
        SyncAlreadyRunningError when any of them is taken.
        """
        acquired: list[threading.Lock] = []
        try:
            for locked_entity in lock_entities(entity_type):
                lock = self._run_lock((locked_entity, direction))
                if not lock.acquire(blocking=False):
                    raise SyncAlreadyRunningError(
                        f"A {direction.value} touching {locked_entity.value} records is already running"
                    )
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    def sync_all(self, direction: SyncDirection, options: SyncOptions | None = None) -> SyncResult:
        options = options or SyncOptions()
        order = PULL_ORDER if direction is SyncDirection.PULL else PUSH_ORDER
        started_at = self._clock()
        children: list[SyncResult] = []
        notes: list[str] = []
        for entity_type in order:
            child = self.run(entity_type, direction, options=options)
            children.append(child)
            if child.status is RunStatus.FAILED:
                remaining = order[len(children):]
                if remaining:
                    notes.append(
                        f"Stopped after {entity_type.value} failed; not run: "
                        + ", ".join(item.value for item in remaining)
                    )
                break
            if child.cancelled:
                break

        totals = SyncCounts()
        for child in children:
            for name, value in child.counts.items():
                setattr(totals, name, getattr(totals, name) + value)
        counts = totals.as_dict()
        failed = any(child.status is RunStatus.FAILED for child in children)
        return SyncResult(
            entity_type=None,
            direction=direction,
            status=RunStatus.FAILED if failed else RunStatus.COMPLETED,
            correlation_id=children[0].correlation_id if children else "",
            dry_run=options.dry_run,
            counts=counts,
            error_details=tuple(detail for child in children for detail in child.error_details),
            conflict_details=tuple(entry for child in children for entry in child.conflict_details),
            notes=tuple(notes) + tuple(note for child in children for note in child.notes),
            total_fetched=sum(child.total_fetched for child in children),
            pages_fetched=sum(child.pages_fetched for child in children),
            cancelled=any(child.cancelled for child in children),
            message=summarize_counts(counts, dry_run=options.dry_run),
            started_at=started_at,
            finished_at=self._clock(),
            children=tuple(children),
        )

    def status(self, entity_type: EntityType, direction: SyncDirection) -> RunStatus:
        with self._state_lock:
            return self._statuses.get((entity_type, direction), RunStatus.IDLE)

    def cancel(self, entity_type: EntityType | None = None, direction: SyncDirection | None = None) -> int:
        cancelled = 0
        with self._state_lock:
            for (key_entity, key_direction), event in self._cancel_events.items():
                if entity_type is not None and not set(lock_entities(key_entity)) & set(lock_entities(entity_type)):
                    continue
                if direction is not None and key_direction is not direction:
                    continue
                if self._statuses.get((key_entity, key_direction)) is RunStatus.RUNNING:
                    event.set()
                    cancelled += 1
        if cancelled:
            logger.info("Cancellation requested for %s running sync(s)", cancelled)
        return cancelled

    def shutdown(self) -> None:
        with self._state_lock:
            timers = list(self._reset_timers.values())
            self._reset_timers.clear()
        for timer in timers:
            timer.cancel()

    # Run lifecycle

    def _run_lock(self, key: RunKey) -> threading.Lock:
        with self._state_lock:
            return self._run_locks.setdefault(key, threading.Lock())

    def _begin(self, key: RunKey) -> threading.Event:
        event = threading.Event()
        with self._state_lock:
            timer = self._reset_timers.pop(key, None)
            if timer is not None:
                timer.cancel()
            self._statuses[key] = RunStatus.RUNNING
            self._cancel_events[key] = event
        return event

    def _finish(self, key: RunKey, status: RunStatus) -> None:
        timer = threading.Timer(self._reset_delays[status], self._reset_status, args=(key, status))
        timer.daemon = True
        with self._state_lock:
            self._statuses[key] = status
            self._reset_timers[key] = timer
        timer.start()

    def _reset_status(self, key: RunKey, expected: RunStatus) -> None:
        with self._state_lock:
            if self._statuses.get(key) is expected:
                self._statuses[key] = RunStatus.IDLE
            self._reset_timers.pop(key, None)

    def _run_locked(self, key: RunKey, options: SyncOptions) -> SyncResult:
        entity_type, direction = key
        cancel_event = self._begin(key)
        accumulator = _RunAccumulator()
        tracker = ProgressTracker(self._sink, entity_type.value, interval=self._progress_interval)
        source: RemoteRecordSource | None = None
        status = RunStatus.COMPLETED
        failure = ""

        operation_name = f"xero_sync.{direction.value}.{entity_type.value.lower()}"
        with OperationContext(operation_name) as operation, actor_scope(options.actor):
            started_at = self._clock()
            log_event(
                logger,
                "sync_run_started",
                {"entity": entity_type.value, "direction": direction.value, "dry_run": options.dry_run},
                operation.correlation_id,
            )
            try:
                if direction is SyncDirection.PULL:
                    source = self._paginator_factory(cancel_event)
                    self._pull(entity_type, options, source, tracker, accumulator, cancel_event)
                else:
                    self._push(entity_type, options, tracker, accumulator, cancel_event)
            except (XeroAuthError, XeroRetriesExhaustedError) as exc:
                status = RunStatus.FAILED
                failure = str(exc)
                log_operational_error(
                    logger,
                    "Xero sync run aborted",
                    exc=exc,
                    extra={"entity": entity_type.value, "direction": direction.value},
                )
            except Exception as exc:
                status = RunStatus.FAILED
                failure = f"{type(exc).__name__}: {exc}"
                log_operational_error(
                    logger,
                    "Xero sync run failed unexpectedly",
                    exc=exc,
                    extra={"entity": entity_type.value, "direction": direction.value},
                )

            counts = accumulator.counts.as_dict()
            cancelled = cancel_event.is_set()
            if status is RunStatus.COMPLETED:
                message = summarize_counts(counts, dry_run=options.dry_run)
                if cancelled:
                    message = f"Cancelled: {message}"
                tracker.finish(message)
            else:
                message = f"{failure} ({summarize_counts(counts, dry_run=options.dry_run)})"
                tracker.fail(failure)

            result = SyncResult(
                entity_type=entity_type,
                direction=direction,
                status=status,
                correlation_id=operation.correlation_id,
                dry_run=options.dry_run,
                counts=counts,
                error_details=tuple(accumulator.errors),
                conflict_details=tuple(accumulator.conflicts),
                notes=tuple(accumulator.notes),
                total_fetched=source.total_fetched if source is not None else tracker.current,
                pages_fetched=source.pages_fetched if source is not None else 0,
                cancelled=cancelled,
                message=message,
                started_at=started_at,
                finished_at=self._clock(),
            )
            log_event(
                logger,
                "sync_run_finished",
                {
                    "entity": entity_type.value,
                    "direction": direction.value,
                    "status": status.value,
                    "counts": counts,
                    "cancelled": cancelled,
                    "elapsed_ms": operation.elapsed_ms,
                },
                operation.correlation_id,
            )
        self._finish(key, status)
        return result

    # Pull / push loops

    def _pull_target(self, entity_type: EntityType) -> tuple[XeroResource, SyncHandlerBase, Callable[..., Any]]:
        if entity_type is EntityType.INVOICE:
            return XeroResource.INVOICES, self._invoices, lambda raw, **kw: (self._invoices.pull_record(parse_invoice(raw), **kw),)
        if entity_type is EntityType.PAYMENT:
            return XeroResource.PAYMENTS, self._payments, lambda raw, **kw: (self._payments.pull_record(parse_payment(raw), **kw),)
        roles = CONTACT_ENTITY_TYPES if entity_type is EntityType.CONTACT else (entity_type,)
        return (
            XeroResource.CONTACTS,
            self._contacts,
            lambda raw, **kw: self._contacts.pull_record(parse_contact(raw), roles=roles, **kw),
        )

    def _pull(
        self,
        entity_type: EntityType,
        options: SyncOptions,
        source: RemoteRecordSource,
        tracker: ProgressTracker,
        accumulator: _RunAccumulator,
        cancel_event: threading.Event,
    ) -> None:
        resource, handler, process = self._pull_target(entity_type)
        query = XeroQuery(modified_since=options.modified_since, include_archived=options.include_archived)
        tracker.start(0)
        for index, raw in enumerate(source.fetch_all(resource, query, options.page_size), start=1):
            self._process_record(
                lambda: process(raw, dry_run=options.dry_run),
                handler,
                entity_type,
                SyncDirection.PULL,
                accumulator,
                xero_id=remote_id(resource, raw),
                dry_run=options.dry_run,
            )
            tracker.step(index)
            if cancel_event.is_set():
                break

    def _push_targets(self, entity_type: EntityType, options: SyncOptions) -> list[tuple[EntityType, int]]:
        if entity_type is EntityType.INVOICE:
            invoice_ids = list(options.local_ids) if options.local_ids else self._invoices.push_candidates()
            return [(EntityType.INVOICE, local_id) for local_id in invoice_ids]
        if entity_type is EntityType.PAYMENT:
            payment_ids = list(options.local_ids) if options.local_ids else self._payments.push_candidates()
            return [(EntityType.PAYMENT, local_id) for local_id in payment_ids]
        entity_types = lock_entities(entity_type)
        targets: list[tuple[EntityType, int]] = []
        for contact_type in entity_types:
            repository = self._contacts.repository_for(contact_type)
            if options.local_ids:
                ids: Iterable[int] = options.local_ids
                if entity_type is EntityType.CONTACT:
                    ids = [local_id for local_id in ids if repository.find_by_id(local_id) is not None]
            else:
                ids = [record.id for record in repository.list_all() if record.id is not None]
            targets.extend((contact_type, local_id) for local_id in ids)
        return targets

    def _push_target(self, entity_type: EntityType) -> tuple[SyncHandlerBase, Callable[..., RecordResult]]:
        if entity_type is EntityType.INVOICE:
            return self._invoices, self._invoices.push_record
        if entity_type is EntityType.PAYMENT:
            return self._payments, self._payments.push_record
        return self._contacts, functools.partial(self._contacts.push_record, entity_type)

    def _push(
        self,
        entity_type: EntityType,
        options: SyncOptions,
        tracker: ProgressTracker,
        accumulator: _RunAccumulator,
        cancel_event: threading.Event,
    ) -> None:
        targets = self._push_targets(entity_type, options)
        tracker.start(len(targets))
        for index, (target_type, local_id) in enumerate(targets, start=1):
            if cancel_event.is_set():
                break
            handler, push = self._push_target(target_type)
            self._process_record(
                lambda: (push(local_id, dry_run=options.dry_run),),
                handler,
                target_type,
                SyncDirection.PUSH,
                accumulator,
                local_id=local_id,
                dry_run=options.dry_run,
            )
            tracker.step(index, len(targets))

    @staticmethod
    def _process_record(
        operation: Callable[[], tuple[RecordResult, ...]],
        handler: SyncHandlerBase,
        entity_type: EntityType,
        direction: SyncDirection,
        accumulator: _RunAccumulator,
        *,
        xero_id: str | None = None,
        local_id: int | None = None,
        dry_run: bool = False,
    ) -> None:
        try:
            results = operation()
        except XeroAuthError:
            raise
        except AppError as exc:
            logger.warning("%s %s failed for %s: %s", direction.value, entity_type.value, xero_id or local_id, exc)
            accumulator.add_error(
                handler.record_failure(entity_type, direction, exc, local_id=local_id, xero_id=xero_id, dry_run=dry_run)
            )
        except Exception as exc:
            logger.exception("Unexpected error during %s of %s %s", direction.value, entity_type.value, xero_id or local_id)
            accumulator.add_error(
                handler.record_failure(entity_type, direction, exc, local_id=local_id, xero_id=xero_id, dry_run=dry_run)
            )
        else:
            for result in results:
                accumulator.add(result)
