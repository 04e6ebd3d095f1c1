from __future__ import annotations

import threading

import pytest

from tests.fakes import xero_contact, xero_invoice
from xero_sync.application.auto_sync_service import AutoSyncService
from xero_sync.core.errors import SyncAlreadyRunningError
from xero_sync.domain.models import EntityType, JobStatus, LocalCustomer, RunStatus, SyncDirection, XeroResource
from xero_sync.infrastructure.xero_payloads import parse_contact


def _start(target) -> tuple[threading.Thread, dict[str, object]]:
    outcome: dict[str, object] = {}

    def run() -> None:
        try:
            outcome["result"] = target()
        except Exception as exc:  # noqa: BLE001
            outcome["error"] = exc

    worker = threading.Thread(target=run)
    worker.start()
    return worker, outcome


def _block_first_call(entered: threading.Event, release: threading.Event):
    def hook(*_args) -> None:
        if not entered.is_set():
            entered.set()
            release.wait(timeout=5)

    return hook


def test_parallel_pulls_allocate_distinct_numbers(contact_handler, customer_repo) -> None:
    barrier = threading.Barrier(2, timeout=5)

    def pull_batch(prefix: str) -> None:
        barrier.wait()
        for index in range(5):
            contact_handler.pull_record(parse_contact(xero_contact(f"{prefix}-{index}", f"{prefix} {index}")))

    first, first_outcome = _start(lambda: pull_batch("north"))
    second, second_outcome = _start(lambda: pull_batch("south"))
    first.join(timeout=10)
    second.join(timeout=10)

    assert "error" not in first_outcome
    assert "error" not in second_outcome
    numbers = [customer.customer_number for customer in customer_repo.list_all()]
    assert len(numbers) == 10
    assert len(set(numbers)) == 10


def test_contact_pull_holds_both_role_locks(orchestrator, fake_api) -> None:
    fake_api.add(XeroResource.CONTACTS, xero_contact("c-1", "Acme"))
    entered = threading.Event()
    release = threading.Event()
    fake_api.on_fetch = _block_first_call(entered, release)

    worker, outcome = _start(lambda: orchestrator.run(EntityType.CONTACT, SyncDirection.PULL))
    try:
        assert entered.wait(timeout=5)
        with pytest.raises(SyncAlreadyRunningError):
            orchestrator.run(EntityType.CUSTOMER, SyncDirection.PULL)
        with pytest.raises(SyncAlreadyRunningError):
            orchestrator.run(EntityType.SUPPLIER, SyncDirection.PULL)
    finally:
        release.set()
        worker.join(timeout=5)

    assert outcome["result"].status is RunStatus.COMPLETED


def test_role_pull_blocks_the_contact_pull_only(orchestrator, fake_api) -> None:
    fake_api.add(XeroResource.CONTACTS, xero_contact("c-1", "Acme", IsSupplier=True))
    entered = threading.Event()
    release = threading.Event()
    fake_api.on_fetch = _block_first_call(entered, release)

    worker, outcome = _start(lambda: orchestrator.run(EntityType.CUSTOMER, SyncDirection.PULL))
    try:
        assert entered.wait(timeout=5)
        with pytest.raises(SyncAlreadyRunningError):
            orchestrator.run(EntityType.CONTACT, SyncDirection.PULL)
        suppliers = orchestrator.run(EntityType.SUPPLIER, SyncDirection.PULL)
    finally:
        release.set()
        worker.join(timeout=5)

    assert suppliers.status is RunStatus.COMPLETED
    assert suppliers.counts["created"] == 1
    assert outcome["result"].status is RunStatus.COMPLETED


def test_contact_and_invoice_pulls_run_side_by_side(orchestrator, fake_api, customer_repo, invoice_repo) -> None:
    fake_api.add(XeroResource.CONTACTS, xero_contact("c-1", "Acme"))
    orchestrator.run(EntityType.CONTACT, SyncDirection.PULL)
    fake_api.add(XeroResource.CONTACTS, xero_contact("c-2", "Beta"))
    fake_api.add(XeroResource.INVOICES, xero_invoice("inv-1", "c-1"), xero_invoice("inv-2", "c-1"))
    barrier = threading.Barrier(2, timeout=5)
    waited: set[XeroResource] = set()

    def meet_on_first_page(resource, page) -> None:
        if page == 1 and resource not in waited:
            waited.add(resource)
            barrier.wait()

    fake_api.on_fetch = meet_on_first_page

    contacts, contact_outcome = _start(lambda: orchestrator.run(EntityType.CONTACT, SyncDirection.PULL))
    invoices, invoice_outcome = _start(lambda: orchestrator.run(EntityType.INVOICE, SyncDirection.PULL))
    contacts.join(timeout=10)
    invoices.join(timeout=10)

    assert contact_outcome["result"].status is RunStatus.COMPLETED
    assert contact_outcome["result"].counts["errors"] == 0
    assert invoice_outcome["result"].status is RunStatus.COMPLETED
    assert invoice_outcome["result"].counts["errors"] == 0
    assert invoice_outcome["result"].counts["created"] == 2
    assert customer_repo.find_by_external_id("c-2") is not None
    assert len(invoice_repo.list_all()) == 2


def test_queued_push_waits_for_a_running_contact_push(orchestrator, job_queue, customer_repo, fake_api) -> None:
    customer = customer_repo.create(LocalCustomer(id=None, name="Acme", customer_number="C-0001"))
    auto_sync = AutoSyncService(job_queue, orchestrator, worker_id="test-worker")
    job_id = auto_sync.queue_push(EntityType.CUSTOMER, customer.id)
    entered = threading.Event()
    release = threading.Event()
    fake_api.on_push = _block_first_call(entered, release)

    worker, outcome = _start(lambda: orchestrator.run(EntityType.CONTACT, SyncDirection.PUSH))
    try:
        assert entered.wait(timeout=5)
        deferred = auto_sync.drain()
    finally:
        release.set()
        worker.join(timeout=5)

    assert deferred.deferred == 1
    assert deferred.processed == 0
    job = job_queue.get(job_id)
    assert job.status is JobStatus.PENDING
    assert job.attempts == 0
    assert outcome["result"].counts["created"] == 1

    later = auto_sync.drain()

    assert later.succeeded == 1
    assert job_queue.get(job_id).status is JobStatus.DONE
    assert len(fake_api.created) == 1
