from __future__ import annotations

from datetime import timedelta

from xero_sync.domain.models import EntityType, JobStatus, SyncDirection
from xero_sync.domain.time_utils import utc_now


def test_open_job_is_deduplicated(job_queue) -> None:
    first = job_queue.enqueue(EntityType.CUSTOMER, SyncDirection.PUSH, 7)
    second = job_queue.enqueue(EntityType.CUSTOMER, SyncDirection.PUSH, 7)

    assert first is not None
    assert second is None
    assert job_queue.pending_count() == 1


def test_finished_job_can_be_queued_again(job_queue) -> None:
    job_id = job_queue.enqueue(EntityType.CUSTOMER, SyncDirection.PUSH, 7)
    job_queue.claim_next("worker")
    job_queue.complete(job_id)

    assert job_queue.enqueue(EntityType.CUSTOMER, SyncDirection.PUSH, 7) is not None


def test_claim_marks_job_and_counts_attempt(job_queue) -> None:
    job_queue.enqueue(EntityType.INVOICE, SyncDirection.PULL, payload={"modified_since": None})

    job = job_queue.claim_next("worker-a")

    assert job.status is JobStatus.CLAIMED
    assert job.claimed_by == "worker-a"
    assert job.attempts == 1
    assert job.local_id is None
    assert job_queue.claim_next("worker-b") is None


def test_failure_requeues_until_attempts_are_spent(job_queue) -> None:
    job_id = job_queue.enqueue(EntityType.SUPPLIER, SyncDirection.PUSH, 3)

    job_queue.claim_next("worker")
    job_queue.fail(job_id, "timeout", max_attempts=2)
    assert job_queue.get(job_id).status is JobStatus.PENDING

    job_queue.claim_next("worker")
    job_queue.fail(job_id, "timeout again", max_attempts=2)
    failed = job_queue.get(job_id)
    assert failed.status is JobStatus.FAILED
    assert failed.last_error == "timeout again"


def test_stale_claims_are_released(job_queue) -> None:
    job_id = job_queue.enqueue(EntityType.CUSTOMER, SyncDirection.PUSH, 1)
    job_queue.claim_next("crashed-worker")

    assert job_queue.release_stale(utc_now() - timedelta(minutes=5)) == 0
    assert job_queue.release_stale(utc_now() + timedelta(seconds=1)) == 1

    released = job_queue.get(job_id)
    assert released.status is JobStatus.PENDING
    assert released.claimed_by is None
