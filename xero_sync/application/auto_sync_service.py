from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from xero_sync.application.use_cases.sync_xero.orchestrator import SyncOrchestrator
from xero_sync.bootstrap.logging import log_operational_error
from xero_sync.core.errors import SyncAlreadyRunningError, ValidationError
from xero_sync.core.observability import OperationContext
from xero_sync.domain.models import EntityType, RunStatus, SyncDirection, SyncJob
from xero_sync.domain.ports import SyncJobQueuePort
from xero_sync.domain.sync_models import SyncOptions
from xero_sync.domain.time_utils import parse_timestamp, utc_now

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER = timedelta(minutes=15)


@dataclass
class DrainSummary:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    deferred: int = 0
    released_stale: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "deferred": self.deferred,
            "released_stale": self.released_stale,
            "errors": list(self.errors),
        }


class AutoSyncService:
    """Queues sync work after local edits and drains it later, from any process.

    Pending jobs live in SQLite, so a crash between enqueue and drain only
    delays the sync; a claim left behind by a dead worker is released after
    ``stale_after``. Every job runs through the orchestrator, so a job never
    writes rows that a manual run is writing at the same time: it is handed
    back to the queue instead.
    """

    def __init__(
        self,
        queue: SyncJobQueuePort,
        orchestrator: SyncOrchestrator,
        *,
        worker_id: str = "xero-sync-worker",
        max_attempts: int = 3,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._queue = queue
        self._orchestrator = orchestrator
        self._worker_id = worker_id
        self._max_attempts = max_attempts
        self._stale_after = stale_after
        self._clock = clock

    def queue_push(self, entity_type: EntityType, local_id: int) -> int | None:
        if entity_type is EntityType.CONTACT:
            raise ValidationError("Queue the push of a customer or a supplier, not of a generic contact")
        job_id = self._queue.enqueue(entity_type, SyncDirection.PUSH, local_id)
        logger.debug("Queued push of %s %s (job=%s)", entity_type.value, local_id, job_id)
        return job_id

    def queue_pull(self, entity_type: EntityType, *, modified_since: datetime | None = None) -> int | None:
        payload = {"modified_since": modified_since.isoformat()} if modified_since else None
        job_id = self._queue.enqueue(entity_type, SyncDirection.PULL, None, payload)
        logger.debug("Queued pull of %s (job=%s)", entity_type.value, job_id)
        return job_id

    def pending_count(self) -> int:
        return self._queue.pending_count()

    def drain(self, max_jobs: int | None = None) -> DrainSummary:
        summary = DrainSummary()
        summary.released_stale = self._queue.release_stale(self._clock() - self._stale_after)
        while max_jobs is None or summary.processed < max_jobs:
            job = self._queue.claim_next(self._worker_id)
            if job is None:
                break
            try:
                error = self._run_job(job)
            except SyncAlreadyRunningError as exc:
                # Jobs are claimed in id order, so stop here and keep the queue order.
                self._queue.release(job.id)
                summary.deferred += 1
                logger.info("Deferred sync job %s: %s", job.id, exc)
                break
            summary.processed += 1
            if error is None:
                self._queue.complete(job.id)
                summary.succeeded += 1
            else:
                self._queue.fail(job.id, error, self._max_attempts)
                summary.failed += 1
                summary.errors.append(f"job {job.id}: {error}")
        if summary.processed or summary.deferred:
            logger.info(
                "Drained %s sync job(s): %s ok, %s failed, %s deferred",
                summary.processed,
                summary.succeeded,
                summary.failed,
                summary.deferred,
            )
        return summary

    def _run_job(self, job: SyncJob) -> str | None:
        options = SyncOptions(
            modified_since=parse_timestamp(job.payload.get("modified_since")),
            local_ids=(job.local_id,) if job.local_id is not None else (),
            actor=f"auto-sync:{self._worker_id}",
        )
        with OperationContext(f"xero_sync.job.{job.id}"):
            try:
                run = self._orchestrator.run(job.entity_type, job.direction, options=options)
            except SyncAlreadyRunningError:
                raise
            except Exception as exc:
                log_operational_error(
                    logger,
                    "Sync job failed",
                    exc=exc,
                    extra={"job_id": job.id, "entity": job.entity_type.value, "direction": job.direction.value},
                )
                return f"{type(exc).__name__}: {exc}"
        if run.status is RunStatus.FAILED:
            return run.message or "sync run failed"
        if job.direction is SyncDirection.PUSH and run.error_details:
            detail = run.error_details[0]
            return f"{detail.error_type}: {detail.message}"
        if run.counts.get("conflicts"):
            # Parked for an operator; retrying would only re-detect it.
            logger.warning("Sync job %s stopped on %s conflict(s)", job.id, run.counts["conflicts"])
        return None
