"""Durable webhook job queue and its worker.

Job lifecycle::

    pending ──claim──▶ processing ──ok──────────────▶ completed
       ▲                    │
       │                    ├─ retryable, retries < 3 ─▶ pending (retries + 1)
       └────────────────────┤
                            └─ terminal, or retries = 3 ─▶ failed

A job is claimed (written as ``processing``) before any provider call, so two
workers never run the same job.  Delivery is at-least-once: a worker that
dies mid-job leaves it in ``processing`` until ``reclaim_stuck_jobs`` returns
it to the pending pool.  Results are only written while the row is still
``processing``, so a stalled worker that wakes up after its job was reclaimed
cannot overwrite the newer state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from pydantic import ValidationError

from stepsync.models.webhooks import FitbitNotification
from stepsync.steps.base import JobStatus, JobType, QueuedJob, utc_now
from stepsync.steps.config_loader import SyncConfig, get_sync_config
from stepsync.steps.errors import ValidationFailure
from stepsync.steps.processor import NotificationProcessor, RevocationHandler
from stepsync.steps.store import StepStore
from stepsync.steps.sync.retry import (
    MAX_RETRIES,
    ErrorCategory,
    categorize_error,
    format_error,
    is_retryable,
)

logger = logging.getLogger("stepsync.steps.sync.queue")

STALL_MESSAGE = "reclaimed after worker stall"


@dataclass
class BatchResult:
    """Counts from one ``process_batch`` call."""

    processed: int = 0
    succeeded: int = 0
    retried: int = 0
    failed: int = 0
    reclaimed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "retried": self.retried,
            "failed": self.failed,
            "reclaimed": self.reclaimed,
        }


class JobQueue:
    """Producer side: persists notifications as pending jobs."""

    def __init__(self, store: StepStore) -> None:
        self._store = store

    async def enqueue_batch(self, notifications: list[FitbitNotification]) -> list[int]:
        """Enqueue a whole webhook delivery in one transaction, in arrival order."""
        payloads = [n.model_dump(mode="json", by_alias=True) for n in notifications]
        job_ids = await self._store.enqueue_jobs(JobType.fitbit_notification.value, payloads)
        logger.info("Enqueued %d Fitbit notification job(s)", len(job_ids))
        return job_ids

    async def stats(self) -> dict[str, int]:
        return await self._store.job_counts()


class QueueWorker:
    """Consumer side: claims eligible jobs and drives them to a terminal state."""

    def __init__(
        self,
        store: StepStore,
        processor: NotificationProcessor,
        revocations: RevocationHandler,
        config: SyncConfig | None = None,
    ) -> None:
        self._store = store
        self._processor = processor
        self._revocations = revocations
        self._config = config or get_sync_config()

    async def process_batch(self, limit: int | None = None) -> BatchResult:
        """Reclaim stalled jobs, then process up to ``queue.batch_size`` jobs.

        Stops early when no eligible job is left.
        """
        batch_size = limit or self._config.queue.batch_size
        result = BatchResult(reclaimed=await self.reclaim_stuck_jobs())

        for _ in range(batch_size):
            job = await self.process_next_job()
            if job is None:
                break
            result.processed += 1
            if job.status == JobStatus.completed:
                result.succeeded += 1
            elif job.status == JobStatus.pending:
                result.retried += 1
            else:
                result.failed += 1

        if result.processed or result.reclaimed:
            logger.info(
                "Queue batch: %d processed (%d ok, %d retry, %d failed), %d reclaimed",
                result.processed,
                result.succeeded,
                result.retried,
                result.failed,
                result.reclaimed,
            )
        return result

    async def process_next_job(self) -> QueuedJob | None:
        """Claim and run the oldest eligible job; returns it in its new state."""
        job = await self._store.claim_next_job()
        if job is None:
            return None

        try:
            await self.dispatch(job)
        except Exception as exc:
            self._record_failure(job, categorize_error(exc), str(exc))
        else:
            job.status = JobStatus.completed
            job.last_error = None
            job.processed_at = utc_now()
            logger.debug("Job %d completed", job.job_id)

        if not await self._store.save_job(job):
            logger.warning(
                "Job %d was reclaimed while running, %s outcome discarded",
                job.job_id,
                job.status.value,
            )
        return job

    async def dispatch(self, job: QueuedJob) -> None:
        if job.job_type != JobType.fitbit_notification.value:
            raise ValidationFailure(f"Unknown job type {job.job_type!r}")

        try:
            notification = FitbitNotification.model_validate(job.payload)
        except ValidationError as exc:
            raise ValidationFailure(f"Invalid notification payload: {exc}") from exc

        if notification.is_revocation:
            await self._revocations.handle(notification)
        else:
            await self._processor.process(notification)

    async def reclaim_stuck_jobs(self) -> int:
        """Treat jobs left in ``processing`` past the stall threshold as retryable failures."""
        threshold = timedelta(minutes=self._config.queue.stuck_after_minutes)
        reclaimed = await self._store.reclaim_stuck_jobs(
            threshold, format_error(ErrorCategory.unknown, STALL_MESSAGE), MAX_RETRIES
        )
        for job in reclaimed:
            logger.warning(
                "Job %d stalled in processing, reclaimed as %s (retry %d/%d)",
                job.job_id,
                job.status.value,
                job.retries,
                MAX_RETRIES,
            )
        return len(reclaimed)

    def _record_failure(self, job: QueuedJob, category: ErrorCategory, message: str) -> None:
        job.last_error = format_error(category, message)

        if not is_retryable(category):
            job.status = JobStatus.failed
            job.processed_at = utc_now()
            logger.error("Job %d failed permanently: %s", job.job_id, job.last_error)
            return

        job.retries += 1
        if job.retries >= MAX_RETRIES:
            job.status = JobStatus.failed
            job.processed_at = utc_now()
            logger.error(
                "Job %d failed after %d retries: %s", job.job_id, job.retries, job.last_error
            )
        else:
            job.status = JobStatus.pending
            logger.warning(
                "Job %d will retry (attempt %d/%d): %s",
                job.job_id,
                job.retries,
                MAX_RETRIES,
                job.last_error,
            )
