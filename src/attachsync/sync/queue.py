"""Durable job queue backed by the metadata store.

This module provides:
- JobQueue: enqueue, atomic claim, completion and failure handling

Jobs are rows of the sync_jobs relation, so the queue survives restarts.
Claiming is a compare-and-swap on the status column: two workers racing
for the same job cannot both win.

Failure lifecycle:
    QUEUED -> PROCESSING -> COMPLETED
                         -> FAILED (next_retry_at set)   -> QUEUED (when due)
                         -> FAILED (next_retry_at None)  terminal
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from attachsync.core.errors import ValidationError, classify, retry_after_of
from attachsync.core.types import (
    DEFAULT_PRIORITY,
    MAX_PRIORITY,
    MIN_PRIORITY,
    EventSource,
    JobStatus,
    JobType,
    Severity,
)
from attachsync.store.models import utcnow
from attachsync.sync.retry import TERMINAL_CATEGORIES, RetryPolicy

if TYPE_CHECKING:
    from attachsync.store.database import Database
    from attachsync.store.models import SyncJob

logger = logging.getLogger(__name__)

# How many candidates one claim attempt looks at before giving up
CLAIM_BATCH = 20


class JobQueue:
    """Priority job queue with per-attachment ordering.

    Jobs are ordered by (priority, id): lower priority values first, then
    submission order. A job is only claimable once every earlier job for
    the same attachment has finished.

    Usage:
        queue = JobQueue(db)
        job = queue.enqueue(JobType.UPLOAD, work_item_id=42, attachment_id="...")
        claimed = queue.claim_next("worker-0")
        queue.complete(claimed.id)
    """

    def __init__(
        self,
        db: Database,
        policy: RetryPolicy | None = None,
        max_retries: int = 3,
        default_priority: int = DEFAULT_PRIORITY,
    ) -> None:
        """Initialize the queue.

        Args:
            db: Metadata store.
            policy: Backoff policy for failed jobs.
            max_retries: Retry budget given to new jobs.
            default_priority: Priority used when enqueue() gets none.
        """
        self._db = db
        self._policy = policy or RetryPolicy()
        self._max_retries = max_retries
        self._default_priority = default_priority

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def enqueue(
        self,
        job_type: JobType,
        work_item_id: int,
        attachment_id: str | None = None,
        priority: int | None = None,
        payload: dict[str, Any] | None = None,
        source: EventSource = EventSource.API,
        dedup_key: str | None = None,
        message: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> SyncJob:
        """Add a job and log its creation.

        Args:
            job_type: Kind of work.
            work_item_id: Work item the job acts on.
            attachment_id: Attachment the job acts on (None for discovery).
            priority: 1 (highest) to 10 (lowest).
            payload: Job-specific data.
            source: Component requesting the job.
            dedup_key: Idempotency key stored on the creation event. A
                second enqueue with the same key raises DuplicateEventError
                and writes nothing.
            message: Event message (defaults to a description of the job).
            context: Extra event context.

        Returns:
            The QUEUED job.

        Raises:
            ValidationError: If priority is out of range.
            DuplicateEventError: If dedup_key was already used.
        """
        priority = self._default_priority if priority is None else priority
        if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
            raise ValidationError(
                f"Priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}, got {priority}"
            )
        job_type = JobType(job_type)
        event = {
            "event_type": "WEBHOOK_ACCEPTED" if source == EventSource.WEBHOOK else "JOB_QUEUED",
            "source": source,
            "severity": Severity.INFO,
            "message": message or f"Queued {job_type} for work item {work_item_id}",
            "context": dict(context or {}, priority=priority),
            "dedup_key": dedup_key,
        }
        job = self._db.create_job(
            work_item_id=work_item_id,
            job_type=job_type,
            attachment_id=attachment_id,
            priority=priority,
            max_retries=self._max_retries,
            payload=payload,
            event=event,
        )
        logger.debug(
            "Queued job %d: %s work_item=%d attachment=%s priority=%d",
            job.id,
            job_type,
            work_item_id,
            attachment_id,
            priority,
        )
        return job

    def claim_next(self, worker_id: str) -> SyncJob | None:
        """Claim the best eligible job.

        Candidates are tried in order; losing a compare-and-swap to another
        worker moves on to the next candidate.

        Args:
            worker_id: Identifier recorded on the claimed job.

        Returns:
            The job now in PROCESSING, or None if nothing is claimable.
        """
        for job_id in self._db.claimable_job_ids(limit=CLAIM_BATCH):
            job = self._db.try_claim_job(job_id, worker_id)
            if job is not None:
                logger.debug("%s claimed job %d (%s)", worker_id, job.id, job.job_type)
                return job
        return None

    def complete(self, job_id: int, message: str | None = None) -> SyncJob:
        """Mark a job COMPLETED."""
        job = self._db.finish_job(
            job_id,
            {
                "status": JobStatus.COMPLETED,
                "completed_at": utcnow(),
                "next_retry_at": None,
                "error_category": None,
                "error_message": None,
            },
            events=[
                {
                    "event_type": "JOB_COMPLETED",
                    "source": EventSource.WORKER,
                    "severity": Severity.INFO,
                    "message": message,
                }
            ],
        )
        logger.debug("Job %d completed", job_id)
        return job

    def fail(self, job: SyncJob, error: BaseException) -> SyncJob:
        """Record a failed attempt and decide the job's next state.

        A failure of a retryable category consumes one retry and logs a WARN
        event. While budget remains the job waits for next_retry_at;
        otherwise it becomes terminal and one ERROR event is logged.
        Non-retryable categories become terminal immediately.

        Args:
            job: The job that was being processed.
            error: Exception raised by the handler.

        Returns:
            The updated job.
        """
        category = classify(error)
        message = str(error) or type(error).__name__
        decision = self._policy.decide(
            category, job.retry_count, job.max_retries, retry_after_of(error)
        )
        context = {"category": category.value, "job_type": job.job_type}
        events: list[dict[str, Any]] = []
        changes: dict[str, Any] = {
            "status": JobStatus.FAILED,
            "retry_count": decision.next_retry_count,
            "error_category": category,
            "error_message": message,
            "completed_at": None,
        }

        if category not in TERMINAL_CATEGORIES:
            event_type = "JOB_RETRY_SCHEDULED" if decision.retryable else "JOB_ATTEMPT_FAILED"
            events.append(
                {
                    "event_type": event_type,
                    "source": EventSource.WORKER,
                    "severity": Severity.WARN,
                    "message": message,
                    "context": dict(
                        context,
                        retry_count=decision.next_retry_count,
                        max_retries=job.max_retries,
                        delay=decision.delay,
                    ),
                }
            )

        if decision.retryable:
            next_retry_at = utcnow() + timedelta(seconds=decision.delay or 0.0)
            changes["next_retry_at"] = next_retry_at
            logger.warning(
                "Job %d (%s) failed [%s], retry %d/%d in %.1fs: %s",
                job.id,
                job.job_type,
                category,
                decision.next_retry_count,
                job.max_retries,
                decision.delay or 0.0,
                message,
            )
        else:
            changes["next_retry_at"] = None
            changes["completed_at"] = utcnow()
            events.append(
                {
                    "event_type": "JOB_FAILED",
                    "source": EventSource.WORKER,
                    "severity": Severity.ERROR,
                    "message": message,
                    "context": dict(context, retry_count=decision.next_retry_count),
                }
            )
            logger.error(
                "Job %d (%s) failed permanently [%s]: %s",
                job.id,
                job.job_type,
                category,
                message,
            )

        return self._db.finish_job(job.id, changes, events=events)

    def release_due_retries(self, now: datetime | None = None) -> int:
        """Return FAILED jobs whose retry time has passed to QUEUED.

        Returns:
            Number of jobs released.
        """
        released = self._db.release_due_jobs(now)
        if released:
            logger.debug("Released %d jobs for retry", len(released))
        return len(released)

    def recover_stale(self, older_than: float) -> int:
        """Requeue PROCESSING jobs abandoned by a crashed worker.

        Args:
            older_than: Seconds a job may stay PROCESSING.

        Returns:
            Number of jobs requeued.
        """
        jobs = self._db.requeue_stale_jobs(self._db.stale_cutoff(older_than))
        for job in jobs:
            logger.warning("Recovered stale job %d (%s)", job.id, job.job_type)
        return len(jobs)

    def get(self, job_id: int) -> SyncJob | None:
        """Get a job by ID."""
        return self._db.get_job(job_id)

    def jobs_for_work_item(self, work_item_id: int, limit: int | None = None) -> list[SyncJob]:
        """List jobs of a work item, newest first."""
        return self._db.list_jobs(work_item_id=work_item_id, limit=limit)

    def has_open_job(self, attachment_id: str, job_type: JobType) -> bool:
        """Check if an unfinished job of a type exists for an attachment."""
        return self._db.has_open_job(attachment_id, job_type)
