"""Worker pool draining the durable job queue.

This module provides:
- PoolState: Lifecycle of the pool
- WorkerPool: Fixed set of threads claiming and processing jobs
"""

from __future__ import annotations

import logging
import threading
from enum import Enum, auto
from typing import TYPE_CHECKING

from attachsync.core.types import JobType, SyncStatus
from attachsync.sync.locks import KeyedLock
from attachsync.sync.workers.delete import DeleteHandler
from attachsync.sync.workers.download import DownloadHandler
from attachsync.sync.workers.links import LinkHandler, UnlinkHandler
from attachsync.sync.workers.upload import UploadHandler

if TYPE_CHECKING:
    from attachsync.store.models import SyncJob
    from attachsync.sync.queue import JobQueue
    from attachsync.sync.workers.base import HandlerContext, JobHandler

logger = logging.getLogger(__name__)

HANDLER_CLASSES: tuple[type[JobHandler], ...] = (
    UploadHandler,
    DownloadHandler,
    LinkHandler,
    UnlinkHandler,
    DeleteHandler,
)


class PoolState(Enum):
    """State of the worker pool."""

    STOPPED = auto()
    RUNNING = auto()
    STOPPING = auto()


class WorkerPool:
    """Pool of threads processing sync jobs.

    Each thread loops: release due retries, claim the best job, hold the
    per-attachment lock while the handler runs, then report the outcome to
    the queue. A claimed job always runs to completion; stop() only
    prevents new claims.

    Usage:
        pool = WorkerPool(ctx, worker_count=4)
        pool.start()
        ...
        pool.stop()

    For synchronous use (CLI, tests) call run_once() or drain().
    """

    def __init__(
        self,
        ctx: HandlerContext,
        worker_count: int = 4,
        poll_interval: float = 1.0,
        attachment_locks: KeyedLock | None = None,
    ) -> None:
        """Initialize the worker pool.

        Args:
            ctx: Services shared by handlers.
            worker_count: Number of worker threads.
            poll_interval: Idle wait between polls of an empty queue.
            attachment_locks: Per-attachment locks (shared with other pools
                in the same process, if any).
        """
        self._ctx = ctx
        self._queue: JobQueue = ctx.queue
        self._worker_count = max(worker_count, 1)
        self._poll_interval = poll_interval
        self._attachment_locks = attachment_locks or KeyedLock()
        self._handlers: dict[str, JobHandler] = {
            cls.job_type: cls(ctx) for cls in HANDLER_CLASSES
        }

        self._pool_state = PoolState.STOPPED
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._workers: list[threading.Thread] = []

        # Statistics
        self._completed_count = 0
        self._error_count = 0

    @property
    def state(self) -> PoolState:
        """Get current pool state."""
        return self._pool_state

    @property
    def completed_count(self) -> int:
        """Get number of jobs completed."""
        return self._completed_count

    @property
    def error_count(self) -> int:
        """Get number of failed attempts."""
        return self._error_count

    def start(self) -> None:
        """Start the worker threads."""
        with self._lock:
            if self._pool_state != PoolState.STOPPED:
                logger.warning("Worker pool already running")
                return

            self._pool_state = PoolState.RUNNING
            self._stop_event.clear()
            for i in range(self._worker_count):
                thread = threading.Thread(
                    target=self._worker_loop,
                    args=(f"worker-{i}",),
                    name=f"WorkerPool-{i}",
                    daemon=True,
                )
                thread.start()
                self._workers.append(thread)

            logger.info("Worker pool started with %d workers", self._worker_count)

    def stop(self, timeout: float = 10.0) -> None:
        """Stop the worker threads after their current job.

        Args:
            timeout: Maximum time to wait for workers to finish.
        """
        with self._lock:
            if self._pool_state == PoolState.STOPPED:
                return
            self._pool_state = PoolState.STOPPING
            logger.info("Worker pool stopping...")
            self._stop_event.set()

        for worker in self._workers:
            worker.join(timeout=timeout / len(self._workers))

        with self._lock:
            self._pool_state = PoolState.STOPPED
            self._workers.clear()
            logger.info("Worker pool stopped")

    def _worker_loop(self, worker_id: str) -> None:
        """Main loop of a worker thread."""
        while not self._stop_event.is_set():
            try:
                processed = self.run_once(worker_id)
            except Exception:
                # Store errors outside a job: keep the thread alive
                logger.exception("%s: unexpected error while polling", worker_id)
                processed = False
            if not processed:
                self._stop_event.wait(self._poll_interval)

    def run_once(self, worker_id: str = "worker-sync") -> bool:
        """Claim and process at most one job.

        Returns:
            True if a job was processed.
        """
        self._queue.release_due_retries()
        job = self._queue.claim_next(worker_id)
        if job is None:
            return False
        self.process(job)
        return True

    def drain(self, max_jobs: int = 1000, worker_id: str = "worker-sync") -> int:
        """Process jobs until none is claimable.

        Returns:
            Number of jobs processed.
        """
        processed = 0
        while processed < max_jobs and self.run_once(worker_id):
            processed += 1
        return processed

    def process(self, job: SyncJob) -> None:
        """Run the handler of a claimed job and record the outcome."""
        lock_key = job.attachment_id or f"work_item:{job.work_item_id}"
        with self._attachment_locks.hold(lock_key):
            handler = self._handlers.get(job.job_type)
            try:
                if handler is None:
                    raise ValueError(f"No handler for job type {job.job_type}")
                message = handler.handle(job)
            except Exception as e:
                self._error_count += 1
                updated = self._queue.fail(job, e)
                self._mirror_failure(updated, e)
                return

            self._queue.complete(job.id, message)
            self._completed_count += 1
            logger.debug("Job %d (%s) done: %s", job.id, job.job_type, message)

    def _mirror_failure(self, job: SyncJob, error: BaseException) -> None:
        """Copy a job failure onto its attachment record."""
        if job.attachment_id is None:
            return
        record = self._ctx.db.get_attachment(job.attachment_id)
        if record is None or record.is_deleted:
            return
        changes: dict[str, object] = {
            "retry_count": job.retry_count,
            "last_error": str(error) or type(error).__name__,
        }
        if job.is_terminal:
            changes["sync_status"] = SyncStatus.FAILED
        elif job.job_type in (JobType.UPLOAD, JobType.DOWNLOAD):
            changes["sync_status"] = SyncStatus.PENDING
        self._ctx.db.update_attachment(job.attachment_id, **changes)
