"""Base class for sync job handlers.

This module provides:
- HandlerContext: Services shared by every handler
- JobHandler: Abstract base class, one subclass per job type
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

from attachsync.core.errors import NotFoundError
from attachsync.core.types import SyncStatus

if TYPE_CHECKING:
    from attachsync.core.config import SyncConfig
    from attachsync.core.types import JobType
    from attachsync.remote.adapter import RemoteSyncAdapter
    from attachsync.store.blobs import BlobStore
    from attachsync.store.database import Database
    from attachsync.store.models import AttachmentRecord, SyncJob
    from attachsync.sync.dedup import DeduplicationIndex
    from attachsync.sync.queue import JobQueue
    from attachsync.sync.reconcile import Reconciler
    from attachsync.sync.transfer import ContentTransfer

logger = logging.getLogger(__name__)


@dataclass
class HandlerContext:
    """Services available to job handlers.

    Attributes:
        db: Metadata store.
        blobs: Staged and downloaded content.
        adapter: Remote tracker.
        queue: Job queue (handlers enqueue follow-up jobs).
        transfer: Deduplicated content transfer.
        dedup: Deduplication index.
        reconciler: Inbound reconciliation.
        config: Engine configuration.
    """

    db: Database
    blobs: BlobStore
    adapter: RemoteSyncAdapter
    queue: JobQueue
    transfer: ContentTransfer
    dedup: DeduplicationIndex
    reconciler: Reconciler
    config: SyncConfig


class JobHandler(ABC):
    """Abstract base class for job handlers.

    Subclasses implement handle() and raise typed sync errors on failure;
    the worker pool turns those into retry decisions.

    Usage:
        class MyHandler(JobHandler):
            job_type = JobType.LINK

            def handle(self, job: SyncJob) -> str | None:
                ...
                return "done"
    """

    job_type: JobType

    def __init__(self, ctx: HandlerContext) -> None:
        self.ctx = ctx

    @abstractmethod
    def handle(self, job: SyncJob) -> str | None:
        """Process one claimed job.

        Returns:
            Optional message recorded on the completion event.
        """

    def load_record(self, job: SyncJob) -> AttachmentRecord:
        """Load the attachment a job acts on.

        Raises:
            NotFoundError: If the job names no attachment or it is gone.
        """
        if job.attachment_id is None:
            raise NotFoundError(f"{job.job_type} job {job.id} has no attachment")
        record = self.ctx.db.get_attachment(job.attachment_id)
        if record is None:
            raise NotFoundError(f"Attachment not found: {job.attachment_id}")
        return record

    def shares_remote_link(self, record: AttachmentRecord) -> bool:
        """Check whether another live record on the work item uses the same link.

        Deduplicated uploads reuse one remote reference, so removing the
        relation for one record would detach the others as well.
        """
        if not record.remote_reference:
            return False
        return any(
            other.attachment_id != record.attachment_id
            and other.remote_reference == record.remote_reference
            and other.sync_status != SyncStatus.PENDING
            for other in self.ctx.db.list_attachments(record.work_item_id)
        )
