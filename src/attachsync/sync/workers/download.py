"""DOWNLOAD job handler.

Fetches a remote attachment into the blob store. A DOWNLOAD job without
an attachment is a discovery job that reconciles the whole work item.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from attachsync.core.errors import IntegrityError, ValidationError
from attachsync.core.hashing import fingerprint
from attachsync.core.types import EventSource, JobType, SyncStatus
from attachsync.store.blobs import content_key
from attachsync.sync.workers.base import JobHandler

if TYPE_CHECKING:
    from attachsync.store.models import SyncJob

logger = logging.getLogger(__name__)


class DownloadHandler(JobHandler):
    """Downloads remote content and records its fingerprint."""

    job_type = JobType.DOWNLOAD

    def handle(self, job: SyncJob) -> str | None:
        if job.attachment_id is None:
            result = self.ctx.reconciler.reconcile(
                job.work_item_id, source=EventSource.WORKER, priority=job.priority
            )
            return f"discovered {len(result.created)} new, {len(result.deletions)} removed"

        record = self.load_record(job)
        if record.is_deleted:
            return "attachment deleted before download"
        if not record.remote_reference:
            raise ValidationError(f"Attachment {record.attachment_id} has no remote reference")

        self.ctx.db.update_attachment(record.attachment_id, sync_status=SyncStatus.SYNCING)
        data = self.ctx.adapter.fetch_object(record.remote_reference)
        if len(data) > self.ctx.config.max_file_size:
            raise ValidationError(
                f"Remote attachment {record.file_name} exceeds the maximum file size"
            )
        if record.file_size is not None and record.file_size != len(data):
            raise IntegrityError(
                f"Downloaded {len(data)} bytes for {record.file_name}, "
                f"remote reported {record.file_size}"
            )

        content_hash = fingerprint(data)
        key = content_key(record.attachment_id)
        self.ctx.blobs.put(key, data)
        self.ctx.db.update_attachment(
            record.attachment_id,
            content_hash=content_hash,
            file_size=len(data),
            local_path=key,
            sync_status=SyncStatus.SYNCED,
            retry_count=job.retry_count,
            last_error=None,
        )

        scope = self.ctx.dedup.scope_for(record.work_item_id)
        if self.ctx.dedup.lookup(content_hash, scope) is None:
            self.ctx.dedup.claim(
                content_hash, scope, record.attachment_id, record.remote_reference
            )

        logger.info(
            "Downloaded %s (%d bytes) for work item %d",
            record.file_name,
            len(data),
            record.work_item_id,
        )
        return f"downloaded {len(data)} bytes"
