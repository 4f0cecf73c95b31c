"""UPLOAD job handler.

Sends staged content to the remote tracker (or reuses an earlier
transfer of the same bytes) and queues the LINK job.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from attachsync.core.errors import IntegrityError, NotFoundError
from attachsync.core.hashing import fingerprint
from attachsync.core.types import JobType, SyncStatus
from attachsync.remote.adapter import ObjectMetadata
from attachsync.store.blobs import BlobNotFoundError, staged_upload_key
from attachsync.sync.workers.base import JobHandler

if TYPE_CHECKING:
    from attachsync.store.models import AttachmentRecord, SyncJob

logger = logging.getLogger(__name__)


class UploadHandler(JobHandler):
    """Transfers staged content for a TOOL attachment."""

    job_type = JobType.UPLOAD

    def _enqueue_link(self, job: SyncJob, record: AttachmentRecord) -> None:
        if self.ctx.queue.has_open_job(record.attachment_id, JobType.LINK):
            return
        self.ctx.queue.enqueue(
            JobType.LINK,
            record.work_item_id,
            attachment_id=record.attachment_id,
            priority=job.priority,
            payload={"comment": job.payload.get("comment")},
        )

    def handle(self, job: SyncJob) -> str | None:
        record = self.load_record(job)
        if record.is_deleted:
            return "attachment deleted before upload"

        if record.remote_reference:
            # A previous attempt transferred the bytes; only the link is missing
            self.ctx.db.update_attachment(record.attachment_id, sync_status=SyncStatus.SYNCING)
            self._enqueue_link(job, record)
            return "already uploaded"

        key = staged_upload_key(record.attachment_id)
        try:
            data = self.ctx.blobs.get(key)
        except BlobNotFoundError as e:
            raise NotFoundError(f"No staged content for {record.attachment_id}") from e

        content_hash = fingerprint(data)
        if record.content_hash and record.content_hash != content_hash:
            raise IntegrityError(
                f"Staged content of {record.attachment_id} does not match its fingerprint"
            )

        self.ctx.db.update_attachment(record.attachment_id, sync_status=SyncStatus.SYNCING)
        metadata = ObjectMetadata(
            file_name=record.file_name,
            size=len(data),
            mime_type=record.mime_type,
            content_hash=content_hash,
        )
        config = self.ctx.config

        def send() -> str:
            if len(data) > config.single_upload_threshold:
                return self.ctx.transfer.send_bytes_chunked(data, metadata, config.chunk_size)
            return self.ctx.transfer.send_single(data, metadata)

        def register(reference: str, deduplicated: bool) -> AttachmentRecord:
            updated = self.ctx.db.update_attachment(
                record.attachment_id,
                remote_reference=reference,
                content_hash=content_hash,
                file_size=len(data),
                sync_status=SyncStatus.SYNCING,
                last_error=None,
            )
            self._enqueue_link(job, updated)
            return updated

        delivery = self.ctx.transfer.deliver(record.work_item_id, content_hash, send, register)
        self.ctx.blobs.delete(key)
        if delivery.deduplicated:
            return f"reused {delivery.reference}"
        return f"uploaded {delivery.reference}"
