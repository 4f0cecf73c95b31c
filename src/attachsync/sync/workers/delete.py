"""DELETE job handler."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from attachsync.core.types import JobType
from attachsync.store.blobs import content_key, staged_upload_key
from attachsync.sync.workers.base import JobHandler

if TYPE_CHECKING:
    from attachsync.store.models import SyncJob

logger = logging.getLogger(__name__)


class DeleteHandler(JobHandler):
    """Removes the remote link and soft-deletes the record.

    When the job was queued because the remote side already dropped the
    attachment (payload remote_already_removed), no remote call is made.
    """

    job_type = JobType.DELETE

    def handle(self, job: SyncJob) -> str | None:
        record = self.load_record(job)
        if record.is_deleted:
            return "already deleted"

        if record.remote_reference and not job.payload.get("remote_already_removed"):
            if self.shares_remote_link(record):
                logger.info(
                    "Keeping remote link of %s: shared with another attachment",
                    record.attachment_id,
                )
            else:
                self.ctx.adapter.delete_link(record.work_item_id, record.remote_reference)

        self.ctx.db.soft_delete_attachment(record.attachment_id)
        self.ctx.blobs.delete(content_key(record.attachment_id))
        self.ctx.blobs.delete(staged_upload_key(record.attachment_id))
        logger.info("Deleted attachment %s (%s)", record.attachment_id, record.file_name)
        return "deleted"
