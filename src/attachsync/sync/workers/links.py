"""LINK and UNLINK job handlers."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from attachsync.core.errors import ConflictError, NotFoundError, ValidationError
from attachsync.core.types import EventSource, JobType, SyncStatus
from attachsync.sync.workers.base import JobHandler

if TYPE_CHECKING:
    from attachsync.store.models import SyncJob

logger = logging.getLogger(__name__)


class LinkHandler(JobHandler):
    """Links an uploaded object to its work item.

    A LINK job without an attachment is a link refresh: the work item's
    remote links are re-read and reconciled. A work item that no longer
    exists is treated as having no remote attachments.
    """

    job_type = JobType.LINK

    def handle(self, job: SyncJob) -> str | None:
        if job.attachment_id is None:
            return self._refresh(job)

        record = self.load_record(job)
        if record.is_deleted:
            return "attachment deleted before link"
        if record.sync_status == SyncStatus.SYNCED:
            return "already linked"
        if not record.remote_reference:
            raise ValidationError(f"Attachment {record.attachment_id} has not been uploaded")

        comment = job.payload.get("comment")
        try:
            self.ctx.adapter.link_object(record.work_item_id, record.remote_reference, comment)
        except ConflictError:
            linked = {obj.reference for obj in self.ctx.adapter.list_objects(record.work_item_id)}
            if record.remote_reference not in linked:
                raise
            logger.info(
                "Link conflict for %s resolved: reference already on work item %d",
                record.attachment_id,
                record.work_item_id,
            )

        self.ctx.db.update_attachment(
            record.attachment_id,
            sync_status=SyncStatus.SYNCED,
            retry_count=job.retry_count,
            last_error=None,
        )
        return f"linked to work item {record.work_item_id}"

    def _refresh(self, job: SyncJob) -> str:
        try:
            objects = self.ctx.adapter.list_objects(job.work_item_id)
        except NotFoundError:
            logger.info("Work item %d is gone; reconciling as empty", job.work_item_id)
            objects = []
        result = self.ctx.reconciler.reconcile(
            job.work_item_id,
            source=EventSource.WORKER,
            priority=job.priority,
            objects=objects,
        )
        return f"refreshed links: {len(result.created)} new, {len(result.deletions)} removed"


class UnlinkHandler(JobHandler):
    """Removes the link between a work item and an attachment.

    The record is kept and returns to PENDING.
    """

    job_type = JobType.UNLINK

    def handle(self, job: SyncJob) -> str | None:
        record = self.load_record(job)
        if record.is_deleted:
            return "attachment deleted before unlink"
        removed = False
        shared = self.shares_remote_link(record)
        if record.remote_reference and not shared:
            removed = self.ctx.adapter.delete_link(record.work_item_id, record.remote_reference)
        self.ctx.db.update_attachment(
            record.attachment_id,
            sync_status=SyncStatus.PENDING,
            last_error=None,
        )
        if shared:
            return "remote link kept for another attachment"
        return "unlinked" if removed else "no remote link"
