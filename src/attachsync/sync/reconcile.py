"""Inbound reconciliation against the remote tracker.

Compares the attachments linked to a remote work item with the local
records and queues the jobs that close the gap:
- a DOWNLOAD job for every remote object with no local record
- a DELETE job for every SYNCED local record whose object vanished
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from attachsync.core.types import AttachmentSource, EventSource, JobType, SyncStatus

if TYPE_CHECKING:
    from attachsync.remote.adapter import RemoteObject, RemoteSyncAdapter
    from attachsync.store.database import Database
    from attachsync.sync.queue import JobQueue

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Outcome of one reconciliation pass."""

    work_item_id: int
    remote_count: int = 0
    created: list[str] = field(default_factory=list)
    deletions: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.deletions)


class Reconciler:
    """Diffs remote attachments against local records."""

    def __init__(self, db: Database, adapter: RemoteSyncAdapter, queue: JobQueue) -> None:
        self._db = db
        self._adapter = adapter
        self._queue = queue

    def reconcile(
        self,
        work_item_id: int,
        source: EventSource = EventSource.WORKER,
        priority: int | None = None,
        objects: list[RemoteObject] | None = None,
    ) -> ReconcileResult:
        """Reconcile one work item.

        Args:
            work_item_id: Work item to reconcile.
            source: Component requesting the pass (recorded on events).
            priority: Priority of the jobs queued by this pass.
            objects: Remote objects, when the caller already listed them.
                Otherwise the adapter is asked.

        Returns:
            The reconciliation result.

        Raises:
            NotFoundError: If the remote work item does not exist and no
                objects were given.
        """
        if objects is None:
            objects = self._adapter.list_objects(work_item_id)

        result = ReconcileResult(work_item_id=work_item_id, remote_count=len(objects))
        local = self._db.list_attachments(work_item_id)
        known = {r.remote_reference for r in local if r.remote_reference}
        remote_refs = {obj.reference for obj in objects}

        for obj in objects:
            if obj.reference in known:
                continue
            known.add(obj.reference)
            record = self._db.create_attachment(
                work_item_id=work_item_id,
                file_name=obj.file_name,
                source=AttachmentSource.REMOTE,
                sync_status=SyncStatus.PENDING,
                file_size=obj.size,
                remote_reference=obj.reference,
                remote_revision=obj.revision,
            )
            self._queue.enqueue(
                JobType.DOWNLOAD,
                work_item_id,
                attachment_id=record.attachment_id,
                priority=priority,
                source=source,
                message=f"Discovered remote attachment {obj.file_name}",
            )
            result.created.append(record.attachment_id)

        for record in local:
            if record.sync_status != SyncStatus.SYNCED or not record.remote_reference:
                continue
            if record.remote_reference in remote_refs:
                continue
            if self._queue.has_open_job(record.attachment_id, JobType.DELETE):
                continue
            self._queue.enqueue(
                JobType.DELETE,
                work_item_id,
                attachment_id=record.attachment_id,
                priority=priority,
                payload={"remote_already_removed": True},
                source=source,
                message=f"Remote attachment {record.file_name} was removed",
            )
            result.deletions.append(record.attachment_id)

        self._db.append_event(
            "RECONCILED",
            source,
            message=(
                f"{result.remote_count} remote, {len(result.created)} new, "
                f"{len(result.deletions)} removed"
            ),
            work_item_id=work_item_id,
            context={"created": result.created, "deletions": result.deletions},
        )
        logger.info(
            "Reconciled work item %d: %d remote, %d new, %d removed",
            work_item_id,
            result.remote_count,
            len(result.created),
            len(result.deletions),
        )
        return result
