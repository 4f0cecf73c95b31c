"""Sync orchestrator - the engine's public operations.

This module provides:
- SyncOrchestrator: Wires the store, queue, workers and remote adapter
  together and exposes outbound upload, inbound reconciliation,
  force-sync and status operations.

Usage:
    config = SyncConfig.from_env()
    adapter = AzureDevOpsAdapter(config.org_url, config.project, lambda: config.pat)
    engine = SyncOrchestrator(config, adapter)
    engine.start()
    record = engine.upload_and_link(42, "report.pdf", data)
    ...
    engine.close()
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from attachsync.core.errors import (
    RETRYABLE_CATEGORIES,
    NotFoundError,
    ValidationError,
    classify,
)
from attachsync.core.hashing import fingerprint
from attachsync.core.types import (
    AttachmentSource,
    EventSource,
    JobType,
    Severity,
    SyncStatus,
)
from attachsync.remote.adapter import ObjectMetadata
from attachsync.store.blobs import (
    BlobNotFoundError,
    LocalFSBlobStore,
    content_key,
    staged_upload_key,
)
from attachsync.store.database import Database, new_identifier
from attachsync.sync.dedup import DeduplicationIndex
from attachsync.sync.locks import KeyedLock
from attachsync.sync.queue import JobQueue
from attachsync.sync.reconcile import Reconciler, ReconcileResult
from attachsync.sync.retry import RetryPolicy
from attachsync.sync.sessions import UploadSessionManager
from attachsync.sync.transfer import ContentTransfer
from attachsync.sync.webhooks import WebhookIngress
from attachsync.sync.workers import HandlerContext, WorkerPool

if TYPE_CHECKING:
    from attachsync.core.config import SyncConfig
    from attachsync.remote.adapter import RemoteSyncAdapter
    from attachsync.store.blobs import BlobStore
    from attachsync.store.models import AttachmentRecord, DeduplicationEntry, SyncJob

logger = logging.getLogger(__name__)

# Number of jobs and events included in a status report
STATUS_HISTORY = 20


class SyncOrchestrator:
    """Attachment synchronization engine."""

    def __init__(
        self,
        config: SyncConfig,
        adapter: RemoteSyncAdapter,
        db: Database | None = None,
        blobs: BlobStore | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            config: Engine configuration.
            adapter: Remote tracker adapter.
            db: Metadata store (opened from config.db_path when omitted).
            blobs: Blob store (rooted at config.storage_path when omitted).
        """
        self.config = config
        self.adapter = adapter
        self.db = db or Database(config.db_path)
        self.blobs = blobs or LocalFSBlobStore(config.storage_path)

        self.policy = RetryPolicy(
            base_delay=config.backoff_base,
            max_delay=config.backoff_max,
            rate_limit_multiplier=config.rate_limit_multiplier,
            rate_limit_max_delay=config.rate_limit_max,
        )
        self.queue = JobQueue(
            self.db,
            policy=self.policy,
            max_retries=config.max_retries,
            default_priority=config.default_priority,
        )
        self.dedup = DeduplicationIndex(self.db, config.dedup_scope)
        self.transfer = ContentTransfer(adapter, self.dedup, KeyedLock())
        self.sessions = UploadSessionManager(
            self.db, self.blobs, self.transfer, self.queue, config
        )
        self.reconciler = Reconciler(self.db, adapter, self.queue)
        self.webhooks = WebhookIngress(self.db, self.queue, priority=config.webhook_priority)
        self.pool = WorkerPool(
            HandlerContext(
                db=self.db,
                blobs=self.blobs,
                adapter=adapter,
                queue=self.queue,
                transfer=self.transfer,
                dedup=self.dedup,
                reconciler=self.reconciler,
                config=config,
            ),
            worker_count=config.worker_count,
            poll_interval=config.poll_interval,
        )

    # === Lifecycle ===

    def start(self) -> None:
        """Start the worker pool."""
        self.pool.start()

    def stop(self) -> None:
        """Stop the worker pool."""
        self.pool.stop()

    def close(self) -> None:
        """Stop workers and release the adapter and database."""
        self.stop()
        self.adapter.close()
        self.db.close()

    def __enter__(self) -> SyncOrchestrator:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    # === Outbound ===

    def upload_and_link(
        self,
        work_item_id: int,
        file_name: str,
        data: bytes,
        mime_type: str | None = None,
        comment: str | None = None,
    ) -> AttachmentRecord:
        """Upload content to the tracker and queue its link to the work item.

        Content already transferred within the dedup scope is not sent
        again: a new record reuses the earlier remote reference.

        A retryable transfer failure is not reported to the caller: the
        bytes are staged and an UPLOAD job retries the transfer. The record
        is returned in PENDING.

        Args:
            work_item_id: Target work item.
            file_name: Original file name.
            data: File content.
            mime_type: MIME type, if known.
            comment: Link comment.

        Returns:
            The attachment record (SYNCING, or PENDING when deferred).

        Raises:
            ValidationError: For empty or oversized content.
            SyncError: For a non-retryable transfer failure; the record is
                kept in FAILED.
        """
        if not file_name:
            raise ValidationError("file_name is required")
        if not data:
            raise ValidationError("Attachment content is empty")
        if len(data) > self.config.max_file_size:
            raise ValidationError(
                f"File of {len(data)} bytes exceeds the maximum of "
                f"{self.config.max_file_size} bytes"
            )

        content_hash = fingerprint(data)
        attachment_id = new_identifier()
        session_id: str | None = None
        try:
            if len(data) > self.config.single_upload_threshold:
                upload = self.sessions.start_session(
                    work_item_id,
                    file_name,
                    len(data),
                    mime_type=mime_type,
                    link=True,
                    comment=comment,
                )
                session_id = upload.session_id
                record = self._send_session_chunks(upload.session_id, upload.chunk_size, data)
            else:
                record = self._upload_direct(
                    attachment_id, work_item_id, file_name, data, content_hash, mime_type, comment
                )
        except Exception as e:
            if session_id is not None:
                self.sessions.cancel(session_id)
            return self._handle_upload_failure(
                e, attachment_id, work_item_id, file_name, data, content_hash, mime_type, comment
            )

        self.db.append_event(
            "ATTACHMENT_UPLOADED",
            EventSource.API,
            message=f"{file_name} ({len(data)} bytes)",
            work_item_id=work_item_id,
            attachment_id=record.attachment_id,
            context={"content_hash": content_hash},
        )
        return record

    def _upload_direct(
        self,
        attachment_id: str,
        work_item_id: int,
        file_name: str,
        data: bytes,
        content_hash: str,
        mime_type: str | None,
        comment: str | None,
    ) -> AttachmentRecord:
        metadata = ObjectMetadata(file_name, len(data), mime_type, content_hash)

        def send() -> str:
            return self.transfer.send_single(data, metadata)

        def register(reference: str, deduplicated: bool) -> AttachmentRecord:
            record = self.db.create_attachment(
                work_item_id=work_item_id,
                file_name=file_name,
                source=AttachmentSource.TOOL,
                sync_status=SyncStatus.SYNCING,
                attachment_id=attachment_id,
                file_size=len(data),
                content_hash=content_hash,
                mime_type=mime_type,
                remote_reference=reference,
            )
            self.queue.enqueue(
                JobType.LINK,
                work_item_id,
                attachment_id=attachment_id,
                payload={"comment": comment, "deduplicated": deduplicated},
            )
            return record

        return self.transfer.deliver(work_item_id, content_hash, send, register).record

    def _send_session_chunks(
        self, session_id: str, chunk_size: int, data: bytes
    ) -> AttachmentRecord:
        record: AttachmentRecord | None = None
        for start in range(0, len(data), chunk_size):
            end = min(start + chunk_size, len(data)) - 1
            _, record = self.sessions.put_chunk(
                session_id, (start, end, len(data)), data[start : end + 1]
            )
        if record is None:
            record = self.sessions.finalize(session_id)
        return record

    def _handle_upload_failure(
        self,
        error: Exception,
        attachment_id: str,
        work_item_id: int,
        file_name: str,
        data: bytes,
        content_hash: str,
        mime_type: str | None,
        comment: str | None,
    ) -> AttachmentRecord:
        category = classify(error)
        if category in RETRYABLE_CATEGORIES:
            key = staged_upload_key(attachment_id)
            self.blobs.put(key, data)
            record = self.db.create_attachment(
                work_item_id=work_item_id,
                file_name=file_name,
                source=AttachmentSource.TOOL,
                sync_status=SyncStatus.PENDING,
                attachment_id=attachment_id,
                file_size=len(data),
                content_hash=content_hash,
                mime_type=mime_type,
                local_path=key,
            )
            self.db.update_attachment(attachment_id, last_error=str(error))
            self.queue.enqueue(
                JobType.UPLOAD,
                work_item_id,
                attachment_id=attachment_id,
                payload={"comment": comment},
                message=f"Deferred upload of {file_name} after {category} failure",
                context={"category": category.value},
            )
            logger.warning("Deferred upload of %s [%s]: %s", file_name, category, error)
            return record

        self.db.create_attachment(
            work_item_id=work_item_id,
            file_name=file_name,
            source=AttachmentSource.TOOL,
            sync_status=SyncStatus.FAILED,
            attachment_id=attachment_id,
            file_size=len(data),
            content_hash=content_hash,
            mime_type=mime_type,
        )
        self.db.update_attachment(attachment_id, last_error=str(error))
        self.db.append_event(
            "UPLOAD_FAILED",
            EventSource.API,
            severity=Severity.ERROR,
            message=str(error),
            work_item_id=work_item_id,
            attachment_id=attachment_id,
            context={"category": category.value},
        )
        logger.error("Upload of %s failed [%s]: %s", file_name, category, error)
        raise error

    def _require_record(self, attachment_id: str) -> AttachmentRecord:
        record = self.db.get_attachment(attachment_id)
        if record is None:
            raise NotFoundError(f"Attachment not found: {attachment_id}")
        if record.is_deleted:
            raise ValidationError(f"Attachment {attachment_id} is deleted")
        return record

    def link(self, attachment_id: str, comment: str | None = None) -> SyncJob:
        """Queue a LINK job for an uploaded attachment.

        Used to recover records whose link failed after the upload.

        Raises:
            NotFoundError: If the attachment does not exist.
            ValidationError: If it is deleted or was never uploaded.
        """
        record = self._require_record(attachment_id)
        if not record.remote_reference:
            raise ValidationError(f"Attachment {attachment_id} has not been uploaded")
        self.db.update_attachment(attachment_id, sync_status=SyncStatus.SYNCING)
        return self.queue.enqueue(
            JobType.LINK,
            record.work_item_id,
            attachment_id=attachment_id,
            payload={"comment": comment},
        )

    def unlink(self, attachment_id: str) -> SyncJob:
        """Queue removal of an attachment's link, keeping the record."""
        record = self._require_record(attachment_id)
        return self.queue.enqueue(JobType.UNLINK, record.work_item_id, attachment_id=attachment_id)

    def delete(self, attachment_id: str) -> SyncJob:
        """Queue deletion of an attachment (remote link and local record)."""
        record = self._require_record(attachment_id)
        return self.queue.enqueue(JobType.DELETE, record.work_item_id, attachment_id=attachment_id)

    # === Inbound ===

    def reconcile_from_remote(self, work_item_id: int) -> ReconcileResult:
        """Diff remote attachments of a work item against local records now."""
        return self.reconciler.reconcile(work_item_id, source=EventSource.API)

    def force_sync(self, work_item_id: int) -> list[SyncJob]:
        """Queue every job that could bring a work item back in sync.

        Queues UPLOAD jobs for pending or failed tool attachments that still
        have staged content (failed ones return to PENDING),
        LINK jobs for uploaded but unlinked ones, and one discovery job.
        """
        jobs: list[SyncJob] = []
        for record in self.db.list_attachments(work_item_id):
            if record.source != AttachmentSource.TOOL:
                continue
            if (
                record.sync_status in (SyncStatus.PENDING, SyncStatus.FAILED)
                and not record.remote_reference
                and self.blobs.exists(staged_upload_key(record.attachment_id))
                and not self.queue.has_open_job(record.attachment_id, JobType.UPLOAD)
            ):
                if record.sync_status == SyncStatus.FAILED:
                    self.db.update_attachment(
                        record.attachment_id, sync_status=SyncStatus.PENDING, retry_count=0
                    )
                jobs.append(
                    self.queue.enqueue(
                        JobType.UPLOAD, work_item_id, attachment_id=record.attachment_id
                    )
                )
            elif (
                record.remote_reference
                and record.sync_status == SyncStatus.FAILED
                and not self.queue.has_open_job(record.attachment_id, JobType.LINK)
            ):
                jobs.append(self.link(record.attachment_id))

        jobs.append(
            self.queue.enqueue(
                JobType.DOWNLOAD,
                work_item_id,
                message=f"Force sync of work item {work_item_id}",
            )
        )
        logger.info("Force sync of work item %d queued %d jobs", work_item_id, len(jobs))
        return jobs

    # === Queries ===

    def status(self, work_item_id: int) -> dict[str, Any]:
        """Return the sync state of a work item.

        Returns:
            The summary read-model plus recent jobs, recent events and the
            uploaded-but-unlinked records.
        """
        summary = self.db.attachment_summary(work_item_id)
        summary["recent_jobs"] = self.queue.jobs_for_work_item(work_item_id, limit=STATUS_HISTORY)
        summary["recent_events"] = self.db.list_events(
            work_item_id=work_item_id, limit=STATUS_HISTORY
        )
        summary["unlinked"] = self.db.list_unlinked_attachments(work_item_id)
        return summary

    def get_attachment(self, attachment_id: str) -> AttachmentRecord:
        """Get an attachment record.

        Raises:
            NotFoundError: If the attachment does not exist.
        """
        record = self.db.get_attachment(attachment_id)
        if record is None:
            raise NotFoundError(f"Attachment not found: {attachment_id}")
        return record

    def list_attachments(
        self, work_item_id: int, include_deleted: bool = False
    ) -> list[AttachmentRecord]:
        """List attachment records of a work item."""
        return self.db.list_attachments(work_item_id, include_deleted=include_deleted)

    def list_unlinked(self, work_item_id: int | None = None) -> list[AttachmentRecord]:
        """List uploaded attachments whose link failed."""
        return self.db.list_unlinked_attachments(work_item_id)

    def check_dedup(self, content_hash: str, work_item_id: int) -> DeduplicationEntry | None:
        """Look up the dedup entry a new upload to a work item would reuse."""
        return self.dedup.lookup(content_hash, self.dedup.scope_for(work_item_id))

    def read_content(self, attachment_id: str) -> bytes:
        """Return the locally stored content of an attachment.

        Raises:
            NotFoundError: If the attachment or its content is missing.
        """
        record = self.get_attachment(attachment_id)
        for key in (record.local_path, content_key(attachment_id), staged_upload_key(attachment_id)):
            if not key:
                continue
            try:
                return self.blobs.get(key)
            except BlobNotFoundError:
                continue
        raise NotFoundError(f"No local content for attachment {attachment_id}")

    # === Maintenance ===

    def sweep_sessions(self) -> int:
        """Delete expired upload sessions."""
        return self.sessions.sweep_expired()

    def recover_stale_jobs(self) -> int:
        """Requeue jobs abandoned by crashed workers."""
        return self.queue.recover_stale(self.config.stale_job_timeout)
