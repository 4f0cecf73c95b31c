"""Metadata store using SQLAlchemy with SQLite.

This module provides:
- Attachment record storage and the per-work-item summary read-model
- Upload session and chunk bookkeeping
- The durable sync job queue (claim, finish, retry release)
- The append-only event log
- The deduplication index
- Webhook subscriptions

Every public method runs in its own short transaction. Returned ORM
objects are detached from their session.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, create_engine, delete, exists, func, or_, select, update
from sqlalchemy import event as sa_event
from sqlalchemy.exc import IntegrityError as SQLIntegrityError
from sqlalchemy.orm import Session, aliased, selectinload

from attachsync.core.types import (
    AttachmentSource,
    EventSource,
    JobStatus,
    Severity,
    SyncStatus,
)
from attachsync.store.models import (
    AttachmentRecord,
    Base,
    DeduplicationEntry,
    EventLogEntry,
    SyncJob,
    UploadChunk,
    UploadSession,
    WebhookSubscription,
    as_utc,
    utcnow,
)

if TYPE_CHECKING:
    from sqlalchemy import Engine


class DuplicateEventError(Exception):
    """Raised when an event with the same dedup key already exists."""


class RecordNotFoundError(Exception):
    """Raised when a row addressed by its public identifier does not exist."""


def new_identifier() -> str:
    """Generate a public identifier for attachments, sessions and subscriptions."""
    return uuid.uuid4().hex


class Database:
    """SQLAlchemy metadata store for attachment sync.

    Uses SQLite with WAL mode so worker threads can read while one writes.
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize the database.

        Args:
            db_path: Path to the SQLite database file.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        # check_same_thread=False: the worker pool shares one engine
        self._engine: Engine = create_engine(
            f"sqlite:///{self._db_path}",
            connect_args={"check_same_thread": False, "timeout": 30},
            echo=False,
        )

        @sa_event.listens_for(self._engine, "connect")
        def _set_sqlite_pragmas(dbapi_conn: Any, _record: Any) -> None:
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        Base.metadata.create_all(self._engine)

    @property
    def path(self) -> Path:
        """Return the database file path."""
        return self._db_path

    def close(self) -> None:
        """Close the database connection."""
        self._engine.dispose()

    def _session(self) -> Session:
        """Create a new database session."""
        return Session(self._engine, expire_on_commit=False)

    @staticmethod
    def _add_event(session: Session, **fields: Any) -> EventLogEntry:
        """Stage an event log entry in an open session."""
        fields.setdefault("severity", Severity.INFO)
        fields.setdefault("context", {})
        entry = EventLogEntry(**fields)
        session.add(entry)
        return entry

    # === Attachment operations ===

    def create_attachment(
        self,
        work_item_id: int,
        file_name: str,
        source: AttachmentSource,
        sync_status: SyncStatus = SyncStatus.PENDING,
        attachment_id: str | None = None,
        file_size: int | None = None,
        content_hash: str | None = None,
        mime_type: str | None = None,
        remote_reference: str | None = None,
        remote_revision: int | None = None,
        local_path: str | None = None,
    ) -> AttachmentRecord:
        """Create an attachment record.

        Args:
            work_item_id: Work item the attachment belongs to.
            file_name: Original file name.
            source: TOOL for local uploads, REMOTE for discovered attachments.
            sync_status: Initial sync status.
            attachment_id: Public identifier (generated when omitted).
            file_size: Size in bytes, if known.
            content_hash: Content fingerprint, if computed.
            mime_type: MIME type, if known.
            remote_reference: Remote object reference, if transferred.
            remote_revision: Remote revision the record was seen at.
            local_path: Blob store key of the local copy.

        Returns:
            Created AttachmentRecord.
        """
        with self._session() as session:
            record = AttachmentRecord(
                work_item_id=work_item_id,
                attachment_id=attachment_id or new_identifier(),
                file_name=file_name,
                file_size=file_size,
                content_hash=content_hash,
                mime_type=mime_type,
                source=source,
                remote_reference=remote_reference,
                remote_revision=remote_revision,
                local_path=local_path,
                sync_status=sync_status,
            )
            session.add(record)
            session.commit()
            session.expunge(record)
            return record

    def get_attachment(self, attachment_id: str) -> AttachmentRecord | None:
        """Get an attachment record by its public identifier."""
        with self._session() as session:
            stmt = select(AttachmentRecord).where(AttachmentRecord.attachment_id == attachment_id)
            record = session.execute(stmt).scalar_one_or_none()
            if record:
                session.expunge(record)
            return record

    def list_attachments(
        self,
        work_item_id: int,
        include_deleted: bool = False,
    ) -> list[AttachmentRecord]:
        """List attachment records of a work item, newest first.

        Args:
            work_item_id: Work item ID.
            include_deleted: Include soft-deleted records.

        Returns:
            List of attachment records.
        """
        with self._session() as session:
            stmt = select(AttachmentRecord).where(AttachmentRecord.work_item_id == work_item_id)
            if not include_deleted:
                stmt = stmt.where(AttachmentRecord.deleted_at.is_(None))
            stmt = stmt.order_by(AttachmentRecord.created_at.desc(), AttachmentRecord.id.desc())
            records = list(session.execute(stmt).scalars().all())
            for record in records:
                session.expunge(record)
            return records

    def list_unlinked_attachments(self, work_item_id: int | None = None) -> list[AttachmentRecord]:
        """List uploaded tool attachments whose link to the work item failed.

        These hold a remote reference but never reached SYNCED; they are kept
        for manual recovery instead of being rolled back remotely.
        """
        with self._session() as session:
            stmt = select(AttachmentRecord).where(
                AttachmentRecord.source == AttachmentSource.TOOL,
                AttachmentRecord.remote_reference.is_not(None),
                AttachmentRecord.sync_status == SyncStatus.FAILED,
                AttachmentRecord.deleted_at.is_(None),
            )
            if work_item_id is not None:
                stmt = stmt.where(AttachmentRecord.work_item_id == work_item_id)
            records = list(session.execute(stmt.order_by(AttachmentRecord.id)).scalars().all())
            for record in records:
                session.expunge(record)
            return records

    def update_attachment(self, attachment_id: str, **changes: Any) -> AttachmentRecord:
        """Update fields of an attachment record.

        Soft deletion is not possible here; use soft_delete_attachment().

        Args:
            attachment_id: Public identifier.
            **changes: Column values to set.

        Returns:
            Updated AttachmentRecord.

        Raises:
            ValueError: If changes touch deleted_at.
            RecordNotFoundError: If the record does not exist.
        """
        if "deleted_at" in changes:
            raise ValueError("deleted_at can only be set by soft_delete_attachment()")
        with self._session() as session:
            stmt = select(AttachmentRecord).where(AttachmentRecord.attachment_id == attachment_id)
            record = session.execute(stmt).scalar_one_or_none()
            if record is None:
                raise RecordNotFoundError(f"Attachment not found: {attachment_id}")
            for key, value in changes.items():
                setattr(record, key, value)
            record.updated_at = utcnow()
            session.commit()
            session.expunge(record)
            return record

    def soft_delete_attachment(self, attachment_id: str) -> AttachmentRecord:
        """Mark an attachment as deleted and drop dedup entries pointing at it.

        Args:
            attachment_id: Public identifier.

        Returns:
            The soft-deleted record.

        Raises:
            RecordNotFoundError: If the record does not exist.
        """
        with self._session() as session:
            stmt = select(AttachmentRecord).where(AttachmentRecord.attachment_id == attachment_id)
            record = session.execute(stmt).scalar_one_or_none()
            if record is None:
                raise RecordNotFoundError(f"Attachment not found: {attachment_id}")
            now = utcnow()
            if record.deleted_at is None:
                record.deleted_at = now
            record.sync_status = SyncStatus.DELETED
            record.updated_at = now
            session.execute(
                delete(DeduplicationEntry).where(
                    DeduplicationEntry.first_attachment_id == attachment_id
                )
            )
            session.commit()
            session.expunge(record)
            return record

    def attachment_summary(self, work_item_id: int) -> dict[str, Any]:
        """Compute the sync read-model of a work item.

        Soft-deleted records are excluded from every figure.

        Returns:
            Dictionary with total_attachments, counts (by sync status),
            total_size_bytes and last_modified.
        """
        with self._session() as session:
            stmt = (
                select(
                    AttachmentRecord.sync_status,
                    func.count(AttachmentRecord.id),
                    func.coalesce(func.sum(AttachmentRecord.file_size), 0),
                    func.max(AttachmentRecord.updated_at),
                )
                .where(
                    AttachmentRecord.work_item_id == work_item_id,
                    AttachmentRecord.deleted_at.is_(None),
                )
                .group_by(AttachmentRecord.sync_status)
            )
            counts = {status.value: 0 for status in SyncStatus if status != SyncStatus.DELETED}
            total = 0
            total_bytes = 0
            last_modified: datetime | None = None
            for status, count, size, modified in session.execute(stmt).all():
                counts[status] = count
                total += count
                total_bytes += int(size or 0)
                modified = as_utc(modified)
                if modified is not None and (last_modified is None or modified > last_modified):
                    last_modified = modified
            return {
                "work_item_id": work_item_id,
                "total_attachments": total,
                "counts": counts,
                "total_size_bytes": total_bytes,
                "last_modified": last_modified,
            }

    # === Upload session operations ===

    def create_session(
        self,
        work_item_id: int,
        file_name: str,
        total_size: int,
        chunk_size: int,
        total_chunks: int,
        expires_at: datetime,
        mime_type: str | None = None,
        link_on_finalize: bool = False,
        link_comment: str | None = None,
    ) -> UploadSession:
        """Create a chunked upload session.

        Returns:
            Created UploadSession with an empty chunk list.
        """
        with self._session() as session:
            upload = UploadSession(
                session_id=new_identifier(),
                work_item_id=work_item_id,
                file_name=file_name,
                mime_type=mime_type,
                total_size=total_size,
                chunk_size=chunk_size,
                total_chunks=total_chunks,
                expires_at=expires_at,
                link_on_finalize=link_on_finalize,
                link_comment=link_comment,
            )
            session.add(upload)
            session.commit()
            session.refresh(upload, attribute_names=["chunks"])
            session.expunge(upload)
            return upload

    def get_session(self, session_id: str) -> UploadSession | None:
        """Get an upload session with its chunk rows loaded."""
        with self._session() as session:
            stmt = (
                select(UploadSession)
                .options(selectinload(UploadSession.chunks))
                .where(UploadSession.session_id == session_id)
            )
            upload = session.execute(stmt).scalar_one_or_none()
            if upload:
                session.expunge(upload)
            return upload

    def add_session_chunk(
        self,
        session_id: str,
        chunk_index: int,
        byte_start: int,
        byte_end: int,
        chunk_hash: str,
    ) -> tuple[UploadSession, bool]:
        """Record a received chunk.

        chunks_received is recomputed from the distinct chunk rows, so a
        re-submitted chunk never increments it.

        Args:
            session_id: Session identifier.
            chunk_index: Zero-based chunk index.
            byte_start: First byte of the chunk.
            byte_end: Last byte of the chunk (inclusive).
            chunk_hash: Fingerprint of the chunk bytes.

        Returns:
            Tuple of (updated session, whether the chunk was new).

        Raises:
            RecordNotFoundError: If the session does not exist.
        """
        with self._session() as session:
            stmt = (
                select(UploadSession)
                .options(selectinload(UploadSession.chunks))
                .where(UploadSession.session_id == session_id)
            )
            upload = session.execute(stmt).scalar_one_or_none()
            if upload is None:
                raise RecordNotFoundError(f"Upload session not found: {session_id}")

            added = False
            if session.get(UploadChunk, (upload.id, chunk_index)) is None:
                upload.chunks.append(
                    UploadChunk(
                        chunk_index=chunk_index,
                        byte_start=byte_start,
                        byte_end=byte_end,
                        chunk_hash=chunk_hash,
                    )
                )
                session.flush()
                added = True

            received = session.execute(
                select(func.count()).select_from(UploadChunk).where(
                    UploadChunk.session_pk == upload.id
                )
            ).scalar_one()
            upload.chunks_received = max(upload.chunks_received, received)
            upload.updated_at = utcnow()
            session.commit()
            session.refresh(upload, attribute_names=["chunks"])
            session.expunge(upload)
            return upload, added

    def update_session(self, session_id: str, **changes: Any) -> UploadSession:
        """Update fields of an upload session.

        Raises:
            RecordNotFoundError: If the session does not exist.
        """
        with self._session() as session:
            stmt = (
                select(UploadSession)
                .options(selectinload(UploadSession.chunks))
                .where(UploadSession.session_id == session_id)
            )
            upload = session.execute(stmt).scalar_one_or_none()
            if upload is None:
                raise RecordNotFoundError(f"Upload session not found: {session_id}")
            for key, value in changes.items():
                setattr(upload, key, value)
            upload.updated_at = utcnow()
            session.commit()
            session.expunge(upload)
            return upload

    def delete_session(self, session_id: str) -> bool:
        """Delete an upload session and its chunk rows.

        Returns:
            True if the session was deleted, False if not found.
        """
        with self._session() as session:
            stmt = select(UploadSession).where(UploadSession.session_id == session_id)
            upload = session.execute(stmt).scalar_one_or_none()
            if upload is None:
                return False
            session.delete(upload)
            session.commit()
            return True

    def list_expired_sessions(self, now: datetime | None = None) -> list[UploadSession]:
        """List sessions whose expires_at has passed."""
        now = now or utcnow()
        with self._session() as session:
            stmt = (
                select(UploadSession)
                .options(selectinload(UploadSession.chunks))
                .where(UploadSession.expires_at < now)
                .order_by(UploadSession.expires_at)
            )
            uploads = list(session.execute(stmt).scalars().all())
            for upload in uploads:
                session.expunge(upload)
            return uploads

    # === Job operations ===

    def create_job(
        self,
        work_item_id: int,
        job_type: str,
        attachment_id: str | None = None,
        priority: int = 5,
        max_retries: int = 3,
        payload: dict[str, Any] | None = None,
        event: dict[str, Any] | None = None,
    ) -> SyncJob:
        """Insert a QUEUED job, optionally with an event in the same transaction.

        Args:
            work_item_id: Work item the job acts on.
            job_type: One of the JobType values.
            attachment_id: Attachment the job acts on (None for discovery jobs).
            priority: 1 (highest) to 10 (lowest).
            max_retries: Retry budget.
            payload: Job-specific data.
            event: Event log fields to append atomically with the job. When
                the event carries a dedup_key that already exists, nothing is
                written.

        Returns:
            Created SyncJob.

        Raises:
            DuplicateEventError: If the event's dedup_key already exists.
        """
        with self._session() as session:
            job = SyncJob(
                work_item_id=work_item_id,
                attachment_id=attachment_id,
                job_type=job_type,
                status=JobStatus.QUEUED,
                priority=priority,
                max_retries=max_retries,
                payload=payload or {},
            )
            session.add(job)
            session.flush()
            if event is not None:
                fields = dict(event)
                fields.setdefault("work_item_id", work_item_id)
                fields.setdefault("attachment_id", attachment_id)
                fields["job_id"] = job.id
                context = dict(fields.get("context") or {})
                context.setdefault("job_type", job_type)
                fields["context"] = context
                self._add_event(session, **fields)
            try:
                session.commit()
            except SQLIntegrityError as e:
                session.rollback()
                raise DuplicateEventError(str(event.get("dedup_key") if event else "")) from e
            session.expunge(job)
            return job

    def get_job(self, job_id: int) -> SyncJob | None:
        """Get a job by ID."""
        with self._session() as session:
            job = session.get(SyncJob, job_id)
            if job:
                session.expunge(job)
            return job

    def list_jobs(
        self,
        work_item_id: int | None = None,
        attachment_id: str | None = None,
        status: JobStatus | None = None,
        limit: int | None = None,
    ) -> list[SyncJob]:
        """List jobs, newest first."""
        with self._session() as session:
            stmt = select(SyncJob)
            if work_item_id is not None:
                stmt = stmt.where(SyncJob.work_item_id == work_item_id)
            if attachment_id is not None:
                stmt = stmt.where(SyncJob.attachment_id == attachment_id)
            if status is not None:
                stmt = stmt.where(SyncJob.status == status)
            stmt = stmt.order_by(SyncJob.id.desc())
            if limit is not None:
                stmt = stmt.limit(limit)
            jobs = list(session.execute(stmt).scalars().all())
            for job in jobs:
                session.expunge(job)
            return jobs

    def has_open_job(self, attachment_id: str, job_type: str) -> bool:
        """Check if a job of a type is queued, running or awaiting retry."""
        with self._session() as session:
            stmt = select(SyncJob.id).where(
                SyncJob.attachment_id == attachment_id,
                SyncJob.job_type == job_type,
                or_(
                    SyncJob.status.in_([JobStatus.QUEUED, JobStatus.PROCESSING]),
                    and_(SyncJob.status == JobStatus.FAILED, SyncJob.next_retry_at.is_not(None)),
                ),
            )
            return session.execute(stmt.limit(1)).first() is not None

    def claimable_job_ids(self, limit: int = 20) -> list[int]:
        """List QUEUED job IDs eligible for claiming, best first.

        A job is held back while an earlier job for the same attachment is
        queued, running or waiting for a retry.
        """
        earlier = aliased(SyncJob)
        blocked = exists().where(
            earlier.attachment_id == SyncJob.attachment_id,
            earlier.id < SyncJob.id,
            or_(
                earlier.status.in_([JobStatus.QUEUED, JobStatus.PROCESSING]),
                and_(earlier.status == JobStatus.FAILED, earlier.next_retry_at.is_not(None)),
            ),
        )
        stmt = (
            select(SyncJob.id)
            .where(
                SyncJob.status == JobStatus.QUEUED,
                or_(SyncJob.attachment_id.is_(None), ~blocked),
            )
            .order_by(SyncJob.priority, SyncJob.id)
            .limit(limit)
        )
        with self._session() as session:
            return list(session.execute(stmt).scalars().all())

    def try_claim_job(self, job_id: int, worker_id: str) -> SyncJob | None:
        """Atomically move a job from QUEUED to PROCESSING.

        Args:
            job_id: Job to claim.
            worker_id: Identifier of the claiming worker.

        Returns:
            The claimed job, or None if another worker won the race.
        """
        with self._session() as session:
            result = session.execute(
                update(SyncJob)
                .where(SyncJob.id == job_id, SyncJob.status == JobStatus.QUEUED)
                .values(
                    status=JobStatus.PROCESSING,
                    worker_id=worker_id,
                    started_at=utcnow(),
                )
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
            job = session.get(SyncJob, job_id)
            if job:
                session.expunge(job)
            return job

    def finish_job(
        self,
        job_id: int,
        changes: dict[str, Any],
        events: list[dict[str, Any]] | None = None,
    ) -> SyncJob:
        """Apply a state transition to a PROCESSING job and log it.

        Args:
            job_id: Job ID.
            changes: Column values to set.
            events: Event log entries appended in the same transaction.

        Returns:
            Updated SyncJob.

        Raises:
            RecordNotFoundError: If the job does not exist.
        """
        with self._session() as session:
            job = session.get(SyncJob, job_id)
            if job is None:
                raise RecordNotFoundError(f"Job not found: {job_id}")
            for key, value in changes.items():
                setattr(job, key, value)
            for event in events or []:
                fields = dict(event)
                fields.setdefault("work_item_id", job.work_item_id)
                fields.setdefault("attachment_id", job.attachment_id)
                fields.setdefault("job_id", job.id)
                self._add_event(session, **fields)
            session.commit()
            session.expunge(job)
            return job

    def release_due_jobs(self, now: datetime | None = None) -> list[int]:
        """Return FAILED jobs whose retry time has come to QUEUED.

        Terminal jobs have no next_retry_at and are never released.

        Returns:
            IDs of the released jobs.
        """
        now = now or utcnow()
        with self._session() as session:
            stmt = select(SyncJob.id).where(
                SyncJob.status == JobStatus.FAILED,
                SyncJob.next_retry_at.is_not(None),
                SyncJob.next_retry_at <= now,
            )
            ids = list(session.execute(stmt).scalars().all())
            if ids:
                session.execute(
                    update(SyncJob)
                    .where(
                        SyncJob.id.in_(ids),
                        SyncJob.status == JobStatus.FAILED,
                        SyncJob.next_retry_at.is_not(None),
                    )
                    .values(status=JobStatus.QUEUED, next_retry_at=None, worker_id=None)
                )
                session.commit()
            return ids

    def requeue_stale_jobs(self, started_before: datetime) -> list[SyncJob]:
        """Return PROCESSING jobs started before a cutoff to QUEUED.

        Returns:
            The requeued jobs.
        """
        with self._session() as session:
            stmt = select(SyncJob).where(
                SyncJob.status == JobStatus.PROCESSING,
                SyncJob.started_at < started_before,
            )
            jobs = list(session.execute(stmt).scalars().all())
            for job in jobs:
                self._add_event(
                    session,
                    event_type="JOB_RECOVERED",
                    severity=Severity.WARN,
                    source=EventSource.SCHEDULER,
                    work_item_id=job.work_item_id,
                    attachment_id=job.attachment_id,
                    job_id=job.id,
                    message=f"Requeued {job.job_type} job abandoned by {job.worker_id}",
                    context={"worker_id": job.worker_id},
                )
                job.status = JobStatus.QUEUED
                job.worker_id = None
                job.started_at = None
            session.commit()
            for job in jobs:
                session.expunge(job)
            return jobs

    # === Event log operations ===

    def append_event(
        self,
        event_type: str,
        source: EventSource,
        severity: Severity = Severity.INFO,
        message: str | None = None,
        work_item_id: int | None = None,
        attachment_id: str | None = None,
        job_id: int | None = None,
        context: dict[str, Any] | None = None,
        dedup_key: str | None = None,
    ) -> EventLogEntry:
        """Append an entry to the event log.

        Raises:
            DuplicateEventError: If dedup_key is already present.
        """
        with self._session() as session:
            entry = self._add_event(
                session,
                event_type=event_type,
                source=source,
                severity=severity,
                message=message,
                work_item_id=work_item_id,
                attachment_id=attachment_id,
                job_id=job_id,
                context=context or {},
                dedup_key=dedup_key,
            )
            try:
                session.commit()
            except SQLIntegrityError as e:
                session.rollback()
                raise DuplicateEventError(str(dedup_key)) from e
            session.expunge(entry)
            return entry

    def list_events(
        self,
        work_item_id: int | None = None,
        event_type: str | None = None,
        source: EventSource | None = None,
        severity: Severity | None = None,
        job_id: int | None = None,
        limit: int | None = None,
    ) -> list[EventLogEntry]:
        """List event log entries, oldest first."""
        with self._session() as session:
            stmt = select(EventLogEntry)
            if work_item_id is not None:
                stmt = stmt.where(EventLogEntry.work_item_id == work_item_id)
            if event_type is not None:
                stmt = stmt.where(EventLogEntry.event_type == event_type)
            if source is not None:
                stmt = stmt.where(EventLogEntry.source == source)
            if severity is not None:
                stmt = stmt.where(EventLogEntry.severity == severity)
            if job_id is not None:
                stmt = stmt.where(EventLogEntry.job_id == job_id)
            if limit is not None:
                # Most recent N, returned in chronological order
                inner = stmt.order_by(EventLogEntry.id.desc()).limit(limit).subquery()
                entry_alias = aliased(EventLogEntry, inner)
                stmt = select(entry_alias).order_by(entry_alias.id)
            else:
                stmt = stmt.order_by(EventLogEntry.id)
            entries = list(session.execute(stmt).scalars().all())
            for entry in entries:
                session.expunge(entry)
            return entries

    def event_exists(self, dedup_key: str) -> bool:
        """Check if an event with this dedup key was logged."""
        with self._session() as session:
            stmt = select(EventLogEntry.id).where(EventLogEntry.dedup_key == dedup_key)
            return session.execute(stmt).first() is not None

    # === Deduplication operations ===

    def get_dedup_entry(self, content_hash: str, scope: str) -> DeduplicationEntry | None:
        """Get the dedup entry for a content hash within a scope."""
        with self._session() as session:
            stmt = select(DeduplicationEntry).where(
                DeduplicationEntry.content_hash == content_hash,
                DeduplicationEntry.work_item_scope == scope,
            )
            entry = session.execute(stmt).scalar_one_or_none()
            if entry:
                session.expunge(entry)
            return entry

    def create_dedup_entry(
        self,
        content_hash: str,
        scope: str,
        attachment_id: str,
        remote_reference: str,
    ) -> tuple[DeduplicationEntry, bool]:
        """Create a dedup entry unless one already exists.

        Returns:
            Tuple of (entry, whether this call created it). When another
            writer got there first its entry is returned.
        """
        with self._session() as session:
            entry = DeduplicationEntry(
                content_hash=content_hash,
                work_item_scope=scope,
                first_attachment_id=attachment_id,
                remote_reference=remote_reference,
            )
            session.add(entry)
            try:
                session.commit()
            except SQLIntegrityError:
                session.rollback()
                existing = self.get_dedup_entry(content_hash, scope)
                if existing is None:
                    raise
                return existing, False
            session.expunge(entry)
            return entry, True

    def increment_duplicate_count(self, entry_id: int) -> DeduplicationEntry:
        """Count one more reuse of a dedup entry."""
        with self._session() as session:
            entry = session.get(DeduplicationEntry, entry_id)
            if entry is None:
                raise RecordNotFoundError(f"Dedup entry not found: {entry_id}")
            entry.duplicate_count += 1
            entry.last_duplicate_at = utcnow()
            session.commit()
            session.expunge(entry)
            return entry

    def delete_dedup_entry(self, entry_id: int) -> None:
        """Remove a dedup entry."""
        with self._session() as session:
            session.execute(delete(DeduplicationEntry).where(DeduplicationEntry.id == entry_id))
            session.commit()

    # === Webhook subscription operations ===

    def create_subscription(
        self,
        callback_url: str,
        secret: str,
        event_types: list[str] | None = None,
        subscription_id: str | None = None,
    ) -> WebhookSubscription:
        """Register a webhook subscription."""
        with self._session() as session:
            subscription = WebhookSubscription(
                subscription_id=subscription_id or new_identifier(),
                callback_url=callback_url,
                secret=secret,
                event_types=",".join(event_types) if event_types else None,
            )
            session.add(subscription)
            session.commit()
            session.expunge(subscription)
            return subscription

    def get_subscription(self, subscription_id: str) -> WebhookSubscription | None:
        """Get a webhook subscription by its identifier."""
        with self._session() as session:
            stmt = select(WebhookSubscription).where(
                WebhookSubscription.subscription_id == subscription_id
            )
            subscription = session.execute(stmt).scalar_one_or_none()
            if subscription:
                session.expunge(subscription)
            return subscription

    def list_subscriptions(self, active_only: bool = False) -> list[WebhookSubscription]:
        """List webhook subscriptions."""
        with self._session() as session:
            stmt = select(WebhookSubscription)
            if active_only:
                stmt = stmt.where(WebhookSubscription.is_active.is_(True))
            subscriptions = list(session.execute(stmt.order_by(WebhookSubscription.id)).scalars())
            for subscription in subscriptions:
                session.expunge(subscription)
            return subscriptions

    def set_subscription_active(self, subscription_id: str, active: bool) -> bool:
        """Activate or deactivate a subscription.

        Returns:
            True if the subscription exists.
        """
        with self._session() as session:
            result = session.execute(
                update(WebhookSubscription)
                .where(WebhookSubscription.subscription_id == subscription_id)
                .values(is_active=active, updated_at=utcnow())
            )
            session.commit()
            return result.rowcount == 1

    def record_subscription_verification(
        self,
        subscription_id: str,
        error: str | None = None,
    ) -> None:
        """Store the outcome of the latest delivery's signature check."""
        values: dict[str, Any] = {"verification_error": error, "updated_at": utcnow()}
        if error is None:
            values["last_verified_at"] = utcnow()
        with self._session() as session:
            session.execute(
                update(WebhookSubscription)
                .where(WebhookSubscription.subscription_id == subscription_id)
                .values(**values)
            )
            session.commit()

    # === Maintenance ===

    def stale_cutoff(self, timeout_seconds: float) -> datetime:
        """Return the start time before which PROCESSING jobs count as stale."""
        return utcnow() - timedelta(seconds=timeout_seconds)
