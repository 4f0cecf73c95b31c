"""Resumable chunked upload sessions.

This module provides:
- SessionProgress: Progress view of a session
- UploadSessionManager: start, put_chunk, finalize, status, expiry sweep

A client splits a file into fixed-size chunks and sends them in any
order. Each chunk is staged in the blob store and recorded as a row of
upload_chunks. Once every chunk is present the session is finalized:
chunks are reassembled, verified, deduplicated and transferred.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from attachsync.core.errors import (
    IntegrityError,
    NotFoundError,
    ValidationError,
    classify,
)
from attachsync.core.hashing import fingerprint, fingerprint_chunks
from attachsync.core.ranges import chunk_range, parse_byte_range
from attachsync.core.types import (
    AttachmentSource,
    EventSource,
    JobType,
    SessionStatus,
    Severity,
    SyncStatus,
)
from attachsync.remote.adapter import ObjectMetadata
from attachsync.store.blobs import session_chunk_key, session_prefix
from attachsync.store.models import as_utc, utcnow

if TYPE_CHECKING:
    from attachsync.core.config import SyncConfig
    from attachsync.store.blobs import BlobStore
    from attachsync.store.database import Database
    from attachsync.store.models import AttachmentRecord, UploadSession
    from attachsync.sync.queue import JobQueue
    from attachsync.sync.transfer import ContentTransfer

logger = logging.getLogger(__name__)


@dataclass
class SessionProgress:
    """Progress of an upload session."""

    session_id: str
    status: str
    work_item_id: int
    file_name: str
    total_size: int
    chunk_size: int
    total_chunks: int
    chunks_received: int
    missing_chunks: list[int]
    expires_at: datetime
    attachment_id: str | None = None
    last_error: str | None = None

    @property
    def percent(self) -> float:
        if self.total_chunks == 0:
            return 100.0
        return round(100.0 * self.chunks_received / self.total_chunks, 2)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        return {
            "session_id": self.session_id,
            "status": self.status,
            "work_item_id": self.work_item_id,
            "file_name": self.file_name,
            "total_size": self.total_size,
            "chunk_size": self.chunk_size,
            "total_chunks": self.total_chunks,
            "chunks_received": self.chunks_received,
            "missing_chunks": self.missing_chunks,
            "percent": self.percent,
            "expires_at": self.expires_at,
            "attachment_id": self.attachment_id,
            "last_error": self.last_error,
        }


class UploadSessionManager:
    """Manages chunked upload sessions."""

    def __init__(
        self,
        db: Database,
        blobs: BlobStore,
        transfer: ContentTransfer,
        queue: JobQueue,
        config: SyncConfig,
    ) -> None:
        self._db = db
        self._blobs = blobs
        self._transfer = transfer
        self._queue = queue
        self._config = config

    def _load(self, session_id: str) -> UploadSession:
        upload = self._db.get_session(session_id)
        if upload is None:
            raise NotFoundError(f"Upload session not found: {session_id}")
        return upload

    @staticmethod
    def _check_not_expired(upload: UploadSession, now: datetime | None = None) -> None:
        now = now or utcnow()
        expires_at = as_utc(upload.expires_at)
        if expires_at is not None and expires_at <= now:
            raise ValidationError(f"Upload session {upload.session_id} expired at {expires_at}")

    def start_session(
        self,
        work_item_id: int,
        file_name: str,
        total_size: int,
        chunk_size: int | None = None,
        mime_type: str | None = None,
        link: bool = False,
        comment: str | None = None,
    ) -> UploadSession:
        """Open an upload session.

        Args:
            work_item_id: Work item the file is for.
            file_name: Original file name.
            total_size: Size of the complete file in bytes.
            chunk_size: Chunk size (defaults to the configured size).
            mime_type: MIME type, if known.
            link: Link the attachment to the work item after finalize.
            comment: Link comment.

        Returns:
            The OPEN session.

        Raises:
            ValidationError: For a non-positive size or chunk size, a file
                above the configured maximum, or an empty file name.
        """
        chunk_size = self._config.chunk_size if chunk_size is None else chunk_size
        if not file_name:
            raise ValidationError("file_name is required")
        if total_size <= 0:
            raise ValidationError(f"total_size must be > 0, got {total_size}")
        if chunk_size <= 0:
            raise ValidationError(f"chunk_size must be > 0, got {chunk_size}")
        if total_size > self._config.max_file_size:
            raise ValidationError(
                f"File of {total_size} bytes exceeds the maximum of "
                f"{self._config.max_file_size} bytes"
            )

        total_chunks = math.ceil(total_size / chunk_size)
        expires_at = utcnow() + timedelta(hours=self._config.session_ttl_hours)
        upload = self._db.create_session(
            work_item_id=work_item_id,
            file_name=file_name,
            total_size=total_size,
            chunk_size=chunk_size,
            total_chunks=total_chunks,
            expires_at=expires_at,
            mime_type=mime_type,
            link_on_finalize=link,
            link_comment=comment,
        )
        self._db.append_event(
            "SESSION_STARTED",
            EventSource.API,
            message=f"Upload session for {file_name} ({total_size} bytes, {total_chunks} chunks)",
            work_item_id=work_item_id,
            context={"session_id": upload.session_id, "total_chunks": total_chunks},
        )
        logger.info(
            "Started upload session %s: %s, %d bytes in %d chunks",
            upload.session_id,
            file_name,
            total_size,
            total_chunks,
        )
        return upload

    def put_chunk(
        self,
        session_id: str,
        byte_range: Any,
        data: bytes,
    ) -> tuple[UploadSession, AttachmentRecord | None]:
        """Accept one chunk of a session.

        Args:
            session_id: Session identifier.
            byte_range: Range of the chunk in any form parse_byte_range()
                accepts.
            data: Chunk bytes.

        Returns:
            Tuple of (session, attachment record). The record is set when
            this chunk completed the session and finalize succeeded.

        Raises:
            NotFoundError: If the session does not exist.
            ValidationError: If the session is expired or closed, or the
                range is out of bounds, misaligned or does not match data.
        """
        upload = self._load(session_id)
        self._check_not_expired(upload)
        if upload.status == SessionStatus.COMPLETED:
            raise ValidationError(f"Upload session {session_id} is already completed")

        rng = parse_byte_range(byte_range)
        if rng.total is not None and rng.total != upload.total_size:
            raise ValidationError(
                f"Range total {rng.total} does not match session size {upload.total_size}"
            )
        if rng.end >= upload.total_size:
            raise ValidationError(
                f"Range {rng.start}-{rng.end} is outside [0, {upload.total_size})"
            )
        if rng.start % upload.chunk_size != 0:
            raise ValidationError(
                f"Range start {rng.start} is not aligned to chunk size {upload.chunk_size}"
            )
        index = rng.start // upload.chunk_size
        expected = chunk_range(index, upload.chunk_size, upload.total_size)
        if rng.end != expected.end:
            raise ValidationError(
                f"Range {rng.start}-{rng.end} does not cover chunk {index} "
                f"({expected.start}-{expected.end})"
            )
        if len(data) != rng.length:
            raise ValidationError(
                f"Chunk has {len(data)} bytes but range {rng.start}-{rng.end} "
                f"needs {rng.length}"
            )

        if not any(chunk.chunk_index == index for chunk in upload.chunks):
            self._blobs.put(session_chunk_key(session_id, index), data)
        upload, added = self._db.add_session_chunk(
            session_id, index, rng.start, rng.end, fingerprint(data)
        )
        if added:
            logger.debug(
                "Session %s: chunk %d received (%d/%d)",
                session_id,
                index,
                upload.chunks_received,
                upload.total_chunks,
            )
        else:
            logger.debug("Session %s: chunk %d already present", session_id, index)

        if added and upload.is_complete and upload.status == SessionStatus.OPEN:
            record = self.finalize(session_id)
            return self._load(session_id), record
        return upload, None

    def finalize(self, session_id: str) -> AttachmentRecord:
        """Reassemble, verify and transfer a complete session.

        Calling finalize on a COMPLETED session returns its attachment.

        Raises:
            NotFoundError: If the session does not exist.
            ValidationError: If chunks are missing or the session expired.
            IntegrityError: If the reassembled content is inconsistent.
            SyncError: If the transfer fails; the session is marked FAILED
                and may be finalized again.
        """
        upload = self._load(session_id)
        if upload.status == SessionStatus.COMPLETED and upload.attachment_id:
            record = self._db.get_attachment(upload.attachment_id)
            if record is not None:
                return record
        self._check_not_expired(upload)
        if not upload.is_complete:
            raise ValidationError(
                f"Upload session {session_id} has {upload.chunks_received} of "
                f"{upload.total_chunks} chunks"
            )

        try:
            record = self._finalize(upload)
        except Exception as e:
            category = classify(e)
            self._db.update_session(session_id, status=SessionStatus.FAILED, last_error=str(e))
            self._db.append_event(
                "SESSION_FAILED",
                EventSource.API,
                severity=Severity.WARN,
                message=str(e),
                work_item_id=upload.work_item_id,
                context={"session_id": session_id, "category": category.value},
            )
            logger.warning("Finalize of session %s failed [%s]: %s", session_id, category, e)
            raise

        self._db.update_session(
            session_id,
            status=SessionStatus.COMPLETED,
            attachment_id=record.attachment_id,
            last_error=None,
        )
        self._blobs.delete_prefix(session_prefix(session_id))
        self._db.append_event(
            "SESSION_COMPLETED",
            EventSource.API,
            message=f"Finalized {upload.file_name}",
            work_item_id=upload.work_item_id,
            attachment_id=record.attachment_id,
            context={"session_id": session_id},
        )
        logger.info("Finalized session %s as attachment %s", session_id, record.attachment_id)
        return record

    def _finalize(self, upload: UploadSession) -> AttachmentRecord:
        chunks = sorted(upload.chunks, key=lambda c: c.chunk_index)
        indexes = [chunk.chunk_index for chunk in chunks]
        if indexes != list(range(upload.total_chunks)):
            raise IntegrityError(f"Session {upload.session_id} chunk set is inconsistent")

        keys = [session_chunk_key(upload.session_id, i) for i in indexes]
        pieces = []
        for chunk, key in zip(chunks, keys, strict=True):
            data = self._blobs.get(key)
            if fingerprint(data) != chunk.chunk_hash:
                raise IntegrityError(f"Chunk {chunk.chunk_index} changed since it was received")
            pieces.append(data)

        content_hash, size = fingerprint_chunks(pieces)
        if size != upload.total_size:
            raise IntegrityError(
                f"Reassembled {size} bytes, expected {upload.total_size}"
            )

        metadata = ObjectMetadata(
            file_name=upload.file_name,
            size=size,
            mime_type=upload.mime_type,
            content_hash=content_hash,
        )

        def send() -> str:
            ranges = (chunk_range(c.chunk_index, upload.chunk_size, size) for c in chunks)
            return self._transfer.send_chunked(metadata, zip(ranges, pieces, strict=True))

        def register(reference: str, deduplicated: bool) -> AttachmentRecord:
            status = SyncStatus.SYNCING if upload.link_on_finalize else SyncStatus.SYNCED
            record = self._db.create_attachment(
                work_item_id=upload.work_item_id,
                file_name=upload.file_name,
                source=AttachmentSource.TOOL,
                sync_status=status,
                file_size=size,
                content_hash=content_hash,
                mime_type=upload.mime_type,
                remote_reference=reference,
            )
            if upload.link_on_finalize:
                self._queue.enqueue(
                    JobType.LINK,
                    upload.work_item_id,
                    attachment_id=record.attachment_id,
                    payload={"comment": upload.link_comment, "deduplicated": deduplicated},
                )
            return record

        return self._transfer.deliver(upload.work_item_id, content_hash, send, register).record

    def session_status(self, session_id: str) -> SessionProgress:
        """Return progress of a session.

        Raises:
            NotFoundError: If the session does not exist.
        """
        upload = self._load(session_id)
        received = {chunk.chunk_index for chunk in upload.chunks}
        return SessionProgress(
            session_id=upload.session_id,
            status=upload.status,
            work_item_id=upload.work_item_id,
            file_name=upload.file_name,
            total_size=upload.total_size,
            chunk_size=upload.chunk_size,
            total_chunks=upload.total_chunks,
            chunks_received=upload.chunks_received,
            missing_chunks=[i for i in range(upload.total_chunks) if i not in received],
            expires_at=as_utc(upload.expires_at) or upload.expires_at,
            attachment_id=upload.attachment_id,
            last_error=upload.last_error,
        )

    def cancel(self, session_id: str) -> bool:
        """Drop a session and its staged chunks."""
        self._blobs.delete_prefix(session_prefix(session_id))
        return self._db.delete_session(session_id)

    def sweep_expired(self, now: datetime | None = None) -> int:
        """Delete sessions past their expiry time.

        Returns:
            Number of sessions removed.
        """
        now = now or utcnow()
        removed = 0
        for upload in self._db.list_expired_sessions(now):
            staged = self._blobs.delete_prefix(session_prefix(upload.session_id))
            if not self._db.delete_session(upload.session_id):
                continue
            removed += 1
            self._db.append_event(
                "SESSION_EXPIRED",
                EventSource.SCHEDULER,
                severity=Severity.WARN,
                message=(
                    f"Upload session for {upload.file_name} expired with "
                    f"{upload.chunks_received}/{upload.total_chunks} chunks"
                ),
                work_item_id=upload.work_item_id,
                context={"session_id": upload.session_id, "staged_chunks": staged},
            )
        if removed:
            logger.info("Swept %d expired upload sessions", removed)
        return removed
