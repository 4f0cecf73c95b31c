"""Deduplicated content transfer to the remote tracker.

This module provides:
- Delivery: Outcome of one deliver() call
- ContentTransfer: Lookup, transfer and dedup claim under a keyed lock

Every path that sends attachment bytes (direct upload, chunked session
finalize, UPLOAD jobs) goes through ContentTransfer.deliver(), so
concurrent callers with identical content perform exactly one transfer.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from attachsync.core.ranges import ByteRange, chunk_range

if TYPE_CHECKING:
    from attachsync.remote.adapter import ObjectMetadata, RemoteSyncAdapter
    from attachsync.store.models import AttachmentRecord
    from attachsync.sync.dedup import DeduplicationIndex
    from attachsync.sync.locks import KeyedLock

logger = logging.getLogger(__name__)

# register(remote_reference, deduplicated) -> record now holding the reference
RegisterFn = Callable[[str, bool], "AttachmentRecord"]


@dataclass
class Delivery:
    """Outcome of a delivery.

    Attributes:
        record: Attachment record returned by the register callback.
        reference: Remote reference of the content.
        deduplicated: True when an earlier transfer was reused.
    """

    record: AttachmentRecord
    reference: str
    deduplicated: bool


class ContentTransfer:
    """Sends content once per dedup scope and records who sent it."""

    def __init__(
        self,
        adapter: RemoteSyncAdapter,
        dedup: DeduplicationIndex,
        locks: KeyedLock,
    ) -> None:
        self._adapter = adapter
        self._dedup = dedup
        self._locks = locks

    @property
    def adapter(self) -> RemoteSyncAdapter:
        return self._adapter

    def deliver(
        self,
        work_item_id: int,
        content_hash: str,
        send: Callable[[], str],
        register: RegisterFn,
    ) -> Delivery:
        """Transfer content unless the dedup index already has it.

        The lookup, the transfer and the dedup claim run under one lock per
        (scope, content_hash).

        Args:
            work_item_id: Work item the content is for.
            content_hash: Fingerprint of the content.
            send: Performs the transfer and returns the remote reference.
            register: Persists the reference on an attachment record; called
                before the dedup claim so the entry always points at an
                existing record.

        Returns:
            The delivery outcome.

        Raises:
            Whatever send() raises; nothing is registered in that case.
        """
        scope = self._dedup.scope_for(work_item_id)
        with self._locks.hold((scope, content_hash)):
            entry = self._dedup.lookup(content_hash, scope)
            if entry is not None:
                self._dedup.record_hit(entry)
                record = register(entry.remote_reference, True)
                logger.info(
                    "Reused %s for %s (duplicate of %s)",
                    entry.remote_reference,
                    record.attachment_id,
                    entry.first_attachment_id,
                )
                return Delivery(record=record, reference=entry.remote_reference, deduplicated=True)

            reference = send()
            record = register(reference, False)
            self._dedup.claim(content_hash, scope, record.attachment_id, reference)
            return Delivery(record=record, reference=reference, deduplicated=False)

    def send_single(self, data: bytes, metadata: ObjectMetadata) -> str:
        """Upload content in one request."""
        return self._adapter.upload_object(data, metadata)

    def send_chunked(
        self,
        metadata: ObjectMetadata,
        chunks: Iterable[tuple[ByteRange, bytes]],
    ) -> str:
        """Upload content as a sequence of ranged chunks.

        Args:
            metadata: Object description (size is the total size).
            chunks: (range, bytes) pairs in ascending order.

        Returns:
            Remote reference of the assembled object.
        """
        upload = self._adapter.begin_chunked_upload(metadata)
        sent = 0
        for byte_range, data in chunks:
            self._adapter.upload_chunk(upload.token, byte_range, data)
            sent += 1
        logger.info("Sent %s in %d chunks as %s", metadata.file_name, sent, upload.reference)
        return upload.reference

    def send_bytes_chunked(self, data: bytes, metadata: ObjectMetadata, chunk_size: int) -> str:
        """Upload in-memory content through the chunked protocol."""
        total = len(data)
        count = (total + chunk_size - 1) // chunk_size

        def pieces() -> Iterable[tuple[ByteRange, bytes]]:
            for index in range(count):
                byte_range = chunk_range(index, chunk_size, total)
                yield byte_range, data[byte_range.start : byte_range.end + 1]

        return self.send_chunked(metadata, pieces())
