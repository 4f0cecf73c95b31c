"""Remote sync adapter interface.

The sync engine only talks to the remote tracker through this interface.
Implementations raise the typed errors of attachsync.core.errors so that
workers can classify failures without knowing the transport.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from attachsync.core.ranges import ByteRange


@dataclass(frozen=True)
class ObjectMetadata:
    """Description of content being transferred."""

    file_name: str
    size: int
    mime_type: str | None = None
    content_hash: str | None = None


@dataclass(frozen=True)
class ChunkedUpload:
    """Handle of a remote chunked upload.

    Attributes:
        token: Identifier passed back to upload_chunk().
        reference: Remote reference of the object once all chunks land.
    """

    token: str
    reference: str


@dataclass(frozen=True)
class RemoteObject:
    """An attachment linked to a remote work item."""

    reference: str
    file_name: str
    size: int | None = None
    comment: str | None = None
    revision: int | None = None


class RemoteSyncAdapter(ABC):
    """Abstract interface to the remote tracker's attachment API."""

    @abstractmethod
    def upload_object(self, data: bytes, metadata: ObjectMetadata) -> str:
        """Upload content in one request.

        Returns:
            Remote reference of the new object.
        """

    @abstractmethod
    def begin_chunked_upload(self, metadata: ObjectMetadata) -> ChunkedUpload:
        """Open a chunked upload for content of metadata.size bytes."""

    @abstractmethod
    def upload_chunk(self, token: str, byte_range: ByteRange, data: bytes) -> None:
        """Send one chunk of an open chunked upload."""

    @abstractmethod
    def link_object(self, work_item_id: int, reference: str, comment: str | None = None) -> None:
        """Attach an uploaded object to a work item.

        Raises:
            ConflictError: If the work item changed concurrently or the link
                already exists.
        """

    @abstractmethod
    def list_objects(self, work_item_id: int) -> list[RemoteObject]:
        """List attachments currently linked to a work item.

        Raises:
            NotFoundError: If the work item does not exist.
        """

    @abstractmethod
    def fetch_object(self, reference: str) -> bytes:
        """Download the content of an object."""

    @abstractmethod
    def delete_link(self, work_item_id: int, reference: str) -> bool:
        """Remove the link between a work item and an object.

        Returns:
            True if a link was removed, False if none existed.
        """

    def close(self) -> None:
        """Release transport resources."""
