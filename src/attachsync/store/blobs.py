"""Blob storage for staged chunks and attachment content.

This module provides:
- Abstract interface for keyed blob storage
- LocalFSBlobStore backed by a directory tree

Keys are slash-separated relative paths such as
``sessions/<session_id>/00003.part`` or ``content/<attachment_id>``.
"""

from __future__ import annotations

import os
import shutil
from abc import ABC, abstractmethod
from collections.abc import Iterator
from pathlib import Path, PurePosixPath


class BlobNotFoundError(Exception):
    """Raised when a blob is not found in storage."""


def session_chunk_key(session_id: str, chunk_index: int) -> str:
    """Key of a staged chunk of an upload session."""
    return f"sessions/{session_id}/{chunk_index:05d}.part"


def session_prefix(session_id: str) -> str:
    """Key prefix holding every staged chunk of a session."""
    return f"sessions/{session_id}"


def staged_upload_key(attachment_id: str) -> str:
    """Key of content waiting for an UPLOAD job."""
    return f"staged/{attachment_id}.bin"


def content_key(attachment_id: str) -> str:
    """Key of downloaded attachment content."""
    return f"content/{attachment_id}"


class BlobStore(ABC):
    """Abstract interface for keyed blob storage."""

    @property
    @abstractmethod
    def location(self) -> str:
        """Return a human-readable description of where blobs are stored."""

    @abstractmethod
    def put(self, key: str, data: bytes) -> None:
        """Store a blob, replacing any existing one.

        Args:
            key: Relative key.
            data: Blob content.
        """

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Retrieve a blob.

        Raises:
            BlobNotFoundError: If the blob doesn't exist.
        """

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check if a blob exists."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete a blob.

        Returns:
            True if the blob was deleted, False if it didn't exist.
        """

    @abstractmethod
    def delete_prefix(self, prefix: str) -> int:
        """Delete every blob under a key prefix.

        Returns:
            Number of blobs deleted.
        """

    def iter_blobs(self, keys: list[str]) -> Iterator[bytes]:
        """Yield blobs in the given key order."""
        for key in keys:
            yield self.get(key)


class LocalFSBlobStore(BlobStore):
    """Local filesystem blob storage."""

    def __init__(self, base_path: Path | str) -> None:
        """Initialize local storage.

        Args:
            base_path: Base directory for blobs.
        """
        self._base_path = Path(base_path).resolve()
        self._base_path.mkdir(parents=True, exist_ok=True)

    @property
    def location(self) -> str:
        """Return the local storage path."""
        return f"Local filesystem: {self._base_path}"

    def _path(self, key: str) -> Path:
        """Resolve a key to a path inside the base directory."""
        parts = PurePosixPath(key).parts
        if not parts or any(part in ("..", "") for part in parts) or key.startswith("/"):
            raise ValueError(f"Invalid blob key: {key!r}")
        return self._base_path.joinpath(*parts)

    def put(self, key: str, data: bytes) -> None:
        """Store a blob via a temporary file so readers never see partial data."""
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_bytes(data)
        os.replace(tmp, path)

    def get(self, key: str) -> bytes:
        """Retrieve a blob."""
        path = self._path(key)
        if not path.is_file():
            raise BlobNotFoundError(f"Blob not found: {key}")
        return path.read_bytes()

    def exists(self, key: str) -> bool:
        """Check if a blob exists."""
        return self._path(key).is_file()

    def delete(self, key: str) -> bool:
        """Delete a blob."""
        path = self._path(key)
        if path.is_file():
            path.unlink()
            return True
        return False

    def delete_prefix(self, prefix: str) -> int:
        """Delete a directory of blobs."""
        path = self._path(prefix)
        if not path.is_dir():
            return 1 if self.delete(prefix) else 0
        count = sum(1 for p in path.rglob("*") if p.is_file())
        shutil.rmtree(path)
        return count
