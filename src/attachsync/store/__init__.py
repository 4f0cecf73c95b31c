"""Store module - Metadata database and blob storage."""

from attachsync.store.blobs import BlobNotFoundError, BlobStore, LocalFSBlobStore
from attachsync.store.database import Database, DuplicateEventError, RecordNotFoundError

__all__ = [
    "BlobNotFoundError",
    "BlobStore",
    "Database",
    "DuplicateEventError",
    "LocalFSBlobStore",
    "RecordNotFoundError",
]
