"""Remote module - Adapter interface and the Azure DevOps implementation."""

from attachsync.remote.adapter import (
    ChunkedUpload,
    ObjectMetadata,
    RemoteObject,
    RemoteSyncAdapter,
)
from attachsync.remote.azure import AzureDevOpsAdapter

__all__ = [
    "AzureDevOpsAdapter",
    "ChunkedUpload",
    "ObjectMetadata",
    "RemoteObject",
    "RemoteSyncAdapter",
]
