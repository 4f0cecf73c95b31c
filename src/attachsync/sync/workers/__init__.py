"""Job handlers and the worker pool."""

from attachsync.sync.workers.base import HandlerContext, JobHandler
from attachsync.sync.workers.delete import DeleteHandler
from attachsync.sync.workers.download import DownloadHandler
from attachsync.sync.workers.links import LinkHandler, UnlinkHandler
from attachsync.sync.workers.pool import PoolState, WorkerPool
from attachsync.sync.workers.upload import UploadHandler

__all__ = [
    "DeleteHandler",
    "DownloadHandler",
    "HandlerContext",
    "JobHandler",
    "LinkHandler",
    "PoolState",
    "UnlinkHandler",
    "UploadHandler",
    "WorkerPool",
]
