"""Shared enumerations for attachment sync state."""

from __future__ import annotations

from enum import StrEnum


class AttachmentSource(StrEnum):
    """Where an attachment was first seen."""

    TOOL = "TOOL"
    REMOTE = "REMOTE"


class SyncStatus(StrEnum):
    """Sync state of an attachment record."""

    PENDING = "PENDING"
    SYNCING = "SYNCING"
    SYNCED = "SYNCED"
    FAILED = "FAILED"
    DELETED = "DELETED"


class JobType(StrEnum):
    """Kind of work a sync job performs."""

    UPLOAD = "UPLOAD"
    DOWNLOAD = "DOWNLOAD"
    LINK = "LINK"
    UNLINK = "UNLINK"
    DELETE = "DELETE"


class JobStatus(StrEnum):
    """Lifecycle state of a sync job."""

    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class SessionStatus(StrEnum):
    """Lifecycle state of a chunked upload session."""

    OPEN = "OPEN"
    FAILED = "FAILED"
    COMPLETED = "COMPLETED"


class Severity(StrEnum):
    """Event log severity."""

    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


class EventSource(StrEnum):
    """Component that produced an event log entry."""

    API = "API"
    WEBHOOK = "WEBHOOK"
    WORKER = "WORKER"
    SCHEDULER = "SCHEDULER"


class DedupScope(StrEnum):
    """Granularity of content deduplication."""

    GLOBAL = "global"
    WORK_ITEM = "work_item"


# Default job priority (1 = highest, 10 = lowest)
DEFAULT_PRIORITY = 5
MIN_PRIORITY = 1
MAX_PRIORITY = 10
