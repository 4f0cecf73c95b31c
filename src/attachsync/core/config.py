"""Configuration for the attachment sync engine.

SyncConfig holds every tunable of the engine. Values come from keyword
arguments (tests, embedding) or from ATTACHSYNC_* / AZDO_* environment
variables via SyncConfig.from_env().
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from attachsync.core.types import DedupScope

DEFAULT_CHUNK_SIZE = 5 * 1024 * 1024  # 5 MB
DEFAULT_MAX_FILE_SIZE = 500 * 1024 * 1024  # 500 MB


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    return float(value) if value else default


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class SyncConfig:
    """Configuration for the sync engine and its remote tracker.

    Attributes:
        db_path: SQLite metadata store file.
        storage_path: Directory for staged chunks and downloaded content.
        log_path: Server log file.
        org_url: Tracker collection/organization URL.
        project: Tracker project name.
        pat: Personal access token used as the remote credential.
        api_version: Tracker REST API version.
        request_timeout: Timeout in seconds for every remote call.
        chunk_size: Default chunk size for upload sessions.
        single_upload_threshold: Files larger than this use a chunked session.
        max_file_size: Largest accepted attachment.
        session_ttl_hours: Lifetime of an upload session.
        dedup_scope: "work_item" or "global".
        max_retries: Retry budget of a job.
        backoff_base: Base retry delay in seconds.
        backoff_max: Cap on the retry delay.
        rate_limit_multiplier: Extra factor applied to rate-limit delays.
        rate_limit_max: Cap on rate-limit delays.
        default_priority: Priority of API-initiated jobs.
        webhook_priority: Priority of webhook-initiated jobs.
        worker_count: Threads in the worker pool.
        poll_interval: Idle wait between queue polls.
        stale_job_timeout: Seconds before a PROCESSING job is presumed orphaned.
        run_workers: Start the worker pool and scheduler with the HTTP app.
        api_key: Optional key required on the administrative API.
    """

    db_path: Path = Path("attachsync.db")
    storage_path: Path = Path("attachments")
    log_path: Path = Path("attachsync-server.log")
    org_url: str = ""
    project: str = ""
    pat: str = ""
    api_version: str = "5.1"
    request_timeout: float = 60.0
    chunk_size: int = DEFAULT_CHUNK_SIZE
    single_upload_threshold: int = DEFAULT_CHUNK_SIZE
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    session_ttl_hours: int = 24
    dedup_scope: DedupScope = DedupScope.WORK_ITEM
    max_retries: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 300.0
    rate_limit_multiplier: float = 4.0
    rate_limit_max: float = 900.0
    default_priority: int = 5
    webhook_priority: int = 3
    worker_count: int = 4
    poll_interval: float = 1.0
    stale_job_timeout: float = 900.0
    run_workers: bool = True
    api_key: str | None = None

    def __post_init__(self) -> None:
        """Normalise paths, URLs and enums."""
        self.db_path = Path(self.db_path)
        self.storage_path = Path(self.storage_path)
        self.log_path = Path(self.log_path)
        self.org_url = self.org_url.rstrip("/")
        self.dedup_scope = DedupScope(self.dedup_scope)
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be > 0")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")

    @property
    def remote_configured(self) -> bool:
        """Check if enough tracker settings exist to build an adapter."""
        return bool(self.org_url and self.project)

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Build configuration from environment variables."""
        chunk_size = _env_int("ATTACHSYNC_CHUNK_SIZE", DEFAULT_CHUNK_SIZE)
        return cls(
            db_path=Path(os.environ.get("ATTACHSYNC_DB_PATH", "attachsync.db")),
            storage_path=Path(os.environ.get("ATTACHSYNC_STORAGE_PATH", "attachments")),
            log_path=Path(os.environ.get("ATTACHSYNC_LOG_PATH", "attachsync-server.log")),
            org_url=os.environ.get("AZDO_ORG_URL", ""),
            project=os.environ.get("AZDO_PROJECT", ""),
            pat=os.environ.get("AZDO_PAT", ""),
            api_version=os.environ.get("ATTACHSYNC_API_VERSION", "5.1"),
            request_timeout=_env_float("ATTACHSYNC_REQUEST_TIMEOUT", 60.0),
            chunk_size=chunk_size,
            single_upload_threshold=_env_int("ATTACHSYNC_SINGLE_UPLOAD_THRESHOLD", chunk_size),
            max_file_size=_env_int("ATTACHSYNC_MAX_FILE_SIZE", DEFAULT_MAX_FILE_SIZE),
            session_ttl_hours=_env_int("ATTACHSYNC_SESSION_TTL_HOURS", 24),
            dedup_scope=DedupScope(os.environ.get("ATTACHSYNC_DEDUP_SCOPE", "work_item")),
            max_retries=_env_int("ATTACHSYNC_MAX_RETRIES", 3),
            backoff_base=_env_float("ATTACHSYNC_RETRY_BACKOFF", 1.0),
            backoff_max=_env_float("ATTACHSYNC_RETRY_BACKOFF_MAX", 300.0),
            rate_limit_multiplier=_env_float("ATTACHSYNC_RATE_LIMIT_MULTIPLIER", 4.0),
            rate_limit_max=_env_float("ATTACHSYNC_RATE_LIMIT_BACKOFF_MAX", 900.0),
            worker_count=_env_int("ATTACHSYNC_WORKERS", 4),
            poll_interval=_env_float("ATTACHSYNC_POLL_INTERVAL", 1.0),
            stale_job_timeout=_env_float("ATTACHSYNC_STALE_JOB_TIMEOUT", 900.0),
            run_workers=_env_bool("ATTACHSYNC_RUN_WORKERS", True),
            api_key=os.environ.get("ATTACHSYNC_API_KEY") or None,
        )
