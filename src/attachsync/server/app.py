"""FastAPI application for the AttachSync server.

This module creates and configures the FastAPI application with:
- Administrative REST API for attachments, upload sessions and jobs
- Webhook receiver for tracker notifications
- Worker pool and maintenance scheduler tied to the app lifespan

Usage:
    uvicorn attachsync.server.app:app_factory --factory --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from attachsync import __version__
from attachsync.core.config import SyncConfig
from attachsync.core.errors import SyncError, classify
from attachsync.remote.azure import AzureDevOpsAdapter
from attachsync.server.api.deps import status_for
from attachsync.server.api.router import router as api_router
from attachsync.server.scheduler import MaintenanceScheduler
from attachsync.sync.orchestrator import SyncOrchestrator

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)


def setup_logging(log_path: Path | None, level: int = logging.INFO) -> None:
    """Configure logging to output to stdout and, optionally, a file.

    Args:
        log_path: Path to the log file (None for stdout only).
        level: Level of the attachsync logger.
    """
    formatter = logging.Formatter(LOG_FORMAT)

    # Root logger for attachsync
    root_logger = logging.getLogger("attachsync")
    root_logger.setLevel(level)
    if root_logger.handlers:
        return  # Already configured

    # Stdout handler
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    root_logger.addHandler(stdout_handler)

    if log_path is None:
        return

    # File handler
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    # Also capture uvicorn logs to file
    for uvicorn_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(uvicorn_name)
        uvicorn_logger.addHandler(file_handler)


async def sync_error_handler(request: Request, exc: SyncError) -> JSONResponse:
    """Report engine errors with a status code derived from their category."""
    return JSONResponse(
        status_code=status_for(exc),
        content={"detail": str(exc), "category": classify(exc).value},
    )


def create_app(
    engine: SyncOrchestrator,
    scheduler: MaintenanceScheduler | None = None,
) -> FastAPI:
    """Create FastAPI application around a sync engine.

    Workers and the scheduler are started by the lifespan handler only
    when engine.config.run_workers is set.

    Args:
        engine: Sync engine instance.
        scheduler: Optional maintenance scheduler (created when omitted).

    Returns:
        Configured FastAPI application.
    """
    scheduler = scheduler or MaintenanceScheduler(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler for startup/shutdown."""
        config = engine.config
        logger.info("=" * 60)
        logger.info("AttachSync Server Starting")
        logger.info("=" * 60)
        logger.info("  Database: %s", engine.db.path)
        logger.info("  Storage:  %s", engine.blobs.location)
        logger.info("  Remote:   %s", config.org_url or "not configured")
        logger.info("  Workers:  %s", config.worker_count if config.run_workers else "disabled")
        logger.info("=" * 60)

        if config.run_workers:
            engine.start()
            scheduler.start()

        yield

        # Shutdown
        logger.info("AttachSync Server shutting down")
        scheduler.stop()
        engine.stop()

    application = FastAPI(
        title="AttachSync Server",
        description="Work item attachment synchronization",
        version=__version__,
        lifespan=lifespan,
    )

    application.state.engine = engine
    application.state.scheduler = scheduler

    application.add_exception_handler(SyncError, sync_error_handler)
    application.include_router(api_router)

    return application


def build_engine(config: SyncConfig) -> SyncOrchestrator:
    """Build a sync engine talking to Azure DevOps from configuration."""
    adapter = AzureDevOpsAdapter(
        config.org_url,
        config.project,
        lambda: config.pat,
        api_version=config.api_version,
        timeout=config.request_timeout,
    )
    return SyncOrchestrator(config, adapter)


def app_factory() -> FastAPI:
    """Factory function for uvicorn --factory mode."""
    config = SyncConfig.from_env()
    setup_logging(config.log_path)
    return create_app(build_engine(config))
