"""Scheduler for automatic maintenance tasks.

This module provides:
- Hourly sweep of expired upload sessions
- Recovery of jobs orphaned by crashed workers every 5 minutes
- Manual triggers for CLI usage
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

if TYPE_CHECKING:
    from attachsync.sync.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


class MaintenanceScheduler:
    """Runs session expiry and stale job recovery in the background."""

    def __init__(
        self,
        engine: SyncOrchestrator,
        sweep_interval_minutes: int = 60,
        recovery_interval_minutes: int = 5,
    ) -> None:
        """Initialize the scheduler.

        Args:
            engine: Sync engine whose maintenance operations are run.
            sweep_interval_minutes: Interval of the session expiry sweep.
            recovery_interval_minutes: Interval of stale job recovery.
        """
        self._engine = engine
        self._sweep_interval = sweep_interval_minutes
        self._recovery_interval = recovery_interval_minutes
        self._scheduler: BackgroundScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    def _sweep_job(self) -> None:
        """Job function for the scheduled session sweep."""
        logger.info("Starting scheduled upload session sweep")
        try:
            swept = self._engine.sweep_sessions()
            if swept > 0:
                logger.info("Session sweep: %d expired sessions deleted", swept)
            else:
                logger.debug("Session sweep: no expired sessions")
        except Exception:
            logger.exception("Error during scheduled session sweep")

    def _recovery_job(self) -> None:
        """Job function for scheduled stale job recovery."""
        try:
            recovered = self._engine.recover_stale_jobs()
            if recovered > 0:
                logger.info("Stale job recovery: %d jobs requeued", recovered)
        except Exception:
            logger.exception("Error during scheduled stale job recovery")

    def start(self) -> None:
        """Start the scheduler."""
        if self._scheduler is not None:
            return  # Already running

        self._scheduler = BackgroundScheduler()
        self._scheduler.add_job(
            self._sweep_job,
            trigger=IntervalTrigger(minutes=self._sweep_interval),
            id="session_sweep",
            name="Upload session expiry sweep",
            replace_existing=True,
        )
        self._scheduler.add_job(
            self._recovery_job,
            trigger=IntervalTrigger(minutes=self._recovery_interval),
            id="stale_job_recovery",
            name="Stale job recovery",
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(
            "Maintenance scheduler started (sweep every %d min, recovery every %d min)",
            self._sweep_interval,
            self._recovery_interval,
        )

    def stop(self) -> None:
        """Stop the scheduler."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Maintenance scheduler stopped")

    def sweep_now(self) -> int:
        """Run the session sweep immediately (manual trigger).

        Returns:
            Number of sessions deleted.
        """
        return self._engine.sweep_sessions()

    def recover_now(self) -> int:
        """Run stale job recovery immediately (manual trigger).

        Returns:
            Number of jobs requeued.
        """
        return self._engine.recover_stale_jobs()
