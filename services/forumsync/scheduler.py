"""
Background scheduler for forum sync maintenance.

Uses APScheduler to run periodic jobs:
- Delta sync of all active courses for the configured token
- Stuck-sync sweep (syncing for too long → failed)
- Cleanup of old completed/failed sync records

Features:
- Single instance per job
- Graceful shutdown on SIGINT/SIGTERM
- Job status tracking
"""

from __future__ import annotations

import signal
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from .config import SchedulerConfig
from .ed_client import TokenProvider
from .orchestrator import SyncOrchestrator
from .state_store import SyncType

DELTA_SYNC_JOB = "delta-sync"
STUCK_SWEEP_JOB = "stuck-sweep"
CLEANUP_JOB = "cleanup"


@dataclass
class JobStatus:
    """Status of a scheduled job."""
    job_id: str
    last_run: Optional[datetime] = None
    last_result: Any = None
    next_run: Optional[datetime] = None
    error_count: int = 0
    is_running: bool = False


class SyncScheduler:
    """Runs the periodic sync and maintenance jobs for one orchestrator."""

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        token_provider: TokenProvider | Callable[[], str],
        config: Optional[SchedulerConfig] = None,
    ):
        """
        Initialize scheduler.

        Args:
            orchestrator: Orchestrator whose operations the jobs call.
            token_provider: Supplies the Ed token for each delta sync run.
            config: Job intervals.
        """
        self.orchestrator = orchestrator
        self.token_provider = token_provider
        self.config = config or SchedulerConfig()

        self._scheduler = BackgroundScheduler(
            timezone="UTC",
            job_defaults={
                "max_instances": 1,
                "misfire_grace_time": 60,
                "coalesce": True,
            },
        )
        self._job_statuses: dict[str, JobStatus] = {
            job_id: JobStatus(job_id=job_id)
            for job_id in (DELTA_SYNC_JOB, STUCK_SWEEP_JOB, CLEANUP_JOB)
        }
        self._running = False

        logger.info("SyncScheduler initialized")

    def start(self) -> None:
        """Start the scheduler and all jobs."""
        if self._running:
            logger.warning("Scheduler already running")
            return

        if not self.config.enabled:
            logger.info("Scheduler disabled in config, not starting jobs")
            return

        logger.info("Starting scheduler")

        self._add_job(
            DELTA_SYNC_JOB,
            self.run_delta_sync,
            IntervalTrigger(minutes=self.config.delta_sync_interval_minutes),
        )
        self._add_job(
            STUCK_SWEEP_JOB,
            self.run_stuck_sweep,
            IntervalTrigger(minutes=self.config.stuck_sweep_interval_minutes),
        )
        self._add_job(
            CLEANUP_JOB,
            self.run_cleanup,
            IntervalTrigger(hours=self.config.cleanup_interval_hours),
        )

        self._scheduler.start()
        self._refresh_next_runs()
        self._setup_signal_handlers()

        self._running = True
        logger.info(f"Scheduler started with {len(self._job_statuses)} jobs")

    def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if not self._running:
            return

        logger.info("Stopping scheduler")
        self._running = False
        self._scheduler.shutdown(wait=True)
        logger.info("Scheduler stopped")

    def wait(self) -> None:
        """Block until scheduler is stopped."""
        try:
            while self._running:
                time.sleep(1)
        except KeyboardInterrupt:
            self.stop()

    def get_job_statuses(self) -> dict[str, dict[str, Any]]:
        """
        Get status of all scheduled jobs.

        Returns:
            Dict mapping job ID to status info.
        """
        statuses = {}

        for job_id, status in self._job_statuses.items():
            job = self._scheduler.get_job(job_id)

            statuses[job_id] = {
                "job_id": job_id,
                "is_scheduled": job is not None,
                "next_run": str(status.next_run) if status.next_run else None,
                "last_run": str(status.last_run) if status.last_run else None,
                "error_count": status.error_count,
                "is_running": status.is_running,
            }

        return statuses

    # =========================================================================
    # Jobs
    # =========================================================================

    def run_delta_sync(self):
        """Start delta syncs for every active course."""
        return self._run_job(
            DELTA_SYNC_JOB,
            lambda: self.orchestrator.sync_all_active_courses(SyncType.DELTA, self.token_provider()),
        )

    def run_stuck_sweep(self):
        return self._run_job(STUCK_SWEEP_JOB, self.orchestrator.reset_stuck_syncs)

    def run_cleanup(self):
        return self._run_job(CLEANUP_JOB, self.orchestrator.cleanup_completed_syncs)

    # =========================================================================
    # Internal Methods
    # =========================================================================

    def _add_job(self, job_id: str, func: Callable[[], Any], trigger: IntervalTrigger) -> None:
        self._scheduler.add_job(
            func,
            trigger=trigger,
            id=job_id,
            name=job_id,
            replace_existing=True,
        )
        logger.info(f"Scheduled job {job_id} ({trigger})")

    def _run_job(self, job_id: str, func: Callable[[], Any]) -> Any:
        status = self._job_statuses[job_id]

        if status.is_running:
            logger.warning(f"Job {job_id} already running")
            return None

        status.is_running = True
        try:
            logger.info(f"Running job {job_id}")
            result = func()
            status.last_result = result
            return result
        except Exception as e:
            status.error_count += 1
            logger.error(f"Job {job_id} failed: {e}")
            return None
        finally:
            status.is_running = False
            status.last_run = datetime.now(timezone.utc)
            self._refresh_next_runs()

    def _refresh_next_runs(self) -> None:
        for job_id, status in self._job_statuses.items():
            job = self._scheduler.get_job(job_id)
            if job is not None:
                status.next_run = getattr(job, "next_run_time", None)

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        def handler(signum, frame):
            logger.info(f"Received signal {signum}, shutting down")
            self.stop()

        signal.signal(signal.SIGINT, handler)
        signal.signal(signal.SIGTERM, handler)
