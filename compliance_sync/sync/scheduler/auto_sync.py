"""
Auto-sync scheduler.

Starts and runs a bidirectional sync for every license whose auto-sync
interval has elapsed, and resumes running jobs whose queue retries are due.
The trigger (cron, process supervisor, the loop below) is external to the
engine.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from compliance_sync.config.settings import SyncSettings, settings
from compliance_sync.sync.models import SyncDirection
from compliance_sync.sync.orchestrator.sync_orchestrator import ComplianceSyncOrchestrator
from compliance_sync.sync.schemas import SyncJobSnapshot

logger = logging.getLogger(__name__)


class AutoSyncScheduler:
    """
    Periodic driver for licenses due for synchronization.

    Features:
    - Idempotent start (an active job is resumed, not duplicated)
    - Per-license error isolation
    - Retry sweep over every running job, independent of auto-sync flags
    - Optional polling loop with graceful stop
    """

    def __init__(
        self,
        orchestrator: ComplianceSyncOrchestrator,
        sync_settings: Optional[SyncSettings] = None,
        auto_sync: bool = True
    ):
        self.orchestrator = orchestrator
        self.sync_settings = sync_settings or settings.sync
        self.auto_sync = auto_sync
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._stats = {"runs": 0, "jobs_started": 0, "jobs_resumed": 0, "retry_sweeps": 0, "errors": 0}

    @property
    def is_running(self) -> bool:
        return self._running

    async def run_due_licenses(self) -> List[SyncJobSnapshot]:
        """
        Sync every due license once.

        Returns:
            Final snapshots of the jobs that were run
        """
        self._stats["runs"] += 1
        due = self.orchestrator.licenses.get_due_for_sync()
        if due:
            logger.info(f"{len(due)} license(s) due for auto-sync")

        jobs = []
        for license in due:
            try:
                result = self.orchestrator.start_sync(
                    license.license_number,
                    direction=SyncDirection.BIDIRECTIONAL,
                    initiated_by="schedule",
                )
                if result.created:
                    self._stats["jobs_started"] += 1
                    jobs.append(await self.orchestrator.execute_job(result.job.id))
                else:
                    self._stats["jobs_resumed"] += 1
                    jobs.append(await self.orchestrator.resume_job(result.job.id))

            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._stats["errors"] += 1
                logger.error(f"Auto-sync of {license.license_number} failed: {e}")

        return jobs

    async def resume_due_jobs(self) -> List[SyncJobSnapshot]:
        """Drain running jobs whose queue retries are due."""
        self._stats["retry_sweeps"] += 1
        jobs = await self.orchestrator.resume_due_jobs()
        if jobs:
            self._stats["jobs_resumed"] += len(jobs)
            logger.info(f"Resumed {len(jobs)} sync job(s) with due retries")
        return jobs

    async def run_once(self) -> None:
        """One scheduler tick: retry sweep, then auto-sync when enabled."""
        await self.resume_due_jobs()
        if self.auto_sync:
            await self.run_due_licenses()

    async def start(self) -> None:
        """Start the polling loop."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Sync scheduler started (auto-sync {'on' if self.auto_sync else 'off'})")

    async def stop(self) -> None:
        """Stop the polling loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Sync scheduler stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
                await asyncio.sleep(self.sync_settings.processing_interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Sync scheduler loop error: {e}")
                await asyncio.sleep(5)

    def get_stats(self) -> Dict[str, Any]:
        return {**self._stats, "is_running": self._running}
