"""AdSync — Scheduler Jobs.

APScheduler interval jobs that drive the fleet syncs and cache housekeeping.
"""

from typing import Any, Dict, List

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from adsync.cache.cache_manager import CacheManager
from adsync.config import settings
from adsync.core.logging import get_logger
from adsync.models.sync_models import RunStatus
from adsync.sync.engine import SyncEngine

logger = get_logger("scheduler")


class SyncScheduler:
    """Owns the AsyncIOScheduler and publishes its jobs to the engine status."""

    def __init__(self, engine: SyncEngine, cache: CacheManager, enabled: bool | None = None):
        self.engine = engine
        self.cache = cache
        self.enabled = settings.scheduler_enabled if enabled is None else enabled
        self.scheduler = AsyncIOScheduler()

    async def insights_job(self):
        """Refresh trailing insights for every active account."""
        await self._run("insights", self.engine.sync_all_accounts_insights(settings.sync_default_days))

    async def accounts_job(self):
        await self._run("accounts", self.engine.sync_all_accounts())

    async def campaigns_job(self):
        await self._run("campaigns", self.engine.sync_all_campaigns())

    async def cache_cleanup_job(self):
        try:
            removed = await self.cache.cleanup_expired()
            logger.info(f"Scheduled cache cleanup removed {removed} entries")
        except Exception as e:
            logger.error(f"Scheduled cache cleanup failed: {e}")

    async def _run(self, name: str, sync) -> None:
        logger.info(f"Scheduled {name} sync starting...")
        try:
            result = await sync
        except Exception as e:
            logger.error(f"Scheduled {name} sync failed: {e}")
            return
        if result.status == RunStatus.ALREADY_RUNNING:
            logger.info(f"Scheduled {name} sync skipped, one is already running")
            return
        logger.info(
            f"Scheduled {name} sync {result.status.value}. "
            f"Processed: {result.processed}, errors: {result.errors}"
        )

    def jobs(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": job.id,
                "name": job.name,
                "next_run_time": (
                    job.next_run_time.isoformat()
                    if getattr(job, "next_run_time", None)
                    else None
                ),
            }
            for job in self.scheduler.get_jobs()
        ]

    def configure(self) -> None:
        """Register the interval jobs without starting the scheduler."""
        intervals = {
            "insights": (self.insights_job, settings.schedule_insights_hours),
            "accounts": (self.accounts_job, settings.schedule_accounts_hours),
            "campaigns": (self.campaigns_job, settings.schedule_campaigns_hours),
            "cache-cleanup": (self.cache_cleanup_job, settings.schedule_cache_cleanup_hours),
        }
        for job_id, (func, hours) in intervals.items():
            self.scheduler.add_job(
                func,
                "interval",
                hours=hours,
                id=job_id,
                name=f"{job_id} every {hours}h",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=3600,
            )
        self.engine.set_scheduled_jobs(self.jobs)

    def start(self) -> None:
        """Configure and start the scheduler."""
        if not self.enabled:
            logger.info("Scheduler disabled via config")
            return
        self.configure()
        self.scheduler.start()
        logger.info(
            f"Scheduler started. Insights every {settings.schedule_insights_hours}h, "
            f"campaigns every {settings.schedule_campaigns_hours}h, "
            f"accounts every {settings.schedule_accounts_hours}h"
        )

    def stop(self) -> None:
        """Shutdown the scheduler gracefully."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
