import logging
from collections.abc import Awaitable, Callable
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from iptv_gateway.config import CustomSettings
from iptv_gateway.utils.logging_helpers import log_refresh_summary


logger = logging.getLogger(__name__)

EPG_JOB_ID = "epg_refresh"
EPG_STARTUP_JOB_ID = "epg_refresh_startup"
CATALOG_JOB_ID = "catalog_refresh"
CATALOG_BOOT_JOB_ID = "catalog_refresh_boot"

RefreshFunc = Callable[[], Awaitable[dict]]


class PipelineScheduler:
    """Cron-driven EPG and catalog refresh jobs running inside the event loop"""

    def __init__(self, settings: CustomSettings, epg_refresh: RefreshFunc, catalog_refresh: RefreshFunc):
        self.settings = settings
        self.epg_refresh = epg_refresh
        self.catalog_refresh = catalog_refresh
        self.scheduler: AsyncIOScheduler | None = None

    async def _epg_job(self) -> None:
        """Background job that refreshes the EPG index"""
        logger.info("Scheduled EPG refresh triggered")
        try:
            result = await self.epg_refresh()
            log_refresh_summary(logger, "EPG refresh", result)
        except Exception as e:
            logger.error(f"Exception in scheduled EPG refresh: {e}", exc_info=True)

    async def _catalog_job(self) -> None:
        """Background job that refreshes every country catalog"""
        logger.info("Scheduled catalog refresh triggered")
        try:
            result = await self.catalog_refresh()
            log_refresh_summary(logger, "Catalog refresh", result)
        except Exception as e:
            logger.error(f"Exception in scheduled catalog refresh: {e}", exc_info=True)

    def start(self) -> None:
        """Start the scheduler with the configured refresh jobs"""
        if self.scheduler and self.scheduler.running:
            logger.warning("Scheduler already running")
            return

        self.scheduler = AsyncIOScheduler(timezone=self.settings.scheduler_timezone)
        job_defaults = {
            "max_instances": 1,
            "coalesce": True,
            "misfire_grace_time": self.settings.scheduler_misfire_grace_sec,
        }

        if self.settings.epg_enabled:
            self.scheduler.add_job(
                self._epg_job,
                trigger=CronTrigger.from_crontab(self.settings.epg_refresh_cron, timezone=self.settings.scheduler_timezone),
                id=EPG_JOB_ID,
                **job_defaults,
            )
            # one immediate run so listings get now/next without waiting for the first cron tick
            self.scheduler.add_job(self._epg_job, id=EPG_STARTUP_JOB_ID, max_instances=1)

        if self.settings.catalog_schedule_refresh:
            self.scheduler.add_job(
                self._catalog_job,
                trigger=CronTrigger.from_crontab(
                    self.settings.catalog_refresh_cron, timezone=self.settings.scheduler_timezone
                ),
                id=CATALOG_JOB_ID,
                **job_defaults,
            )
        if self.settings.catalog_boot_refresh:
            self.scheduler.add_job(self._catalog_job, id=CATALOG_BOOT_JOB_ID, max_instances=1)

        self.scheduler.start()
        next_epg = self.get_next_run_time(EPG_JOB_ID)
        next_catalog = self.get_next_run_time(CATALOG_JOB_ID)
        logger.info(
            "Scheduler started. Next EPG refresh: %s, next catalog refresh: %s",
            next_epg.isoformat() if next_epg else "not scheduled",
            next_catalog.isoformat() if next_catalog else "not scheduled",
        )

    def shutdown(self) -> None:
        """Shutdown the scheduler without waiting for running jobs"""
        if self.scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
        self.scheduler = None

    def is_running(self) -> bool:
        return bool(self.scheduler and self.scheduler.running)

    def get_next_run_time(self, job_id: str = EPG_JOB_ID) -> datetime | None:
        """Get next scheduled run time of a job"""
        if not self.scheduler:
            return None
        job = self.scheduler.get_job(job_id)
        return job.next_run_time if job else None
