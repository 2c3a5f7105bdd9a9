import logging
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import settings
from core.enrichment import Enricher
from core.notifications.dispatcher import ChannelDispatcher
from core.notifications.email import ResendClient
from core.notifications.manager import NotificationFanout
from core.notifications.sms import TwilioClient
from core.orchestrator import AlertCycle, RunSummary
from core.registry import BuildingRegistryClient
from core.scanner import ListingSearchClient
from db.store import Store

log = logging.getLogger(__name__)

SWEEP_INTERVAL_HOURS = 24


class WatcherJobs:
    def __init__(self, store: Store):
        self.store = store
        self.scheduler = AsyncIOScheduler()
        self.search_client = ListingSearchClient()
        self.registry = BuildingRegistryClient()
        self.sms_client = TwilioClient()
        self.email_client = ResendClient()
        self.cycle = AlertCycle(
            store,
            self.search_client,
            Enricher(store, self.registry),
            NotificationFanout(store),
            [
                ChannelDispatcher.for_sms(store, self.sms_client),
                ChannelDispatcher.for_email(store, self.email_client),
            ],
        )

    async def start(self) -> None:
        self.scheduler.add_job(
            self._cycle_job,
            CronTrigger(minute=settings.check_cron_minutes),
            id="check_alerts",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

        self.scheduler.add_job(
            self._sweep_job,
            IntervalTrigger(hours=SWEEP_INTERVAL_HOURS),
            id="stale_sweep",
            replace_existing=True,
        )

        self.scheduler.start()
        log.info(
            f"Scheduler started (cycle cron minute={settings.check_cron_minutes}, "
            f"sms {'on' if self.sms_client.is_enabled() else 'off'}, "
            f"email {'on' if self.email_client.is_enabled() else 'off'})"
        )

    async def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        await self.search_client.close()
        await self.registry.close()

    async def run_once(self, now: datetime | None = None) -> RunSummary:
        return await self.cycle.run(now)

    async def sweep(self) -> int:
        deactivated = await self.store.mark_stale_listings_inactive()
        log.info(f"Marked {deactivated} stale listings inactive")
        return deactivated

    async def _cycle_job(self) -> None:
        try:
            await self.cycle.run()
        except Exception:
            log.exception("Alert cycle aborted")

    async def _sweep_job(self) -> None:
        try:
            await self.sweep()
        except Exception:
            log.exception("Stale listing sweep failed")
