import logging
import time
import traceback
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from core.batching import batch_bounds, reconcile_batches
from core.enrichment import Enricher
from core.errors import UpstreamError
from core.filter import filter_listings
from core.notifications.dispatcher import ChannelDispatcher, DispatchStats
from core.notifications.manager import NotificationFanout
from core.scanner import ListingSearchClient
from core.schedule import ScheduleGate
from db.models import Batch, Channel, Criterion, Listing, RunStatus

if TYPE_CHECKING:
    from db.store import Store

log = logging.getLogger(__name__)

JOB_NAME = "check-alerts"


@dataclass
class CriterionOutcome:
    criterion_id: int
    stage: str = "pending"
    matched: int = 0
    new_listings: int = 0
    notifications_created: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class RunSummary:
    run_id: int
    status: RunStatus = RunStatus.STARTED
    criteria_processed: int = 0
    batches_fetched: int = 0
    batches_skipped: int = 0
    batches_failed: int = 0
    listings_found: int = 0
    new_listings: int = 0
    notifications_created: int = 0
    sms_sent: int = 0
    sms_failed: int = 0
    email_sent: int = 0
    email_failed: int = 0
    duration_ms: int = 0
    error: str | None = None
    outcomes: list[CriterionOutcome] = field(default_factory=list)

    def add_dispatch(self, stats: DispatchStats) -> None:
        if stats.channel == Channel.SMS:
            self.sms_sent += stats.sent
            self.sms_failed += stats.failed
        elif stats.channel == Channel.EMAIL:
            self.email_sent += stats.sent
            self.email_failed += stats.failed

    def counts(self) -> dict[str, int]:
        return {
            "criteria_processed": self.criteria_processed,
            "batches_fetched": self.batches_fetched,
            "listings_found": self.listings_found,
            "new_listings": self.new_listings,
            "notifications_created": self.notifications_created,
            "sms_sent": self.sms_sent,
            "sms_failed": self.sms_failed,
            "email_sent": self.email_sent,
            "email_failed": self.email_failed,
        }


class AlertCycle:
    """One pass over every active batch, followed by queue dispatch.

    Batches are regrouped from the active criteria at the start of each
    run, so criteria changed since the last run are fetched with bounds
    that cover them.

    Failures are isolated per batch and per criterion. Only errors while
    writing the run log itself propagate to the caller.
    """

    def __init__(
        self,
        store: "Store",
        search_client: ListingSearchClient,
        enricher: Enricher | None,
        fanout: NotificationFanout,
        dispatchers: list[ChannelDispatcher],
        gate: ScheduleGate | None = None,
    ):
        self.store = store
        self.search_client = search_client
        self.enricher = enricher
        self.fanout = fanout
        self.dispatchers = dispatchers
        self.gate = gate or ScheduleGate(store)

    async def run(self, now: datetime | None = None) -> RunSummary:
        now = now or datetime.utcnow()
        started = time.monotonic()
        run_id = await self.store.start_run(JOB_NAME, now)
        summary = RunSummary(run_id=run_id)
        log.info(f"Starting run #{run_id} at {now.isoformat(timespec='minutes')}")

        try:
            try:
                await reconcile_batches(self.store)
            except Exception:
                log.exception("Batch reconciliation failed, using existing batches")

            batches = await self.store.get_active_batches()
            for batch in batches:
                await self._process_batch(batch, now, summary)

            for dispatcher in self.dispatchers:
                try:
                    summary.add_dispatch(await dispatcher.drain(now))
                except Exception:
                    log.exception(f"Dispatch for {dispatcher.client.channel.value} failed")
        except Exception as e:
            summary.status = RunStatus.FAILED
            summary.error = str(e)
            summary.duration_ms = int((time.monotonic() - started) * 1000)
            log.exception(f"Run #{run_id} failed")
            await self.store.finish_run(
                run_id,
                RunStatus.FAILED,
                duration_ms=summary.duration_ms,
                error_message=str(e),
                error_detail=traceback.format_exc(),
                **summary.counts(),
            )
            return summary

        summary.status = RunStatus.COMPLETED
        summary.duration_ms = int((time.monotonic() - started) * 1000)
        await self.store.finish_run(
            run_id, RunStatus.COMPLETED, duration_ms=summary.duration_ms, **summary.counts()
        )
        log.info(
            f"Run #{run_id} completed in {summary.duration_ms}ms: "
            f"{summary.batches_fetched} batches, {summary.criteria_processed} criteria, "
            f"{summary.new_listings} new listings, {summary.notifications_created} notifications"
        )
        return summary

    async def _process_batch(self, batch: Batch, now: datetime, summary: RunSummary) -> None:
        tag = batch.criteria_hash[:8]
        try:
            members = await self.store.get_batch_criteria(batch.id)  # type: ignore[arg-type]
        except Exception:
            log.exception(f"Batch {tag}: failed to load members")
            summary.batches_failed += 1
            return

        due: list[Criterion] = []
        for criterion in members:
            try:
                decision = await self.gate.check(criterion, now)
            except Exception:
                log.exception(f"Criterion #{criterion.id}: schedule check failed")
                continue
            if decision.should_check:
                due.append(criterion)
            else:
                log.debug(f"Criterion #{criterion.id} not due: {decision.reason}")

        if not due:
            log.debug(f"Batch {tag}: no member due, not fetched")
            summary.batches_skipped += 1
            return

        try:
            raw = await self.search_client.fetch_batch(batch_bounds(batch))
        except UpstreamError as e:
            log.error(f"Batch {tag}: upstream fetch failed: {e}")
            summary.batches_failed += 1
            return
        except Exception:
            log.exception(f"Batch {tag}: fetch failed")
            summary.batches_failed += 1
            return

        summary.batches_fetched += 1
        summary.listings_found += len(raw)

        try:
            listings = await self.store.upsert_listings(raw, now)
        except Exception:
            log.exception(f"Batch {tag}: failed to store listings")
            summary.batches_failed += 1
            return

        if self.enricher and listings:
            try:
                await self.enricher.enrich(listings, now)
            except Exception:
                log.exception(f"Batch {tag}: enrichment failed, continuing unenriched")

        for criterion in due:
            outcome = await self.process_criterion(criterion, listings, now)
            summary.outcomes.append(outcome)
            summary.criteria_processed += 1
            summary.new_listings += outcome.new_listings
            summary.notifications_created += outcome.notifications_created

        try:
            await self.store.mark_batch_fetched(batch.id, now)  # type: ignore[arg-type]
        except Exception:
            log.exception(f"Batch {tag}: failed to record fetch time")

    async def process_criterion(
        self, criterion: Criterion, listings: list[Listing], now: datetime
    ) -> CriterionOutcome:
        """Match, deduplicate and queue notifications for one criterion.

        Steps run in order (notifications, seen records, last_checked) and
        the first failure stops the rest, so an unsent listing is never
        marked seen and a failed criterion is retried next window.
        """
        outcome = CriterionOutcome(criterion_id=criterion.id)  # type: ignore[arg-type]
        try:
            outcome.stage = "match"
            matched = filter_listings(listings, criterion)
            outcome.matched = len(matched)

            outcome.stage = "dedup"
            new = await self.store.filter_new_listings(
                criterion.user_id, criterion.id, matched  # type: ignore[arg-type]
            )
            outcome.new_listings = len(new)

            if new:
                outcome.stage = "notify"
                user = await self.store.get_user(criterion.user_id)
                result = await self.fanout.fanout(criterion, user, new)
                outcome.notifications_created = result.created

                outcome.stage = "mark_seen"
                await self.store.mark_listings_seen(
                    criterion.user_id,
                    criterion.id,  # type: ignore[arg-type]
                    [listing.id for listing in new],  # type: ignore[misc]
                )

            outcome.stage = "advance"
            await self.store.set_last_checked(criterion.id, now)  # type: ignore[arg-type]
            outcome.stage = "done"
        except Exception as e:
            outcome.error = str(e) or type(e).__name__
            log.exception(f"Criterion #{criterion.id} failed at {outcome.stage}")
            return outcome

        if outcome.new_listings:
            log.info(
                f"Criterion #{criterion.id}: {outcome.matched} matched, "
                f"{outcome.new_listings} new, {outcome.notifications_created} queued"
            )
        return outcome
