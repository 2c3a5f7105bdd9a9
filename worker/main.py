import argparse
import asyncio
import logging
import signal
from datetime import datetime
from logging.handlers import RotatingFileHandler

from config import settings
from core.batching import reconcile_batches
from db.store import Store
from worker.jobs import WatcherJobs

log_format = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

log = logging.getLogger(__name__)


def setup_logging() -> None:
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=log_level, format=log_format)

    settings.log_dir.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        settings.log_dir / "rentwatch.log",
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setFormatter(logging.Formatter(log_format))
    file_handler.setLevel(log_level)
    logging.getLogger().addHandler(file_handler)


async def run_forever(store: Store) -> None:
    jobs = WatcherJobs(store)
    await jobs.start()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    try:
        await stop.wait()
    finally:
        await jobs.stop()
        log.info("Worker stopped")


async def run_once(store: Store, now: datetime | None) -> int:
    jobs = WatcherJobs(store)
    try:
        summary = await jobs.run_once(now)
    finally:
        await jobs.stop()

    print(f"Run #{summary.run_id}: {summary.status.value} in {summary.duration_ms}ms")
    print(
        f"  batches fetched {summary.batches_fetched}, skipped {summary.batches_skipped}, "
        f"failed {summary.batches_failed}"
    )
    print(
        f"  criteria {summary.criteria_processed}, listings {summary.listings_found}, "
        f"new {summary.new_listings}, notifications {summary.notifications_created}"
    )
    print(
        f"  sms {summary.sms_sent} sent / {summary.sms_failed} failed, "
        f"email {summary.email_sent} sent / {summary.email_failed} failed"
    )
    for outcome in summary.outcomes:
        if not outcome.ok:
            print(f"  criterion #{outcome.criterion_id} failed at {outcome.stage}: {outcome.error}")
    return 0 if summary.error is None else 1


async def print_stats(store: Store, limit: int) -> int:
    stats = await store.get_run_stats()
    print(f"Runs: {stats['total_runs']} (success {stats['success_rate']:.1f}%)")
    print(f"Average duration: {stats['average_duration_ms']}ms")
    print(
        f"Totals: {stats['criteria_processed']} criteria, {stats['listings_found']} listings, "
        f"{stats['notifications_created']} notifications"
    )

    recent = await store.get_recent_listings(hours=24)
    print(f"New listings in the last 24h: {len(recent)}")

    enrichment = await store.get_enrichment_stats()
    print(
        f"Enrichment: {enrichment['enriched_listings']}/{enrichment['total_listings']} listings "
        f"({enrichment['coverage_pct']:.1f}%)"
    )

    for failure in stats["recent_failures"]:
        print(f"  failed {failure['started_at']:%Y-%m-%d %H:%M}: {failure['error']}")

    print("Recent runs:")
    for run in await store.get_recent_runs(limit):
        print(
            f"  #{run.id} {run.started_at:%Y-%m-%d %H:%M} {run.status.value:<9} "
            f"{run.duration_ms or 0}ms new={run.new_listings} notified={run.notifications_created}"
        )
    return 0


async def dispatch(args: argparse.Namespace) -> int:
    store = Store(args.db) if args.db else Store()
    await store.connect()
    log.info(f"Database connected ({store.db_path})")
    try:
        if args.cmd == "run":
            await run_forever(store)
            return 0
        if args.cmd == "once":
            now = datetime.fromisoformat(args.now) if args.now else None
            return await run_once(store, now)
        if args.cmd == "reconcile":
            result = await reconcile_batches(store)
            print(
                f"{result.batches} batches ({result.created} new, {result.batches_deleted} deleted), "
                f"{result.memberships_rewritten} memberships rewritten"
            )
            return 0
        if args.cmd == "sweep":
            deactivated = await store.mark_stale_listings_inactive(args.days)
            print(f"Marked {deactivated} stale listings inactive")
            return 0
        if args.cmd == "stats":
            return await print_stats(store, args.limit)
        return 2
    finally:
        await store.close()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="rentwatch")
    parser.add_argument("--db", default=None, help="SQLite DB path (default from settings)")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("run", help="Start the scheduler and run until interrupted")

    p_once = sub.add_parser("once", help="Run one alert cycle now")
    p_once.add_argument("--now", default=None, help="Override current time (ISO8601, UTC)")

    sub.add_parser("reconcile", help="Regroup active criteria into batches")

    p_sweep = sub.add_parser("sweep", help="Deactivate listings not seen recently")
    p_sweep.add_argument("--days", type=int, default=settings.stale_listing_days)

    p_stats = sub.add_parser("stats", help="Show run history and aggregates")
    p_stats.add_argument("--limit", type=int, default=10)

    args = parser.parse_args(argv)
    setup_logging()
    return asyncio.run(dispatch(args))


if __name__ == "__main__":
    raise SystemExit(main())
