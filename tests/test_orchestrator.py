import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from datetime import datetime

from core.batching import covers, reconcile_batches
from core.errors import UpstreamError
from core.notifications import DeliveryResult, NotificationClient
from core.notifications.dispatcher import ChannelDispatcher
from core.notifications.email import is_valid_email
from core.notifications.manager import NotificationFanout
from core.orchestrator import AlertCycle
from db.models import Channel, NotificationStatus, RunStatus
from factories import make_criterion, make_raw

NOW = datetime(2024, 3, 1, 10, 0)


class FakeSearch:
    def __init__(self, by_area: dict, failing: set | None = None):
        self.by_area = by_area
        self.failing = failing or set()
        self.calls = []
        self.fetched = []

    async def fetch_batch(self, criteria):
        self.calls.append(criteria.areas)
        self.fetched.append(criteria)
        if criteria.areas in self.failing:
            raise UpstreamError("upstream returned 500", status_code=500)
        return self.by_area.get(criteria.areas, [])


class FakeEmail(NotificationClient):
    channel = Channel.EMAIL

    def __init__(self):
        super().__init__(enabled=True)
        self.sent = []

    def validate_recipient(self, recipient):
        return is_valid_email(recipient)

    async def send(self, recipient, subject, body):
        self.sent.append(recipient)
        return DeliveryResult(True, message_id=f"email-{len(self.sent)}")


class BrokenFanout(NotificationFanout):
    def __init__(self, store, broken_criterion: int):
        super().__init__(store)
        self.broken_criterion = broken_criterion

    async def fanout(self, criterion, user, listings):
        if criterion.id == self.broken_criterion:
            raise RuntimeError("insert failed")
        return await super().fanout(criterion, user, listings)


def build_cycle(store, search, fanout=None, email=None):
    email = email or FakeEmail()
    return AlertCycle(
        store,
        search,
        None,
        fanout or NotificationFanout(store),
        [ChannelDispatcher(store, email)],
    )


async def seen_ids(store, user_id, criterion_id, listings):
    new = await store.filter_new_listings(user_id, criterion_id, listings)
    new_ids = {item.id for item in new}
    return {item.id for item in listings if item.id not in new_ids}


class TestEndToEnd:
    def test_shared_batch_fans_out_per_criterion(self, with_store):
        search = FakeSearch(
            {
                "soho": [
                    make_raw("1", price=2200),
                    make_raw("2", price=2500),
                    make_raw("3", price=3200),
                ]
            }
        )
        email = FakeEmail()

        async def scenario(store):
            await store.upsert_user("user_a", "a@example.com", None)
            await store.upsert_user("user_b", "b@example.com", None)
            a = await store.add_criterion(
                make_criterion(user_id="user_a", areas="soho", min_price=2000, max_price=2600)
            )
            b = await store.add_criterion(
                make_criterion(user_id="user_b", areas="soho", min_price=3000, max_price=3500)
            )
            await reconcile_batches(store)

            summary = await build_cycle(store, search, email=email).run(NOW)

            listings = await store.upsert_listings(search.by_area["soho"], NOW)
            return (
                summary,
                listings,
                await store.get_notifications_for_criterion(a),
                await store.get_notifications_for_criterion(b),
                await store.get_criterion(a),
                await store.get_criterion(b),
                await seen_ids(store, "user_a", a, listings),
                await seen_ids(store, "user_b", b, listings),
                await store.get_run(summary.run_id),
            )

        (summary, listings, notes_a, notes_b, crit_a, crit_b, seen_a, seen_b, run) = with_store(scenario)
        by_source = {item.source_id: item.id for item in listings}

        assert search.calls == ["soho"]
        assert len(notes_a) == 2
        assert len(notes_b) == 1
        assert {n.listing_id for n in notes_a} == {by_source["1"], by_source["2"]}
        assert {n.listing_id for n in notes_b} == {by_source["3"]}
        assert all(n.status == NotificationStatus.SENT for n in notes_a + notes_b)
        assert crit_a.last_checked == NOW
        assert crit_b.last_checked == NOW
        assert seen_a == {by_source["1"], by_source["2"]}
        assert seen_b == {by_source["3"]}

        assert summary.status == RunStatus.COMPLETED
        assert run.status == RunStatus.COMPLETED
        assert run.batches_fetched == 1
        assert run.listings_found == 3
        assert run.new_listings == 3
        assert run.notifications_created == 3
        assert run.email_sent == 3
        assert sorted(email.sent) == ["a@example.com", "a@example.com", "b@example.com"]

    def test_second_run_in_next_window_sends_nothing_new(self, with_store):
        search = FakeSearch({"soho": [make_raw("1", price=2200)]})

        async def scenario(store):
            await store.upsert_user("user_1", "a@example.com", None)
            await store.add_criterion(make_criterion(areas="soho"))
            await reconcile_batches(store)
            cycle = build_cycle(store, search)
            await cycle.run(NOW)
            return await cycle.run(NOW.replace(hour=11))

        second = with_store(scenario)
        assert second.batches_fetched == 1
        assert second.new_listings == 0
        assert second.notifications_created == 0

    def test_batch_not_fetched_when_no_member_due(self, with_store):
        search = FakeSearch({"soho": [make_raw("1")]})

        async def scenario(store):
            await store.add_criterion(make_criterion(areas="soho"))
            await reconcile_batches(store)
            return await build_cycle(store, search).run(NOW.replace(minute=10))

        summary = with_store(scenario)
        assert search.calls == []
        assert summary.batches_skipped == 1
        assert summary.status == RunStatus.COMPLETED


class TestCriterionChanges:
    def test_widened_criterion_fetched_with_new_bounds(self, with_store):
        search = FakeSearch({"soho": [make_raw("1", price=4200)]})

        async def scenario(store):
            await store.upsert_user("user_1", "a@example.com", None)
            cid = await store.add_criterion(make_criterion(areas="soho", max_price=2500))
            await reconcile_batches(store)
            await store.update_criterion(cid, max_price=5000)

            await build_cycle(store, search).run(NOW)
            return await store.get_criterion(cid), await store.get_notifications_for_criterion(cid)

        criterion, notes = with_store(scenario)
        assert search.fetched[0].max_price == 5000
        assert covers(search.fetched[0], criterion)
        assert len(notes) == 1
        assert criterion.last_checked == NOW

    def test_criterion_added_after_reconcile_is_checked(self, with_store):
        search = FakeSearch({"soho": [make_raw("s1")], "chelsea": [make_raw("c1")]})

        async def scenario(store):
            await store.add_criterion(make_criterion(areas="soho"))
            await reconcile_batches(store)
            added = await store.add_criterion(make_criterion(areas="chelsea"))

            await build_cycle(store, search).run(NOW)
            return await store.get_criterion(added)

        criterion = with_store(scenario)
        assert sorted(search.calls) == ["chelsea", "soho"]
        assert criterion.last_checked == NOW

    def test_deleted_criterion_batch_not_fetched(self, with_store):
        search = FakeSearch({"soho": [make_raw("s1")], "chelsea": [make_raw("c1")]})

        async def scenario(store):
            soho = await store.add_criterion(make_criterion(areas="soho"))
            await store.add_criterion(make_criterion(areas="chelsea"))
            await reconcile_batches(store)
            await store.delete_criterion(soho)

            return await build_cycle(store, search).run(NOW)

        summary = with_store(scenario)
        assert search.calls == ["chelsea"]
        assert summary.batches_fetched == 1

    def test_reconcile_failure_keeps_existing_batches(self, with_store):
        search = FakeSearch({"soho": [make_raw("s1")]})

        async def scenario(store):
            cid = await store.add_criterion(make_criterion(areas="soho"))
            await reconcile_batches(store)

            async def boom():
                raise RuntimeError("database is locked")

            store.get_active_criteria = boom
            summary = await build_cycle(store, search).run(NOW)
            return summary, await store.get_criterion(cid)

        summary, criterion = with_store(scenario)
        assert search.calls == ["soho"]
        assert summary.status == RunStatus.COMPLETED
        assert criterion.last_checked == NOW


class TestIsolation:
    def test_upstream_failure_isolated_to_its_batch(self, with_store):
        search = FakeSearch(
            {
                "chelsea": [make_raw("c1")],
                "harlem": [make_raw("h1"), make_raw("h2")],
                "soho": [make_raw("s1")],
            },
            failing={"soho"},
        )

        async def scenario(store):
            await store.upsert_user("user_1", "a@example.com", None)
            ids = {}
            for area in ("soho", "chelsea", "harlem"):
                ids[area] = await store.add_criterion(make_criterion(areas=area))
            await reconcile_batches(store)

            summary = await build_cycle(store, search).run(NOW)
            checked = {area: (await store.get_criterion(cid)).last_checked for area, cid in ids.items()}
            return summary, checked, await store.get_run(summary.run_id)

        summary, checked, run = with_store(scenario)
        assert sorted(search.calls) == ["chelsea", "harlem", "soho"]
        assert run.status == RunStatus.COMPLETED
        assert run.batches_fetched == 2
        assert run.listings_found == 3
        assert summary.batches_failed == 1
        assert checked["soho"] is None
        assert checked["chelsea"] == NOW
        assert checked["harlem"] == NOW

    def test_failed_criterion_does_not_advance_or_mark_seen(self, with_store):
        search = FakeSearch({"soho": [make_raw("1")]})

        async def scenario(store):
            await store.upsert_user("user_1", "a@example.com", None)
            broken = await store.add_criterion(make_criterion(areas="soho"))
            healthy = await store.add_criterion(make_criterion(areas="soho", name="Second"))
            await reconcile_batches(store)

            cycle = build_cycle(store, search, fanout=BrokenFanout(store, broken))
            summary = await cycle.run(NOW)
            listings = await store.upsert_listings(search.by_area["soho"], NOW)
            return (
                summary,
                broken,
                await store.get_criterion(broken),
                await store.get_criterion(healthy),
                await seen_ids(store, "user_1", broken, listings),
                await seen_ids(store, "user_1", healthy, listings),
            )

        summary, broken, crit_broken, crit_healthy, seen_broken, seen_healthy = with_store(scenario)
        outcome = next(o for o in summary.outcomes if o.criterion_id == broken)
        assert outcome.stage == "notify"
        assert outcome.error == "insert failed"
        assert crit_broken.last_checked is None
        assert seen_broken == set()
        assert crit_healthy.last_checked == NOW
        assert len(seen_healthy) == 1
        assert summary.status == RunStatus.COMPLETED

    def test_unexpected_cycle_error_marks_run_failed(self, with_store):
        async def scenario(store):
            async def boom():
                raise RuntimeError("database is locked")

            store.get_active_batches = boom
            summary = await build_cycle(store, FakeSearch({})).run(NOW)
            return summary, await store.get_run(summary.run_id)

        summary, run = with_store(scenario)
        assert summary.status == RunStatus.FAILED
        assert run.status == RunStatus.FAILED
        assert run.error_message == "database is locked"
        assert "RuntimeError" in run.error_detail
