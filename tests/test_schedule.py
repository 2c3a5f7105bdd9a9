import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from datetime import datetime, timedelta

from core.schedule import FREE_TIER, ScheduleGate, Tier, evaluate, resolve_effective_tier
from factories import make_criterion


def at(hour: int, minute: int, second: int = 0) -> datetime:
    return datetime(2024, 3, 1, hour, minute, second)


class TestEvaluate:
    def test_fifteen_minute_boundary_opens(self):
        decision = evaluate(Tier.FIFTEEN_MIN, at(9, 47), at(10, 15))
        assert decision.should_check

    def test_off_boundary_closed(self):
        assert not evaluate(Tier.FIFTEEN_MIN, at(9, 47), at(10, 10)).should_check

    def test_never_checked_opens_on_boundary(self):
        assert evaluate(Tier.THIRTY_MIN, None, at(10, 30)).should_check
        assert not evaluate(Tier.THIRTY_MIN, None, at(10, 15)).should_check

    def test_no_double_check_within_window(self):
        first = at(10, 0, 5)
        assert evaluate(Tier.FIFTEEN_MIN, at(9, 45), first).should_check
        assert not evaluate(Tier.FIFTEEN_MIN, first, at(10, 0, 45)).should_check

    def test_slow_previous_run_does_not_skip_window(self):
        # Stamped at 10:00:40 by a run that started at 10:00; next window is 10:15.
        assert evaluate(Tier.FIFTEEN_MIN, at(10, 0, 40), at(10, 15, 2)).should_check

    def test_hourly_tier(self):
        assert evaluate(Tier.HOURLY, at(9, 0), at(10, 0)).should_check
        assert not evaluate(Tier.HOURLY, at(9, 30), at(10, 0)).should_check
        assert not evaluate(Tier.HOURLY, at(9, 0), at(10, 30)).should_check


class TestTierResolution:
    def test_free_tier_always_allowed(self):
        assert resolve_effective_tier(FREE_TIER, has_access=False) == Tier.HOURLY

    def test_paid_tier_with_access(self):
        assert resolve_effective_tier(Tier.FIFTEEN_MIN, has_access=True) == Tier.FIFTEEN_MIN

    def test_paid_tier_without_access_falls_back(self):
        assert resolve_effective_tier(Tier.THIRTY_MIN, has_access=False) == FREE_TIER

    def test_unknown_tier_parses_to_free(self):
        assert Tier.parse("5min") == FREE_TIER
        assert Tier.parse("15min") == Tier.FIFTEEN_MIN


class TestScheduleGate:
    def test_fallback_when_access_expired(self, with_store):
        now = at(10, 15)

        async def scenario(store):
            await store.grant_access("user_1", "15min", now - timedelta(days=30), now - timedelta(days=1))
            criterion = make_criterion(preferred_tier="15min", last_checked=at(9, 0))
            return await ScheduleGate(store).check(criterion, now)

        decision = with_store(scenario)
        assert decision.fell_back
        assert decision.tier == FREE_TIER
        assert decision.preferred_tier == Tier.FIFTEEN_MIN
        assert not decision.should_check

    def test_active_grant_uses_preferred_tier(self, with_store):
        now = at(10, 15)

        async def scenario(store):
            await store.grant_access("user_1", "15min", now - timedelta(days=1), now + timedelta(days=1))
            criterion = make_criterion(preferred_tier="15min", last_checked=at(9, 47))
            return await ScheduleGate(store).check(criterion, now)

        decision = with_store(scenario)
        assert not decision.fell_back
        assert decision.tier == Tier.FIFTEEN_MIN
        assert decision.should_check

    def test_fallback_still_checks_on_the_hour(self, with_store):
        async def scenario(store):
            criterion = make_criterion(preferred_tier="30min", last_checked=at(9, 0))
            return await ScheduleGate(store).check(criterion, at(10, 0))

        decision = with_store(scenario)
        assert decision.fell_back
        assert decision.should_check
