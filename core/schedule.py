"""Tier-based check windows.

A criterion is checked at most once per window of its tier, and windows are
aligned to the wall clock: a 15-minute criterion is only ever checked at
:00, :15, :30 and :45, no matter when it was last checked.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from db.models import Criterion

if TYPE_CHECKING:
    from db.store import Store

log = logging.getLogger(__name__)


class Tier(Enum):
    FIFTEEN_MIN = "15min"
    THIRTY_MIN = "30min"
    HOURLY = "1hour"

    @property
    def interval_minutes(self) -> int:
        return {"15min": 15, "30min": 30, "1hour": 60}[self.value]

    @classmethod
    def parse(cls, value: str | None) -> "Tier":
        try:
            return cls(value)
        except ValueError:
            log.warning(f"Unknown tier {value!r}, using {FREE_TIER.value}")
            return FREE_TIER


FREE_TIER = Tier.HOURLY


@dataclass
class GateDecision:
    should_check: bool
    tier: Tier
    preferred_tier: Tier
    fell_back: bool = False
    reason: str = ""


def _truncate(value: datetime) -> datetime:
    return value.replace(second=0, microsecond=0)


def resolve_effective_tier(preferred: Tier, has_access: bool) -> Tier:
    if preferred == FREE_TIER or has_access:
        return preferred
    return FREE_TIER


def evaluate(tier: Tier, last_checked: datetime | None, now: datetime) -> GateDecision:
    interval = tier.interval_minutes
    current = _truncate(now)

    if current.minute % interval != 0:
        return GateDecision(False, tier, tier, reason=f"not a {tier.value} boundary")

    if last_checked is None:
        return GateDecision(True, tier, tier, reason="never checked")

    elapsed = int((current - _truncate(last_checked)).total_seconds() // 60)
    if elapsed < interval:
        return GateDecision(
            False, tier, tier, reason=f"checked {elapsed}m ago, window is {interval}m"
        )
    return GateDecision(True, tier, tier, reason=f"{elapsed}m since last check")


class ScheduleGate:
    def __init__(self, store: "Store"):
        self.store = store

    async def check(self, criterion: Criterion, now: datetime) -> GateDecision:
        preferred = Tier.parse(criterion.preferred_tier)
        has_access = await self.store.has_active_tier_access(
            criterion.user_id, preferred.value, now
        )
        tier = resolve_effective_tier(preferred, has_access)

        decision = evaluate(tier, criterion.last_checked, now)
        decision.preferred_tier = preferred
        decision.fell_back = tier != preferred
        if decision.fell_back:
            log.debug(
                f"Criterion #{criterion.id}: no active {preferred.value} access, "
                f"using {tier.value}"
            )
        return decision
