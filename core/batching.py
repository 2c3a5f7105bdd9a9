"""Grouping of saved searches into shared upstream queries.

Criteria with the same normalized area set are fetched with one request using
the broadest bounds of the group; each criterion's exact bounds are applied
locally afterwards (see ``core.filter``).
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

from core.criteria import normalize_areas
from db.models import Batch, Criterion

if TYPE_CHECKING:
    from db.store import Store

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchCriteria:
    areas: str
    min_price: int | None
    max_price: int | None
    min_beds: int | None
    max_beds: int | None
    min_baths: float | None
    no_fee: bool


@dataclass
class CriteriaGroup:
    criteria: BatchCriteria
    criteria_hash: str
    criterion_ids: list[int]


@dataclass
class ReconcileResult:
    batches: int = 0
    created: int = 0
    memberships_rewritten: int = 0
    batches_deleted: int = 0
    skipped_criteria: list[int] = field(default_factory=list)


def _widest_lower(values: list) -> int | float | None:
    if any(v is None for v in values):
        return None
    return min(values)


def _widest_upper(values: list) -> int | float | None:
    if any(v is None for v in values):
        return None
    return max(values)


def broadest_criteria(criteria: list[Criterion]) -> BatchCriteria:
    if not criteria:
        raise ValueError("Cannot compute batch bounds for an empty group")

    def collect(attr: str) -> list:
        return [getattr(c, attr) for c in criteria]

    return BatchCriteria(
        areas=normalize_areas(criteria[0].areas),
        min_price=_widest_lower(collect("min_price")),
        max_price=_widest_upper(collect("max_price")),
        min_beds=_widest_lower(collect("min_beds")),
        max_beds=_widest_upper(collect("max_beds")),
        min_baths=_widest_lower(collect("min_baths")),
        # A batch can only ask upstream for no-fee listings if every member wants them.
        no_fee=all(c.no_fee for c in criteria),
    )


def batch_bounds(batch: Batch) -> BatchCriteria:
    return BatchCriteria(
        areas=batch.areas,
        min_price=batch.min_price,
        max_price=batch.max_price,
        min_beds=batch.min_beds,
        max_beds=batch.max_beds,
        min_baths=batch.min_baths,
        no_fee=batch.no_fee,
    )


def hash_criteria(criteria: BatchCriteria) -> str:
    payload = {
        "areas": criteria.areas,
        "maxBeds": criteria.max_beds,
        "maxPrice": criteria.max_price,
        "minBaths": criteria.min_baths,
        "minBeds": criteria.min_beds,
        "minPrice": criteria.min_price,
        "noFee": criteria.no_fee,
    }
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def group_criteria(criteria: list[Criterion]) -> list[CriteriaGroup]:
    by_area: dict[str, list[Criterion]] = {}
    for criterion in criteria:
        key = normalize_areas(criterion.areas)
        if not key:
            log.debug(f"Criterion #{criterion.id} has no areas, not batched")
            continue
        by_area.setdefault(key, []).append(criterion)

    groups = []
    for key in sorted(by_area):
        members = by_area[key]
        bounds = broadest_criteria(members)
        groups.append(
            CriteriaGroup(
                criteria=bounds,
                criteria_hash=hash_criteria(bounds),
                criterion_ids=[c.id for c in members],  # type: ignore[misc]
            )
        )
    return groups


def _lower_covers(batch_value, member_value) -> bool:
    if batch_value is None:
        return True
    return member_value is not None and batch_value <= member_value


def _upper_covers(batch_value, member_value) -> bool:
    if batch_value is None:
        return True
    return member_value is not None and batch_value >= member_value


def covers(batch: BatchCriteria, criterion: Criterion) -> bool:
    """True if everything ``criterion`` accepts is also admitted by ``batch``."""
    return (
        batch.areas == normalize_areas(criterion.areas)
        and _lower_covers(batch.min_price, criterion.min_price)
        and _upper_covers(batch.max_price, criterion.max_price)
        and _lower_covers(batch.min_beds, criterion.min_beds)
        and _upper_covers(batch.max_beds, criterion.max_beds)
        and _lower_covers(batch.min_baths, criterion.min_baths)
        and (not batch.no_fee or criterion.no_fee)
    )


async def reconcile_batches(
    store: "Store",
    grouper: Callable[[list[Criterion]], list[CriteriaGroup]] = group_criteria,
) -> ReconcileResult:
    """Bring batches and memberships in line with the active criteria.

    Only criteria whose batch changed get their memberships rewritten.
    Running it again from scratch is always safe.
    """
    result = ReconcileResult()
    active = await store.get_active_criteria()

    if not active:
        deleted = await store.purge_batches()
        result.batches_deleted = deleted
        log.info(f"No active criteria, purged {deleted} batches")
        return result

    current = await store.get_memberships()
    groups = grouper(active)
    batched_ids: set[int] = set()

    for group in groups:
        existing = await store.get_batch_by_hash(group.criteria_hash)
        batch_id = await store.upsert_batch(
            group.criteria_hash, group.criteria, len(group.criterion_ids)
        )
        if existing is None:
            result.created += 1

        batched_ids.update(group.criterion_ids)
        members = set(group.criterion_ids)
        already = {cid for cid, bids in current.items() if batch_id in bids}
        unchanged = already == members and all(len(current[cid]) == 1 for cid in members)
        if unchanged:
            continue

        await store.replace_memberships(batch_id, group.criterion_ids)
        result.memberships_rewritten += len(group.criterion_ids)
        log.debug(
            f"Batch {group.criteria_hash[:8]}: {len(group.criterion_ids)} members "
            f"({group.criteria.areas})"
        )

    orphaned = [cid for cid in current if cid not in batched_ids]
    if orphaned:
        await store.remove_memberships(orphaned)

    result.skipped_criteria = [c.id for c in active if c.id not in batched_ids]  # type: ignore[misc]
    result.batches_deleted = await store.delete_empty_batches()
    result.batches = len(groups)
    log.info(
        f"Reconciled {len(active)} criteria into {result.batches} batches "
        f"({result.created} new, {result.batches_deleted} deleted)"
    )
    return result
