import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from config import settings
from core.registry import BuildingRegistryClient, Classification, classify_building
from db.models import CachedBuilding, Listing

if TYPE_CHECKING:
    from db.store import Store

log = logging.getLogger(__name__)

# Stored source label for classifications derived from registry records.
SOURCE_LABELS = {"pluto_data": "dhcr_registry"}


@dataclass
class EnrichmentMetrics:
    candidates: int = 0
    skipped: int = 0
    cache_hits: int = 0
    lookups: int = 0
    enriched: int = 0
    failed: int = 0
    timeouts: int = 0


@dataclass
class _Lookup:
    listing: Listing
    lat_key: float
    lng_key: float
    classification: Classification | None = None
    building_id: str | None = None
    units: int | None = None
    year_built: int | None = None


def coordinate_key(latitude: float, longitude: float) -> tuple[float, float]:
    return round(latitude, 4), round(longitude, 4)


class Enricher:
    def __init__(
        self,
        store: "Store",
        registry: BuildingRegistryClient,
        timeout: float | None = None,
        concurrency: int | None = None,
        cache_days: int | None = None,
    ):
        self.store = store
        self.registry = registry
        self.timeout = timeout or settings.enrichment_timeout_seconds
        self.concurrency = concurrency or settings.enrichment_concurrency
        self.cache_days = cache_days or settings.enrichment_cache_days

    def _needs_check(self, listing: Listing, now: datetime) -> bool:
        if listing.latitude is None or listing.longitude is None:
            return False
        checked = listing.stabilization_checked_at
        return checked is None or now - checked >= timedelta(days=self.cache_days)

    async def enrich(self, listings: list[Listing], now: datetime | None = None) -> EnrichmentMetrics:
        """Attach a rent-stabilization classification to each listing that needs one.

        Registry failures and timeouts leave the listing unenriched and are
        only counted; this never raises for a single bad lookup.
        """
        now = now or datetime.utcnow()
        metrics = EnrichmentMetrics()
        pending: list[_Lookup] = []

        for listing in listings:
            if not self._needs_check(listing, now):
                metrics.skipped += 1
                continue
            metrics.candidates += 1

            lat_key, lng_key = coordinate_key(listing.latitude, listing.longitude)  # type: ignore[arg-type]
            cached = await self.store.get_cached_building(lat_key, lng_key)
            if cached and now - cached.cached_at < timedelta(days=self.cache_days):
                metrics.cache_hits += 1
                await self._apply(
                    listing,
                    Classification(cached.status, cached.probability, cached.source),
                    cached.building_id,
                    now,
                )
                metrics.enriched += 1
                continue
            pending.append(_Lookup(listing, lat_key, lng_key))

        for start in range(0, len(pending), self.concurrency):
            chunk = pending[start : start + self.concurrency]
            results = await asyncio.gather(
                *(self._lookup(item) for item in chunk), return_exceptions=True
            )
            metrics.lookups += len(chunk)

            for item, result in zip(chunk, results):
                if isinstance(result, asyncio.TimeoutError):
                    metrics.timeouts += 1
                    log.warning(f"Registry lookup timed out for listing #{item.listing.id}")
                    continue
                if isinstance(result, BaseException):
                    metrics.failed += 1
                    log.warning(f"Registry lookup failed for listing #{item.listing.id}: {result}")
                    continue

                await self.store.cache_building(
                    CachedBuilding(
                        lat_key=item.lat_key,
                        lng_key=item.lng_key,
                        building_id=item.building_id,
                        units=item.units,
                        year_built=item.year_built,
                        status=item.classification.status,  # type: ignore[union-attr]
                        probability=item.classification.probability,  # type: ignore[union-attr]
                        source=item.classification.source,  # type: ignore[union-attr]
                        cached_at=now,
                        hit_count=0,
                    )
                )
                await self._apply(item.listing, item.classification, item.building_id, now)  # type: ignore[arg-type]
                metrics.enriched += 1

        if metrics.candidates:
            log.info(
                f"Enrichment: {metrics.enriched}/{metrics.candidates} enriched, "
                f"{metrics.cache_hits} cache hits, {metrics.failed} failed, "
                f"{metrics.timeouts} timed out"
            )
        return metrics

    async def _lookup(self, item: _Lookup) -> None:
        building = await asyncio.wait_for(
            self.registry.find_building(item.listing.latitude, item.listing.longitude),  # type: ignore[arg-type]
            timeout=self.timeout,
        )
        item.classification = classify_building(building)
        if building:
            item.building_id = building.bbl
            item.units = building.units
            item.year_built = building.year_built

    async def _apply(
        self,
        listing: Listing,
        classification: Classification,
        building_id: str | None,
        now: datetime,
    ) -> None:
        source = SOURCE_LABELS.get(classification.source, classification.source)
        await self.store.update_listing_enrichment(
            listing.id,  # type: ignore[arg-type]
            classification.status,
            classification.probability,
            source,
            building_id,
            now,
        )
        listing.stabilization_status = classification.status
        listing.stabilization_probability = classification.probability
        listing.stabilization_source = source
        listing.building_id = building_id
        listing.stabilization_checked_at = now
