import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

import asyncio
from datetime import datetime, timedelta

import httpx
import pytest

from core.enrichment import Enricher, coordinate_key
from core.errors import RegistryError
from core.registry import Building, BuildingRegistryClient, classify_building
from db.models import StabilizationStatus
from factories import make_raw

NOW = datetime(2024, 3, 1, 10, 15)


def building(units: int, year: int) -> Building:
    return Building("1004567890", "123 E 7th St", units, year, 40.7265, -73.9815)


class FakeRegistry:
    def __init__(self, result=None, delay: float = 0.0, error: Exception | None = None):
        self.result = result
        self.delay = delay
        self.error = error
        self.calls = []

    async def find_building(self, latitude, longitude):
        self.calls.append((latitude, longitude))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.result


class CancellingRegistry(FakeRegistry):
    async def find_building(self, latitude, longitude):
        self.calls.append((latitude, longitude))
        if latitude > 40.75:
            raise asyncio.CancelledError()
        return self.result


class TestClassification:
    @pytest.mark.parametrize(
        "units,year,status,probability",
        [
            (0, 1920, StabilizationStatus.UNLIKELY, 0.0),
            (4, 1920, StabilizationStatus.UNLIKELY, 0.05),
            (20, 1960, StabilizationStatus.CONFIRMED, 0.95),
            (20, 1974, StabilizationStatus.PROBABLE, 0.70),
            (20, 1984, StabilizationStatus.PROBABLE, 0.70),
            (20, 2000, StabilizationStatus.PROBABLE, 0.40),
            (80, 2020, StabilizationStatus.PROBABLE, 0.75),
            (20, 2020, StabilizationStatus.UNLIKELY, 0.20),
            (80, 0, StabilizationStatus.PROBABLE, 0.75),
        ],
    )
    def test_policy_table(self, units, year, status, probability):
        result = classify_building(building(units, year))
        assert result.status == status
        assert result.probability == probability
        assert result.source == "pluto_data"

    def test_no_building(self):
        result = classify_building(None)
        assert result.status == StabilizationStatus.UNKNOWN
        assert result.probability == 0.30
        assert result.source == "heuristic"


class TestRegistryClient:
    def test_picks_closest_record(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json=[
                    {"bbl": "far", "unitsres": "10", "yearbuilt": "1950",
                     "latitude": "40.7269", "longitude": "-73.9819"},
                    {"bbl": "near", "unitsres": "12", "yearbuilt": "1930",
                     "latitude": "40.72651", "longitude": "-73.98151"},
                    {"bbl": "nocoords", "unitsres": "3"},
                ],
            )

        async def scenario():
            client = BuildingRegistryClient(
                endpoint="https://registry.test/pluto.json",
                transport=httpx.MockTransport(handler),
            )
            try:
                return await client.find_building(40.7265, -73.9815)
            finally:
                await client.close()

        result = asyncio.run(scenario())
        assert result.bbl == "near"
        assert result.units == 12
        assert "latitude >=" in seen[0].url.params["$where"]
        assert seen[0].url.params["$limit"] == "10"

    def test_http_error_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503)

        async def scenario():
            client = BuildingRegistryClient(transport=httpx.MockTransport(handler))
            try:
                await client.find_building(40.7, -73.9)
            finally:
                await client.close()

        with pytest.raises(RegistryError):
            asyncio.run(scenario())

    def test_empty_result(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=[])

        async def scenario():
            client = BuildingRegistryClient(transport=httpx.MockTransport(handler))
            try:
                return await client.find_building(40.7, -73.9)
            finally:
                await client.close()

        assert asyncio.run(scenario()) is None


class TestEnricher:
    def test_enriches_and_caches(self, with_store):
        registry = FakeRegistry(result=building(20, 1960))

        async def scenario(store):
            listings = await store.upsert_listings([make_raw("a")], NOW)
            metrics = await Enricher(store, registry).enrich(listings, NOW)

            # Second listing at the same coarse coordinates is served from the cache.
            others = await store.upsert_listings([make_raw("b", latitude=40.72651)], NOW)
            cached = await Enricher(store, registry).enrich(others, NOW)
            return listings[0], await store.get_listing(listings[0].id), metrics, cached

        listing, stored, metrics, cached = with_store(scenario)
        assert metrics.enriched == 1
        assert metrics.lookups == 1
        assert listing.stabilization_status == StabilizationStatus.CONFIRMED
        assert stored.stabilization_status == StabilizationStatus.CONFIRMED
        assert stored.stabilization_source == "dhcr_registry"
        assert stored.building_id == "1004567890"
        assert cached.cache_hits == 1
        assert len(registry.calls) == 1

    def test_recently_checked_and_missing_coordinates_skipped(self, with_store):
        registry = FakeRegistry(result=None)

        async def scenario(store):
            listings = await store.upsert_listings(
                [make_raw("a"), make_raw("b", latitude=None, longitude=None)], NOW
            )
            listings[0].stabilization_checked_at = NOW - timedelta(days=3)
            return await Enricher(store, registry).enrich(listings, NOW)

        metrics = with_store(scenario)
        assert metrics.skipped == 2
        assert registry.calls == []

    def test_timeout_leaves_listing_unenriched(self, with_store):
        registry = FakeRegistry(result=building(20, 1960), delay=0.5)

        async def scenario(store):
            listings = await store.upsert_listings([make_raw("a")], NOW)
            metrics = await Enricher(store, registry, timeout=0.05).enrich(listings, NOW)
            return metrics, await store.get_listing(listings[0].id)

        metrics, stored = with_store(scenario)
        assert metrics.timeouts == 1
        assert metrics.enriched == 0
        assert stored.stabilization_status is None

    def test_registry_failure_isolated(self, with_store):
        registry = FakeRegistry(error=RegistryError("503"))

        async def scenario(store):
            listings = await store.upsert_listings([make_raw("a"), make_raw("b", latitude=40.8)], NOW)
            return await Enricher(store, registry).enrich(listings, NOW)

        metrics = with_store(scenario)
        assert metrics.failed == 2
        assert metrics.enriched == 0

    def test_cancelled_lookup_does_not_stop_chunk(self, with_store):
        registry = CancellingRegistry(result=building(20, 1960))

        async def scenario(store):
            listings = await store.upsert_listings([make_raw("a", latitude=40.8), make_raw("b")], NOW)
            metrics = await Enricher(store, registry).enrich(listings, NOW)
            return (
                metrics,
                await store.get_listing(listings[0].id),
                await store.get_listing(listings[1].id),
            )

        metrics, cancelled, enriched = with_store(scenario)
        assert metrics.failed == 1
        assert metrics.enriched == 1
        assert cancelled.stabilization_status is None
        assert enriched.stabilization_status == StabilizationStatus.CONFIRMED

    def test_coordinate_key(self):
        assert coordinate_key(40.726549, -73.981549) == (40.7265, -73.9815)
