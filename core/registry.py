"""NYC building registry (PLUTO) lookups and rent-stabilization policy."""

import logging
import math
from dataclasses import dataclass

import httpx

from config import settings
from core.errors import RegistryError
from db.models import StabilizationStatus

log = logging.getLogger(__name__)

EARTH_RADIUS_M = 6_371_000


@dataclass
class Building:
    bbl: str | None
    address: str
    units: int
    year_built: int
    latitude: float
    longitude: float


@dataclass
class Classification:
    status: StabilizationStatus
    probability: float
    source: str
    reason: str = ""


def _as_int(value) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def _as_float(value) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def parse_building(record: dict) -> Building | None:
    lat = _as_float(record.get("latitude"))
    lng = _as_float(record.get("longitude"))
    if lat is None or lng is None:
        return None
    return Building(
        bbl=record.get("bbl"),
        address=record.get("address") or "",
        units=_as_int(record.get("unitsres")),
        year_built=_as_int(record.get("yearbuilt")),
        latitude=lat,
        longitude=lng,
    )


def classify_building(building: Building | None) -> Classification:
    if building is None:
        return Classification(
            StabilizationStatus.UNKNOWN, 0.30, "heuristic", "No building record found"
        )

    units, year = building.units, building.year_built
    if units == 0:
        return Classification(
            StabilizationStatus.UNLIKELY, 0.0, "pluto_data", "No residential units"
        )
    if units < 6:
        return Classification(
            StabilizationStatus.UNLIKELY, 0.05, "pluto_data", f"Only {units} units"
        )
    if 0 < year < 1974:
        return Classification(
            StabilizationStatus.CONFIRMED, 0.95, "pluto_data", f"{units} units built in {year}"
        )
    if 1974 <= year <= 1984:
        return Classification(
            StabilizationStatus.PROBABLE, 0.70, "pluto_data",
            f"{units} units built in {year}, may carry J-51/421-a benefits",
        )
    if 1984 < year <= 2015:
        return Classification(
            StabilizationStatus.PROBABLE, 0.40, "pluto_data",
            f"{units} units built in {year}, possible 421-a building",
        )
    if units >= 50:
        return Classification(
            StabilizationStatus.PROBABLE, 0.75, "pluto_data", f"Large building ({units} units)"
        )
    return Classification(
        StabilizationStatus.UNLIKELY, 0.20, "pluto_data", f"{units} units built in {year}"
    )


class BuildingRegistryClient:
    def __init__(
        self,
        endpoint: str | None = None,
        tolerance: float | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.endpoint = endpoint or settings.registry_endpoint
        self.tolerance = tolerance or settings.registry_location_tolerance
        self.timeout = timeout or settings.http_timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if not self._client:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def find_building(self, latitude: float, longitude: float) -> Building | None:
        t = self.tolerance
        where = (
            f"latitude >= {latitude - t} AND latitude <= {latitude + t} "
            f"AND longitude >= {longitude - t} AND longitude <= {longitude + t}"
        )
        client = await self._get_client()
        try:
            resp = await client.get(self.endpoint, params={"$where": where, "$limit": "10"})
            resp.raise_for_status()
            records = resp.json()
        except httpx.HTTPError as e:
            raise RegistryError(f"Registry lookup failed: {e}") from e
        except ValueError as e:
            raise RegistryError(f"Registry returned invalid JSON: {e}") from e

        if not isinstance(records, list):
            raise RegistryError(f"Unexpected registry payload: {type(records).__name__}")

        buildings = [b for b in (parse_building(r) for r in records if isinstance(r, dict)) if b]
        if not buildings:
            return None

        return min(
            buildings,
            key=lambda b: haversine_m(latitude, longitude, b.latitude, b.longitude),
        )
