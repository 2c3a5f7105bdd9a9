import logging
from dataclasses import dataclass, field
from typing import Any

log = logging.getLogger(__name__)


@dataclass
class RawListing:
    id: str
    price: int
    url: str
    latitude: float | None = None
    longitude: float | None = None
    title: str = ""
    address: str = ""
    neighborhood: str = ""
    bedrooms: int | None = None
    bathrooms: float | None = None
    sqft: int | None = None
    no_fee: bool = False
    image_url: str | None = None


@dataclass
class SearchPage:
    listings: list[RawListing] = field(default_factory=list)
    count: int = 0
    next_offset: int | None = None


def _first(item: dict, *keys: str) -> Any:
    for key in keys:
        value = item.get(key)
        if value not in (None, ""):
            return value
    return None


def _to_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(float(str(value).replace(",", "").replace("$", "")))
    except ValueError:
        return None


def _to_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_listing(item: dict) -> RawListing | None:
    location = item.get("location") or {}
    listing_id = _first(item, "id", "listingId", "listing_id")
    if listing_id is None:
        return None

    photos = item.get("photos") or []
    image_url = _first(item, "imageUrl", "image") or (photos[0] if photos else None)

    return RawListing(
        id=str(listing_id),
        price=_to_int(_first(item, "price", "rent")) or 0,
        url=str(_first(item, "url", "listingUrl", "link") or ""),
        latitude=_to_float(_first(item, "latitude", "lat") or location.get("latitude")),
        longitude=_to_float(_first(item, "longitude", "lng") or location.get("longitude")),
        title=str(_first(item, "title", "name") or "").strip(),
        address=str(_first(item, "address") or location.get("address") or "").strip(),
        neighborhood=str(
            _first(item, "neighborhood", "areaName") or location.get("neighborhood") or ""
        ).strip(),
        bedrooms=_to_int(_first(item, "bedrooms", "beds")),
        bathrooms=_to_float(_first(item, "bathrooms", "baths")),
        sqft=_to_int(_first(item, "sqft", "squareFeet")),
        no_fee=bool(item.get("noFee") or item.get("no_fee") or False),
        image_url=str(image_url) if image_url else None,
    )


def parse_search_response(json_data: dict) -> SearchPage:
    items = json_data.get("listings") or json_data.get("results") or []
    if not isinstance(items, list):
        log.warning(f"Unexpected listings payload type: {type(items).__name__}")
        return SearchPage()

    listings = []
    for item in items:
        if not isinstance(item, dict):
            continue
        listing = parse_listing(item)
        if listing is None:
            log.debug("Skipping listing without an id")
            continue
        listings.append(listing)

    pagination = json_data.get("pagination") or {}
    count = _to_int(_first(json_data, "count", "total") or pagination.get("count"))
    next_offset = _to_int(_first(json_data, "nextOffset") or pagination.get("nextOffset"))

    return SearchPage(
        listings=listings,
        count=count if count is not None else len(listings),
        next_offset=next_offset,
    )
