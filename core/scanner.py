import logging

import httpx

from config import settings
from core.batching import BatchCriteria
from core.errors import UpstreamError
from core.parser import RawListing, SearchPage, parse_search_response

log = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


def build_search_params(criteria: BatchCriteria, limit: int = MAX_PAGE_SIZE) -> dict:
    params: dict[str, str | int | float] = {
        "areas": criteria.areas,
        "limit": min(limit, MAX_PAGE_SIZE),
    }
    optional = {
        "minPrice": criteria.min_price,
        "maxPrice": criteria.max_price,
        "minBeds": criteria.min_beds,
        "maxBeds": criteria.max_beds,
        "minBaths": criteria.min_baths,
    }
    params.update({k: v for k, v in optional.items() if v is not None})
    if criteria.no_fee:
        params["noFee"] = "true"
    return params


class ListingSearchClient:
    def __init__(
        self,
        api_key: str | None = None,
        host: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        page_size: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key if api_key is not None else settings.rapidapi_key
        self.host = host or settings.rapidapi_host
        self.base_url = base_url or settings.listing_search_url
        self.timeout = timeout or settings.http_timeout_seconds
        self.page_size = min(page_size or settings.fetch_page_size, MAX_PAGE_SIZE)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if not self._client:
            self._client = httpx.AsyncClient(
                headers={
                    "X-RapidAPI-Key": self.api_key or "",
                    "X-RapidAPI-Host": self.host,
                },
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def search(self, params: dict) -> SearchPage:
        if not self.api_key:
            raise UpstreamError("RapidAPI key is not configured")

        client = await self._get_client()
        try:
            resp = await client.get(self.base_url, params=params)
        except httpx.HTTPError as e:
            raise UpstreamError(f"Listing search request failed: {e}") from e

        if resp.status_code != 200:
            raise UpstreamError(
                f"Listing search returned {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamError(f"Listing search returned invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise UpstreamError(f"Unexpected listing search payload: {type(data).__name__}")
        return parse_search_response(data)

    async def fetch_batch(self, criteria: BatchCriteria, offset: int | None = None) -> list[RawListing]:
        params = build_search_params(criteria, self.page_size)
        if offset:
            params["offset"] = offset

        page = await self.search(params)
        log.info(
            f"Fetched {len(page.listings)} listings for {criteria.areas} "
            f"(upstream count {page.count})"
        )
        return page.listings[: self.page_size]
