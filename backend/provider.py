"""POI provider backed by the AMap (Gaode) place search REST API.

Both searches paginate strictly sequentially and every page goes through the
shared RateLimiter first:
- Page 1's ``count`` gives an advisory page total (ceil(count / page_size)).
- A page shorter than page_size ends the search regardless of that total.
- Page ceilings: 100 for keyword search, 50 for around search.

Failures are raised as typed errors from ``errors``; nothing is retried here.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx

import config
from errors import (
    ProviderError,
    ProviderKeyMissing,
    ProviderRateLimited,
    ProviderTimeout,
    ProviderUnavailable,
)
from grid import LngLat
from limiter import RateLimiter

logger = logging.getLogger(__name__)

INVALID_KEY_INFOCODES = {"10001", "10009"}
QUOTA_INFOCODES = {"10003", "10004", "10014", "10019", "10020", "10021", "10044", "10045"}


@dataclass
class Poi:
    external_id: str
    name: str
    category: str
    address: str
    longitude: float
    latitude: float
    city: str
    admin_code: str | None = None
    raw: dict = field(default_factory=dict)


@runtime_checkable
class PoiProvider(Protocol):
    async def search_by_keyword(
        self,
        keyword: str,
        city: str,
        page_size: int = ...,
        max_pages: int | None = None,
    ) -> list[Poi]: ...

    async def search_around(
        self,
        center: LngLat,
        radius_m: int,
        keyword: str | None = None,
        page_size: int = ...,
    ) -> list[Poi]: ...


def has_usable_api_key(api_key: str | None) -> bool:
    if not api_key or not api_key.strip():
        return False
    return "REPLACE_WITH" not in api_key.upper()


def _text(value: Any) -> str:
    # AMap returns [] instead of "" for empty fields
    return value if isinstance(value, str) else ""


def _parse_location(location: Any) -> tuple[float, float]:
    try:
        lng_str, lat_str = _text(location).split(",")
        lng, lat = float(lng_str), float(lat_str)
    except ValueError:
        return 0.0, 0.0
    if not (math.isfinite(lng) and math.isfinite(lat)):
        return 0.0, 0.0
    return lng, lat


def normalize_poi(raw: dict, fallback_city: str = "") -> Poi:
    lng, lat = _parse_location(raw.get("location"))
    name = _text(raw.get("name")) or "unknown"
    external_id = _text(raw.get("id")) or _text(raw.get("poiid")) or f"{name}-{lng:.6f},{lat:.6f}"
    return Poi(
        external_id=external_id,
        name=name,
        category=_text(raw.get("type")),
        address=_text(raw.get("address")),
        longitude=lng,
        latitude=lat,
        city=_text(raw.get("cityname")) or fallback_city,
        admin_code=_text(raw.get("adcode")) or None,
        raw=raw,
    )


class AmapProvider:
    def __init__(
        self,
        api_key: str = config.AMAP_API_KEY,
        *,
        base_url: str = config.AMAP_BASE_URL,
        timeout: float = config.AMAP_TIMEOUT_S,
        limiter: RateLimiter | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.limiter = limiter or RateLimiter(config.AMAP_REQUESTS_PER_MINUTE)
        self._client = client
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def search_by_keyword(
        self,
        keyword: str,
        city: str,
        page_size: int = config.MAX_PAGE_SIZE,
        max_pages: int | None = None,
    ) -> list[Poi]:
        """All pages of a city-limited keyword search, or the first ``max_pages``."""
        params = {
            "keywords": keyword,
            "city": city,
            "citylimit": "true",
            "extensions": "base",
        }
        return await self._paginate(
            config.AMAP_PLACE_TEXT_PATH,
            params,
            page_size,
            min(max_pages or config.KEYWORD_SEARCH_MAX_PAGES, config.KEYWORD_SEARCH_MAX_PAGES),
            fallback_city=city,
        )

    async def search_around(
        self,
        center: LngLat,
        radius_m: int,
        keyword: str | None = None,
        page_size: int = config.MAX_PAGE_SIZE,
    ) -> list[Poi]:
        params = {
            "location": f"{center.lng},{center.lat}",
            "radius": str(radius_m),
            "extensions": "base",
        }
        if keyword:
            params["keywords"] = keyword
        return await self._paginate(config.AMAP_PLACE_AROUND_PATH, params, page_size, config.AROUND_SEARCH_MAX_PAGES)

    async def _paginate(
        self,
        path: str,
        params: dict[str, str],
        page_size: int,
        max_pages: int,
        fallback_city: str = "",
    ) -> list[Poi]:
        page_size = max(1, min(page_size, config.MAX_PAGE_SIZE))
        total_pages = max_pages
        collected: list[Poi] = []
        pages_fetched = 0

        page = 1
        while page <= min(total_pages, max_pages):
            await self.limiter.acquire()
            data = await self._call(path, {**params, "offset": str(page_size), "page": str(page)})
            pages_fetched += 1

            if page == 1:
                try:
                    total_count = int(data.get("count") or 0)
                except (TypeError, ValueError):
                    total_count = 0
                total_pages = math.ceil(total_count / page_size) if total_count > 0 else 1

            raw_pois = data.get("pois") or []
            collected.extend(normalize_poi(p, fallback_city) for p in raw_pois)

            if len(raw_pois) < page_size or page >= total_pages:
                break
            page += 1

        logger.info("AMap %s: %d POIs in %d page(s) for %s", path, len(collected), pages_fetched, params.get("keywords", ""))
        return collected

    async def _call(self, path: str, params: dict[str, str]) -> dict:
        if not has_usable_api_key(self.api_key):
            raise ProviderKeyMissing("Map provider API key is not configured.")

        url = f"{self.base_url}{path}"
        logger.debug("GET %s page=%s", url, params.get("page"))
        try:
            resp = await self._get_client().get(url, params={"key": self.api_key, **params}, timeout=self.timeout)
        except httpx.TimeoutException as exc:
            logger.error("AMap request timed out: %s %s", path, exc)
            raise ProviderTimeout("Map provider request timed out, please retry later.") from exc
        except httpx.TransportError as exc:
            logger.error("AMap request failed: %s %s", path, exc)
            raise ProviderUnavailable("Cannot reach the map provider, check the network and retry.") from exc

        if resp.status_code != 200:
            logger.error("AMap HTTP %d: %s", resp.status_code, resp.text[:500])
            if resp.status_code == 429:
                raise ProviderRateLimited("Map provider quota exceeded, please retry later.")
            raise ProviderError(f"Map provider returned HTTP {resp.status_code}")

        try:
            data = resp.json()
        except ValueError as exc:
            logger.error("AMap returned non-JSON body: %s", resp.text[:500])
            raise ProviderError("Map provider returned an unreadable response") from exc

        if str(data.get("status")) != "1":
            infocode = str(data.get("infocode", ""))
            info = str(data.get("info", ""))
            logger.error("AMap status=%s infocode=%s info=%s", data.get("status"), infocode, info)
            if infocode in INVALID_KEY_INFOCODES:
                raise ProviderKeyMissing("Map provider rejected the configured API key.")
            if infocode in QUOTA_INFOCODES or "LIMIT" in info.upper():
                raise ProviderRateLimited("Map provider quota exceeded, please retry later.")
            raise ProviderError(f"Map provider call failed: {info or 'unknown error'}")
        return data
