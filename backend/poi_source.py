"""Cache-first POI loading shared by the density and target analysis services."""

import logging
from dataclasses import dataclass

from db import PoiRecord, PoiStore, TtlPolicy, now_epoch
from errors import ProviderKeyMissing, to_provider_error
from provider import Poi, PoiProvider

logger = logging.getLogger(__name__)


@dataclass
class LoadedPois:
    by_keyword: dict[str, list[PoiRecord]]
    source: str  # "cache" | "network" | "mixed"


def to_record(poi: Poi, keyword: str, city: str, fetched_at: int | None = None) -> PoiRecord:
    return PoiRecord(
        keyword=keyword.lower(),
        city=city,
        poi_id=poi.external_id,
        name=poi.name,
        category=poi.category,
        address=poi.address,
        longitude=poi.longitude,
        latitude=poi.latitude,
        fetched_at=fetched_at or now_epoch(),
        fetch_source="amap",
        admin_code=poi.admin_code,
        raw=poi.raw,
    )


def dedupe(records: list[PoiRecord]) -> list[PoiRecord]:
    """One record per poi_id, the last one seen wins; first-seen order is kept."""
    by_id: dict[str, PoiRecord] = {}
    for r in records:
        by_id[r.poi_id] = r
    return list(by_id.values())


async def load_pois(
    store: PoiStore,
    city: str,
    keywords: list[str],
    *,
    ttl_policy: TtlPolicy = TtlPolicy.unbounded(),
    provider: PoiProvider | None = None,
    allow_network_fetch: bool = False,
    has_api_key: bool = True,
) -> LoadedPois:
    """Read cached POIs per keyword and optionally fill empty keywords from the provider.

    Provenance is "cache" when nothing was fetched, "network" when every
    returned record came from a live fetch, "mixed" otherwise.
    """
    cached = store.get_by_keywords(city, keywords, ttl_policy.max_age_seconds)
    by_keyword: dict[str, list[PoiRecord]] = {kw: [] for kw in keywords}
    for r in cached:
        if r.keyword in by_keyword:
            by_keyword[r.keyword].append(r)

    missing = [kw for kw in keywords if not by_keyword[kw]]
    if not allow_network_fetch or not missing or provider is None:
        return LoadedPois(by_keyword=by_keyword, source="cache")

    if not has_api_key:
        raise ProviderKeyMissing("Map provider API key is not configured.")

    fetched: list[PoiRecord] = []
    for kw in missing:
        try:
            pois = await provider.search_by_keyword(kw, city)
        except Exception as exc:
            logger.error("Provider fetch failed for city=%s keyword=%s: %r", city, kw, exc)
            raise to_provider_error(exc) from exc
        records = [to_record(p, kw, city) for p in pois]
        by_keyword[kw] = records
        fetched.extend(records)

    if not fetched:
        return LoadedPois(by_keyword=by_keyword, source="cache")

    store.upsert(fetched)
    return LoadedPois(by_keyword=by_keyword, source="mixed" if cached else "network")
