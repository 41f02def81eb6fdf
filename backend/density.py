"""Brand density: heatmap over a keyword set, memoized per (city, keyword set)."""

import logging

import config
from db import AnalysisCacheRepository, PoiStore, TtlPolicy, now_epoch
from errors import ValidationError
from grid import LngLat, aggregate_to_grid
from keywords import keyword_set_hash, normalize_keywords
from models import Coordinate, DensityResult, HeatmapCell, MainBrand, PoiSummary
from poi_source import dedupe, load_pois
from provider import PoiProvider, has_usable_api_key

logger = logging.getLogger(__name__)


class BrandDensityService:
    def __init__(
        self,
        store: PoiStore,
        analysis_cache: AnalysisCacheRepository,
        provider: PoiProvider | None = None,
        *,
        result_ttl_seconds: int = config.CACHE_TTL_SECONDS,
        grid_size_m: int = config.HEATMAP_GRID_SIZE_M,
        allow_network_fetch: bool = config.FETCH_MISSING_ON_READ,
        api_key: str = config.AMAP_API_KEY,
    ):
        self.store = store
        self.analysis_cache = analysis_cache
        self.provider = provider
        self.result_ttl_seconds = result_ttl_seconds
        self.grid_size_m = grid_size_m
        self.allow_network_fetch = allow_network_fetch
        self.api_key = api_key

    async def compute_density(
        self,
        city: str,
        keywords: list[str],
        main_brand: str | None = None,
        ttl_policy: TtlPolicy = TtlPolicy.unbounded(),
    ) -> DensityResult:
        """Heatmap and per-brand POI lists for ``keywords`` in ``city``.

        The first keyword (or ``main_brand``) is the main brand, the rest are
        competitors. ``ttl_policy`` bounds the age of the POI rows read; the
        default reads every cached row, since freshness is governed by explicit
        refreshes. Only unbounded reads are served from or written to the memo.
        """
        city = (city or "").strip()
        if not city:
            raise ValidationError("city is required")
        normalized = normalize_keywords(keywords)
        if not normalized:
            raise ValidationError("At least one keyword is required")

        label = (main_brand or "").strip() or normalized[0]
        main_keyword = label.lower()
        if main_keyword not in normalized:
            normalized.insert(0, main_keyword)
        competitors = [kw for kw in normalized if kw != main_keyword]

        set_hash = keyword_set_hash(city, normalized)

        # Memo rows hold unbounded reads only; another main brand is a miss
        memoizable = not ttl_policy.is_bounded
        entry = self.analysis_cache.load(city, set_hash, self.result_ttl_seconds) if memoizable else None
        if entry and entry.payload.get("main_brand", {}).get("keyword") == main_keyword:
            logger.info("Density cache hit city=%s hash=%s", city, set_hash)
            return DensityResult.model_validate({**entry.payload, "source": "cache", "memoized": True})

        loaded = await load_pois(
            self.store,
            city,
            normalized,
            ttl_policy=ttl_policy,
            provider=self.provider,
            allow_network_fetch=self.allow_network_fetch,
            has_api_key=has_usable_api_key(self.api_key),
        )

        main_pois = dedupe(loaded.by_keyword.get(main_keyword, []))
        competitor_pois = dedupe([r for kw in competitors for r in loaded.by_keyword.get(kw, [])])
        all_pois = dedupe(main_pois + competitor_pois)

        cells = aggregate_to_grid((LngLat(r.longitude, r.latitude) for r in all_pois), self.grid_size_m)
        result = DensityResult(
            city=city,
            keywords=normalized,
            keyword_set_hash=set_hash,
            grid_size_m=self.grid_size_m,
            generated_at=now_epoch(),
            source=loaded.source,
            heatmap=[
                HeatmapCell(grid_id=c.grid_id, count=c.count, center=Coordinate(lng=c.center.lng, lat=c.center.lat))
                for c in cells
            ],
            total_pois=len(all_pois),
            main_brand=MainBrand(keyword=main_keyword, label=label),
            competitor_keywords=competitors,
            all_pois=[PoiSummary.from_record(r) for r in all_pois],
            main_brand_pois=[PoiSummary.from_record(r) for r in main_pois],
            competitor_pois=[PoiSummary.from_record(r) for r in competitor_pois],
        )

        logger.info(
            "Brand density computed city=%s keywords=%s total=%d cells=%d source=%s",
            city, normalized, result.total_pois, len(result.heatmap), result.source,
        )

        # Empty results are never memoized
        if memoizable and result.total_pois > 0:
            stored = result.model_dump(mode="json")
            stored["source"] = "cache"
            self.analysis_cache.store(city, set_hash, stored, result.generated_at)
        return result
