"""Target point analysis: ring counts around a coordinate and a density level."""

import logging
import math

import config
from db import PoiRecord, PoiStore, TtlPolicy, now_epoch
from errors import ValidationError
from grid import LngLat, aggregate_to_grid, count_within, grid_id
from keywords import normalize_keywords
from models import AnalysisResult, Coordinate, PoiSummary, RingCounts, SamplePois
from poi_source import dedupe, load_pois
from provider import PoiProvider, has_usable_api_key

logger = logging.getLogger(__name__)


def classify_density(count: int) -> str:
    if count >= config.DENSITY_HIGH_MIN:
        return "high"
    if count >= config.DENSITY_MEDIUM_MIN:
        return "medium"
    return "low"


def density_level(pois: list[PoiRecord], target: LngLat, cell_size_m: float = config.DENSITY_GRID_SIZE_M) -> str:
    """Classify by the number of ``pois`` in the grid cell containing ``target``."""
    target_cell = grid_id(target, cell_size_m)
    cells = aggregate_to_grid((LngLat(p.longitude, p.latitude) for p in pois), cell_size_m)
    count = next((c.count for c in cells if c.grid_id == target_cell), 0)
    return classify_density(count)


def validate_target(lng: float, lat: float) -> LngLat:
    if not (math.isfinite(lng) and math.isfinite(lat)):
        raise ValidationError("target coordinates must be finite numbers")
    if not (-180.0 <= lng <= 180.0 and -90.0 <= lat <= 90.0):
        raise ValidationError("target coordinates are out of range")
    return LngLat(lng, lat)


class TargetAnalysisService:
    """Read-only analysis; results are never cached."""

    def __init__(
        self,
        store: PoiStore,
        provider: PoiProvider | None = None,
        *,
        allow_network_fetch: bool = config.FETCH_MISSING_ON_READ,
        api_key: str = config.AMAP_API_KEY,
        sample_limit: int = config.SAMPLE_POI_LIMIT,
    ):
        self.store = store
        self.provider = provider
        self.allow_network_fetch = allow_network_fetch
        self.api_key = api_key
        self.sample_limit = sample_limit

    async def analyze(
        self,
        city: str,
        target: Coordinate,
        main_brand: str,
        competitor_keywords: list[str],
        radius_meters: int,
        ttl_policy: TtlPolicy = TtlPolicy.unbounded(),
    ) -> AnalysisResult:
        city = (city or "").strip()
        if not city:
            raise ValidationError("city is required")
        label = (main_brand or "").strip()
        if not label:
            raise ValidationError("main brand is required")
        if isinstance(radius_meters, bool) or not isinstance(radius_meters, int) or radius_meters <= 0:
            raise ValidationError("radius_meters must be a positive integer")
        point = validate_target(target.lng, target.lat)

        main_keyword = label.lower()
        competitors = [kw for kw in normalize_keywords(competitor_keywords) if kw != main_keyword]

        loaded = await load_pois(
            self.store,
            city,
            [main_keyword, *competitors],
            ttl_policy=ttl_policy,
            provider=self.provider,
            allow_network_fetch=self.allow_network_fetch,
            has_api_key=has_usable_api_key(self.api_key),
        )
        main_pois = dedupe(loaded.by_keyword.get(main_keyword, []))
        competitor_pois = dedupe([r for kw in competitors for r in loaded.by_keyword.get(kw, [])])

        main_points = [LngLat(r.longitude, r.latitude) for r in main_pois]
        competitor_points = [LngLat(r.longitude, r.latitude) for r in competitor_pois]
        near_main, far_main = config.MAIN_BRAND_RINGS_M
        near_comp, mid_comp = config.COMPETITOR_RINGS_M
        counts = RingCounts(
            main_brand_500m=count_within(main_points, point, near_main),
            main_brand_1000m=count_within(main_points, point, far_main),
            competitor_100m=count_within(competitor_points, point, near_comp),
            competitor_300m=count_within(competitor_points, point, mid_comp),
            competitor_radius=count_within(competitor_points, point, radius_meters),
        )
        level = density_level(main_pois, point)

        logger.info(
            "Target analysis computed city=%s main=%s competitors=%s counts=%s level=%s",
            city, main_keyword, competitors, counts.model_dump(), level,
        )

        return AnalysisResult(
            city=city,
            target=Coordinate(lng=point.lng, lat=point.lat),
            main_brand=main_keyword,
            main_brand_label=label,
            competitor_keywords=competitors,
            radius_meters=radius_meters,
            generated_at=now_epoch(),
            counts=counts,
            density_level=level,
            source=loaded.source,
            sample_pois=SamplePois(
                main_brand=[PoiSummary.from_record(r) for r in main_pois[: self.sample_limit]],
                competitors=[PoiSummary.from_record(r) for r in competitor_pois[: self.sample_limit]],
            ),
        )
