"""Pydantic models for API requests and service results."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

import config
from db import PoiRecord

Source = Literal["cache", "network", "mixed"]
DensityLevel = Literal["high", "medium", "low"]


class Coordinate(BaseModel):
    model_config = ConfigDict(frozen=True)

    lng: float
    lat: float


# ---------- Requests ----------

class DensityRequest(BaseModel):
    city: str = Field(min_length=1)
    keywords: list[str] = Field(min_length=1)
    main_brand: str | None = None
    use_ttl: bool = False


class AnalysisRequest(BaseModel):
    city: str = Field(min_length=1)
    main_brand: str = Field(min_length=1)
    competitor_keywords: list[str] = []
    radius_meters: int = Field(default=1000, gt=0)
    target: Coordinate


class RefreshRequest(BaseModel):
    city: str = Field(min_length=1)
    keywords: list[str] = Field(min_length=1)


# ---------- Results ----------

class PoiSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    keyword: str
    poi_id: str
    name: str
    category: str
    address: str
    longitude: float
    latitude: float
    city: str
    fetched_at: int

    @classmethod
    def from_record(cls, r: PoiRecord) -> "PoiSummary":
        return cls(
            keyword=r.keyword,
            poi_id=r.poi_id,
            name=r.name,
            category=r.category,
            address=r.address,
            longitude=r.longitude,
            latitude=r.latitude,
            city=r.city,
            fetched_at=r.fetched_at,
        )


class HeatmapCell(BaseModel):
    model_config = ConfigDict(frozen=True)

    grid_id: str
    count: int
    center: Coordinate


class MainBrand(BaseModel):
    model_config = ConfigDict(frozen=True)

    keyword: str
    label: str


class DensityResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    city: str
    keywords: list[str]
    keyword_set_hash: str
    grid_size_m: int = config.HEATMAP_GRID_SIZE_M
    generated_at: int
    source: Source
    memoized: bool = False
    heatmap: list[HeatmapCell]
    total_pois: int
    main_brand: MainBrand
    competitor_keywords: list[str]
    all_pois: list[PoiSummary]
    main_brand_pois: list[PoiSummary]
    competitor_pois: list[PoiSummary]


class RingCounts(BaseModel):
    model_config = ConfigDict(frozen=True)

    main_brand_500m: int
    main_brand_1000m: int
    competitor_100m: int
    competitor_300m: int
    competitor_radius: int


class SamplePois(BaseModel):
    model_config = ConfigDict(frozen=True)

    main_brand: list[PoiSummary]
    competitors: list[PoiSummary]


class AnalysisResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    city: str
    target: Coordinate
    main_brand: str
    main_brand_label: str
    competitor_keywords: list[str]
    radius_meters: int
    generated_at: int
    counts: RingCounts
    density_level: DensityLevel
    source: Source
    sample_pois: SamplePois


class KeywordFetch(BaseModel):
    keyword: str
    fetched: int
    error: str | None = None


class RefreshProgress(BaseModel):
    status: Literal["progress"] = "progress"
    keyword: str
    fetched: int
    index: int
    total: int
    error: str | None = None


class RefreshResult(BaseModel):
    city: str
    keywords: list[str]
    total_fetched: int
    generated_at: int
    results: list[KeywordFetch]


class KeywordStatModel(BaseModel):
    keyword: str
    city: str
    count: int
    last_fetched_at: int


class CacheStatsResult(BaseModel):
    city: str | None
    stats: list[KeywordStatModel]
    total: int
    generated_at: int
    use_ttl: bool


class KeywordFreshness(BaseModel):
    keyword: str
    total: int
    valid: int
    expired: int


class AgeBucket(BaseModel):
    age_hours: int
    count: int


class CacheDistribution(BaseModel):
    city: str | None
    generated_at: int
    ttl_seconds: int
    total_records: int
    valid_records: int
    expired_records: int
    keyword_distribution: list[KeywordFreshness]
    age_distribution: list[AgeBucket]
    recommendations: list[str]


# ---------- Planning points ----------

HEX_COLOR = r"^#[0-9a-fA-F]{6}$"


class PlanningPointCreate(BaseModel):
    city: str = Field(min_length=1)
    name: str = Field(min_length=1)
    center: Coordinate
    radius_meters: int = Field(default=1000, ge=50, le=10000)
    color: str | None = Field(default=None, pattern=HEX_COLOR)
    status: str | None = None
    priority_rank: int | None = None
    notes: str | None = None
    source_type: str | None = None
    source_poi_id: str | None = None
    updated_by: str | None = None


class PlanningPointUpdate(BaseModel):
    city: str | None = Field(default=None, min_length=1)
    name: str | None = Field(default=None, min_length=1)
    center: Coordinate | None = None
    radius_meters: int | None = Field(default=None, ge=50, le=10000)
    color: str | None = Field(default=None, pattern=HEX_COLOR)
    color_token: str | None = None
    status: str | None = None
    priority_rank: int | None = None
    notes: str | None = None
    source_type: str | None = None
    source_poi_id: str | None = None
    updated_by: str | None = None


class PlanningPointModel(BaseModel):
    id: str
    city: str
    name: str
    longitude: float
    latitude: float
    radius_meters: int
    color: str
    color_token: str
    status: str
    priority_rank: int
    notes: str
    source_type: str
    source_poi_id: str | None
    updated_by: str | None
    created_at: int
    updated_at: int


class PlanningSearchRequest(BaseModel):
    city: str = Field(min_length=1)
    keyword: str = Field(min_length=1)
    limit: int = Field(default=8, ge=1, le=12)


class PlanningSuggestion(BaseModel):
    id: str
    name: str
    address: str
    longitude: float
    latitude: float
    city: str
