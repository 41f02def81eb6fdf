"""Planning points: candidate sites with status, color, priority and notes.

Input is normalised rather than rejected wherever a sane default exists:
unknown statuses fall back to ``pending``, radius and priority are clamped,
long text is truncated. Only empty names and cities and non-finite
coordinates are validation errors.
"""

import logging
import math
import re
import uuid
from typing import Any

from db import PlanningPoint, PlanningPointRepository
from errors import NotFoundError, ProviderError, ProviderKeyMissing, ValidationError, to_provider_error
from models import PlanningSuggestion
from provider import PoiProvider, has_usable_api_key

logger = logging.getLogger(__name__)

DEFAULT_RADIUS_M = 1000
MIN_RADIUS_M = 100
MAX_RADIUS_M = 2000

DEFAULT_PRIORITY = 100
MIN_PRIORITY = 1
MAX_PRIORITY = 999

NAME_MAX_LENGTH = 120
NOTES_MAX_LENGTH = 2000

DEFAULT_STATUS = "pending"
STATUS_COLORS = {
    "pending": "#22c55e",
    "priority": "#2563eb",
    "dropped": "#94a3b8",
}
DEFAULT_COLOR = STATUS_COLORS[DEFAULT_STATUS]
SOURCE_TYPES = ("manual", "poi")

_HEX_COLOR = re.compile(r"^#[0-9a-fA-F]{6}$")


def _clamp(value: Any, default: int, low: int, high: int) -> int:
    try:
        number = float(value if value is not None else default)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number):
        return default
    return min(max(round(number), low), high)


def clamp_radius(value: Any) -> int:
    return _clamp(value, DEFAULT_RADIUS_M, MIN_RADIUS_M, MAX_RADIUS_M)


def clamp_priority(value: Any) -> int:
    return _clamp(value, DEFAULT_PRIORITY, MIN_PRIORITY, MAX_PRIORITY)


def normalize_status(status: str | None) -> str:
    status = (status or "").strip().lower()
    return status if status in STATUS_COLORS else DEFAULT_STATUS


def resolve_color(color_token: str, custom_color: str | None = None) -> str:
    """An explicit color wins if it is a valid hex code; otherwise the token's color."""
    if custom_color:
        custom_color = custom_color.strip()
        return custom_color.lower() if _HEX_COLOR.match(custom_color) else DEFAULT_COLOR
    return STATUS_COLORS.get(color_token, DEFAULT_COLOR)


def normalize_source_type(source_type: str | None) -> str:
    source_type = (source_type or "").strip().lower()
    return source_type if source_type in SOURCE_TYPES else "manual"


def _short(value: str | None, limit: int) -> str | None:
    value = (value or "").strip()
    return value[:limit] or None


def source_poi_id_for(source_type: str, source_poi_id: str | None) -> str | None:
    # Only POI-sourced points keep a reference to the POI
    return _short(source_poi_id, NAME_MAX_LENGTH) if source_type == "poi" else None


def _required(value: str | None, field: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationError(f"{field} is required")
    return value


def _coordinate(value: Any, field: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number") from None
    if not math.isfinite(number):
        raise ValidationError(f"{field} must be a finite number")
    return number


class PlanningService:
    def __init__(self, repo: PlanningPointRepository, provider: PoiProvider | None = None, *, api_key: str = ""):
        self.repo = repo
        self.provider = provider
        self.api_key = api_key

    def list_points(self, city: str | None = None) -> list[PlanningPoint]:
        return self.repo.list_points(city)

    def get(self, point_id: str) -> PlanningPoint:
        point = self.repo.get(point_id)
        if point is None:
            raise NotFoundError("Planning point not found", code="planning_point_not_found")
        return point

    def create(
        self,
        city: str,
        name: str,
        longitude: float,
        latitude: float,
        *,
        radius_meters: int | None = None,
        color: str | None = None,
        status: str | None = None,
        priority_rank: int | None = None,
        notes: str | None = None,
        source_type: str | None = None,
        source_poi_id: str | None = None,
        updated_by: str | None = None,
    ) -> PlanningPoint:
        status = normalize_status(status)
        source_type = normalize_source_type(source_type)
        point = PlanningPoint(
            id=str(uuid.uuid4()),
            city=_required(city, "city"),
            name=_required(name, "name")[:NAME_MAX_LENGTH],
            longitude=_coordinate(longitude, "longitude"),
            latitude=_coordinate(latitude, "latitude"),
            radius_meters=clamp_radius(radius_meters),
            color=resolve_color(status, color),
            color_token=status,
            status=status,
            priority_rank=clamp_priority(priority_rank),
            notes=(notes or "").strip()[:NOTES_MAX_LENGTH],
            source_type=source_type,
            source_poi_id=source_poi_id_for(source_type, source_poi_id),
            updated_by=_short(updated_by, NAME_MAX_LENGTH),
        )
        created = self.repo.create(point)
        logger.info("Planning point created id=%s city=%s name=%s", created.id, created.city, created.name)
        return created

    def update(self, point_id: str, changes: dict[str, Any]) -> PlanningPoint:
        """Apply the fields present in ``changes``; absent fields stay as they are."""
        existing = self.get(point_id)
        updates: dict[str, Any] = {}

        if "city" in changes:
            updates["city"] = _required(changes["city"], "city")
        if "name" in changes:
            updates["name"] = _required(changes["name"], "name")[:NAME_MAX_LENGTH]
        if "longitude" in changes:
            updates["longitude"] = _coordinate(changes["longitude"], "longitude")
        if "latitude" in changes:
            updates["latitude"] = _coordinate(changes["latitude"], "latitude")
        if "radius_meters" in changes:
            updates["radius_meters"] = clamp_radius(changes["radius_meters"])

        # Status, token and color move together
        if {"status", "color_token", "color"} & changes.keys():
            status = normalize_status(changes["status"]) if "status" in changes else existing.status
            token = normalize_status(changes["color_token"]) if "color_token" in changes else status
            updates["status"] = status
            updates["color_token"] = token
            updates["color"] = resolve_color(token, changes.get("color"))

        if "priority_rank" in changes:
            updates["priority_rank"] = clamp_priority(changes["priority_rank"])
        if "notes" in changes:
            updates["notes"] = (changes["notes"] or "").strip()[:NOTES_MAX_LENGTH]

        if "source_type" in changes:
            source_type = normalize_source_type(changes["source_type"])
            updates["source_type"] = source_type
            if "source_poi_id" in changes or source_type != existing.source_type:
                updates["source_poi_id"] = source_poi_id_for(source_type, changes.get("source_poi_id"))
        elif "source_poi_id" in changes:
            updates["source_poi_id"] = source_poi_id_for(existing.source_type, changes["source_poi_id"])

        if "updated_by" in changes:
            updates["updated_by"] = _short(changes["updated_by"], NAME_MAX_LENGTH)

        if not updates:
            return existing
        updated = self.repo.update(point_id, updates)
        if updated is None:
            raise NotFoundError("Planning point not found", code="planning_point_not_found")
        logger.info("Planning point updated id=%s fields=%s", point_id, sorted(updates))
        return updated

    def delete(self, point_id: str) -> None:
        if not self.repo.delete(point_id):
            raise NotFoundError("Planning point not found", code="planning_point_not_found")
        logger.info("Planning point deleted id=%s", point_id)

    async def search_pois(self, city: str, keyword: str, limit: int = 8) -> list[PlanningSuggestion]:
        """First-page keyword suggestions for placing a new point."""
        city = _required(city, "city")
        keyword = _required(keyword, "keyword")
        if self.provider is None or not has_usable_api_key(self.api_key):
            raise ProviderKeyMissing("Map provider API key is not configured.")

        page_size = min(max(limit, 1), 25)
        try:
            pois = await self.provider.search_by_keyword(keyword, city, page_size=page_size, max_pages=1)
        except Exception as exc:
            error = to_provider_error(exc)
            logger.error("Planning POI search failed city=%s keyword=%s: %r", city, keyword, exc)
            if type(error) is ProviderError:
                raise ProviderError("POI search failed, please retry later.", code="poi_search_failed") from exc
            raise error from exc

        return [
            PlanningSuggestion(
                id=p.external_id,
                name=p.name or "unnamed place",
                address=p.address,
                longitude=p.longitude,
                latitude=p.latitude,
                city=p.city or city,
            )
            for p in pois[:limit]
        ]
