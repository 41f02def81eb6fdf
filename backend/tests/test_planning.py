"""Tests for planning point normalisation, persistence and POI suggestions."""

import asyncio
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from errors import NotFoundError, ProviderError, ProviderKeyMissing, ProviderTimeout, ValidationError
from planning import NOTES_MAX_LENGTH, PlanningService


@pytest.fixture
def service(planning_repo):
    return PlanningService(planning_repo)


def test_create_applies_defaults(service):
    point = service.create("Shanghai", "  Jing'an corner ", 121.45, 31.22)

    assert point.id
    assert point.name == "Jing'an corner"
    assert point.radius_meters == 1000
    assert point.status == "pending"
    assert point.color_token == "pending"
    assert point.color == "#22c55e"
    assert point.priority_rank == 100
    assert point.source_type == "manual"
    assert point.created_at > 0
    assert point.updated_at == point.created_at


def test_create_clamps_and_normalises(service):
    point = service.create(
        "Shanghai",
        "Site",
        121.45,
        31.22,
        radius_meters=5000,
        status="bogus",
        priority_rank=0,
        color="#ZZZZZZ",
        notes="x" * (NOTES_MAX_LENGTH + 50),
    )
    assert point.radius_meters == 2000
    assert point.priority_rank == 1
    assert point.status == "pending"
    assert point.color == "#22c55e"
    assert len(point.notes) == NOTES_MAX_LENGTH

    small = service.create("Shanghai", "Small", 121.45, 31.22, radius_meters=10, priority_rank=5000)
    assert small.radius_meters == 100
    assert small.priority_rank == 999


def test_create_status_picks_color(service):
    priority = service.create("Shanghai", "A", 121.45, 31.22, status="Priority")
    custom = service.create("Shanghai", "B", 121.45, 31.22, status="dropped", color="#ABCDEF")

    assert priority.color == "#2563eb"
    assert custom.status == "dropped"
    assert custom.color == "#abcdef"


def test_source_poi_id_kept_only_for_poi_points(service):
    manual = service.create("Shanghai", "A", 121.45, 31.22, source_poi_id="B0001")
    from_poi = service.create("Shanghai", "B", 121.45, 31.22, source_type="POI", source_poi_id=" B0002 ")

    assert manual.source_poi_id is None
    assert from_poi.source_type == "poi"
    assert from_poi.source_poi_id == "B0002"


@pytest.mark.parametrize("city, name, lng", [("", "A", 121.4), ("Shanghai", "   ", 121.4), ("Shanghai", "A", float("nan"))])
def test_create_rejects_missing_fields(service, city, name, lng):
    with pytest.raises(ValidationError):
        service.create(city, name, lng, 31.2)


def test_list_filters_by_city_newest_first(service):
    first = service.create("Shanghai", "first", 121.45, 31.22)
    second = service.create("Shanghai", "second", 121.46, 31.23)
    service.create("Hangzhou", "elsewhere", 120.15, 30.28)

    shanghai = service.list_points("Shanghai")
    assert [p.id for p in shanghai] == [second.id, first.id]
    assert len(service.list_points()) == 3


def test_update_applies_only_given_fields(service):
    point = service.create("Shanghai", "Site", 121.45, 31.22, notes="keep me")

    updated = service.update(point.id, {"name": "Renamed", "radius_meters": 9999})

    assert updated.name == "Renamed"
    assert updated.radius_meters == 2000
    assert updated.notes == "keep me"
    assert updated.status == "pending"
    assert updated.updated_at >= point.updated_at


def test_update_status_moves_color(service):
    point = service.create("Shanghai", "Site", 121.45, 31.22)

    promoted = service.update(point.id, {"status": "priority"})
    assert (promoted.status, promoted.color_token, promoted.color) == ("priority", "priority", "#2563eb")

    recolored = service.update(point.id, {"color": "#123456"})
    assert recolored.status == "priority"
    assert recolored.color == "#123456"


def test_update_missing_point(service):
    with pytest.raises(NotFoundError) as exc_info:
        service.update("nope", {"name": "x"})
    assert exc_info.value.code == "planning_point_not_found"
    assert exc_info.value.status == 404


def test_delete(service):
    point = service.create("Shanghai", "Site", 121.45, 31.22)

    service.delete(point.id)

    assert service.list_points() == []
    with pytest.raises(NotFoundError):
        service.delete(point.id)


def test_search_returns_first_page_suggestions(planning_repo, fake_provider, make_poi):
    provider = fake_provider({"heytea": [make_poi(f"h{i}", name=f"HeyTea {i}") for i in range(10)]})
    service = PlanningService(planning_repo, provider, api_key="test-key")

    suggestions = asyncio.run(service.search_pois("Shanghai", " heytea ", limit=8))

    assert provider.calls == [("heytea", "Shanghai")]
    assert provider.page_requests == [(8, 1)]
    assert len(suggestions) == 8
    assert suggestions[0].id == "h0"
    assert suggestions[0].name == "HeyTea 0"
    assert suggestions[0].city == "Shanghai"


def test_search_without_key(planning_repo, fake_provider):
    provider = fake_provider({})

    with pytest.raises(ProviderKeyMissing):
        asyncio.run(PlanningService(planning_repo, provider, api_key="").search_pois("Shanghai", "heytea"))
    with pytest.raises(ProviderKeyMissing):
        asyncio.run(PlanningService(planning_repo, None, api_key="test-key").search_pois("Shanghai", "heytea"))
    assert provider.calls == []


def test_search_failures(planning_repo, fake_provider):
    provider = fake_provider({"boom": RuntimeError("upstream exploded"), "slow": ProviderTimeout("slow")})
    service = PlanningService(planning_repo, provider, api_key="test-key")

    with pytest.raises(ProviderError) as exc_info:
        asyncio.run(service.search_pois("Shanghai", "boom"))
    assert exc_info.value.code == "poi_search_failed"

    with pytest.raises(ProviderTimeout):
        asyncio.run(service.search_pois("Shanghai", "slow"))
