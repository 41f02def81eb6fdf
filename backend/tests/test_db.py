"""Tests for the POI and analysis cache repositories."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

import db


def test_init_db_is_idempotent(database):
    db.init_db(database)
    row = database.execute("SELECT value FROM metadata WHERE key = 'schema_version'").fetchone()
    assert row[0] == str(db.SCHEMA_VERSION)


def test_closed_database_refuses_queries(tmp_path):
    database = db.Database(str(tmp_path / "nested" / "x.db")).open()
    database.close()
    with pytest.raises(RuntimeError):
        database.execute("SELECT 1")


def test_upsert_dedupes_last_write_wins(poi_repo, make_record):
    poi_repo.upsert([
        make_record("p1", name="first"),
        make_record("p2"),
        make_record("p1", name="second", lng=121.5),
    ])
    poi_repo.upsert([make_record("p2", name="p2 again")])

    rows = poi_repo.get_by_keywords("Shanghai", ["heytea"])
    by_id = {r.poi_id: r for r in rows}
    assert len(rows) == 2
    assert by_id["p1"].name == "second"
    assert by_id["p1"].longitude == 121.5
    assert by_id["p2"].name == "p2 again"


def test_same_place_under_two_keywords_is_two_rows(poi_repo, make_record):
    poi_repo.upsert([make_record("p1", keyword="heytea"), make_record("p1", keyword="nayuki")])
    assert len(poi_repo.get_all("Shanghai")) == 2


def test_upsert_normalizes_rows(poi_repo, make_record):
    record = make_record("p1", keyword="HeyTea", lng=float("nan"))
    record.raw = {"name": "喜茶"}
    poi_repo.upsert([record])

    [row] = poi_repo.get_all()
    assert row.keyword == "heytea"
    assert row.longitude == 0.0
    assert row.raw == {"name": "喜茶"}
    assert row.fetch_source == "amap"


def test_upsert_empty_is_noop(poi_repo):
    poi_repo.upsert([])
    assert poi_repo.get_all() == []


def test_failed_upsert_leaves_nothing_behind(poi_repo, make_record):
    bad = make_record("p2")
    bad.fetched_at = "not-a-timestamp"
    with pytest.raises(ValueError):
        poi_repo.upsert([make_record("p1"), bad])
    assert poi_repo.get_all() == []


def test_get_by_keywords_filters_city_keyword_and_age(poi_repo, make_record):
    old = db.now_epoch() - 10 * 86400
    poi_repo.upsert([
        make_record("fresh"),
        make_record("stale", fetched_at=old),
        make_record("other-city", city="Beijing"),
        make_record("other-keyword", keyword="nayuki"),
    ])

    unbounded = {r.poi_id for r in poi_repo.get_by_keywords("Shanghai", ["heytea"])}
    bounded = {r.poi_id for r in poi_repo.get_by_keywords("Shanghai", ["heytea"], max_age_seconds=86400)}

    assert unbounded == {"fresh", "stale"}
    assert bounded == {"fresh"}
    assert poi_repo.get_by_keywords("Shanghai", []) == []


def test_get_all_filters(poi_repo, make_record):
    old = db.now_epoch() - 10 * 86400
    poi_repo.upsert([
        make_record("a"),
        make_record("b", city="Beijing", fetched_at=old),
    ])
    assert len(poi_repo.get_all()) == 2
    assert [r.poi_id for r in poi_repo.get_all("Beijing")] == ["b"]
    assert [r.poi_id for r in poi_repo.get_all(max_age_seconds=3600)] == ["a"]


def test_keyword_stats(poi_repo, make_record):
    now = db.now_epoch()
    poi_repo.upsert([
        make_record("a", fetched_at=now - 100),
        make_record("b", fetched_at=now - 10),
        make_record("c", keyword="nayuki", fetched_at=now - 5 * 86400),
        make_record("d", keyword="nayuki", city="Beijing"),
    ])

    stats = poi_repo.keyword_stats("Shanghai")
    assert [(s.keyword, s.count) for s in stats] == [("heytea", 2), ("nayuki", 1)]
    assert stats[0].last_fetched_at == now - 10

    assert sum(s.count for s in poi_repo.keyword_stats()) == 4
    assert [s.keyword for s in poi_repo.keyword_stats("Shanghai", max_age_seconds=86400)] == ["heytea"]


def test_analysis_cache_round_trip_and_ttl(analysis_repo):
    now = db.now_epoch()
    analysis_repo.store("Shanghai", "h1", {"heatmap": [1, 2]}, computed_at=now)
    analysis_repo.store("Shanghai", "h2", {"heatmap": []}, computed_at=now - 2 * 86400)

    entry = analysis_repo.load("Shanghai", "h1", max_age_seconds=86400)
    assert entry.payload == {"heatmap": [1, 2]}
    assert entry.computed_at == now

    assert analysis_repo.load("Shanghai", "h2", max_age_seconds=86400) is None
    assert analysis_repo.load("Shanghai", "h2") is not None
    assert analysis_repo.load("Beijing", "h1") is None


def test_analysis_cache_overwrites(analysis_repo):
    analysis_repo.store("Shanghai", "h1", {"v": 1})
    analysis_repo.store("Shanghai", "h1", {"v": 2})
    assert analysis_repo.load("Shanghai", "h1").payload == {"v": 2}


def test_ttl_policy():
    assert db.TtlPolicy.unbounded().max_age_seconds is None
    assert not db.TtlPolicy.unbounded().is_bounded
    assert db.TtlPolicy.bounded(60).max_age_seconds == 60
    assert db.TtlPolicy.bounded(60).is_bounded


def planning_point(point_id, city="Shanghai", created_at=0):
    return db.PlanningPoint(
        id=point_id,
        city=city,
        name=f"site {point_id}",
        longitude=121.45,
        latitude=31.22,
        radius_meters=1000,
        color="#22c55e",
        color_token="pending",
        status="pending",
        priority_rank=100,
        created_at=created_at,
    )


def test_planning_points_listed_newest_first(planning_repo):
    planning_repo.create(planning_point("old", created_at=1_000))
    planning_repo.create(planning_point("new", created_at=2_000))
    planning_repo.create(planning_point("far", city="Hangzhou", created_at=3_000))

    assert [p.id for p in planning_repo.list_points("Shanghai")] == ["new", "old"]
    assert [p.id for p in planning_repo.list_points()] == ["far", "new", "old"]
    assert planning_repo.get("missing") is None


def test_planning_point_update_ignores_unknown_columns(planning_repo):
    planning_repo.create(planning_point("a", created_at=1_000))

    updated = planning_repo.update("a", {"notes": "corner", "id": "hijack", "created_at": 5})

    assert updated.id == "a"
    assert updated.notes == "corner"
    assert updated.created_at == 1_000
    assert updated.updated_at > 1_000
    assert planning_repo.update("missing", {"notes": "x"}) is None


def test_planning_point_delete(planning_repo):
    planning_repo.create(planning_point("a"))

    assert planning_repo.delete("a") is True
    assert planning_repo.delete("a") is False
    assert planning_repo.list_points() == []
