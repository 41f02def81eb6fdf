import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

import db
from provider import Poi


@pytest.fixture
def database(tmp_path):
    database = db.Database(str(tmp_path / "test.db")).open()
    db.init_db(database)
    yield database
    database.close()


@pytest.fixture
def poi_repo(database):
    return db.PoiCacheRepository(database)


@pytest.fixture
def analysis_repo(database):
    return db.AnalysisCacheRepository(database)


@pytest.fixture
def planning_repo(database):
    return db.PlanningPointRepository(database)


@pytest.fixture
def make_record():
    def _make(poi_id, keyword="heytea", city="Shanghai", lng=121.464, lat=31.215, name=None, fetched_at=None):
        return db.PoiRecord(
            keyword=keyword,
            city=city,
            poi_id=poi_id,
            name=name or f"{keyword} {poi_id}",
            category="tea",
            address="",
            longitude=lng,
            latitude=lat,
            fetched_at=fetched_at or db.now_epoch(),
        )
    return _make


class FakeProvider:
    """Keyword search over a fixed dict; values are lists of Poi or an exception to raise."""

    def __init__(self, data):
        self.data = data
        self.calls: list[tuple[str, str]] = []
        self.page_requests: list[tuple[int, int | None]] = []

    async def search_by_keyword(self, keyword, city, page_size=25, max_pages=None):
        self.calls.append((keyword, city))
        self.page_requests.append((page_size, max_pages))
        result = self.data.get(keyword, [])
        if isinstance(result, Exception):
            raise result
        return list(result)

    async def search_around(self, center, radius_m, keyword=None, page_size=25):
        self.calls.append((keyword, f"{center.lng},{center.lat}"))
        result = self.data.get(keyword, [])
        if isinstance(result, Exception):
            raise result
        return list(result)


def poi(external_id, lng=121.464, lat=31.215, name=None, city="Shanghai"):
    return Poi(
        external_id=external_id,
        name=name or external_id,
        category="tea",
        address="",
        longitude=lng,
        latitude=lat,
        city=city,
        raw={"id": external_id},
    )


@pytest.fixture
def fake_provider():
    return FakeProvider


@pytest.fixture
def make_poi():
    return poi
