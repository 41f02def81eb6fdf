"""Database layer: storage handle, schema, the POI / analysis cache and planning point repositories.

Supports two modes:
- Remote (Turso): when a sync URL is given, connects via libsql with an embedded replica.
- Local (dev): otherwise uses a local SQLite file via libsql.

The ``Database`` handle is opened and closed by the composition root and
injected into the repositories; each repository call runs in its own
short transaction.
"""

import json
import logging
import math
import os
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, Protocol

import libsql_experimental as libsql

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

_POI_COLUMNS = (
    "keyword, city, poi_id, name, category, address, longitude, latitude, "
    "admin_code, raw_json, fetch_source, fetched_at"
)


def now_epoch() -> int:
    return int(time.time())


@dataclass
class PoiRecord:
    keyword: str
    city: str
    poi_id: str
    name: str
    category: str
    address: str
    longitude: float
    latitude: float
    fetched_at: int
    fetch_source: str = "amap"
    admin_code: str | None = None
    raw: dict = field(default_factory=dict)


@dataclass
class KeywordStat:
    keyword: str
    city: str
    count: int
    last_fetched_at: int


@dataclass
class AnalysisCacheEntry:
    city: str
    keyword_set_hash: str
    payload: dict
    computed_at: int


@dataclass(frozen=True)
class TtlPolicy:
    """Read-time freshness bound. ``max_age_seconds`` of None means unbounded."""

    max_age_seconds: int | None = None

    @classmethod
    def bounded(cls, seconds: int) -> "TtlPolicy":
        return cls(max_age_seconds=seconds)

    @classmethod
    def unbounded(cls) -> "TtlPolicy":
        return cls(max_age_seconds=None)

    @property
    def is_bounded(self) -> bool:
        return self.max_age_seconds is not None


class PoiStore(Protocol):
    def upsert(self, records: list[PoiRecord]) -> None: ...

    def get_by_keywords(self, city: str, keywords: list[str], max_age_seconds: int | None = None) -> list[PoiRecord]: ...

    def get_all(self, city: str | None = None, max_age_seconds: int | None = None) -> list[PoiRecord]: ...

    def keyword_stats(self, city: str | None = None, max_age_seconds: int | None = None) -> list[KeywordStat]: ...


class Database:
    def __init__(self, path: str, sync_url: str = "", auth_token: str = ""):
        self.path = path
        self.sync_url = sync_url
        self.auth_token = auth_token
        self._conn = None

    def open(self) -> "Database":
        if self._conn is not None:
            return self
        if self.sync_url:
            conn = libsql.connect(self.path, sync_url=self.sync_url, auth_token=self.auth_token)
            conn.sync()
        else:
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            conn = libsql.connect(self.path)
        self._conn = conn
        return self

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    @property
    def conn(self):
        if self._conn is None:
            raise RuntimeError(f"Database {self.path} is not open")
        return self._conn

    def execute(self, sql: str, params: tuple = ()):
        return self.conn.execute(sql, params)

    @contextmanager
    def transaction(self) -> Iterator["Database"]:
        """Commit everything executed in the block at once, or nothing."""
        self.conn.execute("BEGIN")
        try:
            yield self
        except BaseException:
            self.conn.rollback()
            raise
        self.conn.commit()
        if self.sync_url:
            self.conn.sync()


def _rows_to_dicts(cursor) -> list[dict]:
    """Convert cursor results to list of dicts using cursor.description."""
    if cursor.description is None:
        return []
    columns = [desc[0] for desc in cursor.description]
    return [dict(zip(columns, row)) for row in cursor.fetchall()]


def _row_to_dict(cursor) -> dict | None:
    """Convert single cursor result to dict."""
    if cursor.description is None:
        return None
    columns = [desc[0] for desc in cursor.description]
    row = cursor.fetchone()
    if row is None:
        return None
    return dict(zip(columns, row))


def init_db(database: Database) -> None:
    with database.transaction():
        database.execute("""
            CREATE TABLE IF NOT EXISTS metadata (
                key   TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        row = _row_to_dict(database.execute("SELECT value FROM metadata WHERE key = 'schema_version'"))
        if row and int(row["value"]) >= SCHEMA_VERSION:
            return
        database.execute("""
            CREATE TABLE IF NOT EXISTS poi_cache (
                id           INTEGER PRIMARY KEY AUTOINCREMENT,
                keyword      TEXT NOT NULL,
                city         TEXT NOT NULL,
                poi_id       TEXT NOT NULL,
                name         TEXT,
                category     TEXT,
                address      TEXT,
                longitude    REAL,
                latitude     REAL,
                admin_code   TEXT,
                raw_json     TEXT,
                fetch_source TEXT DEFAULT 'amap',
                fetched_at   INTEGER NOT NULL,
                UNIQUE(keyword, city, poi_id)
            )
        """)
        database.execute("""
            CREATE TABLE IF NOT EXISTS poi_analysis_cache (
                id               INTEGER PRIMARY KEY AUTOINCREMENT,
                city             TEXT NOT NULL,
                keyword_set_hash TEXT NOT NULL,
                result_json      TEXT NOT NULL,
                computed_at      INTEGER NOT NULL,
                UNIQUE(city, keyword_set_hash)
            )
        """)
        database.execute("""
            CREATE TABLE IF NOT EXISTS planning_points (
                id             TEXT PRIMARY KEY,
                city           TEXT NOT NULL,
                name           TEXT NOT NULL,
                longitude      REAL NOT NULL,
                latitude       REAL NOT NULL,
                radius_meters  INTEGER NOT NULL,
                color          TEXT NOT NULL,
                color_token    TEXT NOT NULL,
                status         TEXT NOT NULL,
                priority_rank  INTEGER NOT NULL,
                notes          TEXT,
                source_type    TEXT NOT NULL,
                source_poi_id  TEXT,
                updated_by     TEXT,
                created_at     INTEGER NOT NULL,
                updated_at     INTEGER NOT NULL
            )
        """)
        database.execute("CREATE INDEX IF NOT EXISTS idx_planning_points_city ON planning_points(city)")
        database.execute(
            "INSERT OR REPLACE INTO metadata (key, value) VALUES ('schema_version', ?)",
            (str(SCHEMA_VERSION),),
        )
    logger.info("Database schema ready at %s (version %d)", database.path, SCHEMA_VERSION)


# ---- POI cache ----

def _finite(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def _normalize_row(r: PoiRecord) -> tuple:
    return (
        (r.keyword or "").lower(),
        r.city or "",
        str(r.poi_id or ""),
        r.name or "",
        r.category or "",
        r.address or "",
        _finite(r.longitude),
        _finite(r.latitude),
        r.admin_code,
        json.dumps(r.raw or {}, ensure_ascii=False),
        r.fetch_source or "amap",
        int(r.fetched_at) if r.fetched_at else now_epoch(),
    )


def _record_from_row(d: dict) -> PoiRecord:
    return PoiRecord(
        keyword=d["keyword"],
        city=d["city"],
        poi_id=d["poi_id"],
        name=d["name"] or "",
        category=d["category"] or "",
        address=d["address"] or "",
        longitude=d["longitude"] or 0.0,
        latitude=d["latitude"] or 0.0,
        fetched_at=d["fetched_at"],
        fetch_source=d["fetch_source"] or "amap",
        admin_code=d["admin_code"],
        raw=json.loads(d["raw_json"]) if d["raw_json"] else {},
    )


class PoiCacheRepository:
    """libsql-backed ``PoiStore``. Rows are unique on (keyword, city, poi_id)."""

    def __init__(self, database: Database):
        self.db = database

    def upsert(self, records: list[PoiRecord]) -> None:
        if not records:
            return
        with self.db.transaction():
            for r in records:
                self.db.execute(
                    f"INSERT OR REPLACE INTO poi_cache ({_POI_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    _normalize_row(r),
                )

    def get_by_keywords(self, city: str, keywords: list[str], max_age_seconds: int | None = None) -> list[PoiRecord]:
        if not keywords:
            return []
        placeholders = ",".join("?" for _ in keywords)
        conditions = ["city = ?", f"keyword IN ({placeholders})"]
        params: list[Any] = [city, *keywords]
        if max_age_seconds is not None:
            conditions.append("fetched_at >= ?")
            params.append(now_epoch() - max_age_seconds)
        return self._select(conditions, params)

    def get_all(self, city: str | None = None, max_age_seconds: int | None = None) -> list[PoiRecord]:
        conditions: list[str] = []
        params: list[Any] = []
        if city and city.strip():
            conditions.append("city = ?")
            params.append(city.strip())
        if max_age_seconds is not None:
            conditions.append("fetched_at >= ?")
            params.append(now_epoch() - max_age_seconds)
        return self._select(conditions, params)

    def keyword_stats(self, city: str | None = None, max_age_seconds: int | None = None) -> list[KeywordStat]:
        conditions: list[str] = []
        params: list[Any] = []
        if city and city.strip():
            conditions.append("city = ?")
            params.append(city.strip())
        if max_age_seconds is not None:
            conditions.append("fetched_at >= ?")
            params.append(now_epoch() - max_age_seconds)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        cursor = self.db.execute(
            f"""SELECT keyword, city, COUNT(*) AS count, MAX(fetched_at) AS last_fetched_at
                FROM poi_cache {where}
                GROUP BY keyword, city
                ORDER BY count DESC, keyword""",
            tuple(params),
        )
        return [
            KeywordStat(
                keyword=d["keyword"],
                city=d["city"],
                count=int(d["count"] or 0),
                last_fetched_at=int(d["last_fetched_at"] or 0),
            )
            for d in _rows_to_dicts(cursor)
        ]

    def _select(self, conditions: list[str], params: list[Any]) -> list[PoiRecord]:
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        cursor = self.db.execute(f"SELECT {_POI_COLUMNS} FROM poi_cache {where} ORDER BY id", tuple(params))
        return [_record_from_row(d) for d in _rows_to_dicts(cursor)]


# ---- Analysis cache ----

class AnalysisCacheRepository:
    """Memoized analysis payloads, one row per (city, keyword_set_hash)."""

    def __init__(self, database: Database):
        self.db = database

    def store(self, city: str, keyword_set_hash: str, payload: dict, computed_at: int | None = None) -> None:
        with self.db.transaction():
            self.db.execute(
                """INSERT OR REPLACE INTO poi_analysis_cache (city, keyword_set_hash, result_json, computed_at)
                   VALUES (?, ?, ?, ?)""",
                (city, keyword_set_hash, json.dumps(payload, ensure_ascii=False), computed_at or now_epoch()),
            )

    def load(self, city: str, keyword_set_hash: str, max_age_seconds: int | None = None) -> AnalysisCacheEntry | None:
        conditions = ["city = ?", "keyword_set_hash = ?"]
        params: list[Any] = [city, keyword_set_hash]
        if max_age_seconds is not None:
            conditions.append("computed_at >= ?")
            params.append(now_epoch() - max_age_seconds)
        cursor = self.db.execute(
            f"""SELECT city, keyword_set_hash, result_json, computed_at
                FROM poi_analysis_cache WHERE {' AND '.join(conditions)}""",
            tuple(params),
        )
        d = _row_to_dict(cursor)
        if not d:
            return None
        return AnalysisCacheEntry(
            city=d["city"],
            keyword_set_hash=d["keyword_set_hash"],
            payload=json.loads(d["result_json"]),
            computed_at=d["computed_at"],
        )


# ---- Planning points ----

_PLANNING_COLUMNS = (
    "id, city, name, longitude, latitude, radius_meters, color, color_token, status, "
    "priority_rank, notes, source_type, source_poi_id, updated_by, created_at, updated_at"
)

# Fields a caller may change after creation
PLANNING_UPDATABLE = (
    "city", "name", "longitude", "latitude", "radius_meters", "color", "color_token",
    "status", "priority_rank", "notes", "source_type", "source_poi_id", "updated_by",
)


@dataclass
class PlanningPoint:
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
    notes: str = ""
    source_type: str = "manual"
    source_poi_id: str | None = None
    updated_by: str | None = None
    created_at: int = 0
    updated_at: int = 0


def _planning_from_row(d: dict) -> PlanningPoint:
    return PlanningPoint(
        id=str(d["id"]),
        city=d["city"] or "",
        name=d["name"] or "",
        longitude=float(d["longitude"] or 0.0),
        latitude=float(d["latitude"] or 0.0),
        radius_meters=int(d["radius_meters"] or 0),
        color=d["color"] or "#22c55e",
        color_token=d["color_token"] or "pending",
        status=d["status"] or "pending",
        priority_rank=int(d["priority_rank"] if d["priority_rank"] is not None else 100),
        notes=d["notes"] or "",
        source_type=d["source_type"] or "manual",
        source_poi_id=d["source_poi_id"] or None,
        updated_by=d["updated_by"] or None,
        created_at=int(d["created_at"] or 0),
        updated_at=int(d["updated_at"] or 0),
    )


class PlanningPointRepository:
    """Candidate sites kept by the planning view, one row per point id."""

    def __init__(self, database: Database):
        self.db = database

    def list_points(self, city: str | None = None) -> list[PlanningPoint]:
        conditions: list[str] = []
        params: list[Any] = []
        if city and city.strip():
            conditions.append("city = ?")
            params.append(city.strip())
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        cursor = self.db.execute(
            f"SELECT {_PLANNING_COLUMNS} FROM planning_points {where} ORDER BY created_at DESC, rowid DESC",
            tuple(params),
        )
        return [_planning_from_row(d) for d in _rows_to_dicts(cursor)]

    def get(self, point_id: str) -> PlanningPoint | None:
        d = _row_to_dict(self.db.execute(f"SELECT {_PLANNING_COLUMNS} FROM planning_points WHERE id = ?", (point_id,)))
        return _planning_from_row(d) if d else None

    def create(self, point: PlanningPoint) -> PlanningPoint:
        now = now_epoch()
        point.created_at = point.created_at or now
        point.updated_at = point.updated_at or now
        with self.db.transaction():
            self.db.execute(
                f"INSERT INTO planning_points ({_PLANNING_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    point.id, point.city, point.name, point.longitude, point.latitude,
                    point.radius_meters, point.color, point.color_token, point.status,
                    point.priority_rank, point.notes, point.source_type, point.source_poi_id,
                    point.updated_by, point.created_at, point.updated_at,
                ),
            )
        return point

    def update(self, point_id: str, updates: dict[str, Any]) -> PlanningPoint | None:
        changes = {k: v for k, v in updates.items() if k in PLANNING_UPDATABLE}
        if changes:
            assignments = ", ".join(f"{column} = ?" for column in changes)
            with self.db.transaction():
                self.db.execute(
                    f"UPDATE planning_points SET {assignments}, updated_at = ? WHERE id = ?",
                    (*changes.values(), now_epoch(), point_id),
                )
        return self.get(point_id)

    def delete(self, point_id: str) -> bool:
        if self.get(point_id) is None:
            return False
        with self.db.transaction():
            self.db.execute("DELETE FROM planning_points WHERE id = ?", (point_id,))
        return True
