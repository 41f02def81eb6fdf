"""FastAPI application for brand density and site analysis over cached POIs."""

import asyncio
import json
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

import config
import db
from analysis import TargetAnalysisService
from cache_service import PoiCacheService
from density import BrandDensityService
from errors import AppError, ProviderKeyMissing
from models import (
    AnalysisRequest,
    AnalysisResult,
    CacheStatsResult,
    DensityRequest,
    DensityResult,
    PlanningPointCreate,
    PlanningPointModel,
    PlanningPointUpdate,
    PlanningSearchRequest,
    PlanningSuggestion,
    RefreshRequest,
)
from planning import PlanningService
from provider import AmapProvider, has_usable_api_key

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    database = db.Database(config.DATABASE_PATH, config.TURSO_DATABASE_URL, config.TURSO_AUTH_TOKEN).open()
    db.init_db(database)
    logger.info("Database initialized at %s", config.DATABASE_PATH)
    if not has_usable_api_key(config.AMAP_API_KEY):
        logger.warning("No AMap API key configured; set AMAP_API_KEY to enable cache refresh")

    provider = AmapProvider(config.AMAP_API_KEY)
    poi_store = db.PoiCacheRepository(database)
    app.state.database = database
    app.state.density = BrandDensityService(poi_store, db.AnalysisCacheRepository(database), provider)
    app.state.analysis = TargetAnalysisService(poi_store, provider)
    app.state.cache = PoiCacheService(poi_store, provider)
    app.state.planning = PlanningService(db.PlanningPointRepository(database), provider, api_key=config.AMAP_API_KEY)
    try:
        yield
    finally:
        await provider.aclose()
        database.close()


app = FastAPI(title="POI Location Scout", version=VERSION, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------- Errors ----------

@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    logger.warning("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "validation_error", "message": "Invalid request", "details": jsonable_encoder(exc.errors())},
    )


# ---------- Admin auth for write endpoints ----------

async def verify_admin(x_api_key: str = Header(default="")):
    """Protect write endpoints with an API key. No key configured = allow (local dev)."""
    admin_key = config.ADMIN_API_KEY
    if not admin_key:
        return
    if x_api_key != admin_key:
        raise HTTPException(403, "Invalid or missing API key")


def _density_service(request: Request) -> BrandDensityService:
    return request.app.state.density


def _analysis_service(request: Request) -> TargetAnalysisService:
    return request.app.state.analysis


def _cache_service(request: Request) -> PoiCacheService:
    return request.app.state.cache


def _planning_service(request: Request) -> PlanningService:
    return request.app.state.planning


def _ttl(use_ttl: bool) -> db.TtlPolicy:
    return db.TtlPolicy.bounded(config.CACHE_TTL_SECONDS) if use_ttl else db.TtlPolicy.unbounded()


# ---------- Health ----------

@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/api/status")
async def status(request: Request):
    return {
        "service": "poi-location-scout",
        "status": "ok",
        "version": VERSION,
        "provider": "amap",
        "provider_key_configured": has_usable_api_key(config.AMAP_API_KEY),
        "cache_ttl_hours": config.CACHE_TTL_HOURS,
        "database_path": request.app.state.database.path,
        "remote_sync": bool(config.TURSO_DATABASE_URL),
    }


# ---------- Analysis ----------

@app.post("/api/poi/density", response_model=DensityResult)
async def density(payload: DensityRequest, service: BrandDensityService = Depends(_density_service)):
    return await service.compute_density(
        payload.city, payload.keywords, payload.main_brand, ttl_policy=_ttl(payload.use_ttl),
    )


@app.post("/api/poi/analysis", response_model=AnalysisResult)
async def analysis(payload: AnalysisRequest, service: TargetAnalysisService = Depends(_analysis_service)):
    return await service.analyze(
        payload.city, payload.target, payload.main_brand, payload.competitor_keywords, payload.radius_meters,
    )


# ---------- Cache ----------

@app.get("/api/poi/cache/stats", response_model=CacheStatsResult)
async def cache_stats(
    city: str | None = Query(None),
    use_ttl: bool = Query(False, description="Only count rows within the cache TTL"),
    service: PoiCacheService = Depends(_cache_service),
):
    return service.stats((city or "").strip() or None, _ttl(use_ttl))


@app.get("/api/poi/cache/consistency-check")
async def cache_consistency(city: str | None = Query(None), service: PoiCacheService = Depends(_cache_service)):
    city = (city or "").strip() or None
    bounded = service.stats(city, _ttl(True))
    unbounded = service.stats(city, _ttl(False))
    return {
        "city": city,
        "comparison": {
            "with_ttl": {"total": bounded.total, "keywords": len(bounded.stats)},
            "without_ttl": {"total": unbounded.total, "keywords": len(unbounded.stats)},
            "difference": {
                "total": unbounded.total - bounded.total,
                "keywords": len(unbounded.stats) - len(bounded.stats),
            },
        },
        "distribution": service.distribution(city).model_dump(),
    }


def _ndjson(payload: dict) -> str:
    return json.dumps(payload, ensure_ascii=False) + "\n"


def _refresh_finished(queue: asyncio.Queue):
    def _done(task: asyncio.Task) -> None:
        if not task.cancelled():
            exc = task.exception()
            if isinstance(exc, AppError):
                logger.warning("POI cache refresh aborted: %s %s", exc.code, exc.message)
            elif exc is not None:
                logger.error("POI cache refresh failed", exc_info=exc)
        queue.put_nowait(None)
    return _done


async def _refresh_stream(service: PoiCacheService, payload: RefreshRequest):
    queue: asyncio.Queue = asyncio.Queue()
    yield _ndjson({"status": "started", "city": payload.city, "keywords": payload.keywords})

    task = asyncio.create_task(service.refresh(payload.city, payload.keywords, on_progress=queue.put_nowait))
    task.add_done_callback(_refresh_finished(queue))
    try:
        while True:
            event = await queue.get()
            if event is None:
                break
            yield _ndjson(event.model_dump())
    finally:
        # Client went away mid-stream
        if not task.done():
            logger.warning("POI cache refresh cancelled city=%s", payload.city)
            task.cancel()

    try:
        result = task.result()
    except AppError as exc:
        yield _ndjson({"status": "error", **exc.to_dict()})
        return
    except Exception:
        yield _ndjson({"status": "error", "error": "internal_error", "message": "Cache refresh failed"})
        return
    yield _ndjson({"status": "completed", **result.model_dump()})


@app.post("/api/poi/cache/refresh", dependencies=[Depends(verify_admin)])
async def cache_refresh(payload: RefreshRequest, service: PoiCacheService = Depends(_cache_service)):
    if not has_usable_api_key(service.api_key):
        raise ProviderKeyMissing("Map provider API key is not configured.")
    return StreamingResponse(_refresh_stream(service, payload), media_type="application/x-ndjson")


# ---------- Planning points ----------

def _point_model(point: db.PlanningPoint) -> PlanningPointModel:
    return PlanningPointModel(**vars(point))


@app.get("/api/planning/points", response_model=list[PlanningPointModel])
async def list_planning_points(
    city: str | None = Query(None),
    service: PlanningService = Depends(_planning_service),
):
    return [_point_model(p) for p in service.list_points((city or "").strip() or None)]


@app.post("/api/planning/points", response_model=PlanningPointModel, status_code=201, dependencies=[Depends(verify_admin)])
async def create_planning_point(payload: PlanningPointCreate, service: PlanningService = Depends(_planning_service)):
    fields = payload.model_dump(exclude={"city", "name", "center"})
    point = service.create(payload.city, payload.name, payload.center.lng, payload.center.lat, **fields)
    return _point_model(point)


@app.put("/api/planning/points/{point_id}", response_model=PlanningPointModel, dependencies=[Depends(verify_admin)])
async def update_planning_point(
    point_id: str,
    payload: PlanningPointUpdate,
    service: PlanningService = Depends(_planning_service),
):
    changes = payload.model_dump(exclude_unset=True, exclude={"center"})
    if payload.center is not None:
        changes["longitude"] = payload.center.lng
        changes["latitude"] = payload.center.lat
    return _point_model(service.update(point_id, changes))


@app.delete("/api/planning/points/{point_id}", dependencies=[Depends(verify_admin)])
async def delete_planning_point(point_id: str, service: PlanningService = Depends(_planning_service)):
    service.delete(point_id)
    return {"success": True}


@app.post("/api/planning/search", response_model=list[PlanningSuggestion])
async def search_planning_pois(payload: PlanningSearchRequest, service: PlanningService = Depends(_planning_service)):
    return await service.search_pois(payload.city, payload.keyword, payload.limit)
