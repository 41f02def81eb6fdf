import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# --- AMap (Gaode) place API ---
AMAP_API_KEY = (os.getenv("AMAP_API_KEY") or os.getenv("AMAP_KEY") or "").strip()
AMAP_BASE_URL = os.getenv("AMAP_BASE_URL", "https://restapi.amap.com")
AMAP_PLACE_TEXT_PATH = "/v3/place/text"
AMAP_PLACE_AROUND_PATH = "/v3/place/around"
AMAP_TIMEOUT_S = float(os.getenv("AMAP_TIMEOUT_S", "5"))
AMAP_REQUESTS_PER_MINUTE = int(os.getenv("AMAP_REQUESTS_PER_MINUTE", "50"))  # 0 = unlimited

# Provider paging limits (per AMap docs: page 1-100 for text search, 50 for around)
MAX_PAGE_SIZE = 25
KEYWORD_SEARCH_MAX_PAGES = 100
AROUND_SEARCH_MAX_PAGES = 50

# --- Storage ---
DATABASE_PATH = os.getenv("SQLITE_DB_PATH", "storage/poi-cache.db")
TURSO_DATABASE_URL = os.getenv("TURSO_DATABASE_URL", "")
TURSO_AUTH_TOKEN = os.getenv("TURSO_AUTH_TOKEN", "")

# --- Cache ---
CACHE_TTL_HOURS = int(os.getenv("CACHE_TTL_HOURS", "24"))
CACHE_TTL_SECONDS = CACHE_TTL_HOURS * 3600

# Read paths are cache-only unless this is switched on
FETCH_MISSING_ON_READ = _env_bool("FETCH_MISSING_ON_READ", False)

# --- Admin / HTTP ---
ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "")
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# --- Spatial ---
HEATMAP_GRID_SIZE_M = 500
DENSITY_GRID_SIZE_M = 500

# Main-brand points in the target's cell needed for each density level
DENSITY_HIGH_MIN = 10
DENSITY_MEDIUM_MIN = 4

MAIN_BRAND_RINGS_M = (500, 1000)
COMPETITOR_RINGS_M = (100, 300)

SAMPLE_POI_LIMIT = 20
