"""
Centralized constants for the report engine.

Every value reads from an environment variable with a default, so a local
checkout runs with zero configuration.
"""
import os
from datetime import datetime, timezone
from pathlib import Path

_PACKAGE_ROOT = Path(__file__).resolve().parent.parent.parent

# --- API Version ---
API_VERSION = os.getenv("HVAC_REPORTS_API_VERSION", "1.0.0")

# --- Config files ---
CATALOG_PATH = os.getenv("REPORT_CATALOG_PATH", str(_PACKAGE_ROOT / "config" / "catalog.yaml"))
WEIGHTING_PATH = os.getenv("REPORT_WEIGHTING_PATH", str(_PACKAGE_ROOT / "config" / "weighting.yaml"))

# --- Result cache ---
CACHE_TTL_SECONDS = float(os.getenv("REPORT_CACHE_TTL", "300.0"))
CACHE_MAX_ENTRIES = int(os.getenv("REPORT_CACHE_MAX_ENTRIES", "1000"))
CACHE_MAX_BYTES = int(os.getenv("REPORT_CACHE_MAX_BYTES", str(50 * 1024 * 1024)))
REDIS_URL = os.getenv("REDIS_URL")
REDIS_PREFIX = os.getenv("REPORT_CACHE_REDIS_PREFIX", "hvac:reports:cache:")

# --- Execution history (analytics) ---
HISTORY_MAX_PER_REPORT = int(os.getenv("REPORT_HISTORY_MAX_PER_REPORT", "500"))

# --- Logging ---
LOG_LEVEL = os.getenv("REPORT_LOG_LEVEL", "INFO").upper()

# --- Execution budgets (seconds) ---
PIPELINE_TIMEOUT = float(os.getenv("REPORT_PIPELINE_TIMEOUT", "30.0"))
OPERATIONAL_STORE_TIMEOUT = float(os.getenv("OPERATIONAL_STORE_TIMEOUT", "10.0"))
ANALYTICAL_STORE_TIMEOUT = float(os.getenv("ANALYTICAL_STORE_TIMEOUT", "15.0"))
SEMANTIC_STORE_TIMEOUT = float(os.getenv("SEMANTIC_STORE_TIMEOUT", "10.0"))

# --- Backend locations (adapter is not registered when unset) ---
OPERATIONAL_STORE_URL = os.getenv("OPERATIONAL_STORE_URL")
ANALYTICAL_STORE_DSN = os.getenv("ANALYTICAL_STORE_DSN")
SEMANTIC_STORE_URL = os.getenv("SEMANTIC_STORE_URL")
SEMANTIC_STORE_API_KEY = os.getenv("SEMANTIC_STORE_API_KEY")

# --- Row limits ---
DEFAULT_ROW_LIMIT = int(os.getenv("REPORT_DEFAULT_ROW_LIMIT", "10000"))
SEMANTIC_ROW_LIMIT = int(os.getenv("REPORT_SEMANTIC_ROW_LIMIT", "100"))

# --- CORS ---
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")


def utc_now() -> datetime:
    """Current time as an aware UTC datetime. Every stored timestamp comes from here."""
    return datetime.now(timezone.utc)
