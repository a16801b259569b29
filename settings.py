"""Environment-driven configuration shared by the blueprints."""

from __future__ import annotations

import os


def _env_bool(key: str, default: bool = False) -> bool:
    raw = os.environ.get(key)
    if raw is None:
        return default
    return str(raw).strip().lower() in ("1", "true", "yes", "on")


def _env_int(key: str, default: int) -> int:
    raw = os.environ.get(key)
    if raw is None or not str(raw).strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_list(key: str) -> list[str]:
    raw = os.environ.get(key, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


# ====================== UPSTREAMS ======================
STREAMED_API_BASE = os.environ.get("STREAMED_API_BASE", "https://streamed.pk/api").rstrip("/")
REED_API_BASE = os.environ.get("REED_API_BASE", "https://api.reedstreams.live").rstrip("/")
REED_API_V1 = f"{REED_API_BASE}/api/v1"
EDGE_API_BASE = os.environ.get("EDGE_API_BASE", "https://reedstreams-edge-v1.fly.dev").rstrip("/")
AGGREGATOR_API_BASE = os.environ.get(
    "AGGREGATOR_API_BASE", "https://reedstreams-aggregator.fly.dev"
).rstrip("/")
STREAM_REFERER = os.environ.get("STREAM_REFERER", "https://modistreams.org/")
STREAMED_REFERER = os.environ.get("STREAMED_REFERER", "https://streamed.pk/")

IOS_USER_AGENT = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)
DESKTOP_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

# ====================== PERFORMANCE CONTROLS ======================
UPSTREAM_TIMEOUT = _env_int("UPSTREAM_TIMEOUT", 12)
SEGMENT_CACHE_SECONDS = _env_int("SEGMENT_CACHE_SECONDS", 3600)
MATCHES_CACHE_TTL_SECONDS = _env_int("MATCHES_CACHE_TTL_SECONDS", 60)
STREAM_FETCH_WORKERS = _env_int("STREAM_FETCH_WORKERS", 8)

# IMPORTANT: the refresh job only runs in the web process when explicitly enabled
ENABLE_CATALOG_REFRESH = _env_bool("ENABLE_CATALOG_REFRESH", default=False)
CATALOG_REFRESH_SECONDS = _env_int("CATALOG_REFRESH_SECONDS", 60)

# ====================== STORES / ADMIN ======================
REDIS_URL = os.environ.get("REDIS_URL")
STREAM_CONTROL_SECRET = os.environ.get("STREAM_CONTROL_SECRET", "reedsmoney19k")
OVERRIDE_TTL_SECONDS = _env_int("OVERRIDE_TTL_SECONDS", 86400)

# ====================== SHIELD ======================
NAVIGATION_ALLOWED_HOSTS = _env_list("NAVIGATION_ALLOWED_HOSTS")

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
PORT = _env_int("PORT", 5000)
