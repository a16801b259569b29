"""Match and stream catalog blueprint.

Thin JSON relays over the upstream catalogs (streamed.pk matches/streams,
reedstreams games and signed URLs, the reedstreams edge) plus the
server-side stream assembly the match player needs: every source of a
match is queried in parallel, failures are dropped, and the best candidate
is picked.
"""

from __future__ import annotations

import atexit
import base64
import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import quote

import requests
from apscheduler.schedulers.background import BackgroundScheduler
from flask import Blueprint, jsonify, request

import settings
from stream_control import get_override
from stream_proxy import CORS_HEADERS, preflight

logger = logging.getLogger(__name__)

catalog_bp = Blueprint("catalog", __name__)

HEADERS = {
    "User-Agent": settings.DESKTOP_USER_AGENT,
    "Accept": "application/json",
}
OFFICIAL_SOURCE = "SULTAN-OFFICIAL"
REEDSTREAMS_SOURCE = "REEDSTREAMS"

# Cache matches in memory to avoid hitting streamed.pk on every request
MATCHES_CACHE: dict[str, Any] = {
    "matches": [],
    "ts": 0.0,
}
MATCHES_CACHE_LOCK = threading.Lock()

_SESSION = None


def _get_session():
    global _SESSION
    if _SESSION is None:
        _SESSION = requests.Session()
        _SESSION.headers.update(HEADERS)
    return _SESSION


def _fetch_json(url: str, headers: dict[str, str] | None = None):
    try:
        resp = _get_session().get(url, headers=headers, timeout=settings.UPSTREAM_TIMEOUT)
        if resp.status_code != 200:
            logger.warning("[catalog] %s returned %s", url, resp.status_code)
            return None
        return resp.json()
    except Exception as exc:
        logger.warning("[catalog] %s failed: %s", url, exc)
        return None


def _cors_json(payload: Any, status: int = 200):
    resp = jsonify(payload)
    resp.status_code = status
    resp.headers.update(CORS_HEADERS)
    return resp


# -----------------------------
# Matches
# -----------------------------

def normalize_match(match: dict[str, Any]) -> dict[str, Any]:
    fixed = dict(match)
    fixed["id"] = str(match.get("id"))
    fixed["date"] = match.get("date") or datetime.now(timezone.utc).isoformat()
    return fixed


def fetch_matches() -> Optional[list[dict[str, Any]]]:
    data = _fetch_json(f"{settings.STREAMED_API_BASE}/matches")
    if data is None:
        return None
    matches = data if isinstance(data, list) else []
    return [normalize_match(m) for m in matches if isinstance(m, dict)]


def load_matches_cached(force: bool = False) -> list[dict[str, Any]]:
    """Cached loader for the streamed.pk match list.

    Serves the previous list when a refresh comes back empty-handed.
    """
    now = time.time()
    with MATCHES_CACHE_LOCK:
        previous = list(MATCHES_CACHE["matches"])
        fresh = now - MATCHES_CACHE["ts"] < settings.MATCHES_CACHE_TTL_SECONDS
        if previous and fresh and not force:
            return previous

    matches = fetch_matches()
    if matches is None:
        if previous:
            logger.warning("[catalog] refresh failed; serving %d cached matches", len(previous))
        return previous

    with MATCHES_CACHE_LOCK:
        MATCHES_CACHE["matches"] = matches
        MATCHES_CACHE["ts"] = now
    return matches


def find_match(match_id: str) -> Optional[dict[str, Any]]:
    return next((m for m in load_matches_cached() if m["id"] == str(match_id)), None)


def match_start(match: dict[str, Any]) -> Optional[datetime]:
    """Timezone-aware UTC start time from a ms timestamp or an ISO string."""
    raw = match.get("date")
    if raw in (None, ""):
        return None
    try:
        ts = float(raw)
    except (TypeError, ValueError):
        ts = None
    if ts is not None:
        if ts > 1e11:  # likely ms
            ts = ts / 1000.0
        return datetime.fromtimestamp(ts, tz=timezone.utc)

    try:
        parsed = datetime.fromisoformat(str(raw).strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def is_match_live(match: dict[str, Any], now: datetime | None = None) -> bool:
    start = match_start(match)
    if start is None:
        return True
    now = now or datetime.now(timezone.utc)
    return start <= now


# -----------------------------
# Streams
# -----------------------------

def build_stream_label(stream: dict[str, Any]) -> str:
    base = f"Stream {stream.get('streamNo')}" if stream.get("streamNo") else "Stream"
    extras = []
    lang = (stream.get("language") or "").strip()
    if lang:
        extras.append(lang)
    if stream.get("hd"):
        extras.append("HD")
    if extras:
        return f"{base} ({' - '.join(extras)})"
    return base


def fetch_source_streams(source: str, source_id: str) -> list[dict[str, Any]]:
    """Streams offered by one match source; any failure yields ``[]``."""
    if not source or not source_id:
        return []
    payload = _fetch_json(
        f"{settings.STREAMED_API_BASE}/stream/{source}/{source_id}",
        headers={"Referer": settings.STREAMED_REFERER},
    )
    if not isinstance(payload, list):
        return []

    streams = []
    for st in payload:
        if not isinstance(st, dict) or not (st.get("embedUrl") or "").strip():
            continue
        fixed = dict(st)
        fixed["sourceIdentifier"] = source
        fixed["label"] = build_stream_label(st)
        streams.append(fixed)
    return streams


def fetch_official_stream(admin_id: str) -> Optional[dict[str, Any]]:
    """Resolve an ``admin`` source to the signed edge stream, when one exists."""
    lookup = _fetch_json(f"{settings.AGGREGATOR_API_BASE}/api/lookup/{admin_id}")
    if not isinstance(lookup, dict) or not lookup.get("found_sultan"):
        return None

    parts = str(lookup.get("sultan_id") or "").split("_")
    if len(parts) < 2 or not parts[1]:
        return None

    signed = _fetch_json(f"{settings.EDGE_API_BASE}/api/v1/streams/ppvsu/{parts[1]}/signed-url")
    if not isinstance(signed, dict) or not signed.get("proxy_url"):
        return None

    logger.info("[catalog] official signed path found for admin source %s", admin_id)
    stream = {
        "embedUrl": signed["proxy_url"],
        "streamNo": 1,
        "language": "English",
        "hd": True,
        "sourceIdentifier": OFFICIAL_SOURCE,
    }
    stream["label"] = build_stream_label(stream)
    return stream


def gather_streams(match: dict[str, Any]) -> list[dict[str, Any]]:
    sources = [s for s in (match.get("sources") or []) if isinstance(s, dict)]
    streams: list[dict[str, Any]] = []

    admin = next((s for s in sources if s.get("source") == "admin"), None)
    if admin:
        official = fetch_official_stream(str(admin.get("id") or ""))
        if official:
            streams.append(official)

    if not sources:
        return streams

    workers = max(1, min(settings.STREAM_FETCH_WORKERS, len(sources)))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = pool.map(
            lambda s: fetch_source_streams(s.get("source"), str(s.get("id") or "")),
            sources,
        )
        for result in results:
            streams.extend(result)
    return streams


def pick_best_stream(streams: list[dict[str, Any]], override: str | None = None) -> Optional[dict[str, Any]]:
    """Official -> SULTAN-V1 -> bravo #1 -> any HD -> first.

    A non-AUTO ``override`` restricts the choice to that source when it has
    streams.
    """
    if not streams:
        return None

    candidates = streams
    if override and override.upper() != "AUTO":
        forced = [s for s in streams if str(s.get("sourceIdentifier", "")).lower() == override.lower()]
        if forced:
            candidates = forced

    def source_of(s):
        return str(s.get("sourceIdentifier") or "")

    for predicate in (
        lambda s: source_of(s) == OFFICIAL_SOURCE,
        lambda s: source_of(s) == "SULTAN-V1",
        lambda s: "bravo" in source_of(s).lower() and s.get("streamNo") == 1,
        lambda s: bool(s.get("hd")),
    ):
        best = next((s for s in candidates if predicate(s)), None)
        if best:
            return best
    return candidates[0]


# -----------------------------
# Routes
# -----------------------------

@catalog_bp.route("/api/matches")
def api_matches():
    return jsonify(load_matches_cached())


@catalog_bp.route("/api/matches/<match_id>/streams")
def api_match_streams(match_id: str):
    match = find_match(match_id)
    if not match:
        return jsonify({"error": "NO SOURCE AVAILABLE FOR THIS MATCH RN"}), 404

    start = match_start(match)
    payload: dict[str, Any] = {
        "match": match,
        "is_live": is_match_live(match),
        "starts_at": start.isoformat() if start else None,
        "streams": [],
        "selected": None,
    }
    if not payload["is_live"]:
        return jsonify(payload)

    streams = gather_streams(match)
    if not streams:
        payload["error"] = "NO SOURCE AVAILABLE FOR THIS MATCH RN"
        return jsonify(payload)

    payload["streams"] = streams
    payload["selected"] = pick_best_stream(streams, get_override(match["id"]))
    return jsonify(payload)


@catalog_bp.route("/api/stream/<source>/<source_id>", methods=["GET", "OPTIONS"])
def api_source_streams(source: str, source_id: str):
    if request.method == "OPTIONS":
        return preflight()

    target = f"{settings.STREAMED_API_BASE}/stream/{source}/{source_id}"
    logger.info("[catalog] fetching streams for %s/%s", source, source_id)
    try:
        resp = _get_session().get(
            target,
            headers={"Referer": settings.STREAMED_REFERER},
            timeout=settings.UPSTREAM_TIMEOUT,
        )
        if resp.status_code != 200:
            logger.warning("[catalog] upstream %s for %s", resp.status_code, target)
            return _cors_json({"error": f"Upstream error {resp.status_code}"}, resp.status_code)
        streams = resp.json()
    except Exception:
        logger.exception("[catalog] stream lookup failed for %s/%s", source, source_id)
        return _cors_json({"error": "Internal Server Error"}, 500)

    return _cors_json(streams)


@catalog_bp.route("/api/reedstreams/games")
def api_reed_games():
    data = _fetch_json(f"{settings.REED_API_V1}/streams")
    if data is None:
        return jsonify({"categories": []})
    return jsonify(data)


@catalog_bp.route("/api/reedstreams/game/<game_id>")
def api_reed_game(game_id: str):
    try:
        resp = _get_session().get(f"{settings.REED_API_V1}/streams", timeout=settings.UPSTREAM_TIMEOUT)
        if resp.status_code != 200:
            raise RuntimeError(f"HTTP {resp.status_code}")
        data = resp.json() or {}
    except Exception:
        logger.exception("[catalog] reedstreams game %s lookup failed", game_id)
        return jsonify({"error": "Internal Server Error"}), 500

    for category in data.get("categories") or []:
        for game in category.get("games") or []:
            if str(game.get("id")) == str(game_id):
                return jsonify(
                    {
                        "id": game.get("id"),
                        "name": game.get("name"),
                        "poster": game.get("poster"),
                        "start_time": game.get("start_time"),
                        "end_time": game.get("end_time"),
                        "video_link": game.get("video_link"),
                        "category": category.get("category"),
                    }
                )

    logger.warning("[catalog] reedstreams game %s not found", game_id)
    return jsonify({"error": "Game not found"}), 404


@catalog_bp.route("/api/reedstreams/stream/<game_id>", methods=["GET", "OPTIONS"])
def api_reed_stream(game_id: str):
    if request.method == "OPTIONS":
        return preflight()

    try:
        resp = _get_session().get(
            f"{settings.REED_API_V1}/streams/ppvsu/{game_id}/signed-url",
            timeout=settings.UPSTREAM_TIMEOUT,
        )
        if resp.status_code != 200:
            logger.warning("[catalog] signed-url %s for game %s", resp.status_code, game_id)
            return _cors_json({"error": f"Failed: {resp.status_code}"}, 500)
        signed = resp.json() or {}
    except Exception:
        logger.exception("[catalog] signed-url lookup failed for %s", game_id)
        return _cors_json({"error": "Server Error"}, 500)

    signed_url = signed.get("signed_url")
    if not signed_url:
        return _cors_json({"error": "No stream URL"}, 404)

    if not signed_url.startswith("http"):
        signed_url = f"{settings.REED_API_BASE}{signed_url}"
    encoded = base64.b64encode(signed_url.encode("utf-8")).decode("ascii")
    stream = {
        "embedUrl": f"/api/proxy/signed?url={quote(encoded, safe='')}",
        "streamNo": 1,
        "language": "English",
        "hd": True,
        "sourceIdentifier": REEDSTREAMS_SOURCE,
    }
    return _cors_json([stream])


def _edge_relay(path: str, label: str):
    try:
        resp = _get_session().get(f"{settings.EDGE_API_BASE}{path}", timeout=settings.UPSTREAM_TIMEOUT)
        if resp.status_code != 200:
            return jsonify({"error": f"Edge {label} returned {resp.status_code}"}), resp.status_code
        return jsonify(resp.json())
    except Exception:
        logger.exception("[catalog] edge %s relay failed", label)
        return jsonify({"error": f"Failed to proxy {label}"}), 500


@catalog_bp.route("/api/edge/streams")
def api_edge_streams():
    return _edge_relay("/api/v1/streams/", "streams list")


@catalog_bp.route("/api/edge/signed/<game_id>")
def api_edge_signed(game_id: str):
    return _edge_relay(f"/api/v1/streams/ppvsu/{game_id}/signed-url", "signed-url")


# ====================== SCHEDULER (OFF BY DEFAULT) ======================
def run_refresh_job():
    try:
        matches = load_matches_cached(force=True)
        logger.info("[scheduler] Cached %d matches", len(matches))
    except Exception:  # pragma: no cover - logging only
        logger.exception("[scheduler] Match refresh error")


def start_scheduler():
    scheduler = BackgroundScheduler()
    scheduler.add_job(
        run_refresh_job,
        "interval",
        seconds=settings.CATALOG_REFRESH_SECONDS,
        id="refresh_matches",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info("[scheduler] Background scheduler started.")
    atexit.register(lambda: scheduler.shutdown(wait=False))
    return scheduler


_SCHEDULER_STARTED = False


def maybe_start_refresh():
    global _SCHEDULER_STARTED
    if _SCHEDULER_STARTED or not settings.ENABLE_CATALOG_REFRESH:
        return
    # Avoid double-starting under the Flask reloader: only start in the serving process.
    reload_flag = os.environ.get("WERKZEUG_RUN_MAIN")
    if reload_flag is not None and reload_flag != "true":
        return
    start_scheduler()
    _SCHEDULER_STARTED = True
