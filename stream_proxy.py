"""HLS relay blueprint.

Relays third-party manifests and segments so players on iOS (which insist
on CORS for HLS) can load them from our origin:

* ``/api/proxy/manifest``  rewrites a playlist and routes its references back
  through the relay
* ``/api/proxy/segment``   relays media bytes with an extension-derived type
* ``/api/proxy/stream`` and ``/api/stream/proxy``  generic byte relay
* ``/api/proxy/signed``    relay for signed reedstreams URLs

Every route answers ``OPTIONS`` with the CORS headers and attaches them to
error responses as well.
"""

from __future__ import annotations

import base64
import binascii
import logging
import posixpath
from typing import Callable, Iterable
from urllib.parse import quote, urlsplit

import requests
from flask import Blueprint, Response, jsonify, request, stream_with_context

import settings
from hls_rewriter import is_m3u8_url, rewrite_manifest

logger = logging.getLogger(__name__)

proxy_bp = Blueprint("proxy", __name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Range, Authorization",
    "Access-Control-Expose-Headers": "Content-Length, Content-Range",
}

MANIFEST_CONTENT_TYPE = "application/vnd.apple.mpegurl"
NO_CACHE = "no-cache, no-store, must-revalidate"
DEFAULT_SEGMENT_TYPE = "application/octet-stream"
SEGMENT_CONTENT_TYPES = {
    ".ts": "video/MP2T",
    ".m4s": "video/iso.segment",
    ".mp4": "video/mp4",
    ".key": "application/octet-stream",
    ".aac": "audio/aac",
}
CHUNK_SIZE = 256 * 1024
PASSTHROUGH_HEADERS = ("Content-Range", "Accept-Ranges")


# -----------------------------
# Helpers
# -----------------------------

def short_url(url: str, limit: int = 120) -> str:
    return url if len(url) <= limit else url[:limit] + "..."


def preflight() -> Response:
    return Response("", status=200, headers=CORS_HEADERS)


def cors_error(message: str, status: int) -> Response:
    return Response(message, status=status, mimetype="text/plain", headers=CORS_HEADERS)


def cors_json_error(message: str, status: int):
    resp = jsonify({"error": message})
    resp.status_code = status
    resp.headers.update(CORS_HEADERS)
    return resp


def segment_content_type(url: str) -> str:
    path = urlsplit(url).path.lower()
    return SEGMENT_CONTENT_TYPES.get(posixpath.splitext(path)[1], DEFAULT_SEGMENT_TYPE)


def decode_target(raw: str, prefixes: tuple[str, ...] = ("http://", "https://")) -> str:
    """Decode a base64 ``url`` parameter, falling back to the literal value.

    The decoded text is only accepted when it starts with one of
    ``prefixes``; anything else (including plain URLs, which are never valid
    base64 because of the ``:``) is returned as given.
    """
    value = (raw or "").strip().replace(" ", "+")
    try:
        padded = value + "=" * (-len(value) % 4)
        decoded = base64.b64decode(padded, validate=True).decode("utf-8").strip()
    except (binascii.Error, ValueError):
        return value
    if decoded.startswith(prefixes):
        return decoded
    return value


def encode_target(url: str) -> str:
    return base64.b64encode(url.encode("utf-8")).decode("ascii")


def upstream_headers(target: str, profile: str = "ios") -> dict[str, str]:
    """Browser-like headers for an upstream fetch.

    ``ios`` mimics mobile Safari and points Referer/Origin at the target's own
    origin; ``desktop`` mimics Chrome and uses the configured stream referer.
    """
    headers = {"Accept": "*/*"}
    if profile == "desktop":
        headers["User-Agent"] = settings.DESKTOP_USER_AGENT
        headers["Accept-Language"] = "en-US,en;q=0.9"
        headers["Referer"] = settings.STREAM_REFERER
        headers["Origin"] = settings.STREAM_REFERER.rstrip("/")
        return headers

    headers["User-Agent"] = settings.IOS_USER_AGENT
    parsed = urlsplit(target)
    if parsed.scheme and parsed.netloc:
        origin = f"{parsed.scheme}://{parsed.netloc}"
        headers["Referer"] = origin + "/"
        headers["Origin"] = origin
    return headers


def fetch_upstream(url: str, headers: dict[str, str], stream: bool = False) -> requests.Response:
    return requests.get(
        url,
        headers=headers,
        timeout=settings.UPSTREAM_TIMEOUT,
        stream=stream,
    )


def upstream_failed(resp: requests.Response) -> bool:
    return not 200 <= resp.status_code < 300


def manifest_response(body: str, cache_control: str = NO_CACHE) -> Response:
    resp = Response(body, status=200)
    resp.headers["Content-Type"] = MANIFEST_CONTENT_TYPE
    resp.headers["Cache-Control"] = cache_control
    resp.headers.update(CORS_HEADERS)
    return resp


def _iter_chunks(resp: requests.Response) -> Iterable[bytes]:
    try:
        for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
            if chunk:
                yield chunk
    finally:
        resp.close()


def stream_response(resp: requests.Response, content_type: str, cache_control: str) -> Response:
    proxy_resp = Response(stream_with_context(_iter_chunks(resp)), status=resp.status_code)
    proxy_resp.headers["Content-Type"] = content_type
    proxy_resp.headers["Cache-Control"] = cache_control
    for name in PASSTHROUGH_HEADERS:
        value = resp.headers.get(name)
        if value:
            proxy_resp.headers[name] = value
    proxy_resp.headers.update(CORS_HEADERS)
    return proxy_resp


def proxy_wrapper(endpoint_for: Callable[[str], str], encode: bool = False) -> Callable[[str], str]:
    """Build a ``wrap`` callable that routes absolute URLs back through us."""
    root = request.host_url.rstrip("/")

    def wrap(absolute: str) -> str:
        endpoint = endpoint_for(absolute)
        target = encode_target(absolute) if encode else absolute
        return f"{root}/api/proxy/{endpoint}?url={quote(target, safe='')}"

    return wrap


def _manifest_or_segment(absolute: str) -> str:
    return "manifest" if is_m3u8_url(urlsplit(absolute).path) else "segment"


def _signed_or_segment(absolute: str) -> str:
    return "signed" if is_m3u8_url(urlsplit(absolute).path) else "segment"


# -----------------------------
# Routes
# -----------------------------

@proxy_bp.route("/api/proxy/manifest", methods=["GET", "OPTIONS"])
def proxy_manifest():
    if request.method == "OPTIONS":
        return preflight()

    manifest_url = (request.args.get("url") or "").strip()
    if not manifest_url:
        return cors_error("Missing URL parameter", 400)
    if not is_m3u8_url(manifest_url):
        return cors_error("URL must reference an .m3u8 manifest", 400)

    try:
        resp = fetch_upstream(manifest_url, upstream_headers(manifest_url, "ios"))
        if upstream_failed(resp):
            logger.warning("[manifest] upstream %s for %s", resp.status_code, short_url(manifest_url))
            return cors_error(f"Upstream Error: {resp.status_code}", resp.status_code)

        body = rewrite_manifest(
            resp.text,
            resp.url or manifest_url,
            wrap=proxy_wrapper(_manifest_or_segment),
        )
    except Exception:
        logger.exception("[manifest] relay failed for %s", short_url(manifest_url))
        return cors_error("Internal Server Error", 500)

    return manifest_response(body)


@proxy_bp.route("/api/proxy/segment", methods=["GET", "OPTIONS"])
def proxy_segment():
    if request.method == "OPTIONS":
        return preflight()

    raw = request.args.get("url")
    if not raw:
        return cors_error("Missing URL", 400)

    segment_url = decode_target(raw)
    headers = upstream_headers(segment_url, "ios")
    range_header = request.headers.get("Range")
    if range_header:
        headers["Range"] = range_header

    try:
        resp = fetch_upstream(segment_url, headers, stream=True)
        if upstream_failed(resp):
            logger.warning("[segment] upstream %s for %s", resp.status_code, short_url(segment_url))
            resp.close()
            return cors_error(f"Upstream Error: {resp.status_code}", resp.status_code)
    except Exception:
        logger.exception("[segment] relay failed for %s", short_url(segment_url))
        return cors_error("Proxy Error", 500)

    return stream_response(
        resp,
        segment_content_type(segment_url),
        f"public, max-age={settings.SEGMENT_CACHE_SECONDS}",
    )


@proxy_bp.route("/api/proxy/stream", methods=["GET", "OPTIONS"])
@proxy_bp.route("/api/stream/proxy", methods=["GET", "OPTIONS"])
def proxy_stream():
    if request.method == "OPTIONS":
        return preflight()

    raw = request.args.get("url")
    if not raw:
        return cors_json_error("Missing url parameter", 400)

    target = decode_target(raw)
    logger.info("[stream] fetching %s", short_url(target))

    try:
        resp = fetch_upstream(target, upstream_headers(target, "desktop"), stream=True)
        if upstream_failed(resp):
            logger.warning("[stream] upstream %s for %s", resp.status_code, short_url(target))
            resp.close()
            return cors_json_error(f"Upstream error: {resp.status_code}", resp.status_code)
    except Exception:
        logger.exception("[stream] relay failed for %s", short_url(target))
        return cors_json_error("Proxy error", 500)

    content_type = resp.headers.get("Content-Type") or MANIFEST_CONTENT_TYPE
    cache_control = resp.headers.get("Cache-Control") or "no-cache"
    return stream_response(resp, content_type, cache_control)


@proxy_bp.route("/api/proxy/signed", methods=["GET", "OPTIONS"])
def proxy_signed():
    if request.method == "OPTIONS":
        return preflight()

    raw = request.args.get("url")
    if not raw:
        return cors_json_error("Missing url parameter", 400)

    target = decode_target(raw, prefixes=("http://", "https://", "/api/v1/"))
    # the reedstreams API hands out proxy paths relative to its own host
    if target.startswith("/api/v1/"):
        target = f"{settings.REED_API_BASE}{target}"
    logger.info("[signed] fetching %s", short_url(target))

    try:
        resp = fetch_upstream(target, upstream_headers(target, "desktop"), stream=True)
        if upstream_failed(resp):
            logger.warning("[signed] upstream %s for %s", resp.status_code, short_url(target))
            resp.close()
            return cors_json_error(f"Upstream error: {resp.status_code}", resp.status_code)

        content_type = resp.headers.get("Content-Type") or MANIFEST_CONTENT_TYPE
        lowered = content_type.lower()
        if "mpegurl" in lowered or "m3u8" in lowered:
            try:
                body = rewrite_manifest(
                    resp.text,
                    resp.url or target,
                    wrap=proxy_wrapper(_signed_or_segment, encode=True),
                )
            finally:
                resp.close()
            logger.info("[signed] rewrote manifest for %s", short_url(target))
            return manifest_response(body, cache_control="no-cache")
    except Exception:
        logger.exception("[signed] relay failed for %s", short_url(target))
        return cors_json_error("Proxy error", 500)

    return stream_response(resp, content_type, "no-cache")
