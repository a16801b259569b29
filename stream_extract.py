"""Pull a direct .m3u8 URL out of an embed page.

``/api/extract-stream`` and ``/api/clean-stream`` fetch an embed page, look
for a playlist literal in its markup and scripts, and hand back a URL that
plays through our manifest relay. When nothing is found the client falls
back to the iframe embed.
"""

from __future__ import annotations

import logging
import re
from typing import Optional
from urllib.parse import quote, urljoin, urlsplit

import requests
from bs4 import BeautifulSoup
from flask import Blueprint, jsonify, request

import settings
from stream_proxy import CORS_HEADERS, preflight, short_url

logger = logging.getLogger(__name__)

extract_bp = Blueprint("extract", __name__)

M3U8_PATTERNS = [
    re.compile(r"""source\s*:\s*["']([^"']+\.m3u8[^"']*)["']""", re.I),
    re.compile(r"""file\s*:\s*["']([^"']+\.m3u8[^"']*)["']""", re.I),
    re.compile(r"""src\s*=\s*["']([^"']+\.m3u8[^"']*)["']""", re.I),
    re.compile(r"""["'](https?://[^"']+\.m3u8[^"']*)["']""", re.I),
]
CLEAN_PATTERN = re.compile(r"""(?:source|file)\s*:\s*["'](https?://[^"']+\.m3u8[^"']*)["']""")


def _json(payload: dict, status: int = 200):
    resp = jsonify(payload)
    resp.status_code = status
    resp.headers.update(CORS_HEADERS)
    return resp


def find_m3u8(html: str, base_url: str = "") -> Optional[str]:
    """Return the first playlist URL referenced by ``html``.

    Regex patterns over the raw text come first since most players configure
    their source inside inline scripts; ``<source>``/``<video>`` tags are the
    fallback. Relative hits are resolved against ``base_url``.
    """
    for pattern in M3U8_PATTERNS:
        match = pattern.search(html or "")
        if match and match.group(1):
            return urljoin(base_url, match.group(1)) if base_url else match.group(1)

    soup = BeautifulSoup(html or "", "html.parser")
    for tag in soup.find_all(["source", "video"]):
        src = (tag.get("src") or "").strip()
        if ".m3u8" in src.lower():
            return urljoin(base_url, src) if base_url else src
    return None


def manifest_proxy_url(stream_url: str) -> str:
    root = request.host_url.rstrip("/")
    return f"{root}/api/proxy/manifest?url={quote(stream_url, safe='')}"


def _fetch_embed(embed_url: str, headers: dict[str, str]) -> requests.Response:
    return requests.get(embed_url, headers=headers, timeout=settings.UPSTREAM_TIMEOUT)


@extract_bp.route("/api/extract-stream", methods=["GET", "OPTIONS"])
def extract_stream():
    if request.method == "OPTIONS":
        return preflight()

    embed_url = (request.args.get("url") or "").strip()
    if not embed_url:
        return _json({"success": False, "error": "Missing URL"}, 400)

    try:
        parsed = urlsplit(embed_url)
        headers = {
            "User-Agent": settings.IOS_USER_AGENT,
            "Referer": f"{parsed.scheme}://{parsed.netloc}",
        }
        logger.info("[extract] fetching %s", short_url(embed_url))
        resp = _fetch_embed(embed_url, headers)
        if not 200 <= resp.status_code < 300:
            return _json({"success": False, "error": f"Upstream {resp.status_code}"}, resp.status_code)

        extracted = find_m3u8(resp.text, embed_url)
    except Exception:
        logger.exception("[extract] failed for %s", short_url(embed_url))
        return _json({"success": False, "error": "Internal Error"}, 500)

    if not extracted:
        return _json({"success": False, "error": "No m3u8 found"})

    return _json(
        {
            "success": True,
            "originalUrl": extracted,
            "streamUrl": manifest_proxy_url(extracted),
        }
    )


@extract_bp.route("/api/clean-stream", methods=["GET", "OPTIONS"])
def clean_stream():
    if request.method == "OPTIONS":
        return preflight()

    target_url = (request.args.get("url") or "").strip()
    if not target_url:
        return _json({"success": False, "error": "Missing URL"}, 400)

    try:
        resp = _fetch_embed(
            target_url,
            {
                "User-Agent": settings.DESKTOP_USER_AGENT,
                "Referer": settings.STREAMED_REFERER,
            },
        )
        if not 200 <= resp.status_code < 300:
            logger.warning("[clean] upstream %s for %s", resp.status_code, short_url(target_url))
            return _json({"success": False})
        match = CLEAN_PATTERN.search(resp.text or "")
    except Exception:
        logger.exception("[clean] failed for %s", short_url(target_url))
        return _json({"success": False})

    if not match:
        return _json({"success": False})

    stream_url = match.group(1)
    logger.info("[clean] extracted %s", stream_url)
    return _json({"success": True, "url": stream_url, "streamUrl": manifest_proxy_url(stream_url)})
