"""Routes serving the ad shield.

* ``/ad-shield.js``        page shield, rendered with the shared config
* ``/sw-adshield.js``      service worker filter, rendered with the pattern lists
* ``/api/shield/patterns`` status query and runtime pattern RPC
* ``/api/shield/embed``    an embed page with the shield applied server side
"""

from __future__ import annotations

import logging

from flask import Blueprint, Response, jsonify, render_template, request, url_for

from ad_filter import VERSION, ad_filter
from ad_shield import shield
from stream_proxy import (
    CORS_HEADERS,
    NO_CACHE,
    cors_error,
    fetch_upstream,
    preflight,
    short_url,
    upstream_failed,
    upstream_headers,
)

logger = logging.getLogger(__name__)

shield_bp = Blueprint("shield", __name__)


def _script_response(body: str, cache_control: str) -> Response:
    resp = Response(body, status=200, mimetype="application/javascript")
    resp.headers["Cache-Control"] = cache_control
    return resp


@shield_bp.route("/ad-shield.js")
def ad_shield_script():
    body = render_template(
        "ad_shield.js",
        config=shield.client_config(),
        events_url=url_for("telemetry.ad_events"),
        breakthrough_url=url_for("telemetry.breakthrough"),
        worker_url=url_for("shield.service_worker_script"),
    )
    return _script_response(body, "public, max-age=300")


@shield_bp.route("/sw-adshield.js")
def service_worker_script():
    body = render_template(
        "sw_adshield.js",
        version=VERSION,
        ad_patterns=ad_filter.ad_sources,
        whitelist_patterns=ad_filter.whitelist_sources,
    )
    resp = _script_response(body, NO_CACHE)
    resp.headers["Service-Worker-Allowed"] = "/"
    return resp


@shield_bp.route("/api/shield/patterns", methods=["GET", "POST"])
def shield_patterns():
    if request.method == "GET":
        return jsonify(ad_filter.handle_message({"type": "GET_STATUS"}))

    message = request.get_json(silent=True)
    if not isinstance(message, dict):
        return jsonify({"success": False, "error": "expected a JSON message"}), 400
    result = ad_filter.handle_message(message)
    if message.get("type") == "ADD_PATTERN" and not result.get("success"):
        return jsonify(result), 400
    return jsonify(result)


@shield_bp.route("/api/shield/embed", methods=["GET", "OPTIONS"])
def shield_embed():
    if request.method == "OPTIONS":
        return preflight()

    target = (request.args.get("url") or "").strip()
    if not target.startswith(("http://", "https://")):
        return cors_error("Missing or invalid url parameter", 400)

    try:
        upstream = fetch_upstream(target, upstream_headers(target, "ios"))
        if upstream_failed(upstream):
            logger.warning("[shield] embed upstream %s for %s", upstream.status_code, short_url(target))
            return cors_error(f"Upstream error: {upstream.status_code}", upstream.status_code)

        cleaned, report = shield.sanitize(upstream.text, base_url=upstream.url or target)
        logger.debug("[shield] embed %s -> removed %d", short_url(target), report.total)

        resp = Response(cleaned, status=200, mimetype="text/html")
        resp.headers["Cache-Control"] = NO_CACHE
        resp.headers["X-Shield-Removed"] = str(report.total)
        resp.headers.update(CORS_HEADERS)
        return resp
    except Exception:
        logger.exception("[shield] embed fetch failed for %s", short_url(target))
        return cors_error("Embed fetch failed", 500)
