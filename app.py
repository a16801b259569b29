from __future__ import annotations

import logging

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

import settings
from match_catalog import catalog_bp, maybe_start_refresh
from shield_site import shield_bp
from stream_control import control_bp
from stream_extract import extract_bp
from stream_proxy import CORS_HEADERS, proxy_bp
from telemetry import telemetry_bp

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(levelname)s:%(name)s:%(message)s",
)
logger = logging.getLogger(__name__)

app = Flask(__name__)

app.register_blueprint(proxy_bp)
app.register_blueprint(extract_bp)
app.register_blueprint(catalog_bp)
app.register_blueprint(control_bp)
app.register_blueprint(shield_bp)
app.register_blueprint(telemetry_bp)


def _is_api_request() -> bool:
    return request.path.startswith("/api/")


def _is_proxy_request() -> bool:
    return request.path.startswith(("/api/proxy/", "/api/stream/"))


def _api_error(message: str, status: int):
    resp = jsonify({"error": message})
    resp.status_code = status
    if _is_proxy_request():
        resp.headers.update(CORS_HEADERS)
    return resp


@app.errorhandler(HTTPException)
def handle_http_error(exc: HTTPException):
    if not _is_api_request():
        return exc
    return _api_error(exc.description or exc.name, exc.code or 500)


@app.errorhandler(Exception)
def handle_unexpected_error(exc: Exception):
    logger.exception("[app] unhandled error on %s %s", request.method, request.path)
    if not _is_api_request():
        return "Internal Server Error", 500
    return _api_error("Internal server error", 500)


maybe_start_refresh()


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=settings.PORT, debug=False)
