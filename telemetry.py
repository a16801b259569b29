"""Shield analytics sink.

The routes accept what the page shield and the A/B harness post, compute a
summary, log it and return it. Nothing is persisted.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any

from flask import Blueprint, jsonify, request

logger = logging.getLogger(__name__)

telemetry_bp = Blueprint("telemetry", __name__, url_prefix="/api/analytics")


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _short(value: Any, limit: int = 50) -> str:
    return str(value or "")[:limit]


def summarize_ad_events(events: list[dict[str, Any]]) -> dict[str, int]:
    kinds = Counter(e.get("type") for e in events if isinstance(e, dict))
    return {
        "blocked": kinds["blocked"],
        "breakthroughs": kinds["breakthrough"],
        "errors": kinds["error"],
    }


def summarize_shield_events(events: list[dict[str, Any]]) -> dict[str, Any]:
    by_type: Counter = Counter()
    by_device: Counter = Counter()
    by_provider: Counter = Counter()
    loads = successes = 0

    for event in events:
        if not isinstance(event, dict):
            continue
        by_type[str(event.get("type"))] += 1
        by_device[str(event.get("device"))] += 1
        by_provider[str(event.get("provider"))] += 1
        if event.get("type") == "load":
            loads += 1
            if event.get("success"):
                successes += 1

    return {
        "totalEvents": len(events),
        "byType": dict(by_type),
        "byDevice": dict(by_device),
        "byProvider": dict(by_provider),
        "successRate": successes / loads * 100 if loads else 100,
    }


def aggregate_ab_results(results: list[dict[str, Any]]) -> dict[str, dict[str, Any]]:
    """Per ``testId:variantId`` totals with a running mean load time."""
    stats: dict[str, dict[str, Any]] = {}
    for result in results:
        if not isinstance(result, dict):
            continue
        key = f"{result.get('testId')}:{result.get('variantId')}"
        metrics = result.get("metrics") or {}
        entry = stats.setdefault(
            key,
            {
                "count": 0,
                "adsBlocked": 0,
                "adsShown": 0,
                "loadSuccess": 0,
                "avgLoadTime": 0,
                "userReports": 0,
            },
        )
        entry["count"] += 1
        entry["adsBlocked"] += metrics.get("adsBlocked") or 0
        entry["adsShown"] += metrics.get("adsShown") or 0
        entry["loadSuccess"] += 1 if metrics.get("streamLoaded") else 0
        entry["avgLoadTime"] = (
            entry["avgLoadTime"] * (entry["count"] - 1) + (metrics.get("loadTime") or 0)
        ) / entry["count"]
        entry["userReports"] += 1 if metrics.get("userReported") else 0
    return stats


def _payload():
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else None


def _bad_request():
    return jsonify({"success": False, "error": "Expected a JSON object"}), 400


@telemetry_bp.route("/ad-events", methods=["POST"])
def ad_events():
    payload = _payload()
    if payload is None:
        return _bad_request()
    try:
        events = _as_list(payload.get("events"))
        summary = summarize_ad_events(events)
        logger.info(
            "[analytics] session %s: %d events %s",
            payload.get("sessionId"),
            len(events),
            summary,
        )
        return jsonify({"success": True, "received": len(events)})
    except Exception:
        logger.exception("[analytics] failed to process ad events")
        return jsonify({"success": False, "error": "Failed to process events"}), 500


@telemetry_bp.route("/breakthrough", methods=["POST"])
def breakthrough():
    event = _payload()
    if event is None:
        return _bad_request()
    logger.error(
        "[breakthrough] layer=%s action=%s target=%s url=%s ua=%s",
        event.get("layer"),
        event.get("action"),
        event.get("target"),
        event.get("url"),
        _short(event.get("userAgent")),
    )
    return jsonify({"success": True, "message": "Breakthrough logged"})


@telemetry_bp.route("/error", methods=["POST"])
def client_error():
    report = _payload()
    if report is None:
        return _bad_request()
    logger.error(
        "[client-error] %s url=%s ua=%s",
        report.get("error"),
        report.get("url"),
        _short(report.get("userAgent")),
    )
    return jsonify({"success": True, "message": "Error logged"})


@telemetry_bp.route("/shield-telemetry", methods=["POST"])
def shield_telemetry():
    payload = _payload()
    if payload is None:
        return _bad_request()
    try:
        events = _as_list(payload.get("events"))
        summary = summarize_shield_events(events)
        logger.info("[telemetry] %s", summary)
        return jsonify({"success": True, "received": len(events), "summary": summary})
    except Exception:
        logger.exception("[telemetry] failed to process telemetry")
        return jsonify({"success": False, "error": "Failed to process telemetry"}), 500


@telemetry_bp.route("/ab-test-results", methods=["POST"])
def ab_test_results():
    payload = _payload()
    if payload is None:
        return _bad_request()
    try:
        results = _as_list(payload.get("results"))
        variant_stats = aggregate_ab_results(results)
        logger.info("[ab-test] %s", variant_stats)
        return jsonify({"success": True, "received": len(results), "variantStats": variant_stats})
    except Exception:
        logger.exception("[ab-test] failed to process results")
        return jsonify({"success": False, "error": "Failed to process results"}), 500
