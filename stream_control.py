"""Admin stream overrides and provider load reporting."""

from __future__ import annotations

import hmac
import logging
from dataclasses import asdict
from typing import Optional

from flask import Blueprint, jsonify, request

import settings
from kv_store import KeyValueStore, kv_store
from providers import (
    STREAM_PROVIDERS,
    best_sandbox_config,
    fallback_strategies,
    get_provider_config,
    get_provider_stats,
    provider_success_rate,
    report_failure,
    report_success,
)

logger = logging.getLogger(__name__)

control_bp = Blueprint("control", __name__)

AUTO = "AUTO"


def _override_key(match_id: str) -> str:
    return f"match:{match_id}:override"


def get_override(match_id: str, store: KeyValueStore = kv_store) -> Optional[str]:
    return store.get(_override_key(str(match_id)))


def set_override(match_id: str, source: str, store: KeyValueStore = kv_store) -> None:
    if source == AUTO:
        store.delete(_override_key(str(match_id)))
    else:
        store.set(_override_key(str(match_id)), source, ex=settings.OVERRIDE_TTL_SECONDS)


def secret_matches(submitted) -> bool:
    if not isinstance(submitted, str) or not settings.STREAM_CONTROL_SECRET:
        return False
    return hmac.compare_digest(submitted, settings.STREAM_CONTROL_SECRET)


def _is_truthy(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in ("1", "true", "yes", "on")


@control_bp.route("/api/stream-control", methods=["GET"])
def stream_control_get():
    match_id = (request.args.get("matchId") or "").strip()
    if not match_id:
        return jsonify({"error": "Missing matchId"}), 400
    return jsonify({"source": get_override(match_id) or AUTO})


@control_bp.route("/api/stream-control", methods=["POST"])
def stream_control_set():
    payload = request.get_json(silent=True) or {}
    if not secret_matches(payload.get("secret")):
        logger.warning("[control] rejected override attempt for match %s", payload.get("matchId"))
        return jsonify({"error": "Unauthorized"}), 401

    match_id = str(payload.get("matchId") or "").strip()
    source = str(payload.get("source") or "").strip()
    if not match_id or not source:
        return jsonify({"error": "matchId and source are required"}), 400

    set_override(match_id, source)
    logger.info("[control] match %s override -> %s", match_id, source)
    return jsonify({"success": True})


@control_bp.route("/api/providers")
def providers_list():
    items = []
    for provider_id, config in STREAM_PROVIDERS.items():
        stats = get_provider_stats(provider_id)
        items.append(
            {
                **config.to_dict(),
                "stats": asdict(stats) if stats else None,
                "success_rate": provider_success_rate(provider_id),
            }
        )
    return jsonify({"providers": items})


@control_bp.route("/api/providers/<provider_id>/config")
def provider_config(provider_id: str):
    is_mobile = _is_truthy(request.args.get("mobile"))
    config = get_provider_config(provider_id)
    return jsonify(
        {
            "provider": config.to_dict(),
            "mobile": is_mobile,
            **best_sandbox_config(provider_id, is_mobile),
            "strategies": [asdict(s) for s in fallback_strategies(provider_id)],
        }
    )


@control_bp.route("/api/providers/<provider_id>/report", methods=["POST"])
def provider_report(provider_id: str):
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict) or "success" not in payload:
        return jsonify({"ok": False, "error": "expected {success: bool}"}), 400

    is_mobile = _is_truthy(payload.get("mobile"))
    if _is_truthy(payload.get("success")):
        report_success(provider_id, is_mobile, payload.get("sandbox"))
        return jsonify({"ok": True, "next_strategy": None})

    next_strategy = report_failure(provider_id, is_mobile, str(payload.get("error") or ""))
    return jsonify(
        {
            "ok": True,
            "next_strategy": asdict(next_strategy) if next_strategy else None,
        }
    )
