"""Stream provider table, load statistics and sandbox auto-healing.

Each embed provider gets a static config describing how its iframe should
be sandboxed. Load reports from the player feed two things kept in the
key-value store: per-provider success statistics, and the sandbox string
that last worked for a provider on a device class. A failure moves the
cached choice one step down the fallback ladder
(``sandbox`` -> ``permissive-sandbox`` -> ``no-sandbox``).
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from kv_store import KeyValueStore, kv_store

logger = logging.getLogger(__name__)

DEFAULT_SANDBOX_PERMISSIONS = (
    "allow-scripts",
    "allow-same-origin",
    "allow-presentation",
    "allow-forms",
)
PERMISSIVE_SANDBOX_PERMISSIONS = DEFAULT_SANDBOX_PERMISSIONS + ("allow-modals",)


@dataclass(frozen=True)
class ProviderConfig:
    id: str
    name: str
    needs_sandbox: bool = True
    sandbox_permissions: tuple[str, ...] = DEFAULT_SANDBOX_PERMISSIONS
    known_issues: tuple[str, ...] = ()
    fallback_strategy: str = "no-sandbox"
    active: bool = True

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["sandbox_permissions"] = list(self.sandbox_permissions)
        data["known_issues"] = list(self.known_issues)
        return data


@dataclass
class ProviderStats:
    total_loads: int = 0
    successful_loads: int = 0
    failed_loads: int = 0
    last_updated: float = field(default_factory=time.time)

    @property
    def success_rate(self) -> float:
        if not self.total_loads:
            return 100.0
        return self.successful_loads / self.total_loads * 100


@dataclass(frozen=True)
class SandboxStrategy:
    name: str
    sandbox: Optional[str]


STREAM_PROVIDERS: dict[str, ProviderConfig] = {
    "streamed.pk": ProviderConfig(id="streamed.pk", name="Streamed.pk"),
    "echo": ProviderConfig(id="echo", name="Echo Streams"),
    "charlie": ProviderConfig(id="charlie", name="Charlie Streams"),
    "admin": ProviderConfig(id="admin", name="Admin Streams"),
    "bravo": ProviderConfig(id="bravo", name="Bravo Streams"),
    "default": ProviderConfig(id="default", name="Unknown Provider"),
}


def get_provider_config(provider_id_or_url: str) -> ProviderConfig:
    """Exact id match, then the first id contained in the value, then default."""
    normalized = (provider_id_or_url or "").strip().lower()
    if normalized in STREAM_PROVIDERS:
        return STREAM_PROVIDERS[normalized]
    for key, config in STREAM_PROVIDERS.items():
        if key in normalized:
            return config
    return STREAM_PROVIDERS["default"]


def sandbox_string(provider: str) -> Optional[str]:
    config = get_provider_config(provider)
    if not config.needs_sandbox:
        return None
    return " ".join(config.sandbox_permissions)


def should_use_sandbox(provider: str, is_mobile: bool) -> bool:
    return get_provider_config(provider).needs_sandbox and is_mobile


# -----------------------------
# Load statistics
# -----------------------------

def _stats_key(provider_id: str) -> str:
    return f"provider:{provider_id}:stats"


def get_provider_stats(provider: str, store: KeyValueStore = kv_store) -> Optional[ProviderStats]:
    config = get_provider_config(provider)
    raw = store.get_json(_stats_key(config.id))
    if not isinstance(raw, dict):
        return None
    try:
        return ProviderStats(**raw)
    except TypeError:
        return None


def report_stream_load(provider: str, success: bool, store: KeyValueStore = kv_store) -> ProviderStats:
    """Record one load attempt.

    Read-modify-write without cross-process locking; concurrent reports from
    several workers can lose increments.
    """
    config = get_provider_config(provider)
    stats = get_provider_stats(config.id, store) or ProviderStats()
    stats.total_loads += 1
    if success:
        stats.successful_loads += 1
    else:
        stats.failed_loads += 1
    stats.last_updated = time.time()
    store.set_json(_stats_key(config.id), asdict(stats))

    logger.info(
        "[providers] %s: %s | Rate: %.1f%%",
        provider,
        "SUCCESS" if success else "FAILED",
        stats.success_rate,
    )
    return stats


def provider_success_rate(provider: str, store: KeyValueStore = kv_store) -> float:
    stats = get_provider_stats(provider, store)
    return stats.success_rate if stats else 100.0


# -----------------------------
# Auto-healing
# -----------------------------

def fallback_strategies(provider: str) -> list[SandboxStrategy]:
    default = sandbox_string(provider) or " ".join(DEFAULT_SANDBOX_PERMISSIONS)
    return [
        SandboxStrategy("sandbox", default),
        SandboxStrategy("permissive-sandbox", " ".join(PERMISSIVE_SANDBOX_PERMISSIONS)),
        SandboxStrategy("no-sandbox", None),
    ]


def _config_key(provider: str, is_mobile: bool) -> str:
    device = "mobile" if is_mobile else "desktop"
    return f"provider:{get_provider_config(provider).id}:{device}:sandbox"


def cached_sandbox(provider: str, is_mobile: bool, store: KeyValueStore = kv_store) -> tuple[bool, Optional[str]]:
    """Return ``(found, sandbox)``; ``sandbox`` is None for a cached no-sandbox choice."""
    raw = store.get_json(_config_key(provider, is_mobile))
    if not isinstance(raw, dict) or "sandbox" not in raw:
        return False, None
    return True, raw["sandbox"]


def set_cached_sandbox(
    provider: str,
    is_mobile: bool,
    sandbox: Optional[str],
    store: KeyValueStore = kv_store,
) -> None:
    store.set_json(_config_key(provider, is_mobile), {"sandbox": sandbox})


def best_sandbox_config(provider: str, is_mobile: bool, store: KeyValueStore = kv_store) -> dict[str, Any]:
    found, cached = cached_sandbox(provider, is_mobile, store)
    if found:
        return {
            "use_sandbox": cached is not None and is_mobile,
            "sandbox": cached,
            "cached": True,
        }

    default = sandbox_string(provider) or " ".join(DEFAULT_SANDBOX_PERMISSIONS)
    return {
        "use_sandbox": is_mobile,
        "sandbox": default if is_mobile else None,
        "cached": False,
    }


def report_success(
    provider: str,
    is_mobile: bool,
    sandbox: Optional[str],
    store: KeyValueStore = kv_store,
) -> None:
    set_cached_sandbox(provider, is_mobile, sandbox, store)
    report_stream_load(provider, True, store)
    logger.info("[autoheal] %s loaded with %s", provider, "sandbox" if sandbox else "no sandbox")


def report_failure(
    provider: str,
    is_mobile: bool,
    error: str = "",
    store: KeyValueStore = kv_store,
) -> Optional[SandboxStrategy]:
    """Record a failed load and advance to the next strategy, if any."""
    report_stream_load(provider, False, store)
    logger.warning("[autoheal] %s fallback triggered: %s", provider, error or "load failed")

    strategies = fallback_strategies(provider)
    found, current = cached_sandbox(provider, is_mobile, store)
    index = 0
    if found:
        for i, strategy in enumerate(strategies):
            if strategy.sandbox == current:
                index = i
                break

    if index + 1 >= len(strategies):
        logger.warning("[autoheal] All strategies exhausted for %s", provider)
        return None

    next_strategy = strategies[index + 1]
    set_cached_sandbox(provider, is_mobile, next_strategy.sandbox, store)
    logger.info("[autoheal] Trying fallback strategy %s for %s", next_strategy.name, provider)
    return next_strategy
