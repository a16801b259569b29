from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Optional

import redis

import settings

logger = logging.getLogger(__name__)


class KeyValueStore:
    """String key/value store with optional expiry.

    Backed by Redis when ``redis_url`` is configured and reachable; every
    operation falls back to a process-local dict otherwise, so the app keeps
    working (without cross-process sharing) when Redis goes away.
    """

    def __init__(self, redis_url: str | None = None):
        self._redis = None
        self._local: dict[str, tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

        if redis_url:
            try:
                self._redis = redis.from_url(redis_url, decode_responses=True)
            except Exception as exc:
                logger.warning("[kv] Failed to init Redis (%s): %s", redis_url, exc)
                self._redis = None

    @property
    def backend(self) -> str:
        return "redis" if self._redis is not None else "memory"

    def _get_local(self, key: str) -> Optional[str]:
        with self._lock:
            item = self._local.get(key)
            if item is None:
                return None
            value, expires_at = item
            if expires_at is not None and expires_at <= time.time():
                del self._local[key]
                return None
            return value

    def get(self, key: str) -> Optional[str]:
        if self._redis is not None:
            try:
                return self._redis.get(key)
            except Exception as exc:
                logger.warning("[kv] Redis get fallback: %s", exc)
        return self._get_local(key)

    def set(self, key: str, value: str, ex: int | None = None) -> None:
        if self._redis is not None:
            try:
                self._redis.set(key, value, ex=ex)
                return
            except Exception as exc:
                logger.warning("[kv] Redis set fallback: %s", exc)

        expires_at = time.time() + ex if ex else None
        with self._lock:
            self._local[key] = (value, expires_at)

    def delete(self, key: str) -> None:
        if self._redis is not None:
            try:
                self._redis.delete(key)
                return
            except Exception as exc:
                logger.warning("[kv] Redis delete fallback: %s", exc)

        with self._lock:
            self._local.pop(key, None)

    def get_json(self, key: str) -> Any:
        raw = self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("[kv] discarding non-JSON value under %s", key)
            return None

    def set_json(self, key: str, value: Any, ex: int | None = None) -> None:
        self.set(key, json.dumps(value), ex=ex)


kv_store = KeyValueStore(settings.REDIS_URL)
