"""URL filter shared by the service worker and the server-side shield.

A URL is blocked when it matches one of the ad patterns and none of the
whitelist patterns; the whitelist always wins. Patterns are kept as source
strings next to their compiled form so the same list can be rendered into
the service worker script, and they stick to the regex subset JavaScript
and Python agree on.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from typing import Any, Iterable, Pattern

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

AD_PATTERNS = [
    r"popads\.",
    r"popcash\.",
    r"propellerads\.",
    r"adsterra\.",
    r"exoclick\.",
    r"juicyads\.",
    r"trafficjunky\.",
    r"doubleclick\.",
    r"googlesyndication\.",
    r"clickadu\.",
    r"admaven\.",
    r"adcash\.",
    r"zeroredirect\.",
    r"hilltopads\.",
    r"popunder\.",
    r"\bads\b",
    r"\bpop\b",
    r"\bclick\b.*\btrack",
    r"syndication",
    r"adserver",
]

WHITELIST_PATTERNS = [
    r"reedstreams",
    r"localhost",
    r"192\.168\.",
    r"vercel",
    r"streamed\.pk",
    r"embedstream",
    r"sportshub",
    r"google-analytics",
    r"googleapis",
    r"gstatic",
    r"fonts\.",
    r"cloudflare",
    r"jsdelivr",
    r"cdnjs",
]


@dataclass
class FilterStats:
    checked: int = 0
    blocked: int = 0
    whitelisted: int = 0


class AdFilter:
    def __init__(
        self,
        ad_patterns: Iterable[str] = AD_PATTERNS,
        whitelist_patterns: Iterable[str] = WHITELIST_PATTERNS,
    ):
        self._lock = threading.Lock()
        self._ad: list[tuple[str, Pattern]] = [(p, re.compile(p, re.I)) for p in ad_patterns]
        self._whitelist: list[tuple[str, Pattern]] = [
            (p, re.compile(p, re.I)) for p in whitelist_patterns
        ]
        self.stats = FilterStats()

    @property
    def ad_sources(self) -> list[str]:
        with self._lock:
            return [source for source, _ in self._ad]

    @property
    def whitelist_sources(self) -> list[str]:
        return [source for source, _ in self._whitelist]

    def is_whitelisted(self, url: str) -> bool:
        value = str(url or "").lower()
        return any(pattern.search(value) for _, pattern in self._whitelist)

    def should_block(self, url: str) -> bool:
        value = str(url or "").lower()
        with self._lock:
            self.stats.checked += 1
            if any(pattern.search(value) for _, pattern in self._whitelist):
                self.stats.whitelisted += 1
                return False
            if any(pattern.search(value) for _, pattern in self._ad):
                self.stats.blocked += 1
                return True
        return False

    def add_pattern(self, pattern: str) -> None:
        """Compile and append a runtime ad pattern; raises ``re.error``."""
        compiled = re.compile(pattern, re.I)
        with self._lock:
            if any(source == pattern for source, _ in self._ad):
                return
            self._ad.append((pattern, compiled))
        logger.info("[adfilter] added pattern %r", pattern)

    def status(self) -> dict[str, Any]:
        return {
            "status": "active",
            "version": VERSION,
            "patterns": len(self.ad_sources),
        }

    def handle_message(self, message: Any) -> dict[str, Any]:
        """Answer a ``GET_STATUS`` / ``ADD_PATTERN`` message like the worker does."""
        kind = message.get("type") if isinstance(message, dict) else None
        if kind == "GET_STATUS":
            return self.status()
        if kind == "ADD_PATTERN":
            pattern = message.get("pattern")
            if not isinstance(pattern, str) or not pattern:
                return {"success": False, "error": "pattern must be a non-empty string"}
            try:
                self.add_pattern(pattern)
            except re.error as exc:
                return {"success": False, "error": str(exc)}
            return {"success": True}
        return {"success": False, "error": f"unknown message type: {kind!r}"}


ad_filter = AdFilter()
