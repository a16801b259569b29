"""Heuristic ad shield for untrusted embed markup.

Embed pages from stream providers inject popups, click-catching overlays
and redirect scripts. The shield applies the same rules in two places:

* server side, on a parsed document (``AdShield.sanitize``) before an embed
  page is handed to the player, and
* client side, in the page script rendered from ``ShieldConfig`` (see
  ``shield_site``), which re-applies them on an interval and from a
  mutation observer.

Everything here is best effort. Elements are judged from markup and inline
styles only, so both misses and false positives are expected. The shield
never raises to its caller: a failure on one element skips that element,
and a document that cannot be processed is returned unchanged.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, Optional
from urllib.parse import urlsplit

from bs4 import BeautifulSoup, Tag

import settings
from ad_filter import AdFilter, ad_filter

logger = logging.getLogger(__name__)

TRANSPARENT_BACKGROUNDS = {"transparent", "rgba(0, 0, 0, 0)", "rgba(0,0,0,0)"}
RELATIVE_UNITS = ("%", "vw", "vh")
MEDIA_TAGS = ["video", "iframe", "object", "embed", "canvas"]
_LENGTH_RE = re.compile(r"^(-?\d+(?:\.\d+)?)\s*(px|%|vw|vh)?$")


@dataclass(frozen=True)
class ShieldConfig:
    safe_tags: tuple[str, ...] = ("nav", "header", "footer")
    safe_classes: tuple[str, ...] = ("player-wrapper", "stream-selector", "stream-btn")
    video_iframe_class: str = "video-iframe"
    handler_attrs: tuple[str, ...] = ("onclick", "onmousedown", "ontouchstart")
    popup_tokens: tuple[str, ...] = ("open", "location", "href", "window")
    overlay_popup_tokens: tuple[str, ...] = ("open", "location")
    iframe_ad_tokens: tuple[str, ...] = ("ads", "pop", "click")
    script_ad_tokens: tuple[str, ...] = ("pop", "ads", "click")
    intercepted_events: tuple[str, ...] = ("click", "mousedown", "touchstart", "touchend")
    z_index_threshold: int = 10
    min_overlay_px: int = 100
    # percentage / viewport units can't be measured server side
    min_overlay_relative: int = 10
    armor_interval_ms: int = 1000
    overlay_delays_ms: tuple[int, ...] = (0, 100, 500, 1000)
    overlay_interval_ms: int = 500
    iframe_interval_ms: int = 1000
    telemetry_batch_size: int = 20
    telemetry_flush_ms: int = 30000

    def safe_selectors(self) -> list[str]:
        return [f".{name}" for name in self.safe_classes] + list(self.safe_tags)


class NavigationPolicy:
    """Decides which external URLs a page may open in a new window.

    Replaces the blanket ``window.open`` no-op with an explicit allow-list:
    a URL may open only when its host is, or is a subdomain of, an allowed
    host.
    """

    def __init__(self, allowed_hosts: Iterable[str] = ()):
        self.allowed_hosts = frozenset(
            h.strip().lower().lstrip(".") for h in allowed_hosts if h and h.strip()
        )

    def allows(self, url: str) -> bool:
        try:
            parsed = urlsplit(url or "")
        except ValueError:
            return False
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            return False
        host = parsed.hostname.lower()
        return any(host == allowed or host.endswith("." + allowed) for allowed in self.allowed_hosts)

    def to_dict(self) -> dict[str, Any]:
        return {"allowedHosts": sorted(self.allowed_hosts)}


@dataclass
class ShieldReport:
    click_traps: int = 0
    overlays: int = 0
    iframes: int = 0
    scripts: int = 0
    injected: int = 0
    links: int = 0
    errors: int = 0

    @property
    def total(self) -> int:
        return self.click_traps + self.overlays + self.iframes + self.scripts + self.injected + self.links


ARMOR_SCRIPT = """(function () {
  var policy = %s;
  function guarded(url) {
    try {
      var host = new URL(url, location.href).hostname.toLowerCase();
      var ok = host === location.hostname.toLowerCase() ||
        policy.allowedHosts.some(function (h) { return host === h || host.endsWith('.' + h); });
      if (ok) { return window.__shieldOpen ? window.__shieldOpen.apply(window, arguments) : null; }
    } catch (e) {}
    return null;
  }
  function arm(w) {
    try {
      if (!w.__shieldOpen) { w.__shieldOpen = w.open; }
      Object.defineProperty(w, 'open', { get: function () { return guarded; }, set: function () {}, configurable: true });
    } catch (e) {}
  }
  arm(window);
  try { if (window.parent && window.parent !== window) { arm(window.parent); } } catch (e) {}
  try { if (window.top && window.top !== window) { arm(window.top); } } catch (e) {}
  setInterval(function () { arm(window); }, %d);
})();"""


# -----------------------------
# Inline style helpers
# -----------------------------

def parse_style(value: Optional[str]) -> dict[str, str]:
    style: dict[str, str] = {}
    for decl in (value or "").split(";"):
        if ":" not in decl:
            continue
        name, _, raw = decl.partition(":")
        raw = raw.replace("!important", "").strip().lower()
        if name.strip():
            style[name.strip().lower()] = raw
    return style


def _length(value: Optional[str]) -> Optional[tuple[float, str]]:
    match = _LENGTH_RE.match((value or "").strip())
    if not match:
        return None
    return float(match.group(1)), match.group(2) or "px"


def _z_index(style: dict[str, str]) -> int:
    try:
        return int(style.get("z-index", "0"))
    except ValueError:
        return 0


def _is_positioned(style: dict[str, str]) -> bool:
    return style.get("position") in ("fixed", "absolute")


def _is_transparent(style: dict[str, str]) -> bool:
    if style.get("opacity") in ("0", "0.0"):
        return True
    background = style.get("background-color", style.get("background", ""))
    return background in TRANSPARENT_BACKGROUNDS


def _classes(tag: Tag) -> list[str]:
    classes = tag.get("class") or []
    if isinstance(classes, str):
        classes = classes.split()
    return classes


def _is_empty(tag: Tag) -> bool:
    """No visible text and no media element underneath."""
    return tag.get_text(strip=True) == "" and tag.find(MEDIA_TAGS) is None


class AdShield:
    def __init__(
        self,
        config: ShieldConfig | None = None,
        policy: NavigationPolicy | None = None,
        url_filter: AdFilter | None = None,
    ):
        self.config = config or ShieldConfig()
        self.policy = policy or NavigationPolicy(settings.NAVIGATION_ALLOWED_HOSTS)
        self.url_filter = url_filter or ad_filter

    # -----------------------------
    # Classification
    # -----------------------------

    def is_safe_node(self, tag: Tag) -> bool:
        return tag.name in self.config.safe_tags or any(
            c in self.config.safe_classes for c in _classes(tag)
        )

    def in_safe_container(self, tag: Tag) -> bool:
        node = tag
        while isinstance(node, Tag):
            if self.is_safe_node(node):
                return True
            node = node.parent
        return False

    def is_video_iframe(self, tag: Tag) -> bool:
        return tag.name == "iframe" and self.config.video_iframe_class in _classes(tag)

    def wraps_protected(self, tag: Tag) -> bool:
        for child in tag.find_all(True):
            if self.is_safe_node(child) or self.is_video_iframe(child):
                return True
        return False

    def handler_text(self, tag: Tag, attrs: Iterable[str] | None = None) -> str:
        return "".join(str(tag.get(attr) or "") for attr in (attrs or self.config.handler_attrs))

    def has_popup_handler(self, tag: Tag) -> bool:
        handlers = self.handler_text(tag)
        return any(token in handlers for token in self.config.popup_tokens)

    def is_large(self, style: dict[str, str]) -> bool:
        if style.get("inset") in ("0", "0px") or all(
            style.get(side) in ("0", "0px") for side in ("top", "right", "bottom", "left")
        ):
            return True
        width = _length(style.get("width"))
        height = _length(style.get("height"))
        if not width or not height:
            return False

        def big(length: tuple[float, str]) -> bool:
            amount, unit = length
            if unit in RELATIVE_UNITS:
                return amount >= self.config.min_overlay_relative
            return amount > self.config.min_overlay_px

        return big(width) and big(height)

    def is_overlay(self, tag: Tag) -> bool:
        """Positioned, empty, transparent or stacked high, and big enough to catch clicks."""
        style = parse_style(tag.get("style"))
        if not _is_positioned(style) or not _is_empty(tag):
            return False
        layered = _is_transparent(style) or _z_index(style) > self.config.z_index_threshold
        return layered and self.is_large(style)

    def has_overlay_popup(self, tag: Tag) -> bool:
        onclick = str(tag.get("onclick") or "")
        return any(token in onclick for token in self.config.overlay_popup_tokens)

    def is_ad_iframe(self, tag: Tag) -> bool:
        if self.is_video_iframe(tag):
            return False
        src = str(tag.get("src") or "").strip().lower()
        if not src or src == "about:blank":
            return True
        return any(token in src for token in self.config.iframe_ad_tokens) or self.url_filter.should_block(src)

    def is_ad_script(self, tag: Tag) -> bool:
        src = str(tag.get("src") or "").strip().lower()
        if not src:
            return False
        return any(token in src for token in self.config.script_ad_tokens) or self.url_filter.should_block(src)

    def is_injected_overlay(self, tag: Tag) -> bool:
        style = parse_style(tag.get("style"))
        return (
            _is_positioned(style)
            and _is_empty(tag)
            and _z_index(style) > self.config.z_index_threshold
        )

    # -----------------------------
    # Sweeps
    # -----------------------------

    def _remove(self, tag: Tag, report: ShieldReport, bucket: str, reason: str) -> None:
        logger.debug("[shield] removed %s <%s>: %s", bucket, tag.name, reason)
        tag.decompose()
        setattr(report, bucket, getattr(report, bucket) + 1)

    def sweep_click_traps(self, soup: BeautifulSoup, report: ShieldReport) -> None:
        """Remove elements whose inline handlers try to open windows or navigate.

        An offending element that wraps the player or another safe container
        only loses its handler attributes.
        """
        attrs = self.config.handler_attrs
        for tag in soup.find_all(lambda t: any(t.has_attr(a) for a in attrs)):
            if getattr(tag, "decomposed", False):
                continue
            try:
                if self.in_safe_container(tag) or not self.has_popup_handler(tag):
                    continue
                if self.wraps_protected(tag):
                    for attr in attrs:
                        if tag.has_attr(attr):
                            del tag[attr]
                    report.click_traps += 1
                    continue
                self._remove(tag, report, "click_traps", "popup handler")
            except Exception:
                report.errors += 1
                logger.debug("[shield] click trap check failed", exc_info=True)

    def sweep_overlays(self, soup: BeautifulSoup, report: ShieldReport) -> None:
        for tag in soup.find_all(["div", "a", "span"]):
            if getattr(tag, "decomposed", False):
                continue
            try:
                if self.in_safe_container(tag) or self.video_iframe_class_on(tag):
                    continue
                if self.wraps_protected(tag):
                    continue
                if self.is_overlay(tag) or self.has_overlay_popup(tag):
                    self._remove(tag, report, "overlays", "hidden overlay")
            except Exception:
                report.errors += 1
                logger.debug("[shield] overlay check failed", exc_info=True)

    def video_iframe_class_on(self, tag: Tag) -> bool:
        return self.config.video_iframe_class in _classes(tag)

    def sweep_iframes(self, soup: BeautifulSoup, report: ShieldReport) -> None:
        for tag in soup.find_all("iframe"):
            if getattr(tag, "decomposed", False):
                continue
            try:
                if self.is_ad_iframe(tag):
                    self._remove(tag, report, "iframes", str(tag.get("src") or "no src"))
            except Exception:
                report.errors += 1
                logger.debug("[shield] iframe check failed", exc_info=True)

    def sweep_links(self, soup: BeautifulSoup, report: ShieldReport) -> None:
        """Drop new-window targets on links the navigation policy doesn't allow."""
        for tag in soup.find_all("a", target=True):
            if getattr(tag, "decomposed", False):
                continue
            if str(tag.get("target")).lower() != "_blank" or self.in_safe_container(tag):
                continue
            if self.policy.allows(str(tag.get("href") or "")):
                continue
            del tag["target"]
            report.links += 1

    def on_nodes_added(
        self,
        nodes: Iterable[Any],
        report: ShieldReport | None = None,
        include_iframes: bool = True,
    ) -> ShieldReport:
        """Judge freshly inserted nodes the way the page's mutation observer does.

        Ad scripts, iframes other than the video frame, and empty positioned
        divs stacked above the z-index threshold are removed on sight. A div
        holding the player or a safe container is kept.
        """
        report = report or ShieldReport()
        for node in nodes:
            if not isinstance(node, Tag) or getattr(node, "decomposed", False):
                continue
            try:
                if node.name == "script" and self.is_ad_script(node):
                    self._remove(node, report, "scripts", str(node.get("src")))
                elif node.name == "iframe" and include_iframes and not self.is_video_iframe(node):
                    self._remove(node, report, "injected", "injected iframe")
                elif (
                    node.name == "div"
                    and not self.in_safe_container(node)
                    and not self.wraps_protected(node)
                    and self.is_injected_overlay(node)
                ):
                    self._remove(node, report, "injected", "injected overlay")
            except Exception:
                report.errors += 1
                logger.debug("[shield] injected node check failed", exc_info=True)
        return report

    def armor(self, soup: BeautifulSoup) -> None:
        script = soup.new_tag("script")
        script.string = ARMOR_SCRIPT % (json.dumps(self.policy.to_dict()), self.config.armor_interval_ms)
        head = soup.head
        if head is None:
            head = soup.new_tag("head")
            if soup.html is not None:
                soup.html.insert(0, head)
            else:
                soup.insert(0, head)
        head.insert(0, script)

    def sanitize(self, html: str, base_url: str | None = None) -> tuple[str, ShieldReport]:
        """Return ``html`` with the shield applied, plus what was removed.

        The embed's own static iframes are judged by the iframe sweep only;
        the injected-node rules run over scripts and divs.
        """
        report = ShieldReport()
        try:
            soup = BeautifulSoup(html or "", "html.parser")
            self.sweep_click_traps(soup, report)
            self.sweep_overlays(soup, report)
            self.sweep_iframes(soup, report)
            self.on_nodes_added(soup.find_all(["script", "div"]), report, include_iframes=False)
            self.sweep_links(soup, report)
            self.armor(soup)
            if base_url and soup.head is not None and soup.head.find("base") is None:
                soup.head.insert(0, soup.new_tag("base", href=base_url))
            cleaned = str(soup)
        except Exception:
            logger.debug("[shield] sanitize failed; serving page unchanged", exc_info=True)
            return html, ShieldReport(errors=1)

        if report.total:
            logger.info("[shield] removed %d elements (%s)", report.total, report)
        return cleaned, report

    def client_config(self) -> dict[str, Any]:
        """Settings rendered into the page shield and service worker scripts."""
        cfg = self.config
        return {
            "safeSelectors": cfg.safe_selectors(),
            "videoIframeClass": cfg.video_iframe_class,
            "handlerAttrs": list(cfg.handler_attrs),
            "popupTokens": list(cfg.popup_tokens),
            "overlayPopupTokens": list(cfg.overlay_popup_tokens),
            "iframeAdTokens": list(cfg.iframe_ad_tokens),
            "scriptAdTokens": list(cfg.script_ad_tokens),
            "adPatterns": self.url_filter.ad_sources,
            "whitelistPatterns": self.url_filter.whitelist_sources,
            "events": list(cfg.intercepted_events),
            "zIndexThreshold": cfg.z_index_threshold,
            "minOverlayPx": cfg.min_overlay_px,
            "armorIntervalMs": cfg.armor_interval_ms,
            "overlayDelaysMs": list(cfg.overlay_delays_ms),
            "overlayIntervalMs": cfg.overlay_interval_ms,
            "iframeIntervalMs": cfg.iframe_interval_ms,
            "telemetryBatchSize": cfg.telemetry_batch_size,
            "telemetryFlushMs": cfg.telemetry_flush_ms,
            "navigation": self.policy.to_dict(),
        }


shield = AdShield()
