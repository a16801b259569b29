"""HLS manifest rewriting.

Turns every relative reference in an M3U8 playlist into an absolute URL so
the playlist can be served from a different origin than the one that
produced it. The transform is line-oriented: the number and order of lines
never change, blank lines and plain comments pass through untouched, and
references that are already absolute are left byte-identical.

Resolution rules for a reference ``ref`` against a manifest URL:

* ``http...``  -> unchanged
* ``//host/x`` -> manifest scheme + ``ref``
* ``/x``       -> manifest origin + ``ref``
* anything else -> manifest directory + ``ref``

Tags carrying a quoted ``URI="..."`` attribute (``#EXT-X-KEY``,
``#EXT-X-MAP``, ``#EXT-X-MEDIA`` ...) get the attribute value rewritten with
the same rules. Only the first ``URI=`` on a line is touched.
"""

from __future__ import annotations

import re
from typing import Callable, Optional
from urllib.parse import urlsplit

M3U8_SUFFIX = ".m3u8"
URI_ATTR_RE = re.compile(r'URI="([^"]*)"')


class ManifestRewriteError(ValueError):
    """Raised when the manifest URL cannot serve as a resolution base."""


def is_m3u8_url(value: str) -> bool:
    return M3U8_SUFFIX in (value or "").lower()


def manifest_base(manifest_url: str) -> tuple[str, str]:
    """Return ``(origin, directory)`` for a manifest URL.

    The directory is the URL path truncated after its last ``/``; the query
    string never takes part, so signed URLs like ``/proxy?url=a/b`` keep
    their real directory.
    """
    parsed = urlsplit((manifest_url or "").strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ManifestRewriteError(f"invalid manifest base URL: {manifest_url!r}")

    origin = f"{parsed.scheme}://{parsed.netloc}"
    path = parsed.path or "/"
    directory = origin + path[: path.rfind("/") + 1]
    return origin, directory


def resolve_reference(ref: str, origin: str, directory: str) -> str:
    if ref.startswith("http"):
        return ref
    if ref.startswith("//"):
        return origin.split("://", 1)[0] + ":" + ref
    if ref.startswith("/"):
        return origin + ref
    return directory + ref


def rewrite_line(
    line: str,
    origin: str,
    directory: str,
    wrap: Optional[Callable[[str], str]] = None,
) -> str:
    stripped = line.strip()
    if not stripped:
        return line

    if stripped.startswith("#"):
        match = URI_ATTR_RE.search(line)
        if not match or not match.group(1):
            return line
        value = match.group(1)
        resolved = resolve_reference(value, origin, directory)
        if wrap is not None:
            resolved = wrap(resolved)
        if resolved == value:
            return line
        return f'{line[:match.start(1)]}{resolved}{line[match.end(1):]}'

    resolved = resolve_reference(stripped, origin, directory)
    if wrap is not None:
        return wrap(resolved)
    if resolved == stripped:
        return line
    return resolved


def rewrite_manifest(
    text: str,
    manifest_url: str,
    wrap: Optional[Callable[[str], str]] = None,
) -> str:
    """Rewrite all references in ``text`` to absolute URLs.

    ``wrap`` receives each resolved absolute URL (segment lines and
    ``URI=`` values alike) and returns what should be written instead; the
    relays use it to route references back through themselves.

    Raises :class:`ManifestRewriteError` when ``manifest_url`` has no
    scheme or host.
    """
    origin, directory = manifest_base(manifest_url)
    return "\n".join(
        rewrite_line(line, origin, directory, wrap) for line in text.split("\n")
    )
