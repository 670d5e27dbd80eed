"""On-disk layout of a mirror."""

import hashlib
import mimetypes
import posixpath
import re
from typing import Optional
from urllib.parse import unquote, urlparse

from sitemirror.constants import ASSETS_DIRNAME

INVALID_FILENAME_CHARS_RE = re.compile(r'[<>:"\\|?*\x00-\x1f]')
EXTENSION_RE = re.compile(r"^\.[a-z0-9]{1,8}$")

HTML_EXTS = {".html", ".htm"}

# Extensions mimetypes gets wrong or does not know
_MIME_EXTENSIONS = {
    "application/javascript": ".js",
    "text/javascript": ".js",
    "application/json": ".json",
    "image/svg+xml": ".svg",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
    "image/avif": ".avif",
    "image/x-icon": ".ico",
    "image/vnd.microsoft.icon": ".ico",
    "font/woff2": ".woff2",
    "font/woff": ".woff",
    "font/ttf": ".ttf",
    "font/otf": ".otf",
    "application/manifest+json": ".webmanifest",
    "text/css": ".css",
    "text/plain": ".txt",
}


def sanitize_segment(name: str) -> str:
    name = INVALID_FILENAME_CHARS_RE.sub("_", unquote(name))
    if name in ("", ".", ".."):
        name = "_"
    return name[:200]


def short_hash(text: str, length: int = 8) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:length]


def page_local_path(url: str) -> str:
    """Output-root-relative path for a captured page.

    ``/`` -> ``index.html``, ``/a/b`` -> ``a/b/index.html``,
    ``/a/b.html`` -> ``a/b.html``. Query strings add a short hash suffix.
    """
    parsed = urlparse(url)
    segments = [sanitize_segment(s) for s in (parsed.path or "/").split("/") if s]

    last = segments[-1] if segments else ""
    stem, ext = posixpath.splitext(last)
    if ext.lower() in HTML_EXTS:
        directory, filename = segments[:-1], last
    elif ext and EXTENSION_RE.match(ext.lower()):
        # e.g. /page.php -> page.php.html
        directory, filename = segments[:-1], f"{last}.html"
    else:
        directory, filename = segments, "index.html"

    if parsed.query:
        stem, ext = posixpath.splitext(filename)
        filename = f"{stem}_{short_hash(parsed.query)}{ext}"

    return posixpath.join(*directory, filename) if directory else filename


def disambiguate_path(local_path: str, url: str) -> str:
    """Insert a hash of the URL before the extension: ``a/index.html`` -> ``a/index_<hash>.html``."""
    stem, ext = posixpath.splitext(local_path)
    return f"{stem}_{short_hash(url)}{ext}"


def extension_for(url: str, mime_type: Optional[str]) -> str:
    """Extension from the URL path, falling back to the MIME type."""
    ext = posixpath.splitext(urlparse(url).path)[1].lower()
    if EXTENSION_RE.match(ext):
        return ext
    if mime_type:
        mime = mime_type.split(";")[0].strip().lower()
        return _MIME_EXTENSIONS.get(mime) or mimetypes.guess_extension(mime) or ""
    return ""


def asset_local_path(content_hash: str, url: str, mime_type: Optional[str]) -> str:
    """``assets/<contentHash><ext>``, relative to the output root."""
    return posixpath.join(ASSETS_DIRNAME, f"{content_hash}{extension_for(url, mime_type)}")


def relative_href(from_local_path: str, to_local_path: str) -> str:
    """Path from one output file to another, for use in href/src."""
    start = posixpath.dirname(from_local_path) or "."
    return posixpath.relpath(to_local_path, start)
