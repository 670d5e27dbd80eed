"""URL helpers shared by the orchestrator and the capture pipeline."""

import posixpath
from typing import Optional
from urllib.parse import urljoin, urlparse, urlunparse

from sitemirror.constants import NON_PAGE_EXTENSIONS

UNFETCHABLE_PREFIXES = ("#", "mailto:", "tel:", "javascript:", "data:", "blob:", "about:")

_DEFAULT_PORTS = {"http": 80, "https": 443}


def can_fetch_url(u: Optional[str]) -> bool:
    if not u:
        return False
    u = u.strip()
    if not u or u.lower().startswith(UNFETCHABLE_PREFIXES):
        return False
    return True


def normalize_url(url: str) -> str:
    """Normalize URL for visited-set identity.

    Strips the fragment, lower-cases scheme and host, drops default ports
    and makes the trailing slash canonical (root keeps "/", others drop it).

    Args:
        url: URL to normalize

    Returns:
        Normalized URL

    Raises:
        ValueError: the URL is malformed (bad port or IPv6 literal)
    """
    parsed = urlparse(url.strip())
    scheme = parsed.scheme.lower()
    host = (parsed.hostname or "").lower()
    netloc = host
    if parsed.port and parsed.port != _DEFAULT_PORTS.get(scheme):
        netloc = f"{host}:{parsed.port}"
    if parsed.username:
        auth = parsed.username + (f":{parsed.password}" if parsed.password else "")
        netloc = f"{auth}@{netloc}"

    path = parsed.path or "/"
    if path != "/" and path.endswith("/"):
        path = path.rstrip("/") or "/"

    return urlunparse((scheme, netloc, path, parsed.params, parsed.query, ""))


def origin_of(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme.lower()}://{(parsed.netloc or '').lower()}"


def is_same_origin(base: str, other: str) -> bool:
    """True when both URLs share scheme, host and port. Malformed URLs never match."""
    try:
        return origin_of(normalize_url(base)) == origin_of(normalize_url(other))
    except ValueError:
        return False


def is_http_url(url: str) -> bool:
    try:
        return urlparse(url).scheme.lower() in ("http", "https")
    except ValueError:
        return False


def is_page_candidate(url: str) -> bool:
    """True when the URL path does not name a known non-HTML resource."""
    ext = posixpath.splitext(urlparse(url).path)[1].lower()
    return ext not in NON_PAGE_EXTENSIONS


def resolve(base: str, reference: str) -> str:
    """Resolve a reference against a base and drop its fragment.

    Returns an empty string when the reference cannot be parsed.
    """
    try:
        absolute = urljoin(base, reference.strip())
        parsed = urlparse(absolute)
    except ValueError:
        return ""
    return urlunparse(parsed._replace(fragment=""))
