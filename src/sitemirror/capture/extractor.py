"""
Resource reference enumeration.

Finds every resource a page depends on: markup attributes, srcset
candidates, inline and block CSS, stylesheet imports and scripts. Also
finds the page's anchor links for the crawl frontier.
"""

import re
from typing import List, Set, Tuple

from bs4 import BeautifulSoup

from sitemirror.utils.urls import can_fetch_url, is_http_url, resolve

CSS_URL_RE = re.compile(r"url\(\s*([\"']?)([^)\"']+)\1\s*\)", re.IGNORECASE)
CSS_IMPORT_RE = re.compile(
    r"@import\s+(?:url\()?\s*([\"']?)([^\)\"';]+)\1\s*\)?\s*([^;]*);",
    re.IGNORECASE,
)
WS_RE = re.compile(r"\s+")

# link rel values whose href is a page resource
RESOURCE_LINK_RELS = {
    "stylesheet",
    "icon",
    "shortcut",
    "apple-touch-icon",
    "apple-touch-icon-precomposed",
    "mask-icon",
    "manifest",
    "preload",
    "modulepreload",
    "prefetch",
}

# (selector, attribute) pairs holding a single resource URL
SRC_ATTRIBUTES = [
    ("img[src]", "src"),
    ("source[src]", "src"),
    ("video[src]", "src"),
    ("video[poster]", "poster"),
    ("audio[src]", "src"),
    ("track[src]", "src"),
    ("input[src]", "src"),
    ("script[src]", "src"),
    ("embed[src]", "src"),
    ("object[data]", "data"),
    ("image[href]", "href"),  # inline SVG
]

SRCSET_SELECTORS = "img[srcset], source[srcset], img[data-srcset], source[data-srcset]"


def parse_html(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", "html.parser")


def effective_base_url(soup: BeautifulSoup, fallback: str) -> str:
    """Honour <base href> when present."""
    tag = soup.find("base", href=True)
    if tag and tag.get("href"):
        return resolve(fallback, tag["href"]) or fallback
    return fallback


def parse_srcset_candidates(value: str) -> List[Tuple[str, str]]:
    """Split a srcset attribute into (url, descriptor) pairs.

    A candidate URL is a run of non-whitespace and may itself contain
    commas. Trailing commas on the URL end the candidate; otherwise the
    descriptor runs to the next comma outside parentheses.
    """
    candidates: List[Tuple[str, str]] = []
    text = value or ""
    pos, length = 0, len(text)
    while pos < length:
        while pos < length and (text[pos].isspace() or text[pos] == ","):
            pos += 1
        if pos >= length:
            break

        start = pos
        while pos < length and not text[pos].isspace():
            pos += 1
        url = text[start:pos]

        descriptor = ""
        if url.endswith(","):
            url = url.rstrip(",")
        else:
            start = pos
            depth = 0
            while pos < length:
                ch = text[pos]
                if ch == "(":
                    depth += 1
                elif ch == ")" and depth:
                    depth -= 1
                elif ch == "," and not depth:
                    break
                pos += 1
            descriptor = WS_RE.sub(" ", text[start:pos]).strip()

        if url:
            candidates.append((url, descriptor))
    return candidates


def parse_srcset(value: str) -> List[str]:
    return [url for url, _ in parse_srcset_candidates(value)]


def parse_css_urls(text: str) -> List[str]:
    """Raw url() and @import references in a stylesheet, in document order."""
    urls: List[str] = []
    for match in CSS_URL_RE.finditer(text or ""):
        u = match.group(2).strip()
        if can_fetch_url(u) and u not in urls:
            urls.append(u)
    for match in CSS_IMPORT_RE.finditer(text or ""):
        u = match.group(2).strip()
        if can_fetch_url(u) and u not in urls:
            urls.append(u)
    return urls


def extract_css_references(css_text: str, css_base_url: str) -> List[str]:
    """Absolute URLs referenced by a stylesheet."""
    return [
        absolute
        for absolute in (resolve(css_base_url, u) for u in parse_css_urls(css_text))
        if is_http_url(absolute)
    ]


def _is_resource_link(tag) -> bool:
    rels = {r.lower() for r in (tag.get("rel") or [])}
    return bool(rels & RESOURCE_LINK_RELS)


def extract_asset_urls(soup: BeautifulSoup, base_url: str) -> List[str]:
    """Every resource reference in the page as absolute http(s) URLs.

    Order follows the document; duplicates are dropped.
    """
    base = effective_base_url(soup, base_url)
    found: List[str] = []
    seen: Set[str] = set()

    def add(raw: str, ref_base: str = base) -> None:
        if not can_fetch_url(raw):
            return
        absolute = resolve(ref_base, raw)
        if is_http_url(absolute) and absolute not in seen:
            seen.add(absolute)
            found.append(absolute)

    for link in soup.select("link[href]"):
        if _is_resource_link(link):
            add(link.get("href"))

    for selector, attribute in SRC_ATTRIBUTES:
        for tag in soup.select(selector):
            if tag.name == "input" and (tag.get("type") or "").lower() != "image":
                continue
            add(tag.get(attribute))

    for tag in soup.select(SRCSET_SELECTORS):
        for attribute in ("srcset", "data-srcset"):
            for u in parse_srcset(tag.get(attribute, "")):
                add(u)

    for tag in soup.select("[style]"):
        for u in parse_css_urls(tag.get("style") or ""):
            add(u)

    for style in soup.find_all("style"):
        for u in parse_css_urls(style.string or style.get_text() or ""):
            add(u)

    return found


def extract_anchor_links(soup: BeautifulSoup, base_url: str) -> List[str]:
    """Absolute http(s) anchor targets, fragments stripped."""
    base = effective_base_url(soup, base_url)
    links: List[str] = []
    seen: Set[str] = set()
    for a in soup.select("a[href], area[href]"):
        href = a.get("href")
        if not can_fetch_url(href):
            continue
        absolute = resolve(base, href)
        if is_http_url(absolute) and absolute not in seen:
            seen.add(absolute)
            links.append(absolute)
    return links
