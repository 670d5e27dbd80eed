"""
Reference rewriting.

Maps absolute resource URLs to paths relative to the file being written,
so the mirror works offline from any directory.
"""

import posixpath
import re
from typing import Dict, Mapping, Optional
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

from sitemirror.capture.extractor import (
    CSS_IMPORT_RE,
    CSS_URL_RE,
    SRC_ATTRIBUTES,
    SRCSET_SELECTORS,
    _is_resource_link,
    effective_base_url,
    parse_html,
    parse_srcset_candidates,
)
from sitemirror.capture.paths import relative_href
from sitemirror.utils.urls import can_fetch_url, is_http_url, normalize_url, resolve

# Attributes that pin a resource to its original bytes or origin
STRIPPED_ATTRIBUTES = ("integrity", "crossorigin")


def rewrite_css(
    css_text: str,
    css_base_url: str,
    asset_paths: Mapping[str, str],
    from_local_path: str,
) -> str:
    """Rewrite url() and @import references in stylesheet text.

    Args:
        css_text: Stylesheet source
        css_base_url: URL references in the text resolve against
        asset_paths: absolute URL -> output-root-relative path
        from_local_path: output-root-relative path of the file being written

    Returns:
        Rewritten stylesheet; references without a mapping are left as-is
    """
    def map_url(u: str) -> str:
        if not can_fetch_url(u):
            return u
        local = asset_paths.get(resolve(css_base_url, u))
        if local is None:
            return u
        return relative_href(from_local_path, local)

    def repl_url(m: re.Match) -> str:
        q = m.group(1) or ""
        return f"url({q}{map_url(m.group(2).strip())}{q})"

    def repl_import(m: re.Match) -> str:
        q = m.group(1) or '"'
        media = m.group(3).strip()
        suffix = f" {media}" if media else ""
        return f"@import url({q}{map_url(m.group(2).strip())}{q}){suffix};"

    text = CSS_URL_RE.sub(repl_url, css_text)
    return CSS_IMPORT_RE.sub(repl_import, text)


def _rewrite_srcset(value: str, base: str, asset_paths: Mapping[str, str], from_local_path: str) -> str:
    parts = []
    for url_part, descriptor in parse_srcset_candidates(value):
        local = asset_paths.get(resolve(base, url_part)) if can_fetch_url(url_part) else None
        url_out = relative_href(from_local_path, local) if local else url_part
        parts.append(f"{url_out} {descriptor}".strip())
    return ", ".join(parts)


def rewrite_html(
    soup: BeautifulSoup,
    page_url: str,
    asset_paths: Mapping[str, str],
    page_local_path: str,
) -> None:
    """Rewrite resource references in place and drop <base>.

    Rewritten tags lose integrity/crossorigin, which would reject the
    local copy. References without a mapping are left untouched.
    """
    base = effective_base_url(soup, page_url)

    def local_for(raw) -> Optional[str]:
        if not can_fetch_url(raw):
            return None
        return asset_paths.get(resolve(base, raw))

    def strip_pins(tag) -> None:
        for attribute in STRIPPED_ATTRIBUTES:
            if attribute in tag.attrs:
                del tag.attrs[attribute]

    for link in soup.select("link[href]"):
        if not _is_resource_link(link):
            continue
        local = local_for(link.get("href"))
        if local:
            link["href"] = relative_href(page_local_path, local)
            strip_pins(link)

    for selector, attribute in SRC_ATTRIBUTES:
        for tag in soup.select(selector):
            local = local_for(tag.get(attribute))
            if local:
                tag[attribute] = relative_href(page_local_path, local)
                strip_pins(tag)

    for tag in soup.select(SRCSET_SELECTORS):
        for attribute in ("srcset", "data-srcset"):
            value = tag.get(attribute)
            if value:
                tag[attribute] = _rewrite_srcset(value, base, asset_paths, page_local_path)

    for tag in soup.select("[style]"):
        css = tag.get("style")
        if css:
            new_css = rewrite_css(css, base, asset_paths, page_local_path)
            if new_css != css:
                tag["style"] = new_css

    for style in soup.find_all("style"):
        if style.string:
            new_text = rewrite_css(style.string, base, asset_paths, page_local_path)
            if new_text != style.string:
                style.string.replace_with(new_text)

    if soup.find("base", href=True) is not None:
        # Anchors must keep resolving once <base> is gone
        for a in soup.select("a[href], area[href]"):
            if can_fetch_url(a.get("href")):
                a["href"] = urljoin(base, a["href"].strip())

    for base_tag in soup.find_all("base"):
        base_tag.decompose()


def rewrite_page_links(
    html: str,
    page_url: str,
    page_paths: Dict[str, str],
    page_local_path: str,
) -> str:
    """Point anchors at captured pages to their local files.

    Anchors to pages that were not captured become absolute URLs so they
    still reach the live site. Anchors already pointing at a local page
    file are kept, so the pass can run again after a resumed job.

    Args:
        html: Markup already written for the page
        page_url: URL the page was captured from
        page_paths: normalized page URL -> output-root-relative path
        page_local_path: output-root-relative path of this page
    """
    soup = parse_html(html)
    base = effective_base_url(soup, page_url)
    local_targets = set(page_paths.values())
    page_dir = posixpath.dirname(page_local_path)

    for a in soup.select("a[href], area[href]"):
        href = a.get("href").strip()
        if not can_fetch_url(href):
            continue

        try:
            if not urlparse(href).scheme and not href.startswith("/"):
                local = posixpath.normpath(posixpath.join(page_dir, href.partition("#")[0]))
                if local in local_targets:
                    continue

            absolute, _, fragment = urljoin(base, href).partition("#")
            if not is_http_url(absolute):
                continue
            target = page_paths.get(normalize_url(absolute))
        except ValueError:
            # malformed href, leave it as written
            continue
        if target is not None:
            rel = relative_href(page_local_path, target)
            a["href"] = f"{rel}#{fragment}" if fragment else rel
        else:
            a["href"] = f"{absolute}#{fragment}" if fragment else absolute
    return str(soup)
