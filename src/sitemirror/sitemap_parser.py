"""Sitemap parser used to seed the crawl frontier."""

import logging
from typing import Iterable, List, Optional, Set
from xml.etree import ElementTree as ET

import httpx

from sitemirror.constants import COMMON_SITEMAP_PATHS, SITEMAP_MAX_DEPTH
from sitemirror.utils.urls import origin_of

logger = logging.getLogger(__name__)


def _local_name(tag: str) -> str:
    return tag.split('}')[-1] if '}' in tag else tag


class SitemapParser:
    """
    Parse XML sitemaps to extract page URLs.

    Supports:
    - Standard sitemap.xml files
    - Sitemap index files (nested sitemaps, bounded depth)
    - Discovery through robots.txt Sitemap: lines or common locations
    """

    def __init__(self, client: httpx.AsyncClient, max_depth: int = SITEMAP_MAX_DEPTH):
        """
        Initialize the sitemap parser.

        Args:
            client: HTTP client used for every fetch
            max_depth: How deep sitemap indexes are followed
        """
        self.client = client
        self.max_depth = max_depth
        self._seen_sitemaps: Set[str] = set()

    async def discover(
        self,
        root_url: str,
        listed: Iterable[str] = (),
        max_urls: Optional[int] = None,
    ) -> List[str]:
        """
        Collect page URLs from a site's sitemaps.

        Args:
            root_url: Any URL on the site
            listed: Sitemap URLs from robots.txt; common locations are tried when empty
            max_urls: Stop after this many URLs (None for all)

        Returns:
            Page URLs in sitemap order, duplicates removed
        """
        sitemaps = list(listed) or [f"{origin_of(root_url)}{path}" for path in COMMON_SITEMAP_PATHS]
        urls: List[str] = []
        for sitemap_url in sitemaps:
            if max_urls is not None and len(urls) >= max_urls:
                break
            await self._collect(sitemap_url, urls, max_urls, depth=0)
        return urls

    async def parse(self, sitemap_url: str, max_urls: Optional[int] = None) -> List[str]:
        """Page URLs listed by one sitemap or sitemap index."""
        urls: List[str] = []
        await self._collect(sitemap_url, urls, max_urls, depth=0)
        return urls

    async def _collect(self, sitemap_url: str, urls: List[str], max_urls: Optional[int], depth: int) -> None:
        if depth > self.max_depth:
            logger.warning(f"Sitemap nesting deeper than {self.max_depth}: {sitemap_url}")
            return
        if sitemap_url in self._seen_sitemaps:
            return
        self._seen_sitemaps.add(sitemap_url)

        content = await self._fetch(sitemap_url)
        if content is None:
            return

        try:
            root = ET.fromstring(content)
        except ET.ParseError as e:
            logger.warning(f"Failed to parse sitemap XML {sitemap_url}: {e}")
            return

        root_tag = _local_name(root.tag)
        if root_tag == 'sitemapindex':
            for child in self._locs(root, 'sitemap'):
                if max_urls is not None and len(urls) >= max_urls:
                    return
                logger.debug(f"Found child sitemap: {child}")
                await self._collect(child, urls, max_urls, depth + 1)
        elif root_tag == 'urlset':
            before = len(urls)
            for loc in self._locs(root, 'url'):
                if max_urls is not None and len(urls) >= max_urls:
                    logger.info(f"Reached max URLs limit ({max_urls})")
                    break
                if loc not in urls:
                    urls.append(loc)
            logger.info(f"Extracted {len(urls) - before} URLs from sitemap {sitemap_url}")
        else:
            logger.warning(f"Unknown sitemap root element: {root_tag}")

    async def _fetch(self, sitemap_url: str) -> Optional[bytes]:
        try:
            response = await self.client.get(sitemap_url)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning(f"Failed to fetch sitemap {sitemap_url}: {type(e).__name__}: {e}")
            return None
        if response.status_code != 200:
            logger.debug(f"No sitemap at {sitemap_url} (HTTP {response.status_code})")
            return None
        return response.content

    @staticmethod
    def _locs(root: ET.Element, entry_tag: str) -> List[str]:
        """Text of each <loc> under the given entry elements."""
        locs = []
        for entry in root.iter():
            if _local_name(entry.tag) != entry_tag:
                continue
            for child in entry:
                if _local_name(child.tag) == 'loc' and child.text and child.text.strip():
                    locs.append(child.text.strip())
                    break
        return locs
