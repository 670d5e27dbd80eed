"""
Asset capture and rewrite pipeline.

Harvests a resolved page: enumerates its resources, downloads them into
the job's asset store with bounded concurrency, rewrites references to
local relative paths and writes the page file.
"""

import asyncio
import logging
import posixpath
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlparse

from sitemirror.cancellation import CancellationToken
from sitemirror.capture.asset_store import AssetStore
from sitemirror.capture.downloader import AssetDownloader
from sitemirror.capture.extractor import (
    extract_anchor_links,
    extract_asset_urls,
    extract_css_references,
    parse_html,
)
from sitemirror.capture.paths import disambiguate_path, page_local_path
from sitemirror.capture.rewriter import rewrite_css, rewrite_html
from sitemirror.config import CaptureConfig
from sitemirror.exceptions import InvariantViolation, JobCancelled, MirrorError
from sitemirror.infrastructure.browser_driver import BrowserSessionHandle
from sitemirror.infrastructure.proxy_rotation import ProxyEndpoint
from sitemirror.models import AssetRecord, ErrorRecord
from sitemirror.utils.urls import is_http_url

logger = logging.getLogger(__name__)


@dataclass
class CaptureResult:
    """What one page capture produced."""
    local_path: str
    html: str
    links: List[str] = field(default_factory=list)
    asset_records: List[AssetRecord] = field(default_factory=list)
    errors: List[ErrorRecord] = field(default_factory=list)


@dataclass
class _PageCapture:
    """Per-page bookkeeping shared by the download tasks of one capture."""
    page_url: str
    session: Optional[BrowserSessionHandle]
    proxy: Optional[ProxyEndpoint]
    cancel_token: Optional[CancellationToken]
    semaphore: asyncio.Semaphore
    records: Dict[str, AssetRecord] = field(default_factory=dict)
    errors: List[ErrorRecord] = field(default_factory=list)


def is_stylesheet(record: AssetRecord) -> bool:
    if record.mime_type == "text/css":
        return True
    return posixpath.splitext(urlparse(record.source_url).path)[1].lower() == ".css"


async def gather_or_cancel(coros: Iterable[Awaitable]) -> None:
    """Run coroutines concurrently; on the first hard failure cancel the rest."""
    tasks = [asyncio.ensure_future(c) for c in coros]
    if not tasks:
        return
    try:
        await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class AssetPipeline:
    """
    Captures pages into an output root.

    Usage:
        pipeline = AssetPipeline(output_root, store, downloader, config)
        result = await pipeline.capture(session, final_url, page_url=url, proxy=proxy)
    """

    def __init__(
        self,
        output_root: Path,
        store: AssetStore,
        downloader: AssetDownloader,
        config: Optional[CaptureConfig] = None,
    ):
        self.output_root = Path(output_root)
        self.store = store
        self.downloader = downloader
        self.config = config or CaptureConfig()
        self._page_paths: Dict[str, str] = {}
        self._page_owners: Dict[str, str] = {}

    def claim_page_path(self, page_url: str, local_path: Optional[str] = None) -> str:
        """
        Reserve the local file for a page.

        Distinct URLs that map to the same file (``/a`` and ``/a/index.html``)
        never overwrite each other; later claimants get a hash-suffixed name.
        Claiming again for the same URL returns its existing path.

        Args:
            page_url: URL the page was requested as
            local_path: Path already assigned to the page (resumed jobs)
        """
        if page_url in self._page_paths:
            return self._page_paths[page_url]
        path = local_path or page_local_path(page_url)
        owner = self._page_owners.get(path)
        if owner is not None:
            path = disambiguate_path(path, page_url)
            logger.info(f"{page_url} maps to the same file as {owner}; writing to {path}")
        self._page_paths[page_url] = path
        self._page_owners[path] = page_url
        return path

    async def capture(
        self,
        session: BrowserSessionHandle,
        base_url: str,
        page_url: Optional[str] = None,
        proxy: Optional[ProxyEndpoint] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> CaptureResult:
        """
        Capture the page currently loaded in a session.

        Args:
            session: Leased session holding the resolved page
            base_url: URL the page's references resolve against (its final URL)
            page_url: URL the page was requested as; decides the local path
            proxy: Endpoint the session is bound to, reused for downloads
            cancel_token: Job cancellation token, checked before each download

        Returns:
            CaptureResult; failed references are listed in ``errors``

        Raises:
            JobCancelled: the job was cancelled mid-capture
            InvariantViolation: the asset store detected a hash collision
        """
        html = await session.serialize()
        soup = parse_html(html)

        references = extract_asset_urls(soup, base_url)
        seen = set(references)
        for url in sorted(getattr(session, "observed_resources", ()) or ()):
            if is_http_url(url) and url not in seen:
                seen.add(url)
                references.append(url)
        links = extract_anchor_links(soup, base_url)

        state = _PageCapture(
            page_url=page_url or base_url,
            session=session,
            proxy=proxy,
            cancel_token=cancel_token,
            semaphore=asyncio.Semaphore(self.config.asset_concurrency),
        )
        logger.debug(f"{state.page_url}: {len(references)} resource references")

        await gather_or_cancel(
            self._capture_asset(state, url, referer=base_url, depth=0, chain=())
            for url in references
        )

        local_path = self.claim_page_path(state.page_url)
        rewrite_html(soup, base_url, self.store.url_paths(), local_path)
        rewritten = str(soup)

        target = self.output_root / local_path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(rewritten, encoding="utf-8")

        logger.info(
            f"Captured {state.page_url} -> {local_path} "
            f"({len(state.records)} assets, {len(state.errors)} errors)"
        )
        return CaptureResult(
            local_path=local_path,
            html=rewritten,
            links=links,
            asset_records=list(state.records.values()),
            errors=state.errors,
        )

    async def _capture_asset(
        self,
        state: _PageCapture,
        url: str,
        referer: str,
        depth: int,
        chain: Tuple[str, ...],
    ) -> None:
        async def download():
            async with state.semaphore:
                return await self.downloader.fetch(
                    url,
                    proxy=state.proxy,
                    session=state.session,
                    cancel_token=state.cancel_token,
                    referer=referer,
                )

        try:
            record, created = await self.store.get_or_download(url, state.page_url, download)
        except (JobCancelled, InvariantViolation):
            raise
        except MirrorError as e:
            self._record_failure(state, e, url)
            return

        state.records[record.content_hash] = record
        if created and is_stylesheet(record):
            await self._process_stylesheet(state, record, url, depth, chain + (url,))

    async def _process_stylesheet(
        self,
        state: _PageCapture,
        record: AssetRecord,
        css_url: str,
        depth: int,
        chain: Tuple[str, ...],
    ) -> None:
        """Capture a stylesheet's own references, then rewrite it in place."""
        text = self.store.read_content(record).decode("utf-8", errors="replace")
        nested = [u for u in extract_css_references(text, css_url) if u not in chain]

        if nested and depth >= self.config.max_import_depth:
            logger.warning(
                f"Import depth {depth} reached at {css_url}, "
                f"{len(nested)} nested references not captured"
            )
            nested = []

        await gather_or_cancel(
            self._capture_asset(state, u, referer=css_url, depth=depth + 1, chain=chain)
            for u in nested
        )

        rewritten = rewrite_css(text, css_url, self.store.url_paths(), record.local_path)
        if rewritten != text:
            self.store.replace_content(record, rewritten.encode("utf-8"))

    def _record_failure(self, state: _PageCapture, error: MirrorError, url: str) -> None:
        logger.warning(
            f"Asset not captured: {url}: {error.message}",
            extra={
                "asset_url": url,
                "page_url": state.page_url,
                "error_type": type(error).__name__,
            },
        )
        state.errors.append(error.to_record(phase="capture", url=url))
