"""
Asset downloader.

Fetches resources with httpx through the page session's bound proxy,
hashing incrementally while reading. Bodies above the stream threshold
are spooled to a staging file instead of held in memory. Protected
responses (403/429/503) are retried inside the leased browser session
with an in-page fetch, so they pass through the same bypass state.
"""

import base64
import hashlib
import logging
import tempfile
import time
from pathlib import Path
from typing import Dict, Optional

import httpx

from sitemirror.cancellation import CancellationToken, cancellable_sleep
from sitemirror.capture.asset_store import DownloadedBody
from sitemirror.config import CaptureConfig
from sitemirror.exceptions import (
    JobCancelled,
    MirrorError,
    NetworkError,
    ResourceTooLarge,
    UnsupportedResource,
)
from sitemirror.infrastructure.browser_driver import BrowserSessionHandle
from sitemirror.infrastructure.proxy_rotation import ProxyEndpoint, ProxyPool
from sitemirror.utils.urls import is_http_url

logger = logging.getLogger(__name__)

# Statuses that mean "ask again from inside the browser"
PROTECTED_STATUSES = frozenset({403, 429, 503})

# Client errors worth asking again for; every other 4xx is permanent
RETRYABLE_CLIENT_STATUSES = frozenset({408, 425, 429})

IN_PAGE_FETCH_SCRIPT = """
async (url) => {
    const response = await fetch(url, { credentials: 'include' });
    if (!response.ok) {
        return { status: response.status, body: null, type: null };
    }
    const bytes = new Uint8Array(await response.arrayBuffer());
    let binary = '';
    for (let i = 0; i < bytes.length; i += 0x8000) {
        binary += String.fromCharCode.apply(null, bytes.subarray(i, i + 0x8000));
    }
    return {
        status: response.status,
        body: btoa(binary),
        type: response.headers.get('content-type'),
    };
}
"""


def _mime(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    return content_type.split(";")[0].strip().lower() or None


def _is_permanent(status_code: Optional[int]) -> bool:
    return (
        status_code is not None
        and 400 <= status_code < 500
        and status_code not in RETRYABLE_CLIENT_STATUSES
    )


class AssetDownloader:
    """
    Downloads assets with retries.

    Usage:
        downloader = AssetDownloader(config, staging_dir)
        body = await downloader.fetch(url, proxy=endpoint, session=handle)
        await downloader.aclose()
    """

    def __init__(
        self,
        config: Optional[CaptureConfig] = None,
        staging_dir: Optional[Path] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        proxy_pool: Optional[ProxyPool] = None,
    ):
        self.config = config or CaptureConfig()
        self.staging_dir = Path(staging_dir) if staging_dir else Path(tempfile.gettempdir())
        self._transport = transport
        self.proxy_pool = proxy_pool
        self._clients: Dict[str, httpx.AsyncClient] = {}

    def _client_for(self, proxy: Optional[ProxyEndpoint]) -> httpx.AsyncClient:
        key = proxy.url if proxy is not None and proxy.url else "direct"
        client = self._clients.get(key)
        if client is None:
            options = {
                "timeout": httpx.Timeout(self.config.request_timeout_seconds),
                "follow_redirects": True,
                "headers": {"User-Agent": self.config.user_agent, "Accept": "*/*"},
            }
            if self._transport is not None:
                options["transport"] = self._transport
            elif key != "direct":
                options["proxy"] = key
            client = httpx.AsyncClient(**options)
            self._clients[key] = client
        return client

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()

    async def fetch(
        self,
        url: str,
        proxy: Optional[ProxyEndpoint] = None,
        session: Optional[BrowserSessionHandle] = None,
        cancel_token: Optional[CancellationToken] = None,
        referer: Optional[str] = None,
    ) -> DownloadedBody:
        """
        Download one asset, retrying transient failures with backoff.

        Raises:
            NetworkError: every attempt failed
            ResourceTooLarge: the body exceeded max_asset_bytes
            UnsupportedResource: the URL cannot be fetched
            JobCancelled: the job was cancelled before a download
        """
        if not is_http_url(url):
            raise UnsupportedResource(f"Unsupported scheme: {url[:60]}", url=url)

        attempts = max(1, self.config.asset_retries)
        last_error: Optional[MirrorError] = None
        for attempt in range(1, attempts + 1):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled(url)
            started = time.monotonic()
            try:
                body = await self._fetch_once(url, proxy, session, referer)
                if self.proxy_pool is not None and proxy is not None:
                    await self.proxy_pool.report_outcome(
                        proxy, success=True, latency_ms=(time.monotonic() - started) * 1000
                    )
                return body
            except (ResourceTooLarge, UnsupportedResource, JobCancelled):
                raise
            except NetworkError as e:
                if _is_permanent(e.status_code):
                    raise
                last_error = e
                logger.debug(f"Asset attempt {attempt}/{attempts} failed for {url}: {e.message}")
                if self.proxy_pool is not None and proxy is not None and e.status_code is None:
                    await self.proxy_pool.report_outcome(proxy, success=False, reason="network")
                if attempt < attempts:
                    await cancellable_sleep(
                        self.config.retry_backoff_seconds * (2 ** (attempt - 1)), cancel_token
                    )

        raise last_error

    async def _fetch_once(
        self,
        url: str,
        proxy: Optional[ProxyEndpoint],
        session: Optional[BrowserSessionHandle],
        referer: Optional[str],
    ) -> DownloadedBody:
        headers = {"Referer": referer} if referer else {}
        client = self._client_for(proxy)
        try:
            async with client.stream("GET", url, headers=headers) as response:
                if response.status_code in PROTECTED_STATUSES and session is not None:
                    logger.debug(f"{url} answered {response.status_code}, retrying in browser")
                    return await self._fetch_in_browser(session, url)
                if response.status_code >= 400:
                    raise NetworkError(
                        f"HTTP {response.status_code}", url=url, status_code=response.status_code
                    )

                declared = response.headers.get("content-length")
                if declared and declared.isdigit() and int(declared) > self.config.max_asset_bytes:
                    raise ResourceTooLarge(
                        f"Declared size {declared} exceeds {self.config.max_asset_bytes}", url=url
                    )

                return await self._read_body(url, response)
        except httpx.HTTPError as e:
            raise NetworkError(f"{type(e).__name__}: {e}", url=url)

    async def _read_body(self, url: str, response: httpx.Response) -> DownloadedBody:
        hasher = hashlib.sha256()
        total = 0
        buffer = bytearray()
        staged = None
        staged_path: Optional[Path] = None

        try:
            async for chunk in response.aiter_bytes():
                total += len(chunk)
                if total > self.config.max_asset_bytes:
                    raise ResourceTooLarge(
                        f"Body exceeds {self.config.max_asset_bytes} bytes", url=url
                    )
                hasher.update(chunk)
                if staged is not None:
                    staged.write(chunk)
                    continue
                buffer.extend(chunk)
                if len(buffer) > self.config.stream_threshold_bytes:
                    self.staging_dir.mkdir(parents=True, exist_ok=True)
                    staged = tempfile.NamedTemporaryFile(
                        dir=self.staging_dir, prefix="asset-", suffix=".part", delete=False
                    )
                    staged_path = Path(staged.name)
                    staged.write(buffer)
                    buffer = bytearray()
        except BaseException:
            if staged is not None:
                staged.close()
                staged_path.unlink(missing_ok=True)
            raise

        if staged is not None:
            staged.close()
            logger.debug(f"Streamed {total} bytes of {url} to disk")

        return DownloadedBody(
            url=url,
            content_hash=hasher.hexdigest(),
            byte_size=total,
            mime_type=_mime(response.headers.get("content-type")),
            data=None if staged is not None else bytes(buffer),
            staged_path=staged_path,
        )

    async def _fetch_in_browser(self, session: BrowserSessionHandle, url: str) -> DownloadedBody:
        result = await session.evaluate(IN_PAGE_FETCH_SCRIPT, url)
        if not isinstance(result, dict):
            raise NetworkError("In-browser fetch returned no result", url=url)
        if result.get("body") is None:
            status = result.get("status")
            raise NetworkError(f"HTTP {status} (in browser)", url=url, status_code=status)

        data = base64.b64decode(result["body"])
        if len(data) > self.config.max_asset_bytes:
            raise ResourceTooLarge(f"Body exceeds {self.config.max_asset_bytes} bytes", url=url)
        return DownloadedBody(
            url=url,
            content_hash=hashlib.sha256(data).hexdigest(),
            byte_size=len(data),
            mime_type=_mime(result.get("type")),
            data=data,
        )
