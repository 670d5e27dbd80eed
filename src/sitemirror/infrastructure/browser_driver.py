"""
Browser automation contract and its Playwright implementation.

The orchestrator, bypass engine and asset pipeline only see the
BrowserLauncher / BrowserSessionHandle protocols, so tests can drive
them with in-memory fakes.
"""

import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Protocol, Set

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright
from playwright_stealth import Stealth

from sitemirror.constants import (
    DEFAULT_USER_AGENT,
    DESKTOP_VIEWPORT_HEIGHT,
    DESKTOP_VIEWPORT_WIDTH,
)
from sitemirror.exceptions import NetworkError
from sitemirror.infrastructure.proxy_rotation import ProxyEndpoint

logger = logging.getLogger(__name__)

OBSERVED_RESOURCE_TYPES = frozenset(
    {"stylesheet", "image", "media", "font", "script", "manifest", "texttrack"}
)


@dataclass
class NavigationResult:
    """Outcome of one navigation."""
    status: Optional[int]
    final_url: str


class BrowserSessionHandle(Protocol):
    """One isolated browser session (context + page)."""

    observed_resources: Set[str]
    crashed: bool

    async def navigate(self, url: str, timeout: float) -> NavigationResult: ...

    async def serialize(self) -> str: ...

    async def evaluate(self, script: str, arg: Any = None) -> Any: ...

    async def close(self) -> None: ...


class BrowserLauncher(Protocol):
    """Creates browser sessions bound to a proxy endpoint."""

    async def open_session(self, proxy: Optional[ProxyEndpoint] = None) -> BrowserSessionHandle: ...


class PlaywrightSession:
    """BrowserSessionHandle backed by a Playwright context and page."""

    def __init__(self, context, page):
        self._context = context
        self._page = page
        self.observed_resources: Set[str] = set()
        self.crashed = False

        page.on("request", self._on_request)
        page.on("crash", self._on_crash)

    def _on_request(self, request) -> None:
        # Runtime-created references are captured live, not reconstructed
        if request.resource_type not in OBSERVED_RESOURCE_TYPES:
            return
        if request.url.startswith(("http://", "https://")):
            self.observed_resources.add(request.url)

    def _on_crash(self, _page) -> None:
        logger.warning("Browser page crashed")
        self.crashed = True

    async def navigate(self, url: str, timeout: float) -> NavigationResult:
        self.observed_resources.clear()
        try:
            response = await self._page.goto(
                url,
                wait_until="domcontentloaded",
                timeout=timeout * 1000,
            )
            try:
                await self._page.wait_for_load_state("networkidle", timeout=min(timeout, 10) * 1000)
            except PlaywrightTimeoutError:
                logger.debug(f"Network never went idle on {url}, continuing")
        except PlaywrightTimeoutError as e:
            raise NetworkError(f"Navigation timed out: {e}", url=url)
        except PlaywrightError as e:
            raise NetworkError(f"Navigation failed: {e}", url=url)

        return NavigationResult(
            status=response.status if response else None,
            final_url=self._page.url,
        )

    async def serialize(self) -> str:
        try:
            return await self._page.content()
        except PlaywrightError as e:
            raise NetworkError(f"Could not serialize page: {e}", url=self._page.url)

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        try:
            if arg is None:
                return await self._page.evaluate(script)
            return await self._page.evaluate(script, arg)
        except PlaywrightError as e:
            raise NetworkError(f"Script evaluation failed: {e}", url=self._page.url)

    async def close(self) -> None:
        try:
            await self._context.close()
        except PlaywrightError as e:
            logger.warning(f"Error closing browser context: {e}")


class PlaywrightLauncher:
    """
    Production BrowserLauncher.

    Runs one chromium instance; every session gets its own context bound
    to the session's proxy with stealth evasions applied.

    Usage:
        launcher = PlaywrightLauncher(headless=True)
        await launcher.start()
        session = await launcher.open_session(proxy)
        ...
        await launcher.stop()
    """

    def __init__(
        self,
        headless: bool = True,
        user_agent: Optional[str] = None,
        channel: Optional[str] = None,
    ):
        self.headless = headless
        self.user_agent = user_agent or DEFAULT_USER_AGENT
        self.channel = channel
        self._playwright = None
        self._browser = None
        self._stealth = Stealth()

    async def start(self) -> None:
        if self._browser is not None:
            return
        self._playwright = await async_playwright().start()
        launch_options = {
            "headless": self.headless,
            "args": ["--disable-blink-features=AutomationControlled"],
        }
        if self.channel:
            launch_options["channel"] = self.channel
        self._browser = await self._playwright.chromium.launch(**launch_options)
        logger.info(f"Browser launched (headless={self.headless})")

    async def stop(self) -> None:
        if self._browser:
            try:
                await self._browser.close()
            except PlaywrightError as e:
                logger.warning(f"Error closing browser: {e}")
            self._browser = None

        if self._playwright:
            try:
                await self._playwright.stop()
            except PlaywrightError as e:
                logger.warning(f"Error stopping playwright: {e}")
            self._playwright = None

    async def __aenter__(self) -> "PlaywrightLauncher":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    def _context_options(self, proxy: Optional[ProxyEndpoint]) -> dict:
        options = {
            "viewport": {"width": DESKTOP_VIEWPORT_WIDTH, "height": DESKTOP_VIEWPORT_HEIGHT},
            "user_agent": self.user_agent,
            "locale": "en-US",
            "timezone_id": "America/New_York",
            "java_script_enabled": True,
            "ignore_https_errors": True,
            "extra_http_headers": {
                "Accept-Language": "en-US,en;q=0.9",
                "Sec-Ch-Ua": '"Google Chrome";v="131", "Chromium";v="131", "Not_A Brand";v="24"',
                "Sec-Ch-Ua-Mobile": "?0",
                "Sec-Ch-Ua-Platform": '"macOS"',
                "Upgrade-Insecure-Requests": "1",
            },
        }
        if proxy is not None and proxy.playwright_proxy:
            options["proxy"] = proxy.playwright_proxy
        return options

    async def open_session(self, proxy: Optional[ProxyEndpoint] = None) -> PlaywrightSession:
        if self._browser is None:
            await self.start()

        context = await self._browser.new_context(**self._context_options(proxy))
        await self._stealth.apply_stealth_async(context)
        page = await context.new_page()
        logger.debug(f"Opened browser session via {proxy!r}")
        return PlaywrightSession(context, page)

    async def run_scripts(self, file_url: str, timeout: float = 15.0) -> List[str]:
        """Load a local file and return the fatal script errors it raised."""
        if self._browser is None:
            await self.start()

        errors: List[str] = []
        context = await self._browser.new_context(java_script_enabled=True)
        try:
            page = await context.new_page()
            page.on("pageerror", lambda exc: errors.append(str(exc)))
            try:
                await page.goto(file_url, wait_until="load", timeout=timeout * 1000)
                await page.wait_for_timeout(500)
            except PlaywrightError as e:
                errors.append(f"load failed: {e}")
        finally:
            await context.close()
        return errors
