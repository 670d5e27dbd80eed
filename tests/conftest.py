"""Shared fixtures: an in-memory website served to fake browser sessions.

Pages are navigated through FakeSession (the BrowserSessionHandle contract)
and assets are served over an httpx.MockTransport, so whole jobs run
without a browser or network.
"""

import asyncio
import base64
from collections import Counter
from typing import Dict, List, Optional, Sequence, Tuple, Union

import httpx
import pytest

from sitemirror.capture.downloader import IN_PAGE_FETCH_SCRIPT
from sitemirror.config import BypassConfig, CaptureConfig, MirrorConfig
from sitemirror.exceptions import NetworkError
from sitemirror.infrastructure.browser_driver import NavigationResult
from sitemirror.protection.bypass_engine import INJECT_TOKEN_SCRIPT
from sitemirror.protection.script_challenge import SUBMIT_ANSWER_SCRIPT


def html_page(title: str, body: str = "", head: str = "") -> str:
    return (
        f"<!DOCTYPE html><html><head><title>{title}</title>{head}</head>"
        f"<body><h1>{title}</h1>{body}</body></html>"
    )


SCRIPT_CHALLENGE_HTML = """<!DOCTYPE html><html><head><title>Just a moment...</title></head>
<body>
<form id="challenge-form" action="/cdn-cgi/l/chk_jschl" method="get">
<input type="hidden" name="jschl_vc" value="abc123"/>
<input type="hidden" name="pass" value="1700000000.123-xyz"/>
<input type="hidden" id="jschl-answer" name="jschl_answer"/>
</form>
<script>setTimeout(function(){ a.value = (12+3)*2; f.submit(); }, 4000);</script>
</body></html>"""

CAPTCHA_HTML = """<!DOCTYPE html><html><head><title>Attention Required!</title></head>
<body>
<h2>Verify you are human</h2>
<form action="/verify" method="post">
<div class="cf-turnstile" data-sitekey="0x4AAAAAAA-site-key"></div>
</form>
</body></html>"""

BLOCKED_HTML = html_page("Access denied", "<p>You have been blocked.</p>")


class FakeResponse:
    """One navigation result served by the fake site."""

    def __init__(
        self,
        html: str = "",
        status: Optional[int] = 200,
        final_url: Optional[str] = None,
        solved: Optional[str] = None,
        observed: Sequence[str] = (),
        error: Optional[str] = None,
        delay: float = 0.0,
        exception: Optional[Exception] = None,
    ):
        self.html = html
        self.status = status
        self.final_url = final_url
        self.solved = solved  # markup shown once an answer or token is submitted
        self.observed = list(observed)
        self.error = error  # navigation raises NetworkError with this message
        self.delay = delay  # seconds navigation takes
        self.exception = exception  # raised as-is by navigation


class FakeSite:
    """A website held in memory, recording every request made to it."""

    def __init__(self):
        self.pages: Dict[str, List[FakeResponse]] = {}
        self.assets: Dict[str, Tuple[int, bytes, str]] = {}
        self.browser_assets: Dict[str, Tuple[bytes, str]] = {}
        self.navigations: List[str] = []
        self.asset_requests: List[str] = []
        self.browser_fetches: List[str] = []
        self._nav_counts: Counter = Counter()

    def add_page(self, url: str, html: str, status: int = 200, **kwargs) -> "FakeSite":
        self.pages[url] = [FakeResponse(html, status=status, **kwargs)]
        return self

    def add_sequence(self, url: str, responses: List[FakeResponse]) -> "FakeSite":
        """Successive navigations to url get successive responses; the last repeats."""
        self.pages[url] = list(responses)
        return self

    def add_asset(self, url: str, body: bytes, content_type: str = "application/octet-stream",
                  status: int = 200) -> "FakeSite":
        self.assets[url] = (status, body, content_type)
        return self

    def add_browser_asset(self, url: str, body: bytes, content_type: str) -> "FakeSite":
        self.browser_assets[url] = (body, content_type)
        return self

    def next_response(self, url: str) -> FakeResponse:
        responses = self.pages.get(url)
        if not responses:
            return FakeResponse(html_page("Not found"), status=404)
        index = self._nav_counts[url]
        self._nav_counts[url] += 1
        return responses[min(index, len(responses) - 1)]

    def _handle(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.asset_requests.append(url)
        asset = self.assets.get(url)
        if asset is None:
            return httpx.Response(404, content=b"not found")
        status, body, content_type = asset
        return httpx.Response(status, content=body, headers={"content-type": content_type})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._handle)

    def browser_fetch(self, url: str) -> dict:
        self.browser_fetches.append(url)
        asset = self.browser_assets.get(url)
        if asset is None:
            return {"status": 404, "body": None, "type": None}
        body, content_type = asset
        return {"status": 200, "body": base64.b64encode(body).decode("ascii"), "type": content_type}

    def session(self, proxy=None) -> "FakeSession":
        return FakeSession(self, proxy)


class FakeSession:
    """BrowserSessionHandle over a FakeSite."""

    def __init__(self, site: FakeSite, proxy=None):
        self.site = site
        self.proxy = proxy
        self.observed_resources = set()
        self.crashed = False
        self.closed = False
        self.html = ""
        self.current: Optional[FakeResponse] = None
        self.evaluations: List[str] = []

    async def navigate(self, url: str, timeout: float) -> NavigationResult:
        self.site.navigations.append(url)
        response = self.site.next_response(url)
        if response.delay:
            await asyncio.sleep(response.delay)
        if response.exception is not None:
            raise response.exception
        if response.error:
            raise NetworkError(response.error, url=url)
        self.current = response
        self.html = response.html
        self.observed_resources = set(response.observed)
        return NavigationResult(status=response.status, final_url=response.final_url or url)

    async def serialize(self) -> str:
        return self.html

    async def evaluate(self, script: str, arg=None):
        self.evaluations.append(script)
        if script == IN_PAGE_FETCH_SCRIPT:
            return self.site.browser_fetch(arg)
        if script in (SUBMIT_ANSWER_SCRIPT, INJECT_TOKEN_SCRIPT):
            if self.current is not None and self.current.solved is not None:
                self.html = self.current.solved
                return True
            return False
        return None

    async def close(self) -> None:
        self.closed = True


class FakeLauncher:
    """BrowserLauncher handing out FakeSessions; also runs "scripts"."""

    def __init__(self, site: FakeSite, script_errors: Union[List[str], None] = None):
        self.site = site
        self.sessions: List[FakeSession] = []
        self.script_errors = list(script_errors or [])
        self.scripts_run: List[str] = []

    async def open_session(self, proxy=None) -> FakeSession:
        session = self.site.session(proxy)
        self.sessions.append(session)
        return session

    async def run_scripts(self, file_url: str) -> List[str]:
        self.scripts_run.append(file_url)
        return list(self.script_errors)


@pytest.fixture
def site() -> FakeSite:
    return FakeSite()


@pytest.fixture
def launcher(site) -> FakeLauncher:
    return FakeLauncher(site)


@pytest.fixture
def fast_bypass_config() -> BypassConfig:
    """Bypass policy with every wait shortened to (almost) nothing."""
    return BypassConfig(
        max_attempts=3,
        backoff_base_seconds=0.0,
        poll_interval_seconds=0.0,
        poll_timeout_seconds=0.05,
        passive_wait_seconds=0.0,
        navigation_timeout_seconds=5.0,
    )


@pytest.fixture
def fast_capture_config() -> CaptureConfig:
    return CaptureConfig(asset_concurrency=4, asset_retries=3, retry_backoff_seconds=0.0)


@pytest.fixture
def fast_config(fast_bypass_config, fast_capture_config) -> MirrorConfig:
    return MirrorConfig(
        navigation_retries=1,
        bypass=fast_bypass_config,
        capture=fast_capture_config,
    )


@pytest.fixture
def pages():
    """Markup builders and canned protection pages."""
    return {
        "page": html_page,
        "script_challenge": SCRIPT_CHALLENGE_HTML,
        "captcha": CAPTCHA_HTML,
        "blocked": BLOCKED_HTML,
        "response": FakeResponse,
    }
