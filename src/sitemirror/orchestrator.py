"""
Crawl Orchestrator.

Owns the job: its frontier, visited set and page records. Page tasks run
concurrently on leased browser sessions and report back through a
completion queue; only the orchestrator loop mutates job state.

Per page: navigate (with retry) -> resolve protection -> capture assets
-> enqueue same-origin links at depth + 1.
After the crawl: finalize inter-page links, write the manifest, verify.
"""

import asyncio
import json
import logging
import random
import shutil
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Callable, Dict, List, Optional, Set, Tuple

import httpx

from sitemirror.cancellation import CancellationToken, cancellable_sleep
from sitemirror.capture.asset_store import AssetStore
from sitemirror.capture.downloader import AssetDownloader
from sitemirror.capture.pipeline import AssetPipeline
from sitemirror.capture.rewriter import rewrite_page_links
from sitemirror.config import MirrorConfig
from sitemirror.constants import (
    DISCOVERY_TIMEOUT_SECONDS,
    EXPONENTIAL_BACKOFF_BASE,
    INITIAL_BACKOFF_DELAY_SECONDS,
    MANIFEST_FILENAME,
    MAX_BACKOFF_DELAY_SECONDS,
    STAGING_DIRNAME,
)
from sitemirror.exceptions import (
    ChallengeUnsolved,
    InvariantViolation,
    JobCancelled,
    JobTimeout,
    MirrorError,
    NetworkError,
    RobotsDisallowed,
)
from sitemirror.infrastructure.browser_driver import (
    BrowserLauncher,
    BrowserSessionHandle,
    NavigationResult,
)
from sitemirror.infrastructure.browser_pool import BrowserSessionPool
from sitemirror.infrastructure.proxy_rotation import (
    ProxyEndpoint,
    ProxyPool,
    RotationStrategy,
    create_proxy_pool_from_env,
)
from sitemirror.job_store import JobStore, write_json_atomic
from sitemirror.logging_config import bind_job, page_context, unbind_job
from sitemirror.models import (
    AssetRecord,
    ChallengeKind,
    CrawlJob,
    CrawlResult,
    ErrorRecord,
    FrontierEntry,
    JobOptions,
    JobStatus,
    PageRecord,
    ProgressEvent,
)
from sitemirror.protection.bypass_engine import BypassEngine
from sitemirror.protection.captcha_solver import CaptchaSolverChain, build_solver_chain
from sitemirror.protection.challenge_classifier import CHALLENGE_STATUSES
from sitemirror.robots import RobotsPolicy, fetch_robots
from sitemirror.sitemap_parser import SitemapParser
from sitemirror.utils.urls import is_page_candidate, is_same_origin, normalize_url, origin_of
from sitemirror.verification import ScriptRunner, VerificationReport, Verifier

logger = logging.getLogger(__name__)


@dataclass
class PageOutcome:
    """Completion message a page task sends to the orchestrator."""
    url: str
    depth: int
    record: Optional[PageRecord] = None
    links: List[str] = field(default_factory=list)
    fatal: Optional[Exception] = None


@dataclass
class _JobContext:
    """Components built for one run."""
    root_url: str
    output_root: Path
    store: AssetStore
    downloader: AssetDownloader
    pipeline: AssetPipeline
    bypass: BypassEngine
    session_pool: BrowserSessionPool
    proxy_pool: Optional[ProxyPool]
    strategy: RotationStrategy


class CrawlOrchestrator:
    """
    Runs one mirror job.

    Usage:
        async with PlaywrightLauncher() as launcher:
            orchestrator = CrawlOrchestrator(launcher, job_store=JsonJobStore("state"))
            result = await orchestrator.run("https://example.com", JobOptions(max_pages=20))

        # or, with progress events
        async for event in orchestrator.stream(url, options):
            print(event.phase, event.current_url)
        result = orchestrator.result
    """

    def __init__(
        self,
        launcher: BrowserLauncher,
        config: Optional[MirrorConfig] = None,
        proxy_pool: Optional[ProxyPool] = None,
        solver_chain: Optional[CaptchaSolverChain] = None,
        job_store: Optional[JobStore] = None,
        script_runner: Optional[ScriptRunner] = None,
        asset_transport: Optional[httpx.AsyncBaseTransport] = None,
        verification_transport: Optional[httpx.AsyncBaseTransport] = None,
        progress_callback: Optional[Callable[[ProgressEvent], None]] = None,
        rng: Optional[random.Random] = None,
    ):
        self.launcher = launcher
        self.config = config or MirrorConfig()
        self.proxy_pool = proxy_pool
        self.solver_chain = solver_chain
        self.job_store = job_store
        self.script_runner = script_runner or getattr(launcher, "run_scripts", None)
        self.asset_transport = asset_transport
        self.verification_transport = verification_transport
        self.progress_callback = progress_callback
        self._rng = rng or random.Random()

        self.cancel_token = CancellationToken()
        self.job: Optional[CrawlJob] = None
        self.result: Optional[CrawlResult] = None

        self._running = asyncio.Event()
        self._running.set()
        self._events: Optional[asyncio.Queue] = None
        self._in_flight: Dict[str, Tuple[asyncio.Task, FrontierEntry]] = {}
        self._enqueued: Set[str] = set()
        self._page_index = 0
        self._robots: Optional[RobotsPolicy] = None

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def pause(self) -> None:
        """Stop dequeuing new pages. Pages in flight run to completion."""
        if self.job is None or self.job.status != JobStatus.RUNNING:
            return
        self._running.clear()
        self.job.status = JobStatus.PAUSED
        logger.info(f"Job {self.job.id} paused")
        self._emit("paused")

    def resume(self) -> None:
        if self.job is None or self.job.status != JobStatus.PAUSED:
            return
        self.job.status = JobStatus.RUNNING
        self._running.set()
        logger.info(f"Job {self.job.id} resumed")
        self._emit("resumed")

    def cancel(self, reason: str = "cancelled by user") -> None:
        if self.cancel_token.cancelled:
            return
        logger.info(f"Cancelling job: {reason}")
        self.cancel_token.cancel(reason)
        self._emit("cancelling", message=reason)

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def _total_estimate(self) -> int:
        job = self.job
        if job is None:
            return 0
        pending = job.pages_captured + len(self._in_flight) + len(job.frontier)
        return min(job.options.max_pages, pending)

    def _emit(self, phase: str, current_url: Optional[str] = None, message: Optional[str] = None) -> None:
        job = self.job
        event = ProgressEvent(
            phase=phase,
            current_url=current_url,
            page_index=self._page_index,
            total_estimate=self._total_estimate(),
            job_id=job.id if job else None,
            status=job.status if job else None,
            message=message,
        )
        logger.debug(f"[{phase}] {current_url or ''} {message or ''}".rstrip())
        if self.progress_callback is not None:
            self.progress_callback(event)
        if self._events is not None:
            self._events.put_nowait(event)

    async def stream(
        self,
        root_url: str,
        options: Optional[JobOptions] = None,
        resume_state: Optional[dict] = None,
    ) -> AsyncIterator[ProgressEvent]:
        """
        Run the job, yielding one progress event per state transition.

        The CrawlResult is available on ``self.result`` once the stream is
        exhausted. Closing the stream early cancels the job.
        """
        queue: asyncio.Queue = asyncio.Queue()
        self._events = queue
        task = asyncio.create_task(self.run(root_url, options, resume_state))
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
            await task
        finally:
            if not task.done():
                self.cancel("progress stream closed")
                await task
            self._events = None

    # ------------------------------------------------------------------
    # Job
    # ------------------------------------------------------------------

    async def run(
        self,
        root_url: str,
        options: Optional[JobOptions] = None,
        resume_state: Optional[dict] = None,
    ) -> CrawlResult:
        """
        Mirror a site.

        Args:
            root_url: Page to start from
            options: Job limits and toggles
            resume_state: Snapshot from a job store to continue from

        Returns:
            CrawlResult; a job only fails when no page was captured

        Raises:
            InvariantViolation: a programming error was detected
        """
        options = options or JobOptions()
        if resume_state:
            job = CrawlJob.from_state(resume_state, options)
            logger.info(
                f"Resuming job {job.id}: {len(job.visited)} visited, "
                f"{len(job.frontier)} queued, {job.pages_captured} pages captured"
            )
        else:
            job = CrawlJob(root_url=normalize_url(root_url), options=options)
        if not job.frontier and job.root_url not in job.visited:
            job.frontier.append(FrontierEntry(job.root_url, 0))
        self.job = job
        self._enqueued = {entry.url for entry in job.frontier}
        self._robots = None

        output_root = Path(options.output_root)
        output_root.mkdir(parents=True, exist_ok=True)

        log_token = bind_job(job.id)
        try:
            ctx = self._build_context(job, output_root)
            if resume_state:
                ctx.store.restore(self._load_manifest_assets(output_root))
                for url, record in job.pages.items():
                    if record.captured:
                        ctx.pipeline.claim_page_path(url, record.local_path)

            job.status = JobStatus.RUNNING
            job.started_at = job.started_at or datetime.now()
            logger.info(f"Starting job {job.id}: {job.root_url}")
            logger.info(
                f"Max pages: {options.max_pages}, max depth: {options.max_depth}, "
                f"concurrency: {options.concurrency}"
            )
            self._emit("job_started", job.root_url)

            try:
                await self._discover(job, seed_from_sitemap=not resume_state)
                await self._crawl(job, ctx)
            except JobCancelled as e:
                job.status = JobStatus.CANCELLED
                job.errors.append(e.to_record(phase="job", url=job.root_url))
                logger.warning(f"Job {job.id} cancelled with {job.pages_captured} pages captured")
            except InvariantViolation as e:
                job.status = JobStatus.FAILED
                job.finished_at = datetime.now()
                logger.error(f"Job {job.id} aborted: {e.message}")
                self._save_checkpoint(job)
                raise
            finally:
                await self._teardown(ctx)

            return await self._finish(job, ctx)
        finally:
            if self._events is not None:
                self._events.put_nowait(None)
            unbind_job(log_token)

    def _build_context(self, job: CrawlJob, output_root: Path) -> _JobContext:
        options = job.options
        proxy_pool = None
        if options.proxy_enabled:
            proxy_pool = self.proxy_pool or create_proxy_pool_from_env(self.config.proxy)

        capture_config = replace(
            self.config.capture,
            asset_concurrency=options.asset_concurrency,
            max_asset_bytes=options.max_asset_bytes,
        )
        store = AssetStore(output_root)
        downloader = AssetDownloader(
            capture_config,
            staging_dir=output_root / STAGING_DIRNAME,
            transport=self.asset_transport,
            proxy_pool=proxy_pool,
        )
        solver_chain = self.solver_chain
        if solver_chain is None:
            solver_chain = build_solver_chain(
                options.challenge_solver_config,
                cache_seconds=self.config.bypass.token_cache_seconds,
            )

        return _JobContext(
            root_url=job.root_url,
            output_root=output_root,
            store=store,
            downloader=downloader,
            pipeline=AssetPipeline(output_root, store, downloader, capture_config),
            bypass=BypassEngine(solver_chain, proxy_pool, self.config.bypass),
            session_pool=BrowserSessionPool(
                self.launcher,
                max_size=max(options.concurrency, 1),
                max_uses=self.config.max_uses_per_session,
            ),
            proxy_pool=proxy_pool,
            strategy=RotationStrategy(options.proxy_strategy),
        )

    async def _teardown(self, ctx: _JobContext) -> None:
        await ctx.session_pool.stop()
        if ctx.proxy_pool is not None:
            await ctx.proxy_pool.release_all()
        await ctx.downloader.aclose()
        staging = ctx.output_root / STAGING_DIRNAME
        if staging.exists():
            shutil.rmtree(staging)

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def _discover(self, job: CrawlJob, seed_from_sitemap: bool) -> None:
        """Load robots.txt rules and seed the frontier from the site's sitemaps."""
        options = job.options
        use_sitemap = seed_from_sitemap and options.use_sitemap and options.max_depth >= 1
        if not options.respect_robots and not use_sitemap:
            return

        async with httpx.AsyncClient(
            transport=self.asset_transport,
            timeout=DISCOVERY_TIMEOUT_SECONDS,
            follow_redirects=True,
            headers={"User-Agent": self.config.user_agent},
        ) as client:
            listed: List[str] = []
            if options.respect_robots:
                self._robots = await fetch_robots(client, job.root_url)
                listed = self._robots.sitemaps
            if not use_sitemap:
                return

            found = await SitemapParser(client).discover(job.root_url, listed, max_urls=options.max_pages)

        links: List[str] = []
        for url in found:
            if not is_same_origin(job.root_url, url) or not is_page_candidate(url):
                continue
            normalized = normalize_url(url)
            if normalized != job.root_url and normalized not in links:
                links.append(normalized)
        added = self._enqueue_links(job, links[:max(options.max_pages - 1, 0)], 1)
        if found:
            logger.info(f"Sitemap listed {len(found)} URLs; {added} queued")

    def _robots_allows(self, url: str) -> bool:
        return self._robots is None or self._robots.allows(url)

    def _record_disallowed(self, job: CrawlJob, url: str, depth: int) -> None:
        logger.warning(f"Not capturing {url}: disallowed by robots.txt")
        job.visited.add(url)
        record = PageRecord(url=url, depth=depth)
        record.errors.append(RobotsDisallowed("Disallowed by robots.txt", url=url).to_record(phase="robots"))
        job.pages[url] = record
        job.pages_failed += 1
        job.errors.extend(record.errors)
        self._emit("page_failed", url, message=record.errors[0].message)

    # ------------------------------------------------------------------
    # Crawl loop
    # ------------------------------------------------------------------

    async def _crawl(self, job: CrawlJob, ctx: _JobContext) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + job.options.job_timeout
        outcomes: asyncio.Queue = asyncio.Queue()
        self._in_flight = {}

        try:
            while True:
                self.cancel_token.raise_if_cancelled()
                if self._running.is_set() and loop.time() < deadline:
                    self._dispatch(job, ctx, outcomes)
                if not self._in_flight and not self._has_work(job):
                    break

                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise JobTimeout(
                        f"Job exceeded {job.options.job_timeout:.0f}s", url=job.root_url
                    )

                outcome = await self._next_outcome(outcomes, remaining)
                if outcome is not None:
                    self._handle_outcome(job, outcome)
        except JobTimeout as e:
            logger.error(f"Job {job.id} timed out with {len(self._in_flight)} pages in flight")
            job.errors.append(e.to_record(phase="job"))
            for url, (_, entry) in self._in_flight.items():
                record = PageRecord(url=url, depth=entry.depth)
                record.errors.append(
                    JobTimeout("Job deadline reached before the page finished", url=url)
                    .to_record(phase="timeout")
                )
                job.pages[url] = record
                job.pages_failed += 1
                job.errors.extend(record.errors)
        except JobCancelled:
            job.interrupted = [entry for _, entry in self._in_flight.values()]
            raise
        finally:
            tasks = [task for task, _ in self._in_flight.values()]
            for task in tasks:
                task.cancel()
            if tasks:
                await asyncio.wait(tasks)
            self._in_flight = {}

    def _has_work(self, job: CrawlJob) -> bool:
        return bool(job.frontier) and job.pages_captured < job.options.max_pages

    def _dispatch(self, job: CrawlJob, ctx: _JobContext, outcomes: asyncio.Queue) -> None:
        """Start page tasks up to the concurrency and page limits."""
        options = job.options
        while job.frontier and len(self._in_flight) < options.concurrency:
            if job.pages_captured + len(self._in_flight) >= options.max_pages:
                return
            entry = job.frontier.popleft()
            url = normalize_url(entry.url)
            self._enqueued.discard(entry.url)
            if url in job.visited or entry.depth > options.max_depth:
                continue
            if not self._robots_allows(url):
                self._record_disallowed(job, url, entry.depth)
                continue

            job.visited.add(url)
            self._page_index += 1
            task = asyncio.create_task(self._page_task(url, entry.depth, ctx, outcomes))
            self._in_flight[url] = (task, FrontierEntry(url, entry.depth))
            logger.info(f"[D{entry.depth}] Capturing ({self._page_index}/{options.max_pages}): {url}")
            self._emit("page_started", url)

    async def _next_outcome(self, outcomes: asyncio.Queue, timeout: float) -> Optional[PageOutcome]:
        """Wait for a completed page, cancellation, resume or the deadline."""
        getter = asyncio.ensure_future(outcomes.get())
        waiters = {getter, asyncio.ensure_future(self.cancel_token.wait())}
        if not self._running.is_set():
            waiters.add(asyncio.ensure_future(self._running.wait()))

        done, pending = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        for waiter in pending:
            waiter.cancel()
        if getter in done:
            return getter.result()
        return None

    def _handle_outcome(self, job: CrawlJob, outcome: PageOutcome) -> None:
        if outcome.fatal is not None:
            raise outcome.fatal

        self._in_flight.pop(outcome.url, None)
        record = outcome.record
        job.pages[record.url] = record
        job.errors.extend(record.errors)

        if record.captured:
            added = self._enqueue_links(job, outcome.links, record.depth + 1)
            logger.debug(f"{record.url}: {added} new links queued")
            self._emit("page_captured", record.url)
        else:
            job.pages_failed += 1
            message = record.errors[-1].message if record.errors else None
            self._emit("page_failed", record.url, message=message)

        self._save_checkpoint(job)

    def _enqueue_links(self, job: CrawlJob, links: List[str], depth: int) -> int:
        if depth > job.options.max_depth:
            return 0
        added = 0
        for link in links:
            if link in job.visited or link in self._enqueued:
                continue
            if not self._robots_allows(link):
                logger.debug(f"Disallowed by robots.txt: {link}")
                continue
            job.frontier.append(FrontierEntry(link, depth))
            self._enqueued.add(link)
            added += 1
        return added

    # ------------------------------------------------------------------
    # Page task
    # ------------------------------------------------------------------

    async def _page_task(self, url: str, depth: int, ctx: _JobContext, outcomes: asyncio.Queue) -> None:
        with page_context(url):
            try:
                record, links = await self._process_page(url, depth, ctx)
                outcome = PageOutcome(url=url, depth=depth, record=record, links=links)
            except Exception as e:
                # JobCancelled and InvariantViolation are re-raised by the loop
                outcome = PageOutcome(url=url, depth=depth, fatal=e)
        outcomes.put_nowait(outcome)

    async def _process_page(self, url: str, depth: int, ctx: _JobContext) -> Tuple[PageRecord, List[str]]:
        timeout = self.job.options.timeout_per_page
        record = PageRecord(url=url, depth=depth)
        try:
            links = await asyncio.wait_for(self._visit(url, record, ctx), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Page deadline of {timeout:.0f}s exceeded: {url}")
            record.errors.append(
                JobTimeout(f"Page deadline of {timeout:.0f}s exceeded", url=url).to_record(phase="timeout")
            )
            return record, []
        except (JobCancelled, InvariantViolation):
            raise
        except MirrorError as e:
            logger.warning(f"Page not captured: {url}: {type(e).__name__}: {e.message}")
            record.errors.append(e.to_record(phase="page", url=url))
            return record, []
        except Exception as e:
            logger.warning(f"Page not captured: {url}: {type(e).__name__}: {e}", exc_info=True)
            record.errors.append(ErrorRecord(
                url=url,
                error_type=type(e).__name__,
                message=(str(e) or type(e).__name__)[:500],
                phase="page",
            ))
            return record, []
        return record, links

    async def _visit(self, url: str, record: PageRecord, ctx: _JobContext) -> List[str]:
        """Navigate, resolve protection and capture one page on a leased session."""
        proxy: Optional[ProxyEndpoint] = None
        if ctx.proxy_pool is not None:
            proxy = await ctx.proxy_pool.next(ctx.strategy, origin=origin_of(url))

        try:
            async with ctx.session_pool.lease(proxy) as session:
                handle = session.handle
                nav = await self._navigate(handle, url, proxy, ctx)
                record.http_status = nav.status
                record.final_url = nav.final_url

                bypass = await ctx.bypass.resolve(
                    handle, url, nav, proxy=proxy, cancel_token=self.cancel_token
                )
                record.challenge_type = bypass.initial_kind
                record.challenge_attempts = list(bypass.attempts)
                if not bypass.resolved:
                    kind = bypass.classification.kind.value
                    raise ChallengeUnsolved(
                        f"{kind} not resolved after {len(bypass.attempts)} attempts",
                        url=url,
                        kind=kind,
                    )
                record.resolved_at = bypass.resolved_at

                if bypass.initial_kind == ChallengeKind.NONE and nav.status is not None and nav.status >= 400:
                    raise NetworkError(f"HTTP {nav.status}", url=url, status_code=nav.status)

                base_url = bypass.final_url or nav.final_url or url
                result = await ctx.pipeline.capture(
                    handle,
                    base_url,
                    page_url=url,
                    proxy=proxy,
                    cancel_token=self.cancel_token,
                )
        finally:
            if proxy is not None:
                await ctx.proxy_pool.release(proxy)

        links: List[str] = []
        for link in result.links:
            if not is_same_origin(ctx.root_url, link) or not is_page_candidate(link):
                continue
            normalized = normalize_url(link)
            if normalized not in links:
                links.append(normalized)

        record.asset_refs = [asset.content_hash for asset in result.asset_records]
        record.errors.extend(result.errors)
        record.extracted_links = links
        record.captured_at = datetime.now()
        record.local_path = result.local_path
        return links

    def _calculate_backoff_delay(self, retry_count: int) -> float:
        """Calculate exponential backoff delay with jitter.

        Args:
            retry_count: Number of retries already attempted (0-indexed)

        Returns:
            Delay in seconds before next retry
        """
        delay = INITIAL_BACKOFF_DELAY_SECONDS * (EXPONENTIAL_BACKOFF_BASE ** retry_count)
        delay = min(delay, MAX_BACKOFF_DELAY_SECONDS)
        # Jitter (+/-25%) so concurrent retries spread out
        jitter = delay * self._rng.uniform(-0.25, 0.25)
        return delay + jitter

    async def _navigate(
        self,
        handle: BrowserSessionHandle,
        url: str,
        proxy: Optional[ProxyEndpoint],
        ctx: _JobContext,
    ) -> NavigationResult:
        """Navigate with retries on transient network failures."""
        retries = self.config.navigation_retries
        for attempt in range(retries + 1):
            self.cancel_token.raise_if_cancelled(url)
            started = time.monotonic()
            try:
                nav = await handle.navigate(url, self.config.bypass.navigation_timeout_seconds)
                if nav.status is not None and nav.status >= 500 and nav.status not in CHALLENGE_STATUSES:
                    raise NetworkError(f"HTTP {nav.status}", url=url, status_code=nav.status)
            except NetworkError as e:
                if ctx.proxy_pool is not None and proxy is not None:
                    await ctx.proxy_pool.report_outcome(proxy, success=False, reason="network")
                if attempt >= retries:
                    raise
                delay = self._calculate_backoff_delay(attempt)
                logger.info(
                    f"Navigation failed ({e.message}); retry {attempt + 1}/{retries} "
                    f"after {delay:.1f}s: {url}"
                )
                await cancellable_sleep(delay, self.cancel_token)
                continue

            if ctx.proxy_pool is not None and proxy is not None:
                await ctx.proxy_pool.report_outcome(
                    proxy, success=True, latency_ms=(time.monotonic() - started) * 1000
                )
            return nav

        raise NetworkError(f"Navigation failed: {url}", url=url)

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    async def _finish(self, job: CrawlJob, ctx: _JobContext) -> CrawlResult:
        self._emit("finalizing")
        if job.status != JobStatus.CANCELLED:
            job.status = JobStatus.COMPLETED if job.pages_captured > 0 else JobStatus.FAILED
        job.finished_at = datetime.now()

        self._finalize_links(job, ctx.output_root)
        self._write_manifest(job, ctx.store, ctx.output_root)

        report: Optional[VerificationReport] = None
        if job.options.verify and job.status == JobStatus.COMPLETED:
            self._emit("verifying")
            report = await self._verify(job, ctx.output_root)
            self._write_manifest(job, ctx.store, ctx.output_root, report)

        headline = None
        if job.status == JobStatus.FAILED:
            first = job.errors[0] if job.errors else None
            headline = f"{first.error_type}: {first.message}" if first else "No pages captured"
        else:
            headline = f"Captured {job.pages_captured} pages and {len(ctx.store)} assets"

        result = CrawlResult(
            success=job.status == JobStatus.COMPLETED,
            status=job.status,
            job_id=job.id,
            pages_captured=job.pages_captured,
            assets_captured=len(ctx.store),
            errors=list(job.errors),
            verification=report,
            output_root=str(ctx.output_root),
            pages=list(job.pages.values()),
            assets=ctx.store.records,
            headline=headline,
        )
        self.result = result
        self._save_checkpoint(job)

        logger.info(f"\n{'=' * 60}")
        logger.info(f"Job {job.id} {job.status.value}: {headline}")
        if job.pages_failed:
            logger.info(f"Failed pages: {job.pages_failed}")
        if report is not None:
            logger.info(f"Verification score: {report.score:.1f} (certified={report.certified})")
        logger.info(f"{'=' * 60}\n")

        self._emit("job_finished", message=headline)
        return result

    def _finalize_links(self, job: CrawlJob, output_root: Path) -> None:
        """Point anchors between captured pages at their local files."""
        page_paths: Dict[str, str] = {}
        for url, record in job.pages.items():
            if record.captured:
                page_paths[url] = record.local_path
        for record in job.pages.values():
            if record.captured and record.final_url:
                page_paths.setdefault(normalize_url(record.final_url), record.local_path)

        for url, record in job.pages.items():
            if not record.captured:
                continue
            path = output_root / record.local_path
            if not path.exists():
                logger.warning(f"Captured page file missing: {path}")
                continue
            html = path.read_text(encoding="utf-8")
            rewritten = rewrite_page_links(html, record.final_url or url, page_paths, record.local_path)
            if rewritten != html:
                path.write_text(rewritten, encoding="utf-8")

    def _write_manifest(
        self,
        job: CrawlJob,
        store: AssetStore,
        output_root: Path,
        report: Optional[VerificationReport] = None,
    ) -> None:
        manifest = {
            "job_id": job.id,
            "root_url": job.root_url,
            "status": job.status.value,
            "generated_at": datetime.now().isoformat(),
            "started_at": job.started_at.isoformat() if job.started_at else None,
            "finished_at": job.finished_at.isoformat() if job.finished_at else None,
            "pages_captured": job.pages_captured,
            "pages_failed": job.pages_failed,
            "assets_captured": len(store),
            "options": job.options.to_dict(),
            "pages": [p.to_dict() for p in job.pages.values()],
            "assets": [a.to_dict() for a in store.records],
            "verification": report.to_dict() if report else None,
        }
        write_json_atomic(output_root / MANIFEST_FILENAME, manifest)

    def _load_manifest_assets(self, output_root: Path) -> List[AssetRecord]:
        path = output_root / MANIFEST_FILENAME
        if not path.exists():
            return []
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Could not read manifest {path}: {e}")
            return []
        return [AssetRecord.from_dict(a) for a in data.get("assets", [])]

    async def _verify(self, job: CrawlJob, output_root: Path) -> VerificationReport:
        config = replace(self.config.verification, certify_threshold=job.options.certify_threshold)
        verifier = Verifier(config, script_runner=self.script_runner, transport=self.verification_transport)
        report = await verifier.verify(
            output_root, job.root_url, check_similarity=job.options.verify_similarity
        )
        for record in job.pages.values():
            if record.captured:
                record.verification = dict(report.page_annotations.get(record.local_path, {}))
        return report

    def _save_checkpoint(self, job: CrawlJob) -> None:
        if self.job_store is None:
            return
        try:
            self.job_store.save(job.get_state())
        except (OSError, TypeError, ValueError) as e:
            logger.warning(f"Could not save snapshot for job {job.id}: {e}")
