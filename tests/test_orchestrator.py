"""Tests for the crawl orchestrator, run end to end against an in-memory site."""

import asyncio
import json
import time

import pytest

from sitemirror.job_store import JsonJobStore
from sitemirror.models import ChallengeKind, JobOptions, JobStatus
from sitemirror.orchestrator import CrawlOrchestrator

ROOT = "https://example.com/"


@pytest.fixture
def store(tmp_path):
    return JsonJobStore(tmp_path / "state")


@pytest.fixture
def options(tmp_path):
    return JobOptions(max_pages=10, max_depth=3, concurrency=2, output_root=str(tmp_path / "out"))


@pytest.fixture
def make_orchestrator(site, launcher, fast_config, store):
    def make(**kwargs):
        orchestrator = CrawlOrchestrator(
            kwargs.pop("launcher", launcher),
            config=fast_config,
            job_store=store,
            asset_transport=site.transport(),
            **kwargs,
        )
        orchestrator._calculate_backoff_delay = lambda retry_count: 0.0
        return orchestrator
    return make


def small_site(site, pages):
    page = pages["page"]
    site.add_page(ROOT, page(
        "Home",
        '<img src="/img/logo.png"><a href="/about">About</a><a href="/blog/">Blog</a>'
        '<a href="https://other.example/x">Elsewhere</a>',
        head='<link rel="stylesheet" href="/css/site.css">',
    ))
    site.add_page("https://example.com/about", page("About", '<a href="/">Home</a><img src="/img/logo.png">'))
    site.add_page("https://example.com/blog", page("Blog", '<a href="/about">About</a>'))
    site.add_asset("https://example.com/css/site.css", b"body { background: url(../img/bg.png) }", "text/css")
    site.add_asset("https://example.com/img/bg.png", b"background", "image/png")
    site.add_asset("https://example.com/img/logo.png", b"logo", "image/png")


class TestMirrorJob:
    """End-to-end mirror jobs."""

    @pytest.mark.asyncio
    async def test_mirror_small_site_is_certified(self, site, pages, launcher, options, make_orchestrator, tmp_path):
        """Test a three page site is captured, linked locally and certified."""
        small_site(site, pages)

        result = await make_orchestrator().run("https://example.com", options)

        assert result.success is True
        assert result.status == JobStatus.COMPLETED
        assert result.pages_captured == 3
        assert result.assets_captured == 3
        assert result.errors == []
        assert result.verification.score == 100.0
        assert result.verification.certified is True
        assert len(launcher.scripts_run) == 1

        out = tmp_path / "out"
        index = (out / "index.html").read_text()
        assert 'href="about/index.html"' in index
        assert 'href="blog/index.html"' in index
        assert 'href="https://other.example/x"' in index
        assert 'href="../index.html"' in (out / "about" / "index.html").read_text()
        assert not (out / ".staging").exists()

    @pytest.mark.asyncio
    async def test_each_page_is_visited_once(self, site, pages, options, make_orchestrator):
        small_site(site, pages)

        await make_orchestrator().run(ROOT, options)

        assert sorted(site.navigations) == [
            ROOT, "https://example.com/about", "https://example.com/blog",
        ]

    @pytest.mark.asyncio
    async def test_manifest_is_written(self, site, pages, options, make_orchestrator, tmp_path):
        small_site(site, pages)

        result = await make_orchestrator().run(ROOT, options)

        manifest = json.loads((tmp_path / "out" / "manifest.json").read_text())
        assert manifest["job_id"] == result.job_id
        assert manifest["status"] == "completed"
        assert len(manifest["pages"]) == 3
        assert len(manifest["assets"]) == 3
        assert manifest["verification"]["certified"] is True
        css = next(a for a in manifest["assets"] if a["source_url"].endswith("site.css"))
        assert (tmp_path / "out" / css["local_path"]).stat().st_size == css["byte_size"]

    @pytest.mark.asyncio
    async def test_script_challenge_on_root(self, site, pages, options, make_orchestrator):
        """Test a script challenge is solved and recorded on the page."""
        site.add_page(ROOT, pages["script_challenge"], status=503, solved=pages["page"]("Home"))

        result = await make_orchestrator().run(ROOT, options)

        assert result.success is True
        record = result.pages[0]
        assert record.challenge_type == ChallengeKind.SCRIPT_CHALLENGE
        assert record.resolved_at is not None
        assert 1 <= len(record.challenge_attempts) <= 2
        assert record.challenge_attempts[-1].outcome == "resolved"

    @pytest.mark.asyncio
    async def test_failing_asset_does_not_fail_page(self, site, pages, options, make_orchestrator):
        """Test an asset that keeps failing is retried then recorded as an error."""
        broken = "https://example.com/img/broken.png"
        site.add_page(ROOT, pages["page"]("Home", '<img src="/img/broken.png">'))
        site.add_asset(broken, b"error", "text/plain", status=500)

        result = await make_orchestrator().run(ROOT, options)

        assert result.status == JobStatus.COMPLETED
        assert result.pages_captured == 1
        assert result.assets_captured == 0
        assert site.asset_requests.count(broken) == 3
        assert len(result.errors) == 1
        error = result.errors[0]
        assert error.url == broken
        assert error.error_type == "NetworkError"
        assert error.phase == "capture"
        assert result.pages[0].errors == result.errors

    @pytest.mark.asyncio
    async def test_identical_assets_stored_once(self, site, pages, options, make_orchestrator, tmp_path):
        site.add_page(ROOT, pages["page"]("Home", '<img src="/a.png"><img src="/b.png">'))
        site.add_asset("https://example.com/a.png", b"same bytes", "image/png")
        site.add_asset("https://example.com/b.png", b"same bytes", "image/png")

        result = await make_orchestrator().run(ROOT, options)

        assert result.assets_captured == 1
        asset = result.assets[0]
        assert {asset.source_url} | asset.alias_urls == {"https://example.com/a.png", "https://example.com/b.png"}
        assert len(list((tmp_path / "out" / "assets").iterdir())) == 1

    @pytest.mark.asyncio
    async def test_max_pages_limits_capture(self, site, pages, make_orchestrator, tmp_path):
        links = "".join(f'<a href="/p{i}">P{i}</a>' for i in range(1, 6))
        site.add_page(ROOT, pages["page"]("Home", links))
        for i in range(1, 6):
            site.add_page(f"https://example.com/p{i}", pages["page"](f"P{i}"))

        result = await make_orchestrator().run(
            ROOT, JobOptions(max_pages=3, concurrency=2, output_root=str(tmp_path / "out"))
        )

        assert result.pages_captured == 3
        assert len(site.navigations) == 3

    @pytest.mark.asyncio
    async def test_max_depth_limits_crawl(self, site, pages, make_orchestrator, tmp_path):
        site.add_page(ROOT, pages["page"]("Home", '<a href="/one">One</a>'))
        site.add_page("https://example.com/one", pages["page"]("One", '<a href="/two">Two</a>'))
        site.add_page("https://example.com/two", pages["page"]("Two"))

        result = await make_orchestrator().run(
            ROOT, JobOptions(max_depth=1, output_root=str(tmp_path / "out"))
        )

        assert result.pages_captured == 2
        assert "https://example.com/two" not in site.navigations
        assert {p.depth for p in result.pages} == {0, 1}

    @pytest.mark.asyncio
    async def test_missing_page_is_recorded(self, site, pages, options, make_orchestrator):
        site.add_page(ROOT, pages["page"]("Home", '<a href="/gone">Gone</a>'))

        result = await make_orchestrator().run(ROOT, options)

        assert result.status == JobStatus.COMPLETED
        gone = next(p for p in result.pages if p.url == "https://example.com/gone")
        assert not gone.captured
        assert gone.http_status == 404
        assert gone.errors[0].error_type == "NetworkError"
        assert result.verification.certified is True

    @pytest.mark.asyncio
    async def test_blocked_root_fails_job(self, site, pages, options, make_orchestrator):
        site.add_page(ROOT, pages["blocked"], status=403)

        result = await make_orchestrator().run(ROOT, options)

        assert result.success is False
        assert result.status == JobStatus.FAILED
        assert result.pages_captured == 0
        assert result.verification is None
        assert result.headline.startswith("ChallengeUnsolved")
        assert result.pages[0].challenge_type == ChallengeKind.HARD_BLOCK

    @pytest.mark.asyncio
    async def test_navigation_is_retried(self, site, pages, options, make_orchestrator):
        response = pages["response"]
        site.add_sequence(ROOT, [
            response(error="net::ERR_CONNECTION_RESET"),
            response(pages["page"]("Home")),
        ])

        result = await make_orchestrator().run(ROOT, options)

        assert result.pages_captured == 1
        assert site.navigations == [ROOT, ROOT]

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self, site, pages, options, make_orchestrator):
        response = pages["response"]
        site.add_sequence(ROOT, [
            response(pages["page"]("Oops"), status=500),
            response(pages["page"]("Home")),
        ])

        result = await make_orchestrator().run(ROOT, options)

        assert result.pages_captured == 1
        assert result.pages[0].http_status == 200

    @pytest.mark.asyncio
    async def test_stream_reports_progress(self, site, pages, options, make_orchestrator):
        small_site(site, pages)
        orchestrator = make_orchestrator()

        events = [event async for event in orchestrator.stream(ROOT, options)]

        phases = [event.phase for event in events]
        assert phases[0] == "job_started"
        assert phases[-1] == "job_finished"
        assert phases.count("page_started") == 3
        assert phases.count("page_captured") == 3
        assert "verifying" in phases
        assert orchestrator.result.success is True
        assert all(event.job_id == orchestrator.result.job_id for event in events)


class TestCancelAndResume:
    """Cancellation keeps partial output and the snapshot resumes the job."""

    @staticmethod
    def linked_site(site, pages):
        links = "".join(f'<a href="/p{i}">P{i}</a>' for i in range(1, 10))
        site.add_page(ROOT, pages["page"]("Home", links))
        for i in range(1, 10):
            site.add_page(f"https://example.com/p{i}", pages["page"](f"P{i}", '<a href="/">Home</a>'))

    @pytest.fixture
    def sequential(self, tmp_path):
        return JobOptions(max_pages=10, concurrency=1, output_root=str(tmp_path / "out"))

    async def cancelled_run(self, make_orchestrator, sequential):
        captured = []

        def on_event(event):
            if event.phase == "page_captured":
                captured.append(event.current_url)
                if len(captured) == 5:
                    orchestrator.cancel("test stop")

        orchestrator = make_orchestrator(progress_callback=on_event)
        return await orchestrator.run(ROOT, sequential)

    @pytest.mark.asyncio
    async def test_cancel_keeps_partial_output(self, site, pages, make_orchestrator, sequential, tmp_path):
        self.linked_site(site, pages)

        result = await self.cancelled_run(make_orchestrator, sequential)

        assert result.status == JobStatus.CANCELLED
        assert result.success is False
        assert result.pages_captured == 5
        assert len(site.navigations) == 5
        assert result.verification is None
        assert (tmp_path / "out" / "index.html").exists()
        assert (tmp_path / "out" / "manifest.json").exists()

    @pytest.mark.asyncio
    async def test_resume_continues_without_revisiting(self, site, pages, launcher, store, make_orchestrator, sequential):
        self.linked_site(site, pages)
        first = await self.cancelled_run(make_orchestrator, sequential)
        visited_before = list(site.navigations)

        snapshot = store.load(first.job_id)
        assert snapshot["status"] == "cancelled"
        assert len(snapshot["queue"]) == 5

        result = await make_orchestrator().run(ROOT, sequential, resume_state=snapshot)

        assert result.job_id == first.job_id
        assert result.status == JobStatus.COMPLETED
        assert result.pages_captured == 10
        resumed = site.navigations[len(visited_before):]
        assert len(resumed) == 5
        assert not set(resumed) & set(visited_before)
        assert result.verification.certified is True


class TestPageFailureIsolation:
    """One bad page never ends the job."""

    @pytest.mark.asyncio
    async def test_malformed_link_is_skipped(self, site, pages, options, make_orchestrator, tmp_path):
        site.add_page(ROOT, pages["page"](
            "Home", '<a href="https://example.com:99999/x">Bad port</a><a href="/about">About</a>'
        ))
        site.add_page("https://example.com/about", pages["page"]("About"))

        result = await make_orchestrator().run(ROOT, options)

        assert result.status == JobStatus.COMPLETED
        assert result.pages_captured == 2
        assert sorted(site.navigations) == [ROOT, "https://example.com/about"]
        index = (tmp_path / "out" / "index.html").read_text()
        assert 'href="https://example.com:99999/x"' in index

    @pytest.mark.asyncio
    async def test_unexpected_page_exception_is_recorded(self, site, pages, options, make_orchestrator):
        response = pages["response"]
        site.add_page(ROOT, pages["page"]("Home", '<a href="/crash">Crash</a><a href="/about">About</a>'))
        site.add_sequence("https://example.com/crash", [response(exception=RuntimeError("target closed"))])
        site.add_page("https://example.com/about", pages["page"]("About"))

        result = await make_orchestrator().run(ROOT, options)

        assert result.status == JobStatus.COMPLETED
        assert result.pages_captured == 2
        crashed = next(p for p in result.pages if p.url == "https://example.com/crash")
        assert not crashed.captured
        assert crashed.errors[0].error_type == "RuntimeError"
        assert crashed.errors[0].message == "target closed"
        assert crashed.errors[0].phase == "page"


class TestDeadlines:
    """Per-page and whole-job deadlines."""

    @pytest.mark.asyncio
    async def test_page_deadline_fails_only_that_page(self, site, pages, make_orchestrator, tmp_path):
        response = pages["response"]
        site.add_page(ROOT, pages["page"]("Home", '<a href="/slow">Slow</a><a href="/about">About</a>'))
        site.add_sequence("https://example.com/slow", [response(pages["page"]("Slow"), delay=5)])
        site.add_page("https://example.com/about", pages["page"]("About"))

        result = await make_orchestrator().run(
            ROOT, JobOptions(concurrency=2, timeout_per_page=0.2, output_root=str(tmp_path / "out"))
        )

        assert result.status == JobStatus.COMPLETED
        assert result.pages_captured == 2
        slow = next(p for p in result.pages if p.url == "https://example.com/slow")
        assert not slow.captured
        assert slow.errors[0].error_type == "JobTimeout"
        assert slow.errors[0].phase == "timeout"

    @pytest.mark.asyncio
    async def test_job_deadline_finishes_with_partial_result(self, site, pages, make_orchestrator, tmp_path):
        response = pages["response"]
        site.add_page(ROOT, pages["page"]("Home", '<a href="/slow">Slow</a>'))
        site.add_sequence("https://example.com/slow", [response(pages["page"]("Slow"), delay=5)])

        started = time.monotonic()
        result = await make_orchestrator().run(
            ROOT, JobOptions(concurrency=2, job_timeout=0.3, output_root=str(tmp_path / "out"))
        )

        assert time.monotonic() - started < 3
        assert result.status == JobStatus.COMPLETED
        assert result.pages_captured == 1
        assert any(e.error_type == "JobTimeout" and e.phase == "job" for e in result.errors)
        slow = next(p for p in result.pages if p.url == "https://example.com/slow")
        assert slow.errors[0].phase == "timeout"

    @pytest.mark.asyncio
    async def test_no_pages_start_after_job_deadline(self, site, pages, make_orchestrator, tmp_path):
        site.add_page(ROOT, pages["page"]("Home", '<a href="/next">Next</a>'))
        site.add_page("https://example.com/next", pages["page"]("Next"))
        started = []

        def on_event(event):
            if event.phase == "page_started":
                started.append(event.current_url)
            elif event.phase == "page_captured":
                time.sleep(0.3)

        result = await make_orchestrator(progress_callback=on_event).run(
            ROOT, JobOptions(job_timeout=0.2, output_root=str(tmp_path / "out"))
        )

        assert started == [ROOT]
        assert site.navigations == [ROOT]
        assert any(e.error_type == "JobTimeout" for e in result.errors)


class TestPauseResume:
    """pause() holds dispatch until resume()."""

    @pytest.mark.asyncio
    async def test_pause_stops_dispatch_until_resumed(self, site, pages, options, make_orchestrator):
        small_site(site, pages)

        def on_event(event):
            if event.phase == "page_captured" and event.current_url == ROOT:
                orchestrator.pause()

        orchestrator = make_orchestrator(progress_callback=on_event)
        task = asyncio.create_task(orchestrator.run(ROOT, options))

        for _ in range(100):
            if orchestrator.job is not None and orchestrator.job.status == JobStatus.PAUSED:
                break
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.1)

        assert orchestrator.job.status == JobStatus.PAUSED
        assert site.navigations == [ROOT]
        assert not task.done()

        orchestrator.resume()
        result = await asyncio.wait_for(task, timeout=5)

        assert result.status == JobStatus.COMPLETED
        assert result.pages_captured == 3


class TestOfflineReferences:
    """Captured resources are referenced locally, never from the live origin."""

    @pytest.mark.asyncio
    async def test_output_has_no_remote_references(self, site, pages, options, make_orchestrator, tmp_path):
        small_site(site, pages)

        result = await make_orchestrator().run(ROOT, options)

        assert result.assets_captured == 3
        out = tmp_path / "out"
        for path in list(out.rglob("*.html")) + list(out.rglob("*.css")):
            text = path.read_text()
            assert "https://example.com" not in text, path
            assert "/img/" not in text and "/css/" not in text, path


SITEMAP = """<?xml version="1.0" encoding="UTF-8"?>
<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <url><loc>https://example.com/</loc></url>
  <url><loc>https://example.com/hidden</loc></url>
  <url><loc>https://other.example/elsewhere</loc></url>
  <url><loc>https://example.com/files/report.pdf</loc></url>
</urlset>"""


class TestDiscovery:
    """robots.txt rules and sitemap seeding."""

    @pytest.mark.asyncio
    async def test_sitemap_seeds_unlinked_pages(self, site, pages, options, make_orchestrator):
        site.add_page(ROOT, pages["page"]("Home"))
        site.add_page("https://example.com/hidden", pages["page"]("Hidden"))
        site.add_asset("https://example.com/sitemap.xml", SITEMAP.encode(), "application/xml")

        result = await make_orchestrator().run(ROOT, options)

        assert result.pages_captured == 2
        assert sorted(site.navigations) == [ROOT, "https://example.com/hidden"]
        hidden = next(p for p in result.pages if p.url == "https://example.com/hidden")
        assert hidden.depth == 1

    @pytest.mark.asyncio
    async def test_sitemap_from_robots_and_opt_out(self, site, pages, options, make_orchestrator, tmp_path):
        site.add_page(ROOT, pages["page"]("Home"))
        site.add_page("https://example.com/hidden", pages["page"]("Hidden"))
        site.add_asset("https://example.com/robots.txt",
                       b"User-agent: *\nDisallow:\n\nSitemap: https://example.com/pages.xml\n", "text/plain")
        site.add_asset("https://example.com/pages.xml", SITEMAP.encode(), "application/xml")

        result = await make_orchestrator().run(ROOT, options)
        assert result.pages_captured == 2
        assert "https://example.com/sitemap.xml" not in site.asset_requests

        site.navigations.clear()
        result = await make_orchestrator().run(
            ROOT, JobOptions(use_sitemap=False, output_root=str(tmp_path / "out2"))
        )
        assert result.pages_captured == 1
        assert site.navigations == [ROOT]

    @pytest.mark.asyncio
    async def test_disallowed_link_is_not_visited(self, site, pages, options, make_orchestrator):
        small_site(site, pages)
        site.add_asset("https://example.com/robots.txt", b"User-agent: *\nDisallow: /blog\n", "text/plain")

        result = await make_orchestrator().run(ROOT, options)

        assert result.status == JobStatus.COMPLETED
        assert result.pages_captured == 2
        assert "https://example.com/blog" not in site.navigations
        assert all(p.url != "https://example.com/blog" for p in result.pages)

    @pytest.mark.asyncio
    async def test_disallowed_root_fails_job(self, site, pages, options, make_orchestrator):
        small_site(site, pages)
        site.add_asset("https://example.com/robots.txt", b"User-agent: *\nDisallow: /\n", "text/plain")

        result = await make_orchestrator().run(ROOT, options)

        assert result.status == JobStatus.FAILED
        assert site.navigations == []
        root = next(p for p in result.pages if p.url == ROOT)
        assert root.errors[0].error_type == "RobotsDisallowed"
        assert root.errors[0].phase == "robots"

    @pytest.mark.asyncio
    async def test_ignore_robots(self, site, pages, options, make_orchestrator):
        small_site(site, pages)
        site.add_asset("https://example.com/robots.txt", b"User-agent: *\nDisallow: /\n", "text/plain")
        options.respect_robots = False

        result = await make_orchestrator().run(ROOT, options)

        assert result.status == JobStatus.COMPLETED
        assert result.pages_captured == 3
        assert "https://example.com/robots.txt" not in site.asset_requests
