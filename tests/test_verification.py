"""Tests for mirror verification."""

import json

import httpx
import pytest

from sitemirror.config import VerificationConfig
from sitemirror.verification import CHECK_WEIGHTS, CheckResult, Verifier, calculate_score, sample_pages

GOOD_INDEX = (
    "<!DOCTYPE html><html><head><link rel=\"stylesheet\" href=\"assets/site.css\"></head>"
    "<body><h1>Home</h1><a href=\"about/index.html#team\">About</a>"
    "<a href=\"https://example.com/pricing\">Pricing</a><img src=\"assets/logo.png\"></body></html>"
)
GOOD_ABOUT = (
    "<!DOCTYPE html><html><body><h1>About</h1><a href=\"../index.html\">Home</a>"
    "<img src=\"../assets/logo.png\"></body></html>"
)


def write_mirror(root, index=GOOD_INDEX, about=GOOD_ABOUT, css="body { background: url(bg.png) }"):
    (root / "about").mkdir(parents=True)
    (root / "assets").mkdir()
    (root / "index.html").write_text(index)
    (root / "about" / "index.html").write_text(about)
    (root / "assets" / "site.css").write_text(css)
    (root / "assets" / "logo.png").write_bytes(b"logo")
    (root / "assets" / "bg.png").write_bytes(b"bg")
    return root


async def no_errors(file_url):
    return []


class TestCalculateScore:
    """Tests for the weighted score."""

    def test_all_passed(self):
        checks = [CheckResult(name, True, weight) for name, weight in CHECK_WEIGHTS.items()]
        assert calculate_score(checks) == 100.0

    def test_weighted_failure(self):
        checks = [
            CheckResult("output_non_empty", True, 1.0),
            CheckResult("internal_links_resolve", False, 3.0),
            CheckResult("file_integrity", True, 2.0),
        ]
        assert calculate_score(checks) == 50.0

    def test_skipped_checks_excluded(self):
        checks = [
            CheckResult("output_non_empty", True, 1.0),
            CheckResult("scripts_execute", False, 2.0, skipped=True),
        ]
        assert calculate_score(checks) == 100.0

    def test_nothing_counted(self):
        assert calculate_score([]) == 0.0


class TestSamplePages:
    """Tests for similarity sampling."""

    def test_spreads_across_depths(self):
        pages = [{"url": f"d0-{i}", "depth": 0} for i in range(1)]
        pages += [{"url": f"d1-{i}", "depth": 1} for i in range(6)]
        pages += [{"url": f"d2-{i}", "depth": 2} for i in range(3)]

        picked = [p["url"] for p in sample_pages(pages, 5)]

        assert picked == ["d0-0", "d1-0", "d2-0", "d1-1", "d2-1"]

    def test_fewer_pages_than_size(self):
        pages = [{"url": "a", "depth": 0}, {"url": "b"}]
        assert [p["url"] for p in sample_pages(pages, 5)] == ["a", "b"]


class TestVerifier:
    """Tests for Verifier.verify."""

    @pytest.mark.asyncio
    async def test_clean_mirror_is_certified(self, tmp_path):
        root = write_mirror(tmp_path / "out")

        report = await Verifier(script_runner=no_errors).verify(root, "https://example.com/")

        assert report.score == 100.0
        assert report.certified is True
        assert [c.name for c in report.checks] == [
            "output_non_empty", "internal_links_resolve", "scripts_execute", "file_integrity",
        ]
        assert report.page_annotations["index.html"] == {"links_checked": 3, "broken_links": []}

    @pytest.mark.asyncio
    async def test_broken_link_fails_certification(self, tmp_path):
        index = GOOD_INDEX.replace("about/index.html", "contact/index.html")
        root = write_mirror(tmp_path / "out", index=index)

        report = await Verifier(script_runner=no_errors).verify(root, "https://example.com/")

        links = report.check("internal_links_resolve")
        assert links.passed is False
        assert links.details["broken_count"] == 1
        assert report.page_annotations["index.html"]["broken_links"] == ["contact/index.html#team"]
        assert report.score == 62.5
        assert report.certified is False

    @pytest.mark.asyncio
    async def test_css_references_are_checked(self, tmp_path):
        root = write_mirror(tmp_path / "out", css="body { background: url(missing.png) }")

        report = await Verifier(script_runner=no_errors).verify(root, "https://example.com/")

        assert report.check("internal_links_resolve").details["broken"] == ["assets/site.css -> assets/missing.png"]

    @pytest.mark.asyncio
    async def test_links_escaping_root_are_broken(self, tmp_path):
        about = GOOD_ABOUT.replace("../index.html", "../../outside.html")
        root = write_mirror(tmp_path / "out", about=about)

        report = await Verifier(script_runner=no_errors).verify(root, "https://example.com/")

        assert report.check("internal_links_resolve").passed is False

    @pytest.mark.asyncio
    async def test_script_errors_fail_check(self, tmp_path):
        root = write_mirror(tmp_path / "out")
        seen = []

        async def runner(file_url):
            seen.append(file_url)
            return ["ReferenceError: jQuery is not defined"]

        report = await Verifier(script_runner=runner).verify(root, "https://example.com/")

        scripts = report.check("scripts_execute")
        assert scripts.passed is False
        assert scripts.details["errors"] == ["ReferenceError: jQuery is not defined"]
        assert seen == [(root / "index.html").resolve().as_uri()]

    @pytest.mark.asyncio
    async def test_without_runner_scripts_are_skipped(self, tmp_path):
        root = write_mirror(tmp_path / "out")

        report = await Verifier().verify(root, "https://example.com/")

        assert report.check("scripts_execute").skipped is True
        assert report.score == 100.0

    @pytest.mark.asyncio
    async def test_empty_and_truncated_files(self, tmp_path):
        root = write_mirror(tmp_path / "out")
        (root / "assets" / "bg.png").write_bytes(b"")
        (root / "about" / "index.html").write_text("<html><body><h1>About")

        report = await Verifier(script_runner=no_errors).verify(root, "https://example.com/")

        integrity = report.check("file_integrity")
        assert integrity.passed is False
        assert integrity.details["empty"] == ["assets/bg.png"]
        assert integrity.details["truncated"] == ["about/index.html"]

    @pytest.mark.asyncio
    async def test_manifest_sizes_are_compared(self, tmp_path):
        root = write_mirror(tmp_path / "out")
        manifest = {
            "pages": [{"url": "https://example.com/", "local_path": "index.html"}],
            "assets": [
                {"local_path": "assets/logo.png", "byte_size": 4},
                {"local_path": "assets/bg.png", "byte_size": 100},
                {"local_path": "assets/gone.woff2", "byte_size": 10},
            ],
        }
        (root / "manifest.json").write_text(json.dumps(manifest))

        report = await Verifier(script_runner=no_errors).verify(root, "https://example.com/")

        integrity = report.check("file_integrity")
        assert integrity.details["truncated"] == ["assets/bg.png"]
        assert integrity.details["missing"] == ["assets/gone.woff2"]

    @pytest.mark.asyncio
    async def test_empty_output(self, tmp_path):
        report = await Verifier().verify(tmp_path / "nothing", "https://example.com/")

        assert report.check("output_non_empty").passed is False
        assert report.certified is False

    @pytest.mark.asyncio
    async def test_hidden_files_are_ignored(self, tmp_path):
        root = write_mirror(tmp_path / "out")
        (root / ".staging").mkdir()
        (root / ".staging" / "asset-1.part").write_bytes(b"")

        report = await Verifier(script_runner=no_errors).verify(root, "https://example.com/")

        assert report.check("file_integrity").passed is True

    @pytest.mark.asyncio
    async def test_structural_similarity(self, tmp_path):
        root = write_mirror(tmp_path / "out")
        live = {
            "https://example.com/": GOOD_INDEX,
            "https://example.com/about": GOOD_ABOUT,
        }
        manifest = {
            "pages": [
                {"url": "https://example.com/", "local_path": "index.html"},
                {"url": "https://example.com/about", "local_path": "about/index.html"},
            ],
            "assets": [],
        }
        (root / "manifest.json").write_text(json.dumps(manifest))
        transport = httpx.MockTransport(
            lambda request: httpx.Response(200, text=live[str(request.url)])
        )

        report = await Verifier(script_runner=no_errors, transport=transport).verify(
            root, "https://example.com/", check_similarity=True
        )

        similarity = report.check("structural_similarity")
        assert similarity.passed is True
        assert similarity.details["mean_ratio"] == 1.0
        assert report.score == 100.0

    @pytest.mark.asyncio
    async def test_similarity_skipped_when_site_unreachable(self, tmp_path):
        root = write_mirror(tmp_path / "out")
        transport = httpx.MockTransport(lambda request: httpx.Response(503))
        config = VerificationConfig(check_similarity=True)

        report = await Verifier(config, script_runner=no_errors, transport=transport).verify(
            root, "https://example.com/"
        )

        similarity = report.check("structural_similarity")
        assert similarity.skipped is True
        assert len(similarity.details["fetch_errors"]) == 1
        assert report.certified is True
