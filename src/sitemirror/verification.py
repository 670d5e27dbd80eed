"""
Mirror Verification

Scores an output root on weighted integrity checks:
- output_non_empty: the mirror has content
- internal_links_resolve: every relative reference points at a real file
- scripts_execute: the root page runs without fatal script errors
- file_integrity: no empty or truncated files
- structural_similarity: captured DOM structure matches the live site
"""

import difflib
import json
import logging
import posixpath
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from urllib.parse import unquote, urlparse

import httpx

from sitemirror.capture.extractor import (
    CSS_IMPORT_RE,
    CSS_URL_RE,
    SRC_ATTRIBUTES,
    SRCSET_SELECTORS,
    _is_resource_link,
    parse_html,
    parse_srcset,
)
from sitemirror.config import VerificationConfig
from sitemirror.constants import MANIFEST_FILENAME, MAX_CHECK_DETAIL_SAMPLES
from sitemirror.utils.urls import can_fetch_url

logger = logging.getLogger(__name__)

HTML_SUFFIXES = {".html", ".htm"}

CHECK_WEIGHTS = {
    "output_non_empty": 1.0,
    "internal_links_resolve": 3.0,
    "scripts_execute": 2.0,
    "file_integrity": 2.0,
    "structural_similarity": 2.0,
}

# file URL -> fatal script errors raised while loading it
ScriptRunner = Callable[[str], Awaitable[List[str]]]


@dataclass
class CheckResult:
    """Outcome of one verification check."""
    name: str
    passed: bool
    weight: float
    details: Dict[str, Any] = field(default_factory=dict)
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "passed": self.passed,
            "weight": self.weight,
            "details": self.details,
            "skipped": self.skipped,
        }


@dataclass
class VerificationReport:
    """Weighted verification result for one output root."""
    checks: List[CheckResult]
    score: float
    certified: bool
    output_root: str = ""
    original_url: str = ""
    verified_at: datetime = field(default_factory=datetime.now)
    # page local path -> {"links_checked": n, "broken_links": [...]}
    page_annotations: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def check(self, name: str) -> Optional[CheckResult]:
        return next((c for c in self.checks if c.name == name), None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "certified": self.certified,
            "output_root": self.output_root,
            "original_url": self.original_url,
            "verified_at": self.verified_at.isoformat(),
            "checks": [c.to_dict() for c in self.checks],
        }


def calculate_score(checks: List[CheckResult]) -> float:
    """Weighted pass fraction x 100; skipped checks are excluded."""
    counted = [c for c in checks if not c.skipped]
    total = sum(c.weight for c in counted)
    if total <= 0:
        return 0.0
    passed = sum(c.weight for c in counted if c.passed)
    return round(passed / total * 100, 2)


def _is_local_reference(value: Optional[str]) -> bool:
    if not value or not can_fetch_url(value):
        return False
    value = value.strip()
    if value.startswith(("/", "\\")):
        return False
    return not urlparse(value).scheme


def _references_in_html(html: str) -> List[str]:
    soup = parse_html(html)
    refs: List[str] = []
    for tag in soup.select("a[href], area[href]"):
        refs.append(tag.get("href"))
    for tag in soup.select("link[href]"):
        if _is_resource_link(tag):
            refs.append(tag.get("href"))
    for selector, attribute in SRC_ATTRIBUTES:
        for tag in soup.select(selector):
            refs.append(tag.get(attribute))
    for tag in soup.select(SRCSET_SELECTORS):
        for attribute in ("srcset", "data-srcset"):
            refs.extend(parse_srcset(tag.get(attribute, "")))
    return [r.strip() for r in refs if _is_local_reference(r)]


def _references_in_css(css: str) -> List[str]:
    refs = [m.group(2).strip() for m in CSS_URL_RE.finditer(css)]
    refs.extend(m.group(2).strip() for m in CSS_IMPORT_RE.finditer(css))
    return [r for r in refs if _is_local_reference(r)]


def _tag_sequence(html: str) -> List[str]:
    return [tag.name for tag in parse_html(html).find_all(True)]


def sample_pages(pages: List[Dict[str, Any]], size: int) -> List[Dict[str, Any]]:
    """
    Pick up to size pages spread across crawl depths.

    Depths are visited round-robin, shallowest first, keeping manifest order
    within a depth.
    """
    by_depth: Dict[int, List[Dict[str, Any]]] = {}
    for page in pages:
        by_depth.setdefault(page.get("depth", 0), []).append(page)
    levels = [by_depth[d] for d in sorted(by_depth)]

    picked: List[Dict[str, Any]] = []
    index = 0
    while len(picked) < size and any(index < len(level) for level in levels):
        for level in levels:
            if index < len(level) and len(picked) < size:
                picked.append(level[index])
        index += 1
    return picked


class Verifier:
    """
    Runs the verification checks over a mirror.

    Usage:
        verifier = Verifier(config, script_runner=launcher.run_scripts)
        report = await verifier.verify(Path("mirrors/output"), "https://example.com/")
    """

    def __init__(
        self,
        config: Optional[VerificationConfig] = None,
        script_runner: Optional[ScriptRunner] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or VerificationConfig()
        self.script_runner = script_runner
        self._transport = transport

    async def verify(
        self,
        output_root: Path,
        original_url: str,
        check_similarity: Optional[bool] = None,
    ) -> VerificationReport:
        """
        Verify an output root.

        Args:
            output_root: Mirror directory
            original_url: Root URL the mirror was captured from
            check_similarity: Overrides config.check_similarity

        Returns:
            VerificationReport with score and certification
        """
        root = Path(output_root)
        manifest = self._load_manifest(root)
        files = self._list_files(root)

        checks = [self._check_output_non_empty(root, files)]
        links_check, annotations = self._check_internal_links(root, files)
        checks.append(links_check)
        checks.append(await self._check_scripts(root))
        checks.append(self._check_file_integrity(root, files, manifest))

        similarity = self.config.check_similarity if check_similarity is None else check_similarity
        if similarity:
            checks.append(await self._check_structural_similarity(root, original_url, manifest))

        score = calculate_score(checks)
        report = VerificationReport(
            checks=checks,
            score=score,
            certified=score >= self.config.certify_threshold,
            output_root=str(root),
            original_url=original_url,
            page_annotations=annotations,
        )
        logger.info(
            f"Verification of {root}: score {score:.1f} "
            f"({'certified' if report.certified else 'not certified'})"
        )
        for check in checks:
            if not check.passed and not check.skipped:
                logger.warning(f"Verification check failed: {check.name}")
        return report

    def _load_manifest(self, root: Path) -> Dict[str, Any]:
        path = root / MANIFEST_FILENAME
        if not path.exists():
            return {}
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Unreadable manifest {path}: {e}")
            return {}

    def _list_files(self, root: Path) -> List[Path]:
        if not root.exists():
            return []
        return sorted(
            p for p in root.rglob("*")
            if p.is_file()
            and p.name != MANIFEST_FILENAME
            and not any(part.startswith(".") for part in p.relative_to(root).parts)
        )

    def _check_output_non_empty(self, root: Path, files: List[Path]) -> CheckResult:
        html_files = [p for p in files if p.suffix.lower() in HTML_SUFFIXES]
        total_bytes = sum(p.stat().st_size for p in files)
        return CheckResult(
            name="output_non_empty",
            passed=bool(html_files) and total_bytes > 0,
            weight=CHECK_WEIGHTS["output_non_empty"],
            details={
                "files": len(files),
                "html_files": len(html_files),
                "total_bytes": total_bytes,
                "has_index": (root / "index.html").exists(),
            },
        )

    def _resolve_local(self, root: Path, source: Path, reference: str) -> Tuple[bool, str]:
        path = unquote(reference.split("#", 1)[0].split("?", 1)[0])
        if not path:
            return True, ""
        rel_source = source.relative_to(root).as_posix()
        joined = posixpath.normpath(posixpath.join(posixpath.dirname(rel_source), path))
        if joined == ".." or joined.startswith("../"):
            return False, joined
        target = root / joined
        if target.is_dir():
            target = target / "index.html"
        return target.is_file() and target.stat().st_size > 0, joined

    def _check_internal_links(
        self, root: Path, files: List[Path]
    ) -> Tuple[CheckResult, Dict[str, Dict[str, Any]]]:
        checked = 0
        broken: List[str] = []
        annotations: Dict[str, Dict[str, Any]] = {}

        for path in files:
            suffix = path.suffix.lower()
            if suffix not in HTML_SUFFIXES and suffix != ".css":
                continue
            text = path.read_text(encoding="utf-8", errors="replace")
            refs = _references_in_html(text) if suffix in HTML_SUFFIXES else _references_in_css(text)

            page_broken = []
            for ref in refs:
                ok, resolved = self._resolve_local(root, path, ref)
                checked += 1
                if not ok:
                    page_broken.append(ref)
                    broken.append(f"{path.relative_to(root).as_posix()} -> {resolved or ref}")

            if suffix in HTML_SUFFIXES:
                annotations[path.relative_to(root).as_posix()] = {
                    "links_checked": len(refs),
                    "broken_links": page_broken[:MAX_CHECK_DETAIL_SAMPLES],
                }

        check = CheckResult(
            name="internal_links_resolve",
            passed=not broken,
            weight=CHECK_WEIGHTS["internal_links_resolve"],
            details={
                "checked": checked,
                "broken_count": len(broken),
                "broken": broken[:MAX_CHECK_DETAIL_SAMPLES],
            },
        )
        return check, annotations

    async def _check_scripts(self, root: Path) -> CheckResult:
        weight = CHECK_WEIGHTS["scripts_execute"]
        if self.script_runner is None:
            return CheckResult("scripts_execute", False, weight, {"reason": "no script runner"}, skipped=True)

        index = root / "index.html"
        if not index.exists():
            return CheckResult("scripts_execute", False, weight, {"reason": "index.html missing"})

        try:
            errors = await self.script_runner(index.resolve().as_uri())
        except Exception as e:
            logger.warning(f"Script runner failed: {e}")
            return CheckResult("scripts_execute", False, weight, {"runner_error": str(e)})

        return CheckResult(
            name="scripts_execute",
            passed=not errors,
            weight=weight,
            details={"error_count": len(errors), "errors": errors[:MAX_CHECK_DETAIL_SAMPLES]},
        )

    def _check_file_integrity(
        self, root: Path, files: List[Path], manifest: Dict[str, Any]
    ) -> CheckResult:
        empty: List[str] = []
        truncated: List[str] = []

        for path in files:
            rel = path.relative_to(root).as_posix()
            size = path.stat().st_size
            if size == 0:
                empty.append(rel)
                continue
            if path.suffix.lower() in HTML_SUFFIXES:
                text = path.read_text(encoding="utf-8", errors="replace").lower()
                if "<html" in text and "</html>" not in text:
                    truncated.append(rel)

        missing: List[str] = []
        for asset in manifest.get("assets", []):
            target = root / asset["local_path"]
            if not target.exists():
                missing.append(asset["local_path"])
            elif target.stat().st_size != asset.get("byte_size"):
                truncated.append(asset["local_path"])
        for page in manifest.get("pages", []):
            if page.get("local_path") and not (root / page["local_path"]).exists():
                missing.append(page["local_path"])

        return CheckResult(
            name="file_integrity",
            passed=not (empty or truncated or missing),
            weight=CHECK_WEIGHTS["file_integrity"],
            details={
                "files_checked": len(files),
                "empty": empty[:MAX_CHECK_DETAIL_SAMPLES],
                "truncated": truncated[:MAX_CHECK_DETAIL_SAMPLES],
                "missing": missing[:MAX_CHECK_DETAIL_SAMPLES],
            },
        )

    async def _check_structural_similarity(
        self, root: Path, original_url: str, manifest: Dict[str, Any]
    ) -> CheckResult:
        weight = CHECK_WEIGHTS["structural_similarity"]
        captured = [p for p in manifest.get("pages", []) if p.get("local_path")]
        samples = [
            (p["url"], p["local_path"]) for p in sample_pages(captured, self.config.sample_size)
        ] or [(original_url, "index.html")]

        options = {
            "timeout": httpx.Timeout(self.config.request_timeout_seconds),
            "follow_redirects": True,
        }
        if self._transport is not None:
            options["transport"] = self._transport

        ratios: Dict[str, float] = {}
        fetch_errors: List[str] = []
        async with httpx.AsyncClient(**options) as client:
            for url, local_path in samples:
                local = root / local_path
                if not local.exists():
                    continue
                try:
                    response = await client.get(url)
                    response.raise_for_status()
                except httpx.HTTPError as e:
                    fetch_errors.append(f"{url}: {e}")
                    continue
                matcher = difflib.SequenceMatcher(
                    None,
                    _tag_sequence(local.read_text(encoding="utf-8", errors="replace")),
                    _tag_sequence(response.text),
                    autojunk=False,
                )
                ratios[url] = round(matcher.ratio(), 4)

        if not ratios:
            return CheckResult(
                "structural_similarity", False, weight,
                {"reason": "no pages compared", "fetch_errors": fetch_errors[:MAX_CHECK_DETAIL_SAMPLES]},
                skipped=True,
            )

        mean = sum(ratios.values()) / len(ratios)
        return CheckResult(
            name="structural_similarity",
            passed=mean >= self.config.similarity_threshold,
            weight=weight,
            details={
                "mean_ratio": round(mean, 4),
                "ratios": ratios,
                "fetch_errors": fetch_errors[:MAX_CHECK_DETAIL_SAMPLES],
            },
        )
