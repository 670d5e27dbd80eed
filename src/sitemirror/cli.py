"""Command-line interface for the site mirror."""

import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from sitemirror.config import MirrorConfig, settings
from sitemirror.infrastructure.browser_driver import PlaywrightLauncher
from sitemirror.infrastructure.proxy_rotation import RotationStrategy, create_proxy_pool_from_env
from sitemirror.job_store import JsonJobStore
from sitemirror.logging_config import setup_logging
from sitemirror.models import CrawlResult, JobOptions, JobStatus, ProgressEvent
from sitemirror.orchestrator import CrawlOrchestrator

PRINTED_PHASES = {"page_captured", "page_failed", "paused", "resumed", "cancelling", "verifying"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Mirror a website into a self-contained offline copy")
    parser.add_argument("url", nargs="?", help="Root URL to mirror (not required when using --resume)")
    parser.add_argument("--max-pages", type=int, default=None,
                        help="Maximum number of pages to capture (default: 50)")
    parser.add_argument("--max-depth", type=int, default=None,
                        help="Maximum link depth from the root page (default: 3)")
    parser.add_argument("--concurrency", type=int, default=None,
                        help="Pages captured concurrently (default: 4)")
    parser.add_argument("--asset-concurrency", type=int, default=None,
                        help="Asset downloads in flight per page (default: 12)")
    parser.add_argument("--timeout-per-page", type=float, default=None,
                        help="Per-page deadline in seconds (default: 120)")
    parser.add_argument("--job-timeout", type=float, default=None,
                        help="Whole-job deadline in seconds (default: 3600)")
    parser.add_argument("--output", type=str, default=None,
                        help="Output directory (default: <SITEMIRROR_OUTPUT_DIR>/<host>)")

    parser.add_argument("--proxy", action="store_true",
                        help="Route traffic through proxies from PROXY_URLS / PROXY_FILE")
    parser.add_argument("--proxy-strategy", choices=[s.value for s in RotationStrategy], default=None,
                        help="Proxy rotation strategy (default: PROXY_ROTATION or round_robin)")

    parser.add_argument("--ignore-robots", action="store_true", help="Do not apply robots.txt rules")
    parser.add_argument("--no-sitemap", action="store_true", help="Do not seed the crawl from sitemap.xml")

    parser.add_argument("--no-verify", action="store_true", help="Skip verification of the output")
    parser.add_argument("--verify-similarity", action="store_true",
                        help="Compare captured DOM structure against the live site")
    parser.add_argument("--certify-threshold", type=float, default=None,
                        help="Verification score required for certification (default: 95)")

    parser.add_argument("--config", type=str, default=None, help="JSON configuration file")
    parser.add_argument("--state-dir", type=str, default=None, help="Directory for job snapshots")
    parser.add_argument("--resume", type=str, metavar="JOB_ID", help="Resume a job from its snapshot")
    parser.add_argument("--headful", action="store_true", help="Show the browser window")
    parser.add_argument("--log-level", type=str, default=None, help="Log level (default: LOG_LEVEL or INFO)")
    parser.add_argument("--log-file", type=str, default=None, help="Also write logs to this file")
    return parser


def build_options(args: argparse.Namespace, root_url: str, output_dir: str,
                  base: Optional[dict] = None) -> JobOptions:
    """JobOptions from a snapshot's options (if any) overridden by CLI flags."""
    values = {
        k: v for k, v in (base or {}).items()
        if k in JobOptions.__dataclass_fields__ and k != "challenge_solver_config"
    }
    overrides = {
        "max_pages": args.max_pages,
        "max_depth": args.max_depth,
        "concurrency": args.concurrency,
        "asset_concurrency": args.asset_concurrency,
        "timeout_per_page": args.timeout_per_page,
        "job_timeout": args.job_timeout,
        "certify_threshold": args.certify_threshold,
        "output_root": args.output,
        "proxy_strategy": args.proxy_strategy,
    }
    values.update({k: v for k, v in overrides.items() if v is not None})
    if args.proxy:
        values["proxy_enabled"] = True
    if args.ignore_robots:
        values["respect_robots"] = False
    if args.no_sitemap:
        values["use_sitemap"] = False
    if args.no_verify:
        values["verify"] = False
    if args.verify_similarity:
        values["verify_similarity"] = True
    values.setdefault("proxy_strategy", settings.PROXY_ROTATION)
    values.setdefault("output_root", str(Path(output_dir) / (urlparse(root_url).hostname or "site")))
    values["challenge_solver_config"] = settings.solver_config()
    return JobOptions(**values)


def print_event(event: ProgressEvent) -> None:
    if event.phase not in PRINTED_PHASES:
        return
    counter = f"[{event.page_index}/{event.total_estimate}]"
    if event.phase == "page_captured":
        print(f"  ✅ {counter} {event.current_url}")
    elif event.phase == "page_failed":
        print(f"  ❌ {counter} {event.current_url}: {event.message}")
    else:
        print(f"  ⏸  {event.phase} {event.message or ''}".rstrip())


def print_summary(result: CrawlResult) -> None:
    print(f"\n{'=' * 60}")
    print(f"Job {result.job_id}: {result.status.value}")
    print(f"{'=' * 60}")
    print(f"  Pages captured:  {result.pages_captured}")
    print(f"  Assets captured: {result.assets_captured}")
    print(f"  Errors:          {len(result.errors)}")
    print(f"  Output:          {result.output_root}")
    if result.verification is not None:
        report = result.verification
        print(f"\n📊 Verification score: {report.score:.1f}/100 "
              f"({'certified' if report.certified else 'not certified'})")
        for check in report.checks:
            mark = "➖" if check.skipped else ("✅" if check.passed else "❌")
            print(f"  {mark} {check.name} (weight {check.weight:g})")
    if result.headline:
        print(f"\n{result.headline}")
    print(f"\n{'=' * 60}\n")


async def run_job(args: argparse.Namespace, config: MirrorConfig) -> CrawlResult:
    store = JsonJobStore(Path(args.state_dir or config.state_dir))

    resume_state = None
    if args.resume:
        resume_state = store.load(args.resume)
        if not resume_state:
            print(f"Error: No resumable snapshot for job {args.resume}")
            sys.exit(1)
        if resume_state.get("status") == JobStatus.COMPLETED.value:
            print("Job already completed. Start a new job instead.")
            sys.exit(0)
        root_url = resume_state["config"]["root_url"]
        options = build_options(args, root_url, config.output_dir, resume_state["config"].get("options"))
        print(f"Resuming job {args.resume} ({resume_state['progress'].get('pages_captured', 0)} pages captured)")
    else:
        root_url = args.url
        options = build_options(args, root_url, config.output_dir)

    proxy_pool = create_proxy_pool_from_env(config.proxy) if options.proxy_enabled else None

    async with PlaywrightLauncher(headless=config.headless and not args.headful,
                                  user_agent=config.user_agent) as launcher:
        orchestrator = CrawlOrchestrator(
            launcher,
            config=config,
            proxy_pool=proxy_pool,
            job_store=store,
        )

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, orchestrator.cancel, "interrupted")

        print(f"Mirroring {root_url} -> {options.output_root}")
        async for event in orchestrator.stream(root_url, options, resume_state=resume_state):
            print_event(event)

        result = orchestrator.result
        if result.status == JobStatus.CANCELLED:
            print(f"Resume with: sitemirror --resume {result.job_id}")
        return result


def main(argv: Optional[list] = None) -> int:
    """Entry point for the ``sitemirror`` command."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.url and not args.resume:
        parser.error("URL is required (or use --resume to continue a previous job)")
    config = MirrorConfig.load(args.config)
    setup_logging(args.log_level or config.log_level or settings.LOG_LEVEL, log_file=args.log_file)

    result = asyncio.run(run_job(args, config))
    print_summary(result)
    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
