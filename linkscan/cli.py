"""Command-line interface for local scans and debugging."""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from pathlib import Path

import structlog

from linkscan.core.config import Settings, get_settings
from linkscan.core.exceptions import InvalidRequest, ResourceExhausted
from linkscan.core.logging import configure_logging
from linkscan.engines.base import ScanReport, ScanRequest
from linkscan.engines.crawler.engine import ScanCoordinator

logger = structlog.get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="linkscan",
        description="Crawl a site and report broken links and missing images",
    )
    parser.add_argument("url", help="Seed URL to scan")
    parser.add_argument("--max-pages", type=int, default=None, help="Maximum pages to crawl")
    parser.add_argument("--max-depth", type=int, default=None, help="Maximum link depth from the seed")
    parser.add_argument("--max-duration", type=float, default=None, help="Wall-clock limit in seconds")
    parser.add_argument("--concurrency", type=int, default=None, help="Concurrent requests")
    parser.add_argument("--delay", type=float, default=None, help="Seconds between requests to one host")
    parser.add_argument("--include-subdomains", action="store_true",
                        help="Crawl subdomains of the seed host as well")
    parser.add_argument("--sitemap", action="store_true", help="Seed the frontier from sitemap.xml")

    # Rendering
    parser.add_argument("--no-render", action="store_true", help="Disable the headless browser fallback")
    parser.add_argument("--headed", action="store_true", help="Show the browser window (local debugging)")

    # Cooperation context
    parser.add_argument("--user", default=None, help="Basic-auth user for the scanned site")
    parser.add_argument("--password", default=None, help="Basic-auth password for the scanned site")
    parser.add_argument("--api-key", default=None, help="API key sent to the scanned site")
    parser.add_argument("--whitelist-ip", action="store_true",
                        help="Site owner has whitelisted this crawler; bypass robots.txt for the site")

    # Output
    parser.add_argument("--output", "-o", type=Path, default=None, help="Write the JSON report to a file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return parser


def build_payload(args: argparse.Namespace) -> dict:
    payload: dict = {
        "url": args.url,
        "config": {
            "maxPages": args.max_pages,
            "maxDepth": args.max_depth,
            "maxDurationSeconds": args.max_duration,
            "concurrency": args.concurrency,
            "politenessDelay": args.delay,
            "sameOriginOnly": not args.include_subdomains,
            "seedFromSitemap": True if args.sitemap else None,
        },
    }
    if args.user or args.password or args.api_key or args.whitelist_ip:
        cooperation: dict = {"whitelistIP": args.whitelist_ip, "apiKey": args.api_key}
        if args.user or args.password:
            cooperation["siteCredentials"] = {"user": args.user, "pass": args.password}
        payload["cooperation"] = cooperation
    return payload


def apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    updates = {}
    if args.no_render:
        updates["RENDER_ENABLED"] = False
    if args.headed:
        updates["RENDER_HEADLESS"] = False
    if args.verbose:
        updates["VERBOSE"] = True
    return settings.model_copy(update=updates) if updates else settings


async def _run(coordinator: ScanCoordinator, request: ScanRequest) -> ScanReport:
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
    except NotImplementedError:
        pass  # Windows event loops have no signal handlers
    return await coordinator.run_scan(request, cancel_event=cancel_event)


def print_summary(report: ScanReport) -> None:
    summary = report.summary
    print(f"\n{'=' * 60}", file=sys.stderr)
    print(f"Scan of {report.scanned_url}", file=sys.stderr)
    print(f"{'=' * 60}", file=sys.stderr)
    print(f"  Pages crawled:   {summary.total_pages} ({summary.pages_skipped} skipped)", file=sys.stderr)
    print(f"  Targets checked: {summary.total_links_checked}", file=sys.stderr)
    print(f"  OK:              {summary.ok_count}", file=sys.stderr)
    print(f"  Broken links:    {len(report.broken_links)}", file=sys.stderr)
    print(f"  Missing images:  {len(report.missing_images)}", file=sys.stderr)
    if report.truncated:
        print(f"  Truncated:       {report.truncation_reason.value}", file=sys.stderr)
    for problem in report.broken_links + report.missing_images:
        status = problem.status_code if problem.status_code is not None else "-"
        print(f"  ✗ [{problem.kind.value}] {problem.url} ({problem.outcome.value}, {status})", file=sys.stderr)
    print(f"{'=' * 60}\n", file=sys.stderr)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = apply_overrides(get_settings(), args)
    configure_logging(settings)

    try:
        request = ScanRequest.from_payload(build_payload(args))
    except InvalidRequest as exc:
        print(f"Error: {exc}", file=sys.stderr)
        for error in exc.errors:
            print(f"  {'.'.join(str(p) for p in error.get('loc', ()))}: {error.get('msg')}", file=sys.stderr)
        return 2

    coordinator = ScanCoordinator(settings)
    exit_code = 0
    try:
        report = asyncio.run(_run(coordinator, request))
    except ResourceExhausted as exc:
        logger.error("Scan aborted", error=str(exc))
        if exc.report is None:
            return 3
        report = exc.report
        exit_code = 3

    document = json.dumps(report.to_document(), indent=2)
    if args.output:
        args.output.write_text(document, encoding="utf-8")
    else:
        print(document)
    print_summary(report)

    if exit_code == 0 and (report.broken_links or report.missing_images):
        exit_code = 1
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
