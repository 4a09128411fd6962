"""
Crawl Coordinator - breadth-first site scan with link and image validation.

Architecture:
- BFS traversal of in-scope pages with depth and page limits
- Bounded worker pool of asyncio tasks; validations share the same concurrency cap
- Per-host politeness spacing, raised to robots.txt crawl-delay where declared
- Plain HTTP fetch with headless-render fallback for client-rendered pages
- Memoized existence checks for every link and image target
- Wall-clock bound, caller cancellation and resource ceilings

Workers never touch the report: each task's result is consumed by the
coordinator loop, which is the only writer of the ReportBuilder.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable

import httpx
import psutil
import structlog

from linkscan.core.config import Settings
from linkscan.core.exceptions import FetchError, PolicyBlocked, ResourceExhausted
from linkscan.engines.base import (
    CooperationContext,
    FetchStrategy,
    FrontierEntry,
    Outcome,
    PageRecord,
    ReferenceKind,
    ResourceReference,
    ScanReport,
    ScanRequest,
    SkipReason,
    TruncationReason,
    ValidationResult,
)
from linkscan.engines.cooperation import api_key_headers, browser_context_options, build_auth
from linkscan.engines.crawler.frontier import CrawlScope, Frontier, URLNormalizer
from linkscan.engines.crawler.politeness import PolitenessScheduler, RequestGate
from linkscan.engines.crawler.robots import RobotsGate
from linkscan.engines.crawler.sitemap import SitemapParser
from linkscan.engines.extractor.engine import Extractor
from linkscan.engines.fetch.browser_pool import BrowserPool
from linkscan.engines.fetch.selector import FetchStrategySelector
from linkscan.engines.reporting.engine import ReportBuilder
from linkscan.engines.validator.engine import LinkValidator

logger = structlog.get_logger(__name__)

BrowserPoolFactory = Callable[..., BrowserPool]


# ─────────────────────────────────────────────
# Data Structures
# ─────────────────────────────────────────────

@dataclass(frozen=True)
class ScanLimits:
    """Effective bounds for one scan: request config over engine settings."""
    max_pages: int
    max_depth: int
    max_duration: float
    concurrency: int
    politeness_delay: float
    same_origin_only: bool
    render_enabled: bool
    seed_from_sitemap: bool

    @classmethod
    def resolve(cls, request: ScanRequest, settings: Settings) -> ScanLimits:
        cfg = request.config

        def pick(value, default):
            return default if value is None else value

        return cls(
            max_pages=pick(cfg.max_pages, settings.CRAWLER_MAX_PAGES),
            max_depth=pick(cfg.max_depth, settings.CRAWLER_MAX_DEPTH),
            max_duration=pick(cfg.max_duration_seconds, settings.CRAWLER_MAX_DURATION_SECONDS),
            concurrency=pick(cfg.concurrency, settings.CRAWLER_MAX_CONCURRENCY),
            politeness_delay=pick(cfg.politeness_delay, settings.CRAWLER_POLITENESS_DELAY),
            same_origin_only=cfg.same_origin_only,
            render_enabled=settings.RENDER_ENABLED and pick(cfg.render_enabled, True),
            seed_from_sitemap=pick(cfg.seed_from_sitemap, settings.CRAWLER_SEED_FROM_SITEMAP),
        )


@dataclass
class CrawlStats:
    """Live crawl statistics."""
    pages_started: int = 0
    pages_fetched: int = 0
    pages_failed: int = 0
    pages_skipped: int = 0
    rendered: int = 0
    start_time: float = field(default_factory=time.time)

    @property
    def elapsed_seconds(self) -> float:
        return time.time() - self.start_time

    @property
    def pages_per_second(self) -> float:
        elapsed = self.elapsed_seconds
        return self.pages_fetched / elapsed if elapsed > 0 else 0


@dataclass
class ScanSession:
    """Per-scan collaborators. Created on entry to run_scan, closed on exit."""
    root_url: str
    limits: ScanLimits
    cooperation: CooperationContext | None
    user_agent: str
    http_client: httpx.AsyncClient
    frontier: Frontier
    robots: RobotsGate
    politeness: PolitenessScheduler
    selector: FetchStrategySelector
    extractor: Extractor
    validator: LinkValidator
    scope: CrawlScope
    gate: RequestGate
    browser_pool: BrowserPool | None = None
    stats: CrawlStats = field(default_factory=CrawlStats)
    stopping: bool = False
    delay_checked_hosts: set[str] = field(default_factory=set)

    def in_scope(self, url: str) -> bool:
        return self.scope(url)


# ─────────────────────────────────────────────
# Coordinator
# ─────────────────────────────────────────────

class ScanCoordinator:
    """
    Runs one scan end to end and returns a finalized ScanReport.

    Flow:
    1. Validate request, resolve limits, open HTTP client and browser pool
    2. Seed frontier with the root URL (+ sitemap URLs when enabled)
    3. Loop: dequeue → robots check → politeness → fetch → extract
    4. Every new reference target is validated once; in-scope links are enqueued
    5. Stop on frontier exhaustion, limits, deadline or cancellation; finalize
    """

    PROGRESS_EVERY = 25
    CANCEL_GRACE_SECONDS = 5.0

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
        browser_pool_factory: BrowserPoolFactory | None = None,
    ):
        self.settings = settings
        self.transport = transport
        self.browser_pool_factory = browser_pool_factory or BrowserPool

    async def run_scan(
        self,
        request: ScanRequest | dict,
        cancel_event: asyncio.Event | None = None,
    ) -> ScanReport:
        """
        Scan request.url and return the finalized report.

        Raises InvalidRequest before any network activity for malformed input,
        and ResourceExhausted (carrying the aborted partial report) when a
        resource ceiling trips. Setting cancel_event finalizes a truncated report.
        """
        if not isinstance(request, ScanRequest):
            request = ScanRequest.from_payload(request)

        root_url = URLNormalizer.normalize(request.url)
        limits = ScanLimits.resolve(request, self.settings)
        builder = ReportBuilder(root_url)
        scan_id = uuid.uuid4().hex[:12]

        with structlog.contextvars.bound_contextvars(scan_id=scan_id):
            start = time.perf_counter()
            logger.info(
                "Scan starting",
                url=root_url,
                max_pages=limits.max_pages,
                max_depth=limits.max_depth,
                concurrency=limits.concurrency,
                render=limits.render_enabled,
                cooperation=request.cooperation is not None,
            )

            async with self._open_session(root_url, limits, request.cooperation) as session:
                try:
                    await self._crawl(session, builder, cancel_event)
                except ResourceExhausted as exc:
                    builder.mark_aborted(str(exc))
                    exc.report = builder.finalize()
                    logger.error("Scan aborted", reason=str(exc), pages=len(builder.pages))
                    raise

            report = builder.finalize()
            logger.info(
                "Scan complete",
                url=root_url,
                pages=report.summary.total_pages,
                checked=report.summary.total_links_checked,
                broken=report.summary.broken_count,
                truncated=report.truncated,
                reason=report.truncation_reason.value if report.truncation_reason else None,
                elapsed_ms=round((time.perf_counter() - start) * 1000, 2),
            )
            return report

    @asynccontextmanager
    async def _open_session(
        self,
        root_url: str,
        limits: ScanLimits,
        cooperation: CooperationContext | None,
    ) -> AsyncIterator[ScanSession]:
        settings = self.settings
        scope = CrawlScope(root_url, limits.same_origin_only)
        origin = scope.origin

        headers = {
            "User-Agent": settings.CRAWLER_USER_AGENT,
            "Accept": "text/html,application/xhtml+xml,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.9",
        }
        auth = build_auth(cooperation, scope, settings.API_KEY_HEADER)
        client_kwargs = {}
        if self.transport is not None:
            client_kwargs["transport"] = self.transport
        if auth is not None:
            client_kwargs["event_hooks"] = auth.event_hooks()

        browser_pool = None
        if limits.render_enabled:
            browser_pool = self.browser_pool_factory(
                max_contexts=settings.RENDER_MAX_CONTEXTS,
                headless=settings.RENDER_HEADLESS,
                timeout_ms=settings.RENDER_TIMEOUT_MS,
                settle_ms=settings.RENDER_SETTLE_MS,
                user_agent=settings.CRAWLER_USER_AGENT,
                context_options=browser_context_options(cooperation, origin),
                scoped_headers=api_key_headers(cooperation, settings.API_KEY_HEADER),
                scope_origin=origin,
            )

        async with httpx.AsyncClient(
            headers=headers,
            follow_redirects=False,
            max_redirects=settings.CRAWLER_MAX_REDIRECTS,
            timeout=httpx.Timeout(settings.CRAWLER_REQUEST_TIMEOUT),
            limits=httpx.Limits(max_connections=limits.concurrency + 5, max_keepalive_connections=20),
            auth=auth,
            **client_kwargs,
        ) as http_client:
            politeness = PolitenessScheduler(delay=limits.politeness_delay)
            gate = RequestGate(politeness, asyncio.Semaphore(limits.concurrency))
            robots = RobotsGate(http_client, in_scope=scope, timeout=settings.CRAWLER_REQUEST_TIMEOUT)

            async def robots_allows(url: str) -> bool:
                return await robots.is_allowed(url, settings.CRAWLER_USER_AGENT, cooperation)

            session = ScanSession(
                root_url=root_url,
                limits=limits,
                cooperation=cooperation,
                user_agent=settings.CRAWLER_USER_AGENT,
                http_client=http_client,
                frontier=Frontier(max_depth=limits.max_depth),
                robots=robots,
                politeness=politeness,
                selector=FetchStrategySelector(
                    http_client,
                    browser_pool=browser_pool,
                    timeout=settings.CRAWLER_REQUEST_TIMEOUT,
                    min_content_bytes=settings.CRAWLER_MIN_CONTENT_BYTES,
                    request_slot=gate.slot,
                ),
                extractor=Extractor(),
                validator=LinkValidator(
                    http_client,
                    is_allowed=robots_allows,
                    request_slot=gate.slot,
                    timeout=settings.CRAWLER_REQUEST_TIMEOUT,
                    max_redirects=settings.CRAWLER_MAX_REDIRECTS,
                    range_bytes=settings.VALIDATOR_RANGE_BYTES,
                ),
                scope=scope,
                gate=gate,
                browser_pool=browser_pool,
            )
            try:
                yield session
            finally:
                if browser_pool is not None:
                    await browser_pool.close()

    # ─────────────────────────────────────────
    # Main loop
    # ─────────────────────────────────────────

    async def _crawl(
        self,
        session: ScanSession,
        builder: ReportBuilder,
        cancel_event: asyncio.Event | None,
    ) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + session.limits.max_duration
        frontier = session.frontier
        limits = session.limits

        frontier.enqueue(FrontierEntry(url=session.root_url, depth=0))
        if limits.seed_from_sitemap:
            await self._seed_from_sitemap(session, deadline - loop.time())

        page_tasks: dict[asyncio.Task, FrontierEntry] = {}
        validation_tasks: dict[asyncio.Task, str] = {}
        cancel_waiter = asyncio.create_task(cancel_event.wait()) if cancel_event is not None else None

        try:
            while True:
                self._check_resources(session)

                # Fill free worker slots from the frontier
                while not session.stopping and len(page_tasks) < limits.concurrency and not frontier.is_empty:
                    if session.stats.pages_started >= limits.max_pages:
                        # In-flight pages may still turn out to be robots skips
                        if not page_tasks:
                            builder.mark_truncated(TruncationReason.PAGE_LIMIT)
                            session.stopping = True
                        break
                    entry = frontier.dequeue()
                    session.stats.pages_started += 1
                    page_tasks[asyncio.create_task(self._visit(session, entry))] = entry

                if not page_tasks and not validation_tasks:
                    break

                remaining = deadline - loop.time()
                if remaining <= 0:
                    builder.mark_truncated(TruncationReason.TIME_LIMIT)
                    break

                waiting = set(page_tasks) | set(validation_tasks)
                if cancel_waiter is not None:
                    waiting.add(cancel_waiter)
                done, _ = await asyncio.wait(waiting, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)

                if cancel_waiter is not None and cancel_waiter in done:
                    logger.info("Scan cancelled by caller")
                    builder.mark_truncated(TruncationReason.CANCELLED)
                    break

                for task in done:
                    if task in page_tasks:
                        entry = page_tasks.pop(task)
                        self._on_page(session, builder, entry, task, validation_tasks)
                    else:
                        target = validation_tasks.pop(task)
                        builder.add_validation(self._validation_result(target, task))
        finally:
            session.stopping = True
            if cancel_waiter is not None:
                cancel_waiter.cancel()
            await self._cancel_all(list(page_tasks) + list(validation_tasks))

    def _on_page(
        self,
        session: ScanSession,
        builder: ReportBuilder,
        entry: FrontierEntry,
        task: asyncio.Task,
        validation_tasks: dict[asyncio.Task, str],
    ) -> None:
        """Merge one finished page visit into the report and schedule its follow-up work."""
        try:
            record: PageRecord = task.result()
        except Exception as exc:
            logger.error("Page task failed", url=entry.url, error=str(exc), exc_info=True)
            record = PageRecord(url=entry.url, depth=entry.depth, referrer=entry.referrer, error=str(exc))

        stats = session.stats
        if record.skipped_reason is not None:
            stats.pages_skipped += 1
            stats.pages_started -= 1  # skipped pages do not consume the page budget
        elif record.error:
            stats.pages_failed += 1
        else:
            stats.pages_fetched += 1
        builder.add_page(record)

        if stats.pages_fetched and stats.pages_fetched % self.PROGRESS_EVERY == 0 and not record.error:
            logger.info(
                "Crawl progress",
                crawled=stats.pages_fetched,
                queued=len(session.frontier),
                validations=len(validation_tasks),
                pps=round(stats.pages_per_second, 2),
            )

        for reference in record.references:
            if builder.add_reference(reference):
                task = asyncio.create_task(session.validator.validate(reference.target_url))
                validation_tasks[task] = reference.target_url
            self._maybe_enqueue(session, builder, record, reference)

    @staticmethod
    def _validation_result(target: str, task: asyncio.Task) -> ValidationResult:
        try:
            return task.result()
        except Exception as exc:
            logger.error("Validation task failed", url=target, error=str(exc), exc_info=True)
            return ValidationResult(url=target, outcome=Outcome.UNKNOWN, error=str(exc))

    def _maybe_enqueue(
        self,
        session: ScanSession,
        builder: ReportBuilder,
        record: PageRecord,
        reference: ResourceReference,
    ) -> None:
        if session.stopping or reference.kind is not ReferenceKind.LINK:
            return
        # Off-scope targets are validated, never crawled
        if not session.in_scope(reference.target_url):
            return
        frontier = session.frontier
        rejections = frontier.depth_rejections
        frontier.enqueue(FrontierEntry(url=reference.target_url, depth=record.depth + 1, referrer=record.url))
        if frontier.depth_rejections > rejections:
            builder.mark_truncated(TruncationReason.DEPTH_LIMIT)

    # ─────────────────────────────────────────
    # Worker
    # ─────────────────────────────────────────

    async def _visit(self, session: ScanSession, entry: FrontierEntry) -> PageRecord:
        """dequeue → robots → fetch (politeness, then a slot) → extract, as one unit of work."""
        url = entry.url
        if not await session.robots.is_allowed(url, session.user_agent, session.cooperation):
            return PageRecord(
                url=url,
                depth=entry.depth,
                referrer=entry.referrer,
                skipped_reason=SkipReason.ROBOTS,
                error=str(PolicyBlocked(url)),
            )

        host = URLNormalizer.host(url)
        await self._apply_crawl_delay(session, url, host)

        try:
            result = await session.selector.fetch(url)
        except FetchError as e:
            logger.warning("HTTP fetch failed", url=url, kind=e.kind, error=e.detail)
            return PageRecord(url=url, depth=entry.depth, referrer=entry.referrer, error=str(e))

        if result.strategy is FetchStrategy.RENDERED:
            session.stats.rendered += 1

        final_url = URLNormalizer.try_normalize(result.final_url) or url
        if entry.depth == 0 and url == session.root_url and final_url != url:
            self._follow_seed_redirect(session, final_url)

        references: list[ResourceReference] = []
        error = None
        if result.is_html and result.status_code < 400 and session.in_scope(final_url):
            try:
                references = [
                    ref if ref.source_url == url else ref.model_copy(update={"source_url": url})
                    for ref in session.extractor.extract(result.body, final_url)
                ]
            except Exception as e:
                logger.warning("HTML parse error", url=url, error=str(e), exc_info=True)
                error = f"Extraction failed: {e}"

        return PageRecord(
            url=url,
            final_url=final_url if final_url != url else None,
            depth=entry.depth,
            referrer=entry.referrer,
            status_code=result.status_code,
            strategy_used=result.strategy,
            references=references,
            fetched_at=result.started_at,
            fetch_duration_ms=result.elapsed_ms,
            error=error,
            render_error=result.render_error,
        )

    def _follow_seed_redirect(self, session: ScanSession, final_url: str) -> None:
        if not session.scope.follow_seed_redirect(final_url):
            return
        session.frontier.mark_seen(final_url)
        if session.browser_pool is not None:
            session.browser_pool.rescope(session.scope.origin)

    async def _apply_crawl_delay(self, session: ScanSession, url: str, host: str) -> None:
        if host in session.delay_checked_hosts:
            return
        session.delay_checked_hosts.add(host)
        delay = await session.robots.crawl_delay(URLNormalizer.origin(url), session.user_agent)
        if delay:
            session.politeness.set_interval(host, delay)

    # ─────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────

    async def _seed_from_sitemap(self, session: ScanSession, budget: float) -> None:
        parser = SitemapParser(session.http_client, timeout=self.settings.CRAWLER_REQUEST_TIMEOUT)
        try:
            urls = await asyncio.wait_for(parser.discover(session.root_url), timeout=max(budget, 0.001))
        except asyncio.TimeoutError:
            logger.warning("Sitemap discovery timed out", url=session.root_url)
            return
        accepted = 0
        for url in urls:
            if session.in_scope(url) and session.frontier.enqueue(
                FrontierEntry(url=url, depth=min(1, session.limits.max_depth), referrer=None)
            ):
                accepted += 1
        logger.info("Frontier seeded from sitemap", accepted=accepted, found=len(urls))

    def _check_resources(self, session: ScanSession) -> None:
        """Trip ResourceExhausted when a configured ceiling is exceeded."""
        ceiling = self.settings.CRAWLER_MAX_FRONTIER_SIZE
        if len(session.frontier) > ceiling:
            raise ResourceExhausted(f"Frontier exceeded {ceiling} entries")

        max_memory_mb = self.settings.CRAWLER_MAX_MEMORY_MB
        if max_memory_mb:
            rss_mb = psutil.Process().memory_info().rss / 1024 / 1024
            if rss_mb > max_memory_mb:
                raise ResourceExhausted(f"Memory use {rss_mb:.0f} MB exceeded {max_memory_mb} MB")

    async def _cancel_all(self, tasks: list[asyncio.Task]) -> None:
        pending = [t for t in tasks if not t.done()]
        if not pending:
            return
        for task in pending:
            task.cancel()
        _, still_running = await asyncio.wait(pending, timeout=self.CANCEL_GRACE_SECONDS)
        if still_running:
            logger.warning("Tasks did not stop after cancellation", count=len(still_running))


def run_scan(
    request: ScanRequest | dict,
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ScanReport:
    """Run a scan to completion from synchronous code."""
    coordinator = ScanCoordinator(settings, transport=transport)
    return asyncio.run(coordinator.run_scan(request))
