"""
Headless browser pool for the render fallback.

One Chromium instance per scan, launched lazily on the first render. Each render
checks out an isolated browser context under a semaphore that caps concurrent
contexts independently of the crawl worker pool.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator

import structlog
from playwright.async_api import Browser, BrowserContext, Playwright, Route, async_playwright
from playwright.async_api import Error as PlaywrightError

from linkscan.core.exceptions import RenderError
from linkscan.engines.crawler.frontier import URLNormalizer

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RenderedPage:
    final_url: str
    status_code: int
    html: str
    elapsed_ms: float


class BrowserPool:
    """
    Manages a pooled Playwright browser.

    Features:
    - Lazy launch, shared by all renders in a scan
    - Scoped context checkout with release on every exit path
    - Credentials and API-key headers applied only to the scanned origin
    """

    # Heavy resources never affect the DOM we extract from
    BLOCKED_RESOURCE_TYPES = frozenset({"image", "media", "font"})

    def __init__(
        self,
        max_contexts: int = 2,
        headless: bool = True,
        timeout_ms: int = 30_000,
        settle_ms: int = 500,
        user_agent: str | None = None,
        context_options: dict[str, Any] | None = None,
        scoped_headers: dict[str, str] | None = None,
        scope_origin: str | None = None,
    ):
        self.max_contexts = max_contexts
        self.headless = headless
        self.timeout_ms = timeout_ms
        self.settle_ms = settle_ms
        self.user_agent = user_agent
        self.context_options = context_options or {}
        self.scoped_headers = scoped_headers or {}
        self.scope_origin = scope_origin

        self._semaphore = asyncio.Semaphore(max_contexts)
        self._launch_lock = asyncio.Lock()
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self.renders = 0

    async def _ensure_browser(self) -> Browser:
        async with self._launch_lock:
            if self._browser is None:
                try:
                    self._playwright = await async_playwright().start()
                    self._browser = await self._playwright.chromium.launch(
                        headless=self.headless,
                        args=["--no-sandbox", "--disable-setuid-sandbox", "--disable-dev-shm-usage"],
                    )
                except PlaywrightError as exc:
                    await self._stop_playwright()
                    raise RenderError(f"Browser launch failed: {exc}") from exc
                logger.info("Browser launched", headless=self.headless, max_contexts=self.max_contexts)
            return self._browser

    @asynccontextmanager
    async def checkout(self) -> AsyncIterator[BrowserContext]:
        """Borrow an isolated browser context; always closed on exit."""
        async with self._semaphore:
            browser = await self._ensure_browser()
            try:
                context = await browser.new_context(user_agent=self.user_agent, **self.context_options)
            except PlaywrightError as exc:
                raise RenderError(f"Browser context failed: {exc}") from exc
            try:
                context.set_default_timeout(self.timeout_ms)
                await context.route("**/*", self._route)
                yield context
            finally:
                try:
                    await context.close()
                except PlaywrightError as exc:
                    logger.debug("Context close failed", error=str(exc))

    async def render(self, url: str) -> RenderedPage:
        """Navigate to url, wait for the network to settle and return the DOM snapshot."""
        start = time.perf_counter()
        async with self.checkout() as context:
            try:
                page = await context.new_page()
                response = await page.goto(url, wait_until="networkidle", timeout=self.timeout_ms)
                if self.settle_ms:
                    await page.wait_for_timeout(self.settle_ms)
                html = await page.content()
                final_url = page.url
            except PlaywrightError as exc:
                raise RenderError(f"Render failed for {url}: {exc}") from exc

        self.renders += 1
        return RenderedPage(
            final_url=final_url,
            status_code=response.status if response else 200,
            html=html,
            elapsed_ms=(time.perf_counter() - start) * 1000,
        )

    def rescope(self, origin: str) -> None:
        """Bind credentials and scoped headers to a new origin for later contexts."""
        self.scope_origin = origin
        credentials = self.context_options.get("http_credentials")
        if credentials is not None:
            self.context_options = {**self.context_options, "http_credentials": {**credentials, "origin": origin}}

    async def _route(self, route: Route) -> None:
        request = route.request
        if request.resource_type in self.BLOCKED_RESOURCE_TYPES:
            await route.abort()
            return
        if self.scoped_headers and self.scope_origin:
            normalized = URLNormalizer.try_normalize(request.url)
            if normalized and URLNormalizer.origin(normalized) == self.scope_origin:
                await route.continue_(headers={**request.headers, **self.scoped_headers})
                return
        await route.continue_()

    async def close(self) -> None:
        if self._browser is not None:
            try:
                await self._browser.close()
            except PlaywrightError as exc:
                logger.debug("Browser close failed", error=str(exc))
            self._browser = None
        await self._stop_playwright()

    async def _stop_playwright(self) -> None:
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
