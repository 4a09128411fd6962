"""
Fetch Strategy Selector - plain HTTP first, headless render when the static
response looks like a client-rendered shell or a JS challenge.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, replace
from typing import ClassVar

import httpx
import structlog
from bs4 import BeautifulSoup

from linkscan.core.exceptions import FetchError, RenderError
from linkscan.engines.base import FetchStrategy
from linkscan.engines.crawler.politeness import RequestSlot, unthrottled
from linkscan.engines.fetch.browser_pool import BrowserPool

logger = structlog.get_logger(__name__)


# ─────────────────────────────────────────────
# Fetch results
# ─────────────────────────────────────────────

@dataclass(frozen=True)
class FetchResult:
    url: str
    final_url: str
    status_code: int
    body: str
    content_type: str = ""
    elapsed_ms: float = 0.0
    started_at: float = 0.0             # wall clock when the request went out
    render_error: str | None = None

    strategy: ClassVar[FetchStrategy]

    @property
    def is_html(self) -> bool:
        return "html" in self.content_type.lower()


@dataclass(frozen=True)
class StaticFetch(FetchResult):
    strategy: ClassVar[FetchStrategy] = FetchStrategy.STATIC


@dataclass(frozen=True)
class RenderedFetch(FetchResult):
    strategy: ClassVar[FetchStrategy] = FetchStrategy.RENDERED


# ─────────────────────────────────────────────
# Selector
# ─────────────────────────────────────────────

class FetchStrategySelector:
    """
    Fetches pages via HTTP or Playwright (JS rendering).
    Decides rendering mode from the static response.
    """

    SPA_ROOT_MARKERS = (
        'id="root"',
        'id="app"',
        'id="__next"',
        'id="__nuxt"',
        "ng-version",
        "ng-app",
        "data-reactroot",
        "data-server-rendered",
    )

    CHALLENGE_MARKERS = (
        "cf-browser-verification",
        "challenge-platform",
        "Just a moment...",
        "Please enable JavaScript",
        "You need to enable JavaScript to run this app",
    )

    # Visible text below this many characters counts as a near-empty <body>
    THIN_BODY_CHARS = 200

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        browser_pool: BrowserPool | None = None,
        timeout: float = 10.0,
        min_content_bytes: int = 512,
        request_slot: RequestSlot | None = None,
    ):
        self.http_client = http_client
        self.browser_pool = browser_pool
        self.timeout = timeout
        self.min_content_bytes = min_content_bytes
        self.request_slot = request_slot or unthrottled

    async def fetch(self, url: str) -> FetchResult:
        """
        Fetch a page, escalating to a headless render when needed.

        Raises FetchError when the static request itself fails. Render failures
        fall back to the static result. The render is a second request to the
        same host and takes its own request slot.
        """
        async with self.request_slot(url):
            static = await self._fetch_http(url)

        if self.browser_pool is None or not self.needs_rendering(static):
            return static

        logger.debug("JS rendering required", url=url)
        try:
            async with self.request_slot(url):
                rendered = await self.browser_pool.render(url)
        except RenderError as e:
            logger.warning("Render failed, using static result", url=url, error=str(e))
            return replace(static, render_error=str(e))

        return RenderedFetch(
            url=url,
            final_url=rendered.final_url,
            status_code=rendered.status_code,
            body=rendered.html,
            content_type="text/html",
            elapsed_ms=static.elapsed_ms + rendered.elapsed_ms,
            started_at=static.started_at,
        )

    async def _fetch_http(self, url: str) -> StaticFetch:
        """Fetch via plain HTTP using httpx."""
        started_at = time.time()
        start = time.perf_counter()
        try:
            response = await self.http_client.get(url, follow_redirects=True, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise FetchError(url, FetchError.TIMEOUT, str(e)) from e
        except httpx.TooManyRedirects as e:
            raise FetchError(url, FetchError.TOO_MANY_REDIRECTS, str(e)) from e
        except (httpx.ConnectError, httpx.NetworkError) as e:
            raise FetchError(url, FetchError.CONNECT, str(e)) from e
        except httpx.HTTPError as e:
            raise FetchError(url, FetchError.PROTOCOL, str(e)) from e

        return StaticFetch(
            url=url,
            final_url=str(response.url),
            status_code=response.status_code,
            body=response.text,
            content_type=response.headers.get("content-type", ""),
            elapsed_ms=(time.perf_counter() - start) * 1000,
            started_at=started_at,
        )

    def needs_rendering(self, result: FetchResult) -> bool:
        """Heuristically determine if the static response is a client-rendered shell."""
        if not result.is_html:
            return False

        body = result.body or ""
        if self.is_challenge(body):
            return True
        if result.status_code >= 400:
            return False
        if len(body.strip().encode()) < self.min_content_bytes:
            return True
        return self.is_spa_shell(body)

    def is_challenge(self, html: str) -> bool:
        return any(marker in html for marker in self.CHALLENGE_MARKERS)

    def is_spa_shell(self, html: str) -> bool:
        """A known framework root with next to no server-rendered text."""
        if not any(marker in html for marker in self.SPA_ROOT_MARKERS):
            return False
        soup = BeautifulSoup(html, "lxml")
        body = soup.body
        if body is None:
            return True
        for tag in body(["script", "style", "noscript", "template"]):
            tag.decompose()
        text = re.sub(r"\s+", " ", body.get_text(separator=" ")).strip()
        return len(text) < self.THIN_BODY_CHARS
