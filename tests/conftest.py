"""
Shared fixtures: an in-memory fake site served through httpx.MockTransport
and a stand-in for the headless browser pool.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable

import httpx
import pytest

from linkscan.core.config import Settings
from linkscan.core.exceptions import RenderError
from linkscan.engines.fetch.browser_pool import RenderedPage


def html_page(body: str, title: str = "Test page") -> str:
    """Wrap body in a document large enough not to look like an empty shell."""
    filler = "<p>" + ("Plenty of server-rendered text for the page. " * 20) + "</p>"
    return f"<html><head><title>{title}</title></head><body>{body}{filler}</body></html>"


class FakeSite:
    """
    Route table keyed by absolute URL.

    A route is (status, body), (status, body, headers), or a callable taking the
    httpx.Request and returning an httpx.Response (sync or async).
    Unknown URLs return 404.
    """

    def __init__(self, routes: dict[str, Any] | None = None):
        self.routes: dict[str, Any] = dict(routes or {})
        self.requests: list[httpx.Request] = []

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(str(request.url))
        if route is None:
            return httpx.Response(404, text="not found", headers={"content-type": "text/html"})
        if callable(route):
            response = route(request)
            if asyncio.iscoroutine(response):
                response = await response
            return response
        status, body, *rest = route
        headers = {"content-type": "text/html; charset=utf-8"}
        if rest:
            headers.update(rest[0])
        return httpx.Response(status, text=body, headers=headers)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def hits(self, url: str, method: str | None = None) -> int:
        return sum(
            1 for r in self.requests
            if str(r.url) == url and (method is None or r.method == method)
        )

    def fetched(self, url: str) -> bool:
        return self.hits(url) > 0


class FakeBrowserPool:
    """Records render calls and serves canned DOM snapshots."""

    instances: list[FakeBrowserPool] = []

    def __init__(
        self,
        pages: dict[str, str] | None = None,
        fail: bool = False,
        **options: Any,
    ):
        self.pages = pages or {}
        self.fail = fail
        self.options = options
        self.rendered: list[str] = []
        self.closed = False
        FakeBrowserPool.instances.append(self)

    async def render(self, url: str) -> RenderedPage:
        self.rendered.append(url)
        if self.fail:
            raise RenderError(f"Render failed for {url}: browser crashed")
        return RenderedPage(final_url=url, status_code=200, html=self.pages.get(url, ""), elapsed_ms=1.0)

    def rescope(self, origin: str) -> None:
        self.options["scope_origin"] = origin

    async def close(self) -> None:
        self.closed = True


def browser_pool_factory(pages: dict[str, str] | None = None, fail: bool = False) -> Callable[..., FakeBrowserPool]:
    def factory(**options: Any) -> FakeBrowserPool:
        return FakeBrowserPool(pages=pages, fail=fail, **options)
    return factory


@pytest.fixture
def settings() -> Settings:
    return Settings(
        RENDER_ENABLED=False,
        CRAWLER_POLITENESS_DELAY=0.0,
        CRAWLER_REQUEST_TIMEOUT=2.0,
        CRAWLER_MAX_DURATION_SECONDS=20.0,
        CRAWLER_MAX_CONCURRENCY=4,
        LOG_FORMAT="console",
    )


@pytest.fixture
def fake_site() -> FakeSite:
    return FakeSite()
