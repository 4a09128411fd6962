"""
Link Validator - cheap existence checks for link and image targets.

HEAD first; ranged GET when HEAD is unsupported or times out. Results are
memoized per target for the life of a scan, first writer wins.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

import httpx
import structlog

from linkscan.engines.base import Outcome, ValidationResult
from linkscan.engines.crawler.politeness import RequestSlot, unthrottled

logger = structlog.get_logger(__name__)


class RedirectLimitExceeded(Exception):
    def __init__(self, url: str, status_code: int, reason: str):
        super().__init__(f"{reason} at {url}")
        self.url = url
        self.status_code = status_code
        self.reason = reason


class LinkValidator:
    """
    Classifies each target URL into an Outcome.

    2xx -> ok, redirect cap/loop -> redirected, 401/403/407/429 -> blocked,
    other 4xx/5xx -> broken, timeout/DNS/connect -> timeout, else unknown.
    """

    HEAD_UNSUPPORTED = frozenset({405, 501})
    BLOCKED_STATUSES = frozenset({401, 403, 407, 429})
    REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        is_allowed: Callable[[str], Awaitable[bool]] | None = None,
        request_slot: RequestSlot | None = None,
        timeout: float = 10.0,
        max_redirects: int = 5,
        range_bytes: int = 1024,
    ):
        self.http_client = http_client
        self.is_allowed = is_allowed
        self.request_slot = request_slot or unthrottled
        self.timeout = timeout
        self.max_redirects = max_redirects
        self.range_bytes = range_bytes

        self._memo: dict[str, asyncio.Future[ValidationResult]] = {}
        self.checks_performed = 0

    def cached(self, url: str) -> ValidationResult | None:
        future = self._memo.get(url)
        if future is not None and future.done() and not future.cancelled():
            return future.result()
        return None

    def results(self) -> list[ValidationResult]:
        return [r for r in (self.cached(url) for url in self._memo) if r is not None]

    async def validate(self, url: str) -> ValidationResult:
        """Validate url, or return the in-flight/finished result of an earlier call."""
        future = self._memo.get(url)
        if future is not None:
            return await asyncio.shield(future)

        future = asyncio.get_running_loop().create_future()
        self._memo[url] = future
        try:
            result = await self._check_safely(url)
        except BaseException:
            future.cancel()
            del self._memo[url]
            raise
        future.set_result(result)
        return result

    async def _check_safely(self, url: str) -> ValidationResult:
        try:
            return await self._check(url)
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
            logger.warning("Unclassifiable validation failure", url=url, error=str(e))
            return ValidationResult(url=url, outcome=Outcome.UNKNOWN, error=str(e) or type(e).__name__)

    async def _check(self, url: str) -> ValidationResult:
        self.checks_performed += 1

        if self.is_allowed is not None and not await self.is_allowed(url):
            return ValidationResult(url=url, outcome=Outcome.BLOCKED, error="Disallowed by robots.txt")

        result = await self._head(url)
        if result is None:
            result = await self._ranged_get(url)

        logger.debug("Validated", url=url, outcome=result.outcome.value, status=result.status_code)
        return result

    async def _head(self, url: str) -> ValidationResult | None:
        """HEAD check. Returns None when the caller should fall back to GET."""
        try:
            response, final_url = await self._follow(url, "HEAD")
        except httpx.TimeoutException:
            logger.debug("HEAD timed out, retrying with GET", url=url)
            return None
        except RedirectLimitExceeded as e:
            return self._redirected(url, e, "HEAD")
        except httpx.HTTPError as e:
            return self._network_failure(url, e, "HEAD")

        if response.status_code in self.HEAD_UNSUPPORTED:
            return None
        return self.classify(url, response.status_code, final_url, "HEAD")

    async def _ranged_get(self, url: str) -> ValidationResult:
        headers = {"Range": f"bytes=0-{self.range_bytes - 1}"}
        try:
            response, final_url = await self._follow(url, "GET", headers=headers)
        except RedirectLimitExceeded as e:
            return self._redirected(url, e, "GET")
        except httpx.HTTPError as e:
            return self._network_failure(url, e, "GET")

        if response.status_code == 416:
            # Range not satisfiable still proves the resource exists
            return ValidationResult(url=url, outcome=Outcome.OK, status_code=416, final_url=final_url, method="GET")
        return self.classify(url, response.status_code, final_url, "GET")

    async def _follow(
        self,
        url: str,
        method: str,
        headers: dict[str, str] | None = None,
    ) -> tuple[httpx.Response, str]:
        """Issue method against url, following redirects by hand so loops and caps are visible."""
        current = url
        seen = {url}
        for _ in range(self.max_redirects + 1):
            request = self.http_client.build_request(method, current, headers=headers, timeout=self.timeout)
            async with self.request_slot(current):
                # Status and headers are all we need; never read the body
                response = await self.http_client.send(request, stream=True)
                await response.aclose()

            if response.status_code not in self.REDIRECT_STATUSES or "location" not in response.headers:
                return response, current

            next_url = str(response.url.join(response.headers["location"]))
            if next_url in seen:
                raise RedirectLimitExceeded(current, response.status_code, "Redirect loop")
            seen.add(next_url)
            current = next_url
            if response.status_code == 303:
                method = "GET"

        raise RedirectLimitExceeded(current, response.status_code, "Too many redirects")

    def classify(self, url: str, status_code: int, final_url: str, method: str) -> ValidationResult:
        if 200 <= status_code < 300:
            outcome = Outcome.OK
        elif status_code in self.BLOCKED_STATUSES:
            outcome = Outcome.BLOCKED
        elif 400 <= status_code < 600:
            outcome = Outcome.BROKEN
        else:
            outcome = Outcome.UNKNOWN
        return ValidationResult(
            url=url,
            outcome=outcome,
            status_code=status_code,
            final_url=final_url if final_url != url else None,
            method=method,
        )

    @staticmethod
    def _redirected(url: str, exc: RedirectLimitExceeded, method: str) -> ValidationResult:
        return ValidationResult(
            url=url,
            outcome=Outcome.REDIRECTED,
            status_code=exc.status_code,
            final_url=exc.url,
            method=method,
            error=exc.reason,
        )

    @staticmethod
    def _network_failure(url: str, exc: httpx.HTTPError, method: str) -> ValidationResult:
        if isinstance(exc, (httpx.TimeoutException, httpx.ConnectError)):
            outcome = Outcome.TIMEOUT
        else:
            outcome = Outcome.UNKNOWN
        logger.debug("Validation request failed", url=url, error=str(exc), error_type=type(exc).__name__)
        return ValidationResult(url=url, outcome=outcome, method=method, error=str(exc) or type(exc).__name__)
