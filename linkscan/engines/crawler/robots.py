"""
Robots Policy Gate - fetch, cache and enforce robots.txt per origin.
"""

from __future__ import annotations

import asyncio
from typing import Callable
from urllib.robotparser import RobotFileParser

import httpx
import structlog

from linkscan.engines.base import CooperationContext
from linkscan.engines.crawler.frontier import URLNormalizer

logger = structlog.get_logger(__name__)


class RobotsGate:
    """
    Parse and enforce robots.txt rules.

    Each origin's robots.txt is fetched once per scan; concurrent callers for the
    same origin await the same fetch. A missing or unreachable robots.txt allows all.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        in_scope: Callable[[str], bool] | None = None,
        timeout: float = 10.0,
    ):
        self.http_client = http_client
        self.in_scope = in_scope or (lambda url: False)
        self.timeout = timeout
        self._parsers: dict[str, asyncio.Future[RobotFileParser | None]] = {}
        self.authorized_origins: set[str] = set()

    async def is_allowed(
        self,
        url: str,
        user_agent: str,
        cooperation: CooperationContext | None = None,
    ) -> bool:
        """Check if URL may be fetched."""
        origin = URLNormalizer.origin(url)
        if self._authorize(origin, url, cooperation):
            return True

        parser = await self._get_parser(origin)
        if parser is None:
            return True  # No robots.txt = allow all
        allowed = parser.can_fetch(user_agent, url)
        if not allowed:
            logger.debug("Blocked by robots.txt", url=url)
        return allowed

    async def crawl_delay(self, origin: str, user_agent: str) -> float | None:
        """Crawl-delay directive for origin, if any and not owner-authorized."""
        if origin in self.authorized_origins:
            return None
        parser = await self._get_parser(origin)
        if parser is None:
            return None
        delay = parser.crawl_delay(user_agent)
        return float(delay) if delay else None

    def _authorize(self, origin: str, url: str, cooperation: CooperationContext | None) -> bool:
        if origin in self.authorized_origins:
            return True
        if cooperation is None or not cooperation.owner_authorized:
            return False
        # Owner authorization only covers the site being scanned
        if not self.in_scope(url):
            return False
        self.authorized_origins.add(origin)
        logger.info("Owner authorization recorded", origin=origin)
        return True

    async def _get_parser(self, origin: str) -> RobotFileParser | None:
        future = self._parsers.get(origin)
        if future is None:
            future = asyncio.get_running_loop().create_future()
            self._parsers[origin] = future
            try:
                future.set_result(await self._fetch_and_parse(origin))
            except BaseException:
                # Let a later caller retry instead of awaiting a dead future
                del self._parsers[origin]
                future.cancel()
                raise
        return await asyncio.shield(future)

    async def _fetch_and_parse(self, origin: str) -> RobotFileParser | None:
        """Fetch robots.txt for an origin. Returns None when there is no usable policy."""
        robots_url = f"{origin}/robots.txt"
        try:
            response = await self.http_client.get(robots_url, timeout=self.timeout, follow_redirects=True)
        except httpx.HTTPError as e:
            logger.debug("Could not fetch robots.txt", origin=origin, error=str(e))
            return None

        if not response.is_success:
            logger.debug("No robots.txt", origin=origin, status=response.status_code)
            return None

        parser = RobotFileParser(robots_url)
        parser.parse(response.text.splitlines())
        return parser
