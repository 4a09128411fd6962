"""
Sitemap discovery for optional frontier seeding.
"""

from __future__ import annotations

import httpx
import structlog
from bs4 import BeautifulSoup

from linkscan.engines.crawler.frontier import URLNormalizer

logger = structlog.get_logger(__name__)


class SitemapParser:
    """Discover and parse XML sitemaps."""

    CANDIDATE_PATHS = ("/sitemap.xml", "/sitemap_index.xml")
    MAX_NESTING = 3

    def __init__(self, http_client: httpx.AsyncClient, timeout: float = 15.0, max_urls: int = 1000):
        self.http_client = http_client
        self.timeout = timeout
        self.max_urls = max_urls

    async def discover(self, root_url: str) -> list[str]:
        """Page URLs listed in the root origin's sitemaps, in document order."""
        origin = URLNormalizer.origin(root_url)
        urls: list[str] = []
        seen: set[str] = set()

        for path in self.CANDIDATE_PATHS:
            for url in await self._fetch_sitemap(f"{origin}{path}", depth=0):
                if url not in seen:
                    seen.add(url)
                    urls.append(url)
                if len(urls) >= self.max_urls:
                    return urls

        logger.info("Sitemap URLs discovered", origin=origin, count=len(urls))
        return urls

    async def _fetch_sitemap(self, url: str, depth: int) -> list[str]:
        """Fetch and parse a single sitemap."""
        if depth > self.MAX_NESTING:
            return []
        try:
            response = await self.http_client.get(url, timeout=self.timeout, follow_redirects=True)
        except httpx.HTTPError as e:
            logger.debug("Sitemap fetch failed", url=url, error=str(e))
            return []
        if response.status_code != 200:
            return []

        content = response.text
        urls: list[str] = []

        # Sitemap index
        if "<sitemapindex" in content:
            soup = BeautifulSoup(content, "xml")
            for loc in soup.find_all("loc"):
                urls.extend(await self._fetch_sitemap(loc.get_text(strip=True), depth + 1))

        # URL sitemap
        elif "<urlset" in content:
            soup = BeautifulSoup(content, "xml")
            for loc in soup.find_all("loc"):
                normalized = URLNormalizer.try_normalize(loc.get_text(strip=True))
                if normalized:
                    urls.append(normalized)

        return urls
