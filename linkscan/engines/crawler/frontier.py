"""
URL normalization and the breadth-first crawl frontier.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from urllib.parse import urljoin, urlsplit, urlunsplit

import structlog

from linkscan.core.exceptions import InvalidURLError
from linkscan.engines.base import FrontierEntry

logger = structlog.get_logger(__name__)


# ─────────────────────────────────────────────
# URL Utilities
# ─────────────────────────────────────────────

class URLNormalizer:
    """Normalizes URLs for deduplication and comparison."""

    DEFAULT_PORTS = {"http": 80, "https": 443}

    @classmethod
    def normalize(cls, url: str, base_url: str | None = None) -> str:
        """
        Resolve url against base_url and return its canonical form.

        Raises InvalidURLError if the result is not an absolute http(s) URL.
        """
        if url is None or not url.strip():
            raise InvalidURLError("Empty URL")

        try:
            resolved = urljoin(base_url, url.strip()) if base_url else url.strip()
            parts = urlsplit(resolved)
            port = parts.port
        except ValueError as exc:
            raise InvalidURLError(f"Unparseable URL {url!r}: {exc}") from exc

        scheme = parts.scheme.lower()
        if scheme not in cls.DEFAULT_PORTS:
            raise InvalidURLError(f"Unsupported scheme in {url!r}")

        host = (parts.hostname or "").lower()
        if not host:
            raise InvalidURLError(f"Missing host in {url!r}")
        if ":" in host:
            host = f"[{host}]"  # IPv6 literal

        netloc = host
        if port is not None and port != cls.DEFAULT_PORTS[scheme]:
            netloc = f"{host}:{port}"
        if parts.username:
            userinfo = parts.username + (f":{parts.password}" if parts.password else "")
            netloc = f"{userinfo}@{netloc}"

        path = parts.path or "/"
        return urlunsplit((scheme, netloc, path, parts.query, ""))

    @classmethod
    def try_normalize(cls, url: str, base_url: str | None = None) -> str | None:
        try:
            return cls.normalize(url, base_url)
        except InvalidURLError:
            return None

    @classmethod
    def origin(cls, url: str) -> str:
        """scheme://host[:port] of an already-normalized URL."""
        parts = urlsplit(url)
        host = parts.hostname or ""
        if ":" in host:
            host = f"[{host}]"
        port = parts.port
        if port is not None and port != cls.DEFAULT_PORTS.get(parts.scheme):
            return f"{parts.scheme}://{host}:{port}"
        return f"{parts.scheme}://{host}"

    @classmethod
    def host(cls, url: str) -> str:
        return (urlsplit(url).hostname or "").lower()

    @classmethod
    def is_same_domain(cls, url: str, root_domain: str) -> bool:
        """Check if URL belongs to the root domain (including subdomains)."""
        host = cls.host(url)
        return host == root_domain or host.endswith(f".{root_domain}")

    @classmethod
    def site_host(cls, url: str) -> str:
        """Host with a leading www. removed."""
        host = cls.host(url)
        return host[4:] if host.startswith("www.") else host

    @classmethod
    def in_scope(cls, url: str, root_url: str, same_origin_only: bool = True) -> bool:
        """Whether url may be crawled (not just validated) in a scan seeded at root_url."""
        if same_origin_only:
            return cls.origin(url) == cls.origin(root_url)
        return cls.is_same_domain(url, cls.site_host(root_url))


@dataclass
class CrawlScope:
    """
    The in-scope test shared by the crawler, the robots gate and the credential
    plumbing. Called like a predicate.
    """
    root_url: str
    same_origin_only: bool = True

    def __call__(self, url: str) -> bool:
        return URLNormalizer.in_scope(url, self.root_url, self.same_origin_only)

    @property
    def origin(self) -> str:
        return URLNormalizer.origin(self.root_url)

    def follow_seed_redirect(self, final_url: str) -> bool:
        """
        Re-root the scope at final_url when the seed redirected elsewhere on the
        same site (http to https, bare host to www.). Returns whether it moved.
        """
        if URLNormalizer.origin(final_url) == self.origin:
            return False
        if URLNormalizer.site_host(final_url) != URLNormalizer.site_host(self.root_url):
            logger.warning("Seed redirected off site, scope unchanged", seed=self.root_url, final_url=final_url)
            return False
        logger.info("Seed redirected, scope moved", seed=self.root_url, final_url=final_url)
        self.root_url = final_url
        return True


# ─────────────────────────────────────────────
# Frontier
# ─────────────────────────────────────────────

class Frontier:
    """
    FIFO queue of pages to visit plus the set of every URL ever accepted.

    A canonical URL is accepted at most once per scan; re-discovery is a no-op.
    """

    def __init__(self, max_depth: int):
        self.max_depth = max_depth
        self._queue: deque[FrontierEntry] = deque()
        self._seen: set[str] = set()
        self.visited: list[str] = []
        self.depth_rejections = 0

    def enqueue(self, entry: FrontierEntry) -> bool:
        """Add entry if its URL is new and within max_depth. Returns whether it was accepted."""
        if entry.url in self._seen:
            return False
        if entry.depth > self.max_depth:
            self.depth_rejections += 1
            logger.debug("Depth limit reached", url=entry.url, depth=entry.depth)
            return False
        self._seen.add(entry.url)
        self._queue.append(entry)
        return True

    def dequeue(self) -> FrontierEntry | None:
        if not self._queue:
            return None
        entry = self._queue.popleft()
        self.visited.append(entry.url)
        return entry

    def mark_seen(self, url: str) -> None:
        """Record url as already accepted without queueing it."""
        self._seen.add(url)

    def pending(self) -> list[FrontierEntry]:
        return list(self._queue)

    def __len__(self) -> int:
        return len(self._queue)

    def __contains__(self, url: str) -> bool:
        return url in self._seen

    @property
    def is_empty(self) -> bool:
        return not self._queue
