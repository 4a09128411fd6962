"""
Per-host politeness scheduling.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncContextManager, AsyncIterator, Callable

import structlog

from linkscan.engines.crawler.frontier import URLNormalizer

logger = structlog.get_logger(__name__)

# url -> async context held around one outbound request
RequestSlot = Callable[[str], AsyncContextManager[None]]


@asynccontextmanager
async def unthrottled(url: str) -> AsyncIterator[None]:
    yield


@dataclass
class HostSchedule:
    """Next free request slot for one host."""
    interval: float
    next_slot: float = 0.0


@dataclass
class PolitenessScheduler:
    """
    Spaces consecutive requests to the same host by at least `delay` seconds.

    A caller reserves the next slot synchronously and then sleeps outside of any
    lock, so waiting on one host never holds up another.
    """
    delay: float
    _hosts: dict[str, HostSchedule] = field(default_factory=dict, init=False)

    def set_interval(self, host: str, interval: float) -> None:
        """Raise the spacing for one host (e.g. robots.txt crawl-delay)."""
        schedule = self._schedule(host)
        if interval > schedule.interval:
            logger.info("Respecting crawl-delay", host=host, delay=interval)
            schedule.interval = interval

    def interval_for(self, host: str) -> float:
        return self._schedule(host).interval

    def reserve(self, host: str) -> float:
        """Claim the next slot for host and return how long to wait for it."""
        schedule = self._schedule(host)
        now = time.monotonic()
        slot = max(now, schedule.next_slot)
        schedule.next_slot = slot + schedule.interval
        return slot - now

    async def acquire(self, host: str) -> None:
        wait = self.reserve(host)
        if wait > 0:
            await asyncio.sleep(wait)

    def _schedule(self, host: str) -> HostSchedule:
        schedule = self._hosts.get(host)
        if schedule is None:
            schedule = self._hosts[host] = HostSchedule(interval=self.delay)
        return schedule


class RequestGate:
    """
    Admission for one outbound request: the per-host politeness wait happens
    first, then a shared concurrency slot is held only for the request itself.
    """

    def __init__(self, politeness: PolitenessScheduler, semaphore: asyncio.Semaphore):
        self.politeness = politeness
        self.semaphore = semaphore

    @asynccontextmanager
    async def slot(self, url: str) -> AsyncIterator[None]:
        await self.politeness.acquire(URLNormalizer.host(url))
        async with self.semaphore:
            yield
