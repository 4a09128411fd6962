"""
Tests for link and image validation.
"""

import asyncio
import time
from contextlib import asynccontextmanager

import httpx
import pytest

from conftest import FakeSite
from linkscan.engines.base import Outcome
from linkscan.engines.crawler.politeness import PolitenessScheduler, RequestGate
from linkscan.engines.validator.engine import LinkValidator


def validator_for(client: httpx.AsyncClient, **kwargs) -> LinkValidator:
    return LinkValidator(client, timeout=1.0, max_redirects=3, **kwargs)


class TestClassification:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,outcome", [
        (200, Outcome.OK),
        (204, Outcome.OK),
        (401, Outcome.BLOCKED),
        (403, Outcome.BLOCKED),
        (429, Outcome.BLOCKED),
        (404, Outcome.BROKEN),
        (410, Outcome.BROKEN),
        (500, Outcome.BROKEN),
        (503, Outcome.BROKEN),
    ])
    async def test_status_codes(self, status, outcome):
        site = FakeSite({"https://site.test/x": (status, "")})
        async with httpx.AsyncClient(transport=site.transport) as client:
            result = await validator_for(client).validate("https://site.test/x")
        assert result.outcome is outcome
        assert result.status_code == status
        assert result.method == "HEAD"

    @pytest.mark.asyncio
    async def test_follows_redirect_to_ok(self):
        site = FakeSite({
            "https://site.test/old": (301, "", {"location": "/new"}),
            "https://site.test/new": (200, ""),
        })
        async with httpx.AsyncClient(transport=site.transport) as client:
            result = await validator_for(client).validate("https://site.test/old")
        assert result.outcome is Outcome.OK
        assert result.final_url == "https://site.test/new"

    @pytest.mark.asyncio
    async def test_redirect_loop(self):
        site = FakeSite({
            "https://site.test/a": (302, "", {"location": "/b"}),
            "https://site.test/b": (302, "", {"location": "/a"}),
        })
        async with httpx.AsyncClient(transport=site.transport) as client:
            result = await validator_for(client).validate("https://site.test/a")
        assert result.outcome is Outcome.REDIRECTED
        assert result.error == "Redirect loop"

    @pytest.mark.asyncio
    async def test_redirect_cap(self):
        routes = {
            f"https://site.test/hop{i}": (302, "", {"location": f"/hop{i + 1}"})
            for i in range(10)
        }
        site = FakeSite(routes)
        async with httpx.AsyncClient(transport=site.transport) as client:
            result = await validator_for(client).validate("https://site.test/hop0")
        assert result.outcome is Outcome.REDIRECTED
        assert result.error == "Too many redirects"
        # initial request plus max_redirects hops
        assert len(site.requests) == 4

    @pytest.mark.asyncio
    async def test_connect_failure_is_timeout(self):
        def refuse(request):
            raise httpx.ConnectError("name or service not known", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(refuse)) as client:
            result = await validator_for(client).validate("https://nowhere.test/")
        assert result.outcome is Outcome.TIMEOUT
        assert result.error


class TestFallbacks:

    @pytest.mark.asyncio
    async def test_head_not_allowed_falls_back_to_ranged_get(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "HEAD":
                return httpx.Response(405)
            assert request.headers["range"] == "bytes=0-1023"
            return httpx.Response(206, content=b"x" * 1024)

        site = FakeSite({"https://site.test/img.png": handler})
        async with httpx.AsyncClient(transport=site.transport) as client:
            result = await validator_for(client).validate("https://site.test/img.png")
        assert result.outcome is Outcome.OK
        assert result.method == "GET"
        assert site.hits("https://site.test/img.png", "GET") == 1

    @pytest.mark.asyncio
    async def test_head_timeout_falls_back_to_get(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "HEAD":
                raise httpx.ReadTimeout("timed out", request=request)
            return httpx.Response(404)

        site = FakeSite({"https://site.test/gone": handler})
        async with httpx.AsyncClient(transport=site.transport) as client:
            result = await validator_for(client).validate("https://site.test/gone")
        assert result.outcome is Outcome.BROKEN
        assert result.method == "GET"

    @pytest.mark.asyncio
    async def test_range_not_satisfiable_counts_as_ok(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(501 if request.method == "HEAD" else 416)

        site = FakeSite({"https://site.test/empty.txt": handler})
        async with httpx.AsyncClient(transport=site.transport) as client:
            result = await validator_for(client).validate("https://site.test/empty.txt")
        assert result.outcome is Outcome.OK
        assert result.status_code == 416


class TestPolicyAndMemo:

    @pytest.mark.asyncio
    async def test_robots_disallow_is_blocked_without_request(self):
        site = FakeSite({"https://site.test/private/x": (200, "")})

        async def is_allowed(url: str) -> bool:
            return "/private/" not in url

        async with httpx.AsyncClient(transport=site.transport) as client:
            result = await validator_for(client, is_allowed=is_allowed).validate("https://site.test/private/x")
        assert result.outcome is Outcome.BLOCKED
        assert not site.requests

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_check(self):
        async def slow(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(0.05)
            return httpx.Response(200)

        site = FakeSite({"https://site.test/logo.png": slow})
        async with httpx.AsyncClient(transport=site.transport) as client:
            validator = validator_for(client)
            results = await asyncio.gather(*[validator.validate("https://site.test/logo.png") for _ in range(5)])

        assert all(r.outcome is Outcome.OK for r in results)
        assert site.hits("https://site.test/logo.png") == 1
        assert validator.checks_performed == 1
        assert validator.cached("https://site.test/logo.png") == results[0]
        assert validator.results() == [results[0]]

    @pytest.mark.asyncio
    async def test_request_slot_taken_per_hop(self):
        site = FakeSite({
            "https://site.test/old": (301, "", {"location": "/new"}),
            "https://site.test/new": (200, ""),
        })
        slots: list[str] = []

        @asynccontextmanager
        async def recording_slot(url: str):
            slots.append(url)
            yield

        async with httpx.AsyncClient(transport=site.transport) as client:
            await validator_for(client, request_slot=recording_slot).validate("https://site.test/old")
        assert slots == ["https://site.test/old", "https://site.test/new"]

    @pytest.mark.asyncio
    async def test_gate_bounds_in_flight_checks(self):
        in_flight = 0
        peak = 0

        async def handler(request: httpx.Request) -> httpx.Response:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.02)
            in_flight -= 1
            return httpx.Response(200)

        routes = {f"https://site.test/{i}": handler for i in range(8)}
        site = FakeSite(routes)
        gate = RequestGate(PolitenessScheduler(delay=0.0), asyncio.Semaphore(2))
        async with httpx.AsyncClient(transport=site.transport) as client:
            validator = validator_for(client, request_slot=gate.slot)
            await asyncio.gather(*[validator.validate(url) for url in routes])
        assert peak <= 2

    @pytest.mark.asyncio
    async def test_slow_host_does_not_starve_other_hosts(self):
        started: dict[str, float] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            started.setdefault(str(request.url), time.monotonic())
            return httpx.Response(200)

        slow_host = [f"https://a.test/{i}" for i in range(4)]
        site = FakeSite({url: handler for url in slow_host + ["https://b.test/x"]})
        gate = RequestGate(PolitenessScheduler(delay=0.5), asyncio.Semaphore(2))
        async with httpx.AsyncClient(transport=site.transport) as client:
            validator = validator_for(client, request_slot=gate.slot)
            begin = time.monotonic()
            await asyncio.gather(*[validator.validate(url) for url in slow_host + ["https://b.test/x"]])

        assert started["https://b.test/x"] - begin < 0.3
        a_times = sorted(started[url] for url in slow_host)
        assert all(later - earlier >= 0.45 for earlier, later in zip(a_times, a_times[1:]))
