"""
Tests for cooperation context validation and credential scoping.
"""

import httpx
import pytest

from linkscan.core.exceptions import InvalidRequest
from linkscan.engines.base import CooperationContext, ScanRequest
from linkscan.engines.cooperation import (
    OriginScopedAuth,
    api_key_headers,
    browser_context_options,
    build_auth,
)


def in_site(url: str) -> bool:
    return url.startswith("https://site.test/")


class TestCooperationContext:

    def test_parses_wire_names(self):
        request = ScanRequest.from_payload({
            "url": "https://site.test/",
            "cooperation": {
                "whitelistIP": True,
                "siteCredentials": {"user": "owner", "pass": "hunter2"},
                "apiKey": "k-123",
            },
        })
        cooperation = request.cooperation
        assert cooperation.whitelist_ip is True
        assert cooperation.site_credentials.user == "owner"
        assert cooperation.site_credentials.password == "hunter2"
        assert cooperation.api_key == "k-123"
        assert cooperation.owner_authorized

    def test_credentials_require_both_fields(self):
        with pytest.raises(InvalidRequest) as exc_info:
            ScanRequest.from_payload({
                "url": "https://site.test/",
                "cooperation": {"siteCredentials": {"user": "owner"}},
            })
        assert exc_info.value.errors

    def test_empty_credentials_become_none(self):
        cooperation = CooperationContext.model_validate({"siteCredentials": {}})
        assert cooperation.site_credentials is None

    def test_whitelist_alone_is_not_owner_authorization(self):
        assert not CooperationContext(whitelist_ip=True).owner_authorized
        assert not CooperationContext(api_key="k").owner_authorized

    def test_invalid_seed_url_fails_fast(self):
        with pytest.raises(InvalidRequest):
            ScanRequest.from_payload({"url": "not a url"})
        with pytest.raises(InvalidRequest):
            ScanRequest.from_payload({"url": "ftp://site.test/"})


class TestOriginScopedAuth:

    @pytest.mark.asyncio
    async def test_headers_only_sent_in_scope(self):
        seen: dict[str, httpx.Headers] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen[request.url.host] = request.headers
            return httpx.Response(200)

        cooperation = CooperationContext.model_validate({
            "siteCredentials": {"user": "owner", "pass": "hunter2"},
            "apiKey": "k-123",
        })
        auth = build_auth(cooperation, in_site, "X-Api-Key")
        assert isinstance(auth, OriginScopedAuth)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler), auth=auth) as client:
            await client.get("https://site.test/page")
            await client.get("https://cdn.other.test/img.png")

        assert seen["site.test"]["authorization"].startswith("Basic ")
        assert seen["site.test"]["x-api-key"] == "k-123"
        assert "authorization" not in seen["cdn.other.test"]
        assert "x-api-key" not in seen["cdn.other.test"]

    def test_no_auth_without_secrets(self):
        assert build_auth(None, in_site, "X-Api-Key") is None
        assert build_auth(CooperationContext(whitelist_ip=True), in_site, "X-Api-Key") is None

    def test_browser_context_options(self):
        cooperation = CooperationContext.model_validate({
            "siteCredentials": {"user": "owner", "pass": "hunter2"},
            "apiKey": "k-123",
        })
        options = browser_context_options(cooperation, "https://site.test")
        assert options["http_credentials"] == {
            "username": "owner",
            "password": "hunter2",
            "origin": "https://site.test",
        }
        assert api_key_headers(cooperation, "X-Api-Key") == {"X-Api-Key": "k-123"}
        assert browser_context_options(None, "https://site.test") == {}

    @pytest.mark.asyncio
    async def test_redirect_off_scope_drops_credentials(self):
        seen: dict[str, httpx.Headers] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen[str(request.url)] = request.headers
            if request.url.host == "site.test":
                return httpx.Response(302, headers={"location": "https://other.test/landing"})
            return httpx.Response(200)

        cooperation = CooperationContext.model_validate({
            "siteCredentials": {"user": "owner", "pass": "hunter2"},
            "apiKey": "k-123",
        })
        auth = build_auth(cooperation, in_site, "X-Api-Key")
        async with httpx.AsyncClient(
            transport=httpx.MockTransport(handler), auth=auth, event_hooks=auth.event_hooks(),
        ) as client:
            response = await client.get("https://site.test/go", follow_redirects=True)

        assert response.status_code == 200
        assert seen["https://site.test/go"]["x-api-key"] == "k-123"
        landing = seen["https://other.test/landing"]
        assert "x-api-key" not in landing
        assert "authorization" not in landing
