"""
Cooperation context plumbing: turns owner-supplied credentials into outbound
request decoration for both fetch paths.

Credentials are only ever sent to origins inside the scan's scope.
"""

from __future__ import annotations

from typing import Any, Callable, Generator

import httpx

from linkscan.engines.base import CooperationContext


class OriginScopedAuth(httpx.Auth):
    """httpx auth that attaches basic auth and the API key to in-scope requests only."""

    def __init__(
        self,
        cooperation: CooperationContext,
        in_scope: Callable[[str], bool],
        api_key_header: str = "X-Api-Key",
    ):
        self.cooperation = cooperation
        self.in_scope = in_scope
        self.api_key_header = api_key_header
        creds = cooperation.site_credentials
        self._basic = httpx.BasicAuth(creds.user, creds.password) if creds else None

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        if not self.in_scope(str(request.url)):
            yield request
            return

        if self.cooperation.api_key:
            request.headers[self.api_key_header] = self.cooperation.api_key
        if self._basic is not None:
            yield from self._basic.auth_flow(request)
        else:
            yield request

    async def strip_out_of_scope(self, request: httpx.Request) -> None:
        """
        Request event hook. auth_flow only sees the first request of a send;
        httpx copies headers onto redirect hops, so each hop is re-checked here.
        """
        if self.in_scope(str(request.url)):
            return
        request.headers.pop(self.api_key_header, None)
        request.headers.pop("Authorization", None)

    def event_hooks(self) -> dict[str, list]:
        return {"request": [self.strip_out_of_scope]}


def build_auth(
    cooperation: CooperationContext | None,
    in_scope: Callable[[str], bool],
    api_key_header: str,
) -> OriginScopedAuth | None:
    if cooperation is None or (cooperation.site_credentials is None and cooperation.api_key is None):
        return None
    return OriginScopedAuth(cooperation, in_scope, api_key_header)


def browser_context_options(cooperation: CooperationContext | None, origin: str) -> dict[str, Any]:
    """Keyword arguments for Playwright's browser.new_context() on the rendered path."""
    options: dict[str, Any] = {}
    if cooperation is None:
        return options

    creds = cooperation.site_credentials
    if creds is not None:
        options["http_credentials"] = {
            "username": creds.user,
            "password": creds.password,
            "origin": origin,
        }
    return options


def api_key_headers(cooperation: CooperationContext | None, api_key_header: str) -> dict[str, str]:
    """Extra headers for in-scope requests on the rendered path."""
    if cooperation is None or not cooperation.api_key:
        return {}
    return {api_key_header: cooperation.api_key}
