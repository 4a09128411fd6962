"""
Error taxonomy for the scan engine.

Only InvalidRequest and ResourceExhausted escape run_scan(); everything else is
recorded in the report where it happened.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from linkscan.engines.base import ScanReport


class LinkScanError(Exception):
    """Base class for all engine errors."""


class InvalidRequest(LinkScanError):
    """Bad seed URL or malformed cooperation data. The scan never starts."""

    def __init__(self, message: str, errors: list[dict] | None = None):
        super().__init__(message)
        self.errors = errors or []


class InvalidURLError(InvalidRequest):
    """A URL that cannot be normalized into an absolute http(s) URL."""


class FetchError(LinkScanError):
    """Network-level failure fetching a page or resource."""

    TIMEOUT = "timeout"
    CONNECT = "connect"
    TOO_MANY_REDIRECTS = "too_many_redirects"
    PROTOCOL = "protocol"

    def __init__(self, url: str, kind: str, detail: str = ""):
        super().__init__(f"{kind} fetching {url}: {detail}" if detail else f"{kind} fetching {url}")
        self.url = url
        self.kind = kind
        self.detail = detail


class RenderError(LinkScanError):
    """Headless browser crash or navigation timeout."""


class PolicyBlocked(LinkScanError):
    """robots.txt disallows the URL and no cooperation override applies."""

    def __init__(self, url: str):
        super().__init__(f"robots.txt disallows {url}")
        self.url = url


class ResourceExhausted(LinkScanError):
    """A configured resource ceiling tripped. Carries the partial, aborted report."""

    def __init__(self, message: str, report: ScanReport | None = None):
        super().__init__(message)
        self.report = report
