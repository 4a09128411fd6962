"""
Type contracts shared by every scan engine component.

Design principles:
- Requests and results are immutable pydantic models
- Serialized documents use camelCase keys; Python code uses snake_case
- The coordinator is the only writer of a scan's aggregate state
"""

from __future__ import annotations

import time
from datetime import datetime
from enum import Enum
from urllib.parse import urlparse

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from linkscan.core.exceptions import InvalidRequest

logger = structlog.get_logger(__name__)


# ─────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────

class Outcome(str, Enum):
    OK = "ok"
    BROKEN = "broken"             # 4xx/5xx
    REDIRECTED = "redirected"     # redirect cap exceeded or loop
    TIMEOUT = "timeout"           # timeout, DNS or connect failure
    BLOCKED = "blocked"           # robots or auth rejection
    UNKNOWN = "unknown"


PROBLEM_OUTCOMES = frozenset({Outcome.BROKEN, Outcome.REDIRECTED, Outcome.TIMEOUT, Outcome.UNKNOWN})


class ReferenceKind(str, Enum):
    LINK = "link"
    IMAGE = "image"


class FetchStrategy(str, Enum):
    STATIC = "static"
    RENDERED = "rendered"
    NONE = "none"                 # page was never fetched


class TruncationReason(str, Enum):
    PAGE_LIMIT = "page_limit"
    DEPTH_LIMIT = "depth_limit"
    TIME_LIMIT = "time_limit"
    CANCELLED = "cancelled"


class SkipReason(str, Enum):
    ROBOTS = "robots"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ─────────────────────────────────────────────
# Request side
# ─────────────────────────────────────────────

class SiteCredentials(CamelModel):
    """Basic-auth credentials for the scanned site. Both fields or neither."""
    user: str | None = None
    password: str | None = Field(default=None, alias="pass")

    @model_validator(mode="after")
    def check_pair(self) -> SiteCredentials:
        if bool(self.user) != bool(self.password):
            raise ValueError("siteCredentials requires both 'user' and 'pass' or neither")
        return self

    @property
    def is_empty(self) -> bool:
        return not self.user


class CooperationContext(CamelModel):
    """
    Owner-supplied authorization for privileged crawls.

    Lives only for the duration of one scan; never stored.
    """
    whitelist_ip: bool = Field(default=False, alias="whitelistIP")
    site_credentials: SiteCredentials | None = None
    api_key: str | None = None

    @field_validator("site_credentials")
    @classmethod
    def drop_empty_credentials(cls, v: SiteCredentials | None) -> SiteCredentials | None:
        if v is not None and v.is_empty:
            return None
        return v

    @field_validator("api_key")
    @classmethod
    def drop_blank_key(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            return None
        return v

    @property
    def owner_authorized(self) -> bool:
        return self.whitelist_ip and (self.site_credentials is not None or self.api_key is not None)


class ScanConfig(CamelModel):
    """Per-scan bounds. Unset values fall back to engine settings."""
    max_depth: int | None = Field(default=None, ge=0)
    max_pages: int | None = Field(default=None, ge=1)
    same_origin_only: bool = True
    max_duration_seconds: float | None = Field(default=None, gt=0)
    concurrency: int | None = Field(default=None, ge=1, le=64)
    politeness_delay: float | None = Field(default=None, ge=0)
    render_enabled: bool | None = None
    seed_from_sitemap: bool | None = None


class ScanRequest(CamelModel):
    url: str
    cooperation: CooperationContext | None = None
    config: ScanConfig = Field(default_factory=ScanConfig)

    @field_validator("url")
    @classmethod
    def validate_seed(cls, v: str) -> str:
        v = v.strip()
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise ValueError("url must be an absolute http(s) URL")
        return v

    @classmethod
    def from_payload(cls, payload: dict) -> ScanRequest:
        """Build a request from an inbound document, failing fast with InvalidRequest."""
        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            errors = exc.errors(include_url=False, include_context=False)
            logger.info("Rejected scan request", error_count=len(errors))
            raise InvalidRequest("Invalid scan request", errors=errors) from exc


# ─────────────────────────────────────────────
# Crawl records
# ─────────────────────────────────────────────

class FrontierEntry(CamelModel):
    url: str
    depth: int = 0
    referrer: str | None = None


class ResourceReference(CamelModel):
    source_url: str
    target_url: str
    kind: ReferenceKind
    context: str = ""


class PageRecord(CamelModel):
    """One visited (or skipped) page. Created once per unique URL."""
    url: str
    final_url: str | None = None
    depth: int = 0
    referrer: str | None = None
    status_code: int | None = None
    strategy_used: FetchStrategy = FetchStrategy.NONE
    references: list[ResourceReference] = Field(default_factory=list)
    fetched_at: float = Field(default_factory=time.time)
    fetch_duration_ms: float = 0.0
    error: str | None = None
    render_error: str | None = None
    skipped_reason: SkipReason | None = None


class ValidationResult(CamelModel):
    url: str
    outcome: Outcome
    status_code: int | None = None
    final_url: str | None = None
    method: str = "none"
    error: str | None = None


# ─────────────────────────────────────────────
# Report
# ─────────────────────────────────────────────

class ProblemResource(CamelModel):
    """A link or image target that did not check out."""
    url: str
    kind: ReferenceKind
    outcome: Outcome
    status_code: int | None = None
    error: str | None = None
    source_pages: list[str] = Field(default_factory=list)


class ScanSummary(CamelModel):
    total_pages: int = 0
    pages_skipped: int = 0
    total_links_checked: int = 0
    broken_count: int = 0
    ok_count: int = 0
    by_outcome: dict[str, int] = Field(default_factory=dict)


class ScanReport(CamelModel):
    scanned_url: str
    started_at: datetime
    finished_at: datetime
    truncated: bool = False
    truncation_reason: TruncationReason | None = None
    aborted: bool = False
    abort_reason: str | None = None
    pages: list[PageRecord] = Field(default_factory=list)
    skipped_pages: list[PageRecord] = Field(default_factory=list)
    validations: list[ValidationResult] = Field(default_factory=list)
    broken_links: list[ProblemResource] = Field(default_factory=list)
    missing_images: list[ProblemResource] = Field(default_factory=list)
    unvalidated: list[str] = Field(default_factory=list)
    summary: ScanSummary = Field(default_factory=ScanSummary)

    def to_document(self) -> dict:
        """JSON-compatible document with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)
