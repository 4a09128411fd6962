"""
Report aggregation - the single mutable scan state, owned by the coordinator
and frozen into a ScanReport when the scan terminates.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timezone

import structlog

from linkscan.engines.base import (
    PROBLEM_OUTCOMES,
    Outcome,
    PageRecord,
    ProblemResource,
    ReferenceKind,
    ResourceReference,
    ScanReport,
    ScanSummary,
    TruncationReason,
    ValidationResult,
)

logger = structlog.get_logger(__name__)


class ReportBuilder:
    """Accumulates pages, references and validation results for one scan."""

    def __init__(self, scanned_url: str, started_at: datetime | None = None):
        self.scanned_url = scanned_url
        self.started_at = started_at or datetime.now(timezone.utc)
        self.pages: list[PageRecord] = []
        self.skipped_pages: list[PageRecord] = []
        self.truncation_reason: TruncationReason | None = None
        self.abort_reason: str | None = None

        # target -> kind -> referring pages, in discovery order
        self._sources: dict[str, dict[ReferenceKind, list[str]]] = {}
        self._results: dict[str, ValidationResult] = {}
        self._report: ScanReport | None = None

    @property
    def finalized(self) -> bool:
        return self._report is not None

    def add_page(self, record: PageRecord) -> None:
        self._check_open()
        if record.skipped_reason is not None:
            self.skipped_pages.append(record)
        else:
            self.pages.append(record)

    def add_reference(self, reference: ResourceReference) -> bool:
        """Record a reference. Returns True the first time its target is seen."""
        self._check_open()
        is_new = reference.target_url not in self._sources
        by_kind = self._sources.setdefault(reference.target_url, {})
        sources = by_kind.setdefault(reference.kind, [])
        if reference.source_url not in sources:
            sources.append(reference.source_url)
        return is_new

    def add_validation(self, result: ValidationResult) -> None:
        self._check_open()
        # First writer wins; a later duplicate never changes the count
        self._results.setdefault(result.url, result)

    def has_result(self, url: str) -> bool:
        return url in self._results

    def mark_truncated(self, reason: TruncationReason) -> None:
        if self.truncation_reason is None:
            self.truncation_reason = reason
            logger.info("Scan truncated", reason=reason.value, url=self.scanned_url)

    def mark_aborted(self, reason: str) -> None:
        if self.abort_reason is None:
            self.abort_reason = reason

    def finalize(self, finished_at: datetime | None = None) -> ScanReport:
        """Freeze the accumulated state. Idempotent."""
        if self._report is not None:
            return self._report

        validations = [self._results[url] for url in self._sources if url in self._results]
        unvalidated = [url for url in self._sources if url not in self._results]

        broken_links: list[ProblemResource] = []
        missing_images: list[ProblemResource] = []
        for url, by_kind in self._sources.items():
            result = self._results.get(url)
            if result is None or result.outcome not in PROBLEM_OUTCOMES:
                continue
            for kind, sources in by_kind.items():
                problem = ProblemResource(
                    url=url,
                    kind=kind,
                    outcome=result.outcome,
                    status_code=result.status_code,
                    error=result.error,
                    source_pages=list(sources),
                )
                (missing_images if kind is ReferenceKind.IMAGE else broken_links).append(problem)

        counts = Counter(result.outcome for result in validations)
        summary = ScanSummary(
            total_pages=len(self.pages),
            pages_skipped=len(self.skipped_pages),
            total_links_checked=len(validations),
            broken_count=sum(counts[outcome] for outcome in PROBLEM_OUTCOMES),
            ok_count=counts[Outcome.OK],
            by_outcome={outcome.value: counts[outcome] for outcome in Outcome if counts[outcome]},
        )

        self._report = ScanReport(
            scanned_url=self.scanned_url,
            started_at=self.started_at,
            finished_at=finished_at or datetime.now(timezone.utc),
            truncated=self.truncation_reason is not None,
            truncation_reason=self.truncation_reason,
            aborted=self.abort_reason is not None,
            abort_reason=self.abort_reason,
            pages=list(self.pages),
            skipped_pages=list(self.skipped_pages),
            validations=validations,
            broken_links=broken_links,
            missing_images=missing_images,
            unvalidated=unvalidated,
            summary=summary,
        )
        return self._report

    def _check_open(self) -> None:
        if self._report is not None:
            raise RuntimeError("Report already finalized")
