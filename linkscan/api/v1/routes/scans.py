"""
Scan API Routes

No business logic lives here.
Routes validate input, call the engine, return the report document.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Body, Request, status
from fastapi.responses import JSONResponse

from linkscan.core.exceptions import InvalidRequest, ResourceExhausted
from linkscan.engines.base import ScanRequest
from linkscan.engines.crawler.engine import ScanCoordinator

logger = structlog.get_logger(__name__)
router = APIRouter()


@router.post(
    "",
    status_code=status.HTTP_200_OK,
    summary="Scan a site for broken links and missing images",
    description="Crawls the site from the given URL and returns the finalized scan report.",
)
async def create_scan(request: Request, payload: dict[str, Any] = Body(...)) -> JSONResponse:
    """
    Run a scan synchronously.

    1. Validate the request document (422 on failure, before any network activity)
    2. Run the scan with the application's engine settings
    3. Return the report; 503 with the partial report if a resource ceiling tripped
    """
    try:
        scan_request = ScanRequest.from_payload(payload)
    except InvalidRequest as exc:
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": str(exc), "errors": exc.errors},
        )

    coordinator: ScanCoordinator = request.app.state.coordinator
    try:
        report = await coordinator.run_scan(scan_request)
    except InvalidRequest as exc:
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": str(exc), "errors": exc.errors},
        )
    except ResourceExhausted as exc:
        logger.error("Scan aborted", url=scan_request.url, error=str(exc))
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "detail": str(exc),
                "report": exc.report.to_document() if exc.report else None,
            },
        )

    logger.info("Scan served", url=scan_request.url, pages=report.summary.total_pages)
    return JSONResponse(content=report.to_document())
