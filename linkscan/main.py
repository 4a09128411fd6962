"""
LinkScan - Main Application Entry Point
FastAPI application exposing the scan engine.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx
import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from linkscan.api.v1.routes import health, scans
from linkscan.core.config import Settings, get_settings
from linkscan.core.logging import configure_logging
from linkscan.engines.crawler.engine import ScanCoordinator

logger = structlog.get_logger(__name__)


def create_application(
    settings: Settings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator:
        """Manage application lifecycle: startup and shutdown."""
        configure_logging(settings)
        logger.info("Starting LinkScan", version=settings.APP_VERSION, env=settings.ENV)
        yield
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="LinkScan API",
        description="Site scanning engine for broken links and missing images.",
        version=settings.APP_VERSION,
        docs_url="/docs" if settings.ENV != "production" else None,
        redoc_url="/redoc" if settings.ENV != "production" else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.coordinator = ScanCoordinator(settings, transport=transport)

    app.add_middleware(GZipMiddleware, minimum_size=1000)

    # Routers
    app.include_router(health.router, prefix="/health", tags=["Health"])
    app.include_router(scans.router, prefix="/api/v1/scans", tags=["Scans"])

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled exception", path=request.url.path, error=str(exc), exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error", "request_id": request.headers.get("x-request-id")},
        )

    return app


app = create_application()
