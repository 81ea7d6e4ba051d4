"""
FastAPI Application Factory

Builds the HTTP surface around an InsightsEngine. The engine is either passed
in (tests, embedding) or built by the lifespan from settings and closed on exit.
"""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from adsync.config import get_settings
from adsync.config.settings import Settings
from adsync.engine import InsightsEngine
from adsync.exceptions import AdSyncError, NotFoundError, QuotaExceeded, StoreUnavailable
from adsync.serving.api.middleware import (
    RateLimitMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
)
from adsync.serving.api.routes import health_router, insights_router

logger = structlog.get_logger(__name__)


def _install_middleware(app: FastAPI, settings: Settings) -> None:
    # last added runs first: throttling precedes logging
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.security.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "PATCH", "POST", "DELETE"],
        allow_headers=["*"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        RateLimitMiddleware,
        max_requests=settings.security.rate_limit_requests,
        window_seconds=settings.security.rate_limit_window_seconds,
    )


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StoreUnavailable)
    async def store_unavailable(request: Request, exc: StoreUnavailable) -> JSONResponse:
        logger.error("Persistent store unavailable", path=request.url.path, error=str(exc))
        return JSONResponse({"detail": "Persistent store unavailable"}, status_code=503)

    @app.exception_handler(QuotaExceeded)
    async def quota_exceeded(request: Request, exc: QuotaExceeded) -> JSONResponse:
        headers = {"Retry-After": str(max(1, int(exc.retry_after)))} if exc.retry_after else None
        return JSONResponse({"detail": str(exc)}, status_code=429, headers=headers)

    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse({"detail": str(exc)}, status_code=404)

    @app.exception_handler(AdSyncError)
    async def engine_error(request: Request, exc: AdSyncError) -> JSONResponse:
        logger.error("Unhandled engine error", path=request.url.path, error_type=type(exc).__name__)
        return JSONResponse({"detail": type(exc).__name__}, status_code=500)


def create_api_app(engine: Optional[InsightsEngine] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Create and configure FastAPI application.

    Args:
        engine: Prebuilt engine; when omitted the lifespan builds one from settings
        settings: Application settings

    Returns:
        Configured FastAPI app instance
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = engine is None
        if owned:
            from adsync.config.logging import configure_logging

            configure_logging(settings=settings)
            app.state.engine = await InsightsEngine.from_settings(settings)
            logger.info(
                "Ad Insights Sync API started",
                environment=settings.app_env,
                storage_backend=settings.storage_backend,
            )

        yield

        if owned:
            await app.state.engine.close()
            app.state.engine = None
            logger.info("Ad Insights Sync API stopped")

    app = FastAPI(
        title="Ad Insights Sync API",
        description="Cached, budget-aware ad insights synchronization",
        version=settings.version,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )
    app.state.engine = engine

    _install_middleware(app, settings)
    _install_error_handlers(app)

    app.include_router(health_router, prefix="/api/v1", tags=["Health"])
    app.include_router(insights_router, prefix="/api/v1/insights", tags=["Insights"])

    @app.get("/api/v1/info")
    async def api_info():
        return {
            "name": settings.app_name,
            "version": settings.version,
            "environment": settings.app_env,
            "storage_backend": settings.storage_backend,
            "budget_scope": settings.rate_budget.scope,
        }

    return app
