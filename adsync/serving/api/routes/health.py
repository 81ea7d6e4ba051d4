"""
Health Check Endpoints

Provides health and readiness checks for orchestration systems.
"""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Request, Response
from pydantic import BaseModel

from adsync.config import get_settings
from adsync.database.connection import check_database_health
from adsync.database.store import SqlAlchemyStore

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    environment: str
    timestamp: datetime
    checks: Dict[str, Any]


async def _store_check(engine) -> Dict[str, Any]:
    if engine is None:
        return {"status": "unknown"}
    if not isinstance(engine.store, SqlAlchemyStore):
        return {"status": "healthy", "backend": "memory"}
    health = await check_database_health(engine.store.session_factory)
    health["backend"] = "sql"
    return health


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """
    Comprehensive health check endpoint.

    Checks:
    - Persistent store connectivity
    - Engine availability and background work
    """
    settings = get_settings()
    checks: Dict[str, Any] = {}
    overall_status = "healthy"

    engine = getattr(request.app.state, "engine", None)
    checks["store"] = await _store_check(engine)
    if checks["store"].get("status") != "healthy":
        overall_status = "unhealthy"

    if engine is None:
        checks["engine"] = {"status": "unavailable"}
        overall_status = "unhealthy"
    else:
        checks["engine"] = {
            "status": "healthy",
            "memory_entries": len(engine.coordinator.memory),
            "background_refreshes": len(engine.coordinator.pending_refreshes),
        }

    return HealthResponse(
        status=overall_status,
        version=settings.version,
        environment=settings.app_env,
        timestamp=datetime.now(timezone.utc),
        checks=checks,
    )


@router.get("/health/live")
async def liveness_check() -> Dict[str, str]:
    """
    Kubernetes liveness probe endpoint.

    Returns 200 if the application is running.
    """
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness_check(request: Request, response: Response) -> Dict[str, str]:
    """
    Kubernetes readiness probe endpoint.

    Returns 200 once the engine is built and its store answers.
    """
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        response.status_code = 503
        return {"status": "not_ready", "reason": "engine_not_started"}

    store = await _store_check(engine)
    if store.get("status") != "healthy":
        response.status_code = 503
        return {"status": "not_ready", "reason": "store_unavailable"}

    return {"status": "ready"}
