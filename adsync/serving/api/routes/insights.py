"""
Insights API Endpoints

REST surface over the caller-facing engine operations.
"""

from datetime import date
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, ValidationError

from adsync.core.models import (
    AnomalyRecord,
    AnomalyStatus,
    CacheLayer,
    DateRange,
    GapRecord,
    PerformanceSnapshot,
    RetrievalSession,
    TimelinePoint,
    UpdateStrategy,
    utc_now,
)
from adsync.engine import InsightsEngine
from adsync.exceptions import NotFoundError
from adsync.planning.freshness import FreshnessState

router = APIRouter()
logger = structlog.get_logger(__name__)


def get_engine(request: Request) -> InsightsEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine not started")
    return engine


def _date_range(start: date, end: date) -> DateRange:
    try:
        return DateRange(start=start, end=end)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=f"Invalid date range: {start} > {end}") from e


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class SeriesResponse(BaseModel):
    """Timeline points plus how they were served"""
    account_id: str
    date_range: DateRange
    source: CacheLayer
    points: List[TimelinePoint]
    strategy: Optional[UpdateStrategy] = None
    session_id: Optional[str] = None
    session_status: Optional[str] = None
    deferred: bool = False
    retry_after: Optional[float] = None
    hit_count: Optional[int] = None


class FreshnessResponse(BaseModel):
    freshness: FreshnessState
    strategy: UpdateStrategy
    estimated_api_calls: int
    fetch_ranges: List[DateRange]
    recommendations: List[str]


class AnomalyStatusUpdate(BaseModel):
    status: AnomalyStatus
    notes: Optional[str] = None


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.get("/accounts/{account_id}/series", response_model=SeriesResponse)
async def get_series(
    account_id: str,
    start: date = Query(..., description="First day, inclusive"),
    end: date = Query(..., description="Last day, inclusive"),
    ad_id: Optional[str] = None,
    force_refresh: bool = False,
    engine: InsightsEngine = Depends(get_engine),
) -> SeriesResponse:
    """
    Timeline for an account or one of its ads.

    Failed or deferred fetches still return the data held so far; inspect
    ``session_status`` and ``retry_after``.
    """
    date_range = _date_range(start, end)
    result = await engine.fetch_series(account_id, date_range, ad_id=ad_id, force_refresh=force_refresh)

    return SeriesResponse(
        account_id=account_id,
        date_range=date_range,
        source=result.source,
        points=result.points,
        strategy=result.plan.strategy if result.plan else None,
        session_id=result.session.id if result.session else None,
        session_status=result.session.status.value if result.session else None,
        deferred=result.deferred,
        retry_after=result.retry_after,
        hit_count=result.entry.hit_count if result.entry else None,
    )


@router.get("/accounts/{account_id}/freshness", response_model=FreshnessResponse)
async def get_freshness(
    account_id: str,
    start: date = Query(...),
    end: date = Query(...),
    engine: InsightsEngine = Depends(get_engine),
) -> FreshnessResponse:
    report = await engine.get_freshness(account_id, _date_range(start, end))
    plan = report["plan"]
    return FreshnessResponse(
        freshness=report["freshness"],
        strategy=plan.strategy,
        estimated_api_calls=plan.estimated_api_calls,
        fetch_ranges=plan.fetch_ranges,
        recommendations=report["recommendations"],
    )


@router.get("/sessions/{session_id}", response_model=RetrievalSession)
async def get_session_status(
    session_id: str,
    engine: InsightsEngine = Depends(get_engine),
) -> RetrievalSession:
    try:
        return await engine.get_session_status(session_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")


@router.get("/ads/{ad_id}/anomalies", response_model=List[AnomalyRecord])
async def get_active_anomalies(
    ad_id: str,
    engine: InsightsEngine = Depends(get_engine),
) -> List[AnomalyRecord]:
    return await engine.get_active_anomalies(ad_id)


@router.patch("/anomalies/{anomaly_id}", response_model=AnomalyRecord)
async def update_anomaly_status(
    anomaly_id: str,
    update: AnomalyStatusUpdate,
    engine: InsightsEngine = Depends(get_engine),
) -> AnomalyRecord:
    try:
        return await engine.update_anomaly_status(anomaly_id, update.status, update.notes)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Anomaly not found")


@router.get("/ads/{ad_id}/gaps", response_model=List[GapRecord])
async def get_gaps(
    ad_id: str,
    engine: InsightsEngine = Depends(get_engine),
) -> List[GapRecord]:
    return await engine.get_gaps(ad_id)


@router.get("/accounts/{account_id}/gaps/summary")
async def get_gap_summary(
    account_id: str,
    engine: InsightsEngine = Depends(get_engine),
) -> Dict[str, Any]:
    return await engine.get_gap_summary(account_id)


@router.get("/accounts/{account_id}/performance/{stat_date}", response_model=PerformanceSnapshot)
async def get_performance_snapshot(
    account_id: str,
    stat_date: date,
    engine: InsightsEngine = Depends(get_engine),
) -> PerformanceSnapshot:
    try:
        return await engine.get_performance_snapshot(account_id, stat_date)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Snapshot not found")


@router.delete("/accounts/{account_id}/cache")
async def invalidate_cache(
    account_id: str,
    start: date = Query(...),
    end: date = Query(...),
    engine: InsightsEngine = Depends(get_engine),
) -> Dict[str, Any]:
    removed = await engine.invalidate(account_id, _date_range(start, end))
    return {"invalidated": removed}


@router.post("/cache/purge")
async def purge_expired_cache(engine: InsightsEngine = Depends(get_engine)) -> Dict[str, Any]:
    purged = await engine.purge_expired_cache()
    logger.info("Expired cache purge requested", purged=purged)
    return {"purged": purged, "at": utc_now().isoformat()}
