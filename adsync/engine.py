"""
Insights Engine

Caller-facing entry points of the synchronization engine. Wires the rate
budget, analyzers, planner, orchestrator and cache coordinator into one
object; every collaborator is owned by the engine instance, so tests can
build isolated engines side by side.
"""

from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional

import structlog

from adsync.config import get_settings
from adsync.config.settings import Settings
from adsync.core.models import (
    AnomalyRecord,
    AnomalyStatus,
    CacheEntry,
    DateRange,
    GapRecord,
    PerformanceSnapshot,
    RetrievalSession,
    TimelinePoint,
    utc_now,
)
from adsync.database.store import InMemoryStore, PersistentStore, SqlAlchemyStore
from adsync.exceptions import NotFoundError
from adsync.ingestion.insights_client import InsightsSource, MetaInsightsClient
from adsync.ingestion.orchestrator import RetrievalOrchestrator
from adsync.ingestion.rate_budget import RateBudgetTracker
from adsync.planning.freshness import FreshnessEvaluator, recommendations
from adsync.planning.planner import DifferentialUpdatePlanner
from adsync.quality.anomaly_detector import AnomalyDetector
from adsync.quality.delivery import DeliveryAnalyzer, summarize_gaps
from adsync.serving.coordinator import CacheCoordinator, CacheResult, PlanResult

logger = structlog.get_logger(__name__)


class InsightsEngine:
    """
    Synchronizes ad insights and answers queries about them.

    Example:
        engine = await InsightsEngine.from_settings()
        points = await engine.request_series("act_1", DateRange(start=d1, end=d2))
        await engine.close()
    """

    def __init__(
        self,
        store: PersistentStore,
        source: InsightsSource,
        settings: Optional[Settings] = None,
        budget: Optional[RateBudgetTracker] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.source = source
        self.budget = budget or RateBudgetTracker(self.settings.rate_budget)

        analysis = self.settings.analysis
        self.delivery_analyzer = DeliveryAnalyzer(
            min_gap_days=analysis.min_gap_days,
            preceding_window_days=analysis.preceding_window_days,
            stable_band_pct=analysis.stable_band_pct,
        )
        self.anomaly_detector = AnomalyDetector(
            baseline_window_days=analysis.baseline_window_days,
            min_baseline_samples=analysis.min_baseline_samples,
            frequency_threshold=analysis.frequency_threshold,
            frequency_floor=analysis.frequency_floor,
            ctr_drop_threshold=analysis.ctr_drop_threshold,
            spend_spike_threshold=analysis.spend_spike_threshold,
            cpm_threshold=analysis.cpm_threshold,
        )
        self.evaluator = FreshnessEvaluator(self.settings.freshness, self.settings.timezone, clock)
        self.planner = DifferentialUpdatePlanner(
            budget=self.budget,
            settings=analysis,
            page_size=self.settings.insights_api.page_size,
        )
        self.orchestrator = RetrievalOrchestrator(
            source,
            store,
            self.budget,
            delivery_analyzer=self.delivery_analyzer,
            anomaly_detector=self.anomaly_detector,
            settings=self.settings,
        )
        self.coordinator = CacheCoordinator(
            store,
            self.orchestrator,
            self.planner,
            self.evaluator,
            settings=self.settings,
            clock=clock,
        )
        self._owns_database = False

    @classmethod
    async def from_settings(cls, settings: Optional[Settings] = None) -> "InsightsEngine":
        """Build an engine on the configured store and the Graph API client"""
        settings = settings or get_settings()

        if settings.storage_backend == "sql":
            from adsync.database.connection import get_session_factory, init_database

            await init_database()
            store: PersistentStore = SqlAlchemyStore(get_session_factory())
        else:
            store = InMemoryStore()

        engine = cls(store, MetaInsightsClient(settings.insights_api), settings=settings)
        engine._owns_database = settings.storage_backend == "sql"
        logger.info(
            "Insights engine ready",
            storage_backend=settings.storage_backend,
            api_version=settings.insights_api.api_version,
        )
        return engine

    # ------------------------------------------------------------------
    # Series
    # ------------------------------------------------------------------

    async def request_series(
        self,
        account_id: str,
        date_range: DateRange,
        ad_id: Optional[str] = None,
    ) -> List[TimelinePoint]:
        """
        Timeline points for an account (or one ad) over a date range.

        Served from cache when fresh enough; otherwise fetched within the
        call budget. Never raises for quota or upstream failures: the last
        stored data is returned and the session records what went wrong.
        """
        result = await self.fetch_series(account_id, date_range, ad_id=ad_id)
        return result.points

    async def fetch_series(
        self,
        account_id: str,
        date_range: DateRange,
        ad_id: Optional[str] = None,
        force_refresh: bool = False,
    ) -> CacheResult:
        """Like request_series, with the serving tier, plan and session"""
        return await self.coordinator.get(account_id, date_range, ad_id=ad_id, force_refresh=force_refresh)

    async def get_freshness(self, account_id: str, date_range: DateRange) -> Dict[str, Any]:
        planned: PlanResult = await self.coordinator.plan(account_id, date_range)
        return {
            "freshness": planned.freshness,
            "plan": planned.plan,
            "recommendations": recommendations(planned.freshness),
        }

    # ------------------------------------------------------------------
    # Sessions, anomalies, gaps
    # ------------------------------------------------------------------

    async def get_session_status(self, session_id: str) -> RetrievalSession:
        session = await self.store.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Retrieval session {session_id} not found")
        return session

    async def get_active_anomalies(self, ad_id: str) -> List[AnomalyRecord]:
        return await self.store.get_anomalies(ad_id, status=AnomalyStatus.ACTIVE)

    async def update_anomaly_status(
        self,
        anomaly_id: str,
        status: AnomalyStatus,
        notes: Optional[str] = None,
    ) -> AnomalyRecord:
        record = await self.store.set_anomaly_status(anomaly_id, status, notes)
        logger.info("Anomaly status updated", anomaly_id=anomaly_id, status=status.value)
        return record

    async def get_gaps(self, ad_id: str) -> List[GapRecord]:
        return await self.store.get_gaps(ad_id)

    async def get_gap_summary(self, account_id: str) -> Dict[str, Any]:
        return summarize_gaps(await self.store.get_account_gaps(account_id))

    async def get_performance_snapshot(self, account_id: str, stat_date: date) -> PerformanceSnapshot:
        snapshot = await self.store.get_snapshot(account_id, stat_date)
        if snapshot is None:
            raise NotFoundError(f"No performance snapshot for {account_id} on {stat_date}")
        return snapshot

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def refresh_stale_entries(self, limit: Optional[int] = None) -> List[CacheResult]:
        """Refresh cache entries that are no longer fresh, most urgent first"""
        stale = await self.coordinator.stale_entries(limit)
        results = []
        for entry, state in stale:
            logger.info(
                "Refreshing stale entry",
                cache_key=entry.cache_key,
                status=state.status.value,
                staleness=state.staleness,
            )
            results.append(await self.coordinator.refresh(entry.cache_key))
        return results

    async def purge_expired_cache(self) -> int:
        return await self.coordinator.purge_expired()

    async def invalidate(self, account_id: str, date_range: DateRange) -> bool:
        return await self.coordinator.invalidate(CacheEntry.build_key(account_id, date_range))

    async def close(self) -> None:
        await self.coordinator.drain()
        close = getattr(self.source, "close", None)
        if close is not None:
            await close()
        await self.store.close()
        if self._owns_database:
            from adsync.database.connection import close_database

            await close_database()
        logger.info("Insights engine closed")
