"""
Performance Telemetry

Aggregates per-account, per-day serving statistics and persists them as
PerformanceSnapshot rows:
- cache hit rate and API calls saved
- response time distribution per serving layer
- upstream call outcomes
- data completeness and anomaly rates

Only the current reporting day is held in memory; earlier days live on as
their persisted snapshots. Means are exact, percentiles come from the most
recent ``sample_window`` response times.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import date, datetime, tzinfo
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

import numpy as np
import structlog

from adsync.config import get_settings
from adsync.core.models import (
    AnomalyStatus,
    ApiUsage,
    CacheLayer,
    CacheStats,
    DataQuality,
    PerformanceMetrics,
    PerformanceSnapshot,
    StorageUsage,
    TimelinePoint,
    utc_now,
)
from adsync.database.store import PersistentStore
from adsync.ingestion.orchestrator import ApiStats

logger = structlog.get_logger(__name__)

LATENCY_SAMPLE_WINDOW = 2048


class _Series:
    """Running mean plus a bounded tail of recent samples"""

    def __init__(self, window: int):
        self.total = 0.0
        self.count = 0
        self.recent: Deque[float] = deque(maxlen=window)

    def add(self, value: float) -> None:
        self.total += value
        self.count += 1
        self.recent.append(value)

    def mean(self) -> float:
        return self.total / self.count if self.count else 0.0

    def percentile(self, q: float) -> float:
        return float(np.percentile(np.fromiter(self.recent, dtype=float), q)) if self.recent else 0.0


@dataclass
class _DailyStats:
    window: int = LATENCY_SAMPLE_WINDOW
    requests: int = 0
    hits: int = 0
    api_calls_saved: int = 0
    api_usage: ApiUsage = field(default_factory=ApiUsage)
    points_served: int = 0
    anomalous_points: int = 0
    storage: StorageUsage = field(default_factory=StorageUsage)

    def __post_init__(self) -> None:
        self.response_times = _Series(self.window)
        self.cache_times = _Series(self.window)
        self.api_times = _Series(self.window)
        self.completeness = _Series(self.window)


class PerformanceTelemetry:
    """
    Records serving events and keeps one snapshot per (account, day) current.

    Example:
        telemetry = PerformanceTelemetry(store)
        await telemetry.record(
            "act_1", CacheLayer.MEMORY, elapsed_ms=1.2, points=points,
        )
    """

    def __init__(
        self,
        store: PersistentStore,
        timezone: Optional[tzinfo] = None,
        clock: Callable[[], datetime] = utc_now,
        sample_window: int = LATENCY_SAMPLE_WINDOW,
    ):
        self.store = store
        self.timezone = timezone or get_settings().timezone
        self._clock = clock
        self.sample_window = sample_window
        self._stats: Dict[Tuple[str, date], _DailyStats] = {}
        self._day: Optional[date] = None

    def _today(self) -> date:
        return self._clock().astimezone(self.timezone).date()

    def _stats_for(self, account_id: str, stat_date: date) -> _DailyStats:
        if stat_date != self._day:
            dropped = [key for key in self._stats if key[1] < stat_date]
            for key in dropped:
                del self._stats[key]
            if dropped:
                logger.debug("Telemetry rolled over", stat_date=stat_date.isoformat(), dropped=len(dropped))
            self._day = stat_date
        stats = self._stats.get((account_id, stat_date))
        if stats is None:
            stats = self._stats[(account_id, stat_date)] = _DailyStats(window=self.sample_window)
        return stats

    @property
    def tracked(self) -> Set[Tuple[str, date]]:
        """(account, day) pairs aggregated in memory"""
        return set(self._stats)

    async def record(
        self,
        account_id: str,
        source: CacheLayer,
        elapsed_ms: float,
        points: Optional[List[TimelinePoint]] = None,
        api_stats: Optional[ApiStats] = None,
        api_calls_saved: int = 0,
        completeness: Optional[float] = None,
        storage: Optional[StorageUsage] = None,
    ) -> PerformanceSnapshot:
        """Fold one served request into today's snapshot and persist it"""
        stat_date = self._today()
        stats = self._stats_for(account_id, stat_date)

        stats.requests += 1
        stats.response_times.add(elapsed_ms)
        if source == CacheLayer.API:
            stats.api_times.add(elapsed_ms)
        else:
            stats.hits += 1
            stats.cache_times.add(elapsed_ms)
        stats.api_calls_saved += api_calls_saved

        if api_stats is not None:
            usage = stats.api_usage
            usage.total_calls += api_stats.total_calls
            usage.successful_calls += api_stats.successful_calls
            usage.failed_calls += api_stats.failed_calls
            usage.rate_limit_hits += api_stats.rate_limit_hits

        if completeness is not None:
            stats.completeness.add(completeness)
        if points:
            stats.points_served += len(points)
            stats.anomalous_points += sum(1 for p in points if p.anomalies)
        if storage is not None:
            stats.storage = storage

        snapshot = await self._snapshot(account_id, stat_date, stats)
        await self.store.upsert_snapshot(snapshot)
        return snapshot

    async def _snapshot(self, account_id: str, stat_date: date, stats: _DailyStats) -> PerformanceSnapshot:
        counts = await self.store.count_anomalies(account_id)
        total_anomalies = sum(counts.values())
        dismissed = counts.get(AnomalyStatus.DISMISSED.value, 0)

        return PerformanceSnapshot(
            stat_date=stat_date,
            account_id=account_id,
            cache_stats=CacheStats(
                hit_rate=round(stats.hits / stats.requests * 100, 2) if stats.requests else 0.0,
                api_calls_saved=stats.api_calls_saved,
                storage_usage=stats.storage.model_copy(),
            ),
            performance_metrics=PerformanceMetrics(
                avg_response_time=round(stats.response_times.mean(), 3),
                cache_response_time=round(stats.cache_times.mean(), 3),
                api_response_time=round(stats.api_times.mean(), 3),
                p95_response_time=round(stats.response_times.percentile(95), 3),
                p99_response_time=round(stats.response_times.percentile(99), 3),
            ),
            api_usage=stats.api_usage.model_copy(),
            data_quality=DataQuality(
                completeness_score=(
                    round(stats.completeness.mean(), 2) if stats.completeness.count else 100.0
                ),
                anomaly_detection_rate=(
                    round(stats.anomalous_points / stats.points_served * 100, 2)
                    if stats.points_served else 0.0
                ),
                false_positive_rate=round(dismissed / total_anomalies * 100, 2) if total_anomalies else 0.0,
            ),
            updated_at=self._clock(),
        )

    def reset(self) -> None:
        self._stats.clear()
        self._day = None
