"""
Three-Tier Cache Coordinator

Serves insight series from the cheapest tier that can answer:

    L1  MemoryCache      process-local, LRU, entry TTL
    L2  PersistentStore  cache entries plus the stored timeline
    L3  upstream API     via freshness -> planner -> orchestrator

Every read counts a hit on the entry it was served from. A replaced entry
keeps the previous hit count plus one. L2 write failures degrade to L1 only.
Non-expired but aging or stale L2 hits schedule a background refresh. An
expired entry whose data is still fresh is leased until the data starts aging.
"""

import asyncio
import math
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set, Tuple

import structlog

from adsync.config import get_settings
from adsync.config.settings import Settings
from adsync.core.models import (
    CacheEntry,
    CacheLayer,
    DateRange,
    Finality,
    FreshnessStatus,
    RetrievalSession,
    StorageUsage,
    TimelinePoint,
    UpdateStrategy,
    utc_now,
)
from adsync.database.store import PersistentStore
from adsync.exceptions import NotFoundError, StoreUnavailable
from adsync.ingestion.orchestrator import ApiStats, FetchOutcome, RetrievalOrchestrator
from adsync.planning.freshness import (
    FreshnessContext,
    FreshnessEvaluator,
    FreshnessHistory,
    FreshnessState,
)
from adsync.planning.planner import DifferentialUpdatePlanner, PlanContext, UpdatePlan
from adsync.serving.cache import MemoryCache, series_size
from adsync.serving.telemetry import PerformanceTelemetry

logger = structlog.get_logger(__name__)

_REFRESH_ON_HIT = (FreshnessStatus.AGING, FreshnessStatus.STALE)


@dataclass
class CacheResult:
    """A served series and how it was obtained"""
    points: List[TimelinePoint]
    entry: Optional[CacheEntry]
    source: CacheLayer
    freshness: Optional[FreshnessState] = None
    plan: Optional[UpdatePlan] = None
    session: Optional[RetrievalSession] = None
    deferred: bool = False
    retry_after: Optional[float] = None
    refresh_scheduled: bool = False
    api_stats: Optional[ApiStats] = None


@dataclass
class PlanResult:
    """Freshness evaluation and resulting plan for one key"""
    points: List[TimelinePoint]
    entry: Optional[CacheEntry]
    freshness: FreshnessState
    plan: UpdatePlan


@dataclass
class _Loaded:
    outcome: FetchOutcome
    points: List[TimelinePoint]
    entry: Optional[CacheEntry]  # written back; None unless the session completed


def _select(points: List[TimelinePoint], ad_id: Optional[str]) -> List[TimelinePoint]:
    if ad_id is None:
        return list(points)
    return [p for p in points if p.ad_id == ad_id]


class CacheCoordinator:
    """
    Reads through memory, persistent storage and the upstream API.

    Example:
        coordinator = CacheCoordinator(store, orchestrator, planner, evaluator)
        result = await coordinator.get("act_1", rng)
        result.source  # CacheLayer.MEMORY on a warm read
    """

    def __init__(
        self,
        store: PersistentStore,
        orchestrator: RetrievalOrchestrator,
        planner: DifferentialUpdatePlanner,
        evaluator: FreshnessEvaluator,
        memory: Optional[MemoryCache] = None,
        telemetry: Optional[PerformanceTelemetry] = None,
        history: Optional[FreshnessHistory] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.orchestrator = orchestrator
        self.planner = planner
        self.evaluator = evaluator
        self.memory = memory or MemoryCache(self.settings.cache.memory_max_entries)
        self.telemetry = telemetry or PerformanceTelemetry(store, self.settings.timezone, clock)
        self.history = history or FreshnessHistory(self.settings.freshness.history_size)
        self._clock = clock

        self._background: Dict[str, asyncio.Task] = {}
        self._loads: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(
        self,
        account_id: str,
        date_range: DateRange,
        ad_id: Optional[str] = None,
        force_refresh: bool = False,
    ) -> CacheResult:
        started = time.perf_counter()
        now = self._clock()
        key = CacheEntry.build_key(account_id, date_range)

        if not force_refresh:
            cached = self.memory.get(key, now)
            if cached is not None:
                entry = await self._count_hit(cached.entry, now)
                result = CacheResult(
                    points=_select(cached.points, ad_id),
                    entry=entry,
                    source=CacheLayer.MEMORY,
                )
                await self._record(account_id, result, started, cached.points)
                return result

            entry = await self.store.get_cache_entry(key)
            if entry is not None and not entry.is_expired(now):
                points = await self.store.get_points(account_id, date_range)
                entry = await self._count_hit(entry, now)
                self.memory.set(entry, points)

                freshness = self._evaluate(account_id, date_range, points, entry, now)
                scheduled = False
                if freshness.status in _REFRESH_ON_HIT and self.settings.cache.background_refresh:
                    scheduled = self._schedule_refresh(key)

                result = CacheResult(
                    points=_select(points, ad_id),
                    entry=entry,
                    source=CacheLayer.PERSISTENT,
                    freshness=freshness,
                    refresh_scheduled=scheduled,
                )
                await self._record(account_id, result, started, points)
                return result

        result = await self._load(account_id, date_range, force_refresh, now)
        result.points = _select(result.points, ad_id)
        await self._record(account_id, result, started, result.points)
        return result

    async def plan(
        self,
        account_id: str,
        date_range: DateRange,
        force_refresh: bool = False,
        now: Optional[datetime] = None,
    ) -> PlanResult:
        """Evaluate freshness of what is held and plan the fetch it needs"""
        now = now or self._clock()
        key = CacheEntry.build_key(account_id, date_range)
        entry = await self.store.get_cache_entry(key)
        if entry is None:
            cached = self.memory.peek(key)
            entry = cached.entry if cached is not None else None

        points = await self.store.get_points(account_id, date_range)
        freshness = self._evaluate(account_id, date_range, points, None if force_refresh else entry, now)
        self.history.record(key, freshness)

        plan = self.planner.create_update_plan(
            points,
            PlanContext(account_id=account_id, date_range=date_range, freshness=freshness),
        )
        return PlanResult(points=points, entry=entry, freshness=freshness, plan=plan)

    async def _load(
        self,
        account_id: str,
        date_range: DateRange,
        force_refresh: bool,
        now: datetime,
        count_read: bool = True,
    ) -> CacheResult:
        """Miss path: plan, fetch if needed, write back"""
        planned = await self.plan(account_id, date_range, force_refresh=force_refresh, now=now)
        plan = planned.plan

        if plan.strategy == UpdateStrategy.SKIP:
            logger.info(
                "Serving stored data without fetch",
                account_id=account_id,
                date_range=date_range.key,
                reason=plan.reason,
            )
            entry = planned.entry
            if entry is not None and count_read:
                entry = await self._renew(entry, planned.points, planned.freshness, now)
            return CacheResult(
                points=planned.points,
                entry=entry,
                source=CacheLayer.PERSISTENT,
                freshness=planned.freshness,
                plan=plan,
            )

        loaded, joined = await self._fetch_shared(account_id, date_range, plan)
        outcome = loaded.outcome
        # a joining caller neither spent the calls nor wrote the entry
        api_stats = None if joined else outcome.api_stats

        if loaded.entry is None:
            return CacheResult(
                points=list(loaded.points),
                entry=planned.entry,
                source=CacheLayer.PERSISTENT if outcome.deferred else CacheLayer.API,
                freshness=planned.freshness,
                plan=plan,
                session=outcome.session,
                deferred=outcome.deferred,
                retry_after=outcome.retry_after,
                api_stats=api_stats,
            )

        return CacheResult(
            points=list(loaded.points),
            entry=loaded.entry,
            source=CacheLayer.API,
            freshness=planned.freshness,
            plan=plan,
            session=outcome.session,
            api_stats=api_stats,
        )

    async def _fetch_shared(
        self,
        account_id: str,
        date_range: DateRange,
        plan: UpdatePlan,
    ) -> Tuple[_Loaded, bool]:
        """
        Run fetch plus write-back once per key; concurrent callers share it.

        Returns the load and whether this caller joined one already running.
        """
        key = CacheEntry.build_key(account_id, date_range)
        task = self._loads.get(key)
        joined = task is not None
        if task is None:
            task = asyncio.create_task(self._fetch(account_id, date_range, plan))
            self._loads[key] = task
            task.add_done_callback(lambda t, k=key: self._load_done(k, t))

        loaded = await asyncio.shield(task)
        return loaded, joined or loaded.outcome.joined

    async def _fetch(self, account_id: str, date_range: DateRange, plan: UpdatePlan) -> _Loaded:
        outcome = await self.orchestrator.execute(account_id, date_range, plan)
        points = await self.store.get_points(account_id, date_range)
        entry = None
        if outcome.completed:
            entry = await self._write_back(account_id, date_range, points, outcome.session)
        return _Loaded(outcome=outcome, points=points, entry=entry)

    def _load_done(self, key: str, task: asyncio.Task) -> None:
        if self._loads.get(key) is task:
            del self._loads[key]
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Series load failed", cache_key=key, error=str(task.exception()))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def ttl_for(self, finality: Finality) -> int:
        cache = self.settings.cache
        return {
            Finality.REALTIME: cache.realtime_ttl_seconds,
            Finality.NEARTIME: cache.neartime_ttl_seconds,
            Finality.STABILIZING: cache.stabilizing_ttl_seconds,
            Finality.FINALIZED: cache.finalized_ttl_seconds,
        }[finality]

    async def _write_back(
        self,
        account_id: str,
        date_range: DateRange,
        points: List[TimelinePoint],
        session: RetrievalSession,
    ) -> CacheEntry:
        now = self._clock()
        key = CacheEntry.build_key(account_id, date_range)

        try:
            previous = await self.store.get_cache_entry(key)
        except StoreUnavailable:
            previous = None
        if previous is None:
            cached = self.memory.peek(key)
            previous = cached.entry if cached is not None else None

        finality = self.evaluator.finality_of(date_range, now)
        entry = CacheEntry(
            cache_key=key,
            account_id=account_id,
            date_range=date_range,
            layer=CacheLayer.PERSISTENT,
            ttl_seconds=self.ttl_for(finality),
            data_freshness=finality,
            size_bytes=series_size(points),
            data_id=session.id,
            hit_count=previous.hit_count + 1 if previous is not None else 0,
            written_at=now,
            last_accessed_at=now,
        )

        try:
            await self.store.upsert_cache_entry(entry)
        except StoreUnavailable as e:
            logger.warning(
                "Persistent cache write failed, serving from memory only",
                cache_key=key,
                error=str(e),
            )
        self.memory.set(entry, points)

        logger.debug(
            "Cache entry written",
            cache_key=key,
            ttl_seconds=entry.ttl_seconds,
            finality=finality.value,
            size_bytes=entry.size_bytes,
        )
        return entry

    async def _count_hit(self, entry: CacheEntry, now: datetime) -> CacheEntry:
        entry.hit_count += 1
        entry.last_accessed_at = now
        try:
            await self.store.upsert_cache_entry(entry.model_copy(update={"layer": CacheLayer.PERSISTENT}))
        except StoreUnavailable as e:
            logger.warning("Hit count not persisted", cache_key=entry.cache_key, error=str(e))
        return entry

    async def _renew(
        self,
        entry: CacheEntry,
        points: List[TimelinePoint],
        freshness: FreshnessState,
        now: datetime,
    ) -> CacheEntry:
        """Count a read served without a fetch and put the entry back in L1 while its data is fresh"""
        if freshness.status == FreshnessStatus.FRESH and freshness.next_update_at is not None:
            fresh_for = math.ceil((freshness.next_update_at - entry.written_at).total_seconds())
            if fresh_for > entry.ttl_seconds:
                entry = entry.model_copy(update={"ttl_seconds": fresh_for})
                logger.debug("Cache entry lease extended", cache_key=entry.cache_key, ttl_seconds=fresh_for)

        entry = await self._count_hit(entry, now)
        if not entry.is_expired(now):
            self.memory.set(entry, points)
        return entry

    # ------------------------------------------------------------------
    # Freshness and telemetry
    # ------------------------------------------------------------------

    def _evaluate(
        self,
        account_id: str,
        date_range: DateRange,
        points: List[TimelinePoint],
        entry: Optional[CacheEntry],
        now: datetime,
    ) -> FreshnessState:
        context = FreshnessContext(
            account_id=account_id,
            date_range=date_range,
            last_fetched=entry.written_at if entry is not None else None,
            fetched_ranges=[entry.date_range] if entry is not None else [],
            now=now,
        )
        return self.evaluator.evaluate(points, context)

    async def _storage(self, account_id: str) -> StorageUsage:
        entries = await self.store.list_cache_entries(account_id)
        return StorageUsage(
            memory=self.memory.size_bytes(account_id),
            persistent=sum(e.size_bytes for e in entries),
        )

    async def _record(
        self,
        account_id: str,
        result: CacheResult,
        started: float,
        points: List[TimelinePoint],
    ) -> None:
        elapsed_ms = (time.perf_counter() - started) * 1000
        api_stats: Optional[ApiStats] = result.api_stats
        saved = 0
        if result.source != CacheLayer.API:
            ads = len({p.ad_id for p in points})
            saved = self.planner.estimate_calls(result.entry.date_range, ads) if result.entry else 0

        try:
            storage = await self._storage(account_id) if result.source != CacheLayer.MEMORY else None
            await self.telemetry.record(
                account_id,
                result.source,
                elapsed_ms,
                points=points,
                api_stats=api_stats,
                api_calls_saved=saved,
                completeness=result.freshness.completeness if result.freshness else None,
                storage=storage,
            )
        except StoreUnavailable as e:
            logger.warning("Telemetry not recorded", account_id=account_id, error=str(e))

        logger.debug(
            "Series served",
            account_id=account_id,
            source=result.source.value,
            points=len(result.points),
            elapsed_ms=round(elapsed_ms, 2),
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def _schedule_refresh(self, key: str) -> bool:
        if key in self._background:
            return False
        task = asyncio.create_task(self.refresh(key))
        self._background[key] = task
        task.add_done_callback(lambda t, k=key: self._refresh_done(k, t))
        logger.debug("Background refresh scheduled", cache_key=key)
        return True

    def _refresh_done(self, key: str, task: asyncio.Task) -> None:
        if self._background.get(key) is task:
            del self._background[key]
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Background refresh failed", cache_key=key, error=str(task.exception()))

    async def refresh(self, key: str) -> CacheResult:
        """Re-plan and fetch an existing entry regardless of its TTL"""
        entry = await self.store.get_cache_entry(key)
        if entry is None:
            cached = self.memory.peek(key)
            if cached is None:
                raise NotFoundError(f"No cache entry {key}")
            entry = cached.entry

        started = time.perf_counter()
        result = await self._load(entry.account_id, entry.date_range, False, self._clock(), count_read=False)
        await self._record(entry.account_id, result, started, result.points)
        return result

    async def stale_entries(self, limit: Optional[int] = None) -> List[Tuple[CacheEntry, FreshnessState]]:
        """Entries that are no longer fresh, most urgent first"""
        now = self._clock()
        candidates = []
        for entry in await self.store.list_cache_entries():
            points = await self.store.get_points(entry.account_id, entry.date_range)
            state = self._evaluate(entry.account_id, entry.date_range, points, entry, now)
            self.history.record(entry.cache_key, state)
            if state.status != FreshnessStatus.FRESH:
                candidates.append((entry, state))

        candidates.sort(key=lambda c: (-c[1].update_priority.rank, -c[1].staleness))
        return candidates[:limit] if limit is not None else candidates

    async def invalidate(self, key: str) -> bool:
        in_memory = self.memory.delete(key)
        persisted = await self.store.delete_cache_entry(key)
        logger.info("Cache entry invalidated", cache_key=key, found=in_memory or persisted)
        return in_memory or persisted

    async def purge_expired(self) -> int:
        now = self._clock()
        purged = self.memory.purge_expired(now)
        purged_persistent = await self.store.purge_expired_cache(now)
        logger.info("Expired cache entries purged", memory=purged, persistent=purged_persistent)
        return purged_persistent

    async def drain(self) -> None:
        """Wait for background refreshes, shared loads and in-flight sessions"""
        while self._background:
            tasks = list(self._background.items())
            await asyncio.gather(*(t for _, t in tasks), return_exceptions=True)
            for key, task in tasks:
                if self._background.get(key) is task:
                    del self._background[key]
        loads = list(self._loads.values())
        if loads:
            await asyncio.gather(*loads, return_exceptions=True)
        await self.orchestrator.drain()

    @property
    def pending_refreshes(self) -> Set[str]:
        return set(self._background)
