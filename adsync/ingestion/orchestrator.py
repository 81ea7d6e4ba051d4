"""
Retrieval Session Orchestrator

Executes an update plan against the upstream insights API as a retrieval
session: pending -> fetching -> completed | failed.

- every page is fetched only after a successful budget reservation
- a denial before the first page leaves the session pending (deferred)
- each page is validated, analyzed and merged before the next is requested
- a failing page fails the session; pages already merged stay merged
- one in-flight session per (account, date range); concurrent callers share it
"""

import asyncio
import time
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from typing import Dict, List, Optional, Sequence, Set, Tuple

import numpy as np
import structlog

from adsync.config import get_settings
from adsync.config.settings import Settings
from adsync.core.models import (
    AnomalyRecord,
    DateRange,
    FailureReason,
    GapRecord,
    RetrievalSession,
    SessionStatus,
    TimelinePoint,
    UpdateStrategy,
)
from adsync.database.store import PersistentStore
from adsync.exceptions import (
    MalformedPage,
    QuotaExceeded,
    UpstreamError,
    UpstreamRateLimited,
    UpstreamTimeout,
)
from adsync.ingestion.insights_client import InsightsPage, InsightsSource
from adsync.ingestion.rate_budget import CallOutcome, RateBudgetTracker, budget_key
from adsync.planning.planner import DataPart, UpdatePlan
from adsync.quality.anomaly_detector import AnomalyDetector
from adsync.quality.delivery import DeliveryAnalyzer
from adsync.quality.validators import validate_page

logger = structlog.get_logger(__name__)


@dataclass
class ApiStats:
    """Upstream call statistics of one session"""
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rate_limit_hits: int = 0
    response_times_ms: List[float] = field(default_factory=list)

    @property
    def avg_response_time_ms(self) -> float:
        return float(np.mean(self.response_times_ms)) if self.response_times_ms else 0.0


@dataclass
class FetchOutcome:
    """Result of executing a plan"""
    session: RetrievalSession
    points: List[TimelinePoint] = field(default_factory=list)
    anomalies: List[AnomalyRecord] = field(default_factory=list)
    gaps: List[GapRecord] = field(default_factory=list)
    api_stats: ApiStats = field(default_factory=ApiStats)
    deferred: bool = False
    retry_after: Optional[float] = None
    joined: bool = False  # attached to a session another caller started

    @property
    def completed(self) -> bool:
        return self.session.status == SessionStatus.COMPLETED


class _Run:
    """Mutable state of one executing session"""

    def __init__(self, session: RetrievalSession, key: str):
        self.session = session
        self.budget_key = key
        self.stats = ApiStats()
        self.seen: Set[Tuple[str, date]] = set()
        self.delivered: Dict[Tuple[str, date], bool] = {}
        self.points: List[TimelinePoint] = []
        self.anomalies: List[AnomalyRecord] = []
        self.gaps: Dict[str, GapRecord] = {}
        self.ads: Set[str] = set()
        self.latest: Optional[date] = None  # last day fetched so far


class RetrievalOrchestrator:
    """
    Runs retrieval sessions with per-key deduplication.

    Example:
        orchestrator = RetrievalOrchestrator(source, store, budget)
        outcome = await orchestrator.execute("act_1", rng, plan)
        outcome.session.status
    """

    def __init__(
        self,
        source: InsightsSource,
        store: PersistentStore,
        budget: RateBudgetTracker,
        delivery_analyzer: Optional[DeliveryAnalyzer] = None,
        anomaly_detector: Optional[AnomalyDetector] = None,
        settings: Optional[Settings] = None,
    ):
        self.source = source
        self.store = store
        self.budget = budget
        self.settings = settings or get_settings()
        self.delivery_analyzer = delivery_analyzer or DeliveryAnalyzer()
        self.anomaly_detector = anomaly_detector or AnomalyDetector()

        self._in_flight: Dict[Tuple[str, str], asyncio.Task] = {}
        self._registry_lock = asyncio.Lock()

    async def execute(self, account_id: str, date_range: DateRange, plan: UpdatePlan) -> FetchOutcome:
        """
        Execute ``plan`` for (account_id, date_range), or join the session
        already fetching that key.

        The fetch runs as its own task: cancelling the caller does not cancel
        the session.
        """
        if plan.strategy == UpdateStrategy.SKIP:
            raise ValueError("A skip plan has nothing to execute")

        key = (account_id, date_range.key)
        async with self._registry_lock:
            task = self._in_flight.get(key)
            joined = task is not None
            if task is None:
                task = asyncio.create_task(self._run(account_id, date_range, plan))
                self._in_flight[key] = task
                task.add_done_callback(lambda t, k=key: self._forget(k, t))

        if not joined:
            return await asyncio.shield(task)

        logger.info("Joining in-flight session", account_id=account_id, date_range=date_range.key)
        return replace(await asyncio.shield(task), joined=True)

    def _forget(self, key: Tuple[str, str], task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Retrieval session crashed",
                account_id=key[0],
                date_range=key[1],
                error=str(task.exception()),
            )

    async def drain(self) -> None:
        """Wait for every in-flight session"""
        tasks = list(self._in_flight.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Session execution
    # ------------------------------------------------------------------

    async def _run(self, account_id: str, date_range: DateRange, plan: UpdatePlan) -> FetchOutcome:
        session = RetrievalSession(
            account_id=account_id,
            date_range=date_range,
            strategy=plan.strategy,
            total_pages=max(1, sum(p.estimated_calls for p in plan.data_parts)),
        )
        run = _Run(session, budget_key(account_id, self.settings.rate_budget.scope))
        await self.store.upsert_session(session)

        logger.info(
            "Retrieval session started",
            session_id=session.id,
            account_id=account_id,
            date_range=date_range.key,
            strategy=plan.strategy.value,
            parts=len(plan.data_parts),
        )

        existing = await self.store.get_points(account_id, date_range)
        run.delivered = {(p.ad_id, p.date): p.has_delivery for p in existing}

        try:
            for index, part in enumerate(plan.data_parts):
                later = sum(p.estimated_calls for p in plan.data_parts[index + 1:])
                await self._fetch_part(run, part, later)
        except QuotaExceeded as e:
            if session.status == SessionStatus.PENDING:
                logger.info(
                    "Retrieval session deferred",
                    session_id=session.id,
                    account_id=account_id,
                    retry_after=round(e.retry_after, 1),
                )
                await self.store.upsert_session(session)
                return self._outcome(run, deferred=True, retry_after=e.retry_after)
            session.fail(FailureReason.QUOTA_EXHAUSTED, str(e))
        except UpstreamRateLimited as e:
            session.fail(FailureReason.RATE_LIMITED, str(e))
        except UpstreamTimeout as e:
            session.fail(FailureReason.TIMEOUT, str(e))
        except UpstreamError as e:
            session.fail(FailureReason.UPSTREAM_ERROR, str(e))
        except MalformedPage as e:
            session.fail(FailureReason.MALFORMED_PAGE, str(e))
        else:
            session.total_pages = session.pages_retrieved
            session.transition(SessionStatus.COMPLETED)

        await self._finalize_gaps(run)
        await self.store.upsert_session(session)

        if session.status == SessionStatus.FAILED:
            logger.warning(
                "Retrieval session failed",
                session_id=session.id,
                account_id=account_id,
                reason=session.failure_reason.value,
                error=session.error_message,
                pages_retrieved=session.pages_retrieved,
            )
        else:
            logger.info(
                "Retrieval session completed",
                session_id=session.id,
                account_id=account_id,
                pages=session.pages_retrieved,
                items=session.total_items,
                anomalies=len(run.anomalies),
                gaps=len(run.gaps),
                duration_ms=round(session.processing_time_ms or 0.0, 2),
            )

        return self._outcome(run)

    @staticmethod
    def _outcome(run: _Run, deferred: bool = False, retry_after: Optional[float] = None) -> FetchOutcome:
        return FetchOutcome(
            session=run.session,
            points=run.points,
            anomalies=run.anomalies,
            gaps=list(run.gaps.values()),
            api_stats=run.stats,
            deferred=deferred,
            retry_after=retry_after,
        )

    async def _fetch_part(self, run: _Run, part: DataPart, later_pages: int) -> None:
        """Page through one sub-range until the cursor runs out"""
        session = run.session
        cursor: Optional[str] = None

        while True:
            reservation = self.budget.reserve(run.budget_key)
            if not reservation.granted:
                raise QuotaExceeded(run.budget_key, reservation.retry_after)

            if session.status == SessionStatus.PENDING:
                session.transition(SessionStatus.FETCHING)
                await self.store.upsert_session(session)

            session.api_call_count += 1
            page = await self._call(run, part.date_range, cursor)

            rows = page.rows
            action_types = self.settings.insights_api.conversion_action_types
            validate_page(
                [row.to_validation_row(action_types) for row in rows],
                part.date_range,
                run.seen,
                page_index=session.pages_retrieved,
            )
            points = [row.to_point(session.account_id, action_types) for row in rows]
            await self._merge_page(run, points)

            session.pages_retrieved += 1
            session.total_items += len(points)
            session.total_pages = session.pages_retrieved + (1 if page.has_more else 0) + later_pages
            await self.store.upsert_session(session)

            if not page.has_more:
                return
            if session.pages_retrieved >= self.settings.insights_api.max_pages:
                raise UpstreamError(f"Page limit {self.settings.insights_api.max_pages} reached")
            cursor = page.next_cursor

    async def _call(self, run: _Run, date_range: DateRange, cursor: Optional[str]) -> InsightsPage:
        """One upstream call with outcome accounting"""
        stats = run.stats
        stats.total_calls += 1
        started = time.perf_counter()
        timeout = self.settings.insights_api.timeout_seconds

        try:
            page = await asyncio.wait_for(
                self.source.fetch_page(run.session.account_id, date_range, after=cursor),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            stats.failed_calls += 1
            self.budget.record(run.budget_key, CallOutcome.TIMEOUT)
            raise UpstreamTimeout(f"No response within {timeout}s") from e
        except UpstreamRateLimited:
            stats.failed_calls += 1
            stats.rate_limit_hits += 1
            self.budget.record(run.budget_key, CallOutcome.RATE_LIMITED)
            raise
        except UpstreamTimeout:
            stats.failed_calls += 1
            self.budget.record(run.budget_key, CallOutcome.TIMEOUT)
            raise
        except UpstreamError:
            stats.failed_calls += 1
            self.budget.record(run.budget_key, CallOutcome.FAILURE)
            raise
        except MalformedPage:
            stats.failed_calls += 1
            raise
        finally:
            stats.response_times_ms.append((time.perf_counter() - started) * 1000)

        stats.successful_calls += 1
        self.budget.record(run.budget_key, CallOutcome.SUCCESS)
        return page

    async def _merge_page(self, run: _Run, page_points: List[TimelinePoint]) -> None:
        """Analyze a validated page against stored history and persist it"""
        session = run.session
        for point in page_points:
            run.seen.add((point.ad_id, point.date))
            run.delivered[(point.ad_id, point.date)] = point.has_delivery
            run.ads.add(point.ad_id)
            run.latest = point.date if run.latest is None else max(run.latest, point.date)

        if page_points:
            by_ad: Dict[str, List[TimelinePoint]] = defaultdict(list)
            for point in page_points:
                by_ad[point.ad_id].append(point)

            window = timedelta(days=self.anomaly_detector.baseline_window_days)
            history_range = DateRange(start=session.date_range.start - window, end=session.date_range.end)
            history = await self.store.get_points(session.account_id, history_range)
            # days after the latest fetched one are unknown, not undelivered
            known_range = DateRange(start=session.date_range.start, end=run.latest)

            merged_points: List[TimelinePoint] = []
            page_anomalies: List[AnomalyRecord] = []
            page_gaps: List[GapRecord] = []

            for ad_id, new_points in by_ad.items():
                timeline = self._overlay([p for p in history if p.ad_id == ad_id], new_points)
                annotated, anomalies, gaps = self._analyze_ad(timeline, new_points, known_range)
                merged_points.extend(annotated)
                page_anomalies.extend(anomalies)
                page_gaps.extend(gaps)

            await self.store.upsert_points(merged_points)
            await self.store.insert_anomalies(page_anomalies)
            await self.store.upsert_gaps(page_gaps)

            run.points.extend(merged_points)
            run.anomalies.extend(page_anomalies)
            for gap in page_gaps:
                run.gaps[gap.id] = gap

        delivered_days = sorted({
            day for (_, day), delivered in run.delivered.items()
            if delivered and session.date_range.contains(day)
        })
        session.delivery_analysis = self.delivery_analyzer.summarize_days(delivered_days, session.date_range)

    async def _finalize_gaps(self, run: _Run) -> None:
        """
        Re-detect gaps of every touched ad over the whole covered range, then
        drop or shorten stored gaps that delivery inside the range contradicts.
        That covers gaps from this session's earlier pages and from earlier
        sessions alike.
        """
        session = run.session
        if not run.ads or run.latest is None:
            return

        end = session.date_range.end if session.status == SessionStatus.COMPLETED else run.latest
        covered = DateRange(start=session.date_range.start, end=end)
        stored = await self.store.get_points(session.account_id, covered)

        final: Dict[str, GapRecord] = {}
        closed: Set[str] = set(run.gaps)
        for ad_id in sorted(run.ads):
            timeline = [p for p in stored if p.ad_id == ad_id]
            for gap in self.delivery_analyzer.detect_gaps(timeline, covered):
                final[gap.id] = gap

            delivered_days = {p.date for p in timeline if p.has_delivery}
            contradicted = [
                gap for gap in await self.store.get_gaps(ad_id)
                if gap.account_id == session.account_id
                and gap.id not in final
                and any(gap.start_date <= day <= gap.end_date for day in delivered_days)
            ]
            if contradicted:
                closed.update(gap.id for gap in contradicted)
                final.update(await self._redetect_from(session.account_id, ad_id, contradicted, covered))

        await self.store.upsert_gaps(list(final.values()))
        closed -= set(final)
        if closed:
            await self.store.delete_gaps(closed)
            logger.debug("Gaps closed by delivered days", session_id=session.id, gaps=len(closed))
        run.gaps = final

    async def _redetect_from(
        self,
        account_id: str,
        ad_id: str,
        contradicted: Sequence[GapRecord],
        covered: DateRange,
    ) -> Dict[str, GapRecord]:
        """
        Gaps of one ad from the earliest contradicted gap onwards, scanned with
        enough delivered history before it for the preceding averages.
        """
        first = min(gap.start_date for gap in contradicted)
        lookback = timedelta(days=self.settings.analysis.preceding_window_days)
        window = DateRange(start=first - lookback, end=covered.end)
        timeline = await self.store.get_points(account_id, window, ad_id=ad_id)
        return {
            gap.id: gap
            for gap in self.delivery_analyzer.detect_gaps(timeline, window)
            if gap.start_date >= first
        }

    @staticmethod
    def _overlay(history: Sequence[TimelinePoint], new_points: Sequence[TimelinePoint]) -> List[TimelinePoint]:
        """Stored timeline with the page's points replacing same-day entries"""
        by_day = {p.date: p for p in history}
        for point in new_points:
            by_day[point.date] = point
        return [by_day[d] for d in sorted(by_day)]

    def _analyze_ad(
        self,
        timeline: List[TimelinePoint],
        new_points: Sequence[TimelinePoint],
        date_range: DateRange,
    ) -> Tuple[List[TimelinePoint], List[AnomalyRecord], List[GapRecord]]:
        new_days = {p.date for p in new_points}

        anomalies: List[AnomalyRecord] = []
        for point in timeline:
            if point.date in new_days:
                baseline = self.anomaly_detector.baseline_for(timeline, point.date)
                anomalies.extend(self.anomaly_detector.detect(point, baseline))

        compared = self.delivery_analyzer.annotate_comparisons(timeline)
        annotated = self.anomaly_detector.annotate(
            [p for p in compared if p.date in new_days],
            anomalies,
        )

        report = self.delivery_analyzer.analyze(timeline, date_range)
        return annotated, anomalies, report.gaps

