"""
Unit Tests - Insights Engine

Caller-facing operations end to end over the in-memory store.
"""
import asyncio
from datetime import date

import pytest

from adsync.core.models import (
    AnomalyStatus,
    AnomalyType,
    CacheEntry,
    DateRange,
    FailureReason,
    SessionStatus,
)
from adsync.database.store import InMemoryStore
from adsync.engine import InsightsEngine
from adsync.exceptions import NotFoundError, UpstreamError

ACCOUNT_ID = "act_1001"
MAY = DateRange(start=date(2024, 5, 1), end=date(2024, 5, 30))
SPIKE_DAY = date(2024, 5, 20)


@pytest.fixture
async def engine_for(test_settings, budget, clock):
    """Build engines over custom sources; all are closed on teardown"""
    engines = []

    def factory(source):
        engine = InsightsEngine(InMemoryStore(), source, settings=test_settings, budget=budget, clock=clock)
        engines.append(engine)
        return engine

    yield factory

    for engine in engines:
        await engine.close()


@pytest.fixture
def spiking_source(make_source, make_rows, make_row):
    """ad_1 quadruples its spend on May 20"""
    rows = [
        make_row("ad_1", SPIKE_DAY, spend=40.0) if r.date_start == SPIKE_DAY and r.ad_id == "ad_1" else r
        for r in make_rows(["ad_1", "ad_2"], MAY)
    ]
    return make_source(rows)


class TestRequestSeries:
    """Tests for series requests"""

    async def test_returns_points(self, engine):
        points = await engine.request_series(ACCOUNT_ID, MAY)

        assert len(points) == 60
        assert all(p.has_delivery for p in points)
        assert points[0].ad_id == "ad_1"

    async def test_single_ad(self, engine):
        points = await engine.request_series(ACCOUNT_ID, MAY, ad_id="ad_2")

        assert {p.ad_id for p in points} == {"ad_2"}
        assert [p.date for p in points] == list(MAY.days())

    async def test_concurrent_requests_share_one_load(self, engine_for, make_source, make_rows):
        """Test two concurrent requests make one session, one write and one set of counted calls"""
        source = make_source(make_rows(["ad_1", "ad_2"], MAY), delay=0.01)
        engine = engine_for(source)

        first, second = await asyncio.gather(
            engine.request_series(ACCOUNT_ID, MAY),
            engine.request_series(ACCOUNT_ID, MAY),
        )

        entry = await engine.store.get_cache_entry(CacheEntry.build_key(ACCOUNT_ID, MAY))
        snapshot = await engine.get_performance_snapshot(ACCOUNT_ID, date(2024, 6, 15))

        assert len(first) == len(second) == 60
        assert source.call_count == 3
        assert entry.hit_count == 0
        assert snapshot.api_usage.total_calls == 3
        assert snapshot.api_usage.successful_calls == 3

    async def test_upstream_failure_never_raises(self, engine_for, make_source, make_rows):
        """Test a failed fetch returns what is held and records the failure"""
        source = make_source(make_rows(["ad_1"], MAY), failures={1: UpstreamError("Service unavailable", status_code=503)})
        engine = engine_for(source)

        points = await engine.request_series(ACCOUNT_ID, MAY)
        result = await engine.fetch_series(ACCOUNT_ID, MAY)

        assert points == []
        assert result.session.status == SessionStatus.COMPLETED
        assert len(result.points) == 30

    async def test_failed_session_recorded(self, engine_for, make_source, make_rows):
        source = make_source(make_rows(["ad_1"], MAY), failures={1: UpstreamError("Service unavailable", status_code=503)})
        engine = engine_for(source)

        result = await engine.fetch_series(ACCOUNT_ID, MAY)
        session = await engine.get_session_status(result.session.id)

        assert session.status == SessionStatus.FAILED
        assert session.failure_reason == FailureReason.UPSTREAM_ERROR
        assert result.points == []

    async def test_freshness_report(self, engine):
        await engine.request_series(ACCOUNT_ID, MAY)

        report = await engine.get_freshness(ACCOUNT_ID, MAY)

        assert report["freshness"].status.value == "fresh"
        assert report["recommendations"] == ["Data is current; no refresh needed"]


class TestSessions:
    """Tests for session status lookups"""

    async def test_completed_session(self, engine):
        result = await engine.fetch_series(ACCOUNT_ID, MAY)

        session = await engine.get_session_status(result.session.id)

        assert session.status == SessionStatus.COMPLETED
        assert session.pages_retrieved == 3
        assert session.total_items == 60
        assert session.delivery_analysis.delivery_ratio == 1.0

    async def test_unknown_session(self, engine):
        with pytest.raises(NotFoundError):
            await engine.get_session_status("missing")


class TestAnomalies:
    """Tests for anomaly queries and review"""

    async def test_active_anomalies(self, engine_for, spiking_source):
        engine = engine_for(spiking_source)
        await engine.request_series(ACCOUNT_ID, MAY)

        active = await engine.get_active_anomalies("ad_1")

        assert AnomalyType.SPEND_SPIKE in {a.type for a in active}
        assert all(a.date_range.start == SPIKE_DAY for a in active)
        assert await engine.get_active_anomalies("ad_2") == []

    async def test_dismissed_anomaly_leaves_active_set(self, engine_for, spiking_source):
        """Test dismissals drop out of the active set and feed the false positive rate"""
        engine = engine_for(spiking_source)
        await engine.request_series(ACCOUNT_ID, MAY)
        active = await engine.get_active_anomalies("ad_1")
        spike = next(a for a in active if a.type == AnomalyType.SPEND_SPIKE)

        updated = await engine.update_anomaly_status(spike.id, AnomalyStatus.DISMISSED, notes="planned promotion")
        await engine.request_series(ACCOUNT_ID, MAY)

        assert updated.status == AnomalyStatus.DISMISSED
        assert spike.id not in {a.id for a in await engine.get_active_anomalies("ad_1")}
        snapshot = await engine.get_performance_snapshot(ACCOUNT_ID, date(2024, 6, 15))
        assert snapshot.data_quality.false_positive_rate == round(100 / len(active), 2)

    async def test_unknown_anomaly(self, engine):
        with pytest.raises(NotFoundError):
            await engine.update_anomaly_status("anom_missing", AnomalyStatus.RESOLVED)


class TestGaps:
    """Tests for gap queries"""

    async def test_gap_recorded(self, engine_for, make_source, make_rows):
        skipped = [date(2024, 5, d) for d in range(10, 15)]
        engine = engine_for(make_source(make_rows(["ad_1", "ad_2"], MAY, skip={"ad_1": skipped})))
        await engine.request_series(ACCOUNT_ID, MAY)

        gaps = await engine.get_gaps("ad_1")

        assert [g.id for g in gaps] == ["gap_act_1001_ad_1_2024-05-10"]
        assert gaps[0].duration_days == 5
        assert not gaps[0].ongoing
        assert await engine.get_gaps("ad_2") == []

    async def test_gap_summary(self, engine_for, make_source, make_rows):
        skipped = [date(2024, 5, d) for d in range(10, 15)]
        engine = engine_for(make_source(make_rows(["ad_1", "ad_2"], MAY, skip={"ad_1": skipped})))
        await engine.request_series(ACCOUNT_ID, MAY)

        summary = await engine.get_gap_summary(ACCOUNT_ID)

        assert summary["total_gaps"] == 1
        assert summary["total_gap_days"] == 5
        assert summary["affected_ads"] == 1
        assert summary["missed_spend"] > 0


class TestPerformanceSnapshot:
    """Tests for snapshot lookups"""

    async def test_snapshot_after_requests(self, engine):
        await engine.request_series(ACCOUNT_ID, MAY)
        await engine.request_series(ACCOUNT_ID, MAY)

        snapshot = await engine.get_performance_snapshot(ACCOUNT_ID, date(2024, 6, 15))

        assert snapshot.stat_date == date(2024, 6, 15)
        assert snapshot.cache_stats.hit_rate == 50.0
        assert snapshot.api_usage.total_calls == 3

    async def test_missing_snapshot(self, engine):
        with pytest.raises(NotFoundError):
            await engine.get_performance_snapshot(ACCOUNT_ID, date(2024, 6, 14))


class TestLifecycle:
    """Tests for maintenance and shutdown"""

    async def test_refresh_stale_entries(self, engine, source, clock):
        await engine.request_series(ACCOUNT_ID, MAY)
        clock.advance(days=7)

        results = await engine.refresh_stale_entries()

        assert len(results) == 1
        assert source.call_count == 4

    async def test_invalidate(self, engine):
        await engine.request_series(ACCOUNT_ID, MAY)

        assert await engine.invalidate(ACCOUNT_ID, MAY)
        assert not await engine.invalidate(ACCOUNT_ID, MAY)

    async def test_close_closes_source(self, engine, source):
        await engine.request_series(ACCOUNT_ID, MAY)

        await engine.close()

        assert source.closed
