"""
Unit Tests - Freshness Evaluation
"""
from datetime import date, datetime, timedelta, timezone

import pytest

from adsync.config.settings import FreshnessSettings
from adsync.core.models import DateRange, Finality, FreshnessStatus, UpdatePriority
from adsync.planning.freshness import (
    FreshnessContext,
    FreshnessEvaluator,
    FreshnessHistory,
    classify_finality,
    recommendations,
)

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)
MAY = DateRange(start=date(2024, 5, 1), end=date(2024, 5, 30))


@pytest.fixture
def evaluator() -> FreshnessEvaluator:
    return FreshnessEvaluator(FreshnessSettings(), timezone=timezone.utc, clock=lambda: NOW)


def context(date_range=MAY, age=None, fetched_ranges=None):
    return FreshnessContext(
        account_id="act_1001",
        date_range=date_range,
        last_fetched=NOW - age if age is not None else None,
        fetched_ranges=fetched_ranges if fetched_ranges is not None else [date_range],
        now=NOW,
    )


class TestFinality:
    """Tests for finality classes"""

    @pytest.mark.parametrize("end,finality", [
        (date(2024, 6, 15), Finality.REALTIME),
        (date(2024, 6, 14), Finality.NEARTIME),
        (date(2024, 6, 12), Finality.STABILIZING),
        (date(2024, 6, 11), Finality.FINALIZED),
    ])
    def test_classify(self, end, finality):
        rng = DateRange(start=date(2024, 6, 1), end=end)
        assert classify_finality(rng, date(2024, 6, 15), attribution_window_days=3) == finality

    def test_today_follows_reporting_timezone(self):
        """Test the account's calendar day decides finality"""
        from zoneinfo import ZoneInfo

        late_evening_utc = datetime(2024, 6, 15, 23, 30, tzinfo=timezone.utc)
        evaluator = FreshnessEvaluator(FreshnessSettings(), timezone=ZoneInfo("Asia/Tokyo"))

        assert evaluator.today(late_evening_utc) == date(2024, 6, 16)


class TestEvaluate:
    """Tests for staleness scoring"""

    def test_never_fetched_is_expired(self, evaluator):
        """Test missing fetch time means expired and urgent"""
        state = evaluator.evaluate([], context(fetched_ranges=[]))

        assert state.status == FreshnessStatus.EXPIRED
        assert state.staleness == 100.0
        assert state.update_priority == UpdatePriority.URGENT
        assert state.confidence == 0.0
        assert state.missing_ranges == [MAY]

    def test_recent_fetch_is_fresh(self, evaluator):
        """Test a finalized range fetched a minute ago is fresh"""
        state = evaluator.evaluate([], context(age=timedelta(minutes=1)))

        assert state.status == FreshnessStatus.FRESH
        assert state.update_priority == UpdatePriority.LOW
        assert state.finality == Finality.FINALIZED
        assert state.confidence == 1.0
        assert state.next_update_at > NOW

    def test_staleness_strictly_increasing(self, evaluator):
        """Test staleness rises with every extra second of age"""
        ages = [0, 1, 60, 3600, 86400, 7 * 86400, 30 * 86400]

        scores = [evaluator.staleness(a, Finality.FINALIZED) for a in ages]

        assert all(a < b for a, b in zip(scores, scores[1:]))
        assert all(0 <= s < 100 for s in scores)

    def test_status_progression(self, evaluator):
        """Test status moves fresh -> aging -> stale -> expired with age"""
        statuses = [
            evaluator.evaluate([], context(age=timedelta(days=d))).status
            for d in (1, 3, 7, 14)
        ]

        assert statuses == [
            FreshnessStatus.FRESH,
            FreshnessStatus.AGING,
            FreshnessStatus.STALE,
            FreshnessStatus.EXPIRED,
        ]

    def test_recent_range_decays_faster(self, evaluator):
        """Test a range including today goes stale within hours"""
        today = DateRange(start=date(2024, 6, 10), end=date(2024, 6, 15))

        state = evaluator.evaluate([], context(date_range=today, age=timedelta(hours=1)))

        assert state.finality == Finality.REALTIME
        assert state.status == FreshnessStatus.STALE

    def test_recent_range_priority_at_least_high(self, evaluator):
        """Test fresh data touching yesterday still gets high priority"""
        rng = DateRange(start=date(2024, 6, 1), end=date(2024, 6, 14))

        state = evaluator.evaluate([], context(date_range=rng, age=timedelta(seconds=30)))

        assert state.status == FreshnessStatus.FRESH
        assert state.update_priority == UpdatePriority.HIGH

    def test_missing_ranges(self, evaluator, make_point):
        """Test held points and fetched ranges cover days"""
        held = [make_point("ad_1", date(2024, 5, d)) for d in range(1, 11)]
        fetched = [DateRange(start=date(2024, 5, 21), end=date(2024, 5, 30))]

        state = evaluator.evaluate(held, context(age=timedelta(hours=1), fetched_ranges=fetched))

        assert state.missing_ranges == [DateRange(start=date(2024, 5, 11), end=date(2024, 5, 20))]
        assert state.confidence == pytest.approx(20 / 30, abs=1e-4)
        assert state.completeness == pytest.approx(66.67, abs=0.01)

    def test_evaluate_is_pure(self, evaluator, make_point):
        """Test identical inputs give identical states"""
        held = [make_point("ad_1", date(2024, 5, d)) for d in range(1, 31)]
        ctx = context(age=timedelta(days=2))

        assert evaluator.evaluate(held, ctx) == evaluator.evaluate(held, ctx)
        assert evaluator.evaluate(held, ctx) == evaluator.evaluate(list(reversed(held)), ctx)


class TestHistory:
    """Tests for transition tracking"""

    def test_records_transitions(self, evaluator):
        """Test only status changes are recorded"""
        history = FreshnessHistory(size=5)
        key = "act_1001:insights:2024-05-01_2024-05-30"

        assert history.record(key, evaluator.evaluate([], context(age=timedelta(hours=1)))) is None
        assert history.record(key, evaluator.evaluate([], context(age=timedelta(hours=2)))) is None
        transition = history.record(key, evaluator.evaluate([], context(age=timedelta(days=14))))

        assert transition.from_status == FreshnessStatus.FRESH
        assert transition.to_status == FreshnessStatus.EXPIRED
        assert history.transitions(key) == [transition]

    def test_history_is_bounded(self, evaluator):
        """Test old transitions are dropped"""
        history = FreshnessHistory(size=2)
        for age in (1, 14, 1, 14, 1):
            history.record("k", evaluator.evaluate([], context(age=timedelta(days=age))))

        assert len(history.transitions("k")) == 2


class TestRecommendations:
    """Tests for refresh advice"""

    def test_expired_with_holes(self, evaluator):
        advice = recommendations(evaluator.evaluate([], context(fetched_ranges=[])))

        assert any("full refresh" in a for a in advice)
        assert any("missing days" in a for a in advice)

    def test_current(self, evaluator):
        advice = recommendations(evaluator.evaluate([], context(age=timedelta(minutes=5))))

        assert advice == ["Data is current; no refresh needed"]
