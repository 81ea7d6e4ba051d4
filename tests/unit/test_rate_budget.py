"""
Unit Tests - Rate Budget
"""
from concurrent.futures import ThreadPoolExecutor

import pytest

from adsync.config.settings import RateBudgetSettings
from adsync.ingestion.rate_budget import (
    GLOBAL_KEY,
    CallOutcome,
    RateBudgetTracker,
    budget_key,
)


def tracker_with(monotonic, **overrides) -> RateBudgetTracker:
    values = {"hourly_quota": 5, "daily_quota": 20, "penalty_window_seconds": 600}
    values.update(overrides)
    return RateBudgetTracker(RateBudgetSettings(**values), clock=monotonic)


class TestReserve:
    """Tests for sliding-window reservations"""

    def test_grants_until_hourly_quota(self, monotonic):
        """Test reservations are granted up to the hourly quota"""
        tracker = tracker_with(monotonic)

        granted = [tracker.reserve("act_1") for _ in range(5)]

        assert all(r.granted for r in granted)
        assert granted[-1].remaining == 0
        assert not tracker.reserve("act_1").granted

    def test_denial_reports_retry_after(self, monotonic):
        """Test a denial says when the oldest call leaves the window"""
        tracker = tracker_with(monotonic)
        for _ in range(5):
            tracker.reserve("act_1")
        monotonic.advance(600)

        denied = tracker.reserve("act_1")

        assert not denied.granted
        assert denied.reason == "hourly"
        assert denied.retry_after == pytest.approx(3000)

    def test_window_slides(self, monotonic):
        """Test calls older than an hour stop counting"""
        tracker = tracker_with(monotonic)
        for _ in range(5):
            tracker.reserve("act_1")

        monotonic.advance(3600)

        assert tracker.reserve("act_1").granted
        assert tracker.usage("act_1").hourly_used == 1

    def test_daily_quota(self, monotonic):
        """Test the daily window caps calls across hours"""
        tracker = tracker_with(monotonic, daily_quota=7)
        for _ in range(5):
            tracker.reserve("act_1")
        monotonic.advance(3600)
        tracker.reserve("act_1")
        tracker.reserve("act_1")

        denied = tracker.reserve("act_1")

        assert not denied.granted
        assert denied.reason == "daily"
        assert denied.retry_after > 3600

    def test_batch_reservation_is_all_or_nothing(self, monotonic):
        """Test a reservation larger than what remains takes nothing"""
        tracker = tracker_with(monotonic)
        tracker.reserve("act_1", n=3)

        assert not tracker.reserve("act_1", n=3).granted
        assert tracker.remaining("act_1") == 2

    def test_rejects_non_positive_size(self, monotonic):
        """Test zero-sized reservations are refused"""
        tracker = tracker_with(monotonic)

        with pytest.raises(ValueError):
            tracker.reserve("act_1", n=0)

    def test_keys_are_independent(self, monotonic):
        """Test one exhausted key does not affect another"""
        tracker = tracker_with(monotonic)
        for _ in range(5):
            tracker.reserve("act_1")

        assert tracker.reserve("act_2").granted
        assert tracker.remaining("act_1") == 0

    def test_concurrent_reservations_never_exceed_quota(self, monotonic):
        """Test threads racing on one key get exactly the quota"""
        tracker = tracker_with(monotonic, hourly_quota=10, daily_quota=100)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: tracker.reserve("act_1"), range(50)))

        assert sum(1 for r in results if r.granted) == 10
        assert tracker.usage("act_1").hourly_used == 10


class TestOutcomes:
    """Tests for back-off after upstream failures"""

    def test_rate_limit_halves_allowance(self, monotonic):
        """Test a 429 halves the hourly limit"""
        tracker = tracker_with(monotonic, hourly_quota=10)

        tracker.record("act_1", CallOutcome.RATE_LIMITED)

        usage = tracker.usage("act_1")
        assert usage.allowance == pytest.approx(0.5)
        assert usage.hourly_limit == 5
        assert usage.outcomes["rate_limited"] == 1

    def test_allowance_has_floor(self, monotonic):
        """Test repeated throttling stops at the minimum allowance"""
        tracker = tracker_with(monotonic, hourly_quota=10, min_allowance_ratio=0.2)

        for _ in range(10):
            tracker.record("act_1", CallOutcome.RATE_LIMITED)

        assert tracker.usage("act_1").allowance == pytest.approx(0.2)
        assert tracker.usage("act_1").hourly_limit == 2

    def test_allowance_restored_after_penalty(self, monotonic):
        """Test the reduction lapses after the penalty window"""
        tracker = tracker_with(monotonic, hourly_quota=10)
        tracker.record("act_1", CallOutcome.TIMEOUT)
        assert tracker.usage("act_1").hourly_limit == 8

        monotonic.advance(601)

        assert tracker.usage("act_1").hourly_limit == 10

    def test_success_leaves_allowance(self, monotonic):
        """Test successful calls are only counted"""
        tracker = tracker_with(monotonic)

        tracker.record("act_1", CallOutcome.SUCCESS)

        usage = tracker.usage("act_1")
        assert usage.allowance == 1.0
        assert usage.outcomes["success"] == 1

    def test_reset(self, monotonic):
        """Test reset forgets a key's usage"""
        tracker = tracker_with(monotonic)
        for _ in range(5):
            tracker.reserve("act_1")

        tracker.reset("act_1")

        assert tracker.remaining("act_1") == 5


class TestBudgetKey:
    """Tests for budget key scoping"""

    def test_account_scope(self):
        assert budget_key("act_1", "account") == "act_1"

    def test_global_scope(self):
        assert budget_key("act_1", "global") == GLOBAL_KEY
