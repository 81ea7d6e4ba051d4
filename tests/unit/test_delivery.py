"""
Unit Tests - Delivery & Gap Analysis
"""
from datetime import date, timedelta

import pytest

from adsync.core.models import (
    DateRange,
    DeliveryPattern,
    GapCause,
    GapPrecedingMetrics,
    GapSeverity,
    TrendDirection,
)
from adsync.exceptions import InvalidTimelineError
from adsync.quality.delivery import (
    DeliveryAnalyzer,
    classify_pattern,
    delivery_intensity,
    gap_severity,
    infer_gap_cause,
    summarize_gaps,
)

JUNE = DateRange(start=date(2024, 6, 1), end=date(2024, 6, 30))


def timeline(make_point, days, ad_id="ad_1", **metrics):
    return [make_point(ad_id, day, **metrics) for day in days]


def june(*day_numbers):
    return [date(2024, 6, d) for d in day_numbers]


@pytest.fixture
def analyzer() -> DeliveryAnalyzer:
    return DeliveryAnalyzer(min_gap_days=2, preceding_window_days=7, stable_band_pct=10.0)


class TestDeliveryRatio:
    """Tests for delivery ratio and pattern"""

    def test_full_delivery_is_continuous(self, analyzer, make_point):
        """Test every day delivered gives ratio 1"""
        result = analyzer.analyze_delivery(timeline(make_point, JUNE.days()), JUNE)

        assert result.total_requested_days == 30
        assert result.actual_delivery_days == 30
        assert result.delivery_ratio == 1.0
        assert result.delivery_pattern == DeliveryPattern.CONTINUOUS

    def test_missing_days_count_as_no_delivery(self, analyzer, make_point):
        """Test days without a point lower the ratio"""
        result = analyzer.analyze_delivery(timeline(make_point, june(*range(1, 16))), JUNE)

        assert result.delivery_ratio == 0.5
        assert result.delivery_pattern == DeliveryPattern.INTERMITTENT
        assert result.first_delivery_date == date(2024, 6, 1)
        assert result.last_delivery_date == date(2024, 6, 15)

    def test_zero_impression_points_are_not_delivery(self, analyzer, make_point):
        """Test points with no impressions do not count"""
        points = timeline(make_point, JUNE.days(), impressions=0, clicks=0, spend=0.0)

        result = analyzer.analyze_delivery(points, JUNE)

        assert result.actual_delivery_days == 0
        assert result.delivery_pattern == DeliveryPattern.NONE
        assert result.first_delivery_date is None

    def test_pattern_is_monotonic_in_ratio(self):
        """Test a higher ratio never gives a sparser pattern"""
        order = [DeliveryPattern.NONE, DeliveryPattern.SPARSE, DeliveryPattern.INTERMITTENT, DeliveryPattern.CONTINUOUS]
        ratios = [i / 100 for i in range(0, 101)]

        ranks = [order.index(classify_pattern(r)) for r in ratios]

        assert ranks == sorted(ranks)
        assert classify_pattern(0.0) == DeliveryPattern.NONE
        assert classify_pattern(0.05) == DeliveryPattern.SPARSE
        assert classify_pattern(0.9) == DeliveryPattern.CONTINUOUS

    def test_account_level_counts_any_ad(self, analyzer, make_point):
        """Test a day counts for the account when any ad delivered"""
        points = timeline(make_point, june(1, 2, 3), ad_id="ad_1") + timeline(make_point, june(4, 5), ad_id="ad_2")
        rng = DateRange(start=date(2024, 6, 1), end=date(2024, 6, 5))

        assert analyzer.analyze_account(points, rng).delivery_ratio == 1.0


class TestGapDetection:
    """Tests for non-delivery runs"""

    def test_single_five_day_gap(self, analyzer, make_point):
        """Test one five-day hole yields exactly one five-day gap"""
        days = [d for d in JUNE.days() if not date(2024, 6, 10) <= d <= date(2024, 6, 14)]

        gaps = analyzer.detect_gaps(timeline(make_point, days), JUNE)

        assert len(gaps) == 1
        gap = gaps[0]
        assert gap.start_date == date(2024, 6, 10)
        assert gap.end_date == date(2024, 6, 14)
        assert gap.duration_days == 5
        assert gap.severity == GapSeverity.MAJOR
        assert gap.ongoing is False
        assert gap.id == "gap_act_1001_ad_1_2024-06-10"

    def test_leading_non_delivery_is_not_a_gap(self, analyzer, make_point):
        """Test days before the first delivery are not reported"""
        gaps = analyzer.detect_gaps(timeline(make_point, june(*range(10, 31))), JUNE)

        assert gaps == []

    def test_trailing_run_is_ongoing(self, analyzer, make_point):
        """Test a run reaching the range end is an ongoing gap"""
        gaps = analyzer.detect_gaps(timeline(make_point, june(*range(1, 21))), JUNE)

        assert len(gaps) == 1
        assert gaps[0].ongoing is True
        assert gaps[0].end_date == JUNE.end
        assert gaps[0].duration_days == 10
        assert gaps[0].severity == GapSeverity.CRITICAL

    def test_short_runs_ignored(self, analyzer, make_point):
        """Test runs shorter than the minimum are not gaps"""
        days = [d for d in JUNE.days() if d != date(2024, 6, 12)]

        assert analyzer.detect_gaps(timeline(make_point, days), JUNE) == []

    def test_affected_metrics_from_preceding_days(self, analyzer, make_point):
        """Test missed spend extrapolates the preceding average"""
        days = [d for d in JUNE.days() if not date(2024, 6, 10) <= d <= date(2024, 6, 12)]

        gap = analyzer.detect_gaps(timeline(make_point, days, spend=20.0), JUNE)[0]

        assert gap.preceding_metrics.avg_spend == pytest.approx(20.0)
        assert gap.affected_metrics.missed_spend == pytest.approx(60.0)
        assert gap.affected_metrics.missed_impressions == pytest.approx(3000.0)

    def test_analyze_reports_gaps_and_delivery(self, analyzer, make_point):
        """Test analyze combines both results"""
        days = [d for d in JUNE.days() if not date(2024, 6, 10) <= d <= date(2024, 6, 14)]

        report = analyzer.analyze(timeline(make_point, days), JUNE)

        assert report.ad_id == "ad_1"
        assert report.delivery.actual_delivery_days == 25
        assert len(report.gaps) == 1
        assert not report.has_critical_gaps

    def test_rejects_duplicate_dates(self, analyzer, make_point):
        """Test duplicate days are refused"""
        points = timeline(make_point, june(1, 2, 2))

        with pytest.raises(InvalidTimelineError):
            analyzer.analyze(points, JUNE)

    def test_rejects_out_of_order_dates(self, analyzer, make_point):
        """Test unordered timelines are refused"""
        points = timeline(make_point, june(3, 1))

        with pytest.raises(InvalidTimelineError):
            analyzer.analyze(points, JUNE)

    def test_rejects_mixed_ads(self, analyzer, make_point):
        """Test a timeline must belong to one ad"""
        points = [make_point("ad_1", date(2024, 6, 1)), make_point("ad_2", date(2024, 6, 2))]

        with pytest.raises(InvalidTimelineError):
            analyzer.analyze(points, JUNE)


class TestGapClassification:
    """Tests for gap severity and cause"""

    @pytest.mark.parametrize("duration,severity", [
        (2, GapSeverity.MINOR),
        (3, GapSeverity.MAJOR),
        (6, GapSeverity.MAJOR),
        (7, GapSeverity.CRITICAL),
    ])
    def test_severity_by_duration(self, duration, severity):
        assert gap_severity(duration) == severity

    def test_weekend_gap_is_schedule(self):
        """Test a Saturday-Sunday gap is attributed to scheduling"""
        saturday = date(2024, 6, 8)
        cause, confidence = infer_gap_cause(saturday, saturday + timedelta(days=1), GapPrecedingMetrics(), None)

        assert cause == GapCause.SCHEDULE_SETTING
        assert confidence == 0.6

    def test_high_frequency_is_saturation(self):
        """Test high preceding frequency suggests audience saturation"""
        preceding = GapPrecedingMetrics(avg_frequency=4.2)

        cause, _ = infer_gap_cause(date(2024, 6, 3), date(2024, 6, 5), preceding, None)

        assert cause == GapCause.AUDIENCE_SATURATION

    def test_spend_surge_is_budget(self, make_point):
        """Test a last-day spend surge suggests an exhausted budget"""
        preceding = GapPrecedingMetrics(avg_spend=10.0, avg_impressions=1000.0)
        last = make_point("ad_1", date(2024, 6, 2), spend=15.0)

        cause, _ = infer_gap_cause(date(2024, 6, 3), date(2024, 6, 5), preceding, last)

        assert cause == GapCause.BUDGET_EXHAUSTED

    def test_long_gap_is_manual_pause(self):
        """Test a week-long gap without other signals reads as a pause"""
        cause, _ = infer_gap_cause(date(2024, 6, 3), date(2024, 6, 12), GapPrecedingMetrics(), None)

        assert cause == GapCause.MANUAL_PAUSE

    def test_summary(self, analyzer, make_point):
        """Test account rollup of gaps"""
        days = [d for d in JUNE.days() if not date(2024, 6, 10) <= d <= date(2024, 6, 14)]
        gaps = analyzer.detect_gaps(timeline(make_point, days), JUNE)
        gaps += analyzer.detect_gaps(timeline(make_point, june(*range(1, 21)), ad_id="ad_2"), JUNE)

        summary = summarize_gaps(gaps)

        assert summary["total_gaps"] == 2
        assert summary["total_gap_days"] == 15
        assert summary["ongoing_gaps"] == 1
        assert summary["affected_ads"] == 2
        assert summary["by_severity"]["critical"] == 1


class TestAnnotations:
    """Tests for intensity and comparison flags"""

    @pytest.mark.parametrize("impressions,level", [
        (0, 0), (50, 1), (500, 2), (4_000, 3), (10_000, 4), (50_000, 5),
    ])
    def test_intensity_buckets(self, impressions, level):
        assert delivery_intensity(impressions) == level

    def test_day_over_day_flags(self, analyzer, make_point):
        """Test comparisons against the previous day and week"""
        points = [
            make_point("ad_1", date(2024, 6, 1), impressions=1000),
            make_point("ad_1", date(2024, 6, 2), impressions=1500),
            make_point("ad_1", date(2024, 6, 8), impressions=1050),
        ]

        annotated = analyzer.annotate_comparisons(points)

        assert annotated[0].comparison_flags.vs_yesterday == TrendDirection.NO_DATA
        assert annotated[1].comparison_flags.vs_yesterday == TrendDirection.UP
        assert annotated[1].comparison_flags.percentage_change.daily == pytest.approx(50.0)
        assert annotated[2].comparison_flags.vs_last_week == TrendDirection.STABLE
