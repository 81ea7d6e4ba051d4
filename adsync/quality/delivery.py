"""
Delivery & Gap Analysis Module

Classifies per-day delivery for an ad over a requested date range and detects
contiguous non-delivery runs (gaps).

The walk covers every calendar day of the range, not only the points present:
a missing day counts as no delivery. Non-delivery runs before the first
delivered day are not gaps; a run still open at the end of the range is
reported as an ongoing gap.

Gap severity by duration:
    < 3 days   minor
    < 7 days   major
    >= 7 days  critical

Inferred cause (first matching rule wins):
    weekend-only run of <= 2 days        schedule_setting     0.60
    preceding avg frequency >= 3.5        audience_saturation  0.70
    last day spend >= 1.2x preceding avg  budget_exhausted     0.60
    last day impressions <= 0.5x avg      bid_too_low          0.45
    run of >= 7 days                      manual_pause         0.35
    otherwise                             unknown              0.20
"""

from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import structlog

from adsync.config import get_settings
from adsync.core.models import (
    ComparisonFlags,
    DateRange,
    DeliveryAnalysis,
    DeliveryPattern,
    GapAffectedMetrics,
    GapCause,
    GapPrecedingMetrics,
    GapRecord,
    GapSeverity,
    PercentageChange,
    TimelinePoint,
    TrendDirection,
)
from adsync.exceptions import InvalidTimelineError

logger = structlog.get_logger(__name__)

SATURATION_FREQUENCY = 3.5
BUDGET_SPEND_RATIO = 1.2
BID_IMPRESSION_RATIO = 0.5
MANUAL_PAUSE_DAYS = 7

# Upper impression bounds for intensity levels 1-4; anything above is 5
INTENSITY_BOUNDS = (100, 1_000, 5_000, 20_000)


@dataclass
class DeliveryReport:
    """Delivery analysis of one ad over one range"""
    ad_id: str
    date_range: DateRange
    delivery: DeliveryAnalysis
    gaps: List[GapRecord] = field(default_factory=list)

    @property
    def has_critical_gaps(self) -> bool:
        return any(g.severity == GapSeverity.CRITICAL for g in self.gaps)


def classify_pattern(ratio: float) -> DeliveryPattern:
    """Bucket a delivery ratio; monotonic in ``ratio``"""
    if ratio >= 0.9:
        return DeliveryPattern.CONTINUOUS
    if ratio >= 0.3:
        return DeliveryPattern.INTERMITTENT
    if ratio > 0:
        return DeliveryPattern.SPARSE
    return DeliveryPattern.NONE


def delivery_intensity(impressions: int) -> int:
    """0-5 intensity bucket from daily impressions"""
    if impressions <= 0:
        return 0
    for level, bound in enumerate(INTENSITY_BOUNDS, start=1):
        if impressions < bound:
            return level
    return 5


def gap_severity(duration_days: int) -> GapSeverity:
    return (
        GapSeverity.CRITICAL if duration_days >= 7
        else GapSeverity.MAJOR if duration_days >= 3
        else GapSeverity.MINOR
    )


def infer_gap_cause(
    start: date,
    end: date,
    preceding: GapPrecedingMetrics,
    last_delivered: Optional[TimelinePoint],
) -> Tuple[GapCause, float]:
    """Heuristic cause for a gap and the confidence of that label"""
    duration = (end - start).days + 1
    days = [start + timedelta(days=i) for i in range(duration)]

    if duration <= 2 and all(d.weekday() >= 5 for d in days):
        return GapCause.SCHEDULE_SETTING, 0.6

    if preceding.avg_frequency >= SATURATION_FREQUENCY:
        return GapCause.AUDIENCE_SATURATION, 0.7

    if last_delivered is not None:
        last = last_delivered.metrics
        if preceding.avg_spend > 0 and last.spend >= BUDGET_SPEND_RATIO * preceding.avg_spend:
            return GapCause.BUDGET_EXHAUSTED, 0.6
        if preceding.avg_impressions > 0 and last.impressions <= BID_IMPRESSION_RATIO * preceding.avg_impressions:
            return GapCause.BID_TOO_LOW, 0.45

    if duration >= MANUAL_PAUSE_DAYS:
        return GapCause.MANUAL_PAUSE, 0.35

    return GapCause.UNKNOWN, 0.2


def check_timeline(points: Sequence[TimelinePoint]) -> None:
    """Reject duplicate or out-of-order dates"""
    for prev, curr in zip(points, points[1:]):
        if curr.date <= prev.date:
            kind = "duplicate" if curr.date == prev.date else "out-of-order"
            raise InvalidTimelineError(
                f"{kind} date {curr.date} after {prev.date} for ad {curr.ad_id}"
            )


def _direction(current: float, previous: Optional[float], band_pct: float) -> Tuple[TrendDirection, Optional[float]]:
    if previous is None or previous <= 0:
        return TrendDirection.NO_DATA, None
    change = (current - previous) / previous * 100
    if change > band_pct:
        return TrendDirection.UP, change
    if change < -band_pct:
        return TrendDirection.DOWN, change
    return TrendDirection.STABLE, change


class DeliveryAnalyzer:
    """
    Delivery and gap analyzer for per-ad daily timelines.

    Example:
        analyzer = DeliveryAnalyzer(min_gap_days=2)
        report = analyzer.analyze(points, DateRange(start=..., end=...))
        report.delivery.delivery_pattern, report.gaps
    """

    def __init__(
        self,
        min_gap_days: Optional[int] = None,
        preceding_window_days: Optional[int] = None,
        stable_band_pct: Optional[float] = None,
    ):
        analysis = get_settings().analysis
        self.min_gap_days = min_gap_days or analysis.min_gap_days
        self.preceding_window_days = preceding_window_days or analysis.preceding_window_days
        self.stable_band_pct = stable_band_pct if stable_band_pct is not None else analysis.stable_band_pct

    def analyze(self, points: Sequence[TimelinePoint], date_range: DateRange) -> DeliveryReport:
        """Delivery analysis plus gaps for one ad's timeline"""
        check_timeline(points)
        ad_ids = {p.ad_id for p in points}
        if len(ad_ids) > 1:
            raise InvalidTimelineError(f"Timeline mixes ads: {sorted(ad_ids)}")

        in_range = [p for p in points if date_range.contains(p.date)]
        ad_id = next(iter(ad_ids)) if ad_ids else ""
        delivery = self.analyze_delivery(in_range, date_range)
        gaps = self.detect_gaps(in_range, date_range)

        if gaps:
            logger.info(
                "Delivery gaps detected",
                ad_id=ad_id,
                gaps=len(gaps),
                longest=max(g.duration_days for g in gaps),
            )

        return DeliveryReport(ad_id=ad_id, date_range=date_range, delivery=delivery, gaps=gaps)

    def analyze_delivery(self, points: Iterable[TimelinePoint], date_range: DateRange) -> DeliveryAnalysis:
        delivered_days = sorted({
            p.date for p in points
            if p.has_delivery and date_range.contains(p.date)
        })
        return self.summarize_days(delivered_days, date_range)

    def analyze_account(self, points: Iterable[TimelinePoint], date_range: DateRange) -> DeliveryAnalysis:
        """Account-level delivery: a day counts if any ad delivered on it"""
        return self.analyze_delivery(points, date_range)

    @staticmethod
    def summarize_days(delivered_days: List[date], date_range: DateRange) -> DeliveryAnalysis:
        """Delivery analysis from the sorted list of delivered days"""
        total = date_range.num_days
        actual = len(delivered_days)
        ratio = actual / total if total else 0.0
        return DeliveryAnalysis(
            total_requested_days=total,
            actual_delivery_days=actual,
            delivery_ratio=ratio,
            delivery_pattern=classify_pattern(ratio),
            first_delivery_date=delivered_days[0] if delivered_days else None,
            last_delivery_date=delivered_days[-1] if delivered_days else None,
        )

    def detect_gaps(self, points: Sequence[TimelinePoint], date_range: DateRange) -> List[GapRecord]:
        """Walk every day of the range and emit a gap per long-enough non-delivery run"""
        by_day: Dict[date, TimelinePoint] = {p.date: p for p in points}
        if not by_day:
            return []
        sample = next(iter(by_day.values()))

        gaps: List[GapRecord] = []
        delivered: List[TimelinePoint] = []
        run_start: Optional[date] = None

        for day in date_range.days():
            point = by_day.get(day)
            if point is not None and point.has_delivery:
                if run_start is not None and delivered:
                    gap = self._build_gap(sample, run_start, day - timedelta(days=1), delivered, ongoing=False)
                    if gap is not None:
                        gaps.append(gap)
                run_start = None
                delivered.append(point)
            elif run_start is None:
                run_start = day

        if run_start is not None and delivered:
            gap = self._build_gap(sample, run_start, date_range.end, delivered, ongoing=True)
            if gap is not None:
                gaps.append(gap)

        return gaps

    def _build_gap(
        self,
        sample: TimelinePoint,
        start: date,
        end: date,
        delivered: List[TimelinePoint],
        ongoing: bool,
    ) -> Optional[GapRecord]:
        duration = (end - start).days + 1
        if duration < self.min_gap_days:
            return None

        window = delivered[-self.preceding_window_days:]
        preceding = GapPrecedingMetrics(
            avg_spend=float(np.mean([p.metrics.spend for p in window])),
            avg_ctr=float(np.mean([p.metrics.ctr for p in window])),
            avg_frequency=float(np.mean([p.metrics.frequency for p in window])),
            avg_impressions=float(np.mean([p.metrics.impressions for p in window])),
            avg_conversions=float(np.mean([p.metrics.conversions for p in window])),
        )
        cause, confidence = infer_gap_cause(start, end, preceding, delivered[-1])

        return GapRecord(
            id=f"gap_{sample.account_id}_{sample.ad_id}_{start.isoformat()}",
            ad_id=sample.ad_id,
            account_id=sample.account_id,
            start_date=start,
            end_date=end,
            duration_days=duration,
            severity=gap_severity(duration),
            inferred_cause=cause,
            cause_confidence=confidence,
            affected_metrics=GapAffectedMetrics(
                missed_impressions=preceding.avg_impressions * duration,
                missed_spend=preceding.avg_spend * duration,
                missed_conversions=preceding.avg_conversions * duration,
            ),
            preceding_metrics=preceding,
            ongoing=ongoing,
        )

    def annotate_comparisons(self, points: Sequence[TimelinePoint]) -> List[TimelinePoint]:
        """
        Fill day-over-day, week-over-week and month-over-month comparison
        flags on impressions. Baseline status is left as set by the anomaly
        detector.
        """
        check_timeline(points)
        by_day = {p.date: p for p in points}
        annotated = []

        for point in points:
            def previous(days_back: int) -> Optional[float]:
                prior = by_day.get(point.date - timedelta(days=days_back))
                return float(prior.metrics.impressions) if prior is not None else None

            current = float(point.metrics.impressions)
            vs_yesterday, daily = _direction(current, previous(1), self.stable_band_pct)
            vs_last_week, weekly = _direction(current, previous(7), self.stable_band_pct)
            _, monthly = _direction(current, previous(30), self.stable_band_pct)

            flags = ComparisonFlags(
                vs_yesterday=vs_yesterday,
                vs_last_week=vs_last_week,
                vs_baseline=point.comparison_flags.vs_baseline,
                percentage_change=PercentageChange(daily=daily, weekly=weekly, monthly=monthly),
            )
            annotated.append(point.model_copy(update={"comparison_flags": flags}))

        return annotated


def summarize_gaps(gaps: Iterable[GapRecord]) -> Dict[str, object]:
    """Account-level rollup of gap records"""
    gaps = list(gaps)
    by_severity = {s.value: 0 for s in GapSeverity}
    by_cause: Dict[str, int] = {}
    for gap in gaps:
        by_severity[gap.severity.value] += 1
        by_cause[gap.inferred_cause.value] = by_cause.get(gap.inferred_cause.value, 0) + 1

    return {
        "total_gaps": len(gaps),
        "total_gap_days": sum(g.duration_days for g in gaps),
        "ongoing_gaps": sum(1 for g in gaps if g.ongoing),
        "affected_ads": len({g.ad_id for g in gaps}),
        "missed_spend": sum(g.affected_metrics.missed_spend for g in gaps),
        "missed_impressions": sum(g.affected_metrics.missed_impressions for g in gaps),
        "by_severity": by_severity,
        "by_cause": by_cause,
    }
