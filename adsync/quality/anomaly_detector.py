"""
Anomaly Detection Module

Rule-based anomaly detection for per-ad daily performance.
Each rule compares one day against a trailing baseline of the same ad:

- high_frequency: frequency well above baseline (audience fatigue)
- ctr_collapse: click-through rate well below baseline
- spend_spike: spend well above baseline
- high_cpm: cost per mille well above baseline
- spend_without_conversion: a converting ad spends without converting
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import structlog

from adsync.config import get_settings
from adsync.core.models import (
    AnomalyMetrics,
    AnomalyRecord,
    AnomalySeverity,
    AnomalyType,
    BaselineStatus,
    DateRange,
    TimelinePoint,
    utc_now,
)
from adsync.quality.delivery import check_timeline

logger = structlog.get_logger(__name__)

BASELINE_METRICS = ("impressions", "spend", "frequency", "ctr", "cpm", "conversions")

MESSAGES = {
    AnomalyType.HIGH_FREQUENCY: (
        "Frequency {value:.2f} is {pct:.0f}% above the {window}-day baseline of {expected:.2f}",
        "Refresh creatives or broaden the audience to reduce ad fatigue",
    ),
    AnomalyType.CTR_COLLAPSE: (
        "CTR {value:.2f}% is {pct:.0f}% below the {window}-day baseline of {expected:.2f}%",
        "Review creative relevance and placement; consider rotating in new creatives",
    ),
    AnomalyType.SPEND_SPIKE: (
        "Spend {value:.2f} is {pct:.0f}% above the {window}-day baseline of {expected:.2f}",
        "Check budget and bid changes; confirm the increase was intended",
    ),
    AnomalyType.HIGH_CPM: (
        "CPM {value:.2f} is {pct:.0f}% above the {window}-day baseline of {expected:.2f}",
        "Audience competition is rising; review targeting overlap and bid strategy",
    ),
    AnomalyType.SPEND_WITHOUT_CONVERSION: (
        "Spent {value:.2f} with no conversions against a baseline of {expected:.2f} conversions/day",
        "Verify conversion tracking and landing page health before increasing spend",
    ),
}


@dataclass
class Baseline:
    """Trailing per-metric statistics for one ad"""
    samples: int
    window_days: int
    means: Dict[str, float] = field(default_factory=dict)
    stds: Dict[str, float] = field(default_factory=dict)

    @classmethod
    def from_points(cls, points: Sequence[TimelinePoint], window_days: int) -> "Baseline":
        """Baseline over the delivered points given; non-delivery days are ignored"""
        delivered = [p for p in points if p.has_delivery]
        means: Dict[str, float] = {}
        stds: Dict[str, float] = {}
        if delivered:
            for name in BASELINE_METRICS:
                values = np.array([float(getattr(p.metrics, name)) for p in delivered])
                means[name] = float(np.mean(values))
                stds[name] = float(np.std(values))
        return cls(samples=len(delivered), window_days=window_days, means=means, stds=stds)

    def mean(self, name: str) -> float:
        return self.means.get(name, 0.0)

    @property
    def confidence(self) -> float:
        if self.window_days <= 0:
            return 0.0
        return min(1.0, self.samples / self.window_days)


@dataclass
class AnomalyReport:
    """Anomaly detection report for one ad timeline"""
    started_at: datetime
    completed_at: datetime
    points_checked: int
    anomalies_found: int
    critical_count: int
    anomalies: List[AnomalyRecord] = field(default_factory=list)

    @property
    def has_critical_anomalies(self) -> bool:
        return self.critical_count > 0


def severity_for(deviation: float, threshold: float) -> AnomalySeverity:
    ratio = deviation / threshold if threshold > 0 else 0.0
    return (
        AnomalySeverity.CRITICAL if ratio >= 3
        else AnomalySeverity.HIGH if ratio >= 2
        else AnomalySeverity.MEDIUM if ratio >= 1.5
        else AnomalySeverity.LOW
    )


def anomaly_id(point: TimelinePoint, anomaly_type: AnomalyType) -> str:
    return f"anom_{point.account_id}_{point.ad_id}_{anomaly_type.value}_{point.date.isoformat()}"


class AnomalyDetector:
    """
    Anomaly detector for ad delivery metrics.

    Every rule yields a deviation from baseline and the threshold it was
    compared against. Severity scales with deviation / threshold; confidence
    with how full the baseline window is.

    Example:
        detector = AnomalyDetector()
        baseline = Baseline.from_points(previous_14_days, window_days=14)
        records = detector.detect(today_point, baseline)
    """

    def __init__(
        self,
        baseline_window_days: Optional[int] = None,
        min_baseline_samples: Optional[int] = None,
        frequency_threshold: Optional[float] = None,
        frequency_floor: Optional[float] = None,
        ctr_drop_threshold: Optional[float] = None,
        spend_spike_threshold: Optional[float] = None,
        cpm_threshold: Optional[float] = None,
    ):
        analysis = get_settings().analysis
        self.baseline_window_days = baseline_window_days or analysis.baseline_window_days
        self.min_baseline_samples = min_baseline_samples or analysis.min_baseline_samples
        self.frequency_threshold = frequency_threshold or analysis.frequency_threshold
        self.frequency_floor = frequency_floor if frequency_floor is not None else analysis.frequency_floor
        self.ctr_drop_threshold = ctr_drop_threshold or analysis.ctr_drop_threshold
        self.spend_spike_threshold = spend_spike_threshold or analysis.spend_spike_threshold
        self.cpm_threshold = cpm_threshold or analysis.cpm_threshold

        self._rules: List[Tuple[AnomalyType, Callable]] = [
            (AnomalyType.HIGH_FREQUENCY, self._check_frequency),
            (AnomalyType.CTR_COLLAPSE, self._check_ctr),
            (AnomalyType.SPEND_SPIKE, self._check_spend),
            (AnomalyType.HIGH_CPM, self._check_cpm),
            (AnomalyType.SPEND_WITHOUT_CONVERSION, self._check_conversions),
        ]

    # Each check returns (value, expected, deviation, threshold, signed deviation) or None

    def _check_frequency(self, point: TimelinePoint, baseline: Baseline):
        expected = baseline.mean("frequency")
        value = point.metrics.frequency
        if expected <= 0 or value < self.frequency_floor:
            return None
        deviation = (value - expected) / expected
        if deviation < self.frequency_threshold:
            return None
        return value, expected, deviation, self.frequency_threshold, deviation

    def _check_ctr(self, point: TimelinePoint, baseline: Baseline):
        expected = baseline.mean("ctr")
        if expected <= 0 or point.metrics.impressions <= 0:
            return None
        drop = (expected - point.metrics.ctr) / expected
        if drop < self.ctr_drop_threshold:
            return None
        return point.metrics.ctr, expected, drop, self.ctr_drop_threshold, -drop

    def _check_spend(self, point: TimelinePoint, baseline: Baseline):
        expected = baseline.mean("spend")
        if expected <= 0:
            return None
        deviation = (point.metrics.spend - expected) / expected
        if deviation < self.spend_spike_threshold:
            return None
        return point.metrics.spend, expected, deviation, self.spend_spike_threshold, deviation

    def _check_cpm(self, point: TimelinePoint, baseline: Baseline):
        expected = baseline.mean("cpm")
        if expected <= 0 or point.metrics.impressions <= 0:
            return None
        deviation = (point.metrics.cpm - expected) / expected
        if deviation < self.cpm_threshold:
            return None
        return point.metrics.cpm, expected, deviation, self.cpm_threshold, deviation

    def _check_conversions(self, point: TimelinePoint, baseline: Baseline):
        expected_conversions = baseline.mean("conversions")
        expected_spend = baseline.mean("spend")
        if expected_conversions <= 0 or expected_spend <= 0 or point.metrics.conversions > 0:
            return None
        spend_ratio = point.metrics.spend / expected_spend
        if spend_ratio < 0.5:
            return None
        return point.metrics.spend, expected_conversions, spend_ratio, 0.5, -1.0

    def _impact(
        self,
        anomaly_type: AnomalyType,
        point: TimelinePoint,
        baseline: Baseline,
        ratio: float,
        signed: float,
    ) -> AnomalyMetrics:
        metrics = point.metrics
        affected_spend = metrics.spend
        lost = 0.0

        if anomaly_type == AnomalyType.SPEND_SPIKE:
            affected_spend = max(0.0, metrics.spend - baseline.mean("spend"))
        elif anomaly_type == AnomalyType.CTR_COLLAPSE:
            lost = max(0.0, (baseline.mean("ctr") - metrics.ctr) / 100 * metrics.impressions)
        elif anomaly_type == AnomalyType.HIGH_CPM:
            # impressions the same spend would have bought at baseline CPM
            lost = max(0.0, metrics.spend * 1000 / baseline.mean("cpm") - metrics.impressions)
        elif anomaly_type == AnomalyType.SPEND_WITHOUT_CONVERSION:
            lost = baseline.mean("conversions")

        return AnomalyMetrics(
            impact_score=round(min(100.0, ratio * 25.0), 2),
            affected_spend=round(affected_spend, 2),
            lost_opportunities=round(lost, 2),
            deviation_from_baseline=round(signed, 4),
        )

    def detect(
        self,
        point: TimelinePoint,
        baseline: Baseline,
        detected_at: Optional[datetime] = None,
    ) -> List[AnomalyRecord]:
        """Run every rule against one ad-day"""
        if not point.has_delivery or baseline.samples < self.min_baseline_samples:
            return []

        detected_at = detected_at or utc_now()
        records = []

        for anomaly_type, check in self._rules:
            result = check(point, baseline)
            if result is None:
                continue
            value, expected, deviation, threshold, signed = result
            severity = severity_for(deviation, threshold)
            template, recommendation = MESSAGES[anomaly_type]

            records.append(AnomalyRecord(
                id=anomaly_id(point, anomaly_type),
                ad_id=point.ad_id,
                account_id=point.account_id,
                type=anomaly_type,
                severity=severity,
                date_range=DateRange.single(point.date),
                confidence=round(baseline.confidence, 4),
                metrics=self._impact(anomaly_type, point, baseline, deviation / threshold, signed),
                message=template.format(
                    value=value,
                    expected=expected,
                    pct=abs(signed) * 100,
                    window=baseline.window_days,
                ),
                recommendation=recommendation,
                detected_at=detected_at,
            ))

        return records

    def baseline_for(self, timeline: Sequence[TimelinePoint], day: date) -> Baseline:
        """Baseline from the points inside the window strictly before ``day``"""
        window_start = day - timedelta(days=self.baseline_window_days)
        trailing = [p for p in timeline if window_start <= p.date < day]
        return Baseline.from_points(trailing, self.baseline_window_days)

    def detect_series(self, points: Sequence[TimelinePoint]) -> AnomalyReport:
        """
        Detect anomalies across one ad's timeline.

        Each day is compared against the delivered days in the trailing
        baseline window that precede it.

        Args:
            points: Strictly date-ordered points for a single ad

        Returns:
            AnomalyReport with all detected anomalies
        """
        check_timeline(points)
        started_at = utc_now()
        anomalies: List[AnomalyRecord] = []

        for point in points:
            baseline = self.baseline_for(points, point.date)
            anomalies.extend(self.detect(point, baseline, detected_at=started_at))

        critical_count = sum(1 for a in anomalies if a.is_critical)
        report = AnomalyReport(
            started_at=started_at,
            completed_at=utc_now(),
            points_checked=len(points),
            anomalies_found=len(anomalies),
            critical_count=critical_count,
            anomalies=anomalies,
        )

        if report.has_critical_anomalies:
            logger.warning(
                "Critical anomalies detected",
                ad_id=points[0].ad_id if points else None,
                critical=critical_count,
                total_anomalies=len(anomalies),
            )
        else:
            logger.debug("Anomaly detection complete", anomalies=len(anomalies))

        return report

    @staticmethod
    def annotate(points: Sequence[TimelinePoint], anomalies: Sequence[AnomalyRecord]) -> List[TimelinePoint]:
        """Attach anomaly ids and baseline status to the points they were found on"""
        annotated = []
        for point in points:
            found = [
                a for a in anomalies
                if a.ad_id == point.ad_id and a.date_range.start == point.date
            ]
            if not found:
                annotated.append(point)
                continue
            status = (
                BaselineStatus.CRITICAL if any(a.is_critical for a in found)
                else BaselineStatus.WARNING
            )
            flags = point.comparison_flags.model_copy(update={"vs_baseline": status})
            ids = sorted(set(point.anomalies) | {a.id for a in found})
            annotated.append(point.model_copy(update={"anomalies": ids, "comparison_flags": flags}))
        return annotated
