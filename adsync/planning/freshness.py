"""
Freshness Evaluation

Scores how stale a cached series is and how urgently it should be refreshed.

Staleness grows with the age of the last fetch on an exponential curve whose
time scale depends on how final the range's data is upstream:

    realtime     range includes today
    neartime     range includes yesterday
    stabilizing  range ends inside the attribution window
    finalized    everything older

``FreshnessEvaluator.evaluate`` is a pure function of its arguments and the
injected clock. Transition tracking lives in ``FreshnessHistory``.
"""

import math
from collections import defaultdict, deque
from datetime import date, datetime, timedelta, tzinfo
from typing import Callable, Deque, Dict, Iterable, List, Optional, Set

import structlog
from pydantic import BaseModel, Field

from adsync.config import get_settings
from adsync.config.settings import FreshnessSettings
from adsync.core.models import (
    DateRange,
    Finality,
    FreshnessStatus,
    TimelinePoint,
    UpdatePriority,
    utc_now,
)

logger = structlog.get_logger(__name__)

_STATUS_PRIORITY = {
    FreshnessStatus.FRESH: UpdatePriority.LOW,
    FreshnessStatus.AGING: UpdatePriority.NORMAL,
    FreshnessStatus.STALE: UpdatePriority.HIGH,
    FreshnessStatus.EXPIRED: UpdatePriority.URGENT,
}


class FreshnessContext(BaseModel):
    """Inputs describing what is held for a range"""
    account_id: str
    date_range: DateRange
    last_fetched: Optional[datetime] = None
    fetched_ranges: List[DateRange] = Field(default_factory=list)  # known complete, even where no rows exist
    now: Optional[datetime] = None


class FreshnessState(BaseModel):
    status: FreshnessStatus
    update_priority: UpdatePriority
    staleness: float = Field(ge=0.0, le=100.0)
    confidence: float = Field(ge=0.0, le=1.0)
    finality: Finality
    missing_ranges: List[DateRange] = Field(default_factory=list)
    age_seconds: Optional[float] = None
    next_update_at: Optional[datetime] = None
    evaluated_at: datetime

    @property
    def completeness(self) -> float:
        """Percent of requested days held"""
        return self.confidence * 100


class FreshnessTransition(BaseModel):
    key: str
    from_status: FreshnessStatus
    to_status: FreshnessStatus
    at: datetime


def classify_finality(date_range: DateRange, today: date, attribution_window_days: int = 3) -> Finality:
    if date_range.end >= today:
        return Finality.REALTIME
    if date_range.end >= today - timedelta(days=1):
        return Finality.NEARTIME
    if date_range.end >= today - timedelta(days=attribution_window_days):
        return Finality.STABILIZING
    return Finality.FINALIZED


class FreshnessEvaluator:
    """
    Scores staleness (0-100) and maps it to a status and update priority.

    Example:
        evaluator = FreshnessEvaluator()
        state = evaluator.evaluate(points, FreshnessContext(
            account_id="act_1", date_range=rng, last_fetched=fetched_at,
        ))
    """

    def __init__(
        self,
        settings: Optional[FreshnessSettings] = None,
        timezone: Optional[tzinfo] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        app_settings = get_settings()
        self.settings = settings or app_settings.freshness
        self.timezone = timezone or app_settings.timezone
        self._clock = clock

    def scale_for(self, finality: Finality) -> float:
        return {
            Finality.REALTIME: self.settings.realtime_scale_seconds,
            Finality.NEARTIME: self.settings.neartime_scale_seconds,
            Finality.STABILIZING: self.settings.stabilizing_scale_seconds,
            Finality.FINALIZED: self.settings.finalized_scale_seconds,
        }[finality]

    def today(self, now: datetime) -> date:
        return now.astimezone(self.timezone).date()

    def finality_of(self, date_range: DateRange, now: Optional[datetime] = None) -> Finality:
        return classify_finality(
            date_range,
            self.today(now or self._clock()),
            self.settings.attribution_window_days,
        )

    def staleness(self, age_seconds: float, finality: Finality) -> float:
        """Strictly increasing in age, bounded by 100"""
        return 100.0 * (1.0 - math.exp(-max(0.0, age_seconds) / self.scale_for(finality)))

    def status_for(self, staleness: float) -> FreshnessStatus:
        s = self.settings
        return (
            FreshnessStatus.FRESH if staleness < s.fresh_threshold
            else FreshnessStatus.AGING if staleness < s.aging_threshold
            else FreshnessStatus.STALE if staleness < s.stale_threshold
            else FreshnessStatus.EXPIRED
        )

    def evaluate(self, series: Iterable[TimelinePoint], context: FreshnessContext) -> FreshnessState:
        now = context.now or self._clock()
        today = self.today(now)
        date_range = context.date_range
        finality = classify_finality(date_range, today, self.settings.attribution_window_days)

        covered: Set[date] = {p.date for p in series if date_range.contains(p.date)}
        for fetched in context.fetched_ranges:
            covered.update(d for d in fetched.days() if date_range.contains(d))
        missing = [d for d in date_range.days() if d not in covered]
        confidence = 1.0 - len(missing) / date_range.num_days

        if context.last_fetched is None:
            age = None
            staleness = 100.0
            status = FreshnessStatus.EXPIRED
            next_update_at = now
        else:
            age = max(0.0, (now - context.last_fetched).total_seconds())
            staleness = self.staleness(age, finality)
            status = self.status_for(staleness)
            # age at which staleness crosses out of "fresh"
            fresh_age = -self.scale_for(finality) * math.log(1.0 - self.settings.fresh_threshold / 100.0)
            next_update_at = max(now, context.last_fetched + timedelta(seconds=fresh_age))

        priority = _STATUS_PRIORITY[status]
        touches_recent = date_range.end >= today - timedelta(days=1) and date_range.start <= today
        if touches_recent and priority.rank < UpdatePriority.HIGH.rank:
            priority = UpdatePriority.HIGH

        return FreshnessState(
            status=status,
            update_priority=priority,
            staleness=round(staleness, 4),
            confidence=round(confidence, 4),
            finality=finality,
            missing_ranges=DateRange.contiguous(missing),
            age_seconds=age,
            next_update_at=next_update_at,
            evaluated_at=now,
        )


class FreshnessHistory:
    """Remembers the last few status transitions per cache key"""

    def __init__(self, size: Optional[int] = None):
        self.size = size or get_settings().freshness.history_size
        self._last: Dict[str, FreshnessStatus] = {}
        self._transitions: Dict[str, Deque[FreshnessTransition]] = defaultdict(lambda: deque(maxlen=self.size))

    def record(self, key: str, state: FreshnessState) -> Optional[FreshnessTransition]:
        previous = self._last.get(key)
        self._last[key] = state.status
        if previous is None or previous == state.status:
            return None

        transition = FreshnessTransition(
            key=key,
            from_status=previous,
            to_status=state.status,
            at=state.evaluated_at,
        )
        self._transitions[key].append(transition)
        logger.debug(
            "Freshness transition",
            key=key,
            from_status=previous.value,
            to_status=state.status.value,
        )
        return transition

    def transitions(self, key: str) -> List[FreshnessTransition]:
        return list(self._transitions.get(key, ()))


def recommendations(state: FreshnessState) -> List[str]:
    """Human-readable refresh advice for a freshness state"""
    advice = []
    if state.status == FreshnessStatus.EXPIRED:
        advice.append("Data has expired; a full refresh is required")
    elif state.status == FreshnessStatus.STALE:
        advice.append("Data is stale; schedule a refresh soon")
    if state.confidence < 1.0:
        advice.append(f"{state.completeness:.0f}% of requested days are held; fetch the missing days")
    if state.finality in (Finality.REALTIME, Finality.NEARTIME):
        advice.append("Range includes recent days that are still changing upstream")
    if not advice:
        advice.append("Data is current; no refresh needed")
    return advice
