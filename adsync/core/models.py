"""
Domain Models

Typed records shared by every component of the engine:

- RetrievalSession: one fetch operation for an account and date range
- TimelinePoint: per-ad, per-day performance with delivery annotations
- DeliveryAnalysis: delivery ratio and pattern over a requested range
- AnomalyRecord / GapRecord: detected issues, immutable once written
- CacheEntry: metadata for a cached series in the memory or persistent tier
- PerformanceSnapshot: daily cache and API telemetry per account
"""

import datetime as dt
import uuid
from enum import Enum
from typing import Iterable, Iterator, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utc_now() -> dt.datetime:
    """Timezone-aware current time"""
    return dt.datetime.now(dt.timezone.utc)


# =============================================================================
# ENUMERATIONS
# =============================================================================

class SessionStatus(str, Enum):
    """Retrieval session lifecycle"""
    PENDING = "pending"
    FETCHING = "fetching"
    COMPLETED = "completed"
    FAILED = "failed"


class FailureReason(str, Enum):
    """Why a retrieval session failed"""
    QUOTA_EXHAUSTED = "quota_exhausted"
    RATE_LIMITED = "rate_limited"
    UPSTREAM_ERROR = "upstream_error"
    TIMEOUT = "timeout"
    MALFORMED_PAGE = "malformed_page"


class DeliveryPattern(str, Enum):
    """Delivery pattern bucketed from the delivery ratio"""
    CONTINUOUS = "continuous"
    INTERMITTENT = "intermittent"
    SPARSE = "sparse"
    NONE = "none"


class TrendDirection(str, Enum):
    UP = "up"
    DOWN = "down"
    STABLE = "stable"
    NO_DATA = "no_data"


class BaselineStatus(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"


class AnomalyType(str, Enum):
    """Anomaly rules evaluated per ad-day"""
    HIGH_FREQUENCY = "high_frequency"
    CTR_COLLAPSE = "ctr_collapse"
    SPEND_SPIKE = "spend_spike"
    HIGH_CPM = "high_cpm"
    SPEND_WITHOUT_CONVERSION = "spend_without_conversion"


class AnomalySeverity(str, Enum):
    """Severity levels for anomalies"""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class AnomalyStatus(str, Enum):
    """Externally managed review state of an anomaly"""
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


class GapSeverity(str, Enum):
    MINOR = "minor"
    MAJOR = "major"
    CRITICAL = "critical"


class GapCause(str, Enum):
    """Inferred reason for a delivery gap"""
    BUDGET_EXHAUSTED = "budget_exhausted"
    AUDIENCE_SATURATION = "audience_saturation"
    SCHEDULE_SETTING = "schedule_setting"
    BID_TOO_LOW = "bid_too_low"
    MANUAL_PAUSE = "manual_pause"
    UNKNOWN = "unknown"


class Finality(str, Enum):
    """How much a date range's data can still change upstream"""
    REALTIME = "realtime"  # includes today
    NEARTIME = "neartime"  # includes yesterday
    STABILIZING = "stabilizing"  # inside the attribution window
    FINALIZED = "finalized"


class FreshnessStatus(str, Enum):
    FRESH = "fresh"
    AGING = "aging"
    STALE = "stale"
    EXPIRED = "expired"


class UpdatePriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    UpdatePriority.LOW: 0,
    UpdatePriority.NORMAL: 1,
    UpdatePriority.HIGH: 2,
    UpdatePriority.URGENT: 3,
}


class UpdateStrategy(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    SKIP = "skip"


class CacheLayer(str, Enum):
    """Tier a result was served from"""
    MEMORY = "memory"
    PERSISTENT = "persistent"
    API = "api"


# =============================================================================
# DATE RANGES
# =============================================================================

class DateRange(BaseModel):
    """Inclusive calendar date range"""

    model_config = ConfigDict(frozen=True)

    start: dt.date
    end: dt.date

    @model_validator(mode="after")
    def check_order(self) -> "DateRange":
        if self.start > self.end:
            raise ValueError(f"start {self.start} is after end {self.end}")
        return self

    @property
    def num_days(self) -> int:
        return (self.end - self.start).days + 1

    @property
    def key(self) -> str:
        return f"{self.start.isoformat()}_{self.end.isoformat()}"

    def days(self) -> Iterator[dt.date]:
        current = self.start
        while current <= self.end:
            yield current
            current += dt.timedelta(days=1)

    def contains(self, day: dt.date) -> bool:
        return self.start <= day <= self.end

    @classmethod
    def single(cls, day: dt.date) -> "DateRange":
        return cls(start=day, end=day)

    @classmethod
    def contiguous(cls, days: Iterable[dt.date]) -> List["DateRange"]:
        """Collapse a set of dates into sorted, non-overlapping contiguous ranges"""
        ordered = sorted(set(days))
        ranges: List[DateRange] = []
        if not ordered:
            return ranges

        run_start = prev = ordered[0]
        for day in ordered[1:]:
            if day - prev > dt.timedelta(days=1):
                ranges.append(cls(start=run_start, end=prev))
                run_start = day
            prev = day
        ranges.append(cls(start=run_start, end=prev))
        return ranges

    def __str__(self) -> str:
        return self.key


# =============================================================================
# TIMELINE
# =============================================================================

class PointMetrics(BaseModel):
    """Daily performance metrics for one ad"""
    impressions: int = 0
    clicks: int = 0
    spend: float = 0.0
    reach: int = 0
    frequency: float = 0.0
    ctr: float = 0.0  # percent
    cpc: float = 0.0
    cpm: float = 0.0
    conversions: float = 0.0
    conversion_rate: float = 0.0  # percent of clicks


class PercentageChange(BaseModel):
    daily: Optional[float] = None
    weekly: Optional[float] = None
    monthly: Optional[float] = None


class ComparisonFlags(BaseModel):
    vs_yesterday: TrendDirection = TrendDirection.NO_DATA
    vs_last_week: TrendDirection = TrendDirection.NO_DATA
    vs_baseline: BaselineStatus = BaselineStatus.NORMAL
    percentage_change: PercentageChange = Field(default_factory=PercentageChange)


class TimelinePoint(BaseModel):
    """One ad's performance on one day. Unique per (ad_id, account_id, date)."""
    ad_id: str
    account_id: str
    date: dt.date
    has_delivery: bool = False
    delivery_intensity: int = Field(default=0, ge=0, le=5)
    metrics: PointMetrics = Field(default_factory=PointMetrics)
    comparison_flags: ComparisonFlags = Field(default_factory=ComparisonFlags)
    anomalies: List[str] = Field(default_factory=list)
    ad_name: Optional[str] = None
    campaign_id: Optional[str] = None
    adset_id: Optional[str] = None
    fetched_at: dt.datetime = Field(default_factory=utc_now)

    @property
    def key(self) -> tuple:
        return (self.account_id, self.ad_id, self.date)


# =============================================================================
# ANALYSIS RESULTS
# =============================================================================

class DeliveryAnalysis(BaseModel):
    total_requested_days: int = 0
    actual_delivery_days: int = 0
    delivery_ratio: float = 0.0
    delivery_pattern: DeliveryPattern = DeliveryPattern.NONE
    first_delivery_date: Optional[dt.date] = None
    last_delivery_date: Optional[dt.date] = None


class AnomalyMetrics(BaseModel):
    impact_score: float = 0.0  # 0-100
    affected_spend: float = 0.0
    lost_opportunities: float = 0.0
    deviation_from_baseline: float = 0.0  # relative, e.g. 0.8 = +80%


class AnomalyRecord(BaseModel):
    id: str
    ad_id: str
    account_id: str
    type: AnomalyType
    severity: AnomalySeverity
    date_range: DateRange
    confidence: float = Field(ge=0.0, le=1.0)
    metrics: AnomalyMetrics = Field(default_factory=AnomalyMetrics)
    message: str
    recommendation: str
    detected_at: dt.datetime = Field(default_factory=utc_now)
    status: AnomalyStatus = AnomalyStatus.ACTIVE
    resolved_at: Optional[dt.datetime] = None
    notes: Optional[str] = None

    @property
    def is_critical(self) -> bool:
        return self.severity in [AnomalySeverity.CRITICAL, AnomalySeverity.HIGH]


class GapPrecedingMetrics(BaseModel):
    avg_spend: float = 0.0
    avg_ctr: float = 0.0
    avg_frequency: float = 0.0
    avg_impressions: float = 0.0
    avg_conversions: float = 0.0


class GapAffectedMetrics(BaseModel):
    missed_impressions: float = 0.0
    missed_spend: float = 0.0
    missed_conversions: float = 0.0


class GapRecord(BaseModel):
    id: str
    ad_id: str
    account_id: str
    start_date: dt.date
    end_date: dt.date
    duration_days: int
    severity: GapSeverity
    inferred_cause: GapCause = GapCause.UNKNOWN
    cause_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    affected_metrics: GapAffectedMetrics = Field(default_factory=GapAffectedMetrics)
    preceding_metrics: GapPrecedingMetrics = Field(default_factory=GapPrecedingMetrics)
    ongoing: bool = False
    detected_at: dt.datetime = Field(default_factory=utc_now)


# =============================================================================
# SESSIONS
# =============================================================================

_ALLOWED_TRANSITIONS = {
    SessionStatus.PENDING: {SessionStatus.FETCHING, SessionStatus.FAILED},
    SessionStatus.FETCHING: {SessionStatus.COMPLETED, SessionStatus.FAILED},
    SessionStatus.COMPLETED: set(),
    SessionStatus.FAILED: set(),
}


class RetrievalSession(BaseModel):
    """A fetch of one account's insights over one date range"""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    account_id: str
    date_range: DateRange
    status: SessionStatus = SessionStatus.PENDING
    strategy: UpdateStrategy = UpdateStrategy.FULL
    pages_retrieved: int = 0
    total_pages: Optional[int] = None
    total_items: int = 0
    delivery_analysis: Optional[DeliveryAnalysis] = None
    api_call_count: int = 0
    error_count: int = 0
    failure_reason: Optional[FailureReason] = None
    error_message: Optional[str] = None
    requested_at: dt.datetime = Field(default_factory=utc_now)
    started_at: Optional[dt.datetime] = None
    completed_at: Optional[dt.datetime] = None
    processing_time_ms: Optional[float] = None

    def transition(self, new_status: SessionStatus) -> None:
        """Move to ``new_status``; raises ValueError on an illegal transition"""
        if new_status not in _ALLOWED_TRANSITIONS[self.status]:
            raise ValueError(f"Illegal session transition {self.status.value} -> {new_status.value}")
        self.status = new_status
        now = utc_now()
        if new_status == SessionStatus.FETCHING:
            self.started_at = now
        elif new_status in (SessionStatus.COMPLETED, SessionStatus.FAILED):
            self.completed_at = now
            self.processing_time_ms = (now - self.requested_at).total_seconds() * 1000

    def fail(self, reason: FailureReason, message: str) -> None:
        self.failure_reason = reason
        self.error_message = message
        self.error_count += 1
        self.transition(SessionStatus.FAILED)


# =============================================================================
# CACHE
# =============================================================================

class CacheEntry(BaseModel):
    """Metadata of a cached series"""
    cache_key: str
    account_id: str
    date_range: DateRange
    layer: CacheLayer
    data_type: str = "insights"
    ttl_seconds: int
    data_freshness: Finality
    size_bytes: int = 0
    supports_differential: bool = True
    data_id: Optional[str] = None  # id of the session that produced the data
    hit_count: int = 0
    written_at: dt.datetime = Field(default_factory=utc_now)
    last_accessed_at: Optional[dt.datetime] = None

    @staticmethod
    def build_key(account_id: str, date_range: DateRange, data_type: str = "insights") -> str:
        return f"{account_id}:{data_type}:{date_range.key}"

    @property
    def expires_at(self) -> dt.datetime:
        return self.written_at + dt.timedelta(seconds=self.ttl_seconds)

    def is_expired(self, now: Optional[dt.datetime] = None) -> bool:
        return (now or utc_now()) > self.expires_at


# =============================================================================
# TELEMETRY
# =============================================================================

class StorageUsage(BaseModel):
    memory: int = 0
    persistent: int = 0


class CacheStats(BaseModel):
    hit_rate: float = 0.0  # percent
    api_calls_saved: int = 0
    storage_usage: StorageUsage = Field(default_factory=StorageUsage)


class PerformanceMetrics(BaseModel):
    avg_response_time: float = 0.0
    cache_response_time: float = 0.0
    api_response_time: float = 0.0
    p95_response_time: float = 0.0
    p99_response_time: float = 0.0


class ApiUsage(BaseModel):
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rate_limit_hits: int = 0


class DataQuality(BaseModel):
    completeness_score: float = 100.0
    anomaly_detection_rate: float = 0.0
    false_positive_rate: float = 0.0


class PerformanceSnapshot(BaseModel):
    """Daily telemetry for one account; one row per (account_id, stat_date)"""
    stat_date: dt.date
    account_id: str
    cache_stats: CacheStats = Field(default_factory=CacheStats)
    performance_metrics: PerformanceMetrics = Field(default_factory=PerformanceMetrics)
    api_usage: ApiUsage = Field(default_factory=ApiUsage)
    data_quality: DataQuality = Field(default_factory=DataQuality)
    updated_at: dt.datetime = Field(default_factory=utc_now)
