"""
Differential Update Planning

Turns a freshness state into a fetch plan: skip, fetch only the parts that
changed (incremental), or re-fetch the whole range (full).

The planner reads the call budget without reserving it and downgrades
full -> incremental -> skip until the estimate fits what remains.
"""

import math
from datetime import date, timedelta
from typing import List, Optional, Sequence, Set

import structlog
from pydantic import BaseModel, Field

from adsync.config import get_settings
from adsync.config.settings import AnalysisSettings
from adsync.core.models import (
    DateRange,
    FreshnessStatus,
    TimelinePoint,
    UpdatePriority,
    UpdateStrategy,
)
from adsync.ingestion.rate_budget import RateBudgetTracker, budget_key
from adsync.planning.freshness import FreshnessState

logger = structlog.get_logger(__name__)


class DataPart(BaseModel):
    """A contiguous sub-range to fetch"""
    date_range: DateRange
    reason: str  # full_range | missing_days | volatile_tail
    estimated_calls: int = 1


class PlanContext(BaseModel):
    account_id: str
    date_range: DateRange
    freshness: FreshnessState
    budget_key: Optional[str] = None


class UpdatePlan(BaseModel):
    strategy: UpdateStrategy
    estimated_api_calls: int = 0
    estimated_duration: float = 0.0  # seconds
    priority: UpdatePriority = UpdatePriority.NORMAL
    data_parts: List[DataPart] = Field(default_factory=list)
    reason: str = ""
    downgraded_from: Optional[UpdateStrategy] = None
    budget_remaining: Optional[int] = None

    @property
    def fetch_ranges(self) -> List[DateRange]:
        return [part.date_range for part in self.data_parts]


class DifferentialUpdatePlanner:
    """
    Chooses the cheapest fetch that restores freshness within budget.

    Example:
        planner = DifferentialUpdatePlanner(budget=tracker)
        plan = planner.create_update_plan(points, PlanContext(
            account_id="act_1", date_range=rng, freshness=state,
        ))
    """

    def __init__(
        self,
        budget: Optional[RateBudgetTracker] = None,
        settings: Optional[AnalysisSettings] = None,
        page_size: Optional[int] = None,
    ):
        app_settings = get_settings()
        self.budget = budget
        self.settings = settings or app_settings.analysis
        self.page_size = page_size or app_settings.insights_api.page_size
        self.budget_scope = app_settings.rate_budget.scope

    def estimate_calls(self, date_range: DateRange, known_ads: int) -> int:
        return max(1, math.ceil(date_range.num_days * max(1, known_ads) / self.page_size))

    def _parts(self, ranges: Sequence[DateRange], reason_for, known_ads: int) -> List[DataPart]:
        return [
            DataPart(
                date_range=r,
                reason=reason_for(r),
                estimated_calls=self.estimate_calls(r, known_ads),
            )
            for r in ranges
        ]

    def _full_parts(self, date_range: DateRange, known_ads: int) -> List[DataPart]:
        return self._parts([date_range], lambda r: "full_range", known_ads)

    def _incremental_parts(self, context: PlanContext, known_ads: int) -> List[DataPart]:
        date_range = context.date_range
        missing: Set[date] = set()
        for hole in context.freshness.missing_ranges:
            missing.update(hole.days())

        tail_start = max(date_range.start, date_range.end - timedelta(days=self.settings.volatile_tail_days - 1))
        tail = set(DateRange(start=tail_start, end=date_range.end).days())

        def reason_for(r: DateRange) -> str:
            days = set(r.days())
            return "missing_days" if days & missing and not days <= tail else "volatile_tail"

        return self._parts(DateRange.contiguous(missing | tail), reason_for, known_ads)

    def _plan(
        self,
        strategy: UpdateStrategy,
        parts: List[DataPart],
        priority: UpdatePriority,
        reason: str,
    ) -> UpdatePlan:
        calls = sum(p.estimated_calls for p in parts)
        return UpdatePlan(
            strategy=strategy,
            estimated_api_calls=calls,
            estimated_duration=round(calls * self.settings.seconds_per_call + len(parts) * 0.1, 2),
            priority=priority,
            data_parts=parts,
            reason=reason,
        )

    def create_update_plan(
        self,
        current_data: Sequence[TimelinePoint],
        context: PlanContext,
    ) -> UpdatePlan:
        freshness = context.freshness
        priority = freshness.update_priority
        known_ads = len({p.ad_id for p in current_data}) or self.settings.default_ads_estimate

        if freshness.status == FreshnessStatus.FRESH:
            return self._plan(UpdateStrategy.SKIP, [], priority, "data is fresh")

        if freshness.status == FreshnessStatus.EXPIRED or freshness.confidence < self.settings.min_confidence:
            reason = (
                "data expired" if freshness.status == FreshnessStatus.EXPIRED
                else f"coverage {freshness.confidence:.0%} below minimum"
            )
            plan = self._plan(UpdateStrategy.FULL, self._full_parts(context.date_range, known_ads), priority, reason)
        else:
            plan = self._plan(
                UpdateStrategy.INCREMENTAL,
                self._incremental_parts(context, known_ads),
                priority,
                f"data {freshness.status.value}; refreshing missing days and recent tail",
            )

        if self.budget is None:
            return plan

        key = context.budget_key or budget_key(context.account_id, self.budget_scope)
        remaining = self.budget.remaining(key)
        original = plan.strategy

        if plan.strategy == UpdateStrategy.FULL and plan.estimated_api_calls > remaining:
            plan = self._plan(
                UpdateStrategy.INCREMENTAL,
                self._incremental_parts(context, known_ads),
                priority,
                f"full refresh needs {plan.estimated_api_calls} calls, {remaining} available",
            )
        if plan.strategy == UpdateStrategy.INCREMENTAL and plan.estimated_api_calls > remaining:
            plan = self._plan(
                UpdateStrategy.SKIP,
                [],
                priority,
                f"refresh needs {plan.estimated_api_calls} calls, {remaining} available",
            )

        plan.budget_remaining = remaining
        if plan.strategy != original:
            plan.downgraded_from = original
            logger.info(
                "Update plan downgraded",
                account_id=context.account_id,
                date_range=context.date_range.key,
                from_strategy=original.value,
                to_strategy=plan.strategy.value,
                remaining=remaining,
            )

        return plan
