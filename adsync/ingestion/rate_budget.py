"""
Rate Budget Tracker

Sliding-window call budgeting for the upstream insights API.

Each budget key (an ad account, or "global") has an hourly and a daily window.
``reserve`` is atomic per key: concurrent reservations on one key never exceed
the quota, and distinct keys never contend. Upstream throttling and failures
shrink the key's hourly allowance until the penalty window passes.
"""

import math
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Dict, Optional, Union

import structlog

from adsync.config import get_settings
from adsync.config.settings import RateBudgetSettings

logger = structlog.get_logger(__name__)

HOUR_SECONDS = 3600.0
DAY_SECONDS = 86400.0
GLOBAL_KEY = "global"


class CallOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"


@dataclass(frozen=True)
class Granted:
    key: str
    count: int
    remaining: int

    granted = True


@dataclass(frozen=True)
class Denied:
    key: str
    retry_after: float
    reason: str

    granted = False


Reservation = Union[Granted, Denied]


@dataclass
class BudgetUsage:
    key: str
    hourly_used: int
    daily_used: int
    hourly_limit: int
    daily_limit: int
    allowance: float
    outcomes: Dict[str, int]

    @property
    def remaining(self) -> int:
        return max(0, min(self.hourly_limit - self.hourly_used, self.daily_limit - self.daily_used))


@dataclass
class _KeyState:
    lock: threading.Lock = field(default_factory=threading.Lock)
    hourly: Deque[float] = field(default_factory=deque)
    daily: Deque[float] = field(default_factory=deque)
    allowance: float = 1.0
    penalty_until: float = 0.0
    outcomes: Dict[str, int] = field(default_factory=lambda: {o.value: 0 for o in CallOutcome})


def budget_key(account_id: str, scope: str = "account") -> str:
    return account_id if scope == "account" else GLOBAL_KEY


class RateBudgetTracker:
    """
    Per-key sliding-window call budget.

    Example:
        tracker = RateBudgetTracker()
        reservation = tracker.reserve("act_123")
        if reservation.granted:
            ...call upstream...
            tracker.record("act_123", CallOutcome.SUCCESS)
    """

    def __init__(
        self,
        settings: Optional[RateBudgetSettings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or get_settings().rate_budget
        self._clock = clock
        self._states: Dict[str, _KeyState] = {}
        self._registry_lock = threading.Lock()

    def _state(self, key: str) -> _KeyState:
        with self._registry_lock:
            state = self._states.get(key)
            if state is None:
                state = self._states[key] = _KeyState()
            return state

    @staticmethod
    def _prune(window: Deque[float], now: float, span: float) -> None:
        while window and window[0] <= now - span:
            window.popleft()

    def _hourly_limit(self, state: _KeyState, now: float) -> int:
        if state.allowance < 1.0 and now >= state.penalty_until:
            state.allowance = 1.0
        return max(1, math.floor(self.settings.hourly_quota * state.allowance))

    def _refresh(self, state: _KeyState, now: float) -> int:
        """Prune windows; return the current hourly limit. Caller holds the lock."""
        self._prune(state.hourly, now, HOUR_SECONDS)
        self._prune(state.daily, now, DAY_SECONDS)
        return self._hourly_limit(state, now)

    @staticmethod
    def _wait_for(window: Deque[float], needed: int, span: float, now: float) -> float:
        """Seconds until ``needed`` slots free up in ``window``"""
        if needed <= 0:
            return 0.0
        if needed > len(window):
            return span
        return max(0.0, window[needed - 1] + span - now)

    def reserve(self, key: str, n: int = 1) -> Reservation:
        """Atomically reserve ``n`` calls, or say how long to wait"""
        if n < 1:
            raise ValueError("Reservation size must be positive")

        state = self._state(key)
        with state.lock:
            now = self._clock()
            hourly_limit = self._refresh(state, now)
            hourly_left = hourly_limit - len(state.hourly)
            daily_left = self.settings.daily_quota - len(state.daily)

            if n <= hourly_left and n <= daily_left:
                for _ in range(n):
                    state.hourly.append(now)
                    state.daily.append(now)
                return Granted(key=key, count=n, remaining=min(hourly_left, daily_left) - n)

            retry_after = max(
                self._wait_for(state.hourly, n - hourly_left, HOUR_SECONDS, now),
                self._wait_for(state.daily, n - daily_left, DAY_SECONDS, now),
            )
            reason = "hourly" if n > hourly_left else "daily"

        logger.info(
            "Call budget denied",
            key=key,
            requested=n,
            window=reason,
            retry_after=round(retry_after, 1),
        )
        return Denied(key=key, retry_after=retry_after, reason=reason)

    def remaining(self, key: str) -> int:
        """Calls currently available without reserving them"""
        state = self._state(key)
        with state.lock:
            now = self._clock()
            hourly_limit = self._refresh(state, now)
            return max(0, min(
                hourly_limit - len(state.hourly),
                self.settings.daily_quota - len(state.daily),
            ))

    def record(self, key: str, outcome: CallOutcome) -> None:
        """Record a call outcome; throttling and failures shrink the allowance"""
        state = self._state(key)
        with state.lock:
            now = self._clock()
            state.outcomes[outcome.value] += 1
            if outcome == CallOutcome.SUCCESS:
                return

            factor = (
                self.settings.rate_limit_backoff_factor if outcome == CallOutcome.RATE_LIMITED
                else self.settings.failure_backoff_factor
            )
            state.allowance = max(self.settings.min_allowance_ratio, state.allowance * factor)
            state.penalty_until = now + self.settings.penalty_window_seconds
            allowance = state.allowance

        logger.warning(
            "Call budget reduced",
            key=key,
            outcome=outcome.value,
            allowance=round(allowance, 3),
        )

    def usage(self, key: str) -> BudgetUsage:
        state = self._state(key)
        with state.lock:
            now = self._clock()
            hourly_limit = self._refresh(state, now)
            return BudgetUsage(
                key=key,
                hourly_used=len(state.hourly),
                daily_used=len(state.daily),
                hourly_limit=hourly_limit,
                daily_limit=self.settings.daily_quota,
                allowance=state.allowance,
                outcomes=dict(state.outcomes),
            )

    def reset(self, key: Optional[str] = None) -> None:
        with self._registry_lock:
            if key is None:
                self._states.clear()
            else:
                self._states.pop(key, None)
