"""
Test Suite Configuration
"""
import asyncio
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from typing import AsyncIterator, Dict, Iterable, List, Optional

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from adsync.config.settings import (
    AnalysisSettings,
    CacheSettings,
    FreshnessSettings,
    InsightsApiSettings,
    RateBudgetSettings,
    Settings,
)
from adsync.core.models import DateRange, TimelinePoint
from adsync.database.connection import create_session_factory
from adsync.database.models import Base
from adsync.database.store import InMemoryStore, SqlAlchemyStore
from adsync.engine import InsightsEngine
from adsync.ingestion.insights_client import InsightAction, InsightRow, InsightsPage
from adsync.ingestion.rate_budget import RateBudgetTracker

ACCOUNT_ID = "act_1001"
NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)
MAY = DateRange(start=date(2024, 5, 1), end=date(2024, 5, 30))


class FakeClock:
    """Settable wall clock"""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeMonotonic:
    """Settable monotonic clock for budget windows"""

    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class FakeInsightsSource:
    """
    In-memory insights source paging through a fixed row list.

    ``failures`` maps a 1-based call number to the exception that call raises.
    """

    def __init__(
        self,
        rows: Optional[Iterable[InsightRow]] = None,
        page_size: int = 25,
        delay: float = 0.0,
        failures: Optional[Dict[int, Exception]] = None,
    ):
        self.rows = list(rows or [])
        self.page_size = page_size
        self.delay = delay
        self.failures = dict(failures or {})
        self.calls = []
        self.closed = False

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def fetch_page(self, account_id: str, date_range: DateRange, after: Optional[str] = None) -> InsightsPage:
        self.calls.append((account_id, date_range, after))
        if self.delay:
            await asyncio.sleep(self.delay)
        failure = self.failures.get(len(self.calls))
        if failure is not None:
            raise failure

        matching = [r for r in self.rows if date_range.contains(r.date_start)]
        offset = int(after) if after else 0
        end = offset + self.page_size
        return InsightsPage(
            rows=matching[offset:end],
            next_cursor=str(end) if end < len(matching) else None,
            total_count=len(matching),
        )

    async def close(self) -> None:
        self.closed = True


def build_row(
    ad_id: str,
    day: date,
    impressions: int = 1000,
    clicks: int = 20,
    spend: float = 10.0,
    frequency: float = 1.5,
    conversions: float = 1.0,
) -> InsightRow:
    return InsightRow(
        ad_id=ad_id,
        date_start=day,
        ad_name=f"Ad {ad_id}",
        campaign_id="cmp_1",
        adset_id="set_1",
        impressions=impressions,
        clicks=clicks,
        spend=spend,
        reach=int(impressions / frequency) if frequency else 0,
        frequency=frequency,
        actions=[InsightAction(action_type="purchase", value=conversions)] if conversions else [],
    )


def build_rows(
    ad_ids: Iterable[str],
    date_range: DateRange,
    skip: Optional[Dict[str, Iterable[date]]] = None,
    by_date: bool = True,
) -> List[InsightRow]:
    """One row per ad-day, omitting the (ad, day) pairs in ``skip``"""
    skip = {ad: set(days) for ad, days in (skip or {}).items()}
    rows = [
        build_row(ad_id, day)
        for ad_id in ad_ids
        for day in date_range.days()
        if day not in skip.get(ad_id, set())
    ]
    if by_date:
        rows.sort(key=lambda r: (r.date_start, r.ad_id))
    return rows


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings"""
    return Settings(
        APP_ENV="testing",
        DEBUG=True,
        STORAGE_BACKEND="memory",
        REPORTING_TIMEZONE="UTC",
        insights_api=InsightsApiSettings(page_size=100, timeout_seconds=2.0),
        rate_budget=RateBudgetSettings(hourly_quota=200, daily_quota=4800),
        freshness=FreshnessSettings(),
        cache=CacheSettings(memory_max_entries=64),
        analysis=AnalysisSettings(),
    )


@pytest.fixture
def make_row():
    return build_row


@pytest.fixture
def make_rows():
    return build_rows


@pytest.fixture
def make_point():
    def factory(ad_id: str, day: date, account_id: str = ACCOUNT_ID, **metrics) -> TimelinePoint:
        return build_row(ad_id, day, **metrics).to_point(account_id, ["purchase"])
    return factory


@pytest.fixture
def make_source():
    return FakeInsightsSource


@pytest.fixture
def memory_store() -> InMemoryStore:
    return InMemoryStore()


@asynccontextmanager
async def sqlite_store() -> AsyncIterator[SqlAlchemyStore]:
    """SqlAlchemyStore over a fresh in-memory SQLite database"""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield SqlAlchemyStore(create_session_factory(engine))
    finally:
        await engine.dispose()


@pytest.fixture
async def sql_store():
    async with sqlite_store() as store:
        yield store


@pytest.fixture(params=["memory", "sql"])
async def any_store(request):
    """Each store implementation in turn"""
    if request.param == "memory":
        yield InMemoryStore()
        return
    async with sqlite_store() as store:
        yield store


@pytest.fixture
def budget(test_settings, monotonic) -> RateBudgetTracker:
    return RateBudgetTracker(test_settings.rate_budget, clock=monotonic)


@pytest.fixture
def source(make_rows) -> FakeInsightsSource:
    """Two ads delivering every day of May"""
    return FakeInsightsSource(make_rows(["ad_1", "ad_2"], MAY))


@pytest.fixture
async def engine(memory_store, source, test_settings, budget, clock):
    engine = InsightsEngine(memory_store, source, settings=test_settings, budget=budget, clock=clock)
    yield engine
    await engine.close()
