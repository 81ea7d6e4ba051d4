"""
Upstream Insights Client

Cursor-paginated reads of per-ad daily insights from the Meta Graph API
(``GET /{version}/act_{id}/insights`` with ``level=ad`` and ``time_increment=1``).

Transport errors are mapped onto the engine's error taxonomy:
- request timeout            -> UpstreamTimeout
- HTTP 429 / throttle codes  -> UpstreamRateLimited
- any other non-200          -> UpstreamError
- unparseable payload        -> MalformedPage
"""

import json
from datetime import date
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx
import structlog
from pydantic import BaseModel, Field, ValidationError

from adsync.config import get_settings
from adsync.config.settings import InsightsApiSettings
from adsync.core.models import DateRange, PointMetrics, TimelinePoint
from adsync.exceptions import MalformedPage, UpstreamError, UpstreamRateLimited, UpstreamTimeout
from adsync.quality.delivery import delivery_intensity

logger = structlog.get_logger(__name__)

# Graph API error codes signalling throttling
THROTTLE_ERROR_CODES = {4, 17, 32, 613, 80000, 80003, 80004}


class InsightAction(BaseModel):
    action_type: str
    value: float = 0.0


class InsightRow(BaseModel):
    """One ad-day row as returned by the insights endpoint"""
    ad_id: str
    date_start: date
    ad_name: Optional[str] = None
    campaign_id: Optional[str] = None
    adset_id: Optional[str] = None
    impressions: int = 0
    clicks: int = 0
    spend: float = 0.0
    reach: int = 0
    frequency: float = 0.0
    actions: List[InsightAction] = Field(default_factory=list)

    def conversions(self, action_types: Sequence[str]) -> float:
        wanted = set(action_types)
        return sum(a.value for a in self.actions if a.action_type in wanted)

    def to_validation_row(self, action_types: Sequence[str]) -> Dict[str, Any]:
        return {
            "ad_id": self.ad_id,
            "date": self.date_start,
            "impressions": self.impressions,
            "clicks": self.clicks,
            "spend": self.spend,
            "reach": self.reach,
            "frequency": self.frequency,
            "conversions": self.conversions(action_types),
        }

    def to_point(self, account_id: str, action_types: Sequence[str]) -> TimelinePoint:
        conversions = self.conversions(action_types)
        impressions, clicks, spend = self.impressions, self.clicks, self.spend
        return TimelinePoint(
            ad_id=self.ad_id,
            account_id=account_id,
            date=self.date_start,
            has_delivery=impressions > 0,
            delivery_intensity=delivery_intensity(impressions),
            metrics=PointMetrics(
                impressions=impressions,
                clicks=clicks,
                spend=spend,
                reach=self.reach,
                frequency=self.frequency,
                ctr=clicks / impressions * 100 if impressions else 0.0,
                cpc=spend / clicks if clicks else 0.0,
                cpm=spend / impressions * 1000 if impressions else 0.0,
                conversions=conversions,
                conversion_rate=conversions / clicks * 100 if clicks else 0.0,
            ),
            ad_name=self.ad_name,
            campaign_id=self.campaign_id,
            adset_id=self.adset_id,
        )


class InsightsPage(BaseModel):
    rows: List[InsightRow] = Field(default_factory=list)
    next_cursor: Optional[str] = None
    total_count: Optional[int] = None

    @property
    def has_more(self) -> bool:
        return self.next_cursor is not None


class InsightsSource(Protocol):
    """Anything that can return a page of ad-day insights"""

    async def fetch_page(
        self,
        account_id: str,
        date_range: DateRange,
        after: Optional[str] = None,
    ) -> InsightsPage:
        ...


def account_path(account_id: str) -> str:
    return account_id if account_id.startswith("act_") else f"act_{account_id}"


class MetaInsightsClient:
    """
    Async Graph API insights reader.

    Example:
        async with MetaInsightsClient() as client:
            page = await client.fetch_page("act_123", rng)
            while page.has_more:
                page = await client.fetch_page("act_123", rng, after=page.next_cursor)
    """

    def __init__(
        self,
        settings: Optional[InsightsApiSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings().insights_api
        self._client = httpx.AsyncClient(
            base_url=f"{self.settings.base_url}/{self.settings.api_version}",
            timeout=self.settings.timeout_seconds,
            transport=transport,
        )

    async def __aenter__(self) -> "MetaInsightsClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    def _params(self, date_range: DateRange, after: Optional[str]) -> Dict[str, Any]:
        params = {
            "access_token": self.settings.access_token.get_secret_value(),
            "level": "ad",
            "time_increment": 1,
            "fields": ",".join(self.settings.fields),
            "time_range": json.dumps({
                "since": date_range.start.isoformat(),
                "until": date_range.end.isoformat(),
            }),
            "limit": self.settings.page_size,
        }
        if after:
            params["after"] = after
        return params

    async def fetch_page(
        self,
        account_id: str,
        date_range: DateRange,
        after: Optional[str] = None,
    ) -> InsightsPage:
        """
        Fetch one page of ad-day insights.

        Raises:
            UpstreamTimeout: no response within the configured timeout
            UpstreamRateLimited: the API throttled the call
            UpstreamError: any other failed response
            MalformedPage: the body could not be parsed into rows
        """
        try:
            response = await self._client.get(
                f"/{account_path(account_id)}/insights",
                params=self._params(date_range, after),
            )
        except httpx.TimeoutException as e:
            raise UpstreamTimeout(f"Insights request timed out: {e}") from e
        except httpx.TransportError as e:
            raise UpstreamError(f"Insights request failed: {e}") from e

        if response.status_code != 200:
            raise self._error_for(response)

        try:
            body = response.json()
            paging = body.get("paging") or {}
            # Meta omits "next" on the last page even when cursors are present
            next_cursor = paging.get("cursors", {}).get("after") if paging.get("next") else None
            page = InsightsPage(
                rows=[InsightRow.model_validate(row) for row in body.get("data", [])],
                next_cursor=next_cursor,
                total_count=(body.get("summary") or {}).get("total_count"),
            )
        except (ValueError, ValidationError, AttributeError) as e:
            raise MalformedPage(f"Unparseable insights payload: {e}") from e

        logger.debug(
            "Insights page fetched",
            account_id=account_id,
            date_range=date_range.key,
            rows=len(page.rows),
            has_more=page.has_more,
        )
        return page

    @staticmethod
    def _error_for(response: httpx.Response) -> UpstreamError:
        try:
            error = response.json().get("error", {})
        except ValueError:
            error = {}
        code = error.get("code")
        message = error.get("message", response.reason_phrase or "Unknown error")

        if response.status_code == 429 or code in THROTTLE_ERROR_CODES:
            return UpstreamRateLimited(
                f"Insights API throttled: {message}",
                status_code=response.status_code,
                error_code=code,
            )
        return UpstreamError(
            f"Insights API error {response.status_code}: {message}",
            status_code=response.status_code,
            error_code=code,
        )
