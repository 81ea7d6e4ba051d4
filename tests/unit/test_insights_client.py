"""
Unit Tests - Insights Client
"""
import json
from datetime import date

import httpx
import pytest

from adsync.config.settings import InsightsApiSettings
from adsync.core.models import DateRange
from adsync.exceptions import MalformedPage, UpstreamError, UpstreamRateLimited, UpstreamTimeout
from adsync.ingestion.insights_client import MetaInsightsClient, account_path

WEEK = DateRange(start=date(2024, 5, 1), end=date(2024, 5, 7))

ROW = {
    "ad_id": "6001",
    "ad_name": "Spring sale",
    "campaign_id": "5001",
    "adset_id": "5501",
    "date_start": "2024-05-01",
    "date_stop": "2024-05-01",
    "impressions": "2000",
    "clicks": "40",
    "spend": "25.50",
    "reach": "1600",
    "frequency": "1.25",
    "actions": [
        {"action_type": "link_click", "value": "40"},
        {"action_type": "purchase", "value": "2"},
    ],
}


def client_for(handler) -> MetaInsightsClient:
    settings = InsightsApiSettings(access_token="token", page_size=50, timeout_seconds=5.0)
    return MetaInsightsClient(settings, transport=httpx.MockTransport(handler))


class TestFetchPage:
    """Tests for page retrieval"""

    async def test_parses_rows_and_cursor(self):
        """Test rows, conversions and the next cursor are read"""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={
                "data": [ROW],
                "paging": {"cursors": {"before": "b", "after": "c2"}, "next": "https://next"},
                "summary": {"total_count": 120},
            })

        async with client_for(handler) as client:
            page = await client.fetch_page("1001", WEEK)

        assert page.has_more
        assert page.next_cursor == "c2"
        assert page.total_count == 120
        row = page.rows[0]
        assert row.impressions == 2000
        assert row.conversions(["purchase"]) == 2.0

    async def test_last_page_has_no_cursor(self):
        """Test a page without a next link ends pagination"""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"data": [], "paging": {"cursors": {"after": "c9"}}})

        async with client_for(handler) as client:
            page = await client.fetch_page("1001", WEEK)

        assert not page.has_more
        assert page.rows == []

    async def test_request_parameters(self):
        """Test path, level, daily increment, range and cursor"""
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"data": []})

        async with client_for(handler) as client:
            await client.fetch_page("1001", WEEK, after="abc")

        request = seen[0]
        assert request.url.path == "/v19.0/act_1001/insights"
        params = request.url.params
        assert params["level"] == "ad"
        assert params["time_increment"] == "1"
        assert params["after"] == "abc"
        assert params["limit"] == "50"
        assert json.loads(params["time_range"]) == {"since": "2024-05-01", "until": "2024-05-07"}

    def test_account_path(self):
        assert account_path("1001") == "act_1001"
        assert account_path("act_1001") == "act_1001"


class TestErrors:
    """Tests for error mapping"""

    async def test_http_429_is_rate_limited(self):
        def handler(request):
            return httpx.Response(429, json={"error": {"message": "Too many calls"}})

        async with client_for(handler) as client:
            with pytest.raises(UpstreamRateLimited) as exc_info:
                await client.fetch_page("1001", WEEK)

        assert exc_info.value.status_code == 429

    async def test_throttle_code_is_rate_limited(self):
        """Test Graph throttle codes on a 400 count as throttling"""
        def handler(request):
            return httpx.Response(400, json={"error": {"message": "User request limit reached", "code": 17}})

        async with client_for(handler) as client:
            with pytest.raises(UpstreamRateLimited) as exc_info:
                await client.fetch_page("1001", WEEK)

        assert exc_info.value.error_code == 17

    async def test_server_error(self):
        def handler(request):
            return httpx.Response(500, json={"error": {"message": "Unknown error", "code": 1}})

        async with client_for(handler) as client:
            with pytest.raises(UpstreamError) as exc_info:
                await client.fetch_page("1001", WEEK)

        assert not isinstance(exc_info.value, UpstreamRateLimited)
        assert exc_info.value.status_code == 500

    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        async with client_for(handler) as client:
            with pytest.raises(UpstreamTimeout):
                await client.fetch_page("1001", WEEK)

    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with client_for(handler) as client:
            with pytest.raises(UpstreamError):
                await client.fetch_page("1001", WEEK)

    async def test_invalid_json(self):
        def handler(request):
            return httpx.Response(200, content=b"<html>maintenance</html>")

        async with client_for(handler) as client:
            with pytest.raises(MalformedPage):
                await client.fetch_page("1001", WEEK)

    async def test_row_without_ad_id(self):
        """Test a row missing its key is malformed"""
        def handler(request):
            bad = {k: v for k, v in ROW.items() if k != "ad_id"}
            return httpx.Response(200, json={"data": [bad]})

        async with client_for(handler) as client:
            with pytest.raises(MalformedPage):
                await client.fetch_page("1001", WEEK)


class TestRowConversion:
    """Tests for row to point conversion"""

    async def test_derived_metrics(self):
        def handler(request):
            return httpx.Response(200, json={"data": [ROW]})

        async with client_for(handler) as client:
            page = await client.fetch_page("1001", WEEK)

        point = page.rows[0].to_point("act_1001", ["purchase"])

        assert point.has_delivery
        assert point.delivery_intensity == 3
        assert point.metrics.ctr == pytest.approx(2.0)
        assert point.metrics.cpm == pytest.approx(12.75)
        assert point.metrics.cpc == pytest.approx(0.6375)
        assert point.metrics.conversions == 2.0
        assert point.metrics.conversion_rate == pytest.approx(5.0)
