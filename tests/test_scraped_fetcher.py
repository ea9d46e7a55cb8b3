"""
Tests for the scraped provider client.

Covers:
- Session response classification
- Quote-summary parsing (wrappers, fallbacks, derived metrics)
- Invalid-session retry policy
- Dotted share-class symbols
- Result caching
- Dividend and price history
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import json_response, quote_summary_payload
from fundamentals_engine.cache import LayeredCache
from fundamentals_engine.data.scraped_fetcher import (
    REQUESTED_MODULES,
    ScrapedProviderClient,
    SessionVerdict,
    classify_session_response,
    parse_price_chart,
    parse_quote_summary,
    price_period_start,
)
from fundamentals_engine.data.session import SessionManager
from fundamentals_engine.exceptions import (
    DataIncompleteError,
    DividendsNotFoundError,
    InvalidArgumentError,
    InvalidSessionError,
    UpstreamHttpError,
)
from fundamentals_engine.models import Session
from fundamentals_engine.transport import HttpResponse

INVALID_CRUMB = {"finance": {"result": None, "error": {"code": "Unauthorized", "description": "Invalid Crumb"}}}
DIVIDEND_CHART = {
    "chart": {
        "result": [{"events": {"dividends": {"1710000000": {"amount": 0.25, "date": 1710000000}}}}],
        "error": None,
    }
}
PRICE_CHART = {
    "chart": {
        "result": [{"timestamp": [1704067200], "indicators": {"quote": [{"close": [10.0], "volume": [100]}]}}],
        "error": None,
    }
}


@pytest.fixture
def session_manager():
    manager = MagicMock(spec=SessionManager)
    manager.acquire = AsyncMock(
        side_effect=lambda force_refresh=False: Session(
            cookie_header="A=1",
            anti_forgery_token="fresh" if force_refresh else "cached",
            created_at=0,
        )
    )
    manager.invalidate = AsyncMock()
    manager.close = AsyncMock()
    return manager


@pytest.fixture
def client(session_manager, mock_http, settings):
    return ScrapedProviderClient(session_manager, http=mock_http, cache=LayeredCache(), settings=settings)


class TestClassifySessionResponse:
    """Test the single session-verdict function."""

    def test_invalid_crumb_body(self):
        """An error description naming the crumb is INVALID regardless of status."""
        response = json_response(INVALID_CRUMB, status=200)

        assert classify_session_response(response.status, response.text) is SessionVerdict.INVALID

    def test_invalid_cookie_case_insensitive(self):
        """Matching ignores case and works for any outer envelope."""
        body = json_response({"quoteSummary": {"error": {"description": "INVALID COOKIE"}}}).text

        assert classify_session_response(400, body) is SessionVerdict.INVALID

    @pytest.mark.parametrize("status", [401, 403])
    def test_rejected_status(self, status):
        """401 and 403 are REJECTED even with an unparseable body."""
        assert classify_session_response(status, "<html>") is SessionVerdict.REJECTED

    def test_other(self):
        """Unrelated errors and non-JSON bodies are OTHER."""
        body = json_response({"quoteSummary": {"error": {"description": "Quote not found"}}}).text

        assert classify_session_response(404, body) is SessionVerdict.OTHER
        assert classify_session_response(500, "oops") is SessionVerdict.OTHER


class TestParseQuoteSummary:
    """Test decoding of quote-summary payloads."""

    def test_maps_modules_and_derived_metrics(self):
        """Reported metrics, profile data and statement analytics all land in the snapshot."""
        result = parse_quote_summary(quote_summary_payload(), "AAPL")

        assert result.source == "scraped"
        assert result.company_name == "Apple Inc."
        assert result.exchange == "NasdaqGS"
        assert result.description == "Designs consumer electronics."
        assert result.metrics.current_price == 190.0
        assert result.metrics.change == pytest.approx(2.0)
        assert result.metrics.change_percent == pytest.approx(2.0 / 188.0 * 100)
        assert result.metrics.dividend_yield == 0.031
        assert result.metrics.payout_ratio == 0.55
        assert result.metrics.forward_pe == 27.5
        assert result.metrics.enterprise_value == 2.95e12
        assert result.metrics.roe_actual == pytest.approx(0.2087, abs=1e-3)

    def test_fallback_sources(self):
        """Missing summary values fall back to financialData / key statistics."""
        payload = quote_summary_payload(
            summaryDetail={},
            financialData={"currentPrice": 10, "forwardPE": {"raw": 12.0}},
            defaultKeyStatistics={"trailingPE": {"raw": 14.0}},
            price={"shortName": "Short Co"},
        )

        result = parse_quote_summary(payload, "XYZ")

        assert result.company_name == "Short Co"
        assert result.metrics.current_price == 10
        assert result.metrics.forward_pe == 12.0
        assert result.metrics.trailing_pe == 14.0
        assert result.metrics.dividend_yield is None

    def test_missing_result(self):
        """An empty result list is DataIncompleteError."""
        with pytest.raises(DataIncompleteError):
            parse_quote_summary({"quoteSummary": {"result": []}}, "AAPL")

    def test_error_envelope(self):
        """An error description without a result is UpstreamHttpError."""
        payload = {"quoteSummary": {"result": None, "error": {"description": "Quote not found"}}}

        with pytest.raises(UpstreamHttpError, match="Quote not found"):
            parse_quote_summary(payload, "NOPE")


class TestScrapedFetchFundamentals:
    """Test the fundamentals request flow."""

    @pytest.mark.asyncio
    async def test_request_shape(self, client, mock_http, settings):
        """Modules and the token go in the query; the cookie goes in the header."""
        mock_http.get.return_value = json_response(quote_summary_payload())

        await client.fetch_fundamentals("aapl")

        url = mock_http.get.call_args.args[0]
        kwargs = mock_http.get.call_args.kwargs
        assert url == f"{settings.scraped_fundamentals_url}AAPL"
        assert kwargs["params"]["crumb"] == "cached"
        assert kwargs["params"]["modules"].split(",") == list(REQUESTED_MODULES)
        assert kwargs["headers"]["Cookie"] == "A=1"
        assert kwargs["timeout"] == settings.fundamentals_timeout

    @pytest.mark.asyncio
    async def test_dotted_symbol(self, client, mock_http, settings):
        """Dots become hyphens in the path only; the result keeps the dotted uppercase symbol."""
        mock_http.get.return_value = json_response(quote_summary_payload())

        result = await client.fetch_fundamentals(" brk.b ")

        assert mock_http.get.call_args.args[0] == f"{settings.scraped_fundamentals_url}BRK-B"
        assert result.symbol == "BRK.B"

    @pytest.mark.asyncio
    async def test_blank_symbol(self, client, mock_http):
        """A blank symbol is rejected before any request."""
        with pytest.raises(InvalidArgumentError):
            await client.fetch_fundamentals("   ")
        mock_http.get.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_crumb_retried_once(self, client, mock_http, session_manager):
        """Invalid crumb then success: two requests, one invalidate, one forced refresh."""
        mock_http.get.side_effect = [
            json_response(INVALID_CRUMB, status=401, reason="Unauthorized"),
            json_response(quote_summary_payload()),
        ]

        result = await client.fetch_fundamentals("AAPL")

        assert result.metrics.current_price == 190.0
        assert mock_http.get.call_count == 2
        session_manager.invalidate.assert_awaited_once()
        forced = [c for c in session_manager.acquire.call_args_list if c.kwargs.get("force_refresh")]
        assert len(forced) == 1
        assert mock_http.get.call_args.kwargs["params"]["crumb"] == "fresh"

    @pytest.mark.asyncio
    async def test_invalid_crumb_twice_is_fatal(self, client, mock_http, session_manager):
        """A second invalid-session response propagates without a third attempt."""
        mock_http.get.side_effect = [
            json_response(INVALID_CRUMB, status=200),
            json_response(INVALID_CRUMB, status=200),
            json_response(quote_summary_payload()),
        ]

        with pytest.raises(InvalidSessionError):
            await client.fetch_fundamentals("AAPL")

        assert mock_http.get.call_count == 2

    @pytest.mark.asyncio
    async def test_forced_call_is_not_retried(self, client, mock_http, session_manager):
        """A call that already forced a fresh session gets no retry."""
        mock_http.get.return_value = json_response(INVALID_CRUMB, status=403)

        with pytest.raises(InvalidSessionError):
            await client.fetch_fundamentals("AAPL", force_refresh=True)

        assert mock_http.get.call_count == 1
        session_manager.invalidate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_server_error_not_retried(self, client, mock_http, session_manager):
        """Non-session failures surface as UpstreamHttpError immediately."""
        mock_http.get.return_value = HttpResponse(status=500, text="boom", reason="Server Error")

        with pytest.raises(UpstreamHttpError) as exc_info:
            await client.fetch_fundamentals("AAPL")

        assert exc_info.value.status_code == 500
        assert mock_http.get.call_count == 1

    @pytest.mark.asyncio
    async def test_malformed_json(self, client, mock_http):
        """A 200 with a non-JSON body is UpstreamHttpError."""
        mock_http.get.return_value = HttpResponse(status=200, text="<html>")

        with pytest.raises(UpstreamHttpError, match="not valid JSON"):
            await client.fetch_fundamentals("AAPL")


class TestScrapedCache:
    """Test write-through caching of scraped results."""

    @pytest.mark.asyncio
    async def test_cached_result_reused(self, client, mock_http):
        """A second fetch is served from the cache."""
        mock_http.get.return_value = json_response(quote_summary_payload())

        first = await client.fetch_fundamentals("AAPL")
        second = await client.fetch_fundamentals("aapl")

        assert mock_http.get.call_count == 1
        assert second == first

    @pytest.mark.asyncio
    async def test_force_refresh_bypasses_cache(self, client, mock_http):
        """force_refresh always goes upstream."""
        mock_http.get.return_value = json_response(quote_summary_payload())

        await client.fetch_fundamentals("AAPL")
        await client.fetch_fundamentals("AAPL", force_refresh=True)

        assert mock_http.get.call_count == 2

    @pytest.mark.asyncio
    async def test_cache_key(self, client, mock_http):
        """Results are stored under fundamentals:scraped:{SYMBOL}."""
        mock_http.get.return_value = json_response(quote_summary_payload())

        await client.fetch_fundamentals("brk.b")

        assert await client.cache.get("fundamentals:scraped:BRK.B") is not None

    @pytest.mark.asyncio
    async def test_unreadable_cache_entry_refetched(self, client, mock_http):
        """An entry that no longer validates is treated as a miss and overwritten."""
        await client.cache.set("fundamentals:scraped:AAPL", {"symbol": "AAPL", "source": "legacy"}, 60)
        mock_http.get.return_value = json_response(quote_summary_payload())

        result = await client.fetch_fundamentals("AAPL")

        assert result.metrics.current_price == 190.0
        assert mock_http.get.call_count == 1
        assert (await client.cache.get("fundamentals:scraped:AAPL"))["source"] == "scraped"


class TestDividendHistory:
    """Test dividend history from the chart endpoint."""

    @pytest.mark.asyncio
    async def test_payments_newest_first(self, client, mock_http):
        """Dividend events are decoded and sorted newest first."""
        mock_http.get.return_value = json_response(
            {
                "chart": {
                    "result": [
                        {
                            "events": {
                                "dividends": {
                                    "1700000000": {"amount": 0.24, "date": 1700000000},
                                    "1710000000": {"amount": 0.25, "date": 1710000000},
                                    "bad": {"amount": None, "date": 1},
                                }
                            }
                        }
                    ],
                    "error": None,
                }
            }
        )

        history = await client.fetch_dividend_history("ko")

        assert history.symbol == "KO"
        assert [p.amount for p in history.data] == [0.25, 0.24]
        assert history.data[0].date == "2024-03-09"
        assert mock_http.get.call_args.kwargs["params"]["events"] == "div"

    @pytest.mark.asyncio
    async def test_no_events(self, client, mock_http):
        """A chart without dividend events yields an empty history."""
        mock_http.get.return_value = json_response({"chart": {"result": [{}], "error": None}})

        history = await client.fetch_dividend_history("AMZN")

        assert history.data == []

    @pytest.mark.asyncio
    async def test_not_found_status(self, client, mock_http):
        """404 is DividendsNotFoundError, itself an UpstreamHttpError."""
        mock_http.get.return_value = HttpResponse(status=404, text="{}", reason="Not Found")

        with pytest.raises(DividendsNotFoundError):
            await client.fetch_dividend_history("ZZZZ")

    @pytest.mark.asyncio
    async def test_not_found_chart_error(self, client, mock_http):
        """A 'Not Found' chart error is DividendsNotFoundError."""
        mock_http.get.return_value = json_response(
            {"chart": {"result": None, "error": {"code": "Not Found", "description": "No data found"}}}
        )

        with pytest.raises(UpstreamHttpError) as exc_info:
            await client.fetch_dividend_history("ZZZZ")
        assert isinstance(exc_info.value, DividendsNotFoundError)

    @pytest.mark.asyncio
    async def test_invalid_session_retried_once(self, client, mock_http, session_manager):
        """A rejected session on the chart call is refreshed and retried once."""
        mock_http.get.side_effect = [
            json_response(INVALID_CRUMB, status=401, reason="Unauthorized"),
            json_response(DIVIDEND_CHART),
        ]

        history = await client.fetch_dividend_history("KO")

        assert [p.amount for p in history.data] == [0.25]
        assert mock_http.get.call_count == 2
        session_manager.invalidate.assert_awaited_once()
        session_manager.acquire.assert_awaited_with(force_refresh=True)


class TestPriceHistory:
    """Test daily price history from the chart endpoint."""

    @pytest.mark.asyncio
    async def test_entries_and_window(self, client, mock_http):
        """Closes are decoded, gaps dropped, and the window follows the period."""
        mock_http.get.return_value = json_response(
            {
                "chart": {
                    "result": [
                        {
                            "timestamp": [1704067200, 1704153600, 1704240000],
                            "indicators": {"quote": [{"close": [10.0, None, 11.5], "volume": [100, 0, 300]}]},
                        }
                    ],
                    "error": None,
                }
            }
        )
        now = datetime(2024, 7, 1, tzinfo=timezone.utc)

        history = await client.fetch_price_history("msft", period="1y", now=now)

        assert [e.close for e in history.data] == [10.0, 11.5]
        assert history.data[0].date == "2024-01-01"
        assert history.period == "1y"
        params = mock_http.get.call_args.kwargs["params"]
        assert params["period1"] == str(int(datetime(2023, 7, 1, tzinfo=timezone.utc).timestamp()))
        assert params["period2"] == str(int(now.timestamp()))

    @pytest.mark.asyncio
    async def test_empty_series(self, client, mock_http):
        """No usable closes is DataIncompleteError."""
        mock_http.get.return_value = json_response(
            {"chart": {"result": [{"timestamp": [], "indicators": {"quote": [{}]}}], "error": None}}
        )

        with pytest.raises(DataIncompleteError):
            await client.fetch_price_history("MSFT")

    @pytest.mark.asyncio
    async def test_invalid_session_retried_once(self, client, mock_http, session_manager):
        """A rejected session on the price call is refreshed and retried once."""
        mock_http.get.side_effect = [
            json_response(INVALID_CRUMB, status=200),
            json_response(PRICE_CHART),
        ]

        history = await client.fetch_price_history("MSFT")

        assert [e.close for e in history.data] == [10.0]
        assert mock_http.get.call_count == 2
        session_manager.invalidate.assert_awaited_once()
        session_manager.acquire.assert_awaited_with(force_refresh=True)

    @pytest.mark.asyncio
    async def test_second_rejection_propagates(self, client, mock_http, session_manager):
        """Two rejections in a row surface as InvalidSessionError."""
        mock_http.get.return_value = json_response(INVALID_CRUMB, status=403)

        with pytest.raises(InvalidSessionError):
            await client.fetch_price_history("MSFT")

        assert mock_http.get.call_count == 2

    def test_out_of_range_timestamp_skipped(self):
        """A timestamp that cannot be dated is skipped like a missing close."""
        payload = {
            "chart": {
                "result": [{"timestamp": [1e20, 1704067200], "indicators": {"quote": [{"close": [9.0, 10.0]}]}}],
                "error": None,
            }
        }

        history = parse_price_chart(payload, "MSFT", "6m")

        assert [(e.date, e.close) for e in history.data] == [("2024-01-01", 10.0)]

    def test_period_start_clamps_month_end(self):
        """Month arithmetic clamps to the last day of the target month."""
        end = datetime(2024, 8, 31, tzinfo=timezone.utc)

        assert price_period_start(end, "6m") == datetime(2024, 2, 29, tzinfo=timezone.utc)
        assert price_period_start(end, "bogus") == price_period_start(end, "6m")
        assert price_period_start(end, "5y").year == 2019


class TestRetryWithSessionManager:
    """Test the retry against a real SessionManager and a fake upstream."""

    @pytest.mark.asyncio
    async def test_one_forced_refresh_between_requests(self, mock_http, settings):
        """A rejected crumb costs exactly one bootstrap and one token round-trip."""
        calls = {"bootstrap": 0, "token": 0, "fundamentals": []}

        async def upstream(url, *, params=None, headers=None, timeout):
            if url == settings.scraped_bootstrap_url:
                calls["bootstrap"] += 1
                return HttpResponse(status=404, text="", set_cookies=[f"A3=c{calls['bootstrap']}; Path=/"])
            if url == settings.scraped_token_url:
                calls["token"] += 1
                return HttpResponse(status=200, text=f"crumb-{calls['token']}")
            calls["fundamentals"].append((params["crumb"], headers["Cookie"]))
            if len(calls["fundamentals"]) == 1:
                return json_response(INVALID_CRUMB, status=401, reason="Unauthorized")
            return json_response(quote_summary_payload())

        mock_http.get.side_effect = upstream
        cache = LayeredCache()
        manager = SessionManager(http=mock_http, cache=cache, settings=settings)
        await manager.acquire()
        client = ScrapedProviderClient(manager, http=mock_http, cache=cache, settings=settings)

        result = await client.fetch_fundamentals("AAPL")

        assert result.metrics.current_price == 190.0
        assert calls["bootstrap"] == 2
        assert calls["token"] == 2
        assert calls["fundamentals"] == [("crumb-1", "A3=c1"), ("crumb-2", "A3=c2")]
        assert (await cache.get("session:scraped"))["antiForgeryToken"] == "crumb-2"
