"""
Scraped Provider Fetcher
Fundamentals, dividend history and price history from the quasi-public
quote-summary / chart endpoints.

Every request needs a session (cookie + anti-forgery token) issued by
SessionManager. The upstream revokes sessions without notice, so a rejected
session is retried exactly once with a forced refresh; a second rejection is
fatal for this provider.

Error Handling:
    - Session rejected (401/403 or "Invalid Crumb"/"Invalid Cookie" body):
      InvalidSessionError, retried once
    - Other non-2xx: UpstreamHttpError (DividendsNotFoundError for missing dividends)
    - Empty result / series: DataIncompleteError
    - Timeout: UpstreamTimeoutError

Usage:
    sessions = SessionManager(cache=cache)
    client = ScrapedProviderClient(sessions, cache=cache)
    snapshot = await client.fetch_fundamentals("brk.b")   # symbol stays "BRK.B"
"""

import calendar
import json
import math
import re
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime, timezone
from enum import Enum
from typing import Any, TypeVar
from urllib.parse import quote

import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from fundamentals_engine.cache import CacheBackend, LayeredCache, read_model
from fundamentals_engine.config import Settings, config
from fundamentals_engine.data.interfaces import FundamentalsProvider
from fundamentals_engine.data.session import SessionManager
from fundamentals_engine.data.statements import derive_metrics
from fundamentals_engine.exceptions import (
    DataIncompleteError,
    DividendsNotFoundError,
    InvalidSessionError,
    UpstreamHttpError,
)
from fundamentals_engine.models import (
    DividendHistory,
    DividendPayment,
    FundamentalMetrics,
    NormalizedFundamentals,
    PriceHistory,
    PriceHistoryEntry,
    Session,
)
from fundamentals_engine.transport import HttpClient, HttpResponse
from fundamentals_engine.utils import (
    first_number,
    iso_date_from_timestamp,
    mapping_from,
    normalize_symbol,
    number_from,
    scraped_path_symbol,
    string_from,
)

logger = structlog.get_logger(__name__)

PROVIDER = "scraped"

REQUESTED_MODULES = (
    "price",
    "summaryDetail",
    "financialData",
    "defaultKeyStatistics",
    "assetProfile",
    "incomeStatementHistory",
    "balanceSheetHistory",
    "cashflowStatementHistory",
)

INVALID_SESSION_PATTERN = re.compile(r"invalid (crumb|cookie)", re.IGNORECASE)
NOT_FOUND_CODES = {"Not Found", "NoDataFound", "No data found"}
PRICE_PERIOD_MONTHS = {"6m": 6, "1y": 12, "3y": 36, "5y": 60}

T = TypeVar("T")


class SessionVerdict(Enum):
    """How a scraped-provider response relates to the session that made it."""

    INVALID = "invalid"  # body names the crumb/cookie as invalid
    REJECTED = "rejected"  # 401/403
    OTHER = "other"


def _error_description(payload: Any) -> str:
    """Pull `<outer>.error.description` out of any provider envelope."""
    for envelope in mapping_from(payload).values():
        description = mapping_from(mapping_from(envelope).get("error")).get("description")
        if isinstance(description, str) and description:
            return description
    return ""


def classify_session_response(status: int, body_text: str) -> SessionVerdict:
    """Single place that decides whether a response means "session is bad"."""
    if status in (401, 403):
        return SessionVerdict.REJECTED
    try:
        payload = json.loads(body_text)
    except ValueError:
        return SessionVerdict.OTHER
    if INVALID_SESSION_PATTERN.search(_error_description(payload)):
        return SessionVerdict.INVALID
    return SessionVerdict.OTHER


def _shift_months(moment: datetime, months: int) -> datetime:
    month_index = moment.year * 12 + (moment.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def price_period_start(end: datetime, period: str) -> datetime:
    """Start of the price window for '6m', '1y', '3y' or '5y' (unknown -> 6m)."""
    return _shift_months(end, PRICE_PERIOD_MONTHS.get(period, 6))


def parse_quote_summary(payload: Any, symbol: str) -> NormalizedFundamentals:
    """
    Decode a quote-summary payload into NormalizedFundamentals.

    `symbol` is the caller's normalized ticker; it is returned as-is so dotted
    share classes survive the hyphenated request path.
    """
    envelope = mapping_from(mapping_from(payload).get("quoteSummary"))
    results = envelope.get("result")
    result = results[0] if isinstance(results, list) and results else None
    if not isinstance(result, Mapping):
        description = _error_description(payload)
        if description:
            raise UpstreamHttpError(
                f"Scraped provider error for {symbol}: {description}", provider=PROVIDER
            )
        raise DataIncompleteError(
            f"Scraped quote summary result missing for {symbol}", provider=PROVIDER
        )

    price = mapping_from(result.get("price"))
    financial = mapping_from(result.get("financialData"))
    summary = mapping_from(result.get("summaryDetail"))
    key_stats = mapping_from(result.get("defaultKeyStatistics"))
    profile = mapping_from(result.get("assetProfile"))

    current_price = first_number(price.get("regularMarketPrice"), financial.get("currentPrice"))
    previous_close = first_number(
        price.get("regularMarketPreviousClose"), summary.get("previousClose")
    )

    change = number_from(price.get("regularMarketChange"))
    if change is None and current_price is not None and previous_close is not None:
        change = current_price - previous_close

    change_percent = number_from(price.get("regularMarketChangePercent"))
    if change_percent is None and change is not None and previous_close:
        change_percent = change / previous_close * 100

    derived = derive_metrics(result)

    metrics = FundamentalMetrics(
        current_price=current_price,
        previous_close=previous_close,
        change=change,
        change_percent=change_percent,
        market_state=string_from(price.get("marketState")),
        trailing_pe=first_number(summary.get("trailingPE"), key_stats.get("trailingPE")),
        forward_pe=first_number(
            summary.get("forwardPE"), financial.get("forwardPE"), key_stats.get("forwardPE")
        ),
        payout_ratio=first_number(summary.get("payoutRatio"), financial.get("payoutRatio")),
        profit_margins=number_from(financial.get("profitMargins")),
        revenue_growth=number_from(financial.get("revenueGrowth")),
        gross_margins=number_from(financial.get("grossMargins")),
        free_cashflow=number_from(financial.get("freeCashflow")),
        operating_cashflow=number_from(financial.get("operatingCashflow")),
        total_revenue=number_from(financial.get("totalRevenue")),
        total_debt=first_number(financial.get("totalDebt"), key_stats.get("totalDebt")),
        total_cash=number_from(financial.get("totalCash")),
        current_ratio=number_from(financial.get("currentRatio")),
        quick_ratio=number_from(financial.get("quickRatio")),
        market_cap=first_number(price.get("marketCap"), key_stats.get("marketCap")),
        enterprise_value=number_from(key_stats.get("enterpriseValue")),
        price_to_book=first_number(
            summary.get("priceToBook"), financial.get("priceToBook"), key_stats.get("priceToBook")
        ),
        dividend_yield=number_from(summary.get("dividendYield")),
        debt_to_equity=number_from(financial.get("debtToEquity")),
        return_on_equity=number_from(financial.get("returnOnEquity")),
        return_on_assets=number_from(financial.get("returnOnAssets")),
        earnings_growth=number_from(financial.get("earningsGrowth")),
        **derived.model_dump(),
    )

    return NormalizedFundamentals(
        symbol=symbol,
        company_name=string_from(price.get("longName")) or string_from(price.get("shortName")),
        currency=string_from(price.get("currency")),
        exchange=string_from(price.get("exchangeName"))
        or string_from(price.get("fullExchangeName")),
        description=string_from(profile.get("longBusinessSummary")),
        source="scraped",
        fetched_at=datetime.now(timezone.utc),
        metrics=metrics,
    )


def parse_dividend_chart(payload: Any, symbol: str) -> DividendHistory:
    chart = mapping_from(mapping_from(payload).get("chart"))
    error = mapping_from(chart.get("error"))
    if error:
        description = string_from(error.get("description"))
        if error.get("code") in NOT_FOUND_CODES:
            raise DividendsNotFoundError(
                description or f"No dividend data for {symbol}",
                provider=PROVIDER,
                status_code=404,
            )
        raise UpstreamHttpError(description or "Scraped chart API error", provider=PROVIDER)

    results = chart.get("result")
    chart_result = results[0] if isinstance(results, list) and results else None
    if not isinstance(chart_result, Mapping):
        raise DataIncompleteError(
            f"No chart data in dividend response for {symbol}", provider=PROVIDER
        )

    events = mapping_from(mapping_from(chart_result.get("events")).get("dividends"))
    payments = []
    for entry in events.values():
        entry = mapping_from(entry)
        timestamp = first_number(entry.get("date"), entry.get("timestamp"))
        amount = number_from(entry.get("amount"))
        iso_date = iso_date_from_timestamp(timestamp) if timestamp else None
        if iso_date is None or amount is None:
            continue
        payments.append(
            DividendPayment(
                date=iso_date,
                amount=amount,
                ex_date=iso_date,
                pay_date=string_from(entry.get("formattedDate")) or iso_date,
            )
        )

    payments.sort(key=lambda payment: payment.date, reverse=True)
    return DividendHistory(symbol=symbol, data=payments, fetched_at=datetime.now(timezone.utc))


def parse_price_chart(payload: Any, symbol: str, period: str) -> PriceHistory:
    chart = mapping_from(mapping_from(payload).get("chart"))
    error = mapping_from(chart.get("error"))
    if error:
        raise UpstreamHttpError(
            string_from(error.get("description")) or "Scraped chart API error",
            provider=PROVIDER,
        )

    results = chart.get("result")
    chart_result = results[0] if isinstance(results, list) and results else None
    if not isinstance(chart_result, Mapping):
        raise DataIncompleteError(f"No chart data for {symbol}", provider=PROVIDER)

    timestamps = chart_result.get("timestamp") or []
    quotes = (mapping_from(chart_result.get("indicators")).get("quote") or [{}])[0]
    quotes = mapping_from(quotes)
    closes = quotes.get("close") or []
    volumes = quotes.get("volume") or []

    entries = []
    for index, timestamp in enumerate(timestamps):
        close = number_from(closes[index]) if index < len(closes) else None
        ts = number_from(timestamp)
        date = iso_date_from_timestamp(ts) if ts is not None else None
        if close is None or date is None:
            continue
        volume = number_from(volumes[index]) if index < len(volumes) else None
        entries.append(PriceHistoryEntry(date=date, close=close, volume=volume or None))

    if not entries:
        raise DataIncompleteError(f"No price data available for {symbol}", provider=PROVIDER)

    return PriceHistory(
        symbol=symbol, data=entries, period=period, fetched_at=datetime.now(timezone.utc)
    )


class ScrapedProviderClient(FundamentalsProvider):
    """Session-authenticated client for the scraped provider."""

    source = "scraped"

    def __init__(
        self,
        session_manager: SessionManager,
        http: HttpClient | None = None,
        cache: CacheBackend | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or config
        self.session_manager = session_manager
        self.http = http or HttpClient(provider=PROVIDER)
        self.cache = cache or LayeredCache()

    def is_available(self) -> bool:
        """No credential needed: the session is bootstrapped on demand."""
        return True

    async def close(self) -> None:
        await self.http.close()
        await self.session_manager.close()

    @staticmethod
    def cache_key(symbol: str) -> str:
        return f"fundamentals:scraped:{symbol}"

    def _headers(self, session: Session) -> dict[str, str]:
        return {
            "User-Agent": self.settings.user_agent,
            "Accept": "application/json, text/plain, */*",
            "Accept-Language": "en-US,en;q=0.9",
            "Referer": self.settings.scraped_referer,
            "Cookie": session.cookie_header,
        }

    async def _with_session_retry(
        self,
        symbol: str,
        operation: Callable[[Session], Awaitable[T]],
        force_refresh: bool,
    ) -> T:
        """
        Run `operation` with a session; on InvalidSessionError invalidate and
        retry once with a forced refresh (unless this call was already forced).
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(1 if force_refresh else 2),
            retry=retry_if_exception_type(InvalidSessionError),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                is_retry = attempt.retry_state.attempt_number > 1
                if is_retry:
                    logger.warning("scraped_session_rejected_retrying", symbol=symbol)
                    await self.session_manager.invalidate()
                session = await self.session_manager.acquire(
                    force_refresh=force_refresh or is_retry
                )
                result = await operation(session)
        return result

    def _raise_for_session(self, response: HttpResponse, what: str) -> None:
        verdict = classify_session_response(response.status, response.text)
        if verdict is SessionVerdict.OTHER:
            return
        raise InvalidSessionError(
            f"Scraped session rejected during {what} ({verdict.value}, status {response.status})",
            provider=PROVIDER,
            status_code=response.status,
        )

    @staticmethod
    def _decode(response: HttpResponse, what: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamHttpError(
                f"Scraped {what} response was not valid JSON",
                provider=PROVIDER,
                status_code=response.status,
            ) from e

    async def fetch_fundamentals(
        self, symbol: str, force_refresh: bool = False
    ) -> NormalizedFundamentals:
        """
        Fetch fundamentals (with statement-derived metrics) for a symbol.

        Args:
            symbol: Ticker; trimmed and uppercased here
            force_refresh: Bypass the result cache and force a new session

        Raises:
            InvalidArgumentError, SessionAcquisitionError, InvalidSessionError,
            UpstreamHttpError, DataIncompleteError, UpstreamTimeoutError
        """
        symbol = normalize_symbol(symbol)
        key = self.cache_key(symbol)

        if not force_refresh:
            cached = await read_model(self.cache, key, NormalizedFundamentals)
            if cached is not None:
                logger.debug("scraped_cache_hit", symbol=symbol)
                return cached

        async def request(session: Session) -> NormalizedFundamentals:
            return await self._request_fundamentals(symbol, session)

        result = await self._with_session_retry(symbol, request, force_refresh)
        await self.cache.set(key, result.to_json_dict(), self.settings.scraped_cache_ttl_seconds)
        logger.info("scraped_fundamentals_fetched", symbol=symbol)
        return result

    async def _request_fundamentals(self, symbol: str, session: Session) -> NormalizedFundamentals:
        url = f"{self.settings.scraped_fundamentals_url}{quote(scraped_path_symbol(symbol), safe='')}"
        response = await self.http.get(
            url,
            params={
                "modules": ",".join(REQUESTED_MODULES),
                "crumb": session.anti_forgery_token,
            },
            headers=self._headers(session),
            timeout=self.settings.fundamentals_timeout,
        )

        self._raise_for_session(response, "fundamentals request")
        if not response.ok:
            raise UpstreamHttpError(
                f"Scraped fundamentals request failed ({response.status} {response.reason})".strip(),
                provider=PROVIDER,
                status_code=response.status,
            )

        return parse_quote_summary(self._decode(response, "fundamentals"), symbol)

    async def fetch_dividend_history(self, symbol: str, range_: str = "2y") -> DividendHistory:
        """Dividend payments over `range_` (chart API events feed), newest first."""
        symbol = normalize_symbol(symbol)
        url = f"{self.settings.scraped_chart_url}{quote(scraped_path_symbol(symbol), safe='')}"

        async def request(session: Session) -> DividendHistory:
            response = await self.http.get(
                url,
                params={"range": range_, "interval": "1d", "events": "div"},
                headers=self._headers(session),
                timeout=self.settings.default_timeout,
            )
            self._raise_for_session(response, "dividend request")
            if response.status == 404:
                raise DividendsNotFoundError(
                    f"Scraped provider could not find dividends for {symbol}",
                    provider=PROVIDER,
                    status_code=404,
                )
            if not response.ok:
                raise UpstreamHttpError(
                    f"Scraped dividend API returned {response.status}",
                    provider=PROVIDER,
                    status_code=response.status,
                )
            return parse_dividend_chart(self._decode(response, "dividend"), symbol)

        return await self._with_session_retry(symbol, request, force_refresh=False)

    async def fetch_price_history(
        self, symbol: str, period: str = "6m", now: datetime | None = None
    ) -> PriceHistory:
        """Daily closes for '6m', '1y', '3y' or '5y' (unknown periods use 6m)."""
        symbol = normalize_symbol(symbol)
        end = now or datetime.now(timezone.utc)
        start = price_period_start(end, period)
        url = f"{self.settings.scraped_chart_url}{quote(scraped_path_symbol(symbol), safe='')}"

        async def request(session: Session) -> PriceHistory:
            response = await self.http.get(
                url,
                params={
                    "period1": str(math.floor(start.timestamp())),
                    "period2": str(math.floor(end.timestamp())),
                    "interval": "1d",
                },
                headers=self._headers(session),
                timeout=self.settings.default_timeout,
            )
            self._raise_for_session(response, "price history request")
            if not response.ok:
                raise UpstreamHttpError(
                    f"Scraped chart API returned {response.status}",
                    provider=PROVIDER,
                    status_code=response.status,
                )
            return parse_price_chart(self._decode(response, "price history"), symbol, period)

        try:
            return await self._with_session_retry(symbol, request, force_refresh=False)
        except Exception as e:
            logger.error(
                "scraped_price_history_failed",
                symbol=symbol,
                path_symbol=scraped_path_symbol(symbol),
                error=str(e),
            )
            raise
