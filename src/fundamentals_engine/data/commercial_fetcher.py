"""
Commercial Provider Fetcher
Primary source for fundamentals: a token-authenticated REST API.

Three independent requests per symbol (company metadata, daily price series,
daily fundamentals series), issued concurrently. The latest entry of each
series is used.

The provider only exposes single-point valuation ratios, so ROE, growth and
debt-to-equity are approximated from them and listed in `estimated_fields`.
These heuristics are lower fidelity than the statement-derived figures the
scraped provider yields:

    return_on_equity  clamp(P/B / P/E * 100, 0, 100)
    revenue_growth    clamp(P/E / |PEG|, -50, 100)
    debt_to_equity    clamp((EV - market cap) / market cap, 0, 5), only when EV > market cap

Payout ratio is never reported here, so a commercial snapshot always goes
through the scraped supplement for it.

Configuration:
    Set COMMERCIAL_API_TOKEN in .env file

Error Handling:
    - Missing token: ConfigurationError (must fix, never retried)
    - Non-2xx: UpstreamHttpError (token never included in the message)
    - Empty price or fundamentals series: DataIncompleteError
    - Timeout: UpstreamTimeoutError
"""

import asyncio
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

import structlog

from fundamentals_engine.config import Settings, config
from fundamentals_engine.data.interfaces import FundamentalsProvider
from fundamentals_engine.exceptions import (
    ConfigurationError,
    DataIncompleteError,
    UpstreamHttpError,
)
from fundamentals_engine.models import FundamentalMetrics, NormalizedFundamentals
from fundamentals_engine.transport import HttpClient
from fundamentals_engine.utils import (
    clamp,
    mapping_from,
    normalize_symbol,
    number_from,
    safe_divide,
    string_from,
)

logger = structlog.get_logger(__name__)

PROVIDER = "commercial"

# Fields produced by valuation-ratio heuristics rather than reported data
ESTIMATED_FIELDS = ("return_on_equity", "revenue_growth", "debt_to_equity")


def _latest(series: Any) -> Mapping | None:
    if isinstance(series, list) and series:
        return mapping_from(series[-1])
    return None


def _previous(series: Any) -> Mapping | None:
    if isinstance(series, list) and len(series) > 1:
        return mapping_from(series[-2])
    return None


def approximate_roe(pb_ratio: float | None, pe_ratio: float | None) -> float | None:
    if not pb_ratio or not pe_ratio or pe_ratio <= 0:
        return None
    return clamp(pb_ratio / pe_ratio * 100, 0, 100)


def approximate_growth(pe_ratio: float | None, peg_ratio: float | None) -> float | None:
    if not pe_ratio or not peg_ratio:
        return None
    return clamp(pe_ratio / abs(peg_ratio), -50, 100)


def approximate_debt_to_equity(
    enterprise_value: float | None, market_cap: float | None
) -> float | None:
    if not market_cap or not enterprise_value or enterprise_value <= market_cap:
        return None
    return clamp((enterprise_value - market_cap) / market_cap, 0, 5)


def derive_commercial_metrics(
    price: Mapping, fundamentals: Mapping, previous_price: Mapping | None = None
) -> tuple[FundamentalMetrics, list[str]]:
    """
    Build metrics from the latest price and fundamentals entries.

    Returns the metrics and the names of the fields that were estimated.
    """
    current_price = number_from(price.get("close"))
    previous_close = number_from(mapping_from(previous_price).get("close"))

    change = None
    change_percent = None
    if current_price is not None and previous_close is not None:
        change = current_price - previous_close
        if previous_close:
            change_percent = change / previous_close * 100

    pe_ratio = number_from(fundamentals.get("peRatio"))
    pb_ratio = number_from(fundamentals.get("pbRatio"))
    peg_ratio = number_from(fundamentals.get("trailingPEG1Y"))
    market_cap = number_from(fundamentals.get("marketCap"))
    enterprise_value = number_from(fundamentals.get("enterpriseVal"))
    dividends_per_share = number_from(fundamentals.get("dividendsPerShare"))
    total_revenue = number_from(fundamentals.get("totalRevenue"))

    dividend_yield = None
    if dividends_per_share:
        dividend_yield = safe_divide(dividends_per_share, current_price)

    profit_margins = number_from(fundamentals.get("profitMargin"))
    if profit_margins is None:
        profit_margins = safe_divide(number_from(fundamentals.get("netIncome")), total_revenue)

    estimates = {
        "return_on_equity": approximate_roe(pb_ratio, pe_ratio),
        "revenue_growth": approximate_growth(pe_ratio, peg_ratio),
        "debt_to_equity": approximate_debt_to_equity(enterprise_value, market_cap),
    }

    metrics = FundamentalMetrics(
        current_price=current_price,
        previous_close=previous_close,
        change=change,
        change_percent=change_percent,
        trailing_pe=pe_ratio,
        price_to_book=pb_ratio,
        market_cap=market_cap,
        enterprise_value=enterprise_value,
        dividend_yield=dividend_yield,
        current_ratio=number_from(fundamentals.get("currentRatio")),
        quick_ratio=number_from(fundamentals.get("quickRatio")),
        total_debt=number_from(fundamentals.get("totalDebt")),
        total_revenue=total_revenue,
        free_cashflow=number_from(fundamentals.get("freeCashFlow")),
        operating_cashflow=number_from(fundamentals.get("operatingCashFlow")),
        profit_margins=profit_margins,
        gross_margins=number_from(fundamentals.get("grossMargin")),
        return_on_assets=number_from(fundamentals.get("returnOnAssets")),
        **estimates,
    )
    estimated = [name for name in ESTIMATED_FIELDS if estimates[name] is not None]
    return metrics, estimated


class CommercialProviderClient(FundamentalsProvider):
    """
    Minimal client for the commercial fundamentals API.

    Usage:
        async with CommercialProviderClient() as client:
            if client.is_available():
                snapshot = await client.fetch_fundamentals("AAPL")
    """

    source = "commercial"

    def __init__(
        self,
        api_token: str | None = None,
        http: HttpClient | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or config
        self.api_token = api_token or self.settings.get_commercial_api_token()
        self.base_url = self.settings.commercial_base_url.rstrip("/")
        self.http = http or HttpClient(provider=PROVIDER)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.close()

    async def close(self) -> None:
        await self.http.close()

    def is_available(self) -> bool:
        """Check if the provider is configured (token present)."""
        return bool(self.api_token)

    async def _get_json(self, path: str) -> Any:
        response = await self.http.get(
            f"{self.base_url}{path}",
            params={"token": self.api_token},
            timeout=self.settings.default_timeout,
        )
        if not response.ok:
            detail = response.text[:200].strip()
            raise UpstreamHttpError(
                f"Commercial request failed ({response.status} {response.reason}) {detail}".strip(),
                provider=PROVIDER,
                status_code=response.status,
            )
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamHttpError(
                f"Commercial response for {path} was not valid JSON",
                provider=PROVIDER,
                status_code=response.status,
            ) from e

    async def fetch_fundamentals(
        self, symbol: str, force_refresh: bool = False
    ) -> NormalizedFundamentals:
        """
        Fetch an approximate fundamentals snapshot.

        The commercial client keeps no cache of its own, so force_refresh has
        no effect here.

        Raises:
            ConfigurationError: no API token configured
            UpstreamHttpError, DataIncompleteError, UpstreamTimeoutError
        """
        if not self.is_available():
            raise ConfigurationError("Commercial API token is not configured")

        symbol = normalize_symbol(symbol)
        encoded = quote(symbol, safe="")

        metadata, prices, fundamentals = await asyncio.gather(
            self._get_json(f"/tiingo/daily/{encoded}"),
            self._get_json(f"/tiingo/daily/{encoded}/prices"),
            self._get_json(f"/tiingo/fundamentals/{encoded}/daily"),
        )

        latest_price = _latest(prices)
        if latest_price is None:
            raise DataIncompleteError(
                f"Commercial price history is empty for {symbol}", provider=PROVIDER
            )
        latest_fundamentals = _latest(fundamentals)
        if latest_fundamentals is None:
            raise DataIncompleteError(
                f"Commercial fundamentals history is empty for {symbol}", provider=PROVIDER
            )

        metrics, estimated = derive_commercial_metrics(
            latest_price, latest_fundamentals, _previous(prices)
        )

        warnings = []
        if not metrics.trailing_pe:
            warnings.append("Missing commercial P/E ratio")
        if not metrics.price_to_book:
            warnings.append("Missing commercial P/B ratio")

        metadata = mapping_from(metadata)
        logger.info("commercial_fundamentals_fetched", symbol=symbol, estimated=estimated)
        return NormalizedFundamentals(
            symbol=symbol,
            company_name=string_from(metadata.get("name")) or symbol,
            currency="USD",
            exchange=string_from(metadata.get("exchangeCode")),
            description=string_from(metadata.get("description")),
            source="commercial",
            fetched_at=datetime.now(timezone.utc),
            metrics=metrics,
            warnings=warnings or None,
            estimated_fields=estimated or None,
        )
