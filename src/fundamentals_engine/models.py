"""
Pydantic models for the fundamentals engine.

Typed data contracts for provider sessions, statement history, derived
metrics and the normalized snapshot returned to callers. Attributes are
snake_case; JSON (cache payloads, CLI --json) uses the camelCase aliases.
Every model is frozen: values are shared by reference once built.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Generic, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

DataSource = Literal["commercial", "scraped"]

T = TypeVar("T")


class _FrozenModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    def to_json_dict(self) -> dict:
        """Alias-keyed, JSON-safe dump (the form stored in caches)."""
        return self.model_dump(mode="json", by_alias=True)


class Session(_FrozenModel):
    """A scraped-provider session: cookie header plus anti-forgery token."""

    cookie_header: str
    anti_forgery_token: str
    created_at: float  # epoch seconds

    def is_valid(self, now: float, ttl_seconds: float) -> bool:
        return now < self.created_at + ttl_seconds


class StatementEntry(_FrozenModel):
    """One period of income, balance-sheet or cash-flow statement data."""

    end_date: int | None = None  # unix seconds
    period_label: str | None = None
    total_revenue: float | None = None
    net_income: float | None = None
    total_stockholder_equity: float | None = None
    total_liabilities: float | None = None
    free_cash_flow: float | None = None
    dividends_paid: float | None = None


class GrowthPoint(_FrozenModel):
    period: str
    value: float


class DerivedMetrics(_FrozenModel):
    """Statement-derived analytics (see data.statements.derive_metrics)."""

    roe_actual: float | None = None
    revenue_cagr_3y: float | None = Field(default=None, alias="revenueCagr3Y")
    earnings_cagr_3y: float | None = Field(default=None, alias="earningsCagr3Y")
    debt_to_equity_actual: float | None = None
    free_cashflow_payout_ratio: float | None = None
    revenue_growth_history: list[GrowthPoint] | None = None
    earnings_growth_history: list[GrowthPoint] | None = None


class FundamentalMetrics(DerivedMetrics):
    """
    Superset of valuation, profitability, liquidity and leverage metrics.

    None means "unknown". Consumers must not treat None and 0 as equivalent.
    """

    current_price: float | None = None
    previous_close: float | None = None
    change: float | None = None
    change_percent: float | None = None
    market_state: str | None = None
    trailing_pe: float | None = Field(default=None, alias="trailingPE")
    forward_pe: float | None = Field(default=None, alias="forwardPE")
    payout_ratio: float | None = None
    profit_margins: float | None = None
    revenue_growth: float | None = None
    gross_margins: float | None = None
    free_cashflow: float | None = None
    operating_cashflow: float | None = None
    total_revenue: float | None = None
    total_debt: float | None = None
    total_cash: float | None = None
    current_ratio: float | None = None
    quick_ratio: float | None = None
    market_cap: float | None = None
    enterprise_value: float | None = None
    price_to_book: float | None = None
    dividend_yield: float | None = None
    debt_to_equity: float | None = None
    return_on_equity: float | None = None
    return_on_assets: float | None = None
    earnings_growth: float | None = None


class NormalizedFundamentals(_FrozenModel):
    """The unit of value returned to callers and stored in the caches."""

    symbol: str
    company_name: str | None = None
    currency: str | None = None
    exchange: str | None = None
    description: str | None = None
    source: DataSource
    fetched_at: datetime
    metrics: FundamentalMetrics = Field(default_factory=FundamentalMetrics)
    warnings: list[str] | None = None
    # Metrics produced by valuation-ratio heuristics rather than reported or
    # statement data; downstream scoring should weight these lower.
    estimated_fields: list[str] | None = None


class DividendPayment(_FrozenModel):
    date: str
    amount: float
    ex_date: str | None = None
    pay_date: str | None = None


class DividendHistory(_FrozenModel):
    symbol: str
    data: list[DividendPayment] = Field(default_factory=list)
    fetched_at: datetime


class PriceHistoryEntry(_FrozenModel):
    date: str
    close: float
    volume: float | None = None


class PriceHistory(_FrozenModel):
    symbol: str
    data: list[PriceHistoryEntry] = Field(default_factory=list)
    period: str
    fetched_at: datetime


class BatchResult(_FrozenModel):
    """Outcome of a multi-symbol fetch: successes and per-symbol error messages."""

    data: dict[str, NormalizedFundamentals] = Field(default_factory=dict)
    errors: dict[str, str] = Field(default_factory=dict)


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """A cached value with its absolute expiry on the cache's clock."""

    data: T
    expires_at: float
