"""
Statement-derived metrics.

Turns the raw income-statement, balance-sheet and cash-flow histories returned
by the scraped provider into DerivedMetrics:

    roe_actual                 latest net income / average of the two latest equities
    revenue_cagr_3y            compound growth over up to three periods
    earnings_cagr_3y           same on |net income|
    debt_to_equity_actual      latest total liabilities / latest equity
    free_cashflow_payout_ratio |dividends paid| / free cash flow (FCF > 0 only)
    *_growth_history           period-over-period growth for the latest four periods

Pure and deterministic: no network or cache access.
"""

import math
from collections.abc import Mapping
from typing import Any

from fundamentals_engine.models import DerivedMetrics, GrowthPoint, StatementEntry
from fundamentals_engine.utils import (
    iso_date_from_timestamp,
    mapping_from,
    number_from,
    safe_divide,
)

SECONDS_PER_YEAR = 365 * 24 * 3600
CAGR_LOOKBACK_PERIODS = 3
GROWTH_HISTORY_PERIODS = 4

# (outer module, inner list key) for each statement family
INCOME_PATH = ("incomeStatementHistory", "incomeStatementHistory")
BALANCE_PATH = ("balanceSheetHistory", "balanceSheetStatements")
CASHFLOW_PATH = ("cashflowStatementHistory", "cashflowStatements")


def _period_label(raw_end_date: Any, end_date: int) -> str | None:
    fmt = mapping_from(raw_end_date).get("fmt")
    if isinstance(fmt, str) and fmt:
        return fmt
    return iso_date_from_timestamp(end_date)


def _free_cash_flow(raw: Mapping) -> float | None:
    fcf = number_from(raw.get("freeCashFlow"))
    if fcf is not None:
        return fcf
    operating = number_from(raw.get("totalCashFromOperatingActivities"))
    capex = number_from(raw.get("capitalExpenditures"))
    if operating is None or capex is None:
        return None
    # Capex is reported as a negative number
    return operating + capex


def parse_statement_entries(raw_entries: Any) -> list[StatementEntry]:
    """
    Decode a raw statement array into StatementEntry objects.

    Entries without a usable end date (missing, or a timestamp too far out
    of range to label) are dropped; the result is sorted newest first.
    """
    if not isinstance(raw_entries, list):
        return []

    entries = []
    for raw in raw_entries:
        if not isinstance(raw, Mapping):
            continue
        end_date = number_from(raw.get("endDate"))
        if end_date is None:
            continue
        end_date = int(end_date)
        period_label = _period_label(raw.get("endDate"), end_date)
        if period_label is None:
            continue
        entries.append(
            StatementEntry(
                end_date=end_date,
                period_label=period_label,
                total_revenue=number_from(raw.get("totalRevenue")),
                net_income=number_from(raw.get("netIncome")),
                total_stockholder_equity=number_from(raw.get("totalStockholderEquity")),
                total_liabilities=number_from(
                    raw.get("totalLiab", raw.get("totalLiabilities"))
                ),
                free_cash_flow=_free_cash_flow(raw),
                dividends_paid=number_from(raw.get("dividendsPaid")),
            )
        )

    entries.sort(key=lambda entry: entry.end_date, reverse=True)
    return entries


def _statement_family(raw_result: Mapping, path: tuple[str, str]) -> list[StatementEntry]:
    outer, inner = path
    return parse_statement_entries(mapping_from(raw_result.get(outer)).get(inner))


def compute_roe(income: list[StatementEntry], balance: list[StatementEntry]) -> float | None:
    if not income or not balance:
        return None
    net_income = income[0].net_income
    latest_equity = balance[0].total_stockholder_equity
    if net_income is None or latest_equity is None:
        return None

    prior_equity = balance[1].total_stockholder_equity if len(balance) > 1 else None
    if prior_equity is None:
        denominator = latest_equity
    else:
        denominator = (latest_equity + prior_equity) / 2
    return safe_divide(net_income, denominator)


def compute_cagr(
    income: list[StatementEntry], field: str, use_absolute: bool = False
) -> float | None:
    """
    Compound annual growth between the latest period and up to three periods back.

    The elapsed span is floored at one year. Undefined when fewer than two
    periods exist or either endpoint is missing, non-finite or <= 0.
    """
    if len(income) < 2:
        return None

    latest = income[0]
    older = income[min(len(income) - 1, CAGR_LOOKBACK_PERIODS)]

    latest_value = getattr(latest, field)
    older_value = getattr(older, field)
    if latest_value is None or older_value is None:
        return None
    if use_absolute:
        latest_value, older_value = abs(latest_value), abs(older_value)
    if latest_value <= 0 or older_value <= 0:
        return None

    years = max((latest.end_date - older.end_date) / SECONDS_PER_YEAR, 1.0)
    try:
        cagr = (latest_value / older_value) ** (1 / years) - 1
    except (OverflowError, ZeroDivisionError):
        return None
    return cagr if math.isfinite(cagr) else None


def compute_debt_to_equity(balance: list[StatementEntry]) -> float | None:
    if not balance:
        return None
    return safe_divide(balance[0].total_liabilities, balance[0].total_stockholder_equity)


def compute_fcf_payout(cashflow: list[StatementEntry]) -> float | None:
    if not cashflow:
        return None
    latest = cashflow[0]
    if latest.free_cash_flow is None or latest.free_cash_flow <= 0:
        return None
    if latest.dividends_paid is None:
        return None
    return abs(latest.dividends_paid) / latest.free_cash_flow


def _growth_rate(current: float | None, previous: float | None) -> float:
    if current is None or previous is None or previous == 0:
        return math.nan
    return (current - previous) / abs(previous)


def compute_growth_history(
    income: list[StatementEntry], field: str
) -> list[GrowthPoint] | None:
    """
    Period-over-period growth for the latest four periods, oldest first.

    A period without a usable comparison base yields NaN, and NaN points are
    dropped, so the result can hold fewer than four points.
    """
    if not income:
        return None

    window = range(min(GROWTH_HISTORY_PERIODS, len(income)))
    points = []
    for index in window:
        current = getattr(income[index], field)
        previous = getattr(income[index + 1], field) if index + 1 < len(income) else None
        points.append((income[index].period_label, _growth_rate(current, previous)))

    history = [
        GrowthPoint(period=period, value=value)
        for period, value in reversed(points)
        if not math.isnan(value)
    ]
    return history or None


def derive_metrics(raw_result: Mapping | None) -> DerivedMetrics:
    """Compute every statement-derived metric from a raw provider result."""
    raw_result = mapping_from(raw_result)
    income = _statement_family(raw_result, INCOME_PATH)
    balance = _statement_family(raw_result, BALANCE_PATH)
    cashflow = _statement_family(raw_result, CASHFLOW_PATH)

    return DerivedMetrics(
        roe_actual=compute_roe(income, balance),
        revenue_cagr_3y=compute_cagr(income, "total_revenue"),
        earnings_cagr_3y=compute_cagr(income, "net_income", use_absolute=True),
        debt_to_equity_actual=compute_debt_to_equity(balance),
        free_cashflow_payout_ratio=compute_fcf_payout(cashflow),
        revenue_growth_history=compute_growth_history(income, "total_revenue"),
        earnings_growth_history=compute_growth_history(income, "net_income"),
    )
