#!/usr/bin/env python3
"""
Command-line entry point for the fundamentals engine.

Fetches one or more tickers through the fallback orchestrator and prints a
table per symbol (or the alias-keyed JSON payload with --json).
"""

import argparse
import asyncio
import json
import logging
import sys

import structlog
from rich import box
from rich.console import Console
from rich.table import Table

# Import config FIRST so logging is configured before any other module logs
from fundamentals_engine.config import config
from fundamentals_engine.models import NormalizedFundamentals

logger = structlog.get_logger(__name__)
console = Console()

# (attribute, label, kind) rows of the summary table
DISPLAY_ROWS = [
    ("current_price", "Price", "number"),
    ("change_percent", "Change %", "number"),
    ("market_cap", "Market Cap", "large"),
    ("trailing_pe", "P/E (trailing)", "number"),
    ("forward_pe", "P/E (forward)", "number"),
    ("price_to_book", "P/B", "number"),
    ("dividend_yield", "Dividend Yield", "percent"),
    ("payout_ratio", "Payout Ratio", "percent"),
    ("return_on_equity", "ROE (reported/approx.)", "number"),
    ("roe_actual", "ROE (statements)", "percent"),
    ("revenue_cagr_3y", "Revenue CAGR 3Y", "percent"),
    ("earnings_cagr_3y", "Earnings CAGR 3Y", "percent"),
    ("debt_to_equity", "Debt/Equity (reported/approx.)", "number"),
    ("debt_to_equity_actual", "Debt/Equity (statements)", "number"),
    ("free_cashflow_payout_ratio", "FCF Payout", "percent"),
]


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Multi-source financial fundamentals",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Single ticker
  python -m fundamentals_engine.main --ticker AAPL

  # Several tickers, bypassing caches
  python -m fundamentals_engine.main --ticker MSFT --ticker BRK.B --refresh

  # Machine-readable output
  python -m fundamentals_engine.main --ticker KO --json
        """,
    )

    parser.add_argument(
        "--ticker",
        type=str,
        action="append",
        required=True,
        help="Ticker symbol to fetch (repeatable, e.g. AAPL, BRK.B)",
    )

    parser.add_argument(
        "--refresh",
        action="store_true",
        help="Bypass caches and force a new scraped-provider session",
    )

    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the normalized snapshot(s) as JSON",
    )

    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")

    return parser.parse_args(argv)


def format_value(value: float | None, kind: str) -> str:
    if value is None:
        return "[dim]n/a[/dim]"
    if kind == "percent":
        return f"{value * 100:.2f}%"
    if kind == "large":
        for threshold, suffix in ((1e12, "T"), (1e9, "B"), (1e6, "M")):
            if abs(value) >= threshold:
                return f"{value / threshold:.2f}{suffix}"
    return f"{value:,.2f}"


def build_table(result: NormalizedFundamentals) -> Table:
    title = f"{result.symbol}"
    if result.company_name:
        title += f" - {result.company_name}"

    table = Table(title=title, show_header=True, box=box.ROUNDED)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    estimated = set(result.estimated_fields or [])
    for attribute, label, kind in DISPLAY_ROWS:
        value = format_value(getattr(result.metrics, attribute), kind)
        if attribute in estimated:
            value += " [yellow]*[/yellow]"
        table.add_row(label, value)

    caption = f"source: {result.source} | fetched: {result.fetched_at.isoformat()}"
    if estimated:
        caption += " | * estimated"
    table.caption = caption
    return table


def render(results: dict[str, NormalizedFundamentals], errors: dict[str, str], as_json: bool):
    if as_json:
        payload = {
            "data": {symbol: result.to_json_dict() for symbol, result in results.items()},
            "errors": errors,
        }
        print(json.dumps(payload, indent=2))
        return

    for result in results.values():
        console.print(build_table(result))
        for warning in result.warnings or []:
            console.print(f"[yellow]Warning:[/yellow] {warning}")
        console.print()

    for symbol, error in errors.items():
        console.print(f"[bold red]{symbol}:[/bold red] {error}")


async def main(argv: list[str] | None = None) -> int:
    """Main entry point; returns the process exit code."""
    args = parse_arguments(argv)

    from fundamentals_engine.cleanup import cleanup_async_resources
    from fundamentals_engine.data.orchestrator import get_orchestrator

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        for name in logging.root.manager.loggerDict:
            logging.getLogger(name).setLevel(logging.DEBUG)

    if not config.get_commercial_api_token():
        logger.warning("commercial_token_missing", fallback="scraped")

    try:
        batch = await get_orchestrator().fetch_many(args.ticker, force_refresh=args.refresh)
        render(batch.data, batch.errors, args.json)
        return 1 if batch.errors and not batch.data else 0
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user.[/yellow]\n")
        return 1
    finally:
        await cleanup_async_resources()


def run() -> None:
    """Console-script entry point."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
