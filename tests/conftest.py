"""Pytest configuration for fundamentals engine tests."""

import logging
import os
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import structlog

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


@pytest.fixture(scope="session", autouse=True)
def setup_test_env():
    """
    Set up test environment variables.
    This fixture runs for the entire session and applies default MOCK values.
    """
    test_env = {
        "ENVIRONMENT": "test",
        "LOG_LEVEL": "ERROR",
        "COMMERCIAL_API_TOKEN": "test-token",
    }
    with patch.dict(os.environ, test_env, clear=False):
        yield


@pytest.fixture(autouse=True)
def configure_structlog_for_tests():
    """Configure structlog for test environment."""
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.root.setLevel(logging.WARNING)
    yield


@pytest.fixture
def settings():
    """Settings with a commercial token and short, predictable TTLs."""
    from fundamentals_engine.config import Settings

    return Settings(
        COMMERCIAL_API_TOKEN="test-token",
        SESSION_TTL_SECONDS=900,
        LOG_LEVEL="ERROR",
    )


@pytest.fixture
def mock_http():
    """HttpClient stand-in; tests set `mock_http.get.side_effect`."""
    from fundamentals_engine.transport import HttpClient

    http = MagicMock(spec=HttpClient)
    http.get = AsyncMock()
    http.close = AsyncMock()
    return http


def json_response(payload, status: int = 200, reason: str = "OK"):
    """Build an HttpResponse carrying a JSON body."""
    import json

    from fundamentals_engine.transport import HttpResponse

    return HttpResponse(status=status, text=json.dumps(payload), reason=reason)


def quote_summary_payload(**overrides) -> dict:
    """
    Minimal quote-summary payload with four years of statements.

    Keyword overrides replace whole modules (e.g. summaryDetail={...}).
    """
    result = {
        "price": {
            "symbol": "AAPL",
            "longName": "Apple Inc.",
            "currency": "USD",
            "exchangeName": "NasdaqGS",
            "marketState": "REGULAR",
            "regularMarketPrice": {"raw": 190.0, "fmt": "190.00"},
            "regularMarketPreviousClose": {"raw": 188.0},
            "marketCap": {"raw": 2.9e12},
        },
        "summaryDetail": {
            "trailingPE": {"raw": 30.0},
            "forwardPE": {"raw": 27.5},
            "dividendYield": {"raw": 0.031},
            "payoutRatio": {"raw": 0.55},
        },
        "financialData": {
            "profitMargins": {"raw": 0.25},
            "returnOnEquity": {"raw": 1.5},
            "debtToEquity": {"raw": 180.0},
            "totalRevenue": {"raw": 383e9},
        },
        "defaultKeyStatistics": {"enterpriseValue": {"raw": 2.95e12}},
        "assetProfile": {"longBusinessSummary": "Designs consumer electronics."},
        "incomeStatementHistory": {
            "incomeStatementHistory": [
                {"endDate": {"raw": 1704067200}, "totalRevenue": {"raw": 1000}, "netIncome": {"raw": 120}},
                {"endDate": {"raw": 1672444800}, "totalRevenue": {"raw": 900}, "netIncome": {"raw": 100}},
                {"endDate": {"raw": 1640908800}, "totalRevenue": {"raw": 820}, "netIncome": {"raw": 90}},
                {"endDate": {"raw": 1609372800}, "totalRevenue": {"raw": 700}, "netIncome": {"raw": 80}},
            ]
        },
        "balanceSheetHistory": {
            "balanceSheetStatements": [
                {"endDate": {"raw": 1704067200}, "totalStockholderEquity": {"raw": 600}, "totalLiab": {"raw": 300}},
                {"endDate": {"raw": 1672444800}, "totalStockholderEquity": {"raw": 550}, "totalLiab": {"raw": 320}},
            ]
        },
        "cashflowStatementHistory": {
            "cashflowStatements": [
                {"endDate": {"raw": 1704067200}, "freeCashFlow": {"raw": 150}, "dividendsPaid": {"raw": -60}},
            ]
        },
    }
    result.update(overrides)
    return {"quoteSummary": {"result": [result], "error": None}}


@pytest.fixture
def quote_summary():
    return quote_summary_payload
