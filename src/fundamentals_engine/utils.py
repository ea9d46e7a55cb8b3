"""
Small helpers for decoding loosely-shaped provider JSON and normalizing tickers.

Provider payloads mix bare numbers, numeric strings and {"raw": n, "fmt": "..."}
wrappers, and occasionally carry NaN/Infinity. Everything numeric goes through
number_from() so a non-finite or malformed value becomes None ("unknown")
instead of leaking into derived metrics.
"""

import math
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from fundamentals_engine.exceptions import InvalidArgumentError


def number_from(value: Any) -> float | None:
    """Coerce a provider value to a finite float, or None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Mapping):
        return number_from(value.get("raw"))
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    return num if math.isfinite(num) else None


def string_from(value: Any) -> str | None:
    """Return value when it is a non-blank string, else None."""
    if isinstance(value, str) and value.strip():
        return value
    return None


def mapping_from(value: Any) -> Mapping:
    """Return value when it is a mapping, else an empty dict."""
    return value if isinstance(value, Mapping) else {}


def first_number(*values: Any) -> float | None:
    """First value (in order) that decodes to a finite number."""
    for value in values:
        num = number_from(value)
        if num is not None:
            return num
    return None


def iso_date_from_timestamp(timestamp: float) -> str | None:
    """UTC calendar date of a Unix timestamp, or None when it is out of range."""
    try:
        return datetime.fromtimestamp(timestamp, tz=timezone.utc).date().isoformat()
    except (ValueError, OverflowError, OSError):
        return None


def safe_divide(numerator: float | None, denominator: float | None) -> float | None:
    if numerator is None or denominator is None:
        return None
    if not math.isfinite(numerator) or not math.isfinite(denominator) or denominator == 0:
        return None
    return numerator / denominator


def clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(value, upper))


def normalize_symbol(symbol: str | None) -> str:
    """Trim and uppercase a ticker; raise InvalidArgumentError when blank."""
    normalized = (symbol or "").strip().upper()
    if not normalized:
        raise InvalidArgumentError("Ticker symbol is required")
    return normalized


def scraped_path_symbol(symbol: str) -> str:
    """The scraped provider spells share classes with hyphens (BRK.B -> BRK-B)."""
    return symbol.replace(".", "-")
