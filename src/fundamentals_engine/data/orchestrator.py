"""
Fallback orchestrator.

Single entry point for fundamentals. Order of operations per symbol:

    1. result cache (fundamentals:{SYMBOL}), unless force_refresh
    2. commercial provider
         - complete enough: return it
         - missing dividend yield / payout ratio: supplement from the scraped
           provider and gap-fill an allow-list of fields (source stays
           "commercial"); a failed supplement is logged and ignored
    3. commercial failed: scraped provider as the sole source
    4. both failed: AggregateFetchError naming both providers

Usage:
    from fundamentals_engine.data.orchestrator import fetch_fundamentals_with_fallback

    snapshot = await fetch_fundamentals_with_fallback("aapl")
    print(snapshot.source, snapshot.metrics.dividend_yield)
"""

import asyncio
from collections.abc import Iterable

import structlog

from fundamentals_engine.cache import (
    CacheBackend,
    LayeredCache,
    MemoryCache,
    build_external_cache,
    read_model,
)
from fundamentals_engine.cleanup import register_cleanup
from fundamentals_engine.config import Settings, config
from fundamentals_engine.data.commercial_fetcher import CommercialProviderClient
from fundamentals_engine.data.interfaces import FundamentalsProvider
from fundamentals_engine.data.scraped_fetcher import ScrapedProviderClient
from fundamentals_engine.data.session import SessionManager
from fundamentals_engine.exceptions import AggregateFetchError, InvalidArgumentError
from fundamentals_engine.models import BatchResult, NormalizedFundamentals
from fundamentals_engine.utils import normalize_symbol

logger = structlog.get_logger(__name__)

# Fields the scraped provider may fill in on a commercial result
SUPPLEMENTAL_FIELDS = (
    "dividend_yield",
    "payout_ratio",
    "forward_pe",
    "earnings_growth",
    "roe_actual",
    "revenue_cagr_3y",
    "earnings_cagr_3y",
    "debt_to_equity_actual",
    "free_cashflow_payout_ratio",
    "revenue_growth_history",
    "earnings_growth_history",
)


def _is_missing(value) -> bool:
    return value is None or (isinstance(value, (int, float)) and value == 0)


def needs_supplement(result: NormalizedFundamentals) -> bool:
    """True when dividend yield or payout ratio is missing or zero."""
    return _is_missing(result.metrics.dividend_yield) or _is_missing(
        result.metrics.payout_ratio
    )


def merge_supplemental_metrics(
    primary: NormalizedFundamentals, supplemental: NormalizedFundamentals
) -> NormalizedFundamentals:
    """
    Gap-fill `primary` from `supplemental`.

    Only allow-listed fields are copied, and only where the primary value is
    None or exactly zero. Identity fields, `source` and `estimated_fields`
    come from `primary`; warnings are concatenated.
    """
    updates = {}
    for name in SUPPLEMENTAL_FIELDS:
        current = getattr(primary.metrics, name)
        candidate = getattr(supplemental.metrics, name)
        if _is_missing(current) and candidate is not None:
            updates[name] = candidate

    warnings = [*(primary.warnings or []), *(supplemental.warnings or [])]

    return primary.model_copy(
        update={
            "metrics": primary.metrics.model_copy(update=updates),
            "warnings": warnings or None,
        }
    )


class FallbackOrchestrator:
    """Commercial-first fetch with scraped supplement/fallback and a result cache."""

    def __init__(
        self,
        commercial: FundamentalsProvider,
        scraped: FundamentalsProvider,
        cache: CacheBackend | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or config
        self.commercial = commercial
        self.scraped = scraped
        self.cache = cache or LayeredCache()

    @staticmethod
    def cache_key(symbol: str) -> str:
        return f"fundamentals:{symbol}"

    async def close(self) -> None:
        await self.commercial.close()
        await self.scraped.close()
        await self.cache.close()

    async def _cached(self, symbol: str) -> NormalizedFundamentals | None:
        return await read_model(self.cache, self.cache_key(symbol), NormalizedFundamentals)

    async def fetch_fundamentals_with_fallback(
        self, symbol: str, force_refresh: bool = False
    ) -> NormalizedFundamentals:
        """
        Fetch one normalized snapshot for `symbol`.

        Raises:
            InvalidArgumentError: blank symbol
            AggregateFetchError: both providers failed
        """
        symbol = normalize_symbol(symbol)

        if not force_refresh:
            cached = await self._cached(symbol)
            if cached is not None:
                logger.debug("result_cache_hit", symbol=symbol)
                return cached

        result = await self._fetch_uncached(symbol, force_refresh)
        await self.cache.set(
            self.cache_key(symbol), result.to_json_dict(), self.settings.result_cache_ttl_seconds
        )
        return result

    async def _fetch_uncached(self, symbol: str, force_refresh: bool) -> NormalizedFundamentals:
        errors: dict[str, Exception] = {}

        try:
            primary = await self.commercial.fetch_fundamentals(symbol, force_refresh)
        except Exception as e:
            errors[self.commercial.source] = e
            logger.warning(
                "commercial_fetch_failed",
                symbol=symbol,
                error_type=type(e).__name__,
                error=str(e),
            )
        else:
            if not needs_supplement(primary):
                return primary
            return await self._supplement(primary, force_refresh)

        try:
            result = await self.scraped.fetch_fundamentals(symbol, force_refresh)
        except Exception as e:
            errors[self.scraped.source] = e
            logger.error(
                "scraped_fallback_failed",
                symbol=symbol,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise AggregateFetchError(symbol, errors) from e

        logger.info("scraped_fallback_used", symbol=symbol)
        return result

    async def _supplement(
        self, primary: NormalizedFundamentals, force_refresh: bool
    ) -> NormalizedFundamentals:
        try:
            supplemental = await self.scraped.fetch_fundamentals(primary.symbol, force_refresh)
        except Exception as e:
            logger.warning(
                "supplement_failed",
                symbol=primary.symbol,
                error_type=type(e).__name__,
                error=str(e),
            )
            return primary

        logger.debug("supplement_merged", symbol=primary.symbol)
        return merge_supplemental_metrics(primary, supplemental)

    async def fetch_many(
        self,
        symbols: Iterable[str],
        force_refresh: bool = False,
        concurrency: int | None = None,
    ) -> BatchResult:
        """
        Fetch several symbols with bounded concurrency.

        Blank entries are reported under their raw value in `errors`;
        duplicates (after normalization) are fetched once.
        """
        data: dict[str, NormalizedFundamentals] = {}
        errors: dict[str, str] = {}
        pending: list[str] = []

        for raw in symbols:
            try:
                symbol = normalize_symbol(raw)
            except InvalidArgumentError as e:
                errors[str(raw)] = str(e)
                continue
            if symbol in data or symbol in pending:
                continue
            if not force_refresh:
                cached = await self._cached(symbol)
                if cached is not None:
                    data[symbol] = cached
                    continue
            pending.append(symbol)

        semaphore = asyncio.Semaphore(concurrency or self.settings.batch_concurrency)

        async def fetch_one(symbol: str) -> None:
            async with semaphore:
                try:
                    data[symbol] = await self.fetch_fundamentals_with_fallback(
                        symbol, force_refresh=force_refresh
                    )
                except Exception as e:
                    errors[symbol] = str(e)

        cache_hits = len(data)
        await asyncio.gather(*(fetch_one(symbol) for symbol in pending))
        logger.info(
            "batch_fetch_complete",
            cache_hits=cache_hits,
            fetched=len(pending),
            succeeded=len(data),
            failed=len(errors),
        )
        return BatchResult(data=data, errors=errors)


# Global singleton instance
_orchestrator: FallbackOrchestrator | None = None


def get_orchestrator() -> FallbackOrchestrator:
    """
    Get or create the process-wide orchestrator.

    One LayeredCache (Redis first when REDIS_URL is set) and one
    SessionManager are shared by both providers and the result cache.
    """
    global _orchestrator
    if _orchestrator is None:
        cache = LayeredCache(
            external=build_external_cache(config),
            local=MemoryCache(maxsize=config.local_cache_size),
        )
        sessions = SessionManager(cache=cache)
        _orchestrator = FallbackOrchestrator(
            commercial=CommercialProviderClient(),
            scraped=ScrapedProviderClient(sessions, cache=cache),
            cache=cache,
        )
        register_cleanup(_orchestrator.close)
    return _orchestrator


async def fetch_fundamentals_with_fallback(
    symbol: str, force_refresh: bool = False
) -> NormalizedFundamentals:
    """Convenience wrapper around the global orchestrator."""
    return await get_orchestrator().fetch_fundamentals_with_fallback(symbol, force_refresh)
