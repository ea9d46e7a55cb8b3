from abc import ABC, abstractmethod

from fundamentals_engine.models import DataSource, NormalizedFundamentals


class FundamentalsProvider(ABC):
    """
    Abstract Base Class for the upstream fundamentals providers.

    This interface lets the orchestrator treat the commercial API and the
    scraped endpoint interchangeably when deciding primary vs. fallback order.
    """

    source: DataSource

    @abstractmethod
    def is_available(self) -> bool:
        """
        Check if this provider is configured.
        Returns False when a required credential is missing.
        """
        pass

    @abstractmethod
    async def fetch_fundamentals(
        self, symbol: str, force_refresh: bool = False
    ) -> NormalizedFundamentals:
        """
        Returns a NormalizedFundamentals snapshot for an already-normalized symbol.
        Raises an UpstreamError subtype (or ConfigurationError) on failure.
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release network resources. Safe to call multiple times."""
        pass
