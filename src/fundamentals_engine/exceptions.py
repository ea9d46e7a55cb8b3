"""
Exceptions raised by the fundamentals engine.

Provider clients raise the UpstreamError family; the orchestrator catches
them, falls back to the other provider and only surfaces AggregateFetchError
when both providers failed.
"""


class FundamentalsError(Exception):
    """Base exception for every error raised by the engine."""


class InvalidArgumentError(FundamentalsError, ValueError):
    """Blank or otherwise unusable caller input (e.g. an empty ticker)."""


class ConfigurationError(FundamentalsError):
    """A required credential or setting is missing."""


class UpstreamError(FundamentalsError):
    """Failure talking to, or interpreting a response from, an upstream provider."""

    def __init__(
        self, message: str, provider: str | None = None, status_code: int | None = None
    ):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class SessionAcquisitionError(UpstreamError):
    """Cookie bootstrap or anti-forgery token fetch failed."""


class InvalidSessionError(UpstreamError):
    """The scraped provider rejected the session cookie or token."""


class UpstreamHttpError(UpstreamError):
    """Non-2xx response (or unusable body) not covered by a more specific error."""


class DividendsNotFoundError(UpstreamHttpError):
    """The provider has no dividend data for the requested symbol."""


class DataIncompleteError(UpstreamError):
    """The response parsed but a required series was empty."""


class UpstreamTimeoutError(UpstreamError):
    """A request exceeded its allotted duration and was cancelled."""

    def __init__(self, url: str, timeout: float, provider: str | None = None):
        super().__init__(
            f"Request to {url} timed out after {timeout:g}s", provider=provider
        )
        self.url = url
        self.timeout = timeout


class AggregateFetchError(FundamentalsError):
    """Both providers failed; carries every underlying error."""

    def __init__(self, symbol: str, errors: dict[str, Exception]):
        self.symbol = symbol
        self.errors = dict(errors)
        details = "; ".join(
            f"{provider}: {type(err).__name__}: {err}"
            for provider, err in self.errors.items()
        )
        super().__init__(f"Failed to fetch fundamentals for {symbol} ({details})")
