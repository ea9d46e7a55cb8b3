"""
Thin aiohttp transport shared by the provider clients.

Every request carries an explicit timeout. A timeout surfaces as
UpstreamTimeoutError and other transport failures as UpstreamHttpError, so
provider code only ever sees the engine's own exception types. Query
parameters are passed separately from the URL and never appear in error
messages (the commercial token travels as a query parameter).

Cookies are managed explicitly by the session manager, so the underlying
aiohttp session uses a DummyCookieJar and never replays cookies on its own.
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any

import aiohttp
import structlog

from fundamentals_engine.exceptions import UpstreamHttpError, UpstreamTimeoutError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class HttpResponse:
    """Fully-read response: status, body text and raw Set-Cookie headers."""

    status: int
    text: str
    reason: str = ""
    set_cookies: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        """Decode the body as JSON (raises ValueError on malformed input)."""
        return json.loads(self.text)


class HttpClient:
    """
    Lazily-created aiohttp session with timeout-aware GET.

    Usage:
        async with HttpClient() as http:
            response = await http.get(url, params={...}, timeout=10)
    """

    def __init__(self, provider: str | None = None):
        self.provider = provider
        self._session: aiohttp.ClientSession | None = None

    async def __aenter__(self):
        self._ensure_session()
        return self

    async def __aexit__(self, *args):
        await self.close()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(cookie_jar=aiohttp.DummyCookieJar())
        return self._session

    async def close(self):
        """Close the aiohttp session. Safe to call multiple times."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def get(
        self,
        url: str,
        *,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float,
    ) -> HttpResponse:
        session = self._ensure_session()
        try:
            async with session.get(
                url,
                params=params,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as response:
                # Undecodable bytes must not escape as UnicodeDecodeError.
                text = await response.text(errors="replace")
                return HttpResponse(
                    status=response.status,
                    text=text,
                    reason=response.reason or "",
                    set_cookies=list(response.headers.getall("Set-Cookie", [])),
                )
        except asyncio.TimeoutError as e:
            logger.debug("http_timeout", url=url, timeout=timeout, provider=self.provider)
            raise UpstreamTimeoutError(url, timeout, provider=self.provider) from e
        except aiohttp.ClientError as e:
            logger.debug("http_network_error", url=url, error=str(e), provider=self.provider)
            raise UpstreamHttpError(
                f"Network error requesting {url}: {e}", provider=self.provider
            ) from e
