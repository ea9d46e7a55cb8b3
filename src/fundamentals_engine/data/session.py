"""
Session management for the scraped provider.

The scraped endpoint only answers requests that carry a cookie issued by its
bootstrap page together with a matching anti-forgery token ("crumb"). The
upstream invalidates these at will, so sessions are cached for a short TTL
and refreshed on demand.

Single-flight refresh:
    At most one bootstrap round-trip runs at any time. Concurrent callers that
    find no valid session join the in-flight refresh task and all receive the
    same Session (or the same SessionAcquisitionError). The task is shielded,
    so a cancelled caller does not cancel the refresh for everyone else.

Usage:
    manager = SessionManager(cache=layered_cache)
    session = await manager.acquire()
    ...
    await manager.invalidate()          # upstream rejected the session
    session = await manager.acquire(force_refresh=True)
"""

import asyncio
import time
from collections.abc import Callable

import structlog

from fundamentals_engine.cache import CacheBackend, NullCache, read_model
from fundamentals_engine.config import Settings, config
from fundamentals_engine.exceptions import SessionAcquisitionError, UpstreamError
from fundamentals_engine.models import Session
from fundamentals_engine.transport import HttpClient, HttpResponse

logger = structlog.get_logger(__name__)

SESSION_CACHE_KEY = "session:scraped"
PROVIDER = "scraped"


def join_set_cookies(set_cookies: list[str]) -> str:
    """Collapse Set-Cookie headers into a single Cookie header value."""
    pairs = [cookie.split(";", 1)[0].strip() for cookie in set_cookies]
    return "; ".join(pair for pair in pairs if pair)


class SessionManager:
    """Owns the scraped-provider Session and its single-flight refresh."""

    def __init__(
        self,
        http: HttpClient | None = None,
        cache: CacheBackend | None = None,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or config
        self.http = http or HttpClient(provider=PROVIDER)
        self.cache = cache or NullCache()
        self._clock = clock
        self._session: Session | None = None
        self._inflight: asyncio.Task | None = None

    @property
    def ttl_seconds(self) -> int:
        return self.settings.session_ttl_seconds

    def _browser_headers(self) -> dict[str, str]:
        return {
            "User-Agent": self.settings.user_agent,
            "Accept-Language": "en-US,en;q=0.9",
            "Referer": self.settings.scraped_referer,
        }

    async def acquire(self, force_refresh: bool = False) -> Session:
        """
        Return a valid Session, refreshing it when needed.

        Args:
            force_refresh: Skip both the local and the external cached session.

        Raises:
            SessionAcquisitionError: bootstrap or token fetch failed
        """
        if not force_refresh:
            now = self._clock()
            if self._session is not None and self._session.is_valid(now, self.ttl_seconds):
                return self._session

            stored = await self._load_from_cache()
            if stored is not None:
                return stored

        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._refresh())
            self._inflight.add_done_callback(self._clear_inflight)
        else:
            logger.debug("session_refresh_joined")

        return await asyncio.shield(self._inflight)

    async def invalidate(self) -> None:
        """Drop the cached Session locally and in the external cache."""
        self._session = None
        await self.cache.delete(SESSION_CACHE_KEY)
        logger.info("session_invalidated")

    def _clear_inflight(self, task: asyncio.Task) -> None:
        if self._inflight is task:
            self._inflight = None
        # Mark the exception as retrieved when every waiter was cancelled.
        if not task.cancelled():
            task.exception()

    async def _load_from_cache(self) -> Session | None:
        session = await read_model(self.cache, SESSION_CACHE_KEY, Session)
        if session is None or not session.is_valid(self._clock(), self.ttl_seconds):
            return None
        self._session = session
        return session

    async def _refresh(self) -> Session:
        logger.info("session_refresh_started")
        try:
            session = await self._fetch_session()
        except SessionAcquisitionError:
            self._session = None
            raise
        except UpstreamError as e:
            # Transport failures (timeouts, network errors) during bootstrap
            self._session = None
            raise SessionAcquisitionError(
                f"Session bootstrap failed: {e}", provider=PROVIDER
            ) from e

        self._session = session
        remaining = session.created_at + self.ttl_seconds - self._clock()
        if remaining > 0:
            await self.cache.set(SESSION_CACHE_KEY, session.to_json_dict(), remaining)
        logger.info("session_refresh_complete")
        return session

    async def _fetch_session(self) -> Session:
        bootstrap = await self.http.get(
            self.settings.scraped_bootstrap_url,
            headers={
                **self._browser_headers(),
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            },
            timeout=self.settings.default_timeout,
        )
        cookie_header = self._cookie_header_from(bootstrap)

        token_response = await self.http.get(
            self.settings.scraped_token_url,
            headers={
                **self._browser_headers(),
                "Accept": "application/json, text/plain, */*",
                "Cookie": cookie_header,
            },
            timeout=self.settings.default_timeout,
        )
        if not token_response.ok:
            raise SessionAcquisitionError(
                f"Failed to fetch anti-forgery token ({token_response.status} {token_response.reason})".strip(),
                provider=PROVIDER,
                status_code=token_response.status,
            )

        token = token_response.text.strip()
        if not token:
            raise SessionAcquisitionError(
                "Received empty anti-forgery token", provider=PROVIDER
            )

        return Session(
            cookie_header=cookie_header,
            anti_forgery_token=token,
            created_at=self._clock(),
        )

    @staticmethod
    def _cookie_header_from(response: HttpResponse) -> str:
        # The bootstrap host answers 404 while still issuing the cookies we need.
        if not response.ok and response.status != 404:
            raise SessionAcquisitionError(
                f"Failed to initiate session ({response.status} {response.reason})".strip(),
                provider=PROVIDER,
                status_code=response.status,
            )
        cookie_header = join_set_cookies(response.set_cookies)
        if not cookie_header:
            raise SessionAcquisitionError(
                "Session bootstrap did not return any cookies", provider=PROVIDER
            )
        return cookie_header

    async def close(self) -> None:
        await self.http.close()
