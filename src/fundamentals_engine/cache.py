"""
Cache layer for sessions and fundamentals.

The engine talks to a CacheBackend. The external backend is RedisCache when
REDIS_URL is configured and NullCache otherwise, so every call on it must be
safe to make regardless. LayeredCache puts a bounded
in-process cache under the external one; callers never learn which layer
served a hit.

Values are stored as JSON-safe payloads (see models._FrozenModel.to_json_dict)
so the same entries can live in an out-of-process store.

Usage:
    from fundamentals_engine.cache import LayeredCache, MemoryCache, NullCache

    cache = LayeredCache(external=build_external_cache(config), local=MemoryCache(maxsize=512))
    await cache.set("fundamentals:AAPL", payload, ttl_seconds=1800)
    payload = await cache.get("fundamentals:AAPL")
"""

import json
import math
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any, TypeVar

import redis.asyncio as redis
import structlog
from cachetools import TLRUCache
from pydantic import BaseModel

from fundamentals_engine.config import Settings
from fundamentals_engine.models import CacheEntry

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class CacheBackend(ABC):
    """Key/value store with per-entry TTL."""

    @abstractmethod
    def is_enabled(self) -> bool:
        """True when the backend actually stores anything."""
        pass

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return the stored value, or None when missing or expired."""
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass

    async def close(self) -> None:
        """Release connections held by the backend."""
        return None


class NullCache(CacheBackend):
    """Disabled backend: every read misses, every write is dropped."""

    def is_enabled(self) -> bool:
        return False

    async def get(self, key: str) -> Any | None:
        return None

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        return None

    async def delete(self, key: str) -> None:
        return None


def _entry_expiry(_key: str, entry: CacheEntry, _now: float) -> float:
    return entry.expires_at


class MemoryCache(CacheBackend):
    """
    Bounded in-process cache with a TTL per entry.

    Backed by cachetools.TLRUCache: expired entries are invisible to get()
    and the least recently used entry is evicted once maxsize is reached.
    """

    def __init__(self, maxsize: int = 1024, timer: Callable[[], float] = time.monotonic):
        self._timer = timer
        self._cache: TLRUCache = TLRUCache(
            maxsize=maxsize, ttu=_entry_expiry, timer=timer
        )

    def is_enabled(self) -> bool:
        return True

    async def get(self, key: str) -> Any | None:
        entry = self._cache.get(key)
        if entry is None:
            return None
        return entry.data

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        self._cache[key] = CacheEntry(
            data=value, expires_at=self._timer() + ttl_seconds
        )

    async def delete(self, key: str) -> None:
        self._cache.pop(key, None)

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)


class RedisCache(CacheBackend):
    """
    Shared store on Redis, keyed exactly like the local layer.

    Values are written as JSON with a server-side expiry (`SET key value EX ttl`),
    so sessions and results are visible to every process using the same
    server. The client connects lazily on first use.
    """

    def __init__(self, url: str | None = None, client: redis.Redis | None = None):
        self.url = url
        self._client = client

    def _get_client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(self.url, decode_responses=True)
        return self._client

    def is_enabled(self) -> bool:
        return self._client is not None or bool(self.url)

    async def get(self, key: str) -> Any | None:
        raw = await self._get_client().get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError as e:
            logger.warning("redis_cache_value_unreadable", key=key, error=str(e))
            return None

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        # Redis expiries are whole seconds; round up so entries never expire early
        ttl = max(1, math.ceil(ttl_seconds))
        await self._get_client().set(key, json.dumps(value), ex=ttl)

    async def delete(self, key: str) -> None:
        await self._get_client().delete(key)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def build_external_cache(settings: Settings) -> CacheBackend:
    """RedisCache when REDIS_URL is set, otherwise the disabled NullCache."""
    if settings.redis_url:
        logger.info("external_cache_enabled", backend="redis")
        return RedisCache(settings.redis_url)
    return NullCache()


class LayeredCache(CacheBackend):
    """
    External cache first, local fallback second, both keyed identically.

    Errors from the external layer are logged and treated as misses so a
    broken shared store degrades to in-process caching instead of failing
    the fetch.
    """

    def __init__(self, external: CacheBackend | None = None, local: CacheBackend | None = None):
        self.external = external or NullCache()
        self.local = local or MemoryCache()

    def is_enabled(self) -> bool:
        return self.external.is_enabled() or self.local.is_enabled()

    async def get(self, key: str) -> Any | None:
        if self.external.is_enabled():
            try:
                value = await self.external.get(key)
            except Exception as e:
                logger.warning("external_cache_get_failed", key=key, error=str(e))
            else:
                if value is not None:
                    logger.debug("cache_hit", key=key, layer="external")
                    return value

        value = await self.local.get(key)
        if value is not None:
            logger.debug("cache_hit", key=key, layer="local")
        return value

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        if self.external.is_enabled():
            try:
                await self.external.set(key, value, ttl_seconds)
            except Exception as e:
                logger.warning("external_cache_set_failed", key=key, error=str(e))
        await self.local.set(key, value, ttl_seconds)

    async def delete(self, key: str) -> None:
        if self.external.is_enabled():
            try:
                await self.external.delete(key)
            except Exception as e:
                logger.warning("external_cache_delete_failed", key=key, error=str(e))
        await self.local.delete(key)

    async def close(self) -> None:
        await self.external.close()
        await self.local.close()


async def read_model(cache: CacheBackend, key: str, model: type[ModelT]) -> ModelT | None:
    """
    Load a cached payload as `model`.

    A payload that no longer validates (e.g. written by an older schema into
    a shared store) is logged and treated as a miss.
    """
    payload = await cache.get(key)
    if payload is None:
        return None
    try:
        return model.model_validate(payload)
    except ValueError as e:
        logger.warning("cached_value_unreadable", key=key, model=model.__name__, error=str(e))
        return None
