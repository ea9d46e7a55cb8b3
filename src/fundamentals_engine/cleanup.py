"""
Async resource cleanup utilities.

Provider clients own aiohttp sessions that must be closed before the event
loop shuts down, otherwise aiohttp warns about unclosed sessions. Anything
that creates long-lived clients registers a close coroutine here.

Usage:
    from fundamentals_engine.cleanup import cleanup_async_resources

    async def main():
        try:
            # ... application logic ...
        finally:
            await cleanup_async_resources()
"""

from collections.abc import Awaitable, Callable

import structlog

logger = structlog.get_logger(__name__)

# Registry of cleanup functions
_cleanup_functions: list[Callable[[], Awaitable[None]]] = []


def register_cleanup(cleanup_fn: Callable[[], Awaitable[None]]) -> None:
    """Register an async cleanup function to be called at shutdown."""
    if cleanup_fn not in _cleanup_functions:
        _cleanup_functions.append(cleanup_fn)


async def cleanup_async_resources() -> None:
    """
    Run and clear every registered cleanup function.

    A failing cleanup does not stop the others; failures are logged at debug
    level.
    """
    errors = []

    while _cleanup_functions:
        cleanup_fn = _cleanup_functions.pop(0)
        name = getattr(cleanup_fn, "__qualname__", repr(cleanup_fn))
        try:
            await cleanup_fn()
            logger.debug("cleanup_closed", function=name)
        except Exception as e:
            errors.append((name, str(e)))

    for name, error in errors:
        logger.debug("cleanup_error", function=name, error=error)
