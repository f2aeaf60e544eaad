"""
Request deduplication to prevent multiple simultaneous calls to the same endpoint,
with optional short-lived result caching and backoff on rate limiting (429).

The cache and ongoing-request maps are only touched synchronously between
awaits, so callers on one event loop can never interleave a check with an
insert. Callers on other threads must go through the loop that owns the cache
(see ``cubular_client.infra.background_client``).
"""

import asyncio
import time
from functools import lru_cache
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from cubular_client.config import MAX_BACKOFF_MS
from cubular_client.core.errors import RateLimitError
from cubular_client.core.models import CacheEntry, CacheStats
from cubular_client.infra.logger import logger

T = TypeVar("T")
Producer = Callable[[], Awaitable[T]]


def build_cache_key(
    method: str, url: str, discriminator: Optional[str] = None, scope: Optional[str] = None
) -> str:
    """``API-<METHOD>-<url>[#discriminator]``, led by ``<scope>|`` when the cache is shared between users."""
    key = f"API-{method.upper()}-{url}"
    if discriminator:
        key = f"{key}#{discriminator}"
    if scope:
        key = f"{scope}|{key}"
    return key


def calculate_delay(attempt: int, base_delay_ms: int = 1000) -> int:
    """Exponential backoff delay in milliseconds, capped at 30 seconds."""
    return min(base_delay_ms * (2 ** attempt), MAX_BACKOFF_MS)


def _consume_exception(task: asyncio.Future) -> None:
    # Every caller may have been cancelled; keep asyncio from warning about it.
    if not task.cancelled():
        task.exception()


class RequestCache:
    """Per-key single-flight execution plus a TTL result cache."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay_ms: int = 1000,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms
        self._clock = clock
        self._sleep = sleep
        self._entries: Dict[str, CacheEntry] = {}
        self._ongoing: Dict[str, asyncio.Future] = {}
        self.logger = logger.getChild("RequestCache")

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def dedupe(
        self,
        key: str,
        ttl_ms: int,
        producer: Producer,
        max_retries: Optional[int] = None,
        base_delay_ms: Optional[int] = None,
    ) -> Any:
        """Return the cached value for ``key``, join its in-flight call, or start one.

        Args:
            key: Cache key, normally from ``build_cache_key``.
            ttl_ms: How long a successful result stays cached; 0 disables caching
                and leaves only the in-flight deduplication.
            producer: Zero-argument coroutine factory performing the request.
            max_retries: Extra attempts allowed for ``RateLimitError`` failures.
            base_delay_ms: Base of the exponential backoff.

        Returns:
            The producer's result. Every concurrent caller receives the same
            object, or the same exception instance on failure.
        """
        entry = self._entries.get(key)
        if entry is not None and entry.is_valid(self._now_ms()):
            self.logger.debug("Using cached response for: %s", key)
            return entry.data

        ongoing = self._ongoing.get(key)
        if ongoing is not None:
            self.logger.debug("Deduplicating request for: %s", key)
            return await asyncio.shield(ongoing)

        self.logger.debug("Making new request for: %s", key)
        task = asyncio.ensure_future(
            self._run(
                key,
                ttl_ms,
                producer,
                self.max_retries if max_retries is None else max_retries,
                self.base_delay_ms if base_delay_ms is None else base_delay_ms,
            )
        )
        task.add_done_callback(_consume_exception)
        self._ongoing[key] = task
        return await asyncio.shield(task)

    async def _run(self, key: str, ttl_ms: int, producer: Producer, max_retries: int, base_delay_ms: int):
        me = asyncio.current_task()
        try:
            result = await self._execute_with_retry(key, producer, max_retries, base_delay_ms)
            if ttl_ms > 0:
                cached_at = self._now_ms()
                self._entries[key] = CacheEntry(
                    key=key,
                    data=result,
                    cached_at_epoch_ms=cached_at,
                    expires_at_epoch_ms=cached_at + ttl_ms,
                )
            return result
        finally:
            if self._ongoing.get(key) is me:
                del self._ongoing[key]

    async def _execute_with_retry(self, key: str, producer: Producer, max_retries: int, base_delay_ms: int):
        attempt = 0
        while True:
            try:
                return await producer()
            except RateLimitError:
                if attempt >= max_retries:
                    self.logger.warning("Rate limit persisted for %s after %d retries", key, max_retries)
                    raise
                delay = calculate_delay(attempt, base_delay_ms)
                self.logger.warning(
                    "Rate limit hit for %s, retrying in %dms (attempt %d/%d)",
                    key, delay, attempt + 2, max_retries + 1,
                )
                await self._sleep(delay / 1000)
                attempt += 1

    def is_ongoing(self, key: str) -> bool:
        return key in self._ongoing

    def invalidate(self, key: str) -> bool:
        removed = self._entries.pop(key, None) is not None
        self.logger.debug("Cleared cache for: %s", key)
        return removed

    def invalidate_prefix(self, prefix: str) -> int:
        keys = [key for key in self._entries if key.startswith(prefix)]
        for key in keys:
            del self._entries[key]
        if keys:
            self.logger.debug("Cleared %d cache entries under %s", len(keys), prefix)
        return len(keys)

    def invalidate_all(self) -> None:
        self._entries.clear()
        self.logger.debug("Cleared all cached responses")

    def clear(self) -> None:
        """Drop cached entries and forget in-flight handles (they still settle for their awaiters)."""
        self._entries.clear()
        self._ongoing.clear()

    def stats(self) -> CacheStats:
        now = self._now_ms()
        valid = sum(1 for entry in self._entries.values() if entry.is_valid(now))
        return CacheStats(
            total_entries=len(self._entries),
            valid_entries=valid,
            expired_entries=len(self._entries) - valid,
            ongoing_requests=len(self._ongoing),
        )

    def cleanup_expired(self) -> int:
        now = self._now_ms()
        expired = [key for key, entry in self._entries.items() if not entry.is_valid(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            self.logger.info("Cleaned up %d expired cache entries", len(expired))
        return len(expired)


@lru_cache(maxsize=1)
def get_request_cache() -> RequestCache:
    """Process-wide cache shared by every client in this process."""
    return RequestCache()


def init_request_cache(**kwargs) -> RequestCache:
    """Reset the process-wide cache and apply new settings to it."""
    cache = get_request_cache()
    cache.clear()
    for name in ("max_retries", "base_delay_ms"):
        if name in kwargs:
            setattr(cache, name, kwargs[name])
    return cache
