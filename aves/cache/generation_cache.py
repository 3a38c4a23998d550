"""
Single-Flight Generation Cache.

Wraps the external exercise generator:
1. Fresh entry in the store -> hit
2. Generation already running for the key -> await the shared future
3. Otherwise become the only generator for the key, validate, store

Failed generations are retried with exponential backoff and never cached.
A timed-out or failed leader always releases the key so the next caller can
try again.

The in-flight map holds `concurrent.futures.Future`s behind a thread lock, so
callers running on different event loops (a warm-up thread and the main
loop) still share one generation per key.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import copy
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any

from loguru import logger

from aves.core.clock import utcnow
from aves.core.errors import ExternalServiceError, RateLimitError, ValidationError

from .schemas import validate_exercise_payload
from .store import CacheEntry, CacheStore, InMemoryCacheStore

GeneratorFn = Callable[[], Awaitable[Any]]
PayloadValidator = Callable[[Any], dict[str, Any]]

CONTENT_UNAVAILABLE = "content unavailable, retry"


@dataclass(frozen=True)
class CacheResult:
    """Payload plus where it came from."""

    payload: dict[str, Any]
    hit: bool
    coalesced: bool = False


@dataclass
class CacheStats:
    """Counters describing cache effectiveness."""

    hits: int = 0
    misses: int = 0
    coalesced: int = 0
    generations: int = 0
    failures: int = 0
    evictions: int = 0
    size: int = 0
    in_flight: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "coalesced": self.coalesced,
            "generations": self.generations,
            "failures": self.failures,
            "evictions": self.evictions,
            "size": self.size,
            "in_flight": self.in_flight,
            "hit_rate": round(self.hit_rate, 3),
        }


class GenerationCache:
    """
    Content-addressed cache with one in-flight generation per key.

    Example:
        cache = GenerationCache(InMemoryCacheStore())
        result = await cache.get_or_generate(key, lambda: client.generate(prompt))
        if result.hit:
            ...
    """

    def __init__(
        self,
        store: CacheStore | None = None,
        ttl: timedelta = timedelta(days=7),
        timeout_seconds: float = 30.0,
        max_attempts: int = 3,
        backoff_base_seconds: float = 1.0,
        backoff_max_seconds: float = 16.0,
        validator: PayloadValidator = validate_exercise_payload,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize the cache.

        Args:
            store: Backing TTL store (in-memory by default)
            ttl: Lifetime of a stored payload
            timeout_seconds: Upper bound for one generator call
            max_attempts: Generator calls per miss before giving up
            backoff_base_seconds: Delay before the second attempt
            backoff_max_seconds: Cap for the doubling delay
            validator: Structural check applied to every generated payload
            clock: Source of the current time
            sleep: Awaitable used between attempts
        """
        self.store = store or InMemoryCacheStore()
        self.ttl = ttl
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self._validator = validator
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._inflight: dict[str, concurrent.futures.Future[dict[str, Any]]] = {}
        self._stats = CacheStats()

    @classmethod
    def from_config(
        cls,
        cache_config: dict[str, Any],
        store: CacheStore | None = None,
        validator: PayloadValidator = validate_exercise_payload,
        clock: Callable[[], datetime] = utcnow,
    ) -> GenerationCache:
        """Build from `Settings.get_cache_config()`."""
        return cls(
            store=store or InMemoryCacheStore(max_entries=cache_config["max_entries"]),
            ttl=timedelta(days=cache_config["ttl_days"]),
            timeout_seconds=cache_config["timeout_seconds"],
            max_attempts=cache_config["max_attempts"],
            backoff_base_seconds=cache_config["backoff_base_seconds"],
            backoff_max_seconds=cache_config["backoff_max_seconds"],
            validator=validator,
            clock=clock,
        )

    # =========================================================================
    # Lookup
    # =========================================================================

    async def get_or_generate(self, key: str, generator_fn: GeneratorFn) -> CacheResult:
        """
        Return the cached payload for `key`, generating it at most once.

        Args:
            key: Content-addressed cache key
            generator_fn: Zero-argument coroutine function producing a payload

        Returns:
            CacheResult with `hit=True` when served from the store

        Raises:
            RateLimitError: Upstream quota exceeded (not retried)
            ExternalServiceError: All attempts failed; nothing was cached
        """
        while True:
            future: concurrent.futures.Future[dict[str, Any]] | None = None
            with self._lock:
                entry = self.store.get(key, self._clock())
                if entry is not None:
                    self._stats.hits += 1
                else:
                    self._stats.misses += 1
                    pending = self._inflight.get(key)
                    if pending is None:
                        future = concurrent.futures.Future()
                        self._inflight[key] = future
                    else:
                        self._stats.coalesced += 1

            if entry is not None:
                logger.debug(f"Cache hit {key[:24]} (accesses={entry.access_count})")
                return CacheResult(payload=entry.payload, hit=True)
            if future is not None:
                break

            try:
                payload = await asyncio.shield(asyncio.wrap_future(pending))
            except asyncio.CancelledError:
                if pending.cancelled():
                    # Leader was cancelled; look again and maybe take over
                    with self._lock:
                        self._stats.misses -= 1
                        self._stats.coalesced -= 1
                    continue
                raise
            return CacheResult(payload=copy.deepcopy(payload), hit=False, coalesced=True)

        try:
            payload = await self._generate(key, generator_fn)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            with self._lock:
                self._stats.failures += 1
            future.set_exception(e)
            raise
        else:
            future.set_result(payload)
            return CacheResult(payload=copy.deepcopy(payload), hit=False)
        finally:
            with self._lock:
                if self._inflight.get(key) is future:
                    del self._inflight[key]

    async def _generate(self, key: str, generator_fn: GeneratorFn) -> dict[str, Any]:
        last_error: Exception | None = None

        for attempt in range(1, self.max_attempts + 1):
            started = time.monotonic()
            with self._lock:
                self._stats.generations += 1
            try:
                raw = await asyncio.wait_for(generator_fn(), timeout=self.timeout_seconds)
                payload = self._validator(raw)
            except RateLimitError as e:
                logger.warning(f"Generation for {key[:24]} rate limited (retry_after={e.retry_after})")
                raise
            except asyncio.TimeoutError as e:
                last_error = e
                logger.warning(
                    f"Generation for {key[:24]} timed out after {self.timeout_seconds}s "
                    f"(attempt {attempt}/{self.max_attempts})"
                )
            except (ValidationError, ExternalServiceError) as e:
                last_error = e
                logger.warning(
                    f"Generation for {key[:24]} failed on attempt "
                    f"{attempt}/{self.max_attempts}: {e}"
                )
            except Exception as e:
                # Generators are opaque; anything else they raise is transient too
                last_error = e
                logger.warning(
                    f"Generation for {key[:24]} raised {type(e).__name__} on attempt "
                    f"{attempt}/{self.max_attempts}: {e}"
                )
            else:
                now = self._clock()
                elapsed_ms = int((time.monotonic() - started) * 1000)
                self.store.put(
                    CacheEntry(
                        key=key,
                        payload=payload,
                        created_at=now,
                        expires_at=now + self.ttl,
                        generation_time_ms=elapsed_ms,
                    )
                )
                logger.info(f"Generated and cached {key[:24]} in {elapsed_ms}ms")
                return payload

            if attempt < self.max_attempts:
                await self._sleep(self._backoff(attempt))

        logger.error(f"Generation for {key[:24]} failed after {self.max_attempts} attempts: {last_error}")
        raise ExternalServiceError(
            CONTENT_UNAVAILABLE,
            {
                "key": key,
                "attempts": self.max_attempts,
                "last_error": str(last_error) or type(last_error).__name__,
            },
        ) from last_error

    def _backoff(self, attempt: int) -> float:
        """Delay after a failed `attempt`: base * 2^(attempt-1), capped."""
        return min(self.backoff_max_seconds, self.backoff_base_seconds * 2 ** (attempt - 1))

    # =========================================================================
    # Maintenance
    # =========================================================================

    def invalidate(self, key: str) -> bool:
        """Drop one key (upstream content edit or admin action)."""
        removed = self.store.delete(key)
        if removed:
            logger.info(f"Invalidated cache entry {key[:24]}")
        return removed

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every key starting with `prefix` (e.g. one exercise type)."""
        removed = self.store.delete_prefix(prefix)
        logger.info(f"Invalidated {removed} cache entries with prefix {prefix!r}")
        return removed

    def clear(self) -> int:
        removed = self.store.clear()
        logger.info(f"Cleared {removed} cache entries")
        return removed

    def clean_expired(self) -> int:
        removed = self.store.clean_expired(self._clock())
        if removed:
            logger.info(f"Removed {removed} expired cache entries")
        return removed

    def is_in_flight(self, key: str) -> bool:
        with self._lock:
            return key in self._inflight

    def stats(self) -> CacheStats:
        """Snapshot of hit/miss and generation counters."""
        with self._lock:
            counters = replace(self._stats, in_flight=len(self._inflight))
        return replace(counters, evictions=self.store.evictions, size=len(self.store))
