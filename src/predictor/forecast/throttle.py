"""Rate limiting and short-lived memoization in front of the model call.

Two independent controls:
  - Memoization: a fresh entry (younger than the TTL) for the same key is
    returned verbatim unless the caller bypasses the cache.
  - Rate limiting: one shared clock across all keys. A cache miss arriving
    sooner than ``min_interval`` after the previous invocation is rejected
    with RateLimited, never queued or delayed.

Entries expire by age only. Expired entries are dropped when looked up and
swept whenever a new result is stored; there is no background task.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from predictor.exceptions import RateLimited
from predictor.forecast.engine import ForecastEngine
from predictor.logging import get_logger
from predictor.models import Candle, ForecastResult

logger = get_logger(__name__)


@dataclass
class CacheEntry:
    """A memoized result and the clock reading when it was stored."""

    result: Any
    cached_at: float


@dataclass
class ThrottleState:
    """Volatile throttle state. Lost on restart, which only costs a model call."""

    last_invocation: float | None = None
    entries: dict[str, CacheEntry] = field(default_factory=dict)


def forecast_cache_key(candles: list[Candle], label: str = "1day") -> str:
    """Derive the memoization key from the rounded current price."""
    return f"{label}-{round(candles[-1].close)}"


class RequestThrottle:
    """Guards an expensive async call with a TTL cache and a global rate limit.

    Args:
        ttl_seconds: Maximum age of a cache entry that may be served.
        min_interval_seconds: Minimum spacing between uncached invocations.
        state: Shared state; a fresh one is created when omitted.
        clock: Time source returning seconds.
    """

    def __init__(
        self,
        ttl_seconds: float,
        min_interval_seconds: float,
        state: ThrottleState | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ttl = ttl_seconds
        self._min_interval = min_interval_seconds
        self._state = state if state is not None else ThrottleState()
        self._clock = clock
        self._lock = asyncio.Lock()

    @property
    def state(self) -> ThrottleState:
        return self._state

    async def call(
        self,
        key: str,
        fn: Callable[[], Awaitable[Any]],
        bypass_cache: bool = False,
    ) -> Any:
        """Return a cached result for ``key`` or invoke ``fn`` if allowed.

        Raises:
            RateLimited: On a cache miss within ``min_interval`` of the last invocation.
        """
        async with self._lock:
            now = self._clock()

            if bypass_cache:
                logger.info("throttle_cache_bypassed", key=key)
            else:
                entry = self._state.entries.get(key)
                if entry is not None:
                    if now - entry.cached_at < self._ttl:
                        logger.debug("throttle_cache_hit", key=key)
                        return entry.result
                    del self._state.entries[key]

            last = self._state.last_invocation
            elapsed = now - last if last is not None else None
            if elapsed is not None and elapsed < self._min_interval:
                retry_after = self._min_interval - elapsed
                logger.warning("throttle_rate_limited", key=key, retry_after=round(retry_after, 1))
                raise RateLimited(retry_after)

            self._state.last_invocation = now

        result = await fn()

        async with self._lock:
            stored_at = self._clock()
            self._state.entries[key] = CacheEntry(result=result, cached_at=stored_at)
            self._purge_expired(stored_at)

        return result

    def _purge_expired(self, now: float) -> None:
        expired = [k for k, e in self._state.entries.items() if now - e.cached_at >= self._ttl]
        for k in expired:
            del self._state.entries[k]
        if expired:
            logger.debug("throttle_entries_purged", count=len(expired))


class ThrottledForecaster:
    """ForecastEngine behind a RequestThrottle, keyed by rounded current price."""

    def __init__(
        self,
        engine: ForecastEngine,
        throttle: RequestThrottle,
        label: str = "1day",
    ) -> None:
        self._engine = engine
        self._throttle = throttle
        self._label = label

    @property
    def expected_count(self) -> int:
        return self._engine.expected_count

    async def forecast(
        self,
        candles: list[Candle],
        bypass_cache: bool = False,
        expected_count: int | None = None,
        label: str | None = None,
    ) -> ForecastResult:
        """Forecast through the throttle.

        ``expected_count`` and ``label`` select a horizon other than the
        default; the label keeps horizons apart in the cache.
        """
        if not candles:
            raise ValueError("Cannot forecast without candle data")
        key = forecast_cache_key(candles, label or self._label)
        return await self._throttle.call(
            key,
            lambda: self._engine.forecast(candles, expected_count=expected_count),
            bypass_cache=bypass_cache,
        )
