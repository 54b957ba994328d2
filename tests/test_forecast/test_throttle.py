"""Tests for RequestThrottle and ThrottledForecaster.

A controllable clock drives time; the wrapped call is an AsyncMock.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from predictor.exceptions import RateLimited
from predictor.forecast.throttle import (
    RequestThrottle,
    ThrottledForecaster,
    ThrottleState,
    forecast_cache_key,
)


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def throttle(clock: FakeClock) -> RequestThrottle:
    return RequestThrottle(ttl_seconds=300, min_interval_seconds=15, clock=clock)


# ---------------------------------------------------------------------------
# Memoization
# ---------------------------------------------------------------------------


class TestCache:
    @pytest.mark.asyncio
    async def test_hit_returns_identical_result(
        self, throttle: RequestThrottle, clock: FakeClock
    ) -> None:
        result = object()
        fn = AsyncMock(return_value=result)

        first = await throttle.call("1day-95000", fn)
        clock.advance(1)
        second = await throttle.call("1day-95000", fn)

        assert first is result
        assert second is result
        fn.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_expired_entry_invokes_again(
        self, throttle: RequestThrottle, clock: FakeClock
    ) -> None:
        fn = AsyncMock(side_effect=["old", "new"])

        await throttle.call("k", fn)
        clock.advance(300)
        result = await throttle.call("k", fn)

        assert result == "new"
        assert fn.await_count == 2

    @pytest.mark.asyncio
    async def test_bypass_skips_fresh_entry(
        self, throttle: RequestThrottle, clock: FakeClock
    ) -> None:
        fn = AsyncMock(side_effect=["first", "refreshed"])

        await throttle.call("k", fn)
        clock.advance(20)
        result = await throttle.call("k", fn, bypass_cache=True)

        assert result == "refreshed"
        # The refreshed result replaces the cached one
        clock.advance(1)
        assert await throttle.call("k", fn) == "refreshed"
        assert fn.await_count == 2

    @pytest.mark.asyncio
    async def test_store_purges_expired_entries(
        self, throttle: RequestThrottle, clock: FakeClock
    ) -> None:
        fn = AsyncMock(return_value="r")

        await throttle.call("a", fn)
        clock.advance(301)
        await throttle.call("b", fn)

        assert set(throttle.state.entries) == {"b"}

    @pytest.mark.asyncio
    async def test_failed_call_is_not_cached(
        self, throttle: RequestThrottle, clock: FakeClock
    ) -> None:
        fn = AsyncMock(side_effect=RuntimeError("model down"))

        with pytest.raises(RuntimeError):
            await throttle.call("k", fn)

        assert throttle.state.entries == {}


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------


class TestRateLimit:
    @pytest.mark.asyncio
    async def test_first_call_allowed(self, clock: FakeClock) -> None:
        clock.now = 0.0
        throttle = RequestThrottle(ttl_seconds=300, min_interval_seconds=15, clock=clock)
        fn = AsyncMock(return_value="r")

        assert await throttle.call("k", fn) == "r"

    @pytest.mark.asyncio
    async def test_miss_within_interval_rejected(
        self, throttle: RequestThrottle, clock: FakeClock
    ) -> None:
        fn = AsyncMock(return_value="r")

        await throttle.call("1day-95000", fn)
        clock.advance(5)
        with pytest.raises(RateLimited) as exc_info:
            await throttle.call("1day-95100", fn)

        assert exc_info.value.retry_after == pytest.approx(10.0)
        fn.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_miss_after_interval_allowed(
        self, throttle: RequestThrottle, clock: FakeClock
    ) -> None:
        fn = AsyncMock(return_value="r")

        await throttle.call("a", fn)
        clock.advance(15)
        await throttle.call("b", fn)

        assert fn.await_count == 2

    @pytest.mark.asyncio
    async def test_bypass_still_rate_limited(
        self, throttle: RequestThrottle, clock: FakeClock
    ) -> None:
        fn = AsyncMock(return_value="r")

        await throttle.call("k", fn)
        clock.advance(1)
        with pytest.raises(RateLimited):
            await throttle.call("k", fn, bypass_cache=True)

    @pytest.mark.asyncio
    async def test_cache_hit_not_rate_limited(
        self, throttle: RequestThrottle, clock: FakeClock
    ) -> None:
        fn = AsyncMock(return_value="r")

        await throttle.call("k", fn)
        clock.advance(1)
        await throttle.call("k", fn)
        clock.advance(1)
        await throttle.call("k", fn)

        fn.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_shared_state_between_instances(self, clock: FakeClock) -> None:
        state = ThrottleState()
        one = RequestThrottle(300, 15, state=state, clock=clock)
        two = RequestThrottle(300, 15, state=state, clock=clock)
        fn = AsyncMock(return_value="r")

        await one.call("a", fn)
        with pytest.raises(RateLimited):
            await two.call("b", fn)


# ---------------------------------------------------------------------------
# ThrottledForecaster
# ---------------------------------------------------------------------------


class TestThrottledForecaster:
    def test_cache_key_rounds_current_price(self, candle_factory) -> None:
        candles = candle_factory(["94000", "95000.49"])
        assert forecast_cache_key(candles) == "1day-95000"

    @pytest.mark.asyncio
    async def test_same_rounded_price_served_from_cache(
        self, throttle: RequestThrottle, clock: FakeClock, candle_factory, result_factory
    ) -> None:
        engine = MagicMock()
        engine.forecast = AsyncMock(return_value=result_factory())
        forecaster = ThrottledForecaster(engine, throttle)

        first = await forecaster.forecast(candle_factory(["95000.2"]))
        clock.advance(2)
        second = await forecaster.forecast(candle_factory(["94999.8"]))

        assert second is first
        engine.forecast.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_empty_history_rejected(self, throttle: RequestThrottle) -> None:
        engine = MagicMock()
        engine.forecast = AsyncMock()
        forecaster = ThrottledForecaster(engine, throttle)

        with pytest.raises(ValueError):
            await forecaster.forecast([])
        engine.forecast.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_weekly_horizon_keyed_and_passed_through(
        self, throttle: RequestThrottle, clock: FakeClock, candle_factory, result_factory
    ) -> None:
        engine = MagicMock()
        engine.forecast = AsyncMock(return_value=result_factory())
        forecaster = ThrottledForecaster(engine, throttle)
        candles = candle_factory(["95000.2"])

        await forecaster.forecast(candles, expected_count=7, label="1week")

        assert set(throttle.state.entries) == {"1week-95000"}
        engine.forecast.assert_awaited_once_with(candles, expected_count=7)

    @pytest.mark.asyncio
    async def test_horizons_do_not_share_cache_entries(
        self, throttle: RequestThrottle, clock: FakeClock, candle_factory, result_factory
    ) -> None:
        engine = MagicMock()
        engine.forecast = AsyncMock(return_value=result_factory())
        forecaster = ThrottledForecaster(engine, throttle)
        candles = candle_factory(["95000"])

        await forecaster.forecast(candles)
        clock.advance(20)
        await forecaster.forecast(candles, expected_count=7, label="1week")

        assert engine.forecast.await_count == 2
        assert set(throttle.state.entries) == {"1day-95000", "1week-95000"}
