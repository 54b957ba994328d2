"""Tests for the forecast job orchestrator.

Tests verify:
- End-to-end: forecast on day N is reconciled by the run on day N + 1
- Reconciliation failure does not abort the run
- History fetch failure and forecast failure are fatal, nothing persisted
- A second run on the same day skips the duplicate pending forecast
- Day rollover: a run at exactly 00:00:00 UTC sees the previous candle closed
- run_with_timeout surfaces asyncio.TimeoutError
"""

import asyncio
from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from predictor.config import AppSettings
from predictor.exceptions import InvalidForecast, UpstreamUnavailable
from predictor.ledger.ledger import ReconciliationLedger
from predictor.models import PredictionStatus
from predictor.orchestrator import ForecastOrchestrator

DAY_N = date(2025, 1, 10)
DAY_N1 = date(2025, 1, 11)


def _ms(d: date) -> int:
    return int(datetime(d.year, d.month, d.day, tzinfo=timezone.utc).timestamp() * 1000)


def _at(d: date, hour: int = 0, minute: int = 5, second: int = 0) -> datetime:
    return datetime(d.year, d.month, d.day, hour, minute, second, tzinfo=timezone.utc)


class MutableClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def market_client() -> MagicMock:
    client = MagicMock()
    client.fetch_candles = AsyncMock(return_value=[])
    client.close = AsyncMock()
    return client


@pytest.fixture
def forecaster(result_factory) -> MagicMock:
    fc = MagicMock()
    fc.forecast = AsyncMock(return_value=result_factory("96200"))
    return fc


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(_at(DAY_N))


@pytest.fixture
def orchestrator(
    mock_settings: AppSettings,
    market_client: MagicMock,
    forecaster: MagicMock,
    ledger: ReconciliationLedger,
    clock: MutableClock,
) -> ForecastOrchestrator:
    return ForecastOrchestrator(
        settings=mock_settings,
        market_client=market_client,
        forecaster=forecaster,
        ledger=ledger,
        clock=clock,
    )


def _feed(market_client: MagicMock, recent: list, history: list) -> None:
    """Serve ``recent`` for the 2-candle reconciliation fetch, ``history`` otherwise."""

    async def fetch(symbol, interval="1d", count=1000):
        return recent if count == 2 else history

    market_client.fetch_candles.side_effect = fetch


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_forecast_then_reconcile_next_day(
        self,
        orchestrator: ForecastOrchestrator,
        market_client: MagicMock,
        forecaster: MagicMock,
        ledger: ReconciliationLedger,
        clock: MutableClock,
        candle_factory,
    ) -> None:
        # Day N: candle opened on N-1 closed at 95000, candle for N is in progress
        day_n_feed = candle_factory([94000, 95000, 95100], start_ms=_ms(date(2025, 1, 8)))
        _feed(market_client, recent=day_n_feed[-2:], history=day_n_feed)

        report = await orchestrator.run()

        assert report.created is True
        assert report.reconciled is None
        assert report.today == DAY_N
        assert report.prediction.target_date == DAY_N1
        assert report.prediction.made_on_date == DAY_N
        assert report.prediction.predicted_price == Decimal("96200.00")
        assert report.prediction.status == PredictionStatus.PENDING
        forecaster.forecast.assert_awaited_once_with(day_n_feed)

        # Day N+1: candle opened on N closed at 95800
        clock.now = _at(DAY_N1)
        day_n1_feed = candle_factory([95000, 95800, 95900], start_ms=_ms(date(2025, 1, 9)))
        _feed(market_client, recent=day_n1_feed[-2:], history=day_n1_feed)

        report = await orchestrator.run()

        reconciled = report.reconciled
        assert reconciled is not None
        assert reconciled.id != report.prediction.id
        assert reconciled.target_date == DAY_N1
        assert reconciled.status == PredictionStatus.COMPLETED
        assert reconciled.actual_price == Decimal("95800.00")
        assert reconciled.difference == Decimal("-400.00")
        assert round(reconciled.percentage_error, 2) == Decimal("-0.42")
        assert report.prediction.target_date == date(2025, 1, 12)
        assert await ledger.count() == 2

    @pytest.mark.asyncio
    async def test_scheduled_record_uses_system_actor(
        self, orchestrator: ForecastOrchestrator, market_client: MagicMock, candle_factory
    ) -> None:
        candles = candle_factory([95000, 95100], start_ms=_ms(date(2025, 1, 9)))
        _feed(market_client, recent=candles, history=candles)

        report = await orchestrator.run()

        assert report.prediction.actor_id == "system"

    @pytest.mark.asyncio
    async def test_second_run_same_day_skips_duplicate(
        self,
        orchestrator: ForecastOrchestrator,
        market_client: MagicMock,
        forecaster: MagicMock,
        ledger: ReconciliationLedger,
        result_factory,
        candle_factory,
    ) -> None:
        candles = candle_factory([95000, 95100], start_ms=_ms(date(2025, 1, 9)))
        _feed(market_client, recent=candles, history=candles)

        first = await orchestrator.run()
        forecaster.forecast.return_value = result_factory("99999")
        second = await orchestrator.run()

        assert second.created is False
        assert second.prediction.id == first.prediction.id
        assert second.prediction.predicted_price == Decimal("96200.00")
        assert await ledger.count() == 1


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------


class TestFailures:
    @pytest.mark.asyncio
    async def test_reconciliation_failure_does_not_abort(
        self,
        orchestrator: ForecastOrchestrator,
        market_client: MagicMock,
        ledger: ReconciliationLedger,
        candle_factory,
    ) -> None:
        history = candle_factory([95000, 95100], start_ms=_ms(date(2025, 1, 9)))

        async def fetch(symbol, interval="1d", count=1000):
            if count == 2:
                raise UpstreamUnavailable("klines down")
            return history

        market_client.fetch_candles.side_effect = fetch

        report = await orchestrator.run()

        assert report.reconciled is None
        assert report.created is True
        assert await ledger.count() == 1

    @pytest.mark.asyncio
    async def test_history_failure_is_fatal(
        self,
        orchestrator: ForecastOrchestrator,
        market_client: MagicMock,
        forecaster: MagicMock,
        ledger: ReconciliationLedger,
        candle_factory,
    ) -> None:
        recent = candle_factory([95000, 95100], start_ms=_ms(date(2025, 1, 9)))

        async def fetch(symbol, interval="1d", count=1000):
            if count == 2:
                return recent
            raise UpstreamUnavailable("history down")

        market_client.fetch_candles.side_effect = fetch

        with pytest.raises(UpstreamUnavailable):
            await orchestrator.run()

        forecaster.forecast.assert_not_awaited()
        assert await ledger.count() == 0

    @pytest.mark.asyncio
    async def test_empty_history_is_fatal(
        self, orchestrator: ForecastOrchestrator, market_client: MagicMock
    ) -> None:
        _feed(market_client, recent=[], history=[])

        with pytest.raises(ValueError):
            await orchestrator.run()

    @pytest.mark.asyncio
    async def test_forecast_failure_persists_nothing(
        self,
        orchestrator: ForecastOrchestrator,
        market_client: MagicMock,
        forecaster: MagicMock,
        ledger: ReconciliationLedger,
        candle_factory,
    ) -> None:
        candles = candle_factory([95000, 95100], start_ms=_ms(date(2025, 1, 9)))
        _feed(market_client, recent=candles, history=candles)
        forecaster.forecast.side_effect = InvalidForecast("Invalid predictions array")

        with pytest.raises(InvalidForecast):
            await orchestrator.run()

        assert await ledger.count() == 0

    @pytest.mark.asyncio
    async def test_timeout(
        self,
        mock_settings: AppSettings,
        market_client: MagicMock,
        forecaster: MagicMock,
        ledger: ReconciliationLedger,
        clock: MutableClock,
        candle_factory,
    ) -> None:
        candles = candle_factory([95000, 95100], start_ms=_ms(date(2025, 1, 9)))
        _feed(market_client, recent=candles, history=candles)

        async def slow(_candles):
            await asyncio.sleep(10)

        forecaster.forecast.side_effect = slow
        mock_settings.job.run_timeout_seconds = 0.05
        orchestrator = ForecastOrchestrator(
            mock_settings, market_client, forecaster, ledger, clock=clock
        )

        with pytest.raises(asyncio.TimeoutError):
            await orchestrator.run_with_timeout()

        assert await ledger.count() == 0


# ---------------------------------------------------------------------------
# Day rollover
# ---------------------------------------------------------------------------


class TestDayRollover:
    @pytest.mark.asyncio
    async def test_run_at_midnight_reconciles_with_just_closed_candle(
        self,
        orchestrator: ForecastOrchestrator,
        market_client: MagicMock,
        ledger: ReconciliationLedger,
        clock: MutableClock,
        result_factory,
        candle_factory,
    ) -> None:
        await ledger.record_pending_forecast(DAY_N1, DAY_N, result_factory("96200"))
        # Candle opened on N closes exactly at N+1 00:00:00
        candles = candle_factory([95000, 95800], start_ms=_ms(date(2025, 1, 9)))
        _feed(market_client, recent=candles, history=candles)
        clock.now = _at(DAY_N1, 0, 0, 0)

        report = await orchestrator.run()

        assert report.reconciled is not None
        assert report.reconciled.actual_price == Decimal("95800.00")

    @pytest.mark.asyncio
    async def test_in_progress_candle_not_used(
        self,
        orchestrator: ForecastOrchestrator,
        market_client: MagicMock,
        ledger: ReconciliationLedger,
        clock: MutableClock,
        result_factory,
        candle_factory,
    ) -> None:
        await ledger.record_pending_forecast(DAY_N1, DAY_N, result_factory("96200"))
        # Second candle opened on N+1 and is still forming
        candles = candle_factory([95800, 97000], start_ms=_ms(DAY_N))
        _feed(market_client, recent=candles, history=candles)
        clock.now = _at(DAY_N1, 12, 0)

        report = await orchestrator.run()

        assert report.reconciled is not None
        assert report.reconciled.actual_price == Decimal("95800.00")
