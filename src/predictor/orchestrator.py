"""Forecast job orchestrator -- one run-to-completion pass.

Each run, in order:
  1. RECONCILE: close out the forecast targeting today with the close of the
     last fully closed daily candle (best effort, never aborts the run)
  2. FETCH: load the bounded daily history (fatal on failure)
  3. FORECAST: one model invocation, optionally throttled (fatal on failure)
  4. PERSIST: record a pending forecast for today + 1 day (a duplicate for
     that date is skipped)

Date convention (UTC): a forecast for date D predicts the close at 00:00 UTC
of D, i.e. the close of the daily candle that opened on D - 1. The run on D
reconciles target_date == D using that candle. The orchestrator is the only
component that reads the wall clock.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Protocol

import structlog

from predictor.config import AppSettings
from predictor.exceptions import DuplicateForecast
from predictor.exchange.client import MarketDataClient
from predictor.exchange.types import interval_to_ms, last_closed_candle
from predictor.ledger.ledger import ReconciliationLedger
from predictor.logging import get_logger
from predictor.models import Candle, ForecastResult, PredictionRecord

logger = get_logger(__name__)


class Forecaster(Protocol):
    """ForecastEngine or ThrottledForecaster."""

    async def forecast(self, candles: list[Candle]) -> ForecastResult: ...


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RunReport:
    """Outcome of one orchestrator run."""

    run_id: str
    today: date
    reconciled: PredictionRecord | None
    prediction: PredictionRecord
    created: bool  # False when a pending forecast for the target date already existed


class ForecastOrchestrator:
    """Sequences reconcile -> fetch -> forecast -> persist.

    Args:
        settings: Application-wide settings.
        market_client: Price-feed client.
        forecaster: Produces a ForecastResult from candles.
        ledger: Reconciliation ledger.
        clock: Returns the current timezone-aware UTC datetime.
    """

    def __init__(
        self,
        settings: AppSettings,
        market_client: MarketDataClient,
        forecaster: Forecaster,
        ledger: ReconciliationLedger,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings = settings
        self._market_client = market_client
        self._forecaster = forecaster
        self._ledger = ledger
        self._clock = clock

    async def run_with_timeout(self) -> RunReport:
        """Run once within the configured wall-clock budget.

        Raises asyncio.TimeoutError on expiry, after cancelling the in-flight call.
        """
        return await asyncio.wait_for(
            self.run(), timeout=self._settings.job.run_timeout_seconds
        )

    async def run(self) -> RunReport:
        """Execute one full pass. Mandatory-step failures propagate."""
        run_id = uuid.uuid4().hex[:12]
        structlog.contextvars.bind_contextvars(run_id=run_id)
        try:
            now = self._clock()
            today = now.date()
            logger.info("forecast_run_started", today=today.isoformat())

            reconciled = await self._reconcile(today, now)

            market = self._settings.market
            candles = await self._market_client.fetch_candles(
                market.symbol, market.interval, market.history_count
            )
            if not candles:
                raise ValueError(f"No candle history returned for {market.symbol}")
            logger.info(
                "history_fetched",
                candles=len(candles),
                last_close=str(candles[-1].close),
            )

            result = await self._forecaster.forecast(candles)

            target_date = today + timedelta(days=1)
            try:
                prediction = await self._ledger.create_pending_forecast(
                    target_date, today, result
                )
                created = True
            except DuplicateForecast as dup:
                logger.info(
                    "duplicate_forecast_skipped",
                    target_date=target_date.isoformat(),
                    existing_id=dup.existing.id,
                )
                prediction = dup.existing
                created = False

            logger.info(
                "forecast_run_completed",
                target_date=target_date.isoformat(),
                predicted_price=str(prediction.predicted_price),
                created=created,
            )
            return RunReport(
                run_id=run_id,
                today=today,
                reconciled=reconciled,
                prediction=prediction,
                created=created,
            )
        finally:
            structlog.contextvars.unbind_contextvars("run_id")

    async def _reconcile(self, today: date, now: datetime) -> PredictionRecord | None:
        """Close out today's forecast. Errors are logged and swallowed."""
        market = self._settings.market
        try:
            recent = await self._market_client.fetch_candles(market.symbol, market.interval, 2)
            candle = last_closed_candle(
                recent, int(now.timestamp() * 1000), interval_to_ms(market.interval)
            )
            if candle is None:
                logger.warning("no_closed_candle_for_reconciliation", today=today.isoformat())
                return None
            return await self._ledger.reconcile(today, candle.close)
        except Exception as e:
            logger.error("reconciliation_failed", today=today.isoformat(), error=str(e))
            return None
