"""Shared test fixtures for the BTC forecaster."""

from decimal import Decimal

import pytest
import pytest_asyncio

from predictor.config import (
    AISettings,
    ApiSettings,
    AppSettings,
    JobSettings,
    LedgerSettings,
    MarketDataSettings,
    ThrottleSettings,
)
from predictor.ledger.database import PredictionDatabase
from predictor.ledger.ledger import ReconciliationLedger
from predictor.models import Action, Candle, ForecastResult, Recommendation, Trend

DAY_MS = 86_400_000


def make_candles(closes: list[str | int], start_ms: int = 1_735_689_600_000) -> list[Candle]:
    """Daily candles with the given closes, first one opening at ``start_ms`` (2025-01-01)."""
    candles = []
    for i, close in enumerate(closes):
        c = Decimal(str(close))
        candles.append(
            Candle(
                open_time=start_ms + i * DAY_MS,
                open=c,
                high=c + 500,
                low=c - 500,
                close=c,
                volume=Decimal("1234.5"),
            )
        )
    return candles


def make_result(price: str | int = "96200", confidence: int = 80) -> ForecastResult:
    return ForecastResult(
        predictions=[Decimal(str(price))],
        confidence=confidence,
        trend=Trend.BULLISH,
        reasoning="RSI 62, MACD bullish crossover.",
        recommendation=Recommendation(
            action=Action.BUY,
            entry_zone="$94,000 - $95,000",
            target="$97,000",
            stop_loss="$93,000",
        ),
        market_context="Momentum with rising volume.",
    )


@pytest.fixture
def mock_settings() -> AppSettings:
    """Return AppSettings with test defaults (no retry delay, dummy keys)."""
    return AppSettings(
        log_level="DEBUG",
        market=MarketDataSettings(retry_delay_seconds=0.0, history_count=1000),
        ai=AISettings(api_key="test-gemini-key"),  # type: ignore[arg-type]
        throttle=ThrottleSettings(cache_ttl_seconds=300, min_interval_seconds=15),
        ledger=LedgerSettings(db_path=":memory:", system_actor="system"),
        job=JobSettings(run_timeout_seconds=5.0),
        api=ApiSettings(
            proxy_key="proxy-secret",  # type: ignore[arg-type]
            admin_key="admin-secret",  # type: ignore[arg-type]
        ),
    )


@pytest_asyncio.fixture
async def database():
    """Connected in-memory ledger database."""
    db = PredictionDatabase(":memory:")
    await db.connect()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def ledger(database: PredictionDatabase) -> ReconciliationLedger:
    """Ledger with a deterministic millisecond clock."""
    ticks = iter(range(1_000, 1_000_000, 1_000))
    return ReconciliationLedger(database, system_actor="system", clock=lambda: next(ticks))


@pytest.fixture
def candle_factory():
    """The make_candles helper, for tests in subdirectories."""
    return make_candles


@pytest.fixture
def result_factory():
    """The make_result helper, for tests in subdirectories."""
    return make_result
