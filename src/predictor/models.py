"""Shared data models for the BTC forecaster.

CRITICAL: All monetary values use Decimal. Never use float for prices,
differences, or error percentages.
"""

import time
from dataclasses import asdict, dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any

CENT = Decimal("0.01")


def round_cents(value: Decimal) -> Decimal:
    """Round a monetary value to 2 decimals, halves away from zero."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class Trend(str, Enum):
    """Overall market direction reported with a forecast."""

    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


class Action(str, Enum):
    """Trading recommendation."""

    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class PredictionStatus(str, Enum):
    """Lifecycle of a stored forecast. Transitions pending -> completed only."""

    PENDING = "pending"
    COMPLETED = "completed"


@dataclass(frozen=True)
class Candle:
    """One OHLCV sample. open_time is unique and increasing within a series."""

    open_time: int  # Unix milliseconds
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal

    def to_row(self) -> list:
        """Exchange kline shape: [openTime, open, high, low, close, volume]."""
        return [
            self.open_time,
            str(self.open),
            str(self.high),
            str(self.low),
            str(self.close),
            str(self.volume),
        ]


@dataclass
class Recommendation:
    """Action plus free-text price zones, e.g. "$92,000 - $93,000"."""

    action: Action = Action.HOLD
    entry_zone: str = ""
    target: str = ""
    stop_loss: str = ""


@dataclass
class ForecastResult:
    """Structured output of one forecast invocation."""

    predictions: list[Decimal]
    confidence: int
    trend: Trend
    reasoning: str
    recommendation: Recommendation = field(default_factory=Recommendation)
    market_context: str = ""
    source: str = "ai"  # "ai", "statistical" or "admin"

    @property
    def predicted_price(self) -> Decimal:
        """The next-day close (first prediction)."""
        return self.predictions[0]

    def to_dict(self) -> dict[str, Any]:
        return {
            "predictions": [str(p) for p in self.predictions],
            "predictedPrice": str(self.predicted_price),
            "confidence": self.confidence,
            "trend": self.trend.value,
            "reasoning": self.reasoning,
            "recommendation": {
                "action": self.recommendation.action.value,
                "entryZone": self.recommendation.entry_zone,
                "target": self.recommendation.target,
                "stopLoss": self.recommendation.stop_loss,
            },
            "marketContext": self.market_context,
            "source": self.source,
        }


@dataclass
class PredictionRecord:
    """Durable unit of the reconciliation ledger.

    actual_price, difference and percentage_error are None while pending and
    are set together when the record completes.
    """

    id: str
    actor_id: str
    made_on_date: date
    target_date: date
    predicted_price: Decimal
    confidence: int
    trend: Trend
    reasoning: str
    action: Action
    entry_zone: str
    target: str
    stop_loss: str
    market_context: str
    status: PredictionStatus
    created_at: int  # Unix milliseconds
    updated_at: int | None = None
    actual_price: Decimal | None = None
    difference: Decimal | None = None
    percentage_error: Decimal | None = None

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly representation (Decimals and dates as strings)."""
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, (Decimal, date)):
                data[key] = str(value)
            elif isinstance(value, Enum):
                data[key] = value.value
        return data


@dataclass
class AccuracyStats:
    """Aggregate error over completed forecasts."""

    total_predictions: int
    completed_predictions: int
    average_error: Decimal  # mean |percentage_error|
    accuracy: Decimal  # 0..100, reaches 0 at 10% average error

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalPredictions": self.total_predictions,
            "completedPredictions": self.completed_predictions,
            "averageError": str(self.average_error),
            "accuracy": str(self.accuracy),
        }
