"""Next-day price forecast via a generative model.

Builds one prompt from the recent candle window, sends it as a single
non-streaming request, and validates the JSON object embedded in the reply.

The model call can take minutes and is never retried here; a malformed reply
aborts the forecast with InvalidForecast and the caller decides whether to
invoke again.
"""

from __future__ import annotations

import json
import math
from decimal import Decimal
from typing import Any

from google import genai

from predictor.config import AISettings
from predictor.exceptions import InvalidForecast
from predictor.logging import get_logger
from predictor.models import Action, Candle, ForecastResult, Recommendation, Trend

logger = get_logger(__name__)

_RESPONSE_SCHEMA = """{
  "predictions": [93500.50],
  "confidence": 82,
  "reasoning": "Upper Bollinger band near $95K acts as resistance. RSI 62. 7-day trend +2.5%.",
  "trend": "bullish",
  "recommendation": {
    "action": "BUY",
    "entryZone": "$92,000 - $93,000",
    "target": "$94,500",
    "stopLoss": "$91,000"
  },
  "marketContext": "Short-term bullish momentum with rising volume. Key resistance at $94K-95K."
}"""


def build_prompt(candles: list[Candle], expected_count: int, window: int) -> str:
    """Render the forecast prompt for the newest ``window`` candles."""
    recent = candles[-window:]
    current_price = recent[-1].close
    data = "\n".join(
        f"{i}. Close: ${c.close}, High: ${c.high}, Low: ${c.low}, Volume: {c.volume}"
        for i, c in enumerate(recent, 1)
    )
    plural = "price" if expected_count == 1 else "prices"

    return f"""You are an expert cryptocurrency analyst specializing in Bitcoin price prediction.

Analyze the Bitcoin historical data and predict the next {expected_count} daily closing {plural} (UTC 00:00).

HISTORICAL DATA ({len(recent)} daily candles, oldest first):
{data}

CURRENT PRICE: ${current_price}

ANALYSIS:
1. Bollinger Bands (20-day, 2 std dev) and the current position relative to them
2. 7-day and 30-day % change and direction
3. Recent volume vs average volume, price-volume correlation
4. RSI (14-day), MACD crossover, 7-day and 20-day moving averages
5. Support and resistance levels, Fibonacci retracements (23.6%, 38.2%, 50%, 61.8%)

RULES:
- Daily volatility is typically 1-3% (max 5% unless a major breakout)
- Each prediction must be a specific number, not a range
- Confidence (0-100) reflects how well the indicators agree
- The prediction will be tracked against the actual closing price

RESPOND WITH EXACTLY ONE JSON OBJECT IN THIS FORMAT (no markdown, just raw JSON).
"predictions" must contain exactly {expected_count} number(s):
{_RESPONSE_SCHEMA}"""


def _extract_object(text: str) -> dict[str, Any]:
    """Decode the first top-level JSON object embedded in ``text``."""
    start = text.find("{")
    if start == -1:
        raise InvalidForecast("No JSON object in model response")

    decoder = json.JSONDecoder(parse_float=Decimal)
    try:
        obj, _ = decoder.raw_decode(text, start)
    except json.JSONDecodeError as e:
        raise InvalidForecast(f"Model response is not valid JSON: {e.msg}") from e

    if not isinstance(obj, dict):
        raise InvalidForecast("Model response JSON is not an object")
    return obj


def _to_price(value: Any) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        raise InvalidForecast(f"Prediction {value!r} is not a number")
    if isinstance(value, float) and not math.isfinite(value):
        raise InvalidForecast(f"Prediction {value!r} is not finite")
    price = Decimal(str(value))
    if not price.is_finite() or price <= 0:
        raise InvalidForecast(f"Prediction {value!r} is not a positive price")
    return price


def _to_confidence(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        return 0
    if isinstance(value, float) and not math.isfinite(value):
        return 0
    return max(0, min(100, int(round(value))))


def _to_enum(enum_cls: type, value: Any, default: Any, upper: bool = False) -> Any:
    if not isinstance(value, str):
        return default
    try:
        return enum_cls(value.strip().upper() if upper else value.strip().lower())
    except ValueError:
        return default


def _to_text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def parse_forecast(text: str, expected_count: int) -> ForecastResult:
    """Validate a raw model reply into a ForecastResult.

    Only the price array is a hard requirement: it must hold exactly
    ``expected_count`` finite positive numbers. Confidence, trend and the
    recommendation fall back to 0, neutral and HOLD when missing or invalid.

    Raises:
        InvalidForecast: On undecodable JSON or an invalid price array.
    """
    obj = _extract_object(text)

    predictions = obj.get("predictions")
    if not isinstance(predictions, list):
        raise InvalidForecast("Missing predictions array")
    if len(predictions) != expected_count:
        raise InvalidForecast(
            f"Invalid predictions array: expected {expected_count}, got {len(predictions)}"
        )
    prices = [_to_price(p) for p in predictions]

    rec = obj.get("recommendation")
    if not isinstance(rec, dict):
        rec = {}

    return ForecastResult(
        predictions=prices,
        confidence=_to_confidence(obj.get("confidence")),
        trend=_to_enum(Trend, obj.get("trend"), Trend.NEUTRAL),
        reasoning=_to_text(obj.get("reasoning")),
        recommendation=Recommendation(
            action=_to_enum(Action, rec.get("action"), Action.HOLD, upper=True),
            entry_zone=_to_text(rec.get("entryZone")),
            target=_to_text(rec.get("target")),
            stop_loss=_to_text(rec.get("stopLoss")),
        ),
        market_context=_to_text(obj.get("marketContext")),
    )


class ForecastEngine:
    """Turns a candle history into a validated ForecastResult.

    Args:
        settings: Model name, prompt window and default prediction count.
        client: google-genai ``Client`` (or a stand-in exposing
            ``aio.models.generate_content``). Built from settings when omitted.
    """

    def __init__(self, settings: AISettings, client: Any | None = None) -> None:
        self._settings = settings
        if client is None:
            client = genai.Client(api_key=settings.api_key.get_secret_value())
        self._client = client

    @property
    def expected_count(self) -> int:
        return self._settings.prediction_count

    async def forecast(
        self, candles: list[Candle], expected_count: int | None = None
    ) -> ForecastResult:
        """Run one model invocation for the given history (oldest first).

        ``expected_count`` overrides the configured number of daily
        predictions for this call only.
        """
        if not candles:
            raise ValueError("Cannot forecast without candle data")
        count = expected_count if expected_count is not None else self.expected_count
        if count < 1:
            raise ValueError("expected_count must be at least 1")

        prompt = build_prompt(candles, count, self._settings.prompt_window)
        logger.info(
            "forecast_requested",
            model=self._settings.model,
            candles=min(len(candles), self._settings.prompt_window),
            expected_count=count,
            current_price=str(candles[-1].close),
        )

        response = await self._client.aio.models.generate_content(
            model=self._settings.model, contents=prompt
        )
        # Blocked or candidate-less replies carry no text
        text = response.text
        if not text:
            raise InvalidForecast("Empty response from model")

        result = parse_forecast(text, count)
        logger.info(
            "forecast_parsed",
            predicted_price=str(result.predicted_price),
            confidence=result.confidence,
            trend=result.trend.value,
        )
        return result
