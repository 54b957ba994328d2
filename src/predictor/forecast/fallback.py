"""Statistical next-day estimate used when the model is unavailable or rate limited.

Projects the mean daily log-return of the recent window forward. The result
is marked ``source="statistical"`` and is never written to the ledger.
"""

from decimal import Decimal

from predictor.models import Action, Candle, ForecastResult, Recommendation, Trend, round_cents

_SIGNAL_THRESHOLD_PCT = Decimal("2")


def _usd(value: Decimal) -> str:
    return f"${round(value):,}"


def _mean_log_return(candles: list[Candle]) -> Decimal:
    closes = [c.close for c in candles if c.close > 0]
    if len(closes) < 2:
        return Decimal("0")
    returns = [(cur / prev).ln() for prev, cur in zip(closes, closes[1:])]
    return sum(returns, Decimal("0")) / len(returns)


def statistical_forecast(
    candles: list[Candle], expected_count: int = 1, window: int = 30
) -> ForecastResult:
    """Extrapolate the recent drift into ``expected_count`` daily closes."""
    if not candles:
        raise ValueError("Cannot forecast without candle data")

    recent = candles[-window:]
    current = recent[-1].close
    drift = _mean_log_return(recent)
    predictions = [
        round_cents(current * (drift * step).exp()) for step in range(1, expected_count + 1)
    ]
    final = predictions[-1]
    change_pct = (final - current) / current * 100 if current else Decimal("0")

    if change_pct < -_SIGNAL_THRESHOLD_PCT:
        trend = Trend.BEARISH
        recommendation = Recommendation(
            action=Action.SELL,
            entry_zone=f"{_usd(current - 1000)} - {_usd(current + 1000)}",
            target=_usd(final - 3000),
            stop_loss=_usd(current + 3500),
        )
        reasoning = "Statistical analysis suggests bearish momentum."
        context = (
            "Statistical analysis detects bearish pressure. Historical patterns "
            "suggest potential downtrend continuation."
        )
    elif change_pct > _SIGNAL_THRESHOLD_PCT:
        trend = Trend.BULLISH
        recommendation = Recommendation(
            action=Action.BUY,
            entry_zone=f"{_usd(current - 1500)} - {_usd(current + 500)}",
            target=_usd(final + 3000),
            stop_loss=_usd(current - 3500),
        )
        reasoning = "Statistical analysis shows bullish momentum."
        context = (
            "Statistical analysis shows bullish signals. Historical data indicates "
            "potential uptrend continuation."
        )
    else:
        trend = Trend.NEUTRAL
        recommendation = Recommendation(
            action=Action.HOLD,
            entry_zone=f"{_usd(current - 1000)} - {_usd(current + 1000)}",
            target=_usd(final),
            stop_loss=_usd(current - 2500),
        )
        reasoning = "Statistical model suggests market consolidation."
        context = (
            "Statistical model indicates market consolidation. Historical patterns "
            "show balanced pressure in a tight range."
        )

    return ForecastResult(
        predictions=predictions,
        confidence=0,
        trend=trend,
        reasoning=reasoning,
        recommendation=recommendation,
        market_context=context,
        source="statistical",
    )
