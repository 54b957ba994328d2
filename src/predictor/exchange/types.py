"""Market data helpers shared by the client, the job and the proxy route."""

from collections.abc import Iterable

import ccxt.async_support as ccxt_async

from predictor.models import Candle

_KNOWN_QUOTES = ("USDT", "USDC", "FDUSD", "BUSD", "TUSD", "EUR", "BTC", "ETH", "BNB")


def interval_to_ms(interval: str) -> int:
    """Convert an exchange timeframe such as "1d" or "15m" to milliseconds.

    Raises:
        ValueError: ``interval`` is not a positive ccxt timeframe.
    """
    try:
        ms = int(ccxt_async.Exchange.parse_timeframe(interval) * 1000)
    except (ValueError, IndexError, ccxt_async.NotSupported) as e:
        raise ValueError(f"Unsupported interval {interval!r}") from e
    if ms <= 0:
        raise ValueError(f"Unsupported interval {interval!r}")
    return ms


def to_unified_symbol(symbol: str) -> str:
    """Map an exchange-native id ("BTCUSDT") to a unified symbol ("BTC/USDT").

    Symbols already in unified form are returned unchanged.
    """
    if "/" in symbol:
        return symbol
    raw = symbol.upper()
    for quote in _KNOWN_QUOTES:
        if raw.endswith(quote) and len(raw) > len(quote):
            return f"{raw[: -len(quote)]}/{quote}"
    raise ValueError(f"Cannot derive base/quote from symbol {symbol!r}")


def normalize_candles(candles: Iterable[Candle], count: int) -> list[Candle]:
    """Sort oldest first, drop repeated open times, keep the newest ``count``."""
    by_time = {c.open_time: c for c in candles}
    ordered = [by_time[t] for t in sorted(by_time)]
    return ordered[-count:] if count > 0 else []


def last_closed_candle(
    candles: list[Candle], now_ms: int, interval_ms: int
) -> Candle | None:
    """Return the newest candle whose bucket has fully closed at ``now_ms``.

    A candle opened at T closes at T + interval_ms; a run at exactly that
    instant already sees it as closed.
    """
    closed = [c for c in candles if c.open_time + interval_ms <= now_ms]
    return closed[-1] if closed else None
