"""Market data layer -- price-feed access via ccxt."""

from predictor.exchange.binance_client import BinanceClient
from predictor.exchange.client import MarketDataClient
from predictor.exchange.types import (
    interval_to_ms,
    last_closed_candle,
    to_unified_symbol,
)

__all__ = [
    "BinanceClient",
    "MarketDataClient",
    "interval_to_ms",
    "last_closed_candle",
    "to_unified_symbol",
]
