"""Binance market data client via ccxt async.

Wraps ccxt.async_support.binance public endpoints (klines and ticker) with a
fixed-delay retry policy and Decimal conversion.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from decimal import Decimal
from typing import Any, TypeVar

import ccxt.async_support as ccxt_async

from predictor.config import MarketDataSettings
from predictor.exceptions import UpstreamUnavailable
from predictor.exchange.client import MarketDataClient
from predictor.exchange.types import interval_to_ms, normalize_candles
from predictor.logging import get_logger
from predictor.models import Candle

logger = get_logger(__name__)

T = TypeVar("T")


def _to_decimal(value: Any) -> Decimal:
    """Convert a ccxt numeric (float or str) to Decimal without float noise."""
    return Decimal(str(value))


class BinanceClient(MarketDataClient):
    """Concrete price-feed client using ccxt async (public endpoints only)."""

    def __init__(
        self,
        settings: MarketDataSettings,
        exchange: ccxt_async.Exchange | None = None,
    ) -> None:
        self._settings = settings

        if exchange is None:
            config: dict = {"enableRateLimit": True}
            if settings.proxy_url:
                config["httpsProxy"] = settings.proxy_url
            exchange_cls = getattr(ccxt_async, settings.exchange_id)
            exchange = exchange_cls(config)

        self._exchange = exchange

    @property
    def exchange(self) -> ccxt_async.Exchange:
        """Access the underlying ccxt exchange instance."""
        return self._exchange

    async def close(self) -> None:
        """Clean up ccxt async resources. CRITICAL: must be called to avoid resource leaks."""
        await self._exchange.close()
        logger.info("market_client_closed", exchange=self._settings.exchange_id)

    async def fetch_candles(
        self, symbol: str, interval: str = "1d", count: int = 1000
    ) -> list[Candle]:
        """Fetch the newest ``count`` candles, oldest first.

        Walks FORWARD from now - count * interval in pages of at most
        ``page_limit`` rows. The exchange returns candles opening at or after
        ``since``, so a single request for more than one page would stop at
        the oldest buckets instead of reaching the present.
        """
        interval_ms = interval_to_ms(interval)
        now = int(time.time() * 1000)
        cursor = now - count * interval_ms
        page_limit = min(self._settings.page_limit, count)
        rows_by_time: dict[int, list] = {}

        while cursor <= now and len(rows_by_time) < count:
            since = cursor
            batch = await self._with_retry(
                "fetch_candles",
                lambda: self._exchange.fetch_ohlcv(
                    symbol, timeframe=interval, since=since, limit=page_limit
                ),
            )
            if not batch:
                break

            for row in batch:
                rows_by_time[int(row[0])] = row

            newest = max(int(row[0]) for row in batch)
            if newest < cursor:
                break  # No progress guard
            if len(rows_by_time) >= count or len(batch) < page_limit:
                break  # Reached the present

            cursor = newest + interval_ms
            await asyncio.sleep(self._settings.page_delay_seconds)

        candles = normalize_candles(
            (
                Candle(
                    open_time=int(row[0]),
                    open=_to_decimal(row[1]),
                    high=_to_decimal(row[2]),
                    low=_to_decimal(row[3]),
                    close=_to_decimal(row[4]),
                    volume=_to_decimal(row[5]),
                )
                for row in rows_by_time.values()
            ),
            count,
        )
        logger.debug(
            "fetched_candles",
            symbol=symbol,
            interval=interval,
            requested=count,
            received=len(candles),
        )
        return candles

    async def fetch_current_price(self, symbol: str) -> Decimal:
        """Fetch the last traded price from the ticker endpoint."""
        ticker = await self._with_retry(
            "fetch_current_price",
            lambda: self._exchange.fetch_ticker(symbol),
        )
        price = ticker.get("last")
        if price is None:
            raise UpstreamUnavailable(f"Ticker for {symbol} has no last price")
        return _to_decimal(price)

    async def _with_retry(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        """Run ``call`` up to max_attempts times with a fixed delay in between.

        Any exception counts as a failed attempt. After the final attempt the
        last error is surfaced as UpstreamUnavailable.
        """
        attempts = self._settings.max_attempts
        delay = self._settings.retry_delay_seconds
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            try:
                return await call()
            except Exception as e:
                last_error = e
                if attempt == attempts:
                    break
                logger.warning(
                    "fetch_retry",
                    operation=operation,
                    attempt=attempt,
                    max_attempts=attempts,
                    delay=delay,
                    error=str(e),
                )
                await asyncio.sleep(delay)

        logger.error(
            "fetch_failed_permanently",
            operation=operation,
            attempts=attempts,
            error=str(last_error),
        )
        raise UpstreamUnavailable(
            f"{operation} failed after {attempts} attempts: {last_error}"
        ) from last_error
