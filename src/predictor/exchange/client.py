"""Abstract market data client interface.

Defines the contract for price-feed implementations. The forecast job and
the proxy route depend only on this interface, keeping exchange-specific
details isolated in the concrete implementation.
"""

from abc import ABC, abstractmethod
from decimal import Decimal

from predictor.models import Candle


class MarketDataClient(ABC):
    """Abstract base class for price-feed clients.

    Implementations retry each call a bounded number of times and raise
    UpstreamUnavailable once the attempts are exhausted. No caching happens
    at this layer.
    """

    @abstractmethod
    async def close(self) -> None:
        """Clean up resources (CRITICAL for ccxt async)."""
        ...

    @abstractmethod
    async def fetch_candles(
        self, symbol: str, interval: str = "1d", count: int = 1000
    ) -> list[Candle]:
        """Fetch the most recent candles, oldest first.

        May return fewer than ``count`` near the start of a series.
        """
        ...

    @abstractmethod
    async def fetch_current_price(self, symbol: str) -> Decimal:
        """Fetch the latest traded price for a symbol."""
        ...
