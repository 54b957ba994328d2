"""Market data proxy for runners whose outbound IPs the exchange blocks.

The shared key is a static capability token compared exactly; there is no
per-caller identity.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from predictor.exceptions import UpstreamUnavailable
from predictor.exchange.types import interval_to_ms, to_unified_symbol

log = structlog.get_logger(__name__)

router = APIRouter()


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


def key_matches(provided: str | None, expected: str) -> bool:
    """Exact shared-secret comparison. An unset secret matches nothing."""
    if not expected or provided is None:
        return False
    return secrets.compare_digest(provided.encode(), expected.encode())


@router.get("/proxy")
async def proxy(
    request: Request,
    key: str | None = None,
    endpoint: str = "klines",
    symbol: str = "BTCUSDT",
    interval: str = "1d",
    limit: int = 1000,
) -> JSONResponse:
    """Relay klines or the ticker price as ``{success, data, timestamp}``."""
    settings = request.app.state.settings
    if not key_matches(key, settings.api.proxy_key.get_secret_value()):
        log.warning("proxy_unauthorized", key_provided=key is not None)
        return _error(401, "Unauthorized - Invalid API key")

    try:
        unified = to_unified_symbol(symbol)
        interval_to_ms(interval)
    except ValueError as e:
        return _error(400, str(e))

    market_client = request.app.state.market_client
    try:
        if endpoint == "klines":
            if limit <= 0:
                return _error(400, "limit must be positive")
            candles = await market_client.fetch_candles(unified, interval, limit)
            data: object = [c.to_row() for c in candles]
        elif endpoint == "price":
            price = await market_client.fetch_current_price(unified)
            data = {"symbol": symbol, "price": str(price)}
        else:
            return _error(400, "Invalid endpoint")
    except UpstreamUnavailable as e:
        log.error("proxy_upstream_failed", endpoint=endpoint, error=str(e))
        return _error(502, str(e))

    log.info("proxy_fetch_ok", endpoint=endpoint, symbol=unified)
    return JSONResponse(
        content={
            "success": True,
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    )
