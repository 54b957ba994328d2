"""JSON endpoints for interactive forecasts, prediction history and health."""

from __future__ import annotations

from datetime import timedelta

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from predictor.exceptions import RateLimited, UpstreamUnavailable
from predictor.forecast.fallback import statistical_forecast
from predictor.ledger.ledger import HISTORY_SCOPES

log = structlog.get_logger(__name__)

router = APIRouter()

API_ACTOR = "api"

# Interactive horizons: timeframe label -> number of daily predictions
TIMEFRAMES = {"1day": 1, "1week": 7}


class PredictRequest(BaseModel):
    force_refresh: bool = Field(default=False, alias="forceRefresh")
    timeframe: str = "1week"

    model_config = {"populate_by_name": True}


@router.post("/predict")
async def predict(request: Request, body: PredictRequest | None = None) -> JSONResponse:
    """Forecast the next ``timeframe`` of daily closes through the throttle.

    RateLimited or a model failure returns the statistical estimate with
    ``useFallback: true``. A successful model forecast is then recorded as a
    second step, keeping only the next-day value; a failed write is logged
    and reported as ``saved: false`` without withholding the forecast.
    """
    state = request.app.state
    settings = state.settings
    body = body or PredictRequest()

    days = TIMEFRAMES.get(body.timeframe)
    if days is None:
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": f"Unknown timeframe {body.timeframe!r}"},
        )

    try:
        candles = await state.market_client.fetch_candles(
            settings.market.symbol, settings.market.interval, settings.market.history_count
        )
    except UpstreamUnavailable as e:
        log.error("predict_history_failed", error=str(e))
        return JSONResponse(status_code=502, content={"success": False, "error": str(e)})
    if not candles:
        return JSONResponse(
            status_code=502, content={"success": False, "error": "No candle history available"}
        )

    try:
        result = await state.forecaster.forecast(
            candles,
            bypass_cache=body.force_refresh,
            expected_count=days,
            label=body.timeframe,
        )
    except RateLimited as e:
        fallback = statistical_forecast(candles, days)
        return JSONResponse(
            content={
                "success": True,
                "useFallback": True,
                "error": "Rate limit",
                "retryAfter": round(e.retry_after, 1),
                "forecast": fallback.to_dict(),
                "saved": False,
            }
        )
    except Exception as e:
        log.error("predict_model_failed", error=str(e), exc_info=True)
        fallback = statistical_forecast(candles, days)
        return JSONResponse(
            content={
                "success": True,
                "useFallback": True,
                "error": str(e) or type(e).__name__,
                "forecast": fallback.to_dict(),
                "saved": False,
            }
        )

    today = state.clock().date()
    saved = True
    record_id = None
    try:
        record = await state.ledger.record_pending_forecast(
            today + timedelta(days=1), today, result, actor=API_ACTOR
        )
        record_id = record.id
    except Exception as e:
        saved = False
        log.error("predict_persist_failed", error=str(e), exc_info=True)

    return JSONResponse(
        content={
            "success": True,
            "useFallback": False,
            "forecast": result.to_dict(),
            "saved": saved,
            "predictionId": record_id,
        }
    )


@router.get("/predictions/latest")
async def latest_prediction(request: Request) -> JSONResponse:
    """Most recently created prediction."""
    record = await request.app.state.ledger.latest()
    if record is None:
        return JSONResponse(
            content={"success": False, "message": "No predictions available yet"}
        )
    return JSONResponse(content={"success": True, "prediction": record.to_dict()})


@router.get("/predictions/history")
async def prediction_history(request: Request, filter: str = "all") -> JSONResponse:
    """Predictions within ``filter`` (7days, 1month, all), newest first, with stats."""
    if filter not in HISTORY_SCOPES:
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": f"Unknown filter {filter!r}"},
        )

    ledger = request.app.state.ledger
    today = request.app.state.clock().date()
    records = await ledger.history(filter, today)
    stats = await ledger.accuracy_stats(filter, today)

    return JSONResponse(
        content={
            "success": True,
            "predictions": [r.to_dict() for r in records],
            "stats": stats.to_dict(),
            "filter": filter,
        }
    )


@router.get("/health")
async def health(request: Request) -> JSONResponse:
    """Keep-alive probe that touches the ledger."""
    try:
        count = await request.app.state.ledger.count()
    except Exception as e:
        log.error("health_check_failed", error=str(e))
        return JSONResponse(status_code=500, content={"status": "error", "error": str(e)})

    return JSONResponse(
        content={
            "status": "ok",
            "timestamp": request.app.state.clock().isoformat(),
            "predictions": count,
        }
    )
