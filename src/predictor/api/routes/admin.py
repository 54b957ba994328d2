"""Administrative endpoints: manual forecast runs, manual saves and ledger purges.

Guarded by the static admin key passed as the ``key`` query parameter.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from predictor.api.routes.proxy import key_matches
from predictor.exceptions import DuplicateForecast
from predictor.models import Action, ForecastResult, Recommendation, Trend

log = structlog.get_logger(__name__)

router = APIRouter()

ADMIN_ACTOR = "admin"


class SavePredictionRequest(BaseModel):
    """A forecast entered by an administrator for tomorrow's close."""

    predicted_price: Decimal = Field(alias="predictedPrice", gt=0)
    confidence: int = Field(default=50, ge=0, le=100)
    trend: Trend = Trend.NEUTRAL
    reasoning: str = ""
    action: Action = Action.HOLD
    entry_zone: str = Field(default="", alias="entryZone")
    target: str = ""
    stop_loss: str = Field(default="", alias="stopLoss")
    market_context: str = Field(default="", alias="marketContext")

    model_config = {"populate_by_name": True}

    def to_result(self) -> ForecastResult:
        return ForecastResult(
            predictions=[self.predicted_price],
            confidence=self.confidence,
            trend=self.trend,
            reasoning=self.reasoning,
            recommendation=Recommendation(
                action=self.action,
                entry_zone=self.entry_zone,
                target=self.target,
                stop_loss=self.stop_loss,
            ),
            market_context=self.market_context,
            source="admin",
        )


def _authorized(request: Request, key: str | None) -> bool:
    expected = request.app.state.settings.api.admin_key.get_secret_value()
    return key_matches(key, expected)


def _forbidden() -> JSONResponse:
    return JSONResponse(status_code=403, content={"error": "Unauthorized - Admin only"})


@router.post("/admin/generate-prediction")
async def generate_prediction(request: Request, key: str | None = None) -> JSONResponse:
    """Run the forecast job once (reconcile, fetch, forecast, persist)."""
    if not _authorized(request, key):
        return _forbidden()

    orchestrator = request.app.state.orchestrator
    log.info("manual_forecast_run_triggered")
    try:
        report = await orchestrator.run_with_timeout()
    except Exception as e:
        log.error("manual_forecast_run_failed", error=str(e), exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": str(e) or type(e).__name__},
        )

    return JSONResponse(
        content={
            "success": True,
            "message": (
                "Prediction generated successfully"
                if report.created
                else "Prediction already exists for this date"
            ),
            "prediction": report.prediction.to_dict(),
            "reconciled": report.reconciled.to_dict() if report.reconciled else None,
        }
    )


@router.delete("/predictions/clear")
async def clear_predictions(request: Request, key: str | None = None) -> JSONResponse:
    """Delete every stored prediction."""
    if not _authorized(request, key):
        return _forbidden()

    count = await request.app.state.ledger.purge_all()
    return JSONResponse(
        content={"success": True, "message": f"Deleted {count} predictions", "count": count}
    )


@router.delete("/predictions/clear-latest")
async def clear_latest_prediction(request: Request, key: str | None = None) -> JSONResponse:
    """Delete the most recently created prediction."""
    if not _authorized(request, key):
        return _forbidden()

    removed = await request.app.state.ledger.purge_latest()
    if removed is None:
        return JSONResponse(content={"success": False, "message": "No prediction to clear"})
    return JSONResponse(
        content={"success": True, "message": "Latest prediction cleared", "id": removed.id}
    )


@router.post("/predictions/save")
async def save_prediction(
    request: Request, body: SavePredictionRequest, key: str | None = None
) -> JSONResponse:
    """Store a manually entered forecast as tomorrow's pending prediction."""
    if not _authorized(request, key):
        return _forbidden()

    state = request.app.state
    today = state.clock().date()
    try:
        record = await state.ledger.create_pending_forecast(
            today + timedelta(days=1), today, body.to_result(), actor=ADMIN_ACTOR
        )
    except DuplicateForecast as dup:
        return JSONResponse(
            status_code=409,
            content={
                "success": False,
                "error": str(dup),
                "prediction": dup.existing.to_dict(),
            },
        )
    except Exception as e:
        log.error("manual_save_failed", error=str(e), exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": str(e) or "Failed to save prediction"},
        )

    log.info("manual_prediction_saved", id=record.id, target_date=record.target_date.isoformat())
    return JSONResponse(content={"success": True, "prediction": record.to_dict()})
