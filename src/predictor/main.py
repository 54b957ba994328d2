"""Entry points for the BTC forecaster.

``predictor-job`` runs one forecast pass (reconcile, fetch, forecast,
persist) and exits non-zero on any fatal failure. It is meant to be invoked
by an external scheduler once a day shortly after 00:00 UTC.

``predictor-api`` serves the FastAPI app (proxy, history, interactive
forecasts, admin actions) via uvicorn's programmatic API, with all
components built and torn down in the FastAPI lifespan.

Component wiring order (in _build_components):
1. MarketDataClient (BinanceClient via ccxt)
2. ForecastEngine (google-genai)
3. RequestThrottle + ThrottledForecaster
4. PredictionDatabase + ReconciliationLedger
5. ForecastOrchestrator
"""

import asyncio
import sys
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI

from predictor.config import AppSettings
from predictor.exchange.binance_client import BinanceClient
from predictor.forecast.engine import ForecastEngine
from predictor.forecast.throttle import RequestThrottle, ThrottledForecaster
from predictor.ledger.database import PredictionDatabase
from predictor.ledger.ledger import ReconciliationLedger
from predictor.logging import get_logger, setup_logging
from predictor.orchestrator import ForecastOrchestrator


def _build_components(settings: AppSettings, use_throttle: bool) -> dict[str, Any]:
    """Build all components from settings.

    Does NOT connect the database; callers own the connection lifecycle.

    Args:
        settings: Application-wide settings.
        use_throttle: Route the orchestrator's model call through the throttle.

    Returns:
        Dict mapping component names to instances.
    """
    logger = get_logger("predictor.main")

    market_client = BinanceClient(settings.market)

    if not settings.ai.api_key.get_secret_value():
        logger.warning("no_gemini_api_key_configured", note="Model calls will fail.")
    engine = ForecastEngine(settings.ai)

    throttle = RequestThrottle(
        ttl_seconds=settings.throttle.cache_ttl_seconds,
        min_interval_seconds=settings.throttle.min_interval_seconds,
    )
    throttled = ThrottledForecaster(engine, throttle)

    database = PredictionDatabase(settings.ledger.db_path)
    ledger = ReconciliationLedger(database, system_actor=settings.ledger.system_actor)

    orchestrator = ForecastOrchestrator(
        settings=settings,
        market_client=market_client,
        forecaster=throttled if use_throttle else engine,
        ledger=ledger,
    )

    return {
        "market_client": market_client,
        "engine": engine,
        "throttle": throttle,
        "forecaster": throttled,
        "database": database,
        "ledger": ledger,
        "orchestrator": orchestrator,
    }


async def run_job(settings: AppSettings | None = None) -> int:
    """Run one forecast pass. Returns the process exit code."""
    settings = settings or AppSettings()
    setup_logging(settings.log_level, settings.log_format)
    logger = get_logger("predictor.main")

    components = _build_components(settings, use_throttle=settings.job.use_throttle)
    try:
        await components["database"].connect()
        report = await components["orchestrator"].run_with_timeout()
    except Exception as e:
        logger.error(
            "forecast_job_failed",
            error=str(e) or type(e).__name__,
            cause=repr(e.__cause__) if e.__cause__ else None,
            exc_info=True,
        )
        return 1
    finally:
        await components["market_client"].close()
        await components["database"].close()

    logger.info(
        "forecast_job_succeeded",
        prediction_id=report.prediction.id,
        target_date=report.prediction.target_date.isoformat(),
        created=report.created,
        reconciled=report.reconciled.id if report.reconciled else None,
    )
    return 0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect the ledger on startup; release exchange and DB on shutdown."""
    logger = get_logger("predictor.main")
    components = app.state.components

    app.state.market_client = components["market_client"]
    app.state.forecaster = components["forecaster"]
    app.state.ledger = components["ledger"]
    app.state.orchestrator = components["orchestrator"]

    try:
        await components["database"].connect()
        logger.info("api_started")
        yield
    finally:
        try:
            await components["market_client"].close()
        finally:
            await components["database"].close()
        logger.info("api_stopped")


async def run_api(settings: AppSettings | None = None) -> None:
    """Serve the HTTP API until interrupted."""
    from predictor.api.app import create_app

    settings = settings or AppSettings()
    setup_logging(settings.log_level, settings.log_format)
    logger = get_logger("predictor.main")

    app = create_app(lifespan=lifespan)
    app.state.settings = settings
    # Manual runs from the admin route share the interactive throttle
    app.state.components = _build_components(settings, use_throttle=True)

    logger.info("starting_api", host=settings.api.host, port=settings.api.port)
    config = uvicorn.Config(
        app,
        host=settings.api.host,
        port=settings.api.port,
        log_level="warning",  # Suppress uvicorn access logs
    )
    server = uvicorn.Server(config)
    await server.serve()


def main() -> None:
    """Synchronous entry point for the scheduled batch job."""
    sys.exit(asyncio.run(run_job()))


def serve() -> None:
    """Synchronous entry point for the HTTP service."""
    asyncio.run(run_api())


if __name__ == "__main__":
    main()
