"""FastAPI application factory for the forecast service."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI

from predictor.api.routes import admin, predictions, proxy
from predictor.orchestrator import utc_now


def create_app(lifespan: Any = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Components (settings, market_client, forecaster, ledger, orchestrator)
    are attached to ``app.state`` by the lifespan in main.py, or directly by
    tests.

    Args:
        lifespan: Optional async context manager for startup/shutdown.
    """
    app = FastAPI(
        title="BTC Next-Day Forecaster",
        lifespan=lifespan,
    )

    # Overridable so routes agree with the job on what "today" is
    app.state.clock = utc_now

    app.include_router(proxy.router)
    app.include_router(predictions.router, prefix="/api")
    app.include_router(admin.router, prefix="/api")

    return app
