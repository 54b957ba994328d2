"""Custom exceptions for the BTC forecaster.

Mandatory-path errors (history fetch, forecast, ledger write) propagate to the
trigger. DuplicateForecast and ReconciliationMiss are expected outcomes and
are caught by their callers.
"""

from __future__ import annotations

from datetime import date
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from predictor.models import PredictionRecord


class PredictorError(Exception):
    """Base exception for all forecaster errors."""


class UpstreamUnavailable(PredictorError):
    """Raised when the price feed still fails after all retry attempts."""


class RateLimited(PredictorError):
    """Raised when the throttle rejects a call made too soon after the last one."""

    def __init__(self, retry_after: float) -> None:
        super().__init__(f"Rate limited, retry in {retry_after:.1f}s")
        self.retry_after = retry_after


class InvalidForecast(PredictorError):
    """Raised when a model response cannot be turned into a ForecastResult."""


class DuplicateForecast(PredictorError):
    """Raised when a pending forecast already exists for the target date."""

    def __init__(self, existing: PredictionRecord) -> None:
        super().__init__(f"Pending forecast already exists for {existing.target_date}")
        self.existing = existing


class ReconciliationMiss(PredictorError):
    """Raised when no pending forecast targets the date being reconciled."""

    def __init__(self, target_date: date) -> None:
        super().__init__(f"No pending forecast for {target_date.isoformat()}")
        self.target_date = target_date
