"""Forecast layer -- prompt building, model invocation, response validation and throttling."""

from predictor.forecast.engine import ForecastEngine, build_prompt, parse_forecast
from predictor.forecast.fallback import statistical_forecast
from predictor.forecast.throttle import (
    RequestThrottle,
    ThrottledForecaster,
    ThrottleState,
    forecast_cache_key,
)

__all__ = [
    "ForecastEngine",
    "RequestThrottle",
    "ThrottleState",
    "ThrottledForecaster",
    "build_prompt",
    "forecast_cache_key",
    "parse_forecast",
    "statistical_forecast",
]
