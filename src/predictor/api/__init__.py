"""HTTP service -- FastAPI app exposing the proxy, prediction history and admin endpoints."""

from predictor.api.app import create_app

__all__ = ["create_app"]
