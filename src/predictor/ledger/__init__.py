"""Prediction ledger -- SQLite persistence and reconciliation of stored forecasts."""

from predictor.ledger.database import PredictionDatabase
from predictor.ledger.ledger import HISTORY_SCOPES, ReconciliationLedger

__all__ = ["HISTORY_SCOPES", "PredictionDatabase", "ReconciliationLedger"]
