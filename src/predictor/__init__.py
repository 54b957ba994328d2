"""BTC next-day forecaster."""
