"""HTTP route modules: market data proxy, predictions, administration."""
