"""HTTP API for the billing engine."""
