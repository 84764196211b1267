"""Historical telemetry import-job engine."""
