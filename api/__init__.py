"""HTTP API and job engine."""
