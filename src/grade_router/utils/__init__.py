"""Shared utilities: circuit breaker, metrics, backoff and JSON extraction."""
