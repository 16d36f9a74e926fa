"""Gatehouse: realtime channel authorization and action rate limiting."""

__version__ = "0.1.0"
