"""Realtime channel authorization: facts, capability maps, and signed tokens."""
