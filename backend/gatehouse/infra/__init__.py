"""Infrastructure adapters: counter store, database pool, auth, rate limiting."""
