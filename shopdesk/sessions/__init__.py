"""Per-client conversation sessions: models and the TTL-bounded store."""
