"""Shared helpers: retry policy, TTL cache, validation."""
