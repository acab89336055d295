"""Persistence: ORM models, repository, credit ledger, reposition history."""
