"""Hybrid database + ledger position sync, health and PnL."""
