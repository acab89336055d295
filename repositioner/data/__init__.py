"""Ledger, pool-service and price-API clients."""
