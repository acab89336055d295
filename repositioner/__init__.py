"""Liquidity position reposition engine."""

__version__ = "1.0.0"
