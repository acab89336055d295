"""Subscription and credit gate for premium tools."""
