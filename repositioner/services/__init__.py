"""Tool surface and service wiring."""
