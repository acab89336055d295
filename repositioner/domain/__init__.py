"""Domain models and capability protocols."""
