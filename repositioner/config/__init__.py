"""Configuration loading (YAML + environment)."""
