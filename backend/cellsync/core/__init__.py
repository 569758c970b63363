"""Core configuration, errors and resilience helpers."""
