"""Configuration and structured logging helpers."""
