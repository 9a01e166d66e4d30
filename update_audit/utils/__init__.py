"""Shared helpers: logging, sanitization, tracing, version comparison and types."""
