"""Logging setup for the kimi-vision server."""
