"""Kimi Vision MCP server: describe local or remote images with Kimi."""

__version__ = "1.0.0"
