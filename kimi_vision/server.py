#!/usr/bin/env python3
"""Kimi Vision MCP server."""

import logging
import sys
from importlib.metadata import PackageNotFoundError, version
from typing import Optional

from fastmcp import FastMCP
from pydantic import ValidationError as SettingsValidationError

from . import __version__
from .adapters.kimi import KimiVisionClient
from .config import Settings, get_settings
from .errors import ConfigError
from .logging.setup import setup_logging
from .tools.analyze_image import register_analyze_image

logger = logging.getLogger(__name__)

SERVER_NAME = "kimi-vision"


def create_server(
    settings: Settings, client: Optional[KimiVisionClient] = None
) -> FastMCP:
    """Build the FastMCP server.

    Raises:
        ConfigError: If no API key is configured
    """
    if client is None:
        client = KimiVisionClient.from_settings(settings)

    mcp = FastMCP(SERVER_NAME)
    register_analyze_image(mcp, settings, client)
    return mcp


def _print_help():
    print("Kimi Vision MCP Server")
    print("\nUsage: kimi-vision-mcp")
    print("\nDescribes local images or image URLs with a Kimi vision model.")
    print("\nEnvironment:")
    print("  KIMI_API_KEY   API key for the Kimi endpoint (required)")
    print("  KIMI_API_URL   Override the chat completions endpoint")
    print("  LOG_LEVEL      Logging level (default: INFO)")
    print("\nOptions:")
    print("  -h, --help     Show this help message and exit")
    print("  -V, --version  Show version and exit")


def _package_version() -> str:
    try:
        return version("kimi-vision-mcp")
    except PackageNotFoundError:
        return __version__


def main():
    """Main entry point."""
    if "--help" in sys.argv or "-h" in sys.argv:
        _print_help()
        sys.exit(0)

    if "--version" in sys.argv or "-V" in sys.argv:
        print(_package_version())
        sys.exit(0)

    try:
        settings = get_settings()
    except SettingsValidationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(settings)

    try:
        mcp = create_server(settings)
    except ConfigError as e:
        logger.error(f"Server startup failed: {e}")
        sys.exit(1)

    limits = settings.download
    logger.info("Kimi Vision MCP server running on stdio")
    logger.info(f"Supported image formats: {', '.join(limits.allowed_extensions)}")
    logger.info(f"Max file size: {limits.max_megabytes:g}MB")

    try:
        mcp.run()
        logger.info("MCP server exited normally")
    except KeyboardInterrupt:
        logger.info("MCP server interrupted by user")
    except (EOFError, BrokenPipeError) as e:
        logger.info(f"Client disconnected: {type(e).__name__}")


if __name__ == "__main__":
    main()
