"""Logging system setup for a stdio MCP server."""

import logging
import sys
from typing import Optional

from ..config import Settings, get_settings

APP_LOGGER_NAME = "kimi_vision"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(settings: Optional[Settings] = None) -> logging.Logger:
    """Route the application logger to stderr.

    stdout is reserved for JSON-RPC frames, so nothing may log there.
    Calling this more than once replaces the previous handlers.
    """
    if settings is None:
        settings = get_settings()

    app_logger = logging.getLogger(APP_LOGGER_NAME)
    app_logger.setLevel(settings.logging.level)
    app_logger.propagate = False

    if app_logger.hasHandlers():
        app_logger.handlers.clear()

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(settings.logging.level)
    stderr_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    app_logger.addHandler(stderr_handler)

    return app_logger


def shutdown_logging():
    """Detach the stderr handler.

    The handler is not flushed: its stream may already be closed.
    """
    app_logger = logging.getLogger(APP_LOGGER_NAME)
    for handler in list(app_logger.handlers):
        app_logger.removeHandler(handler)
