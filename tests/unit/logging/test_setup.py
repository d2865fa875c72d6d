"""Unit tests for logging setup module."""

import io
import logging
import sys
from unittest.mock import patch

import pytest

from kimi_vision.config import Settings
from kimi_vision.logging.setup import APP_LOGGER_NAME, setup_logging, shutdown_logging


class TestLoggingSetup:
    """Test logging setup functionality."""

    @pytest.fixture(autouse=True)
    def restore_logger(self, capsys):
        # Requesting capsys makes this teardown run before capsys closes
        # the stream the handler was bound to
        yield
        shutdown_logging()

    def test_logs_to_stderr_only(self):
        app_logger = setup_logging(Settings())

        assert app_logger.name == APP_LOGGER_NAME
        assert app_logger.propagate is False
        assert len(app_logger.handlers) == 1
        handler = app_logger.handlers[0]
        assert isinstance(handler, logging.StreamHandler)
        assert handler.stream is sys.stderr

    def test_level_comes_from_settings(self):
        app_logger = setup_logging(Settings(logging={"level": "debug"}))
        assert app_logger.level == logging.DEBUG

    def test_setup_is_idempotent(self):
        setup_logging(Settings())
        app_logger = setup_logging(Settings())
        assert len(app_logger.handlers) == 1

    def test_module_loggers_write_to_stderr(self, capsys):
        setup_logging(Settings())
        logging.getLogger("kimi_vision.utils.image_loader").info("Downloading image: x")

        captured = capsys.readouterr()
        assert captured.out == ""
        assert "Downloading image: x" in captured.err

    def test_shutdown_removes_handlers(self):
        setup_logging(Settings())
        shutdown_logging()
        assert logging.getLogger(APP_LOGGER_NAME).handlers == []

    def test_shutdown_after_stream_closed(self):
        stream = io.StringIO()
        with patch.object(sys, "stderr", stream):
            setup_logging(Settings())
        stream.close()

        shutdown_logging()
        assert logging.getLogger(APP_LOGGER_NAME).handlers == []
