"""Tests for server construction and the process entry point."""

import os
import sys
from unittest.mock import MagicMock, patch

import pytest

from kimi_vision import __version__
from kimi_vision.config import Settings
from kimi_vision.errors import ConfigError
from kimi_vision.logging.setup import shutdown_logging
from kimi_vision.server import create_server, main


@pytest.fixture(autouse=True)
def restore_logger(capsys):
    yield
    shutdown_logging()


def test_create_server_requires_api_key():
    with pytest.raises(ConfigError):
        create_server(Settings())


def test_create_server_with_api_key(settings):
    mcp = create_server(settings)
    assert mcp.name == "kimi-vision"


def test_main_exits_when_api_key_missing(capsys):
    with patch.object(sys, "argv", ["kimi-vision-mcp"]):
        with patch("kimi_vision.server.FastMCP.run") as mock_run:
            with pytest.raises(SystemExit) as exc_info:
                main()

    assert exc_info.value.code == 1
    mock_run.assert_not_called()
    assert "Server startup failed" in capsys.readouterr().err


def test_main_runs_server_with_api_key():
    with patch.dict(os.environ, {"KIMI_API_KEY": "sk-test"}):
        with patch.object(sys, "argv", ["kimi-vision-mcp"]):
            with patch("kimi_vision.server.create_server") as mock_create:
                mock_create.return_value = MagicMock()
                main()

    mock_create.return_value.run.assert_called_once_with()
    settings = mock_create.call_args.args[0]
    assert settings.kimi.api_key == "sk-test"


def test_version_flag(capsys):
    with patch.object(sys, "argv", ["kimi-vision-mcp", "--version"]):
        with patch("kimi_vision.server.version", return_value=__version__):
            with pytest.raises(SystemExit) as exc_info:
                main()

    assert exc_info.value.code == 0
    assert capsys.readouterr().out.strip() == __version__


def test_help_flag(capsys):
    with patch.object(sys, "argv", ["kimi-vision-mcp", "-h"]):
        with pytest.raises(SystemExit) as exc_info:
            main()

    assert exc_info.value.code == 0
    assert "KIMI_API_KEY" in capsys.readouterr().out
