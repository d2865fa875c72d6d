"""
Shared test fixtures and configuration for Kimi Vision tests.
"""

import sys
from pathlib import Path

import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from kimi_vision.config import DownloadLimits, Settings, get_settings  # noqa: E402

# Environment variables that would leak a developer's real setup into tests
_ISOLATED_ENV = (
    "KIMI_API_KEY",
    "KIMI_API_URL",
    "KIMI_DEFAULT_MODEL",
    "KIMI_REQUEST_TIMEOUT",
    "LOG_LEVEL",
    "KIMI__API_KEY",
    "KIMI_VISION_CONFIG_FILE",
    "KIMI_VISION_SECRETS_FILE",
)


@pytest.fixture(autouse=True)
def isolate_environment(monkeypatch):
    """Run every test without real credentials or cached settings."""
    for name in _ISOLATED_ENV:
        monkeypatch.delenv(name, raising=False)
        monkeypatch.delenv(name.lower(), raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def limits():
    """Production download limits."""
    return DownloadLimits()


@pytest.fixture
def settings():
    """Settings with a test API key."""
    return Settings(kimi={"api_key": "test-kimi-key"})


@pytest.fixture
def png_file(tmp_path):
    """A 100-byte file with a .png extension."""
    path = tmp_path / "screenshot.png"
    path.write_bytes(b"\x89PNG\r\n\x1a\n" + bytes(range(92)))
    return path
