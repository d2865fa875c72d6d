"""Error hierarchy for the Kimi Vision MCP server.

Every error carries an ErrorKind so the tool boundary can map failures
to the user-visible response without inspecting message text.
"""

from enum import Enum, auto
from typing import Optional


class ErrorKind(Enum):
    """Categories of failures raised while serving a tool call."""

    CONFIGURATION = auto()  # Missing credential, fatal at startup
    VALIDATION = auto()  # User-correctable input problems
    NOT_FOUND = auto()  # Local file does not exist
    TOO_LARGE = auto()  # Declared, streamed or on-disk size over the limit
    TIMEOUT = auto()  # Download deadline expired
    TRANSPORT = auto()  # Network failure or unexpected HTTP status
    REMOTE_API = auto()  # Inference endpoint rejected the call or answered oddly


class KimiVisionError(Exception):
    """Base exception with an attached error kind."""

    kind: ErrorKind = ErrorKind.TRANSPORT

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind
        self.message = message


class ConfigError(KimiVisionError):
    kind = ErrorKind.CONFIGURATION


class ValidationError(KimiVisionError):
    kind = ErrorKind.VALIDATION


class UnsafeURLError(ValidationError):
    """URL points at a host that could be used for request forgery."""

    def __init__(self, url: str, reason: str = "unsupported URL or security risk"):
        super().__init__(f"{reason}: {url}")
        self.url = url


class UnsupportedFormatError(ValidationError):
    """File extension is not in the allow-list."""

    def __init__(self, path: str, supported: tuple):
        super().__init__(
            f"Unsupported image format for '{path}'. "
            f"Supported formats: {', '.join(supported)}"
        )
        self.path = path


class MissingInputError(ValidationError):
    pass


class NotFoundError(KimiVisionError):
    kind = ErrorKind.NOT_FOUND


class TooLargeError(KimiVisionError):
    """Image exceeds the configured size limit."""

    kind = ErrorKind.TOO_LARGE

    def __init__(self, message: str, size: Optional[int] = None, limit: int = 0):
        super().__init__(message)
        self.size = size
        self.limit = limit


class DownloadError(KimiVisionError):
    """Download failed with an unexpected HTTP status or redirect."""

    kind = ErrorKind.TRANSPORT

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


class DownloadTimeoutError(KimiVisionError):
    kind = ErrorKind.TIMEOUT

    def __init__(self, message: str, timeout: float):
        super().__init__(message)
        self.timeout = timeout


class TransportError(KimiVisionError):
    kind = ErrorKind.TRANSPORT


class RemoteAPIError(KimiVisionError):
    """Inference endpoint returned a non-2xx status or a malformed body."""

    kind = ErrorKind.REMOTE_API

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code
