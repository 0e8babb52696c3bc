"""
Error taxonomy for the Hamorah inference engine.

Backends and clients translate low-level failures (native runtime errors,
subprocess I/O, HTTP, JSON) into these exceptions at their boundary. The
ProviderManager turns them into AiResult failures, so none of them reach
the UI.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Category of a failure, carried on AiResult.error_kind."""
    CONFIGURATION = "configuration"
    NETWORK = "network"
    LOAD = "load"
    GENERATION = "generation"
    DOWNLOAD = "download"
    UNKNOWN = "unknown"


class AiError(Exception):
    """
    Base class for inference engine failures.

    Attributes:
        user_message: Human-readable text suitable for display
        kind: ErrorKind category
    """

    kind = ErrorKind.UNKNOWN

    def __init__(self, user_message: str, detail: str | None = None):
        super().__init__(detail or user_message)
        self.user_message = user_message


class ConfigurationError(AiError):
    """No credential configured (cloud) or no artifact downloaded (local)."""
    kind = ErrorKind.CONFIGURATION


class NetworkError(AiError):
    """Connectivity failure, timeout, or non-2xx response."""
    kind = ErrorKind.NETWORK


class LoadError(AiError):
    """Backend could not be brought to the Loaded state."""
    kind = ErrorKind.LOAD


class GenerationError(AiError):
    """Empty output or malformed response."""
    kind = ErrorKind.GENERATION


class DownloadError(AiError):
    """Artifact download failed (size mismatch, write failure, HTTP error)."""
    kind = ErrorKind.DOWNLOAD
