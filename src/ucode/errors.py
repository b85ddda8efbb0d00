"""
Error types raised inside the runtime.

Every error carries a short machine-readable `code` so callers branch on
the kind of failure (retry on "timeout", render "cancelled") instead of
matching message text.
"""
from typing import Optional


class UcodeError(Exception):
    """Base class for runtime errors."""

    code = "error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def __str__(self):
        return self.message


class ConfigurationError(UcodeError):
    """Model or endpoint is missing; raised before any network call."""

    code = "config"


class ProviderError(UcodeError):
    """The provider rejected the request or the connection failed."""

    code = "provider"

    def __init__(self, message: str = "", status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class StreamError(ProviderError):
    """An error event arrived inside the response stream."""


class TaskTimeout(UcodeError):
    code = "timeout"


class TaskCancelled(UcodeError):
    code = "cancelled"

    def __init__(self, message: str = "cancelled"):
        super().__init__(message)
