"""Exception types raised by :mod:`relaydeck`."""
from __future__ import annotations

from typing import Any, Optional


class RelaydeckError(Exception):
    """Base class for every error raised by the dashboard engine."""


class ApiError(RelaydeckError):
    """A request to the relay API failed.

    ``status`` is the HTTP status code, or ``0`` when the request never
    produced a response (connection refused, timeout, DNS failure).
    """

    def __init__(self, message: str, status: int = 0, details: Optional[Any] = None) -> None:
        super().__init__(message)
        self.status = status
        self.details = details


class AuthenticationError(ApiError):
    """The relay rejected the stored access key."""


class InvalidCategoryError(RelaydeckError, ValueError):
    """A value could not be resolved to a channel category."""


class InvalidStatusError(RelaydeckError, ValueError):
    """A channel status outside the supported set was requested."""


__all__ = [
    "ApiError",
    "AuthenticationError",
    "InvalidCategoryError",
    "InvalidStatusError",
    "RelaydeckError",
]
