"""
Border0 Errors

All exceptions raised by the SDK inherit from Border0Error so callers can
catch SDK failures in one place and still tell the kinds apart.
"""

from typing import Optional


class Border0Error(Exception):
    """Base exception for all Border0 SDK errors."""


class ConfigError(Border0Error):
    """Missing or invalid options. Fatal at startup."""


class AuthError(Border0Error):
    """Credentials rejected by the API, the control plane or a relay."""


class NotFoundError(Border0Error):
    """A socket or policy does not exist and cannot be created."""


class ConflictError(Border0Error):
    """A resource with the same name already exists."""


class ProtocolVersionError(Border0Error):
    """The control plane does not speak our protocol version."""


class TransientNetworkError(Border0Error):
    """Connection drops, DNS failures, resets. Retried with backoff."""


class DialError(Border0Error):
    """A single inbound dial failed. Reported upstream, never fatal."""

    def __init__(self, reason: str, message: str = ""):
        self.reason = reason
        super().__init__(message or reason)


class QueueClosedError(Border0Error):
    """The listener (and its accept queue) has been closed."""


class CancellationError(Border0Error):
    """A blocking operation was cancelled by its caller."""


class APIError(Border0Error):
    """Error response returned by the Border0 management API."""

    def __init__(
        self,
        status_code: int,
        message: str,
        retry_after: Optional[float] = None,
    ):
        self.status_code = status_code
        self.message = message
        self.retry_after = retry_after
        super().__init__(f"{status_code}: {message}")


FATAL_ERRORS = (ConfigError, AuthError, NotFoundError, ProtocolVersionError)


def is_fatal(error: BaseException) -> bool:
    """Whether an error should stop the listener instead of being retried."""
    return isinstance(error, FATAL_ERRORS)


__all__ = [
    "Border0Error",
    "ConfigError",
    "AuthError",
    "NotFoundError",
    "ConflictError",
    "ProtocolVersionError",
    "TransientNetworkError",
    "DialError",
    "QueueClosedError",
    "CancellationError",
    "APIError",
    "is_fatal",
]
