"""
Border0 SDK

Serve traffic for a Border0 socket from ordinary server code, and manage
sockets, policies and connectors through the management API.
"""

from typing import Optional

from .client import APIClient
from .errors import (
    APIError,
    AuthError,
    Border0Error,
    CancellationError,
    ConfigError,
    ConflictError,
    DialError,
    NotFoundError,
    ProtocolVersionError,
    QueueClosedError,
    TransientNetworkError,
)
from .listen import InboundStream, Listener, ListenerAddr, listen

__version__ = "0.1.0"


def new_api_client(auth_token: Optional[str] = None, **kwargs) -> APIClient:
    """Create a management API client. See APIClient for the options."""
    return APIClient(auth_token=auth_token, **kwargs)


__all__ = [
    "listen",
    "new_api_client",
    "Listener",
    "ListenerAddr",
    "InboundStream",
    "APIClient",
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
]
