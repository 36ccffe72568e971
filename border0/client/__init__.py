"""
Border0 Management API Client

Usage:
    from border0.client import APIClient, Socket

    api = APIClient()  # token from $BORDER0_AUTH_TOKEN
    socket = api.create_socket(Socket(name="my-app", socket_type="http"))
    for s in api.sockets():
        print(s.name, s.socket_id)
"""

from .api import (
    DEFAULT_BASE_URL,
    DEFAULT_PORTAL_BASE_URL,
    APIClient,
)
from .backoff import (
    Backoff,
    constant_backoff,
    exponential_backoff,
    jittered_backoff,
)
from .http_client import HTTPClient, conflict, not_found, unauthorized
from .pagination import Paginator
from .types import (
    Connector,
    ConnectorToken,
    DirectoryService,
    Group,
    Policy,
    ServerInfo,
    ServiceAccount,
    ServiceAccountToken,
    Socket,
    SocketConnector,
    SocketType,
    User,
)

__all__ = [
    # Client
    "APIClient",
    "HTTPClient",
    "DEFAULT_BASE_URL",
    "DEFAULT_PORTAL_BASE_URL",
    # Backoff
    "Backoff",
    "constant_backoff",
    "exponential_backoff",
    "jittered_backoff",
    # Error helpers
    "conflict",
    "not_found",
    "unauthorized",
    # Pagination
    "Paginator",
    # Resources
    "Connector",
    "ConnectorToken",
    "DirectoryService",
    "Group",
    "Policy",
    "ServerInfo",
    "ServiceAccount",
    "ServiceAccountToken",
    "Socket",
    "SocketConnector",
    "SocketType",
    "User",
]
