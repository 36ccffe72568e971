"""
Border0 Listener

Usage:
    from border0.listen import listen

    with listen(socket_name="my-app", policy_names=["my-policy"]) as lst:
        for stream in lst:
            handle(stream)
"""

from .control import ControlPlaneClient, SessionState
from .credentials import ControlStreamCredentials
from .facade import SocketRef, attach_policies, ensure_socket
from .listener import Listener, listen
from .options import BackoffConfig, ListenerConfig
from .protocol import (
    DialErrorReason,
    DialRequest,
    DialResult,
    Heartbeat,
    HeartbeatAck,
    Register,
    Registered,
)
from .queue import AcceptQueue
from .relay import InboundStream, ListenerAddr, RelayDialer

__all__ = [
    # Entry point
    "listen",
    "Listener",
    "ListenerAddr",
    "InboundStream",
    # Configuration
    "ListenerConfig",
    "BackoffConfig",
    "ControlStreamCredentials",
    # Components
    "AcceptQueue",
    "ControlPlaneClient",
    "RelayDialer",
    "SessionState",
    "SocketRef",
    "attach_policies",
    "ensure_socket",
    # Protocol
    "DialErrorReason",
    "DialRequest",
    "DialResult",
    "Heartbeat",
    "HeartbeatAck",
    "Register",
    "Registered",
]
