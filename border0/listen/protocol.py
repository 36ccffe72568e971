"""
Listener Protocol Definitions

Messages exchanged with the connector control plane, and the relay
handshake framing used on the data plane.

Control Plane:
The listener opens a bidirectional gRPC stream and sends Register; the
server answers Registered, then pushes DialRequest and Heartbeat messages.
The listener answers with DialResult and HeartbeatAck.

Message Format:
Each gRPC message is one JSON object with a "type" field.
Binary data is base64-encoded within JSON.

Data Plane:
1. Listener connects to the relay address from the DialRequest (TLS)
2. Listener sends the relay token: 4-byte big-endian length, then the token
3. Relay answers with one status byte (0x00 = OK)
4. The connection is then an opaque byte stream for the caller
"""

import base64
import json
import struct
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

PROTOCOL_VERSION = "1"

CONTROL_SERVICE = "border0.connector.v1.ListenerControl"
CONTROL_METHOD = "Control"
CONTROL_METHOD_PATH = f"/{CONTROL_SERVICE}/{CONTROL_METHOD}"


class MessageType(str, Enum):
    """Control-plane message kinds."""

    # Listener -> server
    REGISTER = "register"
    DIAL_RESULT = "dial_result"
    HEARTBEAT_ACK = "heartbeat_ack"

    # Server -> listener
    REGISTERED = "registered"
    DIAL_REQUEST = "dial_request"
    HEARTBEAT = "heartbeat"


class DialErrorReason(str, Enum):
    """Why a dial did not produce a stream. Sent back in DialResult."""

    CONNECT_FAILED = "connect_failed"
    HANDSHAKE_FAILED = "handshake_failed"
    RELAY_REJECTED = "relay_rejected"
    BACKPRESSURE = "backpressure"
    BUSY = "busy"
    TIMEOUT = "timeout"
    CLOSED = "closed"


@dataclass
class Register:
    """First message on a new stream."""

    socket_id: str
    protocol_version: str = PROTOCOL_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": MessageType.REGISTER.value,
            "socket_id": self.socket_id,
            "protocol_version": self.protocol_version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Register":
        return cls(
            socket_id=data["socket_id"],
            protocol_version=data.get("protocol_version", PROTOCOL_VERSION),
        )


@dataclass
class Registered:
    """Server accepted the registration and assigned a connector id."""

    connector_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": MessageType.REGISTERED.value,
            "connector_id": self.connector_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Registered":
        return cls(connector_id=data["connector_id"])


@dataclass
class DialRequest:
    """A user connection is waiting at a relay.

    The listener must connect to ``relay_address`` and present ``relay_token``.
    """

    request_id: str
    relay_address: str
    relay_token: bytes
    peer_hint: Optional[str] = None  # "host:port" of the end user, if known

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "type": MessageType.DIAL_REQUEST.value,
            "request_id": self.request_id,
            "relay_address": self.relay_address,
            "relay_token": base64.b64encode(self.relay_token).decode("ascii"),
        }
        if self.peer_hint:
            result["peer_hint"] = self.peer_hint
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DialRequest":
        return cls(
            request_id=data["request_id"],
            relay_address=data["relay_address"],
            relay_token=base64.b64decode(data["relay_token"]),
            peer_hint=data.get("peer_hint") or None,
        )


@dataclass
class DialResult:
    """Outcome of a DialRequest. ``error`` is empty on success."""

    request_id: str
    ok: bool
    error: str = ""

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "type": MessageType.DIAL_RESULT.value,
            "request_id": self.request_id,
            "ok": self.ok,
        }
        if self.error:
            result["error"] = self.error
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DialResult":
        return cls(
            request_id=data["request_id"],
            ok=bool(data.get("ok", False)),
            error=data.get("error", ""),
        )


@dataclass
class Heartbeat:
    seq: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"type": MessageType.HEARTBEAT.value, "seq": self.seq}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Heartbeat":
        return cls(seq=int(data.get("seq", 0)))


@dataclass
class HeartbeatAck:
    seq: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"type": MessageType.HEARTBEAT_ACK.value, "seq": self.seq}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HeartbeatAck":
        return cls(seq=int(data.get("seq", 0)))


Message = Union[Register, Registered, DialRequest, DialResult, Heartbeat, HeartbeatAck]

_MESSAGE_TYPES = {
    MessageType.REGISTER.value: Register,
    MessageType.REGISTERED.value: Registered,
    MessageType.DIAL_REQUEST.value: DialRequest,
    MessageType.DIAL_RESULT.value: DialResult,
    MessageType.HEARTBEAT.value: Heartbeat,
    MessageType.HEARTBEAT_ACK.value: HeartbeatAck,
}


def encode_message(msg: Message) -> bytes:
    """Encode a message for transmission (gRPC request serializer)."""
    return json.dumps(msg.to_dict()).encode("utf-8")


def decode_message(data: bytes) -> Dict[str, Any]:
    """Decode a message from bytes (gRPC response deserializer)."""
    return json.loads(data.decode("utf-8"))


def parse_message(data: Dict[str, Any]) -> Optional[Message]:
    """Parse a decoded message.

    Returns the message object, or None if the type is unknown or the
    message is malformed.
    """
    cls = _MESSAGE_TYPES.get(data.get("type"))
    if cls is None:
        return None
    try:
        return cls.from_dict(data)
    except (KeyError, TypeError, ValueError):
        return None


# Relay handshake framing
RELAY_TOKEN_HEADER = struct.Struct("!I")
RELAY_STATUS_OK = 0x00
MAX_RELAY_TOKEN_SIZE = 64 * 1024


def frame_relay_token(token: bytes) -> bytes:
    """Length-prefix a relay token for the first write on a relay connection."""
    if len(token) > MAX_RELAY_TOKEN_SIZE:
        raise ValueError(f"relay token too large: {len(token)} bytes")
    return RELAY_TOKEN_HEADER.pack(len(token)) + token
