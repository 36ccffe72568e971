"""
Border0 API resource types.

Each resource is a dataclass with to_dict() producing the request body and
from_dict() parsing the response body. Unknown response fields are ignored.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class SocketType(str, Enum):
    """Socket types a listener can be bound to."""

    HTTP = "http"
    SSH = "ssh"
    DATABASE = "database"
    TLS = "tls"


# Socket types the API knows about but a listener cannot serve.
OTHER_SOCKET_TYPES = ("tcp", "vnc", "rdp")


@dataclass
class Policy:
    """An access policy. ``policy_data`` follows the API's policy schema as-is."""

    name: str
    id: str = ""
    description: str = ""
    org_id: str = ""
    org_wide: bool = False
    policy_data: Dict[str, Any] = field(default_factory=dict)
    created_at: str = ""
    socket_ids: List[str] = field(default_factory=list)
    deleted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "name": self.name,
            "description": self.description,
            "org_wide": self.org_wide,
            "policy_data": self.policy_data,
        }
        if self.id:
            result["id"] = self.id
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Policy":
        return cls(
            name=data.get("name", ""),
            id=data.get("id", ""),
            description=data.get("description") or "",
            org_id=data.get("org_id") or "",
            org_wide=bool(data.get("org_wide", False)),
            policy_data=data.get("policy_data") or {},
            created_at=data.get("created_at") or "",
            socket_ids=list(data.get("socket_ids") or []),
            deleted=bool(data.get("deleted", False)),
        )


@dataclass
class Socket:
    """A socket in a Border0 organization."""

    name: str
    socket_type: str = SocketType.HTTP.value
    socket_id: str = ""
    description: str = ""
    upstream_type: str = ""
    upstream_http_hostname: str = ""
    recording_enabled: bool = False
    connector_authentication_enabled: bool = False
    tags: Dict[str, str] = field(default_factory=dict)
    connector_id: str = ""
    upstream_configuration: Optional[Dict[str, Any]] = None
    policies: List[Policy] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "name": self.name,
            "socket_type": self.socket_type,
            "recording_enabled": self.recording_enabled,
            "connector_authentication_enabled": self.connector_authentication_enabled,
        }
        if self.socket_id:
            result["socket_id"] = self.socket_id
        for key in ("description", "upstream_type", "upstream_http_hostname", "connector_id"):
            value = getattr(self, key)
            if value:
                result[key] = value
        if self.tags:
            result["tags"] = dict(self.tags)
        if self.upstream_configuration is not None:
            result["upstream_configuration"] = self.upstream_configuration
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Socket":
        return cls(
            name=data.get("name", ""),
            socket_type=data.get("socket_type", ""),
            socket_id=data.get("socket_id", ""),
            description=data.get("description") or "",
            upstream_type=data.get("upstream_type") or "",
            upstream_http_hostname=data.get("upstream_http_hostname") or "",
            recording_enabled=bool(data.get("recording_enabled", False)),
            connector_authentication_enabled=bool(
                data.get("connector_authentication_enabled", False)
            ),
            tags=dict(data.get("tags") or {}),
            connector_id=data.get("connector_id") or "",
            upstream_configuration=data.get("upstream_configuration"),
            policies=[Policy.from_dict(p) for p in data.get("policies") or []],
        )


@dataclass
class SocketConnector:
    """A connector linked to a socket."""

    connector_id: str
    connector_name: str = ""
    socket_id: str = ""
    id: int = 0
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SocketConnector":
        return cls(
            connector_id=data.get("connector_id", ""),
            connector_name=data.get("connector_name", ""),
            socket_id=data.get("socket_id", ""),
            id=int(data.get("id") or 0),
            created_at=data.get("created_at") or "",
            updated_at=data.get("updated_at") or "",
        )


@dataclass
class Connector:
    """A connector in a Border0 organization."""

    name: str
    description: str = ""
    connector_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        result = {"name": self.name}
        if self.description:
            result["description"] = self.description
        if self.connector_id:
            result["connector_id"] = self.connector_id
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Connector":
        return cls(
            name=data.get("name", ""),
            description=data.get("description") or "",
            connector_id=data.get("connector_id", ""),
        )


@dataclass
class ConnectorToken:
    """A token a connector authenticates with. No ``expires_at`` means it never expires."""

    connector_id: str
    name: str
    expires_at: str = ""
    id: str = ""
    token: str = ""
    created_by: str = ""
    created_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        result = {"connector_id": self.connector_id, "name": self.name}
        if self.expires_at:
            result["expires_at"] = self.expires_at
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConnectorToken":
        return cls(
            connector_id=data.get("connector_id", ""),
            name=data.get("name", ""),
            expires_at=data.get("expires_at") or "",
            id=data.get("id", ""),
            token=data.get("token", ""),
            created_by=data.get("created_by") or "",
            created_at=data.get("created_at") or "",
        )


@dataclass
class DirectoryService:
    """The directory a synced user comes from."""

    display_name: str = ""
    service_type: str = ""
    id: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DirectoryService":
        return cls(
            display_name=data.get("display_name", ""),
            service_type=data.get("service_type", ""),
            id=data.get("id", ""),
        )


@dataclass
class User:
    """A user of a Border0 organization. Email is unique within the organization."""

    email: str
    display_name: str = ""
    role: str = ""
    id: str = ""
    user_type: str = ""
    directory_service: Optional[DirectoryService] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {"email": self.email, "display_name": self.display_name, "role": self.role}
        if self.id:
            result["id"] = self.id
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "User":
        directory = data.get("directory_service")
        return cls(
            email=data.get("email", ""),
            display_name=data.get("display_name", ""),
            role=data.get("role") or "",
            id=data.get("id", ""),
            user_type=data.get("user_type") or "",
            directory_service=DirectoryService.from_dict(directory) if directory else None,
        )


@dataclass
class Group:
    """A user group in a Border0 organization."""

    display_name: str
    id: str = ""
    group_type: str = ""
    members: List[User] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        result = {"display_name": self.display_name}
        if self.id:
            result["id"] = self.id
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Group":
        return cls(
            display_name=data.get("display_name", ""),
            id=data.get("id", ""),
            group_type=data.get("group_type") or "",
            members=[User.from_dict(u) for u in data.get("members") or []],
        )


@dataclass
class ServiceAccount:
    """A non-human identity. The name is a slug, unique and immutable."""

    name: str
    description: str = ""
    role: str = ""
    active: bool = True
    id: str = ""
    created_at: str = ""
    updated_at: str = ""
    last_seen_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "role": self.role,
            "active": self.active,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServiceAccount":
        return cls(
            name=data.get("name", ""),
            description=data.get("description") or "",
            role=data.get("role") or "",
            active=bool(data.get("active", False)),
            id=data.get("service_account_id", ""),
            created_at=data.get("created_at") or "",
            updated_at=data.get("updated_at") or "",
            last_seen_at=data.get("last_seen_at") or "",
        )


@dataclass
class ServiceAccountToken:
    """A service account token. No ``expires_at`` means it never expires."""

    name: str
    expires_at: str = ""
    id: str = ""
    token: str = ""
    created_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        result = {"name": self.name}
        if self.expires_at:
            result["expires_at"] = self.expires_at
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServiceAccountToken":
        return cls(
            name=data.get("name", ""),
            expires_at=data.get("expires_at") or "",
            id=data.get("id", ""),
            token=data.get("token", ""),
            created_at=data.get("created_at") or "",
        )


@dataclass
class ServerInfo:
    """API server properties.

    Attributes:
        rx_after_tx_delay_ms: How long after a write the API may still serve
            stale reads, in milliseconds. 0 if the server does not say.
    """

    rx_after_tx_delay_ms: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServerInfo":
        consistency = data.get("data_consistency") or {}
        return cls(rx_after_tx_delay_ms=int(consistency.get("rx_after_tx_delay_ms") or 0))
