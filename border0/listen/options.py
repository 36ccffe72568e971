"""
Listener configuration.

ListenerConfig is built once from keyword options plus environment
fallbacks and never mutated afterwards.
"""

import os
from dataclasses import dataclass, field
from typing import Any, FrozenSet, Iterable, Optional

from ..client.backoff import jittered_backoff
from ..client.types import SocketType
from ..errors import ConfigError

ENV_AUTH_TOKEN = "BORDER0_AUTH_TOKEN"
ENV_SOCKET_NAME = "BORDER0_SOCKET_NAME"
ENV_CONTROL_ENDPOINT = "BORDER0_CONTROL_ENDPOINT"

DEFAULT_CONTROL_ENDPOINT = "connector-control.border0.com:443"
DEFAULT_SOCKET_TYPE = SocketType.HTTP.value
DEFAULT_ACCEPT_QUEUE_DEPTH = 64
DEFAULT_REGISTER_TIMEOUT = 15.0
DEFAULT_HEARTBEAT_TIMEOUT = 30.0
DEFAULT_DIAL_TIMEOUT = 20.0
DEFAULT_DRAIN_TIMEOUT = 5.0
DEFAULT_STARTUP_TIMEOUT = 60.0


@dataclass(frozen=True)
class BackoffConfig:
    """Reconnect backoff: min(base * 2**attempt, cap), jittered by +/-50%."""

    base: float = 1.0
    cap: float = 30.0

    def __post_init__(self):
        if self.base <= 0:
            raise ConfigError(f"backoff base must be positive, got {self.base}")
        if self.cap < self.base:
            raise ConfigError(f"backoff cap {self.cap} is below base {self.base}")

    def delay(self, attempt: int) -> float:
        return jittered_backoff(self.base, self.cap, attempt)


@dataclass(frozen=True)
class ListenerConfig:
    """Everything a Listener needs to start.

    Use ListenerConfig.from_options() to apply environment fallbacks.
    """

    socket_name: str
    auth_token: str
    socket_type: str = DEFAULT_SOCKET_TYPE
    policy_names: FrozenSet[str] = frozenset()
    control_endpoint: str = DEFAULT_CONTROL_ENDPOINT
    insecure_transport: bool = False
    accept_queue_depth: int = DEFAULT_ACCEPT_QUEUE_DEPTH
    backoff: BackoffConfig = field(default_factory=BackoffConfig)
    register_timeout: float = DEFAULT_REGISTER_TIMEOUT
    heartbeat_timeout: float = DEFAULT_HEARTBEAT_TIMEOUT
    dial_timeout: float = DEFAULT_DIAL_TIMEOUT
    drain_timeout: float = DEFAULT_DRAIN_TIMEOUT
    startup_timeout: Optional[float] = DEFAULT_STARTUP_TIMEOUT
    api_base_url: Optional[str] = None

    def __post_init__(self):
        if not self.socket_name:
            raise ConfigError("socket name is required")
        if not self.auth_token:
            raise ConfigError(
                f"auth token is required (pass auth_token or set {ENV_AUTH_TOKEN})"
            )
        valid_types = [t.value for t in SocketType]
        if self.socket_type not in valid_types:
            raise ConfigError(
                f"invalid socket type {self.socket_type!r}, must be one of {valid_types}"
            )
        if isinstance(self.accept_queue_depth, bool) or not isinstance(
            self.accept_queue_depth, int
        ):
            raise ConfigError("accept queue depth must be an integer")
        if self.accept_queue_depth <= 0:
            raise ConfigError(
                f"accept queue depth must be positive, got {self.accept_queue_depth}"
            )
        if ":" not in self.control_endpoint:
            raise ConfigError(
                f"control endpoint must be host:port, got {self.control_endpoint!r}"
            )
        for name in ("register_timeout", "heartbeat_timeout", "dial_timeout", "drain_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        if self.startup_timeout is not None and self.startup_timeout <= 0:
            raise ConfigError("startup_timeout must be positive")

    @property
    def dial_concurrency(self) -> int:
        """Maximum number of dials in flight at once."""
        return self.accept_queue_depth * 2

    @classmethod
    def from_options(
        cls,
        socket_name: Optional[str] = None,
        socket_type: Optional[str] = None,
        auth_token: Optional[str] = None,
        policy_names: Optional[Iterable[str]] = None,
        control_endpoint: Optional[str] = None,
        **kwargs: Any,
    ) -> "ListenerConfig":
        """Build a config, falling back to the environment for unset options.

        The auth token comes from the option, else $BORDER0_AUTH_TOKEN. The
        socket name and control endpoint likewise fall back to
        $BORDER0_SOCKET_NAME and $BORDER0_CONTROL_ENDPOINT.

        Raises:
            ConfigError: On missing or invalid options, including unknown ones.
        """
        if isinstance(policy_names, str):
            raise ConfigError("policy names must be a collection of strings")

        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(kwargs) - known)
        if unknown:
            raise ConfigError(f"unknown listener options: {', '.join(unknown)}")

        if isinstance(kwargs.get("backoff"), dict):
            kwargs["backoff"] = BackoffConfig(**kwargs["backoff"])

        return cls(
            socket_name=socket_name or os.environ.get(ENV_SOCKET_NAME, ""),
            socket_type=socket_type or DEFAULT_SOCKET_TYPE,
            auth_token=auth_token or os.environ.get(ENV_AUTH_TOKEN, ""),
            policy_names=frozenset(policy_names or ()),
            control_endpoint=(
                control_endpoint
                or os.environ.get(ENV_CONTROL_ENDPOINT)
                or DEFAULT_CONTROL_ENDPOINT
            ),
            **kwargs,
        )
