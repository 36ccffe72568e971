"""
Socket and policy setup done once before a listener connects.

Both operations are idempotent: running them on every startup converges the
socket to the configured type and policy set.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Iterable, Tuple

from ..client.api import APIClient
from ..client.http_client import conflict, not_found, unauthorized
from ..client.types import Socket, SocketType
from ..errors import APIError, AuthError, ConflictError, NotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SocketRef:
    """The socket a listener is bound to."""

    socket_id: uuid.UUID
    name: str
    type: SocketType


def _reraise(error: APIError, what: str):
    """Raise the SDK error matching an API error. Call from an except block."""
    if unauthorized(error):
        raise AuthError(f"{what}: credentials rejected: {error.message}") from error
    if not_found(error):
        raise NotFoundError(f"{what}: {error.message}") from error
    if conflict(error):
        raise ConflictError(f"{what}: {error.message}") from error
    raise error


def _to_ref(socket: Socket) -> SocketRef:
    try:
        socket_type = SocketType(socket.socket_type)
    except ValueError:
        raise NotFoundError(
            f"socket [{socket.name}] has type {socket.socket_type!r}, "
            f"which a listener cannot serve"
        )
    return SocketRef(
        socket_id=uuid.UUID(socket.socket_id), name=socket.name, type=socket_type
    )


def ensure_socket(api: APIClient, name: str, socket_type: str) -> Tuple[SocketRef, bool, Socket]:
    """Fetch the socket named ``name``, creating it if it does not exist.

    Returns:
        (socket ref, whether it was created now, the full API socket)

    Raises:
        AuthError, NotFoundError, ConflictError, APIError
    """
    try:
        socket = api.socket(name)
        logger.debug(f"Found socket {name} ({socket.socket_id})")
        return _to_ref(socket), False, socket
    except APIError as e:
        if not not_found(e):
            _reraise(e, f"failed to fetch socket [{name}]")

    logger.info(f"Socket {name} not found, creating it as {socket_type}")
    try:
        socket = api.create_socket(Socket(name=name, socket_type=socket_type))
        return _to_ref(socket), True, socket
    except APIError as e:
        if not conflict(e):
            _reraise(e, f"failed to create socket [{name}]")

    # created concurrently by someone else between our fetch and create
    logger.info(f"Socket {name} was created concurrently, fetching it again")
    try:
        socket = api.socket(name)
    except APIError as e:
        _reraise(e, f"failed to fetch socket [{name}]")
    return _to_ref(socket), False, socket


def attach_policies(api: APIClient, socket: Socket, names: Iterable[str]):
    """Make the policies attached to ``socket`` match ``names``.

    Policies already attached are left alone, missing ones are attached and
    attached ones no longer named are detached.

    Raises:
        NotFoundError: If a named policy does not exist.
    """
    wanted = sorted(set(names))
    attached = {p.name: p for p in socket.policies}

    if not wanted and not attached:
        return

    to_add = [n for n in wanted if n not in attached]
    to_remove = [n for n in sorted(attached) if n not in wanted]

    try:
        if to_add:
            policies = api.policies_by_names(*to_add)
            api.attach_policies_to_socket([p.id for p in policies], socket.socket_id)
            logger.info(f"Attached policies {to_add} to socket {socket.name}")
        if to_remove:
            api.remove_policies_from_socket(
                [attached[n].id for n in to_remove], socket.socket_id
            )
            logger.info(f"Detached policies {to_remove} from socket {socket.name}")
    except APIError as e:
        _reraise(e, f"failed to update policies of socket [{socket.name}]")
