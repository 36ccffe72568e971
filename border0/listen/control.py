"""
Control Plane Client

Keeps one bidirectional gRPC stream open to the connector control plane
for the lifetime of a listener:

1. Open the stream (authenticated with ControlStreamCredentials)
2. Send Register{socket_id}, wait for Registered{connector_id}
3. Read DialRequest / Heartbeat messages in arrival order, hand dial
   requests to the listener and acknowledge heartbeats
4. On any stream error, back off and go back to 1

Fatal statuses (bad credentials, socket gone, unsupported protocol) stop
the loop and are reported to the listener instead of being retried.
"""

import logging
import queue
import threading
from enum import Enum
from typing import Callable, Optional

import grpc

from ..errors import (
    AuthError,
    Border0Error,
    NotFoundError,
    ProtocolVersionError,
    TransientNetworkError,
    is_fatal,
)
from .credentials import ControlStreamCredentials
from .facade import SocketRef
from .options import ListenerConfig
from .protocol import (
    CONTROL_METHOD_PATH,
    DialRequest,
    Heartbeat,
    HeartbeatAck,
    Message,
    Register,
    Registered,
    decode_message,
    encode_message,
    parse_message,
)

logger = logging.getLogger(__name__)

# Ends the request iterator handed to gRPC (half-closes the stream).
_CLOSE = object()
# Pushed by the reader thread when the server ends the stream.
_EOF = object()

# Seconds to wait for the control thread when stopping.
_STOP_JOIN_TIMEOUT = 5.0

_AUTH_CODES = (grpc.StatusCode.UNAUTHENTICATED, grpc.StatusCode.PERMISSION_DENIED)
_VERSION_CODES = (grpc.StatusCode.UNIMPLEMENTED, grpc.StatusCode.FAILED_PRECONDITION)


class SessionState(str, Enum):
    """Control session connection state."""

    CONNECTING = "connecting"
    RUNNING = "running"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


def error_from_rpc(error: grpc.RpcError) -> Border0Error:
    """Map a failed gRPC call to an SDK error."""
    code = error.code() if callable(getattr(error, "code", None)) else None
    details = error.details() if callable(getattr(error, "details", None)) else str(error)

    if code in _AUTH_CODES:
        return AuthError(f"control plane rejected credentials: {details}")
    if code == grpc.StatusCode.NOT_FOUND:
        return NotFoundError(f"control plane does not know the socket: {details}")
    if code in _VERSION_CODES:
        return ProtocolVersionError(f"control plane protocol mismatch: {details}")
    name = code.name if code is not None else "UNKNOWN"
    return TransientNetworkError(f"control stream failed: {name}: {details}")


class ControlPlaneClient:
    """Maintains the control session of one listener.

    Args:
        config: Listener configuration.
        socket: The socket being served.
        credentials: Credentials sent with every stream.
        on_dial: Called (on the control thread) for every DialRequest. Must
            hand the work off and return quickly.
        on_fatal: Called once if the session ends with a fatal error.
    """

    def __init__(
        self,
        config: ListenerConfig,
        socket: SocketRef,
        credentials: ControlStreamCredentials,
        on_dial: Callable[[DialRequest], None],
        on_fatal: Optional[Callable[[Border0Error], None]] = None,
    ):
        self.config = config
        self.socket = socket
        self.credentials = credentials
        self.on_dial = on_dial
        self.on_fatal = on_fatal

        self.connector_id: Optional[str] = None
        self.error: Optional[Border0Error] = None
        self.sessions = 0  # number of successful registrations

        self._state = SessionState.CONNECTING
        self._stop = threading.Event()
        self._ready = threading.Event()  # first registration, or loop exit
        self._done = threading.Event()
        self._lock = threading.Lock()
        self._call = None
        self._outbound: Optional[queue.Queue] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state == SessionState.RUNNING

    def start(self):
        """Start the control thread."""
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name=f"border0-control-{self.socket.name}",
        )
        self._thread.start()

    def wait_ready(self, timeout: Optional[float] = None) -> bool:
        """Block until the first registration succeeded.

        Returns:
            True once registered, False if ``timeout`` elapsed first.

        Raises:
            Border0Error: The fatal error that ended the session.
            TransientNetworkError: If the client was stopped before registering.
        """
        if not self._ready.wait(timeout):
            return False
        if self.sessions > 0:
            return True
        if self.error is not None:
            raise self.error
        raise TransientNetworkError("control client stopped before registering")

    def stop(self, timeout: float = _STOP_JOIN_TIMEOUT):
        """Stop the session and the reconnect loop. Idempotent."""
        self._stop.set()
        with self._lock:
            call = self._call
        if call is not None:
            call.cancel()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("Control thread did not stop in time")

    def send(self, msg: Message) -> bool:
        """Queue a message on the current stream.

        Returns:
            False if no stream is registered right now (the message is dropped).
        """
        with self._lock:
            outbound = self._outbound
            if outbound is None:
                logger.warning(f"Control stream not ready, dropping {type(msg).__name__}")
                return False
            outbound.put(msg)
            return True

    # -- Internal: reconnect loop ----------------------------------------------

    def _run(self):
        attempt = 0
        try:
            while not self._stop.is_set():
                registered_before = self.sessions
                try:
                    self._session()
                    error = TransientNetworkError("control stream closed by server")
                except Border0Error as e:
                    if is_fatal(e):
                        raise
                    error = e
                except grpc.RpcError as e:
                    # raised by the channel itself rather than by the stream
                    translated = error_from_rpc(e)
                    if is_fatal(translated):
                        raise translated from e
                    error = translated

                if self._stop.is_set():
                    break
                if self.sessions > registered_before:
                    attempt = 0

                self._state = SessionState.RECONNECTING
                delay = self.config.backoff.delay(attempt)
                logger.warning(f"{error}; reconnecting in {delay:.2f}s (attempt {attempt + 1})")
                attempt += 1
                if self._stop.wait(delay):
                    break
        except Border0Error as e:
            logger.error(f"Control session for socket {self.socket.name} failed: {e}")
            self.error = e
            if self.on_fatal is not None:
                self.on_fatal(e)
        finally:
            self._state = SessionState.CLOSED
            self._ready.set()
            self._done.set()
            logger.debug(f"Control loop ended for socket {self.socket.name}")

    def _open_channel(self) -> grpc.Channel:
        target = self.config.control_endpoint
        if self.credentials.requires_transport_security():
            channel_credentials = grpc.composite_channel_credentials(
                grpc.ssl_channel_credentials(),
                grpc.metadata_call_credentials(self.credentials),
            )
            return grpc.secure_channel(target, channel_credentials)
        return grpc.insecure_channel(target)

    def _session(self):
        """Run one stream from open to failure. Always raises or returns on EOF."""
        channel = self._open_channel()
        outbound: queue.Queue = queue.Queue()
        inbound: queue.Queue = queue.Queue()
        call = None
        try:
            stream = channel.stream_stream(
                CONTROL_METHOD_PATH,
                request_serializer=encode_message,
                response_deserializer=decode_message,
            )
            metadata = None
            if not self.credentials.requires_transport_security():
                metadata = self.credentials.metadata_pairs()
            call = stream(iter(outbound.get, _CLOSE), metadata=metadata)
            with self._lock:
                self._call = call
            if self._stop.is_set():
                call.cancel()

            reader = threading.Thread(
                target=self._read,
                args=(call, inbound),
                daemon=True,
                name=f"border0-control-reader-{self.socket.name}",
            )
            reader.start()

            logger.debug(f"Registering socket {self.socket.socket_id} with {self.config.control_endpoint}")
            outbound.put(Register(socket_id=str(self.socket.socket_id)))

            msg = self._next(inbound, call, self.config.register_timeout, "registration reply")
            if not isinstance(msg, Registered):
                raise TransientNetworkError(
                    f"expected registered, got {type(msg).__name__}"
                )

            self.connector_id = msg.connector_id
            self.credentials = self.credentials.with_connector_id(msg.connector_id)
            with self._lock:
                self._outbound = outbound
            self._state = SessionState.RUNNING
            self.sessions += 1
            self._ready.set()
            logger.info(
                f"Listener for socket {self.socket.name} registered "
                f"(connector {msg.connector_id})"
            )

            while not self._stop.is_set():
                msg = self._next(inbound, call, self.config.heartbeat_timeout, "heartbeat")
                if isinstance(msg, DialRequest):
                    logger.debug(f"Dial request {msg.request_id} via {msg.relay_address}")
                    self.on_dial(msg)
                elif isinstance(msg, Heartbeat):
                    outbound.put(HeartbeatAck(seq=msg.seq))
                else:
                    logger.debug(f"Ignoring unexpected {type(msg).__name__} message")
        finally:
            with self._lock:
                self._outbound = None
                self._call = None
            outbound.put(_CLOSE)
            if call is not None:
                call.cancel()
            channel.close()

    def _next(self, inbound: queue.Queue, call, timeout: float, what: str) -> Message:
        try:
            item = inbound.get(timeout=timeout)
        except queue.Empty:
            call.cancel()
            raise TransientNetworkError(f"no {what} within {timeout:g}s")
        if item is _EOF:
            raise TransientNetworkError("control stream closed by server")
        if isinstance(item, BaseException):
            raise item
        return item

    def _read(self, call, inbound: queue.Queue):
        """Reader thread: move messages from the stream onto ``inbound``."""
        try:
            for raw in call:
                msg = parse_message(raw) if isinstance(raw, dict) else None
                if msg is None:
                    logger.warning(f"Ignoring malformed control message: {raw!r}")
                    continue
                inbound.put(msg)
            inbound.put(_EOF)
        except grpc.RpcError as e:
            inbound.put(error_from_rpc(e))
        except ValueError as e:
            # undecodable payload
            inbound.put(TransientNetworkError(f"invalid control message: {e}"))
