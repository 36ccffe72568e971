"""
Listener

The embedding interface: ``listen()`` returns a Listener once the socket
exists, its policies are attached and the control plane has registered
us. User code then calls ``accept()`` in a loop, exactly like a TCP
server socket, and ``close()`` when done.

Startup is synchronous. Either a ready Listener comes back or an error is
raised with nothing left running.
"""

import logging
import ssl
import threading
from typing import Iterator, List, Optional

from ..client.api import APIClient
from ..errors import Border0Error, QueueClosedError, TransientNetworkError
from .control import ControlPlaneClient, SessionState
from .credentials import ControlStreamCredentials
from .facade import SocketRef, attach_policies, ensure_socket
from .options import ListenerConfig
from .protocol import DialRequest, DialResult
from .queue import AcceptQueue
from .relay import InboundStream, ListenerAddr, RelayDialer

logger = logging.getLogger(__name__)


class Listener:
    """Accepts user connections arriving through Border0 relays.

    Not created directly; use ``border0.listen()``.
    """

    def __init__(
        self,
        config: ListenerConfig,
        socket: SocketRef,
        created_socket: bool = False,
        ssl_context: Optional[ssl.SSLContext] = None,
    ):
        self.config = config
        self.socket = socket
        self.created_socket = created_socket

        self._cancel = threading.Event()
        self._close_lock = threading.Lock()
        self._closed = False
        self._addr = ListenerAddr(name=socket.name, type=socket.type.value)

        self._queue: AcceptQueue[InboundStream] = AcceptQueue(config.accept_queue_depth)
        self._dialer = RelayDialer(
            accept_queue=self._queue,
            local_addr=self._addr,
            report=self._report,
            cancel=self._cancel,
            concurrency=config.dial_concurrency,
            dial_timeout=config.dial_timeout,
            insecure_transport=config.insecure_transport,
            ssl_context=ssl_context,
        )
        self._control = ControlPlaneClient(
            config=config,
            socket=socket,
            credentials=ControlStreamCredentials(
                token=config.auth_token,
                insecure_transport=config.insecure_transport,
            ),
            on_dial=self._on_dial,
            on_fatal=self._on_fatal,
        )

    # -- Public interface ------------------------------------------------------

    def accept(self, timeout: Optional[float] = None) -> InboundStream:
        """Wait for the next user connection.

        Args:
            timeout: Seconds to wait. None waits until a stream arrives or
                the listener closes.

        Raises:
            QueueClosedError: After close().
            Border0Error: The fatal error that closed the listener.
            TimeoutError: If ``timeout`` elapsed first.
        """
        return self._queue.get(timeout=timeout)

    def close(self):
        """Stop accepting and release everything. Idempotent."""
        self._shutdown(None)

    def addr(self) -> ListenerAddr:
        return self._addr

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def state(self) -> SessionState:
        """State of the control session."""
        return self._control.state

    @property
    def connector_id(self) -> Optional[str]:
        return self._control.connector_id

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def __iter__(self) -> Iterator[InboundStream]:
        """Yield accepted streams until the listener is closed."""
        while True:
            try:
                yield self.accept()
            except QueueClosedError:
                return

    def __repr__(self):
        state = "closed" if self._closed else self._control.state.value
        return f"<Listener {self._addr} {state}>"

    # -- Lifecycle -------------------------------------------------------------

    def _start(self):
        """Start the control session and wait for the first registration."""
        self._control.start()
        try:
            ready = self._control.wait_ready(self.config.startup_timeout)
        except Border0Error:
            self.close()
            raise
        if not ready:
            self.close()
            raise TransientNetworkError(
                f"control plane at {self.config.control_endpoint} did not register "
                f"socket {self.socket.name} within {self.config.startup_timeout:g}s"
            )
        logger.info(f"Listening on {self._addr}")

    def _shutdown(self, error: Optional[Border0Error]):
        with self._close_lock:
            if self._closed:
                return
            self._closed = True

        if error is None:
            logger.info(f"Closing listener {self._addr}")
        else:
            logger.error(f"Closing listener {self._addr}: {error}")

        # nothing is delivered once close has started; late dials see a closed queue
        self._cancel.set()
        leftovers: List[InboundStream] = self._queue.close(error)
        for stream in leftovers:
            stream.close()
        if leftovers:
            logger.debug(f"Closed {len(leftovers)} stream(s) nobody accepted")

        self._control.stop()
        self._dialer.abort_all()
        if not self._dialer.drain(self.config.drain_timeout):
            self._dialer.abort_all(force=True)

    # -- Callbacks -------------------------------------------------------------

    def _on_dial(self, request: DialRequest):
        self._dialer.submit(request)

    def _report(self, result: DialResult) -> bool:
        return self._control.send(result)

    def _on_fatal(self, error: Border0Error):
        self._shutdown(error)


def listen(api_client: Optional[APIClient] = None, ssl_context: Optional[ssl.SSLContext] = None, **options) -> Listener:
    """Start a listener for a Border0 socket.

    Args:
        api_client: Management API client to set the socket up with. One is
            created from the auth token (and ``api_base_url``) if not given.
        ssl_context: TLS settings for relay connections.
        **options: ListenerConfig options: socket_name, socket_type,
            auth_token, policy_names, control_endpoint, accept_queue_depth,
            insecure_transport, timeouts and backoff.

    Returns:
        A registered, ready Listener.

    Raises:
        ConfigError, AuthError, NotFoundError, ConflictError,
        ProtocolVersionError, TransientNetworkError, APIError
    """
    config = ListenerConfig.from_options(**options)

    owns_client = api_client is None
    if owns_client:
        api_client = APIClient(auth_token=config.auth_token, base_url=config.api_base_url)
    try:
        socket, created, full_socket = ensure_socket(api_client, config.socket_name, config.socket_type)
        attach_policies(api_client, full_socket, config.policy_names)
    finally:
        if owns_client:
            api_client.close()

    if created:
        logger.info(f"Created socket {socket.name} ({socket.socket_id})")

    listener = Listener(config, socket, created_socket=created, ssl_context=ssl_context)
    listener._start()
    return listener
