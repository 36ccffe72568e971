"""
Relay Dialer

Turns DialRequests into InboundStreams. Each dial runs on its own thread:

1. Take a slot in the dial semaphore
2. Connect to the relay (TLS unless insecure transport is enabled)
3. Send the framed relay token, read the one-byte status
4. Enqueue the stream, reporting DialResult{ok} as it becomes visible
5. On failure close the connection and report DialResult{error}

Every step is bounded by the per-dial budget, and every blocking socket
call is aborted when the listener closes.
"""

import logging
import socket
import ssl
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from ..errors import DialError, QueueClosedError
from ..lib.sem import Semaphore
from .protocol import (
    RELAY_STATUS_OK,
    DialErrorReason,
    DialRequest,
    DialResult,
    frame_relay_token,
)
from .queue import AcceptQueue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ListenerAddr:
    """Synthetic address of a listener: the socket name, not a TCP address."""

    name: str
    type: str
    network: str = "border0"

    def __str__(self):
        return f"{self.network}://{self.name} ({self.type})"


def split_host_port(address: str) -> Tuple[str, int]:
    """Split "host:port" (IPv6 hosts in brackets)."""
    host, sep, port = address.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ValueError(f"invalid address {address!r}, expected host:port")
    return host.strip("[]"), int(port)


class InboundStream:
    """One accepted user connection.

    Behaves like a connected socket (recv, sendall, makefile, shutdown, ...)
    and is closed by whoever accepted it.
    """

    def __init__(
        self,
        sock: socket.socket,
        local_addr: ListenerAddr,
        remote_addr: Tuple[str, int],
        request_id: str = "",
    ):
        self._sock = sock
        self.local_addr = local_addr
        self.remote_addr = remote_addr
        self.request_id = request_id
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def recv(self, bufsize: int, flags: int = 0) -> bytes:
        return self._sock.recv(bufsize, flags)

    def recv_into(self, buffer, nbytes: int = 0, flags: int = 0) -> int:
        return self._sock.recv_into(buffer, nbytes, flags)

    def send(self, data: bytes, flags: int = 0) -> int:
        return self._sock.send(data, flags)

    def sendall(self, data: bytes, flags: int = 0):
        self._sock.sendall(data, flags)

    def makefile(self, *args, **kwargs):
        return self._sock.makefile(*args, **kwargs)

    def settimeout(self, timeout: Optional[float]):
        self._sock.settimeout(timeout)

    def gettimeout(self) -> Optional[float]:
        return self._sock.gettimeout()

    def setsockopt(self, *args):
        self._sock.setsockopt(*args)

    def fileno(self) -> int:
        return self._sock.fileno()

    def getpeername(self) -> Tuple[str, int]:
        return self.remote_addr

    def getsockname(self) -> ListenerAddr:
        return self.local_addr

    def shutdown(self, how: int = socket.SHUT_RDWR):
        self._sock.shutdown(how)

    def close(self):
        if self._closed:
            return
        self._closed = True
        try:
            self._sock.close()
        except OSError as e:
            logger.debug(f"Error closing stream {self.request_id}: {e}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def __repr__(self):
        state = "closed" if self._closed else "open"
        return f"<InboundStream {self.request_id} {self.remote_addr} -> {self.local_addr} {state}>"


class RelayDialer:
    """Dials relays for DialRequests and feeds the accept queue.

    Args:
        accept_queue: Where established streams go.
        local_addr: Address reported as every stream's local address.
        report: Sends a DialResult back on the control stream.
        cancel: The listener's cancellation signal.
        concurrency: Maximum dials in flight.
        dial_timeout: Per-dial budget in seconds.
        insecure_transport: Plain TCP instead of verified TLS.
        ssl_context: TLS settings for relay connections.
    """

    def __init__(
        self,
        accept_queue: AcceptQueue,
        local_addr: ListenerAddr,
        report: Callable[[DialResult], bool],
        cancel: threading.Event,
        concurrency: int,
        dial_timeout: float,
        insecure_transport: bool = False,
        ssl_context: Optional[ssl.SSLContext] = None,
    ):
        self.accept_queue = accept_queue
        self.local_addr = local_addr
        self.report = report
        self.cancel = cancel
        self.dial_timeout = dial_timeout
        self.insecure_transport = insecure_transport
        self.ssl_context = ssl_context or ssl.create_default_context()

        self._sem = Semaphore(concurrency)
        self._lock = threading.Lock()
        # request_id -> socket being dialled, so close() can abort it
        self._inflight: Dict[str, socket.socket] = {}
        self._threads: Dict[str, threading.Thread] = {}

    @property
    def inflight(self) -> int:
        with self._lock:
            return len(self._threads)

    def submit(self, request: DialRequest):
        """Start dialling in a new thread. Returns immediately."""
        if self.cancel.is_set():
            self.report(DialResult(request.request_id, ok=False, error=DialErrorReason.CLOSED.value))
            return
        thread = threading.Thread(
            target=self._dial_thread,
            args=(request,),
            daemon=True,
            name=f"border0-dial-{request.request_id}",
        )
        with self._lock:
            if request.request_id in self._threads:
                logger.warning(f"Ignoring duplicate dial request {request.request_id}")
                return
            self._threads[request.request_id] = thread
        thread.start()

    def abort_all(self, force: bool = False):
        """Shut down every connection still being dialled.

        The dial threads close their own sockets; ``force`` also closes them
        here, for threads that did not finish in time.
        """
        with self._lock:
            socks = list(self._inflight.values())
        for sock in socks:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                # not connected yet, or already gone
                pass
            if force:
                sock.close()

    def drain(self, timeout: float) -> bool:
        """Wait for dial threads to finish. Returns False if some are still running."""
        deadline = time.monotonic() + timeout
        while True:
            with self._lock:
                threads = list(self._threads.values())
            if not threads:
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning(f"{len(threads)} dial(s) still running after drain deadline")
                return False
            threads[0].join(remaining)

    # -- Internal --------------------------------------------------------------

    def _dial_thread(self, request: DialRequest):
        try:
            self.dial(request)
        finally:
            with self._lock:
                self._threads.pop(request.request_id, None)

    def dial(self, request: DialRequest) -> bool:
        """Run one dial to completion. Returns True if a stream was enqueued."""
        deadline = time.monotonic() + self.dial_timeout
        request_id = request.request_id

        if not self._sem.acquire(timeout=self.dial_timeout, cancel=self.cancel):
            reason = DialErrorReason.CLOSED if self.cancel.is_set() else DialErrorReason.BUSY
            self._fail(request_id, DialError(reason.value, "no dial slot available"))
            return False

        conn = None
        try:
            conn = self._connect(request, deadline)
            self._handshake(conn, request, deadline)

            stream = InboundStream(
                conn,
                local_addr=self.local_addr,
                remote_addr=self._remote_addr(conn, request),
                request_id=request_id,
            )
            if self.cancel.is_set():
                raise DialError(DialErrorReason.CLOSED.value, "listener closed")
            remaining = deadline - time.monotonic()
            reported = []

            def report_ok():
                reported.append(self.report(DialResult(request_id, ok=True)))
                return reported[-1]

            try:
                enqueued = self.accept_queue.put(
                    stream,
                    timeout=max(remaining, 0),
                    cancel=self.cancel,
                    on_enqueued=report_ok,
                )
            except QueueClosedError:
                raise DialError(DialErrorReason.CLOSED.value, "listener closed")
            if not enqueued:
                if self.cancel.is_set():
                    raise DialError(DialErrorReason.CLOSED.value, "listener closed")
                if reported and not reported[-1]:
                    raise DialError(DialErrorReason.CLOSED.value, "control stream down, ok not delivered")
                raise DialError(
                    DialErrorReason.BACKPRESSURE.value,
                    f"accept queue full for {self.dial_timeout:g}s",
                )
            conn = None  # owned by the stream now
            logger.debug(f"Dial {request_id} enqueued from {stream.remote_addr}")
            return True
        except DialError as e:
            self._fail(request_id, e)
            return False
        finally:
            with self._lock:
                self._inflight.pop(request_id, None)
            if conn is not None:
                conn.close()
            self._sem.release()

    def _fail(self, request_id: str, error: DialError):
        if self.cancel.is_set() and error.reason != DialErrorReason.CLOSED.value:
            error = DialError(DialErrorReason.CLOSED.value, f"listener closed ({error})")
        logger.warning(f"Dial {request_id} failed: {error.reason}: {error}")
        self.report(DialResult(request_id, ok=False, error=error.reason))

    def _connect(self, request: DialRequest, deadline: float) -> socket.socket:
        try:
            host, port = split_host_port(request.relay_address)
        except ValueError as e:
            raise DialError(DialErrorReason.CONNECT_FAILED.value, str(e))

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise DialError(DialErrorReason.TIMEOUT.value, "dial budget exhausted")
        try:
            infos = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)
        except OSError as e:
            raise DialError(DialErrorReason.CONNECT_FAILED.value, f"resolve {host}: {e}")

        last_error: Optional[Exception] = None
        for family, socktype, proto, _, sockaddr in infos:
            sock = socket.socket(family, socktype, proto)
            with self._lock:
                self._inflight[request.request_id] = sock
            if self.cancel.is_set():
                sock.close()
                raise DialError(DialErrorReason.CLOSED.value, "listener closed")
            try:
                sock.settimeout(max(deadline - time.monotonic(), 0.001))
                sock.connect(sockaddr)
                break
            except socket.timeout:
                sock.close()
                raise DialError(DialErrorReason.TIMEOUT.value, f"connect to {request.relay_address} timed out")
            except OSError as e:
                sock.close()
                last_error = e
        else:
            raise DialError(
                DialErrorReason.CONNECT_FAILED.value,
                f"connect to {request.relay_address}: {last_error}",
            )

        if self.insecure_transport:
            return sock

        try:
            # wrap_socket detaches the plain socket, so from here on close the TLS one
            sock = self.ssl_context.wrap_socket(
                sock, server_hostname=host, do_handshake_on_connect=False
            )
            with self._lock:
                self._inflight[request.request_id] = sock
            sock.do_handshake()
            return sock
        except socket.timeout:
            sock.close()
            raise DialError(DialErrorReason.TIMEOUT.value, "tls handshake timed out")
        except (ssl.SSLError, OSError) as e:
            sock.close()
            raise DialError(DialErrorReason.HANDSHAKE_FAILED.value, f"tls handshake: {e}")

    def _handshake(self, conn: socket.socket, request: DialRequest, deadline: float):
        """Present the relay token and check the relay's status byte."""
        try:
            conn.settimeout(max(deadline - time.monotonic(), 0.001))
            conn.sendall(frame_relay_token(request.relay_token))
            status = conn.recv(1)
        except socket.timeout:
            raise DialError(DialErrorReason.TIMEOUT.value, "relay handshake timed out")
        except (OSError, ValueError) as e:
            raise DialError(DialErrorReason.HANDSHAKE_FAILED.value, f"relay handshake: {e}")

        if not status:
            raise DialError(DialErrorReason.HANDSHAKE_FAILED.value, "relay closed the connection")
        if status[0] != RELAY_STATUS_OK:
            raise DialError(
                DialErrorReason.RELAY_REJECTED.value,
                f"relay refused token (status 0x{status[0]:02x})",
            )
        conn.settimeout(None)

    def _remote_addr(self, conn: socket.socket, request: DialRequest) -> Tuple[str, int]:
        if request.peer_hint:
            try:
                return split_host_port(request.peer_hint)
            except ValueError:
                return (request.peer_hint, 0)
        peer = conn.getpeername()
        return (peer[0], peer[1])
