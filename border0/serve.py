"""
Serving a Listener with socketserver handlers.

ListenerServer plugs a Listener into the standard library's socketserver
machinery, so any request handler written for a TCP server (including the
http.server handlers) can serve Border0 traffic unchanged:

    from http.server import SimpleHTTPRequestHandler
    from border0 import listen
    from border0.serve import ListenerServer

    with ListenerServer(listen(socket_name="files"), SimpleHTTPRequestHandler) as srv:
        srv.serve_forever()
"""

import logging
import socket
import socketserver
import threading
from typing import Tuple

from .errors import QueueClosedError
from .listen.listener import Listener

logger = logging.getLogger(__name__)

_PIPE_BUFFER_SIZE = 64 * 1024
_UPSTREAM_CONNECT_TIMEOUT = 10.0


class ListenerServer(socketserver.ThreadingMixIn, socketserver.BaseServer):
    """Threading server whose requests are the streams a Listener accepts.

    Args:
        listener: A ready listener. The server owns it from now on.
        handler_class: socketserver request handler class.
    """

    daemon_threads = True

    def __init__(self, listener: Listener, handler_class):
        super().__init__(listener.addr(), handler_class)
        self.listener = listener
        self._serving = threading.Event()
        self._stopped = threading.Event()
        self._stopped.set()

    def get_request(self):
        stream = self.listener.accept()
        return stream, stream.remote_addr

    def serve_forever(self, poll_interval: float = 0.5):
        """Handle streams until shutdown() or the listener closes.

        A fatal listener error is raised after being logged.
        """
        self._stopped.clear()
        self._serving.set()
        logger.info(f"Serving {self.server_address}")
        try:
            while True:
                try:
                    request, client_address = self.get_request()
                except QueueClosedError:
                    break
                if not self.verify_request(request, client_address):
                    self.shutdown_request(request)
                    continue
                try:
                    self.process_request(request, client_address)
                except Exception:
                    self.handle_error(request, client_address)
                    self.shutdown_request(request)
        finally:
            self._serving.clear()
            self._stopped.set()
            logger.info(f"Stopped serving {self.server_address}")

    def shutdown(self):
        """Stop serve_forever() and wait for it to return."""
        self.listener.close()
        self._stopped.wait()

    def shutdown_request(self, request):
        try:
            request.shutdown(socket.SHUT_WR)
        except OSError:
            # peer already gone
            pass
        self.close_request(request)

    def close_request(self, request):
        request.close()

    def handle_error(self, request, client_address):
        logger.exception(f"Error handling stream from {client_address}")

    def server_close(self):
        self.listener.close()
        super().server_close()


def pipe(src, dst):
    """Copy bytes from src to dst until EOF, then half-close dst."""
    try:
        while True:
            data = src.recv(_PIPE_BUFFER_SIZE)
            if not data:
                break
            dst.sendall(data)
    except OSError as e:
        logger.debug(f"Pipe stopped: {e}")
    finally:
        try:
            dst.shutdown(socket.SHUT_WR)
        except OSError:
            pass


class ProxyHandler(socketserver.BaseRequestHandler):
    """Forwards each stream to a TCP upstream. Subclass with ``upstream`` set."""

    upstream: Tuple[str, int] = ("127.0.0.1", 80)

    def handle(self):
        try:
            upstream = socket.create_connection(
                self.upstream, timeout=_UPSTREAM_CONNECT_TIMEOUT
            )
        except OSError as e:
            logger.warning(f"Cannot reach upstream {self.upstream[0]}:{self.upstream[1]}: {e}")
            return
        with upstream:
            upstream.settimeout(None)
            back = threading.Thread(target=pipe, args=(upstream, self.request), daemon=True)
            back.start()
            pipe(self.request, upstream)
            back.join()


def proxy_handler(host: str, port: int):
    """ProxyHandler subclass forwarding to host:port."""
    return type("ProxyHandler", (ProxyHandler,), {"upstream": (host, port)})
