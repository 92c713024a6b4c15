"""
=============================================================================
SOCKET SERVER
=============================================================================

The TCP layer: listen, accept, hand each connection to a callback.

    create_server() ──► [TLS wrap] ──► accept() loop
                                           │
                                           ▼
                               on_connection(Connection)
                               (HTTPServer submits it to the pool)

The listening socket has TCP_NODELAY set and a 1s timeout so accept()
wakes up regularly to check whether shutdown() was called.

=============================================================================
TLS
=============================================================================

With ssl_certfile and ssl_keyfile configured the listening socket is
wrapped in an ssl.SSLContext. Accepted sockets are ssl.SSLSocket instances,
Connection.is_tls reports True, and the request facade resolves the
protocol to "https" without looking at any header.

=============================================================================
SHUTDOWN
=============================================================================

On the main thread SIGINT and SIGTERM call shutdown() for the duration of
start(); the previous handlers are restored afterwards. shutdown() only
clears the serving flag.

=============================================================================
"""

import contextlib
import logging
import signal
import socket
import ssl
import threading
from typing import Callable, Iterator, Optional, Tuple

from ..config import ServerConfig
from .connection import Connection

logger = logging.getLogger(__name__)


ConnectionHandler = Callable[[Connection], None]

ACCEPT_POLL_INTERVAL = 1.0


class SocketServer:
    """
    Listening socket plus the accept loop.

    Usage:
        listener = SocketServer(config)
        listener.start(pool_submit)      # blocks until shutdown()
    """

    def __init__(self, config: ServerConfig):
        self.config = config
        self._listener: Optional[socket.socket] = None
        self._serving = False
        self._ready = threading.Event()

    @property
    def is_running(self) -> bool:
        return self._serving

    @property
    def address(self) -> Tuple[str, int]:
        """Bound (host, port); reflects the OS-chosen port when port=0."""
        if self._listener is None:
            return (self.config.host, self.config.port)
        bound = self._listener.getsockname()
        return (bound[0], bound[1])

    # =========================================================================
    # SETUP
    # =========================================================================

    def _listen(self) -> socket.socket:
        """
        Bind and listen, wrapping the socket with TLS when configured.

        Raises:
            OSError: If the address cannot be bound.
        """
        address = (self.config.host, self.config.port)
        try:
            # create_server() enables SO_REUSEADDR on POSIX
            listener = socket.create_server(address, backlog=self.config.backlog)
        except OSError as e:
            logger.error(f"Cannot listen on {address[0]}:{address[1]}: {e}")
            raise

        listener.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        listener.settimeout(ACCEPT_POLL_INTERVAL)

        if not self.config.ssl_certfile:
            return listener

        tls = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        tls.load_cert_chain(self.config.ssl_certfile, self.config.ssl_keyfile)
        return tls.wrap_socket(listener, server_side=True)

    @contextlib.contextmanager
    def _stop_on_signals(self) -> Iterator[None]:
        """Route SIGINT/SIGTERM to shutdown() while serving (main thread only)."""
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        def on_signal(signum, frame):
            logger.info(f"{signal.Signals(signum).name} received, stopping")
            self.shutdown()

        previous = {sig: signal.signal(sig, on_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
        try:
            yield
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self, on_connection: ConnectionHandler) -> None:
        """Listen and accept until shutdown() is called (blocking)."""
        self._listener = self._listen()
        self._serving = True

        scheme = "https" if self.config.ssl_certfile else "http"
        host, port = self.address
        logger.info(f"Listening on {scheme}://{host}:{port}")

        try:
            with self._stop_on_signals():
                self._ready.set()
                self._serve(on_connection)
        finally:
            self._close_listener()

    def _serve(self, on_connection: ConnectionHandler) -> None:
        while self._serving:
            try:
                client, peer = self._listener.accept()
            except socket.timeout:
                continue
            except ssl.SSLError as e:
                logger.warning(f"TLS handshake failed: {e}")
                continue
            except OSError as e:
                if self._serving:
                    logger.error(f"accept() failed: {e}")
                break

            logger.debug(f"Connection from {peer[0]}:{peer[1]}")
            on_connection(self._make_connection(client, peer))

    def _make_connection(self, client: socket.socket, peer: Tuple[str, int]) -> Connection:
        config = self.config
        return Connection(
            socket=client,
            address=peer,
            buffer_size=config.buffer_size,
            timeout=config.timeout,
            keep_alive_timeout=config.keep_alive_timeout,
            max_request_size=config.max_request_size,
        )

    def shutdown(self) -> None:
        """Stop accepting. The loop exits within ACCEPT_POLL_INTERVAL."""
        if self._serving:
            logger.info("Stopping accept loop")
        self._serving = False

    def _close_listener(self) -> None:
        self._serving = False
        self._ready.clear()
        if self._listener is None:
            return
        try:
            self._listener.close()
        except OSError as e:
            logger.debug(f"Closing listener failed: {e}")
        self._listener = None
        logger.info("Listener closed")

    def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        """Block until the socket is listening."""
        return self._ready.wait(timeout)
