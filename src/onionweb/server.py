"""
=============================================================================
HTTP SERVER
=============================================================================

HTTPServer ties the transport to the middleware pipeline:

    ┌──────────────────────────────────────────────────────────────────────┐
    │                        REQUEST FLOW                                  │
    ├──────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   SocketServer.accept()                                              │
    │        │                                                             │
    │        ▼                                                             │
    │   ThreadPool.submit(_process_connection)   (503 when full)           │
    │        │                                                             │
    │        ▼                                                             │
    │   Connection.read_request() → RequestParser.parse() → WireRequest    │
    │        │                                        (400/411/413/505)    │
    │        ▼                                                             │
    │   dispatch(wire_request, wire_response)                              │
    │        ├─ status defaults to 404                                     │
    │        ├─ Context(request facade, response facade)                   │
    │        ├─ run the middleware chain                                   │
    │        └─ finalize: write whatever the chain left on the response    │
    │        │                                                             │
    │        ▼                                                             │
    │   keep-alive? ──yes──► read the next request                         │
    │        └──no──► close                                                │
    │                                                                      │
    └──────────────────────────────────────────────────────────────────────┘

=============================================================================
FINALIZATION
=============================================================================

Middleware only describes the response; nothing is written until the chain
returns. Then the first matching rule wins:

    1. response no longer writable             → nothing
    2. 204 / 205 / 304                         → headers only
    3. HEAD                                    → headers only, with the
                                                 derived Content-Length
    4. body None, explicitly set to None       → Content-Length: 0
       body None, status not 2xx/3xx           → status code as text ("404")
       body None otherwise                     → empty body
    5. str / bytes                             → written as is
       stream                                  → piped
       anything else                           → JSON

=============================================================================
ERRORS
=============================================================================

An exception from the chain or from finalization is caught once, here:

    headers not sent yet   → headers cleared, 500 "Internal Server Error"
    headers already sent   → response ended, error logged
    response not writable  → error logged

A failing body stream (BodyStreamError) is the exception: by then part of
the body is on the wire, so it propagates and the connection is closed.

=============================================================================
"""

import json
import logging
from typing import Optional

from .config import ServerConfig
from .core import (
    BodyStreamError,
    Connection,
    HTTPParseError,
    RequestParser,
    SocketServer,
    ThreadPool,
    WireRequest,
    WireResponse,
)
from .http import Context
from .http.response import is_byte_buffer, is_stream
from .http.status_codes import is_empty_body_status_code, is_success_or_redirect
from .middleware import MiddlewareLike, MiddlewarePipeline

logger = logging.getLogger(__name__)


INTERNAL_SERVER_ERROR_BODY = "Internal Server Error"


class HTTPServer:
    """
    Threaded HTTP/1.1 server running a middleware pipeline.

    =========================================================================
    USAGE
    =========================================================================

        server = HTTPServer(ServerConfig(port=3000))

        router = RouterMiddleware()

        @router.get("/users/:id")
        def show_user(context, next):
            context.response.body = {"id": context.route_parameters["id"]}

        server.use(LogRequestMiddleware()).use(CORSMiddleware()).use(router)
        server.run()

    dispatch() can be called directly with a WireRequest and a WireResponse
    bound to any sink, which is how the pipeline is tested without sockets.

    =========================================================================
    """

    def __init__(self, config: Optional[ServerConfig] = None):
        self.config = config or ServerConfig()
        self.config.validate()

        self._socket_server = SocketServer(self.config)
        self._thread_pool = ThreadPool(
            min_workers=self.config.min_workers,
            max_workers=self.config.max_workers,
            queue_size=self.config.queue_size,
        )
        self._parser = RequestParser(max_request_size=self.config.max_request_size)
        self._middleware = MiddlewarePipeline()

        self._running = False

    # =========================================================================
    # CONFIGURATION
    # =========================================================================

    def use(self, middleware: MiddlewareLike) -> "HTTPServer":
        """
        Append a middleware to the pipeline.

        Middleware runs in the order added:

            server.use(LogRequestMiddleware()).use(CORSMiddleware()).use(router)
        """
        self._middleware.add(middleware)
        return self

    @property
    def middleware(self) -> MiddlewarePipeline:
        return self._middleware

    @property
    def address(self):
        """Bound (host, port) once the server is listening."""
        return self._socket_server.address

    @property
    def is_running(self) -> bool:
        return self._running

    # =========================================================================
    # DISPATCH
    # =========================================================================

    def dispatch(self, wire_request: WireRequest, wire_response: WireResponse) -> Context:
        """
        Run one request through the pipeline and write the response.

        Returns:
            The request Context.

        Raises:
            BodyStreamError: If a body stream fails while being written.
        """
        # unhandled requests end as 404; the default is not an explicit status
        wire_response.status_code = 404

        context = Context(wire_request, wire_response, server=self)

        try:
            self._middleware.run(context)
            self._finalize(context)
        except BodyStreamError:
            raise
        except Exception as e:
            self._handle_error(context, e)

        return context

    def _handle_error(self, context: Context, error: Exception) -> None:
        wire = context.wire_response
        request = context.request

        if not wire.is_writable:
            logger.error(
                f"Error after response was closed: {request.http_method} {request.path} "
                f"- {type(error).__name__}: {error}"
            )
            return

        if wire.headers_sent:
            logger.exception(
                f"Error after headers were sent: {request.http_method} {request.path}",
                exc_info=error,
            )
            # a terminated body would look complete to the client
            wire.abort()
            return

        logger.exception(
            f"Unhandled error: {request.http_method} {request.path}",
            exc_info=error,
        )
        wire.headers.clear()
        wire.status_code = 500
        wire.reason = None
        wire.set_header("Content-Type", "text/plain; charset=utf-8")
        wire.end(INTERNAL_SERVER_ERROR_BODY)

    def _finalize(self, context: Context) -> None:
        response = context.response
        wire = context.wire_response

        if not wire.is_writable:
            return

        if is_empty_body_status_code(wire.status_code):
            wire.remove_header("Content-Type")
            wire.remove_header("Content-Length")
            wire.remove_header("Transfer-Encoding")
            wire.end()
            return

        if wire.is_head:
            if not wire.has_header("Content-Length") and not wire.has_header("Transfer-Encoding"):
                length = response.content_length
                if length is not None:
                    wire.set_header("Content-Length", str(length))
            wire.end()
            return

        body = response.body

        if body is None:
            if response.has_explicitly_null_body:
                wire.remove_header("Content-Type")
                wire.remove_header("Transfer-Encoding")
                wire.set_header("Content-Length", "0")
                wire.end()
                return

            if not is_success_or_redirect(wire.status_code):
                text = str(wire.status_code)
                wire.set_header("Content-Type", "text/plain; charset=utf-8")
                wire.remove_header("Transfer-Encoding")
                wire.set_header("Content-Length", str(len(text)))
                wire.end(text)
                return

            wire.end()
            return

        if isinstance(body, str):
            wire.end(body)
            return

        if is_byte_buffer(body):
            wire.end(bytes(body))
            return

        if is_stream(body):
            wire.pipe(body)
            return

        encoded = response.serialized_json().encode("utf-8")
        if not wire.has_header("Content-Length") and not wire.has_header("Transfer-Encoding"):
            wire.set_header("Content-Length", str(len(encoded)))
        wire.end(encoded)

    # =========================================================================
    # SERVER LIFECYCLE
    # =========================================================================

    def run(self, host: Optional[str] = None, port: Optional[int] = None):
        """
        Start the server (blocking).

        Blocks until shutdown() is called or SIGINT/SIGTERM is received.

        Args:
            host: Override config host.
            port: Override config port.
        """
        if host:
            self.config.host = host
        if port is not None:
            self.config.port = port

        self._running = True
        self._setup_logging()
        self._thread_pool.start()

        logger.info(
            f"Starting HTTP server on {self.config.host}:{self.config.port} "
            f"({len(self._middleware)} middleware)"
        )

        try:
            self._socket_server.start(self._handle_connection)
        except KeyboardInterrupt:
            logger.info("Received keyboard interrupt")
        finally:
            self._shutdown()

    def shutdown(self):
        """Ask a running server to stop; run() returns once it has."""
        self._socket_server.shutdown()

    def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        return self._socket_server.wait_until_ready(timeout)

    def _setup_logging(self):
        level = getattr(logging, self.config.log_level.upper(), logging.INFO)

        logging.basicConfig(
            level=level,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        logging.getLogger("onionweb").setLevel(level)

    def _shutdown(self):
        """
        Graceful shutdown.

        The accept loop has already stopped. In-flight connections finish
        their current request (bounded by the pool's timeout), then the
        workers are stopped.
        """
        logger.info("Shutting down server...")
        self._running = False
        self._thread_pool.shutdown(wait=True, timeout=30.0)
        logger.info("Server stopped")

    # =========================================================================
    # CONNECTION HANDLING
    # =========================================================================

    def _handle_connection(self, conn: Connection):
        """Hand a new connection to the thread pool."""
        submitted = self._thread_pool.submit(
            self._process_connection,
            args=(conn,),
            block=False,
        )

        if not submitted:
            logger.warning(f"[{conn.id}] Thread pool full, rejecting connection")
            self._send_error(conn, 503, "Server overloaded")
            conn.close()

    def _process_connection(self, conn: Connection):
        """
        Serve requests on one connection until it closes (worker thread).

        Each iteration reads one request, dispatches it, and keeps the
        connection only when both sides agreed to keep-alive and the
        response was completed.
        """
        with conn:
            while self._running:
                try:
                    try:
                        raw_request = conn.read_request()
                    except TimeoutError:
                        self._send_error(conn, 408, "Request timeout")
                        break
                    except ValueError as e:
                        self._send_error(conn, 413, str(e))
                        break

                    if raw_request is None:
                        break

                    try:
                        wire_request = self._parser.parse(raw_request, conn.address, conn.is_tls)
                    except HTTPParseError as e:
                        logger.warning(f"[{conn.id}] Bad request: {e}")
                        self._send_error(conn, e.status_code, str(e))
                        break

                    wire_response = WireResponse(
                        conn.send_response,
                        request_method=wire_request.method,
                        http_version=wire_request.version,
                        keep_alive=self.config.keep_alive and wire_request.keep_alive,
                    )
                    if wire_response.keep_alive:
                        wire_response.set_header(
                            "Keep-Alive", f"timeout={int(self.config.keep_alive_timeout)}"
                        )

                    try:
                        self.dispatch(wire_request, wire_response)
                    except BodyStreamError as e:
                        logger.error(f"[{conn.id}] {e}")
                        break

                    if not wire_response.finished or not wire_response.keep_alive:
                        break

                    conn.set_keep_alive()

                except Exception as e:
                    logger.exception(f"[{conn.id}] Connection error: {e}")
                    break

    def _send_error(self, conn: Connection, status_code: int, message: str):
        """
        Send an error response outside the pipeline.

        Used for failures before a request could be dispatched (parse
        errors, timeouts, overload). The connection is always closed after.
        """
        wire = WireResponse(conn.send_response, keep_alive=False)
        wire.status_code = status_code
        wire.set_header("Content-Type", "application/json")
        wire.end(json.dumps({"error": message}))


def create_app(config: Optional[ServerConfig] = None) -> HTTPServer:
    """
    Create an HTTP server application.

    Example:
        app = create_app(ServerConfig(port=3000))
        app.use(router)
        app.run()
    """
    return HTTPServer(config)


# =============================================================================
# MODULE SUMMARY
# =============================================================================
#
# 1. dispatch(): one request through the pipeline, then finalization
# 2. _process_connection(): the keep-alive loop on a worker thread
# 3. run() / shutdown(): socket server and thread pool lifecycle
#
# The pipeline never writes to the socket directly. Everything it sets on
# the response facade is written by _finalize(), which is why a HEAD
# response and a GET response for the same route differ only in the body.
# =============================================================================
