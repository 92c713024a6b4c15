"""
=============================================================================
TRANSPORT BOUNDARY
=============================================================================

The middleware layer never touches sockets. It talks to two small objects:

    ┌──────────────────────┐                     ┌──────────────────────┐
    │     WireRequest      │                     │     WireResponse     │
    ├──────────────────────┤                     ├──────────────────────┤
    │ method, target       │                     │ status_code, reason  │
    │ version, headers     │   ──► pipeline ──►  │ headers              │
    │ body (byte stream)   │                     │ headers_sent         │
    │ peer_address, is_tls │                     │ end() / pipe()       │
    │ authority            │                     │ on_finish() / abort()│
    └──────────────────────┘                     └──────────┬───────────┘
                                                            │
                                                            ▼
                                              sink(bytes) -> bool
                                              (Connection.send_response)

The sink is any callable that writes bytes and returns False when the peer
is gone. A failed write flips the response to closed, which is how a dropped
connection becomes visible to the response facade (is_writable → False).

=============================================================================
RESPONSE FRAMING
=============================================================================

    end(data)        Content-Length framing. The length is filled in when
                     the caller did not set one.

    pipe(stream)     Content-Length framing when the header is present.
                     Otherwise:
                       HTTP/1.1 → Transfer-Encoding: chunked
                       HTTP/1.0 → close-delimited (keep-alive disabled)

    HEAD             Headers only. Body bytes are never written.

=============================================================================
"""

import io
import logging
from dataclasses import dataclass, field
from typing import BinaryIO, Callable, List, Optional, Tuple, Union

from ..http.headers import Headers, HeaderValue, format_http_date
from ..http.status_codes import is_empty_body_status_code, reason_phrase

logger = logging.getLogger(__name__)


SERVER_NAME = "onionweb/1.0"

STREAM_CHUNK_SIZE = 64 * 1024

Sink = Callable[[bytes], bool]


class BodyStreamError(Exception):
    """
    A body stream failed after it was attached to the response.

    Headers (and possibly part of the body) are already on the wire, so the
    request cannot be recovered. The connection is aborted and the error is
    raised to the caller.
    """


@dataclass
class WireRequest:
    """
    An inbound HTTP message as delivered by the transport.

    Attributes:
        method: Upper-case method ("GET", "POST", ...)
        target: Raw request-target, not decoded ("/a%20b?x=1")
        version: "HTTP/1.0" or "HTTP/1.1"
        headers: Request headers
        body: Readable binary stream with the request body
        peer_address: (ip, port) of the socket peer
        is_tls: True when the socket itself is TLS-terminated
        authority: HTTP/2 ":authority" pseudo-header, if any
    """

    method: str
    target: str
    version: str = "HTTP/1.1"
    headers: Headers = field(default_factory=Headers)
    body: BinaryIO = field(default_factory=io.BytesIO)
    peer_address: Tuple[str, int] = ("", 0)
    is_tls: bool = False
    authority: Optional[str] = None

    @property
    def keep_alive(self) -> bool:
        """
        Whether the client wants the connection kept open.

        HTTP/1.1 defaults to keep-alive; HTTP/1.0 defaults to close.
        """
        connection = (self.headers.get("Connection") or "").lower()
        if self.version == "HTTP/1.1":
            return "close" not in connection
        return "keep-alive" in connection


class WireResponse:
    """
    An outbound HTTP message bound to a byte sink.

    Usage:
        wire = WireResponse(connection.send_response, request_method="GET")
        wire.status_code = 200
        wire.set_header("Content-Type", "text/plain")
        wire.end("hello")
    """

    def __init__(
        self,
        sink: Sink,
        request_method: str = "GET",
        http_version: str = "HTTP/1.1",
        keep_alive: bool = True,
    ):
        self._sink = sink
        self.request_method = request_method.upper()
        self.http_version = http_version
        self.keep_alive = keep_alive

        self.status_code = 200
        self.reason: Optional[str] = None
        self.headers = Headers()

        self.headers_sent = False
        self.finished = False
        self.closed = False
        self.bytes_written = 0

        self._chunked = False
        self._finish_callbacks: List[Callable[[], None]] = []
        self._callbacks_run = False

    # =========================================================================
    # STATE
    # =========================================================================

    @property
    def is_writable(self) -> bool:
        return not self.finished and not self.closed

    @property
    def is_head(self) -> bool:
        return self.request_method == "HEAD"

    # =========================================================================
    # HEADERS
    # =========================================================================

    def set_header(self, name: str, value: HeaderValue) -> None:
        self.headers.set(name, value)

    def get_header(self, name: str) -> Optional[str]:
        return self.headers.get(name)

    def remove_header(self, name: str) -> None:
        self.headers.remove(name)

    def has_header(self, name: str) -> bool:
        return name in self.headers

    def flush_headers(self) -> bool:
        """
        Write the status line and headers.

        Adds Date, Server and Connection when absent. Does nothing if the
        headers were already sent.

        Returns:
            False if the sink rejected the write.
        """
        if self.headers_sent:
            return not self.closed

        if not self.keep_alive:
            self.headers.set("Connection", "close")
        elif "Connection" not in self.headers:
            self.headers.set("Connection", "keep-alive")
        if "Connection" in self.headers and "close" in self.headers["Connection"].lower():
            self.keep_alive = False
            self.headers.remove("Keep-Alive")
        if "Date" not in self.headers:
            self.headers.set("Date", format_http_date())
        if "Server" not in self.headers:
            self.headers.set("Server", SERVER_NAME)

        reason = self.reason or reason_phrase(self.status_code)
        lines = [f"HTTP/1.1 {self.status_code} {reason}"]
        for name, value in self.headers.items():
            lines.append(f"{name}: {value}")
        head = ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1", errors="replace")

        self.headers_sent = True
        return self._write(head)

    # =========================================================================
    # BODY
    # =========================================================================

    def end(self, data: Union[str, bytes, None] = None) -> None:
        """
        Finish the response, optionally with a final body.

        Fills in Content-Length when no framing header was set. For HEAD
        requests and empty-body statuses the data is never written.
        """
        if not self.is_writable:
            return

        if isinstance(data, str):
            data = data.encode("utf-8")

        suppress_body = self.is_head or is_empty_body_status_code(self.status_code)

        if not self.headers_sent:
            framed = "Content-Length" in self.headers or "Transfer-Encoding" in self.headers
            if not framed and not suppress_body:
                self.headers.set("Content-Length", str(len(data) if data else 0))
            if not self.flush_headers():
                return

        if data and not suppress_body:
            if self._chunked:
                self._write_chunk(data)
            else:
                self._write(data)

        if self._chunked and not suppress_body:
            self._write(b"0\r\n\r\n")

        self.finished = True
        self._run_finish_callbacks()

    def pipe(self, stream: BinaryIO, chunk_size: int = STREAM_CHUNK_SIZE) -> None:
        """
        Copy a readable stream to the client and finish the response.

        Raises:
            BodyStreamError: If reading from the stream fails. The response
                is aborted first.
        """
        if not self.is_writable:
            return

        suppress_body = self.is_head or is_empty_body_status_code(self.status_code)

        if not self.headers_sent:
            if not suppress_body and "Content-Length" not in self.headers:
                if self.http_version == "HTTP/1.1":
                    self.headers.set("Transfer-Encoding", "chunked")
                    self._chunked = True
                else:
                    self.keep_alive = False
            if not self.flush_headers():
                return

        if suppress_body:
            self.end()
            return

        while self.is_writable:
            try:
                chunk = stream.read(chunk_size)
            except Exception as e:
                self.abort()
                raise BodyStreamError(f"Body stream failed: {e}") from e

            if not chunk:
                break
            if isinstance(chunk, str):
                chunk = chunk.encode("utf-8")

            if self._chunked:
                self._write_chunk(chunk)
            else:
                self._write(chunk)

        self.end()

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def on_finish(self, callback: Callable[[], None]) -> None:
        """
        Register a callback run once when the response finishes or aborts.

        If that already happened, the callback runs immediately.
        """
        if self._callbacks_run:
            callback()
        else:
            self._finish_callbacks.append(callback)

    def abort(self) -> None:
        """Mark the connection dead. Nothing more is written."""
        self.closed = True
        self.keep_alive = False
        self._run_finish_callbacks()

    def _run_finish_callbacks(self) -> None:
        if self._callbacks_run:
            return
        self._callbacks_run = True
        callbacks, self._finish_callbacks = self._finish_callbacks, []
        for callback in callbacks:
            callback()

    def _write_chunk(self, data: bytes) -> bool:
        return self._write(f"{len(data):x}\r\n".encode("ascii") + data + b"\r\n")

    def _write(self, data: bytes) -> bool:
        if self.closed:
            return False
        if not self._sink(data):
            logger.debug("Sink rejected write, marking response closed")
            self.abort()
            return False
        self.bytes_written += len(data)
        return True
