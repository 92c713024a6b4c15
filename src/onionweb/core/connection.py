"""
=============================================================================
CONNECTION MANAGEMENT
=============================================================================

Wraps one accepted client socket with buffered request reading, sending and
a graceful close.

=============================================================================
TCP IS A BYTE STREAM
=============================================================================

TCP does not preserve message boundaries. A request may arrive in pieces:

    recv() → "GET /api/use"
    recv() → "rs HTTP/1.1\r\nHost: ..."
    recv() → "\r\n\r\n"

or two pipelined requests may arrive in one recv(). Connection keeps a
buffer, waits for the "\r\n\r\n" header terminator, reads exactly
Content-Length body bytes, and leaves anything extra for the next call.

=============================================================================
KEEP-ALIVE
=============================================================================

    TCP connect
        ├── request 1 → response 1     (timeout: 30s)
        ├── request 2 → response 2     (timeout: keep_alive_timeout)
        └── idle too long → close

The first request gets the full timeout. Later requests on the same
connection get the shorter keep-alive timeout; running into it is a normal
way for a connection to end.

=============================================================================
"""

import logging
import socket
import ssl
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

logger = logging.getLogger(__name__)


HEADER_TERMINATOR = b"\r\n\r\n"


class ConnectionState(Enum):
    OPEN = "open"
    READING = "reading"
    WRITING = "writing"
    IDLE = "idle"  # between keep-alive requests
    CLOSING = "closing"
    CLOSED = "closed"


def declared_content_length(head: bytes) -> int:
    """Content-Length from raw header bytes; 0 when absent or not a number."""
    for line in head.split(b"\r\n")[1:]:
        name, _, value = line.partition(b":")
        if name.strip().lower() == b"content-length":
            value = value.strip()
            return int(value) if value.isdigit() else 0
    return 0


@dataclass
class Connection:
    """
    One accepted client socket.

    Attributes:
        socket: Plain socket or ssl.SSLSocket
        address: Peer (ip, port)
        id: Short tag for log lines
        requests_handled: Requests read so far
    """

    socket: socket.socket
    address: Tuple[str, int]

    buffer_size: int = 8192
    timeout: Optional[float] = 30.0
    keep_alive_timeout: float = 5.0
    max_request_size: int = 10 * 1024 * 1024

    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    state: ConnectionState = ConnectionState.OPEN
    requests_handled: int = 0
    opened_at: float = field(default_factory=time.monotonic)

    _pending: bytes = field(default=b"", repr=False)

    def __post_init__(self):
        self.socket.settimeout(self.timeout)

    @property
    def is_tls(self) -> bool:
        return isinstance(self.socket, ssl.SSLSocket)

    @property
    def is_open(self) -> bool:
        return self.state not in (ConnectionState.CLOSING, ConnectionState.CLOSED)

    # =========================================================================
    # READING
    # =========================================================================

    def read_request(self) -> Optional[bytes]:
        """
        Read one complete request (head and body).

        Returns:
            The request bytes, or None when the peer closed the connection
            or went quiet between keep-alive requests.

        Raises:
            TimeoutError: The first request did not arrive in time.
            ValueError: The request is larger than max_request_size.
        """
        waiting_for_next = self.requests_handled > 0
        self.state = ConnectionState.READING
        if waiting_for_next:
            self.socket.settimeout(self.keep_alive_timeout)

        try:
            head_end = self._fill_until_head()
            if head_end is None:
                return None

            # after the first line arrives the regular timeout applies again
            self.socket.settimeout(self.timeout)

            request_end = head_end + len(HEADER_TERMINATOR) + declared_content_length(self._pending[:head_end])
            if request_end > self.max_request_size:
                raise ValueError(f"Request too large: {request_end} bytes")
            self._fill_to(request_end)
        except socket.timeout:
            if waiting_for_next:
                logger.debug(f"[{self.id}] Idle keep-alive connection timed out")
                return None
            raise TimeoutError("Timed out reading request")

        # anything past request_end is the start of a pipelined request
        request, self._pending = self._pending[:request_end], self._pending[request_end:]
        self.requests_handled += 1
        return request

    def _fill_until_head(self) -> Optional[int]:
        while True:
            head_end = self._pending.find(HEADER_TERMINATOR)
            if head_end != -1:
                return head_end
            if len(self._pending) > self.max_request_size:
                raise ValueError(f"Request too large: {len(self._pending)} bytes")
            data = self._receive()
            if not data:
                return None
            self._pending += data

    def _fill_to(self, size: int) -> None:
        # a short body is left for the parser to reject
        while len(self._pending) < size:
            data = self._receive()
            if not data:
                return
            self._pending += data

    def _receive(self) -> bytes:
        try:
            return self.socket.recv(self.buffer_size)
        except (ConnectionResetError, BrokenPipeError):
            return b""

    # =========================================================================
    # WRITING
    # =========================================================================

    def send_response(self, data: bytes) -> bool:
        """
        Write bytes to the peer; the sink WireResponse writes through.

        Returns:
            False once the peer is gone.
        """
        if not self.is_open:
            return False

        self.state = ConnectionState.WRITING
        try:
            self.socket.sendall(data)
        except OSError as e:
            logger.warning(f"[{self.id}] Write failed: {e}")
            self.state = ConnectionState.CLOSING
            return False
        return True

    def set_keep_alive(self) -> None:
        self.state = ConnectionState.IDLE

    # =========================================================================
    # CLOSING
    # =========================================================================

    def close(self) -> None:
        """Half-close, drain what the peer still sends, then release the socket."""
        if self.state is ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSING

        # unread input at close() makes the kernel answer with RST
        for step in (self._half_close, self._drain, self.socket.close):
            try:
                step()
            except OSError as e:
                logger.debug(f"[{self.id}] {step.__name__} failed: {e}")

        self.state = ConnectionState.CLOSED
        lifetime = time.monotonic() - self.opened_at
        logger.debug(f"[{self.id}] Closed after {self.requests_handled} requests ({lifetime:.2f}s)")

    def _half_close(self) -> None:
        self.socket.shutdown(socket.SHUT_WR)

    def _drain(self) -> None:
        self.socket.settimeout(0.5)
        while self.socket.recv(1024):
            pass

    def __enter__(self) -> "Connection":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
