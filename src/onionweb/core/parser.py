"""
=============================================================================
HTTP/1.x REQUEST PARSER
=============================================================================

Turns the raw bytes of one request (as buffered by Connection) into a
WireRequest for the middleware pipeline.

    GET /users/42?fields=name HTTP/1.1\r\n     ← request line
    Host: example.com\r\n                       ← headers
    Accept: application/json\r\n
    \r\n                                        ← blank line
    <body, Content-Length bytes>

    ┌───────────────────────────────────────────────────────────────────┐
    │  1. Size check                       too large → 413              │
    │  2. Find \r\n\r\n                    missing   → 400              │
    │  3. Request line                     malformed → 400              │
    │                                      method    → 405              │
    │                                      version   → 505              │
    │  4. Headers (kept multi-valued, obsolete folding supported)       │
    │  5. Body (exactly Content-Length bytes)                           │
    └───────────────────────────────────────────────────────────────────┘

The request-target is kept exactly as sent. Percent-decoding happens later,
per route parameter, so "/a%2Fb" stays one path segment.

=============================================================================
"""

import io
import re
from typing import List, Tuple
from urllib.parse import unquote, urlsplit

from ..http.headers import Headers
from .wire import WireRequest


class HTTPParseError(Exception):
    """
    Raised when a request cannot be parsed.

    The server answers with status_code and closes the connection.
    """

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


class RequestParser:
    """
    Parses raw HTTP/1.0 and HTTP/1.1 request bytes.

    Usage:
        parser = RequestParser(max_request_size=1024 * 1024)
        wire_request = parser.parse(data, peer_address=("127.0.0.1", 50000))
    """

    VALID_METHODS = {
        "GET",
        "POST",
        "PUT",
        "DELETE",
        "PATCH",
        "HEAD",
        "OPTIONS",
        "TRACE",
        "CONNECT",
    }

    SUPPORTED_VERSIONS = ("HTTP/1.0", "HTTP/1.1")

    REQUEST_LINE_PATTERN = re.compile(r"^([A-Z]+) ([^ ]+) (HTTP/\d\.\d)$")
    HEADER_PATTERN = re.compile(r"^([^:\s]+):\s*(.*)$")

    def __init__(self, max_request_size: int = 10 * 1024 * 1024):
        self.max_request_size = max_request_size

    def parse(
        self,
        data: bytes,
        peer_address: Tuple[str, int] = ("", 0),
        is_tls: bool = False,
    ) -> WireRequest:
        """
        Parse one complete request.

        Args:
            data: Request bytes (headers and body)
            peer_address: Client's (ip, port)
            is_tls: Whether the socket is TLS-terminated

        Returns:
            The parsed WireRequest.

        Raises:
            HTTPParseError: If the request is malformed.
        """
        if len(data) > self.max_request_size:
            raise HTTPParseError(f"Request too large: {len(data)} bytes", status_code=413)

        header_end = data.find(b"\r\n\r\n")
        if header_end == -1:
            raise HTTPParseError("Incomplete request: no header terminator")

        # Latin-1 maps every byte, so header decoding never fails
        header_section = data[:header_end].decode("latin-1")
        body = data[header_end + 4:]

        lines = header_section.split("\r\n")
        method, target, version = self._parse_request_line(lines[0])
        headers = self._parse_headers(lines[1:])

        if "chunked" in (headers.get("Transfer-Encoding") or "").lower():
            raise HTTPParseError("Chunked request bodies are not supported", status_code=411)

        content_length = self._content_length(headers)
        if len(body) < content_length:
            raise HTTPParseError(
                f"Incomplete body: expected {content_length} bytes, got {len(body)}"
            )

        return WireRequest(
            method=method,
            target=target,
            version=version,
            headers=headers,
            body=io.BytesIO(body[:content_length]),
            peer_address=peer_address,
            is_tls=is_tls,
        )

    def _parse_request_line(self, line: str) -> Tuple[str, str, str]:
        match = self.REQUEST_LINE_PATTERN.match(line)
        if not match:
            raise HTTPParseError(f"Invalid request line: {line!r}")

        method, target, version = match.groups()

        if method not in self.VALID_METHODS:
            raise HTTPParseError(f"Invalid method: {method}", status_code=405)

        if version not in self.SUPPORTED_VERSIONS:
            raise HTTPParseError(f"Unsupported HTTP version: {version}", status_code=505)

        if target != "*" and not target.startswith("/"):
            # absolute-form ("http://host/path") is only used towards proxies
            parts = urlsplit(target)
            if not parts.scheme or not parts.netloc:
                raise HTTPParseError(f"Invalid request target: {target!r}")

        path = unquote(urlsplit(target).path)
        if ".." in path.split("/"):
            raise HTTPParseError("Invalid path: contains ..", status_code=400)

        return method, target, version

    def _parse_headers(self, lines: List[str]) -> Headers:
        """
        Parse header lines, keeping repeated fields as separate values.

        Lines starting with whitespace continue the previous header
        (obsolete folding). Malformed lines are skipped.
        """
        fields: List[Tuple[str, str]] = []

        for line in lines:
            if not line:
                continue

            if line[0] in (" ", "\t"):
                if fields:
                    name, value = fields[-1]
                    fields[-1] = (name, f"{value} {line.strip()}")
                continue

            match = self.HEADER_PATTERN.match(line)
            if not match:
                continue

            name, value = match.groups()
            fields.append((name, value.strip()))

        return Headers(fields)

    @staticmethod
    def _content_length(headers: Headers) -> int:
        values = {value.strip() for value in headers.get_all("Content-Length")}
        if not values:
            return 0
        if len(values) > 1:
            raise HTTPParseError("Conflicting Content-Length headers")
        value = values.pop()
        if not value.isdigit():
            raise HTTPParseError(f"Invalid Content-Length: {value!r}")
        return int(value)


def parse_request(
    data: bytes,
    peer_address: Tuple[str, int] = ("", 0),
    max_size: int = 10 * 1024 * 1024,
) -> WireRequest:
    """Parse a request with a one-off RequestParser."""
    return RequestParser(max_request_size=max_size).parse(data, peer_address)
