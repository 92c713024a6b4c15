"""
=============================================================================
RESPONSE FACADE
=============================================================================

Response wraps a WireResponse. Middleware sets a status, headers and a body;
nothing is written until the dispatcher finalizes the response after the
chain returns.

=============================================================================
BODY TYPES AND WHAT ASSIGNING THEM DOES
=============================================================================

    ┌───────────────┬──────────────────────────┬─────────────────────────────┐
    │ body =        │ Content-Type (if absent) │ Content-Length              │
    ├───────────────┼──────────────────────────┼─────────────────────────────┤
    │ "<p>hi</p>"   │ text/html; charset=utf-8 │ UTF-8 byte length           │
    │ "hi"          │ text/plain; charset=utf-8│ UTF-8 byte length           │
    │ b"\x00\x01"   │ application/octet-stream │ buffer length               │
    │ open(...)     │ application/octet-stream │ removed if replacing a body │
    │ {"a": 1}      │ application/json (always)│ removed, computed at finish │
    │ None          │ removed                  │ removed                     │
    └───────────────┴──────────────────────────┴─────────────────────────────┘

Any non-None body sets the status to 200 unless a status was set explicitly.

Setting None:
    - status is 204/205/304 already  → just clears the body
    - Content-Type is JSON           → body becomes the text "null"
    - otherwise                      → status becomes 204

Setting status 204, 205 or 304 clears the body.

=============================================================================
THE POINT OF NO RETURN
=============================================================================

Once the wire layer has flushed the status line and headers, every header,
status or body mutation raises HeadersAlreadySentError. Mistakes surface at
the call site instead of producing a response that differs from what the
code asked for.

=============================================================================
"""

import dataclasses
import json
import re
from datetime import date, datetime
from html import escape
from pathlib import PurePath
from typing import TYPE_CHECKING, Any, List, Optional, Union
from urllib.parse import quote

from .headers import HeaderValue, Headers, format_http_date, parse_http_date
from .mime_types import get_mime_type, resolve_content_type
from .status_codes import (
    is_empty_body_status_code,
    is_redirect_status_code,
    is_valid_status_code,
)

if TYPE_CHECKING:
    from ..core.wire import WireResponse
    from .context import Context


_HTML_PATTERN = re.compile(r"^\s*<")
_QUOTED_ETAG_PATTERN = re.compile(r'^(W/)?"')
_UNSET: Any = object()

# Characters left alone when percent-encoding a Location header
_URL_SAFE_CHARACTERS = "!#$&'()*+,/:;=?@[]~%"


class ResponseConfigurationError(Exception):
    """An invalid response setting (status out of range, conflicting framing headers)."""


class HeadersAlreadySentError(ResponseConfigurationError):
    """A header, status or body mutation after the headers were flushed."""


def is_stream(value: Any) -> bool:
    """A body is a stream when it has a callable read() and is not a buffer."""
    if isinstance(value, (str, bytes, bytearray, memoryview)):
        return False
    return callable(getattr(value, "read", None))


def is_byte_buffer(value: Any) -> bool:
    return isinstance(value, (bytes, bytearray, memoryview))


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return list(value)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def content_disposition(file_name: Optional[str] = None, disposition_type: str = "attachment") -> str:
    """
    Build a Content-Disposition value (RFC 6266).

    Non-ASCII names get an ASCII fallback plus a filename* parameter:

        >>> content_disposition("résumé.pdf")
        'attachment; filename="r?sum?.pdf"; filename*=UTF-8\\'\\'r%C3%A9sum%C3%A9.pdf'
    """
    if not file_name:
        return disposition_type

    name = PurePath(file_name).name
    fallback = name.encode("ascii", errors="replace").decode("ascii")
    fallback = fallback.replace("\\", "\\\\").replace('"', '\\"')
    value = f'{disposition_type}; filename="{fallback}"'
    if fallback != name:
        value += f"; filename*=UTF-8''{quote(name, safe='')}"
    return value


def _release_stream(stream: Any) -> None:
    close = getattr(stream, "close", None)
    if callable(close):
        close()


class Response:
    """
    Facade over an outbound WireResponse.

    Usage (inside a middleware):
        context.response.status_code = 201
        context.response.set_header_value("Location", "/users/7")
        context.response.body = {"id": 7}
    """

    def __init__(self, wire: "WireResponse", context: Optional["Context"] = None):
        self.wire = wire
        self.context = context

        self._body: Any = None
        self._json_text: Any = _UNSET
        self._tracked_streams: List[Any] = []

        self._explicit_status = False
        self._explicit_content_type = False
        self._explicit_null_body = False

    # =========================================================================
    # INTROSPECTION
    # =========================================================================

    @property
    def has_sent_headers(self) -> bool:
        return self.wire.headers_sent

    @property
    def is_writable(self) -> bool:
        return self.wire.is_writable

    @property
    def has_explicitly_set_status_code(self) -> bool:
        return self._explicit_status

    @property
    def has_explicitly_set_content_type(self) -> bool:
        return self._explicit_content_type

    @property
    def has_explicitly_null_body(self) -> bool:
        return self._explicit_null_body

    def _ensure_mutable(self) -> None:
        if self.wire.headers_sent:
            raise HeadersAlreadySentError("Cannot modify the response after headers are sent")

    # =========================================================================
    # HEADERS
    # =========================================================================

    @property
    def headers(self) -> Headers:
        return self.wire.headers

    def get_header_value(self, name: str) -> Optional[str]:
        return self.wire.headers.get(name)

    def get_header_values(self, name: str) -> List[str]:
        return self.wire.headers.get_all(name)

    def has_header(self, name: str) -> bool:
        return name in self.wire.headers

    def set_header_value(self, name: str, value: HeaderValue) -> None:
        """
        Set a header, replacing existing values.

        Raises:
            HeadersAlreadySentError: After the headers were flushed.
            ResponseConfigurationError: Content-Length while
                Transfer-Encoding is set.
        """
        self._ensure_mutable()
        self._check_framing(name)
        self.wire.headers.set(name, value)

    def append_header_value(self, name: str, value: HeaderValue) -> None:
        """Add value(s) to a header, keeping the existing ones."""
        self._ensure_mutable()
        self._check_framing(name)
        self.wire.headers.append(name, value)

    def remove_header_value(self, name: str) -> None:
        self._ensure_mutable()
        self.wire.headers.remove(name)

    def append_vary_header_name(self, field_name: str) -> None:
        """
        Add a field to Vary unless already listed (case-insensitive).

        "*" replaces the whole list and absorbs later additions.
        """
        self._ensure_mutable()
        current = self.wire.headers.get("Vary")
        if current is not None and current.strip() == "*":
            return
        if field_name.strip() == "*":
            self.wire.headers.set("Vary", "*")
            return

        names = [name.strip() for name in (current or "").split(",") if name.strip()]
        if field_name.lower() not in (name.lower() for name in names):
            names.append(field_name)
        self.wire.headers.set("Vary", ", ".join(names))

    def _check_framing(self, name: str) -> None:
        key = name.lower()
        if key == "content-length" and "Transfer-Encoding" in self.wire.headers:
            raise ResponseConfigurationError(
                "Cannot set Content-Length while Transfer-Encoding is set"
            )
        if key == "transfer-encoding":
            self.wire.headers.remove("Content-Length")

    def flush_headers(self) -> None:
        """Send the status line and headers now. Later mutations raise."""
        self.wire.flush_headers()

    # =========================================================================
    # STATUS
    # =========================================================================

    @property
    def status_code(self) -> int:
        return self.wire.status_code

    @status_code.setter
    def status_code(self, code: int) -> None:
        self._set_status(code, explicit=True)

    def _set_status(self, code: int, explicit: bool = False) -> None:
        self._ensure_mutable()
        if not is_valid_status_code(code):
            raise ResponseConfigurationError(f"Invalid status code: {code!r}")

        if explicit:
            self._explicit_status = True
        self.wire.status_code = code
        self.wire.reason = None

        if self._body is not None and is_empty_body_status_code(code):
            self.body = None

    @property
    def status_message(self) -> Optional[str]:
        return self.wire.reason

    @status_message.setter
    def status_message(self, message: str) -> None:
        self._ensure_mutable()
        self.wire.reason = message

    # =========================================================================
    # BODY
    # =========================================================================

    @property
    def body(self) -> Any:
        return self._body

    @body.setter
    def body(self, value: Any) -> None:
        self._ensure_mutable()

        original = self._body
        self._body = value
        self._json_text = _UNSET

        headers = self.wire.headers

        # ─────────────────────────────────────────────────────────────────
        # No body
        # ─────────────────────────────────────────────────────────────────
        if value is None:
            if not is_empty_body_status_code(self.status_code):
                if self.content_type == "application/json":
                    self.body = "null"
                    return
                self._set_status(204)
            self._explicit_null_body = True
            headers.remove("Content-Type")
            headers.remove("Content-Length")
            headers.remove("Transfer-Encoding")
            return

        self._explicit_null_body = False

        if not self._explicit_status:
            self._set_status(200)

        set_type = "Content-Type" not in headers

        # ─────────────────────────────────────────────────────────────────
        # Text
        # ─────────────────────────────────────────────────────────────────
        if isinstance(value, str):
            if set_type:
                self._set_content_type("html" if _HTML_PATTERN.match(value) else "text")
            self._set_length(len(value.encode("utf-8")))
            return

        # ─────────────────────────────────────────────────────────────────
        # Byte buffer
        # ─────────────────────────────────────────────────────────────────
        if is_byte_buffer(value):
            if set_type:
                self._set_content_type("bin")
            self._set_length(memoryview(value).nbytes)
            return

        # ─────────────────────────────────────────────────────────────────
        # Stream: released exactly once when the wire response finishes
        # ─────────────────────────────────────────────────────────────────
        if is_stream(value):
            if not any(stream is value for stream in self._tracked_streams):
                self._tracked_streams.append(value)
                self.wire.on_finish(lambda: _release_stream(value))
            if original is not None and original is not value:
                headers.remove("Content-Length")
            if set_type:
                self._set_content_type("bin")
            return

        # ─────────────────────────────────────────────────────────────────
        # Anything else is serialized as JSON
        # ─────────────────────────────────────────────────────────────────
        headers.remove("Content-Length")
        self._set_content_type("json")

    def _set_length(self, length: int) -> None:
        if "Transfer-Encoding" not in self.wire.headers:
            self.wire.headers.set("Content-Length", str(length))

    def serialized_json(self) -> str:
        """JSON text of the current body, computed once per assignment."""
        if self._json_text is _UNSET:
            self._json_text = json.dumps(self._body, ensure_ascii=False, default=_json_default)
        return self._json_text

    # =========================================================================
    # CONTENT METADATA
    # =========================================================================

    @property
    def content_type(self) -> Optional[str]:
        """Media type without parameters ("text/html"), or None."""
        value = self.wire.headers.get("Content-Type")
        if not value:
            return None
        return value.split(";")[0].strip().lower()

    @content_type.setter
    def content_type(self, value: Optional[str]) -> None:
        """
        Set Content-Type from a short name, extension or full type.

            response.content_type = "json"      # application/json; charset=utf-8
            response.content_type = ".png"      # image/png
            response.content_type = None        # removes the header
        """
        self._ensure_mutable()
        self._explicit_content_type = True
        self._set_content_type(value)

    def _set_content_type(self, value: Optional[str]) -> None:
        resolved = resolve_content_type(value) if value else None
        if resolved:
            self.wire.headers.set("Content-Type", resolved)
        else:
            self.wire.headers.remove("Content-Type")

    @property
    def content_length(self) -> Optional[int]:
        """
        Content-Length header, or the length derived from the body.

        Streams have no derivable length (None).
        """
        header = self.wire.headers.get("Content-Length")
        if header is not None and header.strip().isdigit():
            return int(header.strip())

        body = self._body
        if body is None or is_stream(body):
            return None
        if isinstance(body, str):
            return len(body.encode("utf-8"))
        if is_byte_buffer(body):
            return memoryview(body).nbytes
        return len(self.serialized_json().encode("utf-8"))

    @content_length.setter
    def content_length(self, length: int) -> None:
        self._ensure_mutable()
        if "Transfer-Encoding" in self.wire.headers:
            raise ResponseConfigurationError(
                "Cannot set Content-Length while Transfer-Encoding is set"
            )
        if isinstance(length, bool) or not isinstance(length, int) or length < 0:
            raise ResponseConfigurationError(f"Invalid Content-Length: {length!r}")
        self.wire.headers.set("Content-Length", str(length))

    @property
    def last_modified(self) -> Optional[datetime]:
        return parse_http_date(self.wire.headers.get("Last-Modified"))

    @last_modified.setter
    def last_modified(self, value: Union[datetime, str]) -> None:
        self._ensure_mutable()
        if isinstance(value, datetime):
            value = format_http_date(value)
        self.wire.headers.set("Last-Modified", value)

    @property
    def etag(self) -> Optional[str]:
        return self.wire.headers.get("ETag")

    @etag.setter
    def etag(self, value: str) -> None:
        """Quotes are added unless the tag is already quoted or weak (W/"...")."""
        self._ensure_mutable()
        if not _QUOTED_ETAG_PATTERN.match(value):
            value = f'"{value}"'
        self.wire.headers.set("ETag", value)

    def set_content_disposition(
        self,
        file_name: Optional[str] = None,
        disposition_type: str = "attachment",
    ) -> None:
        """
        Set Content-Disposition, and Content-Type from the file name when it
        has a known extension.
        """
        self._ensure_mutable()
        if file_name and get_mime_type(file_name):
            self.content_type = PurePath(file_name).suffix
        self.wire.headers.set("Content-Disposition", content_disposition(file_name, disposition_type))

    # =========================================================================
    # REDIRECT
    # =========================================================================

    def redirect(self, url: str, fallback_redirect_url: str = "/") -> None:
        """
        Redirect the client.

        "back" redirects to the Referrer header, or fallback_redirect_url
        without one. The status becomes 302 unless a redirect status was
        already set. The body is a small HTML page when the client accepts
        HTML, plain text otherwise.
        """
        request = self.context.request if self.context is not None else None

        if url == "back":
            referrer = request.get_header_value("Referrer") if request is not None else None
            url = referrer or fallback_redirect_url

        self.set_header_value("Location", quote(url, safe=_URL_SAFE_CHARACTERS))

        if not is_redirect_status_code(self.status_code):
            self.status_code = 302

        if request is not None and request.accepts.types("html"):
            self.content_type = "html"
            escaped = escape(url)
            self.body = f'Redirecting to <a href="{escaped}">{escaped}</a>.'
            return

        self.content_type = "text"
        self.body = f"Redirecting to {url}."

    def __repr__(self) -> str:
        return f"Response({self.status_code}, body={type(self._body).__name__})"
