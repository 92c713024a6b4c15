"""
=============================================================================
BODY PARSER MIDDLEWARE
=============================================================================

Decodes the request body before the rest of the chain runs and stores the
result on context.parsed_body:

    ┌───────────────────────────────────┬──────────────────────────────────┐
    │ Content-Type                      │ ParsedBody                       │
    ├───────────────────────────────────┼──────────────────────────────────┤
    │ application/json                  │ raw_json + top-level fields      │
    │ application/x-www-form-urlencoded │ fields / field_arrays            │
    │ multipart/form-data               │ fields / files (+ arrays)        │
    │ anything else, or no body         │ empty                            │
    └───────────────────────────────────┴──────────────────────────────────┘

Repeated names are kept in order:

    a=1&a=2&b=3
        fields        {"a": "1", "b": "3"}           first value per name
        field_arrays  {"a": ["1", "2"], "b": ["3"]}  every value

=============================================================================
ERRORS NEVER ESCAPE
=============================================================================

Invalid JSON, a broken multipart body or a body larger than max_body_size
does not abort the request. The middleware:

    1. leaves an empty ParsedBody on the context
    2. calls on_body_parse_error(context, error)   (default: log a warning)
    3. continues the chain

Handlers that require a body should check for the fields they need. A
callback may short-circuit by setting a response; the chain still runs,
so it should also record the failure in context.state.

=============================================================================
"""

import json
import logging
import os
from dataclasses import dataclass, field
from email.parser import BytesParser
from email.policy import HTTP
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional
from urllib.parse import parse_qsl

from ..http.mime_types import DEFAULT_MIME_TYPE, get_mime_type
from .base import Middleware, Next

if TYPE_CHECKING:
    from ..http.context import Context

logger = logging.getLogger(__name__)


DEFAULT_MAX_BODY_SIZE = 10 * 1024 * 1024  # 10MB

JSON_CONTENT_TYPE = "application/json"
URLENCODED_CONTENT_TYPE = "application/x-www-form-urlencoded"
MULTIPART_CONTENT_TYPE = "multipart/form-data"


class BodyParseError(Exception):
    """The request body could not be decoded."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class UploadedFile:
    """
    One file part of a multipart body, held in memory.

    Attributes:
        field_name: Form field the file was sent under
        file_name: Client-supplied name, stripped of directory components
        content_type: Part Content-Type, or guessed from file_name
        data: File contents
    """

    field_name: str
    file_name: str
    content_type: str
    data: bytes = b""

    @property
    def size(self) -> int:
        return len(self.data)

    def save(self, path: str) -> str:
        """Write the contents to path and return it."""
        with open(path, "wb") as f:
            f.write(self.data)
        return path


@dataclass
class ParsedBody:
    fields: Dict[str, Any] = field(default_factory=dict)
    field_arrays: Dict[str, List[Any]] = field(default_factory=dict)
    files: Dict[str, UploadedFile] = field(default_factory=dict)
    file_arrays: Dict[str, List[UploadedFile]] = field(default_factory=dict)
    raw_json: Any = None

    def add_field(self, name: str, value: Any) -> None:
        self.fields.setdefault(name, value)
        self.field_arrays.setdefault(name, []).append(value)

    def add_file(self, name: str, uploaded: UploadedFile) -> None:
        self.files.setdefault(name, uploaded)
        self.file_arrays.setdefault(name, []).append(uploaded)

    def is_empty(self) -> bool:
        return not (self.fields or self.files) and self.raw_json is None


BodyParseErrorHandler = Callable[["Context", Exception], None]


def log_body_parse_error(context: "Context", error: Exception) -> None:
    logger.warning(
        f"Failed to parse {context.request.content_type} body for "
        f"{context.request.http_method} {context.request.path}: {error}"
    )


def sanitize_file_name(file_name: str) -> str:
    """Drop directory components and NUL bytes from a client file name."""
    file_name = os.path.basename(file_name.replace("\\", "/")).replace("\x00", "")
    return file_name or "unnamed"


# ─────────────────────────────────────────────────────────────────────────────
# Decoders
# ─────────────────────────────────────────────────────────────────────────────

def parse_json_body(data: bytes, charset: str) -> ParsedBody:
    """
    Decode a JSON object body.

    Only objects are accepted; arrays and scalars raise BodyParseError.
    """
    try:
        value = json.loads(data.decode(charset))
    except (UnicodeDecodeError, LookupError, ValueError) as e:
        raise BodyParseError(f"Invalid JSON body: {e}") from e

    if not isinstance(value, dict):
        raise BodyParseError(f"JSON body must be an object, got {type(value).__name__}")

    parsed = ParsedBody(raw_json=value)
    for name, item in value.items():
        parsed.add_field(name, item)
    return parsed


def parse_urlencoded_body(data: bytes, charset: str) -> ParsedBody:
    try:
        pairs = parse_qsl(data.decode(charset), keep_blank_values=True, strict_parsing=False)
    except (UnicodeDecodeError, LookupError) as e:
        raise BodyParseError(f"Invalid form body: {e}") from e

    parsed = ParsedBody()
    for name, value in pairs:
        parsed.add_field(name, value)
    return parsed


def parse_multipart_body(data: bytes, content_type_header: str, charset: str) -> ParsedBody:
    """
    Decode a multipart/form-data body.

    Parts with a filename become UploadedFile entries; the rest are text
    fields decoded with the part charset (or the request charset).
    """
    if "boundary=" not in content_type_header.lower():
        raise BodyParseError("Multipart body without a boundary")

    envelope = f"Content-Type: {content_type_header}\r\n\r\n".encode("latin-1")
    message = BytesParser(policy=HTTP).parsebytes(envelope + data)

    if not message.is_multipart():
        raise BodyParseError("Malformed multipart body")
    if message.defects:
        raise BodyParseError(f"Malformed multipart body: {message.defects[0]!r}")

    parsed = ParsedBody()
    for part in message.iter_parts():
        name = part.get_param("name", header="content-disposition")
        if not name:
            continue

        payload = part.get_payload(decode=True) or b""
        file_name = part.get_filename()

        if file_name is not None:
            file_name = sanitize_file_name(file_name)
            part_type = part.get("Content-Type")
            if part_type:
                content_type = part.get_content_type()
            else:
                content_type = get_mime_type(file_name) or DEFAULT_MIME_TYPE
            parsed.add_file(name, UploadedFile(name, file_name, content_type, payload))
            continue

        part_charset = part.get_content_charset() or charset
        try:
            parsed.add_field(name, payload.decode(part_charset))
        except (UnicodeDecodeError, LookupError) as e:
            raise BodyParseError(f"Invalid value for field {name!r}: {e}") from e

    return parsed


class BodyParserMiddleware(Middleware):
    """
    Parses JSON, urlencoded and multipart bodies into context.parsed_body.

    Usage:
        server.use(BodyParserMiddleware(max_body_size=1024 * 1024))

        @router.post("/users")
        def create_user(context, next):
            name = context.parsed_body.fields.get("name")
            avatar = context.parsed_body.files.get("avatar")
    """

    def __init__(
        self,
        max_body_size: int = DEFAULT_MAX_BODY_SIZE,
        on_body_parse_error: Optional[BodyParseErrorHandler] = None,
        default_charset: str = "utf-8",
    ):
        self.max_body_size = max_body_size
        self.on_body_parse_error = on_body_parse_error or log_body_parse_error
        self.default_charset = default_charset

    def __call__(self, context: "Context", next: Next) -> None:
        try:
            context.parsed_body = self.parse(context)
        except BodyParseError as e:
            context.parsed_body = ParsedBody()
            self.on_body_parse_error(context, e)

        next()

    def parse(self, context: "Context") -> ParsedBody:
        """Decode the request body, raising BodyParseError on failure."""
        request = context.request
        content_type = request.content_type

        if content_type not in (JSON_CONTENT_TYPE, URLENCODED_CONTENT_TYPE, MULTIPART_CONTENT_TYPE):
            return ParsedBody()
        if not request.has_body:
            return ParsedBody()

        declared = request.content_length
        if declared is not None and declared > self.max_body_size:
            raise BodyParseError(
                f"Body of {declared} bytes exceeds limit of {self.max_body_size}", status_code=413
            )

        data = request.read_body()
        if len(data) > self.max_body_size:
            raise BodyParseError(
                f"Body of {len(data)} bytes exceeds limit of {self.max_body_size}", status_code=413
            )
        if not data:
            return ParsedBody()

        charset = request.charset or self.default_charset

        if content_type == JSON_CONTENT_TYPE:
            return parse_json_body(data, charset)
        if content_type == URLENCODED_CONTENT_TYPE:
            return parse_urlencoded_body(data, charset)
        return parse_multipart_body(data, request.get_header_value("Content-Type") or "", charset)
