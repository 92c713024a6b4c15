"""
HTTP protocol components.

    headers.py       Case-insensitive multi-valued header collection
    status_codes.py  Empty-body / redirect status classification
    mime_types.py    Extension and short-name → Content-Type
    accepts.py       Accept-* negotiation
    request.py       Request facade (lazy, proxy-aware)
    response.py      Response facade (body state machine)
    context.py       Per-request Context
"""

from .headers import Headers, format_http_date, parse_http_date
from .status_codes import (
    EMPTY_BODY_STATUS_CODES,
    REDIRECT_STATUS_CODES,
    is_empty_body_status_code,
    is_redirect_status_code,
    reason_phrase,
)
from .mime_types import get_mime_type, resolve_content_type
from .accepts import Accepts
from .request import ComputedValue, Request
from .response import HeadersAlreadySentError, Response, ResponseConfigurationError
from .context import Context

__all__ = [
    "Accepts",
    "ComputedValue",
    "Context",
    "EMPTY_BODY_STATUS_CODES",
    "Headers",
    "HeadersAlreadySentError",
    "REDIRECT_STATUS_CODES",
    "Request",
    "Response",
    "ResponseConfigurationError",
    "format_http_date",
    "get_mime_type",
    "is_empty_body_status_code",
    "is_redirect_status_code",
    "parse_http_date",
    "reason_phrase",
    "resolve_content_type",
]
