"""
=============================================================================
REQUEST CONTEXT
=============================================================================

One Context is created per request and handed to every middleware:

    ┌──────────────────────────────────────────────────────────────────┐
    │ Context                                                          │
    ├──────────────────────────────────────────────────────────────────┤
    │ server            the HTTPServer dispatching the request         │
    │ wire_request      transport-level request                        │
    │ wire_response     transport-level response                       │
    │ request           Request facade  (created with the context)     │
    │ response          Response facade (created with the context)     │
    │ state             free-form dict shared by middleware            │
    │ route_parameters  set by RouterMiddleware on a match             │
    │ parsed_body       set by BodyParserMiddleware                    │
    │ current_page_number   set by CurrentPageNumberMiddleware         │
    │ request_number    set by LogRequestMiddleware                    │
    └──────────────────────────────────────────────────────────────────┘

The state dict has no schema: the last writer of a key wins and nothing
detects two middlewares using the same key. Prefix keys with a name that
belongs to your middleware.

=============================================================================
"""

from typing import TYPE_CHECKING, Any, Dict, Optional

from ..config import ServerConfig
from .request import Request
from .response import Response

if TYPE_CHECKING:
    from ..core.wire import WireRequest, WireResponse
    from ..middleware.body_parser import ParsedBody
    from ..server import HTTPServer


class Context:
    """
    Per-request aggregate passed through the middleware chain.

    Lives exactly as long as the request; it is never reused.
    """

    def __init__(
        self,
        wire_request: "WireRequest",
        wire_response: "WireResponse",
        server: Optional["HTTPServer"] = None,
        config: Optional[ServerConfig] = None,
    ):
        if config is None and server is not None:
            config = server.config

        self.server = server
        self.wire_request = wire_request
        self.wire_response = wire_response

        self.request = Request(wire_request, self, config)
        self.response = Response(wire_response, self)

        self.state: Dict[str, Any] = {}
        self.route_parameters: Dict[str, str] = {}

        self.parsed_body: Optional["ParsedBody"] = None
        self.current_page_number: Optional[int] = None
        self.request_number: Optional[int] = None

    def __repr__(self) -> str:
        return f"Context({self.request.http_method} {self.request.path} → {self.response.status_code})"
