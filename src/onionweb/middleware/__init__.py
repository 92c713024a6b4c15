"""
=============================================================================
MIDDLEWARE
=============================================================================

Everything that handles a request is a middleware: a callable taking the
Context and a `next` continuation. The router, static files and every
helper below are ordinary middleware and can be combined freely.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                    TYPICAL PIPELINE                                 │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                     │
    │   LogRequestMiddleware          request number, start/end lines     │
    │        ▼                                                            │
    │   ForceSSLMiddleware            may redirect to https://            │
    │        ▼                                                            │
    │   CORSMiddleware                may answer OPTIONS with 204         │
    │        ▼                                                            │
    │   SameOriginFrameMiddleware     X-Frame-Options                     │
    │        ▼                                                            │
    │   StaticMiddleware              may serve a file                    │
    │        ▼                                                            │
    │   BodyParserMiddleware          context.parsed_body                 │
    │        ▼                                                            │
    │   RouterMiddleware              route middlewares + handler         │
    │                                                                     │
    │   (unwinds back up in reverse order once next() returns)            │
    │                                                                     │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
AVAILABLE MIDDLEWARE
=============================================================================

LogRequestMiddleware:
    Start/end access log lines tagged with a process-wide request number.

CORSMiddleware:
    Access-Control-* headers; echoes origins allowed to send credentials.

ForceSSLMiddleware:
    Redirects insecure requests, optionally sparing local addresses.

SameOriginFrameMiddleware:
    X-Frame-Options: SAMEORIGIN.

CurrentPageNumberMiddleware:
    ?page= → context.current_page_number.

BodyParserMiddleware:
    JSON, urlencoded and multipart bodies → context.parsed_body.

StaticMiddleware:
    Files from disk with Last-Modified, 304s and gzip.

RouterMiddleware:
    Method + path pattern routing with per-route middleware.

=============================================================================
"""

from .base import (
    FunctionMiddleware,
    Middleware,
    MiddlewareLike,
    MiddlewarePipeline,
    Next,
    function_middleware,
    run_chain,
)
from .body_parser import BodyParseError, BodyParserMiddleware, ParsedBody, UploadedFile
from .cors import CORSMiddleware
from .force_ssl import ForceSSLMiddleware
from .logging import LogRequestMiddleware
from .pagination import CurrentPageNumberMiddleware
from .router import Route, RouteMatch, RouterMiddleware
from .same_origin import SameOriginFrameMiddleware
from .static import StaticDirectory, StaticMiddleware

__all__ = [
    # Contract
    "FunctionMiddleware",
    "Middleware",
    "MiddlewareLike",
    "MiddlewarePipeline",
    "Next",
    "function_middleware",
    "run_chain",

    # Routing
    "Route",
    "RouteMatch",
    "RouterMiddleware",

    # Built-in middleware
    "BodyParseError",
    "BodyParserMiddleware",
    "CORSMiddleware",
    "CurrentPageNumberMiddleware",
    "ForceSSLMiddleware",
    "LogRequestMiddleware",
    "ParsedBody",
    "SameOriginFrameMiddleware",
    "StaticDirectory",
    "StaticMiddleware",
    "UploadedFile",
]
