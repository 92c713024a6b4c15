"""
=============================================================================
ONIONWEB
=============================================================================

A threaded HTTP/1.1 server with a Koa-style middleware pipeline.

    from onionweb import HTTPServer, RouterMiddleware, LogRequestMiddleware

    router = RouterMiddleware()

    @router.get("/users/:id")
    def show_user(context, next):
        context.response.body = {"id": context.route_parameters["id"]}

    server = HTTPServer()
    server.use(LogRequestMiddleware()).use(router)
    server.run()

=============================================================================
PACKAGE LAYOUT
=============================================================================

    core/         sockets, threads, request parsing, the wire boundary
    http/         headers, request/response facades, Context
    middleware/   pipeline primitive, router and built-in middleware
    server.py     dispatch, finalization, connection loop
    config.py     ServerConfig

=============================================================================
"""

__version__ = "1.0.0"

from .config import ServerConfig
from .http import Context, Request, Response
from .middleware import (
    BodyParserMiddleware,
    CORSMiddleware,
    CurrentPageNumberMiddleware,
    ForceSSLMiddleware,
    FunctionMiddleware,
    LogRequestMiddleware,
    Middleware,
    MiddlewarePipeline,
    Route,
    RouterMiddleware,
    SameOriginFrameMiddleware,
    StaticDirectory,
    StaticMiddleware,
    function_middleware,
)
from .server import HTTPServer, create_app

__all__ = [
    "BodyParserMiddleware",
    "CORSMiddleware",
    "Context",
    "CurrentPageNumberMiddleware",
    "ForceSSLMiddleware",
    "FunctionMiddleware",
    "HTTPServer",
    "LogRequestMiddleware",
    "Middleware",
    "MiddlewarePipeline",
    "Request",
    "Response",
    "Route",
    "RouterMiddleware",
    "SameOriginFrameMiddleware",
    "ServerConfig",
    "StaticDirectory",
    "StaticMiddleware",
    "create_app",
    "function_middleware",
    "__version__",
]
