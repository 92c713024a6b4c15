"""
Core transport components.

    wire.py           WireRequest / WireResponse, the boundary the pipeline sees
    parser.py         Raw bytes → WireRequest
    connection.py     Buffered socket reads and writes
    socket_server.py  Accept loop, signals, optional TLS
    thread_pool.py    Worker threads, one connection per task
"""

from .connection import Connection, ConnectionState
from .parser import HTTPParseError, RequestParser, parse_request
from .socket_server import SocketServer
from .thread_pool import ThreadPool
from .wire import BodyStreamError, WireRequest, WireResponse, format_http_date

__all__ = [
    "BodyStreamError",
    "Connection",
    "ConnectionState",
    "HTTPParseError",
    "RequestParser",
    "SocketServer",
    "ThreadPool",
    "WireRequest",
    "WireResponse",
    "format_http_date",
    "parse_request",
]
