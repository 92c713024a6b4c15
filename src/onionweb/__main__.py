"""
=============================================================================
ONIONWEB CLI ENTRY POINT
=============================================================================

Runs a demo server assembled from the built-in middleware.

=============================================================================
USAGE
=============================================================================

    # Run with defaults (127.0.0.1:8080, HTTP_* environment variables honored)
    python -m onionweb

    # Custom port, all interfaces
    python -m onionweb --host 0.0.0.0 --port 3000

    # Serve ./public and load route files from ./routes
    python -m onionweb --static ./public --routes ./routes

    # Behind a TLS-terminating proxy
    python -m onionweb --trust-proxy --force-ssl

Configuration is read from the environment first (ServerConfig.from_env),
then CLI flags override it.

=============================================================================
"""

import argparse
import logging
import sys

from . import __version__
from .config import ServerConfig
from .middleware import (
    BodyParserMiddleware,
    CORSMiddleware,
    CurrentPageNumberMiddleware,
    ForceSSLMiddleware,
    LogRequestMiddleware,
    RouterMiddleware,
    SameOriginFrameMiddleware,
    StaticMiddleware,
)
from .server import HTTPServer

logger = logging.getLogger(__name__)


INDEX_PAGE = """<!DOCTYPE html>
<html>
<head>
    <title>onionweb</title>
    <style>
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
               max-width: 720px; margin: 50px auto; padding: 20px; color: #333; }
        code { background: #f1f1f1; padding: 2px 6px; border-radius: 4px; }
    </style>
</head>
<body>
    <h1>onionweb</h1>
    <p>A threaded HTTP/1.1 server with an onion-model middleware pipeline.</p>
    <h3>Demo endpoints</h3>
    <ul>
        <li><code>GET /health</code> server and pool status</li>
        <li><code>GET /items?page=2</code> pagination</li>
        <li><code>GET /hello/:name</code> route parameters</li>
        <li><code>POST /echo</code> parsed JSON, form or multipart body</li>
    </ul>
</body>
</html>
"""


def build_router(server: HTTPServer) -> RouterMiddleware:
    router = RouterMiddleware()

    @router.get("/")
    def index(context, next):
        context.response.body = INDEX_PAGE

    @router.get("/health")
    def health(context, next):
        context.response.body = {
            "status": "healthy",
            "version": __version__,
            "pool": server._thread_pool.stats(),
        }

    @router.get("/items", middlewares=[CurrentPageNumberMiddleware()])
    def items(context, next):
        page = context.current_page_number
        context.response.body = {
            "page": page,
            "items": [f"item-{n}" for n in range((page - 1) * 10 + 1, page * 10 + 1)],
        }

    @router.get("/hello/:name")
    def hello(context, next):
        context.response.body = f"Hello, {context.route_parameters['name']}!"

    @router.post("/echo")
    def echo(context, next):
        parsed = context.parsed_body
        context.response.body = {
            "fields": parsed.fields,
            "files": {
                name: {"file_name": f.file_name, "content_type": f.content_type, "size": f.size}
                for name, f in parsed.files.items()
            },
        }

    return router


def main():
    parser = argparse.ArgumentParser(
        description="onionweb demo server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m onionweb                           # Run with defaults
  python -m onionweb --port 3000               # Custom port
  python -m onionweb --static ./public         # Serve static files
  python -m onionweb --routes ./routes         # Load Route objects from .py files
  python -m onionweb --cors https://app.local  # Allow credentials for an origin
        """,
    )

    # ─────────────────────────────────────────────────────────────────────
    # NETWORK
    # ─────────────────────────────────────────────────────────────────────
    parser.add_argument("--host", "-H", default=None, help="Host to bind to")
    parser.add_argument("--port", "-p", type=int, default=None, help="Port to listen on")
    parser.add_argument("--workers", "-w", type=int, default=None, help="Minimum worker threads")
    parser.add_argument("--certfile", default=None, help="PEM certificate chain (enables TLS)")
    parser.add_argument("--keyfile", default=None, help="PEM private key")
    parser.add_argument(
        "--trust-proxy",
        action="store_true",
        help="Honor X-Forwarded-For / X-Forwarded-Proto / X-Forwarded-Host",
    )

    # ─────────────────────────────────────────────────────────────────────
    # FEATURES
    # ─────────────────────────────────────────────────────────────────────
    parser.add_argument("--static", "-s", action="append", default=[], help="Static directory (repeatable)")
    parser.add_argument("--routes", "-r", default=None, help="Directory of route files")
    parser.add_argument(
        "--cors",
        nargs="*",
        default=None,
        metavar="ORIGIN",
        help="Enable CORS; listed origins may send credentials",
    )
    parser.add_argument("--force-ssl", action="store_true", help="Redirect http:// to https://")
    parser.add_argument(
        "--log-level", "-l",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Logging level",
    )
    parser.add_argument("--version", "-v", action="version", version=f"onionweb {__version__}")

    args = parser.parse_args()

    # =========================================================================
    # CONFIGURATION: environment, then CLI overrides
    # =========================================================================
    config = ServerConfig.from_env()
    if args.host:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.workers:
        config.min_workers = args.workers
        config.max_workers = max(config.max_workers, args.workers * 2)
    if args.certfile:
        config.ssl_certfile = args.certfile
        config.ssl_keyfile = args.keyfile
    if args.trust_proxy:
        config.trust_proxy_headers = True
    if args.log_level:
        config.log_level = args.log_level

    try:
        server = HTTPServer(config)
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    # =========================================================================
    # PIPELINE
    # =========================================================================
    server.use(LogRequestMiddleware())
    if args.force_ssl:
        server.use(ForceSSLMiddleware(allow_insecure_local_ip_addresses=True))
    if args.cors is not None:
        server.use(CORSMiddleware(args.cors))
    server.use(SameOriginFrameMiddleware())
    if args.static:
        server.use(StaticMiddleware(args.static))
    server.use(BodyParserMiddleware())

    router = build_router(server)
    if args.routes:
        router.load_routes_directory(args.routes)
    server.use(router)

    try:
        server.run()
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
