"""
=============================================================================
CORS (Cross-Origin Resource Sharing) MIDDLEWARE
=============================================================================

Every response gets:

    Vary: Origin
    Access-Control-Allow-Origin: ...
    Access-Control-Allow-Credentials: ...

    ┌──────────────────────────────┬─────────────────────┬─────────────┐
    │ Request Origin               │ Allow-Origin        │ Credentials │
    ├──────────────────────────────┼─────────────────────┼─────────────┤
    │ in allow_credentials_origins │ the origin (echoed) │ true        │
    │ anything else / missing      │ *                   │ false       │
    └──────────────────────────────┴─────────────────────┴─────────────┘

Browsers reject "Allow-Origin: *" together with credentials, so an origin
must be listed explicitly to receive cookies or Authorization headers.

=============================================================================
PREFLIGHT
=============================================================================

    OPTIONS /api/users
    Origin: https://app.example.com
    Access-Control-Request-Headers: Content-Type, X-Api-Key

    204 No Content
    Access-Control-Allow-Headers: Content-Type, X-Api-Key

OPTIONS requests are answered here and never reach later middleware. The
requested headers are echoed back as allowed.

=============================================================================
"""

from typing import TYPE_CHECKING, Iterable, List, Optional

from .base import Middleware, Next

if TYPE_CHECKING:
    from ..http.context import Context


class CORSMiddleware(Middleware):
    """
    Adds CORS headers and answers preflight requests.

    Place it before authentication so preflights succeed without
    credentials:

        server.use(LogRequestMiddleware())
        server.use(CORSMiddleware(["https://app.example.com"]))
        server.use(AuthMiddleware())
    """

    def __init__(self, allow_credentials_origins: Optional[Iterable[str]] = None):
        self.allow_credentials_origins: List[str] = list(allow_credentials_origins or [])

    def __call__(self, context: "Context", next: Next) -> None:
        request = context.request
        response = context.response

        origin = request.get_header_value("Origin")
        response.append_vary_header_name("Origin")

        if origin is not None and origin in self.allow_credentials_origins:
            response.set_header_value("Access-Control-Allow-Credentials", "true")
            response.set_header_value("Access-Control-Allow-Origin", origin)
        else:
            response.set_header_value("Access-Control-Allow-Credentials", "false")
            response.set_header_value("Access-Control-Allow-Origin", "*")

        if request.http_method == "OPTIONS":
            response.set_header_value(
                "Access-Control-Allow-Headers",
                request.get_header_value("Access-Control-Request-Headers") or "",
            )
            response.status_code = 204
            return

        next()
