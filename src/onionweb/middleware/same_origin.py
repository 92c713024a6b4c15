"""
Clickjacking protection: only pages from the same origin may frame responses.
"""

from typing import TYPE_CHECKING

from .base import Middleware, Next

if TYPE_CHECKING:
    from ..http.context import Context


class SameOriginFrameMiddleware(Middleware):
    """Sets X-Frame-Options: SAMEORIGIN, then continues the chain."""

    def __call__(self, context: "Context", next: Next) -> None:
        context.response.set_header_value("X-Frame-Options", "SAMEORIGIN")
        next()
