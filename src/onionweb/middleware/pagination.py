"""
=============================================================================
CURRENT PAGE NUMBER MIDDLEWARE
=============================================================================

Resolves the page a listing endpoint should render and stores it on
context.current_page_number:

    /posts              → 1
    /posts?page=3       → 3
    /posts?page=abc     → 1
    /posts?page=12abc   → 12     (leading digits are used)

A custom resolver replaces the query-string lookup entirely:

    CurrentPageNumberMiddleware(get_page_number=lambda ctx: int(ctx.route_parameters["page"]))

=============================================================================
"""

import re
from typing import TYPE_CHECKING, Callable, Optional

from .base import Middleware, Next

if TYPE_CHECKING:
    from ..http.context import Context

DEFAULT_PAGE_NUMBER = 1

_LEADING_INTEGER = re.compile(r"^\s*([+-]?\d+)")


def parse_page_number(value: Optional[str]) -> int:
    """Parse a page parameter; anything without leading digits gives 1."""
    if value is None:
        return DEFAULT_PAGE_NUMBER
    found = _LEADING_INTEGER.match(value)
    if found is None:
        return DEFAULT_PAGE_NUMBER
    return int(found.group(1))


def page_number_from_query(context: "Context") -> int:
    return parse_page_number(context.request.get_search_param("page"))


class CurrentPageNumberMiddleware(Middleware):
    def __init__(self, get_page_number: Optional[Callable[["Context"], int]] = None):
        self.get_page_number = get_page_number or page_number_from_query

    def __call__(self, context: "Context", next: Next) -> None:
        context.current_page_number = self.get_page_number(context)
        next()
