"""
=============================================================================
ROUTER MIDDLEWARE
=============================================================================

The router is an ordinary middleware that owns a list of routes:

    Route(method, path, handler, middlewares=[])

On each request it scans the routes in registration order:

    SCANNING ──(no route matches)──► DELEGATED  (calls the outer next)
        │
        └──(first route matches)──► EXECUTING  route.middlewares + handler
                                       │        run with run_chain(); the
                                       │        chain's fallback is the
                                       ▼        router's outer next
                                    RETURNED

=============================================================================
ROUTE PATTERNS
=============================================================================

    /users                static, exact match
    /users/:id            one segment          /users/42     → {"id": "42"}
    /static/*path         rest of the path     /static/a/b.js → {"path": "a/b.js"}

    Pattern:  /users/:id/posts/:post_id
    Regex:    ^/users/([^/]+)/posts/([^/]+)/?$   names: ["id", "post_id"]

Matching is case-insensitive and tolerates one trailing slash unless the
router is created with case_sensitive=True / strict=True. Captured values
are percent-decoded one parameter at a time, so "/files/a%2Fb" gives
{"name": "a/b"} for "/files/:name".

=============================================================================
FIRST MATCH WINS
=============================================================================

    router.get("/users/:id", show_user)
    router.get("/users/new", new_user_form)     # never reached!

"/users/new" matches the first route with id="new". Register specific
routes before general ones.

=============================================================================
CONCURRENT ROUTE TABLE CHANGES
=============================================================================

add_route() and remove_route() may run while other threads are matching.
Each scan iterates a snapshot copied under a lock, so a concurrent removal
never raises inside a scan and never makes it skip an unrelated route.

=============================================================================
"""

import importlib.util
import logging
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Sequence, Tuple, Union
from urllib.parse import unquote

from .base import Middleware, MiddlewareLike, Next, run_chain

if TYPE_CHECKING:
    from ..http.context import Context

logger = logging.getLogger(__name__)


HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS", "TRACE", "CONNECT")

ALL_METHODS = "ALL"


@dataclass(eq=False)
class Route:
    """
    A registered route.

    Routes compare by identity, so remove_route() removes exactly the
    object that was added.

    Attributes:
        method: HTTP method or "ALL"
        path: Pattern ("/users/:id")
        handler: Final middleware of the route
        middlewares: Run before the handler, in order
    """

    method: str
    path: str
    handler: MiddlewareLike
    middlewares: List[MiddlewareLike] = field(default_factory=list)

    def __post_init__(self):
        self.method = self.method.upper()
        if self.method != ALL_METHODS and self.method not in HTTP_METHODS:
            raise ValueError(f"Invalid route method: {self.method}")


@dataclass
class RouteMatch:
    """A matched route with its decoded path parameters."""

    route: Route
    params: Dict[str, str]


_PARAM = re.compile(r":([A-Za-z0-9_]+)")


def compile_pattern(
    path: str,
    case_sensitive: bool = False,
    strict: bool = False,
) -> Tuple["re.Pattern[str]", List[str]]:
    """
    Compile a route pattern into a regex.

    A parameter name is a run of letters, digits and underscores, so
    "/:name.:ext" has two parameters and "/a/:user-id" captures "user"
    followed by the literal "-id". Captures are positional groups, matched
    to names by index.

    Raises:
        ValueError: On an empty or repeated parameter name.

    Returns:
        (compiled regex, parameter names in order)
    """
    param_names: List[str] = []
    regex_parts = ["^"]

    def add_param(name: str, body: str) -> None:
        if name in param_names:
            raise ValueError(f"Duplicate route parameter {name!r} in {path!r}")
        regex_parts.append(f"({body})")
        param_names.append(name)

    for segment in path.split("/"):
        if not segment:
            continue

        regex_parts.append("/")

        if segment.startswith("*"):
            # the wildcard consumes the rest of the path
            add_param(segment[1:] or "wildcard", ".*")
            break

        position = 0
        for found in _PARAM.finditer(segment):
            regex_parts.append(re.escape(segment[position:found.start()]))
            add_param(found.group(1), "[^/]+?" if found.end() < len(segment) else "[^/]+")
            position = found.end()
        rest = segment[position:]
        if ":" in rest:
            raise ValueError(f"Route parameter without a name in {path!r}")
        regex_parts.append(re.escape(rest))

    if len(regex_parts) == 1:
        regex_parts.append("/")
    if not strict and regex_parts[-1] != "/":
        regex_parts.append("/?")
    regex_parts.append("$")

    flags = 0 if case_sensitive else re.IGNORECASE
    return re.compile("".join(regex_parts), flags), param_names


RouteDecorator = Callable[[MiddlewareLike], MiddlewareLike]


class RouterMiddleware(Middleware):
    """
    Routes requests to handlers by method and path.

    Usage:
        router = RouterMiddleware()

        @router.get("/users/:id")
        def show_user(context, next):
            context.response.body = {"id": context.route_parameters["id"]}

        router.add_route(Route("POST", "/users", create_user, [require_login]))
        server.use(router)
    """

    def __init__(
        self,
        routes: Optional[Sequence[Route]] = None,
        case_sensitive: bool = False,
        strict: bool = False,
    ):
        self.case_sensitive = case_sensitive
        self.strict = strict
        self._lock = threading.Lock()
        # route path → (regex, parameter names)
        self._compiled: Dict[str, Tuple["re.Pattern[str]", List[str]]] = {}
        self._routes: List[Route] = []
        for route in routes or []:
            self._compile(route)
            self._routes.append(route)

    # =========================================================================
    # ROUTE TABLE
    # =========================================================================

    def _compile(self, route: Route) -> Tuple["re.Pattern[str]", List[str]]:
        compiled = self._compiled.get(route.path)
        if compiled is None:
            compiled = compile_pattern(route.path, self.case_sensitive, self.strict)
            self._compiled[route.path] = compiled
        return compiled

    def add_route(self, route: Route) -> Route:
        """
        Register a route at the end of the table.

        Raises:
            ValueError: If the route's path pattern is invalid. The route
                is not added.
        """
        with self._lock:
            self._compile(route)
            self._routes.append(route)
        logger.debug(f"Added route: {route.method} {route.path}")
        return route

    def remove_route(self, route: Route) -> bool:
        """
        Remove a route by identity.

        Returns:
            True if the route was registered.
        """
        with self._lock:
            for index, registered in enumerate(self._routes):
                if registered is route:
                    del self._routes[index]
                    return True
        return False

    def get_routes(self) -> List[Route]:
        """A copy of the route table, in registration order."""
        with self._lock:
            return list(self._routes)

    def __len__(self) -> int:
        return len(self._routes)

    # =========================================================================
    # LOADING ROUTES FROM FILES
    # =========================================================================

    def load_routes_file(self, file_path: Union[str, Path]) -> List[Route]:
        """
        Import a Python file and register the routes it exposes.

        The module must define `route` (one Route or a list) or `routes`.
        A module defining neither contributes nothing.

        Returns:
            The routes added, in order.
        """
        file_path = Path(file_path)
        module_name = f"onionweb_routes_{abs(hash(str(file_path.resolve())))}"
        spec = importlib.util.spec_from_file_location(module_name, file_path)
        if spec is None or spec.loader is None:
            raise ImportError(f"Cannot load routes from {file_path}")

        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)

        found = getattr(module, "route", None)
        if found is None:
            found = getattr(module, "routes", None)
        if found is None:
            return []

        loaded = list(found) if isinstance(found, (list, tuple)) else [found]
        for route in loaded:
            if not isinstance(route, Route):
                raise TypeError(f"{file_path} exposes {type(route).__name__}, expected Route")
            self.add_route(route)

        logger.info(f"Loaded {len(loaded)} route(s) from {file_path}")
        return loaded

    def load_routes_directory(self, directory_path: Union[str, Path]) -> List[Route]:
        """
        Load every .py file below a directory (recursively, sorted by path).

        Files starting with "_" are skipped.
        """
        directory_path = Path(directory_path)
        if not directory_path.is_dir():
            raise NotADirectoryError(f"Not a directory: {directory_path}")

        loaded: List[Route] = []
        for entry in sorted(directory_path.iterdir()):
            if entry.is_dir():
                loaded.extend(self.load_routes_directory(entry))
            elif entry.suffix == ".py" and not entry.name.startswith("_"):
                loaded.extend(self.load_routes_file(entry))
        return loaded

    # =========================================================================
    # MATCHING
    # =========================================================================

    @staticmethod
    def _method_matches(route: Route, method: str) -> bool:
        if route.method == ALL_METHODS or route.method == method:
            return True
        # GET routes answer HEAD; the body is dropped at finalization
        return method == "HEAD" and route.method == "GET"

    def match(self, method: str, path: str) -> Optional[RouteMatch]:
        """
        Find the first route matching method and path.

        Path parameters in the result are percent-decoded.
        """
        method = method.upper()

        with self._lock:
            snapshot = [(route, self._compile(route)) for route in self._routes]

        for route, (pattern, names) in snapshot:
            if not self._method_matches(route, method):
                continue

            found = pattern.match(path)
            if found is None:
                continue

            params = {
                name: unquote(value)
                for name, value in zip(names, found.groups())
                if value is not None
            }
            return RouteMatch(route=route, params=params)

        return None

    def __call__(self, context: "Context", next: Next) -> None:
        context.route_parameters = {}

        matched = self.match(context.request.http_method, context.request.path)
        if matched is None:
            next()
            return

        context.route_parameters = matched.params
        run_chain([*matched.route.middlewares, matched.route.handler], context, next)

    # =========================================================================
    # DECORATORS
    # =========================================================================

    def route(
        self,
        method: str,
        path: str,
        middlewares: Optional[Sequence[MiddlewareLike]] = None,
    ) -> RouteDecorator:
        """
        Register the decorated function as a route handler.

            @router.route("PUT", "/users/:id", middlewares=[require_login])
            def update_user(context, next):
                ...
        """

        def decorator(handler: MiddlewareLike) -> MiddlewareLike:
            self.add_route(Route(method, path, handler, list(middlewares or [])))
            return handler

        return decorator

    def get(self, path: str, middlewares: Optional[Sequence[MiddlewareLike]] = None) -> RouteDecorator:
        return self.route("GET", path, middlewares)

    def post(self, path: str, middlewares: Optional[Sequence[MiddlewareLike]] = None) -> RouteDecorator:
        return self.route("POST", path, middlewares)

    def put(self, path: str, middlewares: Optional[Sequence[MiddlewareLike]] = None) -> RouteDecorator:
        return self.route("PUT", path, middlewares)

    def patch(self, path: str, middlewares: Optional[Sequence[MiddlewareLike]] = None) -> RouteDecorator:
        return self.route("PATCH", path, middlewares)

    def delete(self, path: str, middlewares: Optional[Sequence[MiddlewareLike]] = None) -> RouteDecorator:
        return self.route("DELETE", path, middlewares)

    def head(self, path: str, middlewares: Optional[Sequence[MiddlewareLike]] = None) -> RouteDecorator:
        return self.route("HEAD", path, middlewares)

    def options(self, path: str, middlewares: Optional[Sequence[MiddlewareLike]] = None) -> RouteDecorator:
        return self.route("OPTIONS", path, middlewares)

    def all(self, path: str, middlewares: Optional[Sequence[MiddlewareLike]] = None) -> RouteDecorator:
        return self.route(ALL_METHODS, path, middlewares)
