"""
=============================================================================
MIDDLEWARE CONTRACT AND PIPELINE
=============================================================================

A middleware is any callable taking the request Context and a `next`
continuation:

    def middleware(context: Context, next: Next) -> None:
        ...               # runs on the way in
        next()            # runs the rest of the chain, returns when it is done
        ...               # runs on the way out

=============================================================================
THE ONION MODEL
=============================================================================

    use(A); use(B); use(C)

    ┌─────────────────────────────────────────────────────────────┐
    │ A before                                                    │
    │   ┌─────────────────────────────────────────────────────┐   │
    │   │ B before                                            │   │
    │   │   ┌─────────────────────────────────────────────┐   │   │
    │   │   │ C before                                    │   │   │
    │   │   │              (fallback)                     │   │   │
    │   │   │ C after                                     │   │   │
    │   │   └─────────────────────────────────────────────┘   │   │
    │   │ B after                                             │   │
    │   └─────────────────────────────────────────────────────┘   │
    │ A after                                                     │
    └─────────────────────────────────────────────────────────────┘

A middleware that never calls next() short-circuits everything inside it.

Calling next() more than once advances the cursor again and re-enters later
middleware. That behavior is undefined and deliberately left unguarded.

=============================================================================
ONE PRIMITIVE, TWO USERS
=============================================================================

run_chain(middlewares, context, fallback) walks a list with a cursor. The
server uses it for the application chain (fallback: nothing, the response
stays 404), and RouterMiddleware uses it for a matched route's own
middlewares + handler (fallback: the router's outer next). Ordering rules
are therefore identical at both levels.

=============================================================================
"""

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Callable, Iterator, List, Optional, Sequence, Union

if TYPE_CHECKING:
    from ..http.context import Context

logger = logging.getLogger(__name__)


# next(): runs the remainder of the chain
Next = Callable[[], None]

MiddlewareFunction = Callable[["Context", Next], None]


class Middleware(ABC):
    """
    Base class for class-based middleware.

    Subclasses implement __call__(context, next). Plain functions with the
    same signature work anywhere a Middleware does.
    """

    @abstractmethod
    def __call__(self, context: "Context", next: Next) -> None:
        """
        Process the request.

        Args:
            context: The request Context
            next: Continuation running the rest of the chain
        """

    @property
    def name(self) -> str:
        return self.__class__.__name__


MiddlewareLike = Union[Middleware, MiddlewareFunction]


def middleware_name(middleware: MiddlewareLike) -> str:
    name = getattr(middleware, "name", None)
    if isinstance(name, str):
        return name
    return getattr(middleware, "__name__", type(middleware).__name__)


def run_chain(
    middlewares: Sequence[MiddlewareLike],
    context: "Context",
    fallback: Optional[Next] = None,
) -> None:
    """
    Run middlewares in order with the onion model.

    Args:
        middlewares: The chain, outermost first
        context: Passed to every middleware
        fallback: Called when the last middleware calls next()

    Exceptions raised anywhere in the chain propagate to the caller.
    """
    index = -1

    def run_next() -> None:
        nonlocal index
        index += 1
        if index < len(middlewares):
            middlewares[index](context, run_next)
        elif fallback is not None:
            fallback()

    run_next()


class MiddlewarePipeline:
    """
    Ordered, mutable list of middleware.

    Usage:
        pipeline = MiddlewarePipeline()
        pipeline.add(LogRequestMiddleware())
        pipeline.use(CORSMiddleware(), router)
        pipeline.run(context)
    """

    def __init__(self):
        self._middleware: List[MiddlewareLike] = []

    def add(self, middleware: MiddlewareLike) -> "MiddlewarePipeline":
        """Append one middleware (first added = outermost)."""
        if not callable(middleware):
            raise TypeError(f"Middleware must be callable, got {type(middleware).__name__}")
        self._middleware.append(middleware)
        logger.debug(f"Added middleware: {middleware_name(middleware)}")
        return self

    def use(self, *middleware: MiddlewareLike) -> "MiddlewarePipeline":
        for mw in middleware:
            self.add(mw)
        return self

    def run(self, context: "Context", fallback: Optional[Next] = None) -> None:
        """Run a snapshot of the chain against a context."""
        run_chain(list(self._middleware), context, fallback)

    def __len__(self) -> int:
        return len(self._middleware)

    def __iter__(self) -> Iterator[MiddlewareLike]:
        return iter(list(self._middleware))


class FunctionMiddleware(Middleware):
    """
    Wraps a plain function as a named Middleware.

    Usage:
        def add_header(context, next):
            next()
            context.response.set_header_value("X-Custom", "value")

        pipeline.add(FunctionMiddleware(add_header, name="add_header"))
    """

    def __init__(self, func: MiddlewareFunction, name: Optional[str] = None):
        self._func = func
        self._name = name or func.__name__

    def __call__(self, context: "Context", next: Next) -> None:
        self._func(context, next)

    @property
    def name(self) -> str:
        return self._name


def function_middleware(func: MiddlewareFunction) -> FunctionMiddleware:
    """
    Decorator turning a function into a FunctionMiddleware.

        @function_middleware
        def timing(context, next):
            start = time.perf_counter()
            next()
            elapsed = time.perf_counter() - start
            context.response.set_header_value("X-Response-Time", f"{elapsed:.3f}s")
    """
    return FunctionMiddleware(func)
