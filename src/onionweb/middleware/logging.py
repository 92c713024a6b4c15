"""
=============================================================================
REQUEST LOGGING MIDDLEWARE
=============================================================================

Logs one line when a request enters the chain and one when it leaves:

    Request 17 | 203.0.113.5 | GET | /users/42 | Start
    Request 17 | 203.0.113.5 | GET | /users/42 | End | Status Code: 200 | 3.21ms

Both lines go to the "onionweb.access" logger, so access logs can be routed
independently of framework logs:

    logging.getLogger("onionweb.access").addHandler(file_handler)

=============================================================================
THE REQUEST NUMBER
=============================================================================

Request numbers come from one counter shared by the whole process:

    - it starts at 1 when this module is imported
    - every LogRequestMiddleware instance draws from it
    - it is never reset, and starts over when the process restarts

It exists to correlate the start and end lines of one request in a log.
It is not a durable sequence number and must not be stored as an ID.

=============================================================================
TEMPLATES
=============================================================================

Templates are str.format() strings. Available fields:

    {request_number}  {ip}  {method}  {path}
    {status_code}  {duration_ms}     (end template only)

With log_format="json", each line is instead a JSON object with the same
fields plus an "event" key ("start" or "end").

=============================================================================
"""

import itertools
import json
import logging
import threading
import time
from typing import TYPE_CHECKING, Any, Dict, Iterable, Optional

from .base import Middleware, Next

if TYPE_CHECKING:
    from ..http.context import Context

logger = logging.getLogger("onionweb.access")


DEFAULT_START_TEMPLATE = "Request {request_number} | {ip} | {method} | {path} | Start"
DEFAULT_END_TEMPLATE = (
    "Request {request_number} | {ip} | {method} | {path} | End | "
    "Status Code: {status_code} | {duration_ms:.2f}ms"
)

# ─────────────────────────────────────────────────────────────────────────────
# Process-wide request counter
# ─────────────────────────────────────────────────────────────────────────────
_request_counter = itertools.count(1)
_request_counter_lock = threading.Lock()


def next_request_number() -> int:
    with _request_counter_lock:
        return next(_request_counter)


class LogRequestMiddleware(Middleware):
    """
    Access logging with start/end lines and a request number.

    Place it first so it sees every request, including those short-circuited
    by later middleware:

        server.use(LogRequestMiddleware())
        server.use(CORSMiddleware())
        server.use(router)

    Also sets context.request_number for downstream middleware.
    """

    def __init__(
        self,
        start_message_template: str = DEFAULT_START_TEMPLATE,
        end_message_template: str = DEFAULT_END_TEMPLATE,
        log_format: str = "text",
        log_level: int = logging.INFO,
        skip_paths: Optional[Iterable[str]] = None,
    ):
        if log_format not in ("text", "json"):
            raise ValueError(f"Invalid log format: {log_format}")

        self.start_message_template = start_message_template
        self.end_message_template = end_message_template
        self.log_format = log_format
        self.log_level = log_level
        self.skip_paths = set(skip_paths or [])

    def __call__(self, context: "Context", next: Next) -> None:
        request = context.request
        request_number = next_request_number()
        context.request_number = request_number

        fields: Dict[str, Any] = {
            "request_number": request_number,
            "ip": request.ip,
            "method": request.http_method,
            "path": request.path,
        }
        skip = request.path in self.skip_paths

        if not skip:
            self._emit("start", self.start_message_template, fields)

        start_time = time.time()
        try:
            next()
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            logger.error(
                f"Request {request_number} failed: {request.http_method} {request.path} "
                f"- {type(e).__name__}: {e} ({duration_ms:.2f}ms)"
            )
            raise

        if skip:
            return

        fields["status_code"] = context.response.status_code
        fields["duration_ms"] = (time.time() - start_time) * 1000
        self._emit("end", self.end_message_template, fields)

    def _emit(self, event: str, template: str, fields: Dict[str, Any]) -> None:
        if self.log_format == "json":
            record = {"event": event, **fields}
            if "duration_ms" in record:
                record["duration_ms"] = round(record["duration_ms"], 2)
            logger.log(self.log_level, json.dumps(record))
        else:
            logger.log(self.log_level, template.format(**fields))
