"""
=============================================================================
STATIC FILE MIDDLEWARE
=============================================================================

Serves files from one or more directories. Requests that do not map to a
file fall through to the next middleware, so static serving composes with
a router placed after it:

    server.use(StaticMiddleware([
        StaticDirectory("public"),
        StaticDirectory("node_modules/htmx.org/dist", mount_path="/vendor/htmx"),
    ]))
    server.use(router)

=============================================================================
FLOW
=============================================================================

    GET /css/site.css
        │
        ├─ not GET/HEAD ──────────────────────────────► next()
        ├─ metadata cache hit? ──► re-stat, refresh when mtime changed
        │  miss: try each directory in order ──(none)──► next()
        │
        ├─ 200, Last-Modified, Vary: Accept-Encoding
        ├─ request.is_fresh ───────────────────────────► 304, done
        ├─ Content-Type, Content-Length, Cache-Control
        ├─ HEAD ───────────────────────────────────────► done (headers only)
        └─ body = file stream
           (gzip stream instead when the client accepts gzip, the type is
            compressible and the file is larger than 1KB)

=============================================================================
SECURITY: PATH TRAVERSAL
=============================================================================

    GET /../../etc/passwd
    GET /%2e%2e/%2e%2e/etc/passwd

The path is percent-decoded and normalized, then the resolved on-disk path
must still lie inside the directory:

    full_path = (directory / requested).resolve()
    full_path.relative_to(directory)    # raises if outside

Anything that escapes is passed to next() untouched.

=============================================================================
"""

import logging
import posixpath
import threading
import zlib
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO, Dict, List, Optional, Sequence, Union
from urllib.parse import unquote

from ..http.mime_types import DEFAULT_MIME_TYPE, get_mime_type, is_compressible
from .base import Middleware, Next

if TYPE_CHECKING:
    from ..http.context import Context

logger = logging.getLogger(__name__)


DEFAULT_CACHE_CONTROL = "public, max-age=0"
GZIP_MIN_SIZE = 1024
GZIP_CHUNK_SIZE = 64 * 1024


@dataclass
class StaticDirectory:
    """
    A directory to serve.

    Attributes:
        path: Directory on disk
        mount_path: URL prefix the directory is served under ("/assets");
                    None serves it at the root
    """

    path: Union[str, Path]
    mount_path: Optional[str] = None

    def __post_init__(self):
        self.path = Path(self.path).resolve()
        if self.mount_path is not None:
            self.mount_path = "/" + self.mount_path.strip("/")

    def relative_path(self, request_path: str) -> Optional[str]:
        """The part of request_path below this directory's mount, or None."""
        if self.mount_path is None or self.mount_path == "/":
            return request_path
        if request_path == self.mount_path:
            return "/"
        if request_path.startswith(self.mount_path + "/"):
            return request_path[len(self.mount_path):]
        return None

    def resolve(self, request_path: str) -> Optional[Path]:
        """On-disk path for request_path, or None when it escapes the directory."""
        relative = self.relative_path(request_path)
        if relative is None:
            return None

        full_path = (self.path / relative.lstrip("/")).resolve()
        try:
            full_path.relative_to(self.path)
        except ValueError:
            logger.warning(f"Path traversal attempt: {request_path}")
            return None
        return full_path


@dataclass
class StaticFile:
    """Cached metadata for one served file."""

    on_disk_path: Path
    modified_date: datetime
    mtime_ns: int
    size: int
    type: str

    @classmethod
    def from_path(cls, path: Path) -> "StaticFile":
        stat = path.stat()
        return cls(
            on_disk_path=path,
            modified_date=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            mtime_ns=stat.st_mtime_ns,
            size=stat.st_size,
            type=get_mime_type(path, DEFAULT_MIME_TYPE),
        )


class GzipStream:
    """
    File-like reader producing gzip-compressed bytes from another reader.

    Closing it closes the wrapped source.
    """

    def __init__(self, source: BinaryIO, level: int = 6):
        self.source = source
        # wbits=31 writes the gzip header and trailer
        self._compressor = zlib.compressobj(level, zlib.DEFLATED, 31)
        self._pending = b""
        self._finished = False

    def read(self, size: int = -1) -> bytes:
        while not self._finished and (size < 0 or len(self._pending) < size):
            chunk = self.source.read(GZIP_CHUNK_SIZE)
            if chunk:
                self._pending += self._compressor.compress(chunk)
            else:
                self._pending += self._compressor.flush()
                self._finished = True

        if size < 0:
            data, self._pending = self._pending, b""
        else:
            data, self._pending = self._pending[:size], self._pending[size:]
        return data

    def close(self) -> None:
        self.source.close()

    @property
    def closed(self) -> bool:
        return self.source.closed


def normalize_request_path(path: str) -> Optional[str]:
    """
    Percent-decode and normalize a request path.

    Returns None for paths that do not name a file ("/", "/dir/.").
    """
    decoded = unquote(path)
    if "\x00" in decoded:
        return None
    normalized = posixpath.normpath("/" + decoded.lstrip("/"))
    if normalized in ("/", "/.") or posixpath.basename(normalized) in ("", "."):
        return None
    return normalized


class StaticMiddleware(Middleware):
    """
    Serves files with Last-Modified validation and optional gzip.

    Metadata is cached per request path and refreshed whenever the file's
    modification time changes.
    """

    def __init__(
        self,
        directories: Sequence[Union[StaticDirectory, str, Path]],
        cache_control_header: str = DEFAULT_CACHE_CONTROL,
        enable_gzip: bool = True,
    ):
        self.directories: List[StaticDirectory] = [
            d if isinstance(d, StaticDirectory) else StaticDirectory(d) for d in directories
        ]
        self.cache_control_header = cache_control_header
        self.enable_gzip = enable_gzip

        self._file_data_cache: Dict[str, StaticFile] = {}
        self._cache_lock = threading.Lock()

    # =========================================================================
    # FILE LOOKUP
    # =========================================================================

    def _find_file(self, request_path: str) -> Optional[StaticFile]:
        for directory in self.directories:
            full_path = directory.resolve(request_path)
            if full_path is None or not full_path.is_file():
                continue
            return StaticFile.from_path(full_path)
        return None

    def get_file(self, request_path: str) -> Optional[StaticFile]:
        """
        Cached metadata for request_path, refreshed when the file changed.

        Returns None when no directory holds the file.
        """
        with self._cache_lock:
            cached = self._file_data_cache.get(request_path)

        if cached is not None:
            try:
                stat = cached.on_disk_path.stat()
            except FileNotFoundError:
                with self._cache_lock:
                    self._file_data_cache.pop(request_path, None)
                cached = None
            else:
                if stat.st_mtime_ns != cached.mtime_ns:
                    cached = StaticFile.from_path(cached.on_disk_path)
                    with self._cache_lock:
                        self._file_data_cache[request_path] = cached
                return cached

        found = self._find_file(request_path)
        if found is not None:
            with self._cache_lock:
                self._file_data_cache[request_path] = found
        return found

    def get_cache_busted_path(self, file_path: str) -> str:
        """
        Append the file's modification time as a query string.

            get_cache_busted_path("/css/site.css")  →  "/css/site.css?mtime=1700000000000"

        Paths that do not resolve to a served file are returned unchanged.
        """
        normalized = normalize_request_path(file_path)
        if normalized is None:
            return file_path

        try:
            found = self.get_file(normalized)
        except OSError:
            return file_path
        if found is None:
            return file_path

        return f"{file_path}?mtime={found.mtime_ns // 1_000_000}"

    # =========================================================================
    # SERVING
    # =========================================================================

    def __call__(self, context: "Context", next: Next) -> None:
        request = context.request
        response = context.response

        if request.http_method not in ("GET", "HEAD"):
            next()
            return

        request_path = normalize_request_path(request.path)
        if request_path is None:
            next()
            return

        try:
            file = self.get_file(request_path)
        except PermissionError:
            logger.warning(f"Permission denied reading {request_path}")
            file = None
        if file is None:
            next()
            return

        response.status_code = 200
        response.last_modified = file.modified_date
        if self.enable_gzip:
            response.append_vary_header_name("Accept-Encoding")

        if request.is_fresh:
            response.status_code = 304
            return

        response.content_type = file.type
        response.content_length = file.size
        response.set_header_value("Cache-Control", self.cache_control_header)

        if request.http_method == "HEAD":
            return

        stream = open(file.on_disk_path, "rb")

        accepts_gzip = request.accepts.encodings("gzip") == "gzip"
        should_gzip = self.enable_gzip and file.size > GZIP_MIN_SIZE and is_compressible(file.type)

        if accepts_gzip and should_gzip:
            response.remove_header_value("Content-Length")
            response.set_header_value("Content-Encoding", "gzip")
            response.body = GzipStream(stream)
        else:
            response.body = stream
