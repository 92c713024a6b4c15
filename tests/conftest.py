"""
pytest configuration and fixtures.
"""

import io
import socket
import threading
from typing import Callable, Dict, Generator, Optional, Tuple

import pytest

# Add src to path for imports
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from onionweb import HTTPServer, ServerConfig
from onionweb.core import WireRequest, WireResponse
from onionweb.http import Context, Headers


class RecordingSink:
    """
    Byte sink that stores everything a WireResponse writes.

    Set accept=False to simulate a client that went away.
    """

    def __init__(self, accept: bool = True):
        self.accept = accept
        self.chunks = []

    def __call__(self, data: bytes) -> bool:
        if not self.accept:
            return False
        self.chunks.append(data)
        return True

    @property
    def data(self) -> bytes:
        return b"".join(self.chunks)

    @property
    def head(self) -> bytes:
        return self.data.split(b"\r\n\r\n", 1)[0]

    @property
    def body(self) -> bytes:
        return self.data.split(b"\r\n\r\n", 1)[1] if b"\r\n\r\n" in self.data else b""

    @property
    def status_line(self) -> str:
        return self.head.split(b"\r\n", 1)[0].decode("latin-1")

    @property
    def status_code(self) -> int:
        return int(self.status_line.split(" ")[1])

    def header(self, name: str) -> Optional[str]:
        for line in self.head.split(b"\r\n")[1:]:
            key, _, value = line.decode("latin-1").partition(":")
            if key.strip().lower() == name.lower():
                return value.strip()
        return None


def make_wire_request(
    method: str = "GET",
    target: str = "/",
    headers: Optional[Dict[str, str]] = None,
    body: bytes = b"",
    version: str = "HTTP/1.1",
    peer_address: Tuple[str, int] = ("127.0.0.1", 54321),
    is_tls: bool = False,
) -> WireRequest:
    """Build a WireRequest; Host defaults to localhost:8080."""
    all_headers = {"Host": "localhost:8080"}
    all_headers.update(headers or {})
    if body and "Content-Length" not in all_headers:
        all_headers["Content-Length"] = str(len(body))
    return WireRequest(
        method=method,
        target=target,
        version=version,
        headers=Headers(all_headers.items()),
        body=io.BytesIO(body),
        peer_address=peer_address,
        is_tls=is_tls,
    )


@pytest.fixture
def wire_request_factory() -> Callable[..., WireRequest]:
    return make_wire_request


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def make_context() -> Callable[..., Tuple[Context, RecordingSink]]:
    """Factory for a Context bound to a RecordingSink."""

    def factory(method: str = "GET", target: str = "/", config: Optional[ServerConfig] = None, **kwargs):
        recording = RecordingSink()
        wire_request = make_wire_request(method, target, **kwargs)
        wire_response = WireResponse(recording, request_method=method, http_version=wire_request.version)
        return Context(wire_request, wire_response, config=config), recording

    return factory


@pytest.fixture
def server() -> HTTPServer:
    """A server that is never started; requests go through dispatch()."""
    return HTTPServer(ServerConfig(min_workers=1, max_workers=2))


@pytest.fixture
def dispatch(server: HTTPServer):
    """
    Run a request through server.dispatch().

    Returns (context, sink).
    """

    def run(method: str = "GET", target: str = "/", **kwargs):
        recording = RecordingSink()
        wire_request = make_wire_request(method, target, **kwargs)
        wire_response = WireResponse(
            recording,
            request_method=method,
            http_version=wire_request.version,
            keep_alive=wire_request.keep_alive,
        )
        context = server.dispatch(wire_request, wire_response)
        return context, recording

    return run


@pytest.fixture
def config() -> ServerConfig:
    """Default test server configuration."""
    return ServerConfig(
        host="127.0.0.1",
        port=0,  # Let OS pick a free port
        min_workers=2,
        max_workers=4,
        timeout=5.0,
    )


@pytest.fixture
def free_port() -> int:
    """Get a free port for testing."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]


class RunningServer:
    """Runs an HTTPServer in a background thread."""

    def __init__(self, server: HTTPServer):
        self.server = server
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> int:
        return self.server.address[1]

    def start(self):
        self._thread = threading.Thread(target=self.server.run, daemon=True)
        self._thread.start()
        if not self.server.wait_until_ready(timeout=5.0):
            raise RuntimeError("Server failed to start")

    def stop(self):
        self.server.shutdown()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=10.0)


@pytest.fixture
def running_server(free_port: int) -> Generator[Callable[..., RunningServer], None, None]:
    """
    Factory starting a server with the given middleware on a free port.

        srv = running_server(router)
        urlopen(f"http://127.0.0.1:{srv.port}/")
    """
    started = []

    def start(*middleware, **config_overrides) -> RunningServer:
        settings = dict(
            host="127.0.0.1",
            port=free_port,
            min_workers=2,
            max_workers=4,
            keep_alive_timeout=1.0,
            log_level="WARNING",
        )
        settings.update(config_overrides)
        http_server = HTTPServer(ServerConfig(**settings))
        for mw in middleware:
            http_server.use(mw)
        srv = RunningServer(http_server)
        srv.start()
        started.append(srv)
        return srv

    yield start

    for srv in started:
        srv.stop()
