"""
Integration tests: a real server on a local socket.
"""

import http.client
import json
import socket

import pytest

from onionweb.middleware import (
    BodyParserMiddleware,
    CORSMiddleware,
    LogRequestMiddleware,
    RouterMiddleware,
    StaticMiddleware,
)


def build_router():
    router = RouterMiddleware()

    @router.get("/hello/:name")
    def hello(context, next):
        context.response.body = f"Hello, {context.route_parameters['name']}!"

    @router.post("/echo")
    def echo(context, next):
        context.response.body = {"fields": context.parsed_body.fields}

    @router.get("/boom")
    def boom(context, next):
        raise RuntimeError("handler exploded")

    return router


@pytest.fixture
def app(running_server):
    return running_server(LogRequestMiddleware(), CORSMiddleware(), BodyParserMiddleware(), build_router())


def raw_exchange(port, data, read_until_close=True):
    with socket.create_connection(("127.0.0.1", port), timeout=5.0) as sock:
        sock.sendall(data)
        chunks = []
        while True:
            chunk = sock.recv(65536)
            if not chunk:
                break
            chunks.append(chunk)
            if not read_until_close:
                break
        return b"".join(chunks)


class TestServer:
    """End-to-end requests over TCP."""

    def test_route(self, app):
        conn = http.client.HTTPConnection("127.0.0.1", app.port, timeout=5.0)
        conn.request("GET", "/hello/world")
        response = conn.getresponse()

        assert response.status == 200
        assert response.read() == b"Hello, world!"
        assert response.getheader("Access-Control-Allow-Origin") == "*"
        assert response.getheader("Server") == "onionweb/1.0"
        conn.close()

    def test_unknown_path_is_404(self, app):
        conn = http.client.HTTPConnection("127.0.0.1", app.port, timeout=5.0)
        conn.request("GET", "/missing")
        response = conn.getresponse()

        assert response.status == 404
        assert response.read() == b"404"
        conn.close()

    def test_json_post(self, app):
        conn = http.client.HTTPConnection("127.0.0.1", app.port, timeout=5.0)
        conn.request(
            "POST",
            "/echo",
            body=json.dumps({"name": "Ada"}),
            headers={"Content-Type": "application/json"},
        )
        response = conn.getresponse()

        assert response.status == 200
        assert json.loads(response.read()) == {"fields": {"name": "Ada"}}
        conn.close()

    def test_handler_error_is_500(self, app):
        conn = http.client.HTTPConnection("127.0.0.1", app.port, timeout=5.0)
        conn.request("GET", "/boom")
        response = conn.getresponse()

        assert response.status == 500
        assert response.read() == b"Internal Server Error"
        conn.close()

    def test_keep_alive_reuses_connection(self, app):
        conn = http.client.HTTPConnection("127.0.0.1", app.port, timeout=5.0)

        conn.request("GET", "/hello/one")
        first = conn.getresponse()
        assert first.read() == b"Hello, one!"
        assert first.getheader("Connection") == "keep-alive"
        assert first.getheader("Keep-Alive") == "timeout=1"
        local_port = conn.sock.getsockname()[1]

        conn.request("GET", "/hello/two")
        second = conn.getresponse()
        assert second.read() == b"Hello, two!"
        assert conn.sock.getsockname()[1] == local_port
        conn.close()

    def test_connection_close(self, app):
        data = raw_exchange(
            app.port,
            b"GET /hello/bye HTTP/1.1\r\nHost: localhost\r\nConnection: close\r\n\r\n",
        )

        assert data.startswith(b"HTTP/1.1 200 OK\r\n")
        assert b"Connection: close\r\n" in data
        assert b"Keep-Alive" not in data
        assert data.endswith(b"Hello, bye!")

    def test_head(self, app):
        data = raw_exchange(
            app.port,
            b"HEAD /hello/head HTTP/1.1\r\nHost: localhost\r\nConnection: close\r\n\r\n",
        )

        assert b"Content-Length: 12\r\n" in data
        assert data.endswith(b"\r\n\r\n")

    def test_malformed_request_is_400(self, app):
        data = raw_exchange(app.port, b"NONSENSE\r\n\r\n")

        assert data.startswith(b"HTTP/1.1 400 Bad Request\r\n")
        assert b"Connection: close" in data

    def test_unknown_method_is_405(self, app):
        data = raw_exchange(app.port, b"BREW /pot HTTP/1.1\r\nHost: localhost\r\n\r\n")

        assert data.startswith(b"HTTP/1.1 405 ")

    def test_chunked_upload_is_411(self, app):
        data = raw_exchange(
            app.port,
            b"POST /echo HTTP/1.1\r\nHost: localhost\r\nTransfer-Encoding: chunked\r\n\r\n0\r\n\r\n",
        )

        assert data.startswith(b"HTTP/1.1 411 ")

    def test_http_10_closes_by_default(self, app):
        data = raw_exchange(app.port, b"GET /hello/old HTTP/1.0\r\n\r\n")

        assert data.startswith(b"HTTP/1.1 200 OK\r\n")
        assert b"Connection: close\r\n" in data
        assert data.endswith(b"Hello, old!")


class TestStaticOverSocket:
    def test_serves_file(self, running_server, tmp_path):
        (tmp_path / "hello.txt").write_text("static hello")
        srv = running_server(StaticMiddleware([tmp_path]))

        conn = http.client.HTTPConnection("127.0.0.1", srv.port, timeout=5.0)
        conn.request("GET", "/hello.txt")
        response = conn.getresponse()

        assert response.status == 200
        assert response.getheader("Content-Type") == "text/plain; charset=utf-8"
        assert response.read() == b"static hello"
        conn.close()
