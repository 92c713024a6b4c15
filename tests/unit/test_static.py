"""
Unit tests for StaticMiddleware.
"""

import gzip
import os

import pytest

from onionweb.middleware import StaticDirectory, StaticMiddleware
from onionweb.middleware.static import GzipStream, normalize_request_path

FUTURE = "Wed, 01 Jan 2200 00:00:00 GMT"
PAST = "Mon, 01 Jan 1990 00:00:00 GMT"


@pytest.fixture
def public(tmp_path):
    root = tmp_path / "public"
    (root / "css").mkdir(parents=True)
    (root / "index.html").write_text("<h1>Home</h1>")
    (root / "css" / "site.css").write_text("body { color: red; }\n" * 200)
    (root / "data.bin").write_bytes(os.urandom(2048))
    (tmp_path / "secret.txt").write_text("top secret")
    return root


class TestNormalizeRequestPath:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("/index.html", "/index.html"),
            ("/css/../index.html", "/index.html"),
            ("/a%20b.txt", "/a b.txt"),
            ("/../secret.txt", "/secret.txt"),
            ("/", None),
            ("/css/.", "/css"),
            ("/bad%00name", None),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize_request_path(raw) == expected


class TestStaticDirectory:
    def test_resolve_inside(self, public):
        directory = StaticDirectory(public)

        assert directory.resolve("/css/site.css") == (public / "css" / "site.css").resolve()

    def test_resolve_rejects_traversal(self, public):
        assert StaticDirectory(public).resolve("/../secret.txt") is None

    def test_mount_path(self, public):
        directory = StaticDirectory(public, mount_path="assets/")

        assert directory.mount_path == "/assets"
        assert directory.relative_path("/assets/css/site.css") == "/css/site.css"
        assert directory.relative_path("/assetsx/site.css") is None
        assert directory.relative_path("/other") is None


class TestStaticMiddleware:
    """Tests for serving files through the pipeline."""

    def test_serves_file(self, public, server, dispatch):
        server.use(StaticMiddleware([public]))
        _, sink = dispatch("GET", "/index.html")

        assert sink.status_code == 200
        assert sink.body == b"<h1>Home</h1>"
        assert sink.header("Content-Type") == "text/html; charset=utf-8"
        assert sink.header("Content-Length") == "13"
        assert sink.header("Cache-Control") == "public, max-age=0"
        assert sink.header("Vary") == "Accept-Encoding"
        assert sink.header("Last-Modified") is not None

    def test_missing_file_falls_through(self, public, server, dispatch):
        server.use(StaticMiddleware([public]))
        _, sink = dispatch("GET", "/missing.txt")

        assert sink.status_code == 404

    def test_directory_falls_through(self, public, server, dispatch):
        server.use(StaticMiddleware([public]))
        _, sink = dispatch("GET", "/css")

        assert sink.status_code == 404

    def test_post_falls_through(self, public, server, dispatch):
        server.use(StaticMiddleware([public]))
        _, sink = dispatch("POST", "/index.html")

        assert sink.status_code == 404

    def test_traversal_is_not_served(self, public, server, dispatch):
        server.use(StaticMiddleware([public]))
        _, sink = dispatch("GET", "/%2e%2e/secret.txt")

        assert sink.status_code == 404
        assert b"top secret" not in sink.data

    def test_head(self, public, server, dispatch):
        server.use(StaticMiddleware([public]))
        _, sink = dispatch("HEAD", "/index.html")

        assert sink.status_code == 200
        assert sink.header("Content-Length") == "13"
        assert sink.body == b""

    def test_not_modified(self, public, server, dispatch):
        server.use(StaticMiddleware([public]))
        _, sink = dispatch("GET", "/index.html", headers={"If-Modified-Since": FUTURE})

        assert sink.status_code == 304
        assert sink.body == b""
        assert sink.header("Content-Length") is None

    def test_modified(self, public, server, dispatch):
        server.use(StaticMiddleware([public]))
        _, sink = dispatch("GET", "/index.html", headers={"If-Modified-Since": PAST})

        assert sink.status_code == 200
        assert sink.body == b"<h1>Home</h1>"

    def test_mounted_directory(self, public, server, dispatch):
        server.use(StaticMiddleware([StaticDirectory(public, mount_path="/assets")]))

        _, mounted = dispatch("GET", "/assets/index.html")
        _, unmounted = dispatch("GET", "/index.html")

        assert mounted.body == b"<h1>Home</h1>"
        assert unmounted.status_code == 404

    def test_first_directory_wins(self, public, tmp_path, server, dispatch):
        other = tmp_path / "other"
        other.mkdir()
        (other / "index.html").write_text("other")
        (other / "only-here.txt").write_text("fallback dir")

        server.use(StaticMiddleware([public, other]))

        _, first = dispatch("GET", "/index.html")
        _, second = dispatch("GET", "/only-here.txt")

        assert first.body == b"<h1>Home</h1>"
        assert second.body == b"fallback dir"

    def test_gzip(self, public, make_context):
        context, _ = make_context("GET", "/css/site.css", headers={"Accept-Encoding": "gzip, deflate"})
        StaticMiddleware([public])(context, lambda: None)
        response = context.response

        assert response.get_header_value("Content-Encoding") == "gzip"
        assert response.get_header_value("Content-Length") is None
        assert isinstance(response.body, GzipStream)

        compressed = response.body.read()
        response.body.close()
        assert gzip.decompress(compressed) == (public / "css" / "site.css").read_bytes()

    def test_no_gzip_without_accept_encoding(self, public, make_context):
        context, _ = make_context("GET", "/css/site.css")
        StaticMiddleware([public])(context, lambda: None)

        assert context.response.get_header_value("Content-Encoding") is None
        context.response.body.close()

    def test_no_gzip_for_binary(self, public, make_context):
        context, _ = make_context("GET", "/data.bin", headers={"Accept-Encoding": "gzip"})
        StaticMiddleware([public])(context, lambda: None)

        assert context.response.get_header_value("Content-Encoding") is None
        assert context.response.content_length == 2048
        context.response.body.close()

    def test_gzip_disabled(self, public, make_context):
        context, _ = make_context("GET", "/css/site.css", headers={"Accept-Encoding": "gzip"})
        StaticMiddleware([public], enable_gzip=False)(context, lambda: None)

        assert context.response.get_header_value("Content-Encoding") is None
        assert context.response.get_header_value("Vary") is None
        context.response.body.close()

    def test_file_is_closed_after_response(self, public, server, dispatch):
        server.use(StaticMiddleware([public]))
        context, _ = dispatch("GET", "/index.html")

        assert context.response.body.closed


class TestFileCache:
    """Tests for the metadata cache."""

    def test_refreshes_on_change(self, public):
        static = StaticMiddleware([public])
        target = public / "index.html"

        first = static.get_file("/index.html")
        target.write_text("<h1>Changed home page</h1>")
        os.utime(target, ns=(first.mtime_ns + 5_000_000_000, first.mtime_ns + 5_000_000_000))
        second = static.get_file("/index.html")

        assert second.size == len("<h1>Changed home page</h1>")
        assert second.mtime_ns == first.mtime_ns + 5_000_000_000

    def test_evicts_deleted_file(self, public):
        static = StaticMiddleware([public])

        assert static.get_file("/index.html") is not None
        (public / "index.html").unlink()
        assert static.get_file("/index.html") is None

    def test_cache_busted_path(self, public):
        static = StaticMiddleware([public])
        target = public / "css" / "site.css"
        os.utime(target, ns=(1_700_000_000_000_000_000, 1_700_000_000_000_000_000))

        assert static.get_cache_busted_path("/css/site.css") == "/css/site.css?mtime=1700000000000"

    def test_cache_busted_path_unknown_file(self, public):
        assert StaticMiddleware([public]).get_cache_busted_path("/nope.js") == "/nope.js"
