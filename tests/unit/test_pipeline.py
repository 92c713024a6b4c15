"""
Unit tests for the middleware pipeline and the dispatcher.
"""

import io
import logging

import pytest

from onionweb.core import BodyStreamError, WireResponse
from onionweb.middleware import FunctionMiddleware, Middleware, MiddlewarePipeline, function_middleware, run_chain


class Recorder(Middleware):
    """Middleware that records entry and exit in a shared list."""

    def __init__(self, label, log):
        self.label = label
        self.log = log

    def __call__(self, context, next):
        self.log.append(f"{self.label} in")
        next()
        self.log.append(f"{self.label} out")


class ClosingStream(io.BytesIO):
    def __init__(self, data: bytes):
        super().__init__(data)
        self.close_calls = 0

    def close(self):
        self.close_calls += 1
        super().close()


class BrokenStream:
    def read(self, size=-1):
        raise OSError("disk gone")

    def close(self):
        pass


class PartialStream:
    """Yields one chunk, then fails with a non-I/O error."""

    def __init__(self):
        self.reads = 0

    def read(self, size=-1):
        self.reads += 1
        if self.reads == 1:
            return b"partial"
        raise RuntimeError("decoder blew up")

    def close(self):
        pass


class TestRunChain:
    """Tests for the onion-model primitive."""

    def test_onion_order(self):
        """Middleware unwinds in reverse order."""
        log = []
        run_chain([Recorder("A", log), Recorder("B", log), Recorder("C", log)], context=None)

        assert log == ["A in", "B in", "C in", "C out", "B out", "A out"]

    def test_fallback_runs_after_last(self):
        log = []
        run_chain([Recorder("A", log)], context=None, fallback=lambda: log.append("fallback"))

        assert log == ["A in", "fallback", "A out"]

    def test_short_circuit(self):
        """A middleware that skips next() stops the chain."""
        log = []

        def stop(context, next):
            log.append("stop")

        run_chain([Recorder("A", log), stop, Recorder("C", log)], context=None)

        assert log == ["A in", "stop", "A out"]

    def test_exceptions_propagate(self):
        def fail(context, next):
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            run_chain([fail], context=None)

    def test_empty_chain_calls_fallback(self):
        called = []
        run_chain([], context=None, fallback=lambda: called.append(True))

        assert called == [True]


class TestMiddlewarePipeline:
    """Tests for MiddlewarePipeline."""

    def test_use_appends_in_order(self):
        log = []
        pipeline = MiddlewarePipeline()
        pipeline.use(Recorder("A", log), Recorder("B", log))
        pipeline.run(context=None)

        assert len(pipeline) == 2
        assert log == ["A in", "B in", "B out", "A out"]

    def test_rejects_non_callable(self):
        with pytest.raises(TypeError):
            MiddlewarePipeline().add("not middleware")

    def test_run_uses_snapshot(self):
        """Middleware added during a run does not join that run."""
        log = []
        pipeline = MiddlewarePipeline()

        def adder(context, next):
            pipeline.add(Recorder("late", log))
            next()

        pipeline.add(adder)
        pipeline.run(context=None)

        assert log == []
        assert len(pipeline) == 2

    def test_function_middleware_name(self):
        @function_middleware
        def timing(context, next):
            next()

        assert isinstance(timing, FunctionMiddleware)
        assert timing.name == "timing"
        assert FunctionMiddleware(lambda c, n: n(), name="custom").name == "custom"


class TestDispatch:
    """Tests for HTTPServer.dispatch() and finalization."""

    def test_unhandled_request_is_404(self, dispatch):
        context, sink = dispatch("GET", "/nothing")

        assert sink.status_code == 404
        assert sink.body == b"404"
        assert sink.header("Content-Type") == "text/plain; charset=utf-8"
        assert sink.header("Content-Length") == "3"
        assert not context.response.has_explicitly_set_status_code

    def test_string_body(self, server, dispatch):
        server.use(lambda context, next: setattr(context.response, "body", "hello"))
        _, sink = dispatch()

        assert sink.status_line == "HTTP/1.1 200 OK"
        assert sink.body == b"hello"
        assert sink.header("Content-Length") == "5"

    def test_json_body(self, server, dispatch):
        def handler(context, next):
            context.response.status_code = 201
            context.response.body = {"id": 7}

        server.use(handler)
        _, sink = dispatch("POST", "/users")

        assert sink.status_code == 201
        assert sink.body == b'{"id": 7}'
        assert sink.header("Content-Length") == "9"
        assert sink.header("Content-Type") == "application/json; charset=utf-8"

    def test_middleware_runs_after_handler(self, server, dispatch):
        """Outer middleware can change the response after next() returns."""

        def add_header(context, next):
            next()
            context.response.set_header_value("X-Status-Seen", str(context.response.status_code))

        def handler(context, next):
            context.response.body = "ok"

        server.use(add_header).use(handler)
        _, sink = dispatch()

        assert sink.header("X-Status-Seen") == "200"

    @pytest.mark.parametrize("status", [204, 205, 304])
    def test_empty_body_statuses(self, server, dispatch, status):
        def handler(context, next):
            context.response.body = "ignored"
            context.response.set_header_value("Content-Type", "text/plain")
            context.response.status_code = status

        server.use(handler)
        _, sink = dispatch()

        assert sink.status_code == status
        assert sink.body == b""
        assert sink.header("Content-Length") is None
        assert sink.header("Content-Type") is None

    def test_none_body_is_204(self, server, dispatch):
        server.use(lambda context, next: setattr(context.response, "body", None))
        _, sink = dispatch()

        assert sink.status_code == 204
        assert sink.body == b""

    def test_explicit_null_with_200(self, server, dispatch):
        def handler(context, next):
            context.response.body = None
            context.response.status_code = 200

        server.use(handler)
        _, sink = dispatch()

        assert sink.status_code == 200
        assert sink.header("Content-Length") == "0"
        assert sink.header("Content-Type") is None

    def test_head_sends_length_without_body(self, server, dispatch):
        server.use(lambda context, next: setattr(context.response, "body", {"a": 1}))
        _, sink = dispatch("HEAD", "/")

        assert sink.status_code == 200
        assert sink.header("Content-Length") == "8"
        assert sink.body == b""

    def test_head_404(self, dispatch):
        _, sink = dispatch("HEAD", "/missing")

        assert sink.status_code == 404
        assert sink.body == b""

    def test_error_status_without_body(self, server, dispatch):
        server.use(lambda context, next: setattr(context.response, "status_code", 403))
        _, sink = dispatch()

        assert sink.status_code == 403
        assert sink.body == b"403"

    def test_stream_is_chunked_and_closed(self, server, dispatch):
        stream = ClosingStream(b"streamed data")
        server.use(lambda context, next: setattr(context.response, "body", stream))
        _, sink = dispatch()

        assert sink.header("Transfer-Encoding") == "chunked"
        assert sink.body == b"d\r\nstreamed data\r\n0\r\n\r\n"
        assert stream.close_calls == 1

    def test_stream_with_content_length(self, server, dispatch):
        stream = ClosingStream(b"12345")

        def handler(context, next):
            context.response.body = stream
            context.response.content_length = 5

        server.use(handler)
        _, sink = dispatch()

        assert sink.header("Transfer-Encoding") is None
        assert sink.body == b"12345"

    def test_stream_on_http_10_closes_connection(self, server, dispatch):
        server.use(lambda context, next: setattr(context.response, "body", ClosingStream(b"abc")))
        context, sink = dispatch("GET", "/", version="HTTP/1.0")

        assert sink.header("Connection") == "close"
        assert sink.body == b"abc"
        assert not context.wire_response.keep_alive

    def test_broken_stream_propagates(self, server, dispatch):
        server.use(lambda context, next: setattr(context.response, "body", BrokenStream()))

        with pytest.raises(BodyStreamError):
            dispatch()

    def test_non_io_stream_failure_aborts_without_terminator(self, server, sink, wire_request_factory):
        """A stream raising mid-body must not be framed as a complete response."""
        server.use(lambda context, next: setattr(context.response, "body", PartialStream()))
        wire_request = wire_request_factory("GET", "/")
        wire = WireResponse(sink, request_method="GET", http_version="HTTP/1.1", keep_alive=True)

        with pytest.raises(BodyStreamError):
            server.dispatch(wire_request, wire)

        assert b"partial" in sink.body
        assert not sink.data.endswith(b"0\r\n\r\n")
        assert wire.closed
        assert not wire.keep_alive
        assert not wire.finished

    def test_handler_error_is_500(self, server, dispatch, caplog):
        def handler(context, next):
            context.response.set_header_value("X-Leaked", "1")
            raise ValueError("broken handler")

        server.use(handler)
        with caplog.at_level(logging.ERROR, logger="onionweb.server"):
            _, sink = dispatch()

        assert sink.status_code == 500
        assert sink.body == b"Internal Server Error"
        assert sink.header("Content-Type") == "text/plain; charset=utf-8"
        assert sink.header("X-Leaked") is None
        assert "broken handler" in caplog.text

    def test_error_after_headers_sent(self, server, dispatch):
        def handler(context, next):
            context.response.status_code = 200
            context.response.flush_headers()
            raise RuntimeError("too late")

        server.use(handler)
        context, sink = dispatch()

        assert sink.status_code == 200
        assert sink.body == b""
        assert context.wire_response.closed
        assert not context.wire_response.keep_alive
        assert not context.wire_response.finished

    def test_unserializable_json_is_500(self, server, dispatch):
        server.use(lambda context, next: setattr(context.response, "body", {"x": object()}))
        _, sink = dispatch()

        assert sink.status_code == 500

    def test_context_state_is_shared(self, server, dispatch):
        def first(context, next):
            context.state["user"] = "ada"
            next()

        def second(context, next):
            context.response.body = context.state["user"]

        server.use(first).use(second)
        _, sink = dispatch()

        assert sink.body == b"ada"

    def test_client_gone_before_write(self, server, wire_request_factory):
        """A sink that rejects writes closes the response quietly."""
        server.use(lambda context, next: setattr(context.response, "body", "lost"))
        wire_response = WireResponse(lambda data: False)
        context = server.dispatch(wire_request_factory(), wire_response)

        assert wire_response.closed
        assert not context.response.is_writable
