"""
Unit tests for the response facade.
"""

import io
from dataclasses import dataclass
from datetime import datetime, timezone

import pytest

from onionweb.http import HeadersAlreadySentError, ResponseConfigurationError
from onionweb.http.response import content_disposition


class TrackedStream(io.BytesIO):
    """BytesIO that counts close() calls."""

    def __init__(self, data: bytes = b""):
        super().__init__(data)
        self.close_calls = 0

    def close(self):
        self.close_calls += 1
        super().close()


class TestBodyAssignment:
    """Tests for the body state machine."""

    def test_html_string(self, make_context):
        """Strings starting with '<' are HTML."""
        context, _ = make_context()
        response = context.response
        response.body = "  <h1>Hi</h1>"

        assert response.status_code == 200
        assert response.get_header_value("Content-Type") == "text/html; charset=utf-8"
        assert response.get_header_value("Content-Length") == "13"

    def test_plain_string_length_is_utf8_bytes(self, make_context):
        context, _ = make_context()
        response = context.response
        response.body = "héllo"

        assert response.get_header_value("Content-Type") == "text/plain; charset=utf-8"
        assert response.content_length == 6

    def test_bytes(self, make_context):
        context, _ = make_context()
        response = context.response
        response.body = b"\x00\x01\x02"

        assert response.content_type == "application/octet-stream"
        assert response.content_length == 3

    def test_existing_content_type_is_kept(self, make_context):
        """Text and byte bodies do not override an existing Content-Type."""
        context, _ = make_context()
        response = context.response
        response.content_type = "xml"
        response.body = "<root/>"

        assert response.content_type == "application/xml"

    def test_json_body(self, make_context):
        """Other objects become JSON with no Content-Length until finalization."""
        context, _ = make_context()
        response = context.response
        response.set_header_value("Content-Length", "99")
        response.body = {"name": "Ada"}

        assert response.content_type == "application/json"
        assert not response.has_header("Content-Length")
        assert response.content_length == len('{"name": "Ada"}')

    def test_json_always_overrides_content_type(self, make_context):
        context, _ = make_context()
        response = context.response
        response.content_type = "html"
        response.body = [1, 2, 3]

        assert response.content_type == "application/json"

    def test_serialized_json_handles_common_types(self, make_context):
        @dataclass
        class Point:
            x: int
            y: int

        context, _ = make_context()
        response = context.response
        response.body = {
            "when": datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
            "point": Point(1, 2),
        }

        assert response.serialized_json() == (
            '{"when": "2024-01-02T03:04:05+00:00", "point": {"x": 1, "y": 2}}'
        )

    def test_explicit_status_is_kept(self, make_context):
        """A body does not override an explicitly set status."""
        context, _ = make_context()
        response = context.response
        response.status_code = 201
        response.body = {"id": 1}

        assert response.status_code == 201
        assert response.has_explicitly_set_status_code

    def test_none_body_sets_204(self, make_context):
        context, _ = make_context()
        response = context.response
        response.body = "text"
        response.body = None

        assert response.status_code == 204
        assert not response.has_explicitly_set_status_code
        assert response.has_explicitly_null_body
        assert not response.has_header("Content-Type")
        assert not response.has_header("Content-Length")

    def test_none_body_with_json_type_becomes_null(self, make_context):
        context, _ = make_context()
        response = context.response
        response.content_type = "json"
        response.body = None

        assert response.body == "null"
        assert response.status_code == 200
        assert not response.has_explicitly_null_body

    def test_none_body_keeps_empty_status(self, make_context):
        context, _ = make_context()
        response = context.response
        response.status_code = 304
        response.body = None

        assert response.status_code == 304

    def test_empty_status_clears_body(self, make_context):
        """Setting 204/205/304 discards the current body."""
        context, _ = make_context()
        response = context.response
        response.body = "content"
        response.status_code = 204

        assert response.body is None
        assert not response.has_header("Content-Length")

    def test_non_null_body_resets_explicit_null(self, make_context):
        context, _ = make_context()
        response = context.response
        response.body = None
        response.body = "again"

        assert not response.has_explicitly_null_body


class TestStreams:
    """Tests for stream bodies."""

    def test_stream_body(self, make_context):
        context, _ = make_context()
        response = context.response
        stream = TrackedStream(b"data")
        response.body = stream

        assert response.content_type == "application/octet-stream"
        assert response.content_length is None

    def test_replacing_body_with_stream_removes_length(self, make_context):
        context, _ = make_context()
        response = context.response
        response.body = "abc"
        response.body = TrackedStream(b"data")

        assert not response.has_header("Content-Length")

    def test_stream_closed_once_on_finish(self, make_context):
        """A stream assigned twice is still closed exactly once."""
        context, _ = make_context()
        response = context.response
        stream = TrackedStream(b"data")
        response.body = stream
        response.body = stream
        response.body = "replaced"

        context.wire_response.end()

        assert stream.close_calls == 1

    def test_replaced_stream_closed_on_finish(self, make_context):
        context, _ = make_context()
        response = context.response
        first = TrackedStream(b"one")
        second = TrackedStream(b"two")
        response.body = first
        response.body = second

        context.wire_response.pipe(second)

        assert first.close_calls == 1
        assert second.close_calls == 1


class TestHeaders:
    """Tests for header mutation rules."""

    def test_transfer_encoding_removes_content_length(self, make_context):
        context, _ = make_context()
        response = context.response
        response.body = "abc"
        response.set_header_value("Transfer-Encoding", "chunked")

        assert not response.has_header("Content-Length")

    def test_content_length_with_transfer_encoding_raises(self, make_context):
        context, _ = make_context()
        response = context.response
        response.set_header_value("Transfer-Encoding", "chunked")

        with pytest.raises(ResponseConfigurationError):
            response.set_header_value("Content-Length", "3")
        with pytest.raises(ResponseConfigurationError):
            response.content_length = 3

    def test_body_length_skipped_with_transfer_encoding(self, make_context):
        context, _ = make_context()
        response = context.response
        response.set_header_value("Transfer-Encoding", "chunked")
        response.body = "abc"

        assert not response.has_header("Content-Length")

    def test_invalid_status_raises(self, make_context):
        context, _ = make_context()

        with pytest.raises(ResponseConfigurationError):
            context.response.status_code = 42

    def test_mutation_after_headers_sent_raises(self, make_context):
        context, _ = make_context()
        response = context.response
        response.flush_headers()

        assert response.has_sent_headers
        with pytest.raises(HeadersAlreadySentError):
            response.set_header_value("X-Late", "1")
        with pytest.raises(HeadersAlreadySentError):
            response.status_code = 500
        with pytest.raises(HeadersAlreadySentError):
            response.body = "late"

    def test_append_vary(self, make_context):
        context, _ = make_context()
        response = context.response
        response.append_vary_header_name("Origin")
        response.append_vary_header_name("accept-encoding")
        response.append_vary_header_name("ORIGIN")

        assert response.get_header_value("Vary") == "Origin, accept-encoding"

    def test_vary_star_absorbs(self, make_context):
        context, _ = make_context()
        response = context.response
        response.append_vary_header_name("*")
        response.append_vary_header_name("Origin")

        assert response.get_header_value("Vary") == "*"

    def test_etag_quoting(self, make_context):
        context, _ = make_context()
        response = context.response

        response.etag = "abc"
        assert response.etag == '"abc"'

        response.etag = 'W/"weak"'
        assert response.etag == 'W/"weak"'

    def test_last_modified_round_trip(self, make_context):
        context, _ = make_context()
        response = context.response
        value = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)
        response.last_modified = value

        assert response.get_header_value("Last-Modified") == "Wed, 01 May 2024 12:00:00 GMT"
        assert response.last_modified == value

    def test_content_type_none_removes_header(self, make_context):
        context, _ = make_context()
        response = context.response
        response.content_type = "html"
        response.content_type = None

        assert response.content_type is None
        assert response.has_explicitly_set_content_type


class TestContentDisposition:
    """Tests for Content-Disposition values."""

    def test_ascii_name(self):
        assert content_disposition("report.pdf") == 'attachment; filename="report.pdf"'

    def test_inline_without_name(self):
        assert content_disposition(disposition_type="inline") == "inline"

    def test_non_ascii_name(self):
        value = content_disposition("résumé.pdf")

        assert value.startswith('attachment; filename="r?sum?.pdf"')
        assert "filename*=UTF-8''r%C3%A9sum%C3%A9.pdf" in value

    def test_sets_type_from_extension(self, make_context):
        context, _ = make_context()
        response = context.response
        response.set_content_disposition("data.json")

        assert response.content_type == "application/json"
        assert response.get_header_value("Content-Disposition") == 'attachment; filename="data.json"'


class TestRedirect:
    """Tests for redirect()."""

    def test_redirect_plain_text(self, make_context):
        context, _ = make_context(headers={"Accept": "application/json"})
        response = context.response
        response.redirect("/login")

        assert response.status_code == 302
        assert response.get_header_value("Location") == "/login"
        assert response.body == "Redirecting to /login."
        assert response.content_type == "text/plain"

    def test_redirect_html(self, make_context):
        context, _ = make_context(headers={"Accept": "text/html"})
        response = context.response
        response.redirect("/a?x=<b>")

        assert response.content_type == "text/html"
        assert "&lt;b&gt;" in response.body

    def test_redirect_keeps_redirect_status(self, make_context):
        context, _ = make_context()
        response = context.response
        response.status_code = 301
        response.redirect("/moved")

        assert response.status_code == 301

    def test_redirect_back(self, make_context):
        context, _ = make_context(headers={"Referer": "/previous"})
        context.response.redirect("back")

        assert context.response.get_header_value("Location") == "/previous"

    def test_redirect_back_fallback(self, make_context):
        context, _ = make_context()
        context.response.redirect("back", "/home")

        assert context.response.get_header_value("Location") == "/home"

    def test_location_is_percent_encoded(self, make_context):
        context, _ = make_context()
        context.response.redirect("/search?q=a b")

        assert context.response.get_header_value("Location") == "/search?q=a%20b"
