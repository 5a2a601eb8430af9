"""Tests for the WSGI output-buffer middleware."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from asset_shield import OutputBufferMiddleware

if TYPE_CHECKING:
    from asset_shield import AssetShield


def _app(body: bytes, content_type: str, extra_headers=()):
    def app(environ, start_response):
        start_response(
            "200 OK",
            [("Content-Type", content_type), ("Content-Length", str(len(body))), *extra_headers],
        )
        return [body[:10], body[10:]]

    return app


def _call(app, method: str = "GET") -> tuple:
    seen = {}

    def start_response(status, headers, exc_info=None):
        seen["status"] = status
        seen["headers"] = dict(headers)

    body = b"".join(app({"REQUEST_METHOD": method, "PATH_INFO": "/"}, start_response))
    return seen["status"], seen["headers"], body


class TestOutputBufferMiddleware:
    def test_rewrites_html(self, shield: AssetShield) -> None:
        body = b'<html><img src="/site/a.png"><img src="https://other.test/b.png"></html>'
        app = OutputBufferMiddleware(_app(body, "text/html; charset=utf-8"), shield)
        status, headers, out = _call(app)
        assert status == "200 OK"
        assert b"https://example.test/assets/img/" in out
        assert b'<img src="https://other.test/b.png">' in out
        assert headers["Content-Length"] == str(len(out))

    def test_non_html_passthrough(self, shield: AssetShield) -> None:
        body = b'{"src": "/site/a.png"}'
        app = OutputBufferMiddleware(_app(body, "application/json"), shield)
        _, headers, out = _call(app)
        assert out == body
        assert headers["Content-Length"] == str(len(body))

    def test_encoded_body_passthrough(self, shield: AssetShield) -> None:
        body = b'<img src="/site/a.png">'
        app = OutputBufferMiddleware(
            _app(body, "text/html", [("Content-Encoding", "identity")]), shield
        )
        assert _call(app)[2] == body

    def test_undecodable_body_passthrough(self, shield: AssetShield) -> None:
        body = b'<img src="/site/a.png">\xff\xfe'
        app = OutputBufferMiddleware(_app(body, "text/html; charset=utf-8"), shield)
        assert _call(app)[2] == body

    def test_latin1_charset(self, shield: AssetShield) -> None:
        body = '<p>caf\xe9</p><img src="/site/a.png">'.encode("latin-1")
        app = OutputBufferMiddleware(_app(body, 'text/html; charset="iso-8859-1"'), shield)
        out = _call(app)[2]
        assert out.startswith("<p>caf\xe9</p>".encode("latin-1"))
        assert b"/assets/img/" in out

    def test_write_callable_is_captured(self, shield: AssetShield) -> None:
        def app(environ, start_response):
            write = start_response("200 OK", [("Content-Type", "text/html")])
            write(b'<img src="/site/a.png">')
            return []

        out = _call(OutputBufferMiddleware(app, shield))[2]
        assert b"/assets/img/" in out

    def test_head_keeps_headers(self, shield: AssetShield) -> None:
        def app(environ, start_response):
            start_response("200 OK", [("Content-Type", "text/html"), ("Content-Length", "500")])
            return []

        status, headers, out = _call(OutputBufferMiddleware(app, shield), method="HEAD")
        assert status == "200 OK"
        assert headers["Content-Length"] == "500"
        assert out == b""

    @pytest.mark.parametrize("status", ["204 No Content", "304 Not Modified"])
    def test_bodyless_status_untouched(self, shield: AssetShield, status: str) -> None:
        def app(environ, start_response):
            start_response(status, [("Content-Type", "text/html")])
            return []

        got_status, headers, _ = _call(OutputBufferMiddleware(app, shield))
        assert got_status == status
        assert "Content-Length" not in headers

    def test_non_html_iterable_returned_as_is(self, shield: AssetShield) -> None:
        chunks = [b"a", b"b"]

        def app(environ, start_response):
            start_response("200 OK", [("Content-Type", "application/octet-stream")])
            return chunks

        out = OutputBufferMiddleware(app, shield)({"REQUEST_METHOD": "GET"}, lambda *a: None)
        assert out is chunks

    def test_unchanged_html_keeps_headers(self, shield: AssetShield) -> None:
        body = b"<p>nothing to rewrite</p>"
        app = OutputBufferMiddleware(
            _app(body, "text/html", [("X-Extra", "1")]), shield
        )
        _, headers, out = _call(app)
        assert out == body
        assert headers == {
            "Content-Type": "text/html",
            "Content-Length": str(len(body)),
            "X-Extra": "1",
        }

    def test_generator_app_is_rewritten(self, shield: AssetShield) -> None:
        closed = []

        def app(environ, start_response):
            try:
                start_response("200 OK", [("Content-Type", "text/html")])
                yield b'<img src="/site/a.png">'
                yield b"<p>tail</p>"
            finally:
                closed.append(True)

        _, headers, out = _call(OutputBufferMiddleware(app, shield))
        assert b"/assets/img/" in out
        assert out.endswith(b"<p>tail</p>")
        assert headers["Content-Length"] == str(len(out))
        assert closed == [True]

    def test_generator_passthrough_streams(self, shield: AssetShield) -> None:
        closed = []

        def app(environ, start_response):
            try:
                start_response("200 OK", [("Content-Type", "text/plain")])
                yield b"one "
                yield b"two"
            finally:
                closed.append(True)

        _, _, out = _call(OutputBufferMiddleware(app, shield))
        assert out == b"one two"
        assert closed == [True]
