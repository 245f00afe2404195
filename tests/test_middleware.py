"""Tests for the WSGI TelemetryMiddleware against bare WSGI apps."""

import io

import pytest
from werkzeug.test import create_environ

from request_telemetry.middleware import TelemetryMiddleware, get_remote_addr
from request_telemetry.models import REDACTION_MARKER
from request_telemetry.trace import TRACE_ENVIRON_KEY, TRACE_HEADER, current_trace_id


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------

class FakeServer:
    """Stands in for the WSGI server: records status, headers and written bytes."""

    def __init__(self):
        self.status = None
        self.headers = None
        self.written = bytearray()

    def start_response(self, status, headers, exc_info=None):
        self.status = status
        self.headers = headers
        return self.written.extend


def _run(middleware, environ) -> tuple[FakeServer, bytes]:
    """Call the middleware like a server would: iterate the body, then close it."""
    server = FakeServer()
    app_iter = middleware(environ, server.start_response)
    try:
        body = b"".join(app_iter)
    finally:
        app_iter.close()
    return server, bytes(server.written) + body


def _echo_app(environ, start_response):
    length = int(environ.get("CONTENT_LENGTH") or 0)
    body = environ["wsgi.input"].read(length)
    start_response("200 OK", [("Content-Type", "application/octet-stream")])
    return [body]


class BrokenInput:
    def read(self, *args):
        raise OSError("connection reset by peer")


# ------------------------------------------------------------------
# Tests
# ------------------------------------------------------------------

class TestTracing:
    def test_trace_header_added(self, aggregator):
        mw = TelemetryMiddleware(_echo_app, aggregator)
        server, _ = _run(mw, create_environ("/"))

        header_names = [name for name, _ in server.headers]
        assert TRACE_HEADER in header_names
        assert ("Content-Type", "application/octet-stream") in server.headers

    def test_app_sees_trace_id_in_context_and_environ(self, aggregator):
        seen = {}

        def app(environ, start_response):
            seen["context"] = current_trace_id()
            seen["environ"] = environ[TRACE_ENVIRON_KEY]
            start_response("200 OK", [])
            return [b""]

        server, _ = _run(TelemetryMiddleware(app, aggregator), create_environ("/"))

        trace_id = dict(server.headers)[TRACE_HEADER]
        assert seen == {"context": trace_id, "environ": trace_id}

    def test_trace_id_not_leaked_outside_request(self, aggregator):
        _run(TelemetryMiddleware(_echo_app, aggregator), create_environ("/"))
        assert current_trace_id() == ""

    def test_streaming_body_sees_trace_id(self, aggregator):
        def app(environ, start_response):
            start_response("200 OK", [])

            def generate():
                yield current_trace_id().encode()

            return generate()

        server, body = _run(TelemetryMiddleware(app, aggregator), create_environ("/"))
        assert body.decode() == dict(server.headers)[TRACE_HEADER]


class TestRecording:
    def test_response_is_unchanged(self, aggregator, sink):
        def app(environ, start_response):
            write = start_response("202 ACCEPTED", [("X-Custom", "1")])
            write(b"head-")
            return [b"chunk-1", b"", b"chunk-2"]

        server, body = _run(TelemetryMiddleware(app, aggregator), create_environ("/jobs"))

        assert server.status == "202 ACCEPTED"
        assert body == b"head-chunk-1chunk-2"

        aggregator.stop()
        entry = sink.entries[0]
        assert entry.status == 202
        assert entry.response_body == "head-chunk-1chunk-2"

    def test_app_still_receives_request_body(self, aggregator, sink):
        environ = create_environ("/upload", method="POST", data=b'{"n": 1}')
        _, body = _run(TelemetryMiddleware(_echo_app, aggregator), environ)

        assert body == b'{"n": 1}'

        aggregator.stop()
        assert sink.entries[0].request_body == '{"n": 1}'
        assert sink.entries[0].method == "POST"

    def test_response_capture_is_capped(self, aggregator, sink):
        def app(environ, start_response):
            start_response("200 OK", [])
            return [b"x" * 100]

        mw = TelemetryMiddleware(app, aggregator, max_body_bytes=10)
        _, body = _run(mw, create_environ("/big"))

        assert body == b"x" * 100
        aggregator.stop()
        assert sink.entries[0].response_body == "x" * 10

    def test_request_capture_is_capped(self, aggregator, sink):
        payload = b"y" * 1000
        environ = create_environ("/upload", method="POST", data=payload)
        mw = TelemetryMiddleware(_echo_app, aggregator, max_body_bytes=16)
        _, body = _run(mw, environ)

        assert body == payload
        aggregator.stop()
        assert sink.entries[0].request_body == "y" * 16

    def test_chunked_request_body_recorded(self, aggregator, sink):
        seen = {}

        def app(environ, start_response):
            seen["body"] = environ["wsgi.input"].read()
            start_response("200 OK", [])
            return [b"ok"]

        environ = create_environ("/upload", method="POST")
        environ.pop("CONTENT_LENGTH", None)
        environ["wsgi.input"] = io.BytesIO(b"hello")
        environ["wsgi.input_terminated"] = True

        _run(TelemetryMiddleware(app, aggregator), environ)

        assert seen["body"] == b"hello"
        aggregator.stop()
        assert sink.entries[0].request_body == "hello"

    def test_body_without_length_or_termination_not_read(self, aggregator, sink):
        environ = create_environ("/upload", method="POST")
        environ.pop("CONTENT_LENGTH", None)
        environ["wsgi.input"] = io.BytesIO(b"unbounded")

        _run(TelemetryMiddleware(_echo_app, aggregator), environ)

        aggregator.stop()
        assert sink.entries[0].request_body == ""

    def test_unreadable_request_body_still_served(self, aggregator, sink):
        environ = create_environ("/upload", method="POST")
        environ["wsgi.input"] = BrokenInput()
        environ["CONTENT_LENGTH"] = "10"

        server, _ = _run(TelemetryMiddleware(_echo_app, aggregator), environ)

        assert server.status == "200 OK"
        aggregator.stop()
        assert sink.entries[0].request_body == ""

    def test_app_exception_logged_as_500_and_reraised(self, aggregator, sink):
        def app(environ, start_response):
            raise RuntimeError("boom")

        mw = TelemetryMiddleware(app, aggregator)
        with pytest.raises(RuntimeError):
            mw(create_environ("/fail"), FakeServer().start_response)

        aggregator.stop()
        assert sink.entries[0].status == 500
        assert sink.entries[0].path == "/fail"

    def test_entry_dispatched_once(self, aggregator, sink):
        mw = TelemetryMiddleware(_echo_app, aggregator)
        server = FakeServer()
        app_iter = mw(create_environ("/"), server.start_response)
        list(app_iter)
        app_iter.close()
        app_iter.close()

        aggregator.stop()
        assert len(sink.entries) == 1

    def test_request_in_flight_until_response_closed(self, aggregator, sink):
        mw = TelemetryMiddleware(_echo_app, aggregator)
        app_iter = mw(create_environ("/"), FakeServer().start_response)

        assert aggregator.active_requests == 1
        assert aggregator.wait_for_requests(timeout=0.05) is False

        list(app_iter)
        app_iter.close()

        assert aggregator.active_requests == 0
        assert aggregator.wait_for_requests(timeout=1) is True

    def test_failed_request_no_longer_in_flight(self, aggregator, sink):
        def app(environ, start_response):
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            TelemetryMiddleware(app, aggregator)(
                create_environ("/fail"), FakeServer().start_response
            )

        assert aggregator.active_requests == 0


class TestRedaction:
    def test_glob_pattern_redacts_sub_paths(self, aggregator, sink):
        mw = TelemetryMiddleware(_echo_app, aggregator, redact_paths=("/auth/*",))
        environ = create_environ("/auth/login", method="POST", data=b"secret")
        _, body = _run(mw, environ)

        assert body == b"secret"
        aggregator.stop()
        entry = sink.entries[0]
        assert entry.request_body == REDACTION_MARKER
        assert entry.response_body == REDACTION_MARKER

    def test_other_paths_not_redacted(self, aggregator, sink):
        mw = TelemetryMiddleware(_echo_app, aggregator, redact_paths=("/auth/*",))
        _run(mw, create_environ("/public", method="POST", data=b"hello"))

        aggregator.stop()
        assert sink.entries[0].request_body == "hello"


class TestRemoteAddr:
    def test_forwarded_for_wins(self):
        environ = {
            "HTTP_X_FORWARDED_FOR": "203.0.113.7, 10.0.0.1",
            "HTTP_X_REAL_IP": "10.0.0.2",
            "REMOTE_ADDR": "127.0.0.1",
        }
        assert get_remote_addr(environ) == "203.0.113.7"

    def test_real_ip_fallback(self):
        environ = {"HTTP_X_REAL_IP": "10.0.0.2", "REMOTE_ADDR": "127.0.0.1"}
        assert get_remote_addr(environ) == "10.0.0.2"

    def test_socket_peer_fallback(self):
        assert get_remote_addr({"REMOTE_ADDR": "127.0.0.1"}) == "127.0.0.1"
        assert get_remote_addr({}) == ""
