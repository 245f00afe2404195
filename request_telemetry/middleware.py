"""WSGI telemetry middleware: trace and log every request/response pair."""

import contextvars
import datetime
import io
import logging
import time

from request_telemetry.aggregator import LogAggregator
from request_telemetry.models import build_log_entry
from request_telemetry.recorder import DEFAULT_MAX_BODY_BYTES, ResponseRecorder
from request_telemetry.trace import TRACE_ENVIRON_KEY, TRACE_HEADER, inject, new_trace_id

logger = logging.getLogger(__name__)


def get_remote_addr(environ) -> str:
    """Client address, preferring proxy headers over the socket peer."""
    forwarded = environ.get("HTTP_X_FORWARDED_FOR", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = environ.get("HTTP_X_REAL_IP", "")
    if real_ip:
        return real_ip.strip()
    return environ.get("REMOTE_ADDR", "")


def _read_request_body(environ) -> bytes:
    """Read the whole request body and put a rewound copy back for the app.

    The body is bounded by ``CONTENT_LENGTH`` or, for chunked requests the
    server has already de-chunked (``wsgi.input_terminated``), read to EOF.
    A read failure is logged and yields an empty body; the request is still
    served.
    """
    try:
        length = int(environ.get("CONTENT_LENGTH") or 0)
    except ValueError:
        length = 0
    terminated = bool(environ.get("wsgi.input_terminated"))
    if length <= 0 and not terminated:
        return b""

    try:
        stream = environ["wsgi.input"]
        body = stream.read(length) if length > 0 else stream.read()
    except Exception:
        logger.exception("Failed to read request body")
        body = b""

    environ["wsgi.input"] = io.BytesIO(body)
    environ["CONTENT_LENGTH"] = str(len(body))
    return body


class TelemetryMiddleware:
    """Wrap a WSGI app so each request gets a trace id and a log entry.

    The trace id is sent back in the ``X-Trace-Id`` header and is visible to
    the app through :func:`request_telemetry.trace.current_trace_id`. Once the
    response body has been fully sent, entry construction is handed to the
    aggregator's dispatcher thread.

    Each request counts as in flight with the aggregator from the moment it
    arrives until its entry has been dispatched, so a server shutting down
    can wait for it. Request and response body snapshots are both capped at
    *max_body_bytes*; the app and the client always see the full bodies.
    """

    def __init__(
        self,
        app,
        aggregator: LogAggregator,
        redact_paths=(),
        max_body_bytes: int = DEFAULT_MAX_BODY_BYTES,
    ):
        self._app = app
        self._aggregator = aggregator
        self._redact_paths = tuple(redact_paths)
        self._max_body_bytes = max_body_bytes

    def __call__(self, environ, start_response):
        started_at = datetime.datetime.now(datetime.timezone.utc)
        t0 = time.monotonic()
        self._aggregator.begin_request()

        trace_id = new_trace_id()
        environ[TRACE_ENVIRON_KEY] = trace_id
        context = inject(contextvars.copy_context(), trace_id)

        request_body = _read_request_body(environ)
        request_info = {
            "trace_id": trace_id,
            "remote_addr": get_remote_addr(environ),
            "method": environ.get("REQUEST_METHOD", ""),
            "path": environ.get("PATH_INFO", ""),
            "query": environ.get("QUERY_STRING", ""),
            "request_body": request_body[: self._max_body_bytes],
            "timestamp": started_at,
        }

        def traced_start_response(status, headers, exc_info=None):
            headers = [(k, v) for k, v in headers if k.lower() != TRACE_HEADER.lower()]
            headers.append((TRACE_HEADER, trace_id))
            if exc_info is not None:
                return start_response(status, headers, exc_info)
            return start_response(status, headers)

        recorder = ResponseRecorder(traced_start_response, self._max_body_bytes)

        def on_complete():
            self._record(request_info, recorder.status_code, recorder.body, t0)

        try:
            app_iter = context.run(self._app, environ, recorder.start_response)
        except Exception:
            self._record(request_info, 500, recorder.body, t0)
            raise

        return recorder.wrap(app_iter, context, on_complete)

    def _record(self, request_info: dict, status: int, response_body: bytes, t0: float):
        duration_ms = int((time.monotonic() - t0) * 1000)
        redact_paths = self._redact_paths

        def build():
            return build_log_entry(
                status=status,
                response_body=response_body,
                duration_ms=duration_ms,
                redact_paths=redact_paths,
                **request_info,
            )

        try:
            self._aggregator.dispatch(build)
        finally:
            self._aggregator.end_request()
