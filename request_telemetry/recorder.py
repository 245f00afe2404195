"""Response recorder: observes a WSGI response without altering it."""

import contextvars

DEFAULT_MAX_BODY_BYTES = 64 * 1024


def parse_status_code(status: str) -> int:
    """Extract the numeric code from a WSGI status line such as "404 NOT FOUND"."""
    return int(status.split(" ", 1)[0])


class ResponseRecorder:
    """Wraps ``start_response`` and the response body to capture status and bytes.

    The recorder is purely observational: every status line, header list and
    body chunk is forwarded to the server unchanged, and errors raised by the
    server's write callable propagate to the caller. The captured body copy is
    capped at *max_body_bytes*; forwarded bytes are never capped.
    """

    def __init__(self, start_response, max_body_bytes: int = DEFAULT_MAX_BODY_BYTES):
        self._start_response = start_response
        self._max_body_bytes = max_body_bytes
        self._body = bytearray()
        self.status_code: int = 200
        self.truncated: bool = False

    def start_response(self, status: str, headers, exc_info=None):
        """Record the latest status and forward to the real ``start_response``."""
        self.status_code = parse_status_code(status)
        if exc_info is not None:
            write = self._start_response(status, headers, exc_info)
        else:
            write = self._start_response(status, headers)

        def recording_write(data: bytes):
            self.capture(data)
            return write(data)

        return recording_write

    def capture(self, data: bytes):
        """Append *data* to the captured body, up to the configured cap."""
        room = self._max_body_bytes - len(self._body)
        if room <= 0:
            if data:
                self.truncated = True
            return
        if len(data) > room:
            self.truncated = True
        self._body += data[:room]

    @property
    def body(self) -> bytes:
        return bytes(self._body)

    def wrap(self, app_iter, context: contextvars.Context, on_complete):
        """Wrap a WSGI response iterable so each chunk is captured as it is sent."""
        return RecordingIterator(app_iter, self, context, on_complete)


class RecordingIterator:
    """WSGI response iterable that captures chunks and reports completion once.

    Chunks are pulled inside *context* so that the ambient trace id is visible
    to streaming generators. *on_complete* fires when the body is exhausted or
    when the server closes the iterable, whichever comes first.
    """

    def __init__(self, app_iter, recorder: ResponseRecorder, context, on_complete):
        self._app_iter = app_iter
        self._iter = iter(app_iter)
        self._recorder = recorder
        self._context = context
        self._on_complete = on_complete
        self._completed = False

    def __iter__(self):
        return self

    def __next__(self) -> bytes:
        try:
            chunk = self._context.run(next, self._iter)
        except StopIteration:
            self._complete()
            raise
        self._recorder.capture(chunk)
        return chunk

    def close(self):
        try:
            close = getattr(self._app_iter, "close", None)
            if close is not None:
                self._context.run(close)
        finally:
            self._complete()

    def _complete(self):
        if self._completed:
            return
        self._completed = True
        self._on_complete()
