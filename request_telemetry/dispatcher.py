"""Entry dispatcher: bounded hand-off queue from request threads to the aggregator."""

import logging
import queue
import threading

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 10000

_STOP = object()


class EntryDispatcher:
    """Single worker thread that builds log entries off the request path.

    Request threads enqueue zero-argument callables that return a LogEntry.
    The worker runs each one and passes the result to *submit*, so entries
    reach the aggregator in the order they were dispatched. ``close`` rejects
    further work and blocks until every queued task has been submitted.
    """

    def __init__(self, submit, maxsize: int = DEFAULT_QUEUE_SIZE, on_drop=None):
        self._submit = submit
        self._on_drop = on_drop
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._lock = threading.Lock()
        self._closed = False
        self._worker = threading.Thread(
            target=self._consume, name="entry-dispatcher", daemon=True
        )
        self._worker.start()

    def dispatch(self, build) -> bool:
        """Queue *build* for the worker. Returns False once the dispatcher is closed."""
        with self._lock:
            if not self._closed:
                self._queue.put(build)
                return True

        logger.warning("Dispatcher closed, dropping log entry")
        if self._on_drop is not None:
            self._on_drop()
        return False

    def close(self, timeout: float | None = None):
        """Reject new work, then wait for the worker to drain the queue."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._queue.put(_STOP)
        self._worker.join(timeout=timeout)

    @property
    def pending_count(self) -> int:
        """Number of tasks waiting for the worker."""
        return self._queue.qsize()

    def _consume(self):
        while True:
            build = self._queue.get()
            try:
                if build is _STOP:
                    return
                self._run(build)
            finally:
                self._queue.task_done()

    def _run(self, build):
        try:
            entry = build()
        except Exception:
            logger.exception("Failed to build log entry")
            return
        try:
            self._submit(entry)
        except Exception:
            logger.exception("Failed to submit log entry %s", entry.trace_id)
