"""Log aggregator: fixed-capacity buffer flushed on overflow, timer tick or shutdown."""

import logging
import threading
import time

from request_telemetry.dispatcher import DEFAULT_QUEUE_SIZE, EntryDispatcher
from request_telemetry.metrics import FlushMetrics
from request_telemetry.models import LogEntry
from request_telemetry.sinks import FlushSink

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 1000
DEFAULT_FLUSH_INTERVAL = 5.0


class AggregatorClosedError(RuntimeError):
    """Raised when an entry is submitted after shutdown has begun."""


class _InFlight:
    """Counts operations in progress so a closer can wait for them to finish."""

    def __init__(self):
        self._cond = threading.Condition()
        self._active = 0
        self._closed = False

    def enter(self):
        with self._cond:
            if self._closed:
                raise AggregatorClosedError("log aggregator is shut down")
            self._active += 1

    def exit(self):
        with self._cond:
            self._active -= 1
            if self._active == 0:
                self._cond.notify_all()

    def __enter__(self):
        self.enter()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.exit()

    @property
    def active(self) -> int:
        with self._cond:
            return self._active

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until nothing is in progress. Returns False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: self._active == 0, timeout=timeout)

    def close_and_wait(self):
        with self._cond:
            self._closed = True
            self._cond.wait_for(lambda: self._active == 0)


class LogAggregator:
    """Buffers completed request log entries and hands them to a FlushSink.

    The buffer is a preallocated list of *capacity* slots plus a count of the
    occupied prefix. A single lock guards both; every path that touches them
    (submit, timer tick, shutdown) takes it, and the sink is called with the
    lock held, so a slow sink delays later submissions.

    - ``submit`` appends one entry. When the buffer is full it first flushes
      the whole buffer, then stores the new entry in slot 0, so no entry is
      ever dropped for lack of room.
    - A background thread ticks every ``interval`` seconds and flushes the
      occupied prefix. If the lock is busy the tick is skipped, never waited on.
    - When *shutdown_event* is set (or ``stop`` is called) the same thread
      drains queued dispatches, waits for in-flight submits, takes the lock
      unconditionally and performs one final flush.
    - ``begin_request`` and ``end_request`` count HTTP requests from arrival
      until their entry is dispatched; ``wait_for_requests`` lets a server
      hold off shutdown until that count reaches zero.

    Sink failures are logged and counted; the batch is not retried.
    """

    def __init__(
        self,
        sink: FlushSink,
        shutdown_event: threading.Event,
        capacity: int = DEFAULT_CAPACITY,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        metrics: FlushMetrics | None = None,
    ):
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")

        self._sink = sink
        self._shutdown = shutdown_event
        self._capacity = capacity
        self._interval = sink.interval() or DEFAULT_FLUSH_INTERVAL
        self._metrics = metrics or FlushMetrics()

        self._buffer: list[LogEntry | None] = [None] * capacity
        self._count = 0
        self._lock = threading.Lock()
        self._in_flight = _InFlight()
        self._requests = _InFlight()
        self._stopped = threading.Event()

        self._dispatcher = EntryDispatcher(
            self.submit, maxsize=queue_size, on_drop=self._metrics.record_dropped
        )
        self._ticker = threading.Thread(
            target=self._run, name="log-aggregator", daemon=True
        )
        self._ticker.start()

    # Public API

    def submit(self, entry: LogEntry):
        """Append *entry*, flushing the full buffer first if there is no room."""
        with self._in_flight:
            with self._lock:
                if self._count == self._capacity:
                    self._flush_locked("overflow")
                self._buffer[self._count] = entry
                self._count += 1

    def dispatch(self, build) -> bool:
        """Build and submit an entry on the dispatcher thread instead of the caller's."""
        return self._dispatcher.dispatch(build)

    def begin_request(self):
        """Mark an HTTP request as started; pair with :meth:`end_request`."""
        self._requests.enter()

    def end_request(self):
        """Mark a request finished once its entry has been dispatched."""
        self._requests.exit()

    def wait_for_requests(self, timeout: float | None = None) -> bool:
        """Wait for every started request to finish. Returns False on timeout."""
        return self._requests.wait_idle(timeout)

    def stop(self, timeout: float | None = None):
        """Signal shutdown and wait for the final flush to finish."""
        self._shutdown.set()
        self._ticker.join(timeout=timeout)

    @property
    def pending_count(self) -> int:
        """Number of entries currently held in the buffer."""
        with self._lock:
            return self._count

    @property
    def active_requests(self) -> int:
        return self._requests.active

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def metrics(self) -> FlushMetrics:
        return self._metrics

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    # Internal helpers

    def _run(self):
        while not self._shutdown.wait(timeout=self._interval):
            self._tick()
        self._drain_and_flush()

    def _tick(self):
        if self._count == 0:
            return
        if not self._lock.acquire(blocking=False):
            self._metrics.record_skipped_tick()
            logger.debug("Buffer busy, skipping timer flush")
            return
        try:
            if self._count > 0:
                self._flush_locked("timer")
        finally:
            self._lock.release()

    def _drain_and_flush(self):
        self._dispatcher.close()
        self._in_flight.close_and_wait()

        with self._lock:
            remaining = self._count
            if remaining > 0:
                self._flush_locked("shutdown")

        self._stopped.set()
        logger.info(
            "Log aggregator stopped, final flush of %d entries: %s",
            remaining,
            self._metrics.snapshot(),
        )

    def _flush_locked(self, trigger: str):
        """Hand the occupied prefix to the sink. Must be called with self._lock held."""
        batch = self._buffer[: self._count]
        self._count = 0

        start = time.monotonic()
        try:
            self._sink.flush(batch)
        except Exception:
            self._metrics.record_failed_flush()
            logger.exception(
                "Sink flush failed for batch of %d entries (%s)", len(batch), trigger
            )
            return

        elapsed_ms = (time.monotonic() - start) * 1000
        self._metrics.record_flush(len(batch), elapsed_ms, trigger)
        logger.debug("Flushed batch of %d entries (%s)", len(batch), trigger)
