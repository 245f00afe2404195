"""Flush metrics: thread-safe counters and histograms for the log aggregator."""

import collections
import statistics
import threading
import time

FLUSH_TRIGGERS = ("overflow", "timer", "shutdown")

# Number of most recent flushes the averages and p95 figures are computed over.
DEFAULT_WINDOW = 1000


class FlushMetrics:
    """Collects and reports metrics about aggregator flushes and sink delivery.

    Counters cover the whole process lifetime. Batch sizes and flush times
    are kept for the last *window* flushes only.
    """

    def __init__(self, window: int = DEFAULT_WINDOW) -> None:
        self._lock = threading.Lock()
        self._flushes: int = 0
        self._total_entries: int = 0
        self._failed_flushes: int = 0
        self._skipped_ticks: int = 0
        self._dropped_entries: int = 0
        self._batch_sizes: collections.deque = collections.deque(maxlen=window)
        self._flush_times: collections.deque = collections.deque(maxlen=window)
        self._flush_triggers: dict = {trigger: 0 for trigger in FLUSH_TRIGGERS}
        self._start_time = time.monotonic()

    def record_flush(self, batch_size: int, flush_time_ms: float, trigger: str) -> None:
        """Record one sink flush that returned normally.

        Args:
            batch_size: Number of log entries handed to the sink.
            flush_time_ms: Time the sink call took, in milliseconds.
            trigger: What caused the flush: "overflow", "timer" or "shutdown".
        """
        with self._lock:
            self._flushes += 1
            self._total_entries += batch_size
            self._batch_sizes.append(batch_size)
            self._flush_times.append(flush_time_ms)
            self._flush_triggers[trigger] = self._flush_triggers.get(trigger, 0) + 1

    def record_failed_flush(self) -> None:
        with self._lock:
            self._failed_flushes += 1

    def record_skipped_tick(self) -> None:
        with self._lock:
            self._skipped_ticks += 1

    def record_dropped(self, count: int = 1) -> None:
        """Count entries that never reached their destination."""
        with self._lock:
            self._dropped_entries += count

    def snapshot(self) -> dict:
        """Return a point-in-time snapshot of all collected metrics."""
        with self._lock:
            batch_sizes = list(self._batch_sizes)
            flush_times = list(self._flush_times)

            return {
                "flushes": self._flushes,
                "total_entries": self._total_entries,
                "failed_flushes": self._failed_flushes,
                "skipped_ticks": self._skipped_ticks,
                "dropped_entries": self._dropped_entries,
                "avg_batch_size": statistics.fmean(batch_sizes) if batch_sizes else 0.0,
                "p95_batch_size": self._percentile(batch_sizes, 95),
                "avg_flush_time_ms": statistics.fmean(flush_times) if flush_times else 0.0,
                "p95_flush_time_ms": self._percentile(flush_times, 95),
                "flush_triggers": dict(self._flush_triggers),
                "uptime_seconds": time.monotonic() - self._start_time,
            }

    @staticmethod
    def _percentile(data: list, pct: int) -> float:
        """Linearly interpolated *pct*-th percentile, 0.0 for no data."""
        if not data:
            return 0.0
        if len(data) == 1:
            return float(data[0])
        return float(statistics.quantiles(data, n=100, method="inclusive")[pct - 1])
