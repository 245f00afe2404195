"""File sink: appends flushed entries as NDJSON with size-based rotation."""

import json
import logging
import os
import threading

from request_telemetry.metrics import FlushMetrics
from request_telemetry.models import LogEntry, entry_to_dict

logger = logging.getLogger(__name__)


class FileSink:
    def __init__(
        self,
        path: str,
        flush_interval: float = 0.0,
        max_bytes: int = 10 * 1024 * 1024,  # 10 MB
        backup_count: int = 5,
        metrics: FlushMetrics | None = None,
    ):
        self._path = path
        self._flush_interval = flush_interval
        self._max_bytes = max_bytes
        self._backup_count = backup_count
        self._metrics = metrics or FlushMetrics()
        self._lock = threading.Lock()

        log_dir = os.path.dirname(path)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)

    @property
    def path(self) -> str:
        return self._path

    @property
    def metrics(self) -> FlushMetrics:
        return self._metrics

    def interval(self) -> float:
        return self._flush_interval

    def flush(self, entries: list[LogEntry]) -> None:
        """Append one JSON line per entry. Write errors are logged and counted as drops."""
        with self._lock:
            try:
                if self._should_rotate():
                    self._rotate()
                with open(self._path, "a", encoding="utf-8") as f:
                    for entry in entries:
                        f.write(json.dumps(entry_to_dict(entry)) + "\n")
            except OSError:
                logger.exception(
                    "Failed to write %d entries to %s", len(entries), self._path
                )
                self._metrics.record_dropped(len(entries))
                return

        logger.debug("Wrote %d entries to %s", len(entries), self._path)

    def _should_rotate(self) -> bool:
        try:
            return os.path.getsize(self._path) >= self._max_bytes
        except OSError:
            return False

    def _rotate(self):
        """Shift rotated files (.1 -> .2, ... up to .backup_count), then rename current to .1."""
        for i in range(self._backup_count, 1, -1):
            src = f"{self._path}.{i - 1}"
            dst = f"{self._path}.{i}"
            if os.path.exists(src):
                os.replace(src, dst)

        if os.path.exists(self._path):
            os.replace(self._path, f"{self._path}.1")

        logger.info("Rotated request log %s", self._path)
