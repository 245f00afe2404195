import threading

import pytest

from request_telemetry.aggregator import LogAggregator
from request_telemetry.app import create_app
from request_telemetry.config import TelemetryConfig
from request_telemetry.models import LogEntry


class CollectingSink:
    """FlushSink that keeps every batch it receives, in call order."""

    def __init__(self, flush_interval: float = 0.0):
        self._flush_interval = flush_interval
        self._lock = threading.Lock()
        self.batches: list[list[LogEntry]] = []

    def interval(self) -> float:
        return self._flush_interval

    def flush(self, entries):
        with self._lock:
            self.batches.append(list(entries))

    @property
    def entries(self) -> list[LogEntry]:
        with self._lock:
            return [e for batch in self.batches for e in batch]


@pytest.fixture
def sink():
    return CollectingSink(flush_interval=60.0)


@pytest.fixture
def aggregator(sink):
    agg = LogAggregator(sink, threading.Event(), capacity=5)
    yield agg
    agg.stop(timeout=5)


@pytest.fixture
def app(aggregator):
    """Create a Flask test app with telemetry installed."""
    config = TelemetryConfig(redact_paths=("/api/echo",))
    application = create_app(aggregator, config)
    application.config["TESTING"] = True
    return application


@pytest.fixture
def client(app):
    """Create a Flask test client."""
    return app.test_client()
