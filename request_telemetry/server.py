"""API server: owns the WSGI server, the log aggregator and its sink."""

import logging
import threading

from werkzeug.serving import make_server

from request_telemetry.aggregator import LogAggregator
from request_telemetry.app import create_app
from request_telemetry.config import TelemetryConfig
from request_telemetry.file_sink import FileSink
from request_telemetry.metrics import FlushMetrics
from request_telemetry.sinks import FlushSink, LoggingSink
from request_telemetry.udp_sink import UDPSink

logger = logging.getLogger(__name__)


def build_sink(config: TelemetryConfig, metrics: FlushMetrics | None = None) -> FlushSink:
    """Create the sink selected by ``config.sink``."""
    if config.sink == "file":
        return FileSink(
            config.sink_path, flush_interval=config.flush_interval, metrics=metrics
        )
    if config.sink == "udp":
        return UDPSink(
            config.sink_host,
            config.sink_port,
            flush_interval=config.flush_interval,
            compress=config.compress,
            max_retries=config.max_retries,
            metrics=metrics,
        )
    if config.sink == "logging":
        return LoggingSink(flush_interval=config.flush_interval)
    raise ValueError(f"Unknown sink {config.sink!r}")


class APIServer:
    """Lifecycle object for the HTTP server and its request telemetry.

    ``stop`` shuts down in dependency order: stop accepting HTTP requests,
    wait up to ``shutdown_timeout`` seconds for requests still being served,
    drain and flush the aggregator, then close the sink.
    """

    def __init__(self, config: TelemetryConfig, sink: FlushSink | None = None):
        self._config = config
        self._metrics = FlushMetrics()
        self._sink = sink or build_sink(config, self._metrics)
        self._telemetry_shutdown = threading.Event()
        self._aggregator = LogAggregator(
            self._sink,
            self._telemetry_shutdown,
            capacity=config.capacity,
            queue_size=config.queue_size,
            metrics=self._metrics,
        )
        self._app = create_app(self._aggregator, config)
        self._httpd = None
        self._thread: threading.Thread | None = None
        self.server_address = None

    @property
    def app(self):
        return self._app

    @property
    def aggregator(self) -> LogAggregator:
        return self._aggregator

    def start(self):
        """Bind the HTTP server and serve requests on a background thread."""
        self._httpd = make_server(
            self._config.host, self._config.port, self._app, threaded=True
        )
        self.server_address = self._httpd.server_address
        self._thread = threading.Thread(
            target=self._httpd.serve_forever, name="http-server", daemon=True
        )
        self._thread.start()
        logger.info(
            "HTTP server listening on %s:%d",
            self.server_address[0],
            self.server_address[1],
        )

    def stop(self):
        """Stop serving, flush remaining request logs and close the sink."""
        if self._httpd is not None:
            self._httpd.shutdown()
            if not self._aggregator.wait_for_requests(self._config.shutdown_timeout):
                logger.warning(
                    "%d request(s) still running after %.1fs, their entries may be lost",
                    self._aggregator.active_requests,
                    self._config.shutdown_timeout,
                )
            self._httpd.server_close()
            self._httpd = None
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

        self._aggregator.stop()

        close = getattr(self._sink, "close", None)
        if close is not None:
            close()
        logger.info("API server stopped")
