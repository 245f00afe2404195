"""Server entry point for the request telemetry API server."""

import logging
import signal
import threading

from request_telemetry.config import load_config
from request_telemetry.server import APIServer


def main():
    config = load_config()

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger = logging.getLogger(__name__)

    shutdown_event = threading.Event()

    def handle_signal(signum, frame):
        logger.info("Received signal %d, shutting down...", signum)
        shutdown_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    server = APIServer(config)
    logger.info(
        "Starting API server on %s:%d (sink=%s, capacity=%d)",
        config.host,
        config.port,
        config.sink,
        config.capacity,
    )

    try:
        server.start()
        shutdown_event.wait()
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        server.stop()


if __name__ == "__main__":
    main()
