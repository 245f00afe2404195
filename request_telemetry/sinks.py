"""Flush sink contract and the default logging sink."""

import json
import logging
from typing import Protocol, runtime_checkable

from request_telemetry.models import LogEntry, entry_to_dict

logger = logging.getLogger(__name__)


@runtime_checkable
class FlushSink(Protocol):
    """Destination for batches of completed request log entries.

    ``interval`` returns the periodic flush interval in seconds, where 0 means
    "use the aggregator default". ``flush`` receives one whole batch in arrival
    order; it may block, and must report its own failures rather than raise.
    """

    def interval(self) -> float: ...

    def flush(self, entries: list[LogEntry]) -> None: ...


class LoggingSink:
    """Writes every flushed entry as a JSON log line."""

    def __init__(self, flush_interval: float = 0.0):
        self._flush_interval = flush_interval

    def interval(self) -> float:
        return self._flush_interval

    def flush(self, entries: list[LogEntry]) -> None:
        logger.debug("Flushing batch of %d entries", len(entries))
        for entry in entries:
            logger.info("Request log: %s", json.dumps(entry_to_dict(entry)))
