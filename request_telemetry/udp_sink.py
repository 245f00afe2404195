"""UDP sink: ships each flushed batch to a collector as framed datagrams."""

import logging
import random
import socket
import time
import uuid

from request_telemetry.codec import Datagram, pack_batch
from request_telemetry.metrics import FlushMetrics
from request_telemetry.models import LogEntry

logger = logging.getLogger(__name__)

RETRY_BASE_DELAY = 0.05
RETRY_MAX_DELAY = 1.0


class UDPSink:
    """Sends every flushed batch under a fresh batch id.

    A datagram whose send keeps failing after *max_retries* further attempts
    is given up on; the entries it carried are counted as dropped in
    *metrics*, which is normally shared with the aggregator.
    """

    def __init__(
        self,
        target_host: str,
        target_port: int,
        flush_interval: float = 0.0,
        compress: bool = True,
        max_retries: int = 3,
        metrics: FlushMetrics | None = None,
    ):
        self._target = (target_host, target_port)
        self._flush_interval = flush_interval
        self._compress = compress
        self._max_retries = max_retries
        self._metrics = metrics or FlushMetrics()
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)

    @property
    def metrics(self) -> FlushMetrics:
        return self._metrics

    def interval(self) -> float:
        return self._flush_interval

    def flush(self, entries: list[LogEntry]) -> None:
        batch_id = uuid.uuid4().hex
        datagrams = pack_batch(entries, batch_id, compress=self._compress)
        undelivered = [d for d in datagrams if not self._deliver(d)]

        if not undelivered:
            logger.debug(
                "Batch %s: %d entries in %d datagram(s) to %s:%d",
                batch_id,
                len(entries),
                len(datagrams),
                *self._target,
            )
            return

        dropped = sum(len(d.trace_ids) for d in undelivered)
        self._metrics.record_dropped(dropped)
        logger.error(
            "Batch %s: %d of %d datagram(s) undeliverable, %d entries lost (first %s)",
            batch_id,
            len(undelivered),
            len(datagrams),
            dropped,
            undelivered[0].trace_ids[0],
        )

    def _deliver(self, datagram: Datagram) -> bool:
        attempts = self._max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                self._sock.sendto(datagram.payload, self._target)
                return True
            except OSError as exc:
                if attempt == attempts:
                    break
                logger.warning(
                    "Batch %s part %d/%d: send attempt %d failed: %s",
                    datagram.batch_id,
                    datagram.part,
                    datagram.parts,
                    attempt,
                    exc,
                )
                time.sleep(self._retry_delay(attempt))
        return False

    @staticmethod
    def _retry_delay(attempt: int) -> float:
        """Full-jitter exponential delay before retry number *attempt*."""
        return random.uniform(0, min(RETRY_MAX_DELAY, RETRY_BASE_DELAY * 2 ** attempt))

    def close(self):
        self._sock.close()
