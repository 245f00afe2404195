"""Datagram codec: frames one flushed batch of request log entries for UDP.

A flush becomes one or more datagrams. Each datagram is a 4-byte header
(``b"RT"``, format version, flags byte) followed by a JSON envelope::

    {"batch": "<batch id>", "part": 1, "parts": 3, "entries": [<record>, ...]}

Entries are packed whole and in flush order, so a collector can group the
parts of a batch by id and tell from ``parts`` whether any went missing.
"""

import json
import logging
import zlib
from dataclasses import dataclass

from request_telemetry.models import LogEntry, entry_to_dict

logger = logging.getLogger(__name__)

MAGIC = b"RT"
VERSION = 1
FLAG_COMPRESSED = 0x01
HEADER_SIZE = 4

# Largest UDP payload over IPv4 (65535 - 8 byte UDP header - 20 byte IP header).
MAX_DATAGRAM = 65507

# Room reserved for the envelope keys, batch id and part numbers.
_ENVELOPE_RESERVE = 128

TRUNCATED_MARKER = "truncated"


@dataclass(frozen=True)
class Datagram:
    batch_id: str
    part: int
    parts: int
    trace_ids: tuple
    payload: bytes


def _dumps(obj) -> bytes:
    return json.dumps(obj, separators=(",", ":")).encode("utf-8")


def encode_record(entry: LogEntry, limit: int) -> bytes:
    """Encode *entry* as a flat JSON record no larger than *limit* if possible.

    Bodies are the only unbounded fields, so a record that does not fit has
    both replaced by TRUNCATED_MARKER.
    """
    record = entry_to_dict(entry)
    data = _dumps(record)
    if len(data) <= limit:
        return data

    logger.warning(
        "Log entry %s encodes to %d bytes, over the %d byte datagram budget; "
        "dropping its bodies",
        entry.trace_id,
        len(data),
        limit,
    )
    record["request_body"] = TRUNCATED_MARKER
    record["response_body"] = TRUNCATED_MARKER
    return _dumps(record)


def pack_batch(
    entries: list[LogEntry],
    batch_id: str,
    compress: bool = True,
    max_size: int = MAX_DATAGRAM,
) -> list[Datagram]:
    """Pack *entries* greedily into as few datagrams as fit in *max_size*."""
    budget = max_size - HEADER_SIZE - _ENVELOPE_RESERVE

    groups = []
    current = []
    size = 0
    for entry in entries:
        record = encode_record(entry, budget)
        needed = len(record) + (1 if current else 0)
        if current and size + needed > budget:
            groups.append(current)
            current = []
            size = 0
            needed = len(record)
        current.append((entry.trace_id, record))
        size += needed
    if current:
        groups.append(current)

    return [
        _frame(batch_id, part, len(groups), group, compress)
        for part, group in enumerate(groups, start=1)
    ]


def _frame(batch_id: str, part: int, parts: int, group, compress: bool) -> Datagram:
    head = _dumps({"batch": batch_id, "part": part, "parts": parts})[:-1]
    body = head + b',"entries":[' + b",".join(record for _, record in group) + b"]}"

    flags = 0
    if compress:
        packed = zlib.compress(body)
        if len(packed) < len(body):
            body = packed
            flags |= FLAG_COMPRESSED

    return Datagram(
        batch_id=batch_id,
        part=part,
        parts=parts,
        trace_ids=tuple(trace_id for trace_id, _ in group),
        payload=MAGIC + bytes([VERSION, flags]) + body,
    )


def decode_datagram(data: bytes) -> dict:
    """Decode one datagram produced by :func:`pack_batch` into its envelope."""
    if len(data) < HEADER_SIZE or data[:2] != MAGIC:
        raise ValueError("not a request log datagram")
    if data[2] != VERSION:
        raise ValueError(f"unsupported datagram version {data[2]}")

    body = data[HEADER_SIZE:]
    if data[3] & FLAG_COMPRESSED:
        body = zlib.decompress(body)
    return json.loads(body)
