"""Log entry model: one immutable record per completed HTTP request."""

import datetime
import fnmatch
from dataclasses import dataclass, field, asdict

REDACTION_MARKER = "redacted"


@dataclass(frozen=True)
class LogEntry:
    trace_id: str
    remote_addr: str = ""
    method: str = ""
    path: str = ""
    query: str = ""
    request_body: str = ""
    status: int = 200
    response_body: str = ""
    duration_ms: int = 0
    timestamp: datetime.datetime = field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc)
    )


def is_redacted_path(path: str, patterns) -> bool:
    """True when *path* matches any shell-style pattern in *patterns*.

    A plain path only matches itself; ``/auth/*`` matches every sub-path.
    """
    return any(fnmatch.fnmatchcase(path, pattern) for pattern in patterns)


def _decode(body: bytes) -> str:
    return body.decode("utf-8", errors="replace")


def build_log_entry(
    trace_id: str,
    remote_addr: str,
    method: str,
    path: str,
    query: str,
    request_body: bytes,
    status: int,
    response_body: bytes,
    duration_ms: int,
    timestamp: datetime.datetime,
    redact_paths=(),
) -> LogEntry:
    """Factory that applies the redaction policy before the entry exists.

    Bodies of requests whose path matches *redact_paths* are replaced by
    REDACTION_MARKER, so the real payload never reaches the entry.
    """
    if is_redacted_path(path, redact_paths):
        request_text = REDACTION_MARKER
        response_text = REDACTION_MARKER
    else:
        request_text = _decode(request_body)
        response_text = _decode(response_body)

    return LogEntry(
        trace_id=trace_id,
        remote_addr=remote_addr,
        method=method,
        path=path,
        query=query,
        request_body=request_text,
        status=status,
        response_body=response_text,
        duration_ms=duration_ms,
        timestamp=timestamp,
    )


def entry_to_dict(entry: LogEntry) -> dict:
    """Convert a LogEntry to the flat wire record a sink ships."""
    record = asdict(entry)
    record["timestamp"] = entry.timestamp.isoformat()
    return record
