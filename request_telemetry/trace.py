"""Trace correlator: per-request trace ids carried in an ambient context variable."""

import contextvars
import uuid

TRACE_HEADER = "X-Trace-Id"
TRACE_ENVIRON_KEY = "request_telemetry.trace_id"

_trace_id: contextvars.ContextVar[str] = contextvars.ContextVar("trace_id")


def new_trace_id() -> str:
    """Return a random 128-bit identifier rendered as a UUID string."""
    return str(uuid.uuid4())


def inject(ctx: contextvars.Context, trace_id: str) -> contextvars.Context:
    """Return a copy of *ctx* that carries *trace_id*. *ctx* itself is untouched."""
    derived = ctx.copy()
    derived.run(_trace_id.set, trace_id)
    return derived


def extract(ctx: contextvars.Context | None = None) -> str:
    """Return the trace id stored in *ctx* (or the current context), or "" if absent."""
    if ctx is None:
        return _trace_id.get("")
    return ctx.get(_trace_id, "")


def current_trace_id() -> str:
    return extract()
