"""Tests for the trace correlator."""

import contextvars
import uuid

from request_telemetry.trace import current_trace_id, extract, inject, new_trace_id


def test_new_trace_id_is_uuid():
    trace_id = new_trace_id()
    assert uuid.UUID(trace_id).version == 4


def test_new_trace_ids_are_unique():
    ids = {new_trace_id() for _ in range(1000)}
    assert len(ids) == 1000


def test_extract_missing_returns_empty_string():
    assert extract(contextvars.Context()) == ""
    assert current_trace_id() == ""


def test_inject_returns_derived_context():
    base = contextvars.copy_context()
    derived = inject(base, "abc-123")

    assert extract(derived) == "abc-123"
    assert extract(base) == ""


def test_injected_id_visible_inside_run():
    derived = inject(contextvars.copy_context(), "abc-123")
    assert derived.run(current_trace_id) == "abc-123"
    assert current_trace_id() == ""


def test_inject_overrides_parent_id():
    parent = inject(contextvars.copy_context(), "parent")
    child = inject(parent, "child")

    assert extract(parent) == "parent"
    assert extract(child) == "child"
