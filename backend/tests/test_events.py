"""Tests for the EventStream: append order, listeners, filtering and queries."""

from __future__ import annotations

import sys
import threading
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import pytest

from agentkernel.agent.events import Event, EventStream, EventType, create_event


# ── 1. Events ───────────────────────────────────────────────────


def test_event_is_immutable():
    event = create_event(EventType.USER_MESSAGE, content="hi")
    assert event.get("content") == "hi"
    with pytest.raises(TypeError):
        event.payload["content"] = "changed"
    with pytest.raises(Exception):
        event.type = EventType.SYSTEM
    print("  PASS: event is immutable")


def test_event_ids_are_unique_and_to_dict_flattens_payload():
    a = create_event("user_message", content="a")
    b = create_event("user_message", content="b")
    assert a.id != b.id
    data = a.to_dict()
    assert data["type"] == "user_message"
    assert data["content"] == "a"
    assert isinstance(data["timestamp"], int)
    print("  PASS: ids unique, to_dict flat")


# ── 2. Append and listeners ─────────────────────────────────────


def test_listeners_see_events_in_append_order():
    stream = EventStream()
    seen: list[str] = []
    stream.subscribe(lambda e: seen.append(e.get("content")))

    for i in range(5):
        stream.emit(EventType.USER_MESSAGE, content=str(i))

    assert seen == ["0", "1", "2", "3", "4"]
    assert [e.get("content") for e in stream.get_events()] == seen
    print("  PASS: listener order")


def test_failing_listener_does_not_break_others():
    stream = EventStream()
    seen: list[Event] = []

    def broken(_event):
        raise RuntimeError("boom")

    stream.subscribe(broken)
    stream.subscribe(seen.append)
    stream.emit(EventType.SYSTEM, message="x")

    assert len(seen) == 1
    assert len(stream) == 1
    print("  PASS: failing listener isolated")


def test_unsubscribe_stops_delivery():
    stream = EventStream()
    seen: list[Event] = []
    unsubscribe = stream.subscribe(seen.append)
    stream.emit(EventType.SYSTEM, message="one")
    unsubscribe()
    unsubscribe()
    stream.emit(EventType.SYSTEM, message="two")
    assert [e.get("message") for e in seen] == ["one"]
    print("  PASS: unsubscribe")


def test_subscribe_to_types_and_streaming():
    stream = EventStream()
    results: list[Event] = []
    deltas: list[Event] = []
    stream.subscribe_to_types([EventType.TOOL_RESULT], results.append)
    stream.subscribe_to_streaming(deltas.append)

    stream.emit(EventType.TOOL_CALL, tool_call_id="c1", name="t", arguments="{}")
    stream.emit(EventType.TOOL_RESULT, tool_call_id="c1", name="t", content="ok")
    stream.emit(EventType.ASSISTANT_STREAMING_MESSAGE, content="he")

    assert [e.type for e in results] == [EventType.TOOL_RESULT]
    assert [e.get("content") for e in deltas] == ["he"]
    print("  PASS: typed subscriptions")


def test_concurrent_appends_keep_one_total_order():
    stream = EventStream()
    seen: list[str] = []
    stream.subscribe(lambda e: seen.append(e.id))

    def writer(n):
        for i in range(50):
            stream.emit(EventType.SYSTEM, message=f"{n}-{i}")

    threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(stream) == 200
    assert seen == [e.id for e in stream.get_events()]
    print("  PASS: concurrent appends")


# ── 3. Queries ──────────────────────────────────────────────────


def test_get_events_filters_and_limits():
    stream = EventStream()
    stream.emit(EventType.USER_MESSAGE, content="q")
    stream.emit(EventType.ASSISTANT_MESSAGE, content="a1", tool_calls=[])
    stream.emit(EventType.SYSTEM, message="s")
    stream.emit(EventType.ASSISTANT_MESSAGE, content="a2", tool_calls=[])

    assistant = stream.get_events(types=["assistant_message"])
    assert [e.get("content") for e in assistant] == ["a1", "a2"]
    assert [e.get("content") for e in stream.get_events(types=[EventType.ASSISTANT_MESSAGE], limit=1)] == ["a2"]
    assert len(stream.get_events(limit=2)) == 2
    assert stream.get_events(limit=0) == ()
    print("  PASS: filters and limits")


def test_latest_assistant_message_and_results_since():
    stream = EventStream()
    assert stream.latest_assistant_message() is None

    stream.emit(EventType.TOOL_RESULT, tool_call_id="old", name="t", content="1")
    stream.emit(EventType.ASSISTANT_MESSAGE, content="first", tool_calls=[])
    stream.emit(EventType.TOOL_RESULT, tool_call_id="c1", name="t", content="2")
    stream.emit(EventType.TOOL_RESULT, tool_call_id="c2", name="t", content="3")

    assert stream.latest_assistant_message().get("content") == "first"
    since = stream.tool_results_since_last_assistant()
    assert [e.get("tool_call_id") for e in since] == ["c1", "c2"]
    print("  PASS: latest assistant and results since")


def test_unknown_event_type_rejected():
    with pytest.raises(ValueError):
        create_event("not_a_type")
    print("  PASS: unknown type rejected")
