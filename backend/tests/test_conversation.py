"""Tests for rebuilding the model conversation from an event log."""

from __future__ import annotations

import sys
from dataclasses import asdict
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from agentkernel.agent.conversation import build_messages, format_plan, limit_images
from agentkernel.agent.engines import NativeToolCallEngine, PromptEngineeringToolCallEngine
from agentkernel.agent.events import EventStream, EventType
from agentkernel.agent.state import ToolCallIntent


def _image(n: int) -> dict:
    return {"type": "image_url", "image_url": {"url": f"data:image/png;base64,{n}"}}


def _tool_turn(stream: EventStream) -> None:
    intents = [
        ToolCallIntent("call_a", "get_weather", '{"location": "Paris"}'),
        ToolCallIntent("call_b", "get_weather", '{"location": "Oslo"}'),
    ]
    stream.emit(EventType.USER_MESSAGE, content="Weather in Paris and Oslo?")
    stream.emit(
        EventType.ASSISTANT_MESSAGE,
        content="",
        tool_calls=[asdict(i) for i in intents],
        finish_reason="tool_calls",
    )
    for intent in intents:
        stream.emit(EventType.TOOL_CALL, tool_call_id=intent.call_id, name=intent.tool_name, arguments=intent.raw_arguments)
    # Results land out of order
    stream.emit(EventType.TOOL_RESULT, tool_call_id="call_b", name="get_weather", content="cold")
    stream.emit(EventType.TOOL_RESULT, tool_call_id="call_a", name="get_weather", content="warm")


# ── 1. Ordering ─────────────────────────────────────────────────


def test_results_follow_their_assistant_message_in_intent_order():
    stream = EventStream()
    _tool_turn(stream)
    messages = build_messages(stream.get_events(), NativeToolCallEngine(), "sys")

    assert [m["role"] for m in messages] == ["system", "user", "assistant", "tool", "tool"]
    assert messages[0]["content"] == "sys"
    assert [m["tool_call_id"] for m in messages[3:]] == ["call_a", "call_b"]
    assert [m["content"] for m in messages[3:]] == ["warm", "cold"]
    print("  PASS: result ordering")


def test_missing_result_gets_placeholder():
    stream = EventStream()
    stream.emit(EventType.USER_MESSAGE, content="go")
    stream.emit(
        EventType.ASSISTANT_MESSAGE,
        content="",
        tool_calls=[asdict(ToolCallIntent("call_x", "slow", "{}"))],
    )
    messages = build_messages(stream.get_events(), NativeToolCallEngine(), "sys")
    assert messages[-1]["role"] == "tool"
    assert messages[-1]["tool_call_id"] == "call_x"
    assert messages[-1]["content"].startswith("Error: ")
    print("  PASS: missing result placeholder")


def test_prefix_replay_matches_history():
    stream = EventStream()
    _tool_turn(stream)
    stream.emit(EventType.ASSISTANT_MESSAGE, content="Paris is warm, Oslo is cold.", tool_calls=[])

    events = stream.get_events()
    full = build_messages(events, NativeToolCallEngine(), "sys")
    prefix = build_messages(events[:1], NativeToolCallEngine(), "sys")
    assert full[: len(prefix)] == prefix
    assert full[-1] == {"role": "assistant", "content": "Paris is warm, Oslo is cold."}
    print("  PASS: prefix replay")


def test_reused_call_ids_match_within_their_turn():
    stream = EventStream()
    stream.emit(EventType.USER_MESSAGE, content="echo twice")
    for tag in ("first", "second"):
        stream.emit(
            EventType.ASSISTANT_MESSAGE,
            content="",
            tool_calls=[asdict(ToolCallIntent("call_0", "echo", f'{{"tag": "{tag}"}}'))],
        )
        stream.emit(EventType.TOOL_RESULT, tool_call_id="call_0", name="echo", content=f"result-{tag}")

    events = stream.get_events()
    full = build_messages(events, NativeToolCallEngine(), "sys")
    assert [m["content"] for m in full if m["role"] == "tool"] == ["result-first", "result-second"]

    # Earlier turn projects the same way before and after the later turn exists
    prefix = build_messages(events[:3], NativeToolCallEngine(), "sys")
    assert full[: len(prefix)] == prefix

    # A result of the later turn never answers an unanswered earlier call
    truncated = build_messages(events[:2] + events[3:], NativeToolCallEngine(), "sys")
    tool_messages = [m["content"] for m in truncated if m["role"] == "tool"]
    assert tool_messages[0].startswith("Error: ")
    assert tool_messages[1] == "result-second"
    print("  PASS: reused call ids")


def test_prompt_engine_projection_uses_user_messages():
    stream = EventStream()
    _tool_turn(stream)
    messages = build_messages(stream.get_events(), PromptEngineeringToolCallEngine(), "sys")
    assert [m["role"] for m in messages] == ["system", "user", "assistant", "user", "user"]
    assert messages[3]["content"] == "Tool: get_weather\nResult:\nwarm"
    assert "<tool_call>" in messages[2]["content"]
    print("  PASS: prompt engine projection")


# ── 2. Plans and environment input ──────────────────────────────


def test_plan_update_projected_as_system_message():
    stream = EventStream()
    stream.emit(EventType.USER_MESSAGE, content="go")
    stream.emit(
        EventType.PLAN_UPDATE,
        steps=[{"content": "Open browser", "done": True}, {"content": "Search", "done": False}],
    )
    messages = build_messages(stream.get_events(), NativeToolCallEngine(), "sys")
    plan = messages[-1]
    assert plan["role"] == "system"
    assert plan["content"].startswith("Current plan status:\n1. [DONE] Open browser\n2. [TODO] Search")
    assert format_plan([]).startswith("Current plan status:\n")
    print("  PASS: plan projection")


def test_environment_input_projection():
    stream = EventStream()
    stream.emit(EventType.ENVIRONMENT_INPUT, content="cwd=/tmp", description="Shell")
    stream.emit(EventType.ENVIRONMENT_INPUT, content=[_image(1)])
    messages = build_messages(stream.get_events(), NativeToolCallEngine(), "sys")
    assert messages[1] == {"role": "user", "content": "[Environment: Shell] cwd=/tmp"}
    assert messages[2] == {"role": "user", "content": [_image(1)]}
    print("  PASS: environment input")


# ── 3. Image window ─────────────────────────────────────────────


def test_only_newest_images_are_kept():
    stream = EventStream()
    for n in range(4):
        stream.emit(EventType.ENVIRONMENT_INPUT, content=[_image(n)])
    messages = build_messages(stream.get_events(), NativeToolCallEngine(), "sys", max_images=2)

    parts = [m["content"][0] for m in messages[1:]]
    assert parts[0]["type"] == "text" and parts[1]["type"] == "text"
    assert parts[2] == _image(2)
    assert parts[3] == _image(3)
    print("  PASS: image window")


def test_limit_images_reports_omitted():
    messages = [{"role": "user", "content": [_image(1), _image(2), _image(3)]}]
    assert limit_images(messages, 1) == 2
    assert messages[0]["content"][2] == _image(3)
    assert limit_images([{"role": "user", "content": "text"}], 0) == 0
    print("  PASS: limit_images count")
