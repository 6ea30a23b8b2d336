"""Project an event log into the message list sent to the model.

The conversation is never stored. It is rebuilt from the events on every
turn, so rebuilding from any prefix of the log gives exactly the
conversation the loop would have used at that point.
"""

from __future__ import annotations

import logging
from typing import Iterable

from agentkernel.agent.constants import (
    IMAGE_OMITTED_PLACEHOLDER,
    PLAN_FOLLOW_INSTRUCTION,
    TOOL_MISSING_RESULT_ERROR,
)
from agentkernel.agent.engines.base import ToolCallEngine
from agentkernel.agent.events import Event, EventType
from agentkernel.agent.state import ParsedResponse, ToolCallIntent, ToolCallResult

logger = logging.getLogger(__name__)


def intents_from_payload(event: Event) -> list[ToolCallIntent]:
    return [ToolCallIntent(**tc) for tc in event.get("tool_calls") or []]


def parsed_from_event(event: Event) -> ParsedResponse:
    return ParsedResponse(
        content=event.get("content") or "",
        tool_calls=intents_from_payload(event),
        finish_reason=event.get("finish_reason") or "stop",
        reasoning_content=event.get("reasoning_content"),
    )


def result_from_event(event: Event) -> ToolCallResult:
    return ToolCallResult(
        call_id=event.get("tool_call_id", ""),
        tool_name=event.get("name", ""),
        content=event.get("content"),
        error=event.get("error"),
        execution_time_ms=event.get("elapsed_ms", 0),
    )


def format_plan(steps: list[dict]) -> str:
    lines = [
        f"{i}. [{'DONE' if step.get('done') else 'TODO'}] {step.get('content', '')}"
        for i, step in enumerate(steps, start=1)
    ]
    return "Current plan status:\n" + "\n".join(lines) + "\n\n" + PLAN_FOLLOW_INSTRUCTION


def _environment_message(event: Event) -> dict:
    content = event.get("content")
    description = event.get("description") or "Environment Input"
    if isinstance(content, str):
        return {"role": "user", "content": f"[Environment: {description}] {content}"}
    parts = list(content or [])
    if event.get("description") and not any(p.get("type") == "text" for p in parts):
        parts.insert(0, {"type": "text", "text": f"[Environment: {description}]"})
    return {"role": "user", "content": parts}


def results_by_turn(events: list[Event]) -> dict[int, dict[str, Event]]:
    """Tool results keyed by call id, grouped under the assistant event that requested them.

    Call ids are only unique within one turn, so a result is matched against
    the closest preceding assistant message. The first result per id wins.
    """
    turns: dict[int, dict[str, Event]] = {}
    current: dict[str, Event] | None = None
    for index, event in enumerate(events):
        if event.type == EventType.ASSISTANT_MESSAGE:
            current = turns.setdefault(index, {})
        elif event.type == EventType.TOOL_RESULT and current is not None:
            current.setdefault(event.get("tool_call_id"), event)
    return turns


def build_messages(
    events: Iterable[Event],
    engine: ToolCallEngine,
    system_prompt: str,
    max_images: int | None = None,
) -> list[dict]:
    """Rebuild the conversation for ``engine`` from ``events``."""
    events = list(events)
    messages: list[dict] = [{"role": "system", "content": system_prompt}]
    turns = results_by_turn(events)

    for index, event in enumerate(events):
        if event.type == EventType.USER_MESSAGE:
            messages.append({"role": "user", "content": event.get("content")})

        elif event.type == EventType.ASSISTANT_MESSAGE:
            parsed = parsed_from_event(event)
            messages.append(engine.format_assistant_message(parsed))
            if parsed.tool_calls:
                results_by_call = turns.get(index, {})
                results = []
                for intent in parsed.tool_calls:
                    result_event = results_by_call.get(intent.call_id)
                    if result_event is not None:
                        results.append(result_from_event(result_event))
                    else:
                        results.append(
                            ToolCallResult(
                                call_id=intent.call_id,
                                tool_name=intent.tool_name,
                                error=TOOL_MISSING_RESULT_ERROR,
                            )
                        )
                messages.extend(engine.format_tool_results(results))

        elif event.type == EventType.ENVIRONMENT_INPUT:
            messages.append(_environment_message(event))

        elif event.type == EventType.PLAN_UPDATE:
            messages.append(
                {"role": "system", "content": format_plan(event.get("steps") or [])}
            )

    if max_images is not None:
        limit_images(messages, max_images)
    return messages


def limit_images(messages: list[dict], max_images: int) -> int:
    """Keep only the newest ``max_images`` images, in place. Returns how many were dropped."""
    seen = 0
    omitted = 0
    for message in reversed(messages):
        content = message.get("content")
        if not isinstance(content, list):
            continue
        new_parts = []
        for part in reversed(content):
            if isinstance(part, dict) and part.get("type") == "image_url":
                seen += 1
                if seen > max_images:
                    omitted += 1
                    new_parts.append({"type": "text", "text": IMAGE_OMITTED_PLACEHOLDER})
                    continue
            new_parts.append(part)
        message["content"] = list(reversed(new_parts))
    if omitted:
        logger.info(
            "conversation built with %d images (limit %d, %d replaced with placeholders)",
            seen - omitted,
            max_images,
            omitted,
        )
    return omitted
