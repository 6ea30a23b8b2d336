"""Native engine: tools travel in the request's ``tools`` field and come
back as structured ``tool_calls``. Results are sent as ``role="tool"``
messages; image parts go in a follow-up user message since the tool role
only carries text.
"""

from __future__ import annotations

from typing import Any

from agentkernel.agent.constants import FINISH_REASON_STOP, FINISH_REASON_TOOL_CALLS
from agentkernel.agent.engines.base import ToolCallEngine
from agentkernel.agent.engines.utils import field_of, generate_call_id, split_result_content
from agentkernel.agent.state import (
    ParsedResponse,
    StreamChunkResult,
    StreamState,
    ToolCallIntent,
    ToolCallResult,
)
from agentkernel.agent.tool_registry import ToolDefinition


def _unique_call_id(call_id: str | None, seen: set[str]) -> str:
    """Keep the provider's id unless it is missing or already used in this reply."""
    if not call_id or call_id in seen:
        call_id = generate_call_id()
    seen.add(call_id)
    return call_id


class NativeToolCallEngine(ToolCallEngine):
    name = "native"

    def build_request(
        self,
        *,
        model: str,
        messages: list[dict],
        tools: list[ToolDefinition],
        tool_choice: str | dict | None = None,
        temperature: float | None = None,
        stream: bool = False,
    ) -> dict:
        kwargs: dict = {
            "model": model,
            "messages": messages,
            "stream": stream,
        }
        if temperature is not None:
            kwargs["temperature"] = temperature
        if tools:
            kwargs["tools"] = [t.to_openai_schema() for t in tools]
            kwargs["tool_choice"] = tool_choice or "auto"
        return kwargs

    def parse_response(self, response: Any) -> ParsedResponse:
        message, finish_reason = self._read_message(response)
        seen: set[str] = set()
        intents = []
        for tc in field_of(message, "tool_calls") or []:
            function = field_of(tc, "function")
            intents.append(
                ToolCallIntent(
                    call_id=_unique_call_id(field_of(tc, "id"), seen),
                    tool_name=field_of(function, "name", ""),
                    raw_arguments=field_of(function, "arguments", "") or "",
                )
            )
        return ParsedResponse(
            content=field_of(message, "content") or "",
            tool_calls=intents,
            finish_reason=FINISH_REASON_TOOL_CALLS if intents else (finish_reason or FINISH_REASON_STOP),
            reasoning_content=field_of(message, "reasoning_content"),
        )

    def process_chunk(self, chunk: Any, state: StreamState) -> StreamChunkResult:
        delta, reasoning = self._read_common_delta(chunk, state)
        if delta is None:
            return StreamChunkResult(reasoning_content=reasoning)

        content = field_of(delta, "content") or ""
        state.content_buffer += content

        # Tool call fragments arrive keyed by index
        updated = False
        for tc in field_of(delta, "tool_calls") or []:
            idx = field_of(tc, "index", 0)
            if idx not in state.tool_calls:
                state.tool_calls[idx] = {"id": "", "name": "", "arguments": ""}
            acc = state.tool_calls[idx]
            if field_of(tc, "id"):
                acc["id"] = field_of(tc, "id")
            function = field_of(tc, "function")
            if function is not None:
                if field_of(function, "name"):
                    acc["name"] += field_of(function, "name")
                if field_of(function, "arguments"):
                    acc["arguments"] += field_of(function, "arguments")
            updated = True

        return StreamChunkResult(
            content=content,
            reasoning_content=reasoning,
            has_tool_call_update=updated,
        )

    def finalize_stream(self, state: StreamState) -> ParsedResponse:
        seen: set[str] = set()
        intents = [
            ToolCallIntent(
                call_id=_unique_call_id(acc["id"], seen),
                tool_name=acc["name"],
                raw_arguments=acc["arguments"],
            )
            for _, acc in sorted(state.tool_calls.items())
        ]
        return ParsedResponse(
            content=state.content_buffer,
            tool_calls=intents,
            finish_reason=FINISH_REASON_TOOL_CALLS if intents else (state.finish_reason or FINISH_REASON_STOP),
            reasoning_content=state.reasoning_buffer or None,
        )

    def format_assistant_message(self, parsed: ParsedResponse) -> dict:
        if not parsed.tool_calls:
            return {"role": "assistant", "content": parsed.content}
        return {
            "role": "assistant",
            "tool_calls": [tc.to_openai() for tc in parsed.tool_calls],
            **({"content": parsed.content} if parsed.content else {}),
        }

    def format_tool_results(self, results: list[ToolCallResult]) -> list[dict]:
        messages: list[dict] = []
        images: list[dict] = []
        for result in results:
            text, result_images = split_result_content(result)
            messages.append(
                {"role": "tool", "tool_call_id": result.call_id, "content": text}
            )
            images.extend(result_images)
        # Tool messages must directly follow the assistant turn, so images go last
        if images:
            messages.append({"role": "user", "content": images})
        return messages
