"""Prompt-engineering engine for models without native function calling.

Tools are described in the system prompt and the model is asked to emit
``<tool_call>{"name": ..., "parameters": {...}}</tool_call>`` blocks.
Parsing is tolerant: code fences inside the block, trailing commas and a
missing closing tag at the very end of the reply are all accepted. A block
that still does not decode is dropped and logged; the rest of the reply
passes through as plain content.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from agentkernel.agent.constants import FINISH_REASON_STOP, FINISH_REASON_TOOL_CALLS
from agentkernel.agent.engines.base import ToolCallEngine
from agentkernel.agent.engines.utils import (
    build_user_tool_result_messages,
    field_of,
    generate_call_id,
    strip_code_fence,
)
from agentkernel.agent.errors import ParseError
from agentkernel.agent.state import (
    ParsedResponse,
    StreamChunkResult,
    StreamState,
    ToolCallIntent,
    ToolCallResult,
)
from agentkernel.agent.tool_registry import ToolDefinition
from agentkernel.services.template_engine import get_template_engine

logger = logging.getLogger(__name__)

OPEN_TAG = "<tool_call>"
CLOSE_TAG = "</tool_call>"

_BLOCK_RE = re.compile(r"<tool_call>([\s\S]*?)</tool_call>")
_UNTERMINATED_RE = re.compile(r"<tool_call>([\s\S]*)$")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


def _decode_block(body: str) -> ToolCallIntent:
    text = strip_code_fence(body)
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        try:
            data = json.loads(_TRAILING_COMMA_RE.sub(r"\1", text))
        except json.JSONDecodeError as e:
            raise ParseError(f"tool_call block is not valid JSON: {e}") from e

    if not isinstance(data, dict) or not isinstance(data.get("name"), str):
        raise ParseError("tool_call block has no tool name")

    params = data.get("parameters", data.get("arguments", {}))
    if params is None:
        params = {}
    return ToolCallIntent(
        call_id=generate_call_id(),
        tool_name=data["name"],
        raw_arguments=json.dumps(params, ensure_ascii=False),
    )


def extract_tool_calls(content: str) -> tuple[str, list[ToolCallIntent]]:
    """Return (content without tool_call blocks, decoded intents)."""
    intents: list[ToolCallIntent] = []
    bodies = _BLOCK_RE.findall(content)
    cleaned = _BLOCK_RE.sub("", content)

    tail = _UNTERMINATED_RE.search(cleaned)
    if tail:
        bodies.append(tail.group(1))
        cleaned = cleaned[: tail.start()]

    for body in bodies:
        try:
            intents.append(_decode_block(body))
        except ParseError as e:
            logger.warning("dropping unparseable tool call: %s", e)

    return cleaned.strip(), intents


def _visible_text(buffer: str) -> str:
    """Part of a streaming buffer that is safe to show the user."""
    visible = _BLOCK_RE.sub("", buffer)
    open_idx = visible.find(OPEN_TAG)
    if open_idx != -1:
        return visible[:open_idx]
    # Hold back a trailing prefix of the opening tag, e.g. "<tool_"
    for size in range(min(len(OPEN_TAG) - 1, len(visible)), 0, -1):
        if OPEN_TAG.startswith(visible[-size:]):
            return visible[:-size]
    return visible


class PromptEngineeringToolCallEngine(ToolCallEngine):
    name = "prompt_engineering"

    def prepare_system_prompt(
        self, instructions: str, tools: list[ToolDefinition]
    ) -> str:
        if not tools:
            return instructions
        logger.info("preparing prompt with %d tools", len(tools))
        return get_template_engine().render_tool_prompt(
            "tool_prompt.j2", instructions, tools
        )

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
        # Tools are already in the system prompt
        kwargs: dict = {"model": model, "messages": messages, "stream": stream}
        if temperature is not None:
            kwargs["temperature"] = temperature
        return kwargs

    def parse_response(self, response: Any) -> ParsedResponse:
        message, finish_reason = self._read_message(response)
        content, intents = extract_tool_calls(field_of(message, "content") or "")
        return ParsedResponse(
            content=content,
            tool_calls=intents,
            finish_reason=FINISH_REASON_TOOL_CALLS if intents else (finish_reason or FINISH_REASON_STOP),
            reasoning_content=field_of(message, "reasoning_content"),
        )

    def process_chunk(self, chunk: Any, state: StreamState) -> StreamChunkResult:
        delta, reasoning = self._read_common_delta(chunk, state)
        new_content = field_of(delta, "content") or ""
        if not new_content:
            return StreamChunkResult(reasoning_content=reasoning)

        completed_before = state.content_buffer.count(CLOSE_TAG)
        state.content_buffer += new_content

        visible = _visible_text(state.content_buffer)
        emit = visible[state.emitted:]
        state.emitted = len(visible)

        return StreamChunkResult(
            content=emit,
            reasoning_content=reasoning,
            has_tool_call_update=state.content_buffer.count(CLOSE_TAG) > completed_before,
        )

    def finalize_stream(self, state: StreamState) -> ParsedResponse:
        content, intents = extract_tool_calls(state.content_buffer)
        return ParsedResponse(
            content=content,
            tool_calls=intents,
            finish_reason=FINISH_REASON_TOOL_CALLS if intents else (state.finish_reason or FINISH_REASON_STOP),
            reasoning_content=state.reasoning_buffer or None,
        )

    def format_assistant_message(self, parsed: ParsedResponse) -> dict:
        # No tool_calls field here; re-render the calls so the model sees what it asked for
        parts = [parsed.content] if parsed.content else []
        for tc in parsed.tool_calls:
            try:
                params = json.loads(tc.raw_arguments) if tc.raw_arguments else {}
            except json.JSONDecodeError:
                params = {}
            block = json.dumps(
                {"name": tc.tool_name, "parameters": params},
                ensure_ascii=False,
                indent=2,
            )
            parts.append(f"{OPEN_TAG}\n{block}\n{CLOSE_TAG}")
        return {"role": "assistant", "content": "\n\n".join(parts)}

    def format_tool_results(self, results: list[ToolCallResult]) -> list[dict]:
        return build_user_tool_result_messages(results)
