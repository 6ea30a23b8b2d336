"""Structured-outputs engine: the model answers with a JSON document
constrained by ``response_format`` and the document is validated with
pydantic. A reply that fails validation is treated as a plain answer.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from agentkernel.agent.constants import (
    FINISH_REASON_STOP,
    FINISH_REASON_TOOL_CALLS,
    STRUCTURED_SCHEMA_NAME,
)
from agentkernel.agent.engines.base import ToolCallEngine
from agentkernel.agent.engines.utils import (
    build_user_tool_result_messages,
    field_of,
    generate_call_id,
    strip_code_fence,
)
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

_PARTIAL_CONTENT_RE = re.compile(r'"content"\s*:\s*"((?:[^"\\]|\\.)*)')
_INCOMPLETE_ESCAPE_RE = re.compile(r"\\u[0-9a-fA-F]{0,3}$")


class StructuredToolCall(BaseModel):
    name: str
    args: dict[str, Any] = Field(default_factory=dict)


class StructuredAgentResponse(BaseModel):
    content: str = ""
    toolCall: StructuredToolCall | None = None


def _partial_content(buffer: str) -> str:
    """Decode as much of the ``content`` string as has streamed in so far."""
    match = _PARTIAL_CONTENT_RE.search(buffer)
    if not match:
        return ""
    raw = match.group(1)
    for candidate in (raw, _INCOMPLETE_ESCAPE_RE.sub("", raw)):
        try:
            return json.loads(f'"{candidate}"', strict=False)
        except json.JSONDecodeError:
            continue
    return ""


class StructuredOutputsToolCallEngine(ToolCallEngine):
    name = "structured_outputs"

    def prepare_system_prompt(
        self, instructions: str, tools: list[ToolDefinition]
    ) -> str:
        if not tools:
            return instructions
        return get_template_engine().render_tool_prompt(
            "structured_prompt.j2", instructions, tools
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
        kwargs: dict = {
            "model": model,
            "messages": messages,
            "stream": stream,
            "response_format": {
                "type": "json_schema",
                "json_schema": {
                    "name": STRUCTURED_SCHEMA_NAME,
                    "schema": StructuredAgentResponse.model_json_schema(),
                },
            },
        }
        if temperature is not None:
            kwargs["temperature"] = temperature
        return kwargs

    def _parse_text(
        self, text: str, finish_reason: str | None, reasoning: str | None
    ) -> ParsedResponse:
        try:
            doc = StructuredAgentResponse.model_validate_json(strip_code_fence(text))
        except ValidationError as e:
            logger.warning(
                "structured reply failed validation, treating as content: %s",
                e.errors()[:1],
            )
            return ParsedResponse(
                content=text,
                finish_reason=finish_reason or FINISH_REASON_STOP,
                reasoning_content=reasoning,
            )

        intents = []
        if doc.toolCall is not None:
            intents.append(
                ToolCallIntent(
                    call_id=generate_call_id(),
                    tool_name=doc.toolCall.name,
                    raw_arguments=json.dumps(doc.toolCall.args, ensure_ascii=False),
                )
            )
        return ParsedResponse(
            content=doc.content,
            tool_calls=intents,
            finish_reason=FINISH_REASON_TOOL_CALLS if intents else (finish_reason or FINISH_REASON_STOP),
            reasoning_content=reasoning,
        )

    def parse_response(self, response: Any) -> ParsedResponse:
        message, finish_reason = self._read_message(response)
        return self._parse_text(
            field_of(message, "content") or "",
            finish_reason,
            field_of(message, "reasoning_content"),
        )

    def process_chunk(self, chunk: Any, state: StreamState) -> StreamChunkResult:
        delta, reasoning = self._read_common_delta(chunk, state)
        new_content = field_of(delta, "content") or ""
        if not new_content:
            return StreamChunkResult(reasoning_content=reasoning)

        state.content_buffer += new_content
        visible = _partial_content(state.content_buffer)
        emit = visible[state.emitted:]
        state.emitted = max(state.emitted, len(visible))
        return StreamChunkResult(
            content=emit,
            reasoning_content=reasoning,
            has_tool_call_update='"toolCall"' in new_content,
        )

    def finalize_stream(self, state: StreamState) -> ParsedResponse:
        return self._parse_text(
            state.content_buffer,
            state.finish_reason,
            state.reasoning_buffer or None,
        )

    def format_assistant_message(self, parsed: ParsedResponse) -> dict:
        doc: dict = {"content": parsed.content}
        if parsed.tool_calls:
            tc = parsed.tool_calls[0]
            try:
                args = json.loads(tc.raw_arguments) if tc.raw_arguments else {}
            except json.JSONDecodeError:
                args = {}
            doc["toolCall"] = {"name": tc.tool_name, "args": args}
        return {"role": "assistant", "content": json.dumps(doc, ensure_ascii=False)}

    def format_tool_results(self, results: list[ToolCallResult]) -> list[dict]:
        return build_user_tool_result_messages(results)
