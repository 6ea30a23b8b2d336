"""ToolCallEngine: the strategy that decides how tools reach the model.

One engine is selected per run. It owns the full round trip: how tools
are advertised (request fields or prompt text), how the reply is decoded
into ``ToolCallIntent`` objects, and how assistant turns and tool results
are written back into the conversation.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from agentkernel.agent.engines.utils import field_of, first_choice
from agentkernel.agent.state import (
    ParsedResponse,
    StreamChunkResult,
    StreamState,
    ToolCallResult,
)
from agentkernel.agent.tool_registry import ToolDefinition


class ToolCallEngine(ABC):
    name: str

    # ------------------------------------------------------------------
    # Request side
    # ------------------------------------------------------------------

    def prepare_system_prompt(
        self, instructions: str, tools: list[ToolDefinition]
    ) -> str:
        return instructions

    @abstractmethod
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
        """Return the keyword arguments for a chat-completions call."""
        ...

    # ------------------------------------------------------------------
    # Response side
    # ------------------------------------------------------------------

    @abstractmethod
    def parse_response(self, response: Any) -> ParsedResponse:
        ...

    def init_stream_state(self) -> StreamState:
        return StreamState()

    @abstractmethod
    def process_chunk(self, chunk: Any, state: StreamState) -> StreamChunkResult:
        ...

    @abstractmethod
    def finalize_stream(self, state: StreamState) -> ParsedResponse:
        ...

    # ------------------------------------------------------------------
    # Conversation side
    # ------------------------------------------------------------------

    @abstractmethod
    def format_assistant_message(self, parsed: ParsedResponse) -> dict:
        ...

    @abstractmethod
    def format_tool_results(self, results: list[ToolCallResult]) -> list[dict]:
        ...

    # ------------------------------------------------------------------
    # Shared chunk plumbing
    # ------------------------------------------------------------------

    @staticmethod
    def _read_common_delta(chunk: Any, state: StreamState) -> tuple[Any, str]:
        """Record finish reason and reasoning text; return (delta, reasoning_delta)."""
        choice = first_choice(chunk)
        if choice is None:
            return None, ""
        finish_reason = field_of(choice, "finish_reason")
        if finish_reason:
            state.finish_reason = finish_reason
        delta = field_of(choice, "delta")
        reasoning = field_of(delta, "reasoning_content") or ""
        if reasoning:
            state.reasoning_buffer += reasoning
        return delta, reasoning

    @staticmethod
    def _read_message(response: Any) -> tuple[Any, str | None]:
        choice = first_choice(response)
        return field_of(choice, "message"), field_of(choice, "finish_reason")
