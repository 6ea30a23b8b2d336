from __future__ import annotations

import enum
import json
from dataclasses import asdict, dataclass, field
from typing import Any

from agentkernel.agent.errors import ParseError


# ── Run state ───────────────────────────────────────────────────


class AgentRunState(str, enum.Enum):
    IDLE = "idle"
    EXECUTING = "executing"
    ABORTING = "aborting"
    ABORTED = "aborted"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (
            AgentRunState.ABORTED,
            AgentRunState.COMPLETED,
            AgentRunState.ERROR,
        )


# ── Tool calls ──────────────────────────────────────────────────


@dataclass
class ToolCallIntent:
    call_id: str
    tool_name: str
    raw_arguments: str = ""

    def arguments(self) -> dict:
        """Decode ``raw_arguments``. Raises ParseError on malformed JSON."""
        if not self.raw_arguments or not self.raw_arguments.strip():
            return {}
        try:
            args = json.loads(self.raw_arguments)
        except json.JSONDecodeError as e:
            raise ParseError(
                f"invalid JSON in arguments for {self.tool_name}: {e}. "
                f"Raw arguments: {self.raw_arguments[:200]}"
            ) from e
        if not isinstance(args, dict):
            raise ParseError(
                f"arguments for {self.tool_name} must be a JSON object"
            )
        return args

    def to_openai(self) -> dict:
        return {
            "id": self.call_id,
            "type": "function",
            "function": {"name": self.tool_name, "arguments": self.raw_arguments},
        }

    @classmethod
    def from_openai(cls, data: dict) -> ToolCallIntent:
        function = data.get("function", {})
        return cls(
            call_id=data.get("id", ""),
            tool_name=function.get("name", ""),
            raw_arguments=function.get("arguments", "") or "",
        )


@dataclass
class ToolCallResult:
    call_id: str
    tool_name: str
    content: Any = None
    error: str | None = None
    execution_time_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    def as_text(self) -> str:
        """Text rendering used when feeding the result back to the model."""
        if self.error is not None:
            return f"Error: {self.error}"
        if isinstance(self.content, str):
            return self.content
        if self.content is None:
            return ""
        try:
            return json.dumps(self.content, ensure_ascii=False)
        except (TypeError, ValueError):
            return str(self.content)

    def to_dict(self) -> dict:
        return asdict(self)


# ── Engine output ───────────────────────────────────────────────


@dataclass
class ParsedResponse:
    content: str = ""
    tool_calls: list[ToolCallIntent] = field(default_factory=list)
    finish_reason: str = "stop"
    reasoning_content: str | None = None


@dataclass
class StreamChunkResult:
    content: str = ""
    reasoning_content: str = ""
    has_tool_call_update: bool = False


@dataclass
class StreamState:
    content_buffer: str = ""
    reasoning_buffer: str = ""
    tool_calls: dict[int, dict] = field(default_factory=dict)
    finish_reason: str | None = None
    # Number of content characters already emitted as deltas
    emitted: int = 0


# ── Loop control ────────────────────────────────────────────────


@dataclass
class TerminationCheck:
    """Answer of the before-termination hook.

    ``finished=False`` vetoes termination; ``message`` is then appended as a
    synthetic user message before the next turn.
    """

    finished: bool = True
    message: str | None = None


@dataclass
class RunResult:
    state: AgentRunState
    content: str = ""
    finish_reason: str = "stop"
    iterations: int = 0
    elapsed_ms: int = 0
    final_event: Any = None
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "content": self.content,
            "finish_reason": self.finish_reason,
            "iterations": self.iterations,
            "elapsed_ms": self.elapsed_ms,
            "final_event": self.final_event.to_dict() if self.final_event else None,
            "error": self.error,
        }
