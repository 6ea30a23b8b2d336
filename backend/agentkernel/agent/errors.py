"""Error kinds raised inside the agent runtime.

Only ``TransportError`` and ``AgentBusyError`` ever reach the caller of
``Agent.run``. Parse and tool failures are captured and fed back into the
conversation; cancellation is reported through the run result.
"""

from __future__ import annotations


class AgentError(Exception):
    kind = "agent"


class ParseError(AgentError):
    """A model reply could not be decoded into tool calls."""

    kind = "parse"


class ToolExecutionError(AgentError):
    kind = "tool"

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(f"{tool_name}: {message}")
        self.tool_name = tool_name


class TransportError(AgentError):
    """The LLM request failed and retries were exhausted."""

    kind = "transport"


class AgentBusyError(AgentError):
    kind = "precondition"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(
            message
            or "Agent is already executing a task. Complete or abort the "
            "current task before starting a new one."
        )
