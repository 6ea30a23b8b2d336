from __future__ import annotations

import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from agentkernel.agent.constants import TOOL_NOT_FOUND_ERROR
from agentkernel.agent.state import ToolCallResult

logger = logging.getLogger(__name__)


@dataclass
class ToolDefinition:
    name: str
    description: str
    parameters: dict
    executor: Callable[..., Any]
    accepts_signal: bool = field(init=False, default=False)

    def __post_init__(self) -> None:
        try:
            params = inspect.signature(self.executor).parameters
        except (TypeError, ValueError):
            return
        self.accepts_signal = "signal" in params or any(
            p.kind is inspect.Parameter.VAR_KEYWORD for p in params.values()
        )

    def to_openai_schema(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class ToolRegistry:
    """Registry for agent tools. Each tool is a function the LLM can call."""

    def __init__(self, tools: list[ToolDefinition] | None = None):
        self._tools: dict[str, ToolDefinition] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: ToolDefinition) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered")
        self._tools[tool.name] = tool
        logger.debug("registered tool %s", tool.name)

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def list_tools(self) -> list[ToolDefinition]:
        return list(self._tools.values())

    def names(self) -> list[str]:
        return list(self._tools.keys())

    def get_openai_schema(self) -> list[dict]:
        """Return tools in OpenAI function-calling format."""
        return [t.to_openai_schema() for t in self._tools.values()]

    async def execute(
        self,
        name: str,
        call_id: str,
        arguments: dict,
        signal: Any = None,
    ) -> ToolCallResult:
        """Execute a tool by name. Never raises for tool-level failures."""
        tool = self._tools.get(name)
        if tool is None:
            return ToolCallResult(
                call_id=call_id, tool_name=name, error=TOOL_NOT_FOUND_ERROR
            )

        kwargs = dict(arguments)
        if tool.accepts_signal and signal is not None:
            kwargs["signal"] = signal

        start = time.perf_counter()
        try:
            result = tool.executor(**kwargs)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            logger.exception("tool %s (%s) failed", name, call_id)
            return ToolCallResult(
                call_id=call_id,
                tool_name=name,
                error=str(e) or type(e).__name__,
                execution_time_ms=0,
            )

        elapsed_ms = int((time.perf_counter() - start) * 1000)
        return ToolCallResult(
            call_id=call_id,
            tool_name=name,
            content=result,
            execution_time_ms=elapsed_ms,
        )
