"""Adapters that expose tools hosted elsewhere through the ToolRegistry.

A ``ToolProvider`` lists tools and calls them by name. Each listed tool is
wrapped in a ``ToolDefinition`` whose executor forwards the call and turns
remote failures into ``ToolExecutionError``. The registry then records
those as error results, so a broken tool server never breaks the loop.

Results follow the common tool-server shape
``{"content": [{"type": "text", ...}, {"type": "image", ...}], "isError": bool}``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from agentkernel.agent.errors import ToolExecutionError
from agentkernel.agent.tool_registry import ToolDefinition, ToolRegistry

logger = logging.getLogger(__name__)


@dataclass
class RemoteToolSpec:
    name: str
    description: str = ""
    input_schema: dict = field(default_factory=lambda: {"type": "object", "properties": {}})

    @classmethod
    def from_dict(cls, data: dict) -> RemoteToolSpec:
        return cls(
            name=data["name"],
            description=data.get("description", ""),
            input_schema=data.get("inputSchema") or data.get("input_schema") or {"type": "object", "properties": {}},
        )


class ToolProvider(Protocol):
    async def list_tools(self) -> list[RemoteToolSpec]:
        ...

    async def call_tool(self, name: str, arguments: dict) -> Any:
        ...


def convert_remote_content(result: Any, tool_name: str = "remote") -> Any:
    """Map a remote result onto what the engines understand."""
    if not isinstance(result, dict) or "content" not in result:
        return result

    parts = []
    for item in result.get("content") or []:
        kind = item.get("type")
        if kind == "text":
            parts.append({"type": "text", "text": item.get("text", "")})
        elif kind == "image":
            mime = item.get("mimeType", "image/png")
            parts.append(
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:{mime};base64,{item.get('data', '')}"},
                }
            )
        else:
            parts.append({"type": "text", "text": str(item)})

    if result.get("isError"):
        message = "\n".join(p["text"] for p in parts if p["type"] == "text")
        raise ToolExecutionError(tool_name, message or "remote tool reported an error")

    if len(parts) == 1 and parts[0]["type"] == "text":
        return parts[0]["text"]
    return parts


class RemoteToolAdapter:
    def __init__(self, provider: ToolProvider, prefix: str = "") -> None:
        self.provider = provider
        self.prefix = prefix

    def _make_executor(self, remote_name: str):
        async def executor(**arguments: Any) -> Any:
            arguments.pop("signal", None)
            try:
                result = await self.provider.call_tool(remote_name, arguments)
            except ToolExecutionError:
                raise
            except Exception as e:
                raise ToolExecutionError(remote_name, f"{type(e).__name__}: {e}") from e
            return convert_remote_content(result, remote_name)

        return executor

    async def register_all(self, registry: ToolRegistry) -> list[str]:
        """Register every remote tool. Returns the registered names."""
        names = []
        for spec in await self.provider.list_tools():
            name = f"{self.prefix}{spec.name}"
            if registry.has(name):
                logger.warning("remote tool %s shadows an existing tool, skipping", name)
                continue
            registry.register(
                ToolDefinition(
                    name=name,
                    description=spec.description,
                    parameters=spec.input_schema,
                    executor=self._make_executor(spec.name),
                )
            )
            names.append(name)
        logger.info("registered %d remote tools", len(names))
        return names


class HttpToolProvider:
    """Tool server reachable over HTTP.

    ``GET {base_url}/tools`` lists tools, ``POST {base_url}/tools/{name}``
    with ``{"arguments": {...}}`` calls one.
    """

    def __init__(
        self,
        base_url: str,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 60.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(
            headers=headers, timeout=httpx.Timeout(timeout, connect=10.0)
        )

    async def list_tools(self) -> list[RemoteToolSpec]:
        resp = await self.client.get(f"{self.base_url}/tools")
        resp.raise_for_status()
        data = resp.json()
        items = data.get("tools", []) if isinstance(data, dict) else data
        return [RemoteToolSpec.from_dict(item) for item in items]

    async def call_tool(self, name: str, arguments: dict) -> Any:
        try:
            resp = await self.client.post(
                f"{self.base_url}/tools/{name}", json={"arguments": arguments}
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ToolExecutionError(name, f"HTTP {e.response.status_code}: {e.response.text[:200]}") from e
        except httpx.HTTPError as e:
            raise ToolExecutionError(name, f"{type(e).__name__}: {e}") from e
        return resp.json()

    async def aclose(self) -> None:
        await self.client.aclose()
