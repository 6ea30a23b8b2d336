"""Helpers shared by the tool-call engines."""

from __future__ import annotations

import time
import uuid
from typing import Any

from agentkernel.agent.state import ToolCallResult


def field_of(obj: Any, name: str, default: Any = None) -> Any:
    """Read ``name`` from an SDK object or a plain dict."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def first_choice(response: Any) -> Any:
    choices = field_of(response, "choices") or []
    return choices[0] if choices else None


def generate_call_id() -> str:
    return f"call_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def is_multimodal(content: Any) -> bool:
    return (
        isinstance(content, list)
        and bool(content)
        and all(isinstance(p, dict) and p.get("type") in ("text", "image_url") for p in content)
    )


def split_result_content(result: ToolCallResult) -> tuple[str, list[dict]]:
    """Split a tool result into its text and its image parts."""
    if result.error is None and is_multimodal(result.content):
        texts = [p.get("text", "") for p in result.content if p["type"] == "text"]
        images = [p for p in result.content if p["type"] == "image_url"]
        return "\n".join(texts), images
    return result.as_text(), []


def build_user_tool_result_messages(results: list[ToolCallResult]) -> list[dict]:
    """Tool results as user messages, for engines without a ``tool`` role."""
    messages: list[dict] = []
    for result in results:
        text, images = split_result_content(result)
        body = f"Tool: {result.tool_name}\nResult:\n{text}"
        if images:
            messages.append(
                {"role": "user", "content": [{"type": "text", "text": body}, *images]}
            )
        else:
            messages.append({"role": "user", "content": body})
    return messages


def strip_code_fence(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        first_newline = text.find("\n")
        text = text[first_newline + 1:] if first_newline != -1 else text[3:]
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()
