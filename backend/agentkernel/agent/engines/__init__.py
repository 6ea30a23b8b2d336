"""Tool-call engines and engine selection."""

from __future__ import annotations

import logging

from agentkernel.agent.engines.base import ToolCallEngine
from agentkernel.agent.engines.native import NativeToolCallEngine
from agentkernel.agent.engines.prompt import PromptEngineeringToolCallEngine
from agentkernel.agent.engines.structured import StructuredOutputsToolCallEngine

logger = logging.getLogger(__name__)

ENGINES: dict[str, type[ToolCallEngine]] = {
    NativeToolCallEngine.name: NativeToolCallEngine,
    PromptEngineeringToolCallEngine.name: PromptEngineeringToolCallEngine,
    StructuredOutputsToolCallEngine.name: StructuredOutputsToolCallEngine,
}

# Providers that need something other than native function calling
PROVIDER_ENGINES: dict[str, str] = {
    "openai": "native",
    "azure-openai": "native",
    "anthropic": "native",
    "deepseek": "native",
    "ollama": "prompt_engineering",
    "lm-studio": "prompt_engineering",
    "volcengine": "structured_outputs",
}

DEFAULT_ENGINE = "native"


def resolve_engine(name: str | None) -> ToolCallEngine:
    """Instantiate the engine called ``name``; unknown names fall back to native."""
    engine_cls = ENGINES.get(name or DEFAULT_ENGINE)
    if engine_cls is None:
        logger.warning("unknown tool-call engine %r, using %s", name, DEFAULT_ENGINE)
        engine_cls = ENGINES[DEFAULT_ENGINE]
    return engine_cls()


def engine_for_provider(provider: str | None, override: str | None = None) -> ToolCallEngine:
    """Pick the engine for a run: explicit override first, then the provider map."""
    name = override or PROVIDER_ENGINES.get((provider or "").lower(), DEFAULT_ENGINE)
    engine = resolve_engine(name)
    logger.info("using %s tool-call engine for provider %s", engine.name, provider)
    return engine


__all__ = [
    "ToolCallEngine",
    "NativeToolCallEngine",
    "PromptEngineeringToolCallEngine",
    "StructuredOutputsToolCallEngine",
    "ENGINES",
    "PROVIDER_ENGINES",
    "resolve_engine",
    "engine_for_provider",
]
