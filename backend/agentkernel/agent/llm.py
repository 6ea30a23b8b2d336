"""LLM client boundary with retry logic.

The loop only depends on the ``LLMClient`` protocol: one coroutine that
takes the keyword arguments built by a tool-call engine and returns either
a completion or, when ``stream=True``, an async iterator of chunks.

``OpenAICompatibleClient`` implements it with the OpenAI SDK. Every
supported provider speaks the OpenAI wire protocol, so resolving a provider
only means picking a base URL and a key. Transient failures (429, 5xx,
timeouts, connection errors) are retried with exponential backoff. Only
the initial request is retried, never a stream that already started.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI, OpenAIError

from agentkernel.agent.constants import (
    LLM_CONNECT_TIMEOUT_SECONDS,
    LLM_MAX_RETRIES,
    LLM_RETRY_BASE_DELAY_SECONDS,
    LLM_RETRY_MAX_DELAY_SECONDS,
    LLM_RETRYABLE_STATUS_CODES,
    LLM_TIMEOUT_SECONDS,
    PROVIDER_BASE_URLS,
    PROVIDER_PLACEHOLDER_API_KEYS,
)
from agentkernel.agent.errors import TransportError
from agentkernel.config import settings

logger = logging.getLogger(__name__)


class LLMClient(Protocol):
    async def complete(self, request: dict) -> Any:
        ...


# ── Model resolution ────────────────────────────────────────────


@dataclass
class ResolvedModel:
    provider: str
    model: str
    base_url: str | None = None
    api_key: str | None = None


def resolve_model(
    provider: str | None = None,
    model: str | None = None,
    base_url: str | None = None,
    api_key: str | None = None,
) -> ResolvedModel:
    """Fill in provider defaults; explicit arguments beat settings."""
    provider = (provider or settings.LLM_PROVIDER).lower()
    return ResolvedModel(
        provider=provider,
        model=model or settings.LLM_MODEL,
        base_url=base_url or settings.LLM_BASE_URL or PROVIDER_BASE_URLS.get(provider),
        api_key=(
            api_key
            or settings.PROVIDER_API_KEYS.get(provider)
            or settings.LLM_API_KEY
            or PROVIDER_PLACEHOLDER_API_KEYS.get(provider)
        ),
    )


# ── Retry ───────────────────────────────────────────────────────


def _is_retryable(exc: Exception) -> bool:
    """Determine if an exception is transient and worth retrying."""
    if isinstance(exc, APITimeoutError):
        return True
    if isinstance(exc, APIConnectionError):
        return True
    if isinstance(exc, APIStatusError) and exc.status_code in LLM_RETRYABLE_STATUS_CODES:
        return True
    return False


def _retry_delay(attempt: int) -> float:
    return min(
        LLM_RETRY_BASE_DELAY_SECONDS * (2 ** (attempt - 1)),
        LLM_RETRY_MAX_DELAY_SECONDS,
    )


class OpenAICompatibleClient:
    def __init__(
        self,
        resolved: ResolvedModel | None = None,
        max_retries: int | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self.resolved = resolved or resolve_model()
        self.max_retries = max_retries or settings.LLM_MAX_RETRIES or LLM_MAX_RETRIES
        self._client = client

    def get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.resolved.api_key or "",
                base_url=self.resolved.base_url,
                timeout=httpx.Timeout(LLM_TIMEOUT_SECONDS, connect=LLM_CONNECT_TIMEOUT_SECONDS),
                # Retries are handled below so they can be logged
                max_retries=0,
            )
        return self._client

    async def complete(self, request: dict) -> Any:
        kwargs = dict(request)
        kwargs.setdefault("model", self.resolved.model)
        client = self.get_client()

        for attempt in range(1, self.max_retries + 1):
            try:
                return await client.chat.completions.create(**kwargs)
            except OpenAIError as exc:
                if attempt < self.max_retries and _is_retryable(exc):
                    delay = _retry_delay(attempt)
                    logger.warning(
                        "LLM request attempt %d/%d failed (%s), retrying in %.1fs",
                        attempt,
                        self.max_retries,
                        exc,
                        delay,
                    )
                    await asyncio.sleep(delay)
                    continue
                raise TransportError(f"LLM request failed: {exc}") from exc

        raise TransportError("LLM request failed: no attempts made")
