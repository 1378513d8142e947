"""Interfaces of the external services the memory subsystem consumes.

Concrete LLM, embedding and entity-resolution backends live outside this
package; anything matching these protocols can be plugged in.
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Awaitable, Protocol, TypeVar, runtime_checkable

from .exceptions import ProviderTimeoutError
from .models import ResolvedEntity

T = TypeVar("T")


@runtime_checkable
class ChatProvider(Protocol):
    """Chat/LLM provider used for extraction, summarization and consolidation."""

    async def chat(
        self,
        role: str,
        messages: list[dict],
        temperature: float = 0.3,
        max_tokens: int = 300,
    ) -> str:
        """Run a completion for a model role and return the text content."""
        ...

    def chat_stream(
        self,
        role: str,
        messages: list[dict],
        temperature: float = 0.3,
        max_tokens: int = 300,
    ) -> AsyncIterator[str]:
        """Stream the completion as text chunks."""
        ...


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Embedding provider with fixed dimensionality per model."""

    model: str

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed a batch of texts, one vector per input."""
        ...


@runtime_checkable
class EntityResolver(Protocol):
    """Resolves entity mentions in free text."""

    async def extract_entities(self, text: str) -> list[ResolvedEntity]:
        """Return entities mentioned in ``text`` with a confidence score."""
        ...


class StreamingChatAdapter:
    """Exposes a stream-only LLM through the ChatProvider interface.

    Wraps objects providing ``chat_completion(messages=..., system=...)``
    that yield either plain strings or ``{"type": "text_delta"}`` dicts.
    """

    def __init__(self, llm: Any):
        self._llm = llm

    @staticmethod
    def _split_system(messages: list[dict]) -> tuple[str | None, list[dict]]:
        system_parts = [m["content"] for m in messages if m.get("role") == "system"]
        rest = [m for m in messages if m.get("role") != "system"]
        return ("\n\n".join(system_parts) or None), rest

    async def chat_stream(
        self,
        role: str,
        messages: list[dict],
        temperature: float = 0.3,
        max_tokens: int = 300,
    ) -> AsyncIterator[str]:
        system, rest = self._split_system(messages)
        stream = self._llm.chat_completion(messages=rest, system=system)
        async for chunk in stream:
            if isinstance(chunk, str):
                yield chunk
            elif isinstance(chunk, dict) and chunk.get("type") == "text_delta":
                yield chunk.get("text", "")

    async def chat(
        self,
        role: str,
        messages: list[dict],
        temperature: float = 0.3,
        max_tokens: int = 300,
    ) -> str:
        parts: list[str] = []
        async for chunk in self.chat_stream(role, messages, temperature, max_tokens):
            parts.append(chunk)
        return "".join(parts).strip()


async def call_with_timeout(
    awaitable: Awaitable[T], timeout: float, provider: str
) -> T:
    """Await an external call, converting a timeout into ProviderTimeoutError."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise ProviderTimeoutError(provider, timeout) from e
