"""Token counting, truncation and per-mode context budgets."""

from __future__ import annotations

import math
from typing import Any

from loguru import logger

from .cache import TTLCache
from .config import TokenConfig
from .models import ChatMessage, ContextBudget

ELLIPSIS = "..."

# Per-message overhead for role/formatting, and reply priming
_MESSAGE_OVERHEAD = 4
_PRIMING_TOKENS = 2

FAST_CONTEXT_BUDGET = ContextBudget(
    total=4000,
    full_messages=2500,
    compressed_messages=500,
    session_summary=500,
    reserved=500,
)

DEFAULT_CONTEXT_BUDGET = ContextBudget(
    total=12000,
    full_messages=6000,
    compressed_messages=3000,
    session_summary=1500,
    reserved=1500,
)

DEEP_CONTEXT_BUDGET = ContextBudget(
    total=24000,
    full_messages=10000,
    compressed_messages=8000,
    session_summary=3000,
    reserved=3000,
)

_MODE_BUDGETS = {
    "fast": FAST_CONTEXT_BUDGET,
    "quick": FAST_CONTEXT_BUDGET,
    "deep": DEEP_CONTEXT_BUDGET,
    "research": DEEP_CONTEXT_BUDGET,
}


class TokenBudgetManager:
    """Counts tokens for budget management.

    Uses tiktoken when available, falls back to character-based estimation
    with CJK-aware heuristics. Exact counts are memoized in a bounded cache.
    """

    def __init__(self, config: TokenConfig | None = None):
        self._config = config or TokenConfig()
        self._encoder = None
        self._cache: TTLCache[int] = TTLCache(
            maxsize=self._config.cache_max_size,
            ttl_seconds=None,
            evict_count=self._config.cache_evict_count,
        )
        try:
            import tiktoken

            self._encoder = tiktoken.encoding_for_model(self._config.model)
        except Exception:
            logger.debug(
                "tiktoken not available or model not found, "
                "using character-based estimation"
            )

    @staticmethod
    def _cache_key(text: str) -> str:
        if len(text) <= 100:
            return text
        return f"{text[:100]}_{len(text)}"

    def count(self, text: str) -> int:
        """Count tokens in a text string."""
        if not text:
            return 0

        key = self._cache_key(text)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        if self._encoder:
            tokens = len(self._encoder.encode(text))
        else:
            tokens = self._estimate_tokens(text)
        self._cache.set(key, tokens)
        return tokens

    def count_chat(self, messages: list[ChatMessage] | list[dict]) -> int:
        """Count total tokens in a list of chat messages.

        Falls back to ``sum(count(content) + 4)`` when a message cannot be
        measured with the chat-aware rules.
        """
        try:
            total = 0
            for msg in messages:
                data = msg.model_dump() if isinstance(msg, ChatMessage) else msg
                total += _MESSAGE_OVERHEAD
                content = data["content"]
                if isinstance(content, str):
                    total += self.count(content)
                elif isinstance(content, list):
                    # Multimodal content (text + images)
                    for item in content:
                        if item.get("type") == "text":
                            total += self.count(item.get("text", ""))
                        elif item.get("type") == "image_url":
                            total += 85  # Approximate token cost for image reference
                else:
                    raise TypeError(f"Unsupported content type: {type(content).__name__}")
                if data.get("name"):
                    total += self.count(data["name"])
            return total + _PRIMING_TOKENS
        except Exception as e:
            logger.debug(f"Chat-aware token count failed, using fallback: {e}")
            return sum(
                self.count(_content_text(msg)) + _MESSAGE_OVERHEAD
                for msg in messages
            )

    @staticmethod
    def estimate(text: str) -> int:
        """O(1) approximation: one token per four characters."""
        return math.ceil(len(text) / 4)

    def truncate_to_fit(self, text: str, max_tokens: int) -> str:
        """Truncate text to the longest prefix that fits ``max_tokens``.

        An ellipsis marker is appended when truncation happens. The result
        never exceeds ``max_tokens`` tokens.
        """
        if max_tokens <= 0:
            return ""
        if self.count(text) <= max_tokens:
            return text

        # Binary search for the longest prefix that fits
        low, high = 0, len(text)
        while low < high:
            mid = (low + high + 1) // 2
            if self.count(text[:mid]) <= max_tokens:
                low = mid
            else:
                high = mid - 1

        end = max(0, low - len(ELLIPSIS))
        while True:
            candidate = text[:end] + ELLIPSIS
            if self.count(candidate) <= max_tokens:
                return candidate
            if end == 0:
                # Not even the marker fits
                return text[:low]
            end = max(0, end - max(1, end // 20))

    @staticmethod
    def budget_for(mode: str | None) -> ContextBudget:
        """Look up the context budget for a chat mode."""
        budget = _MODE_BUDGETS.get((mode or "").lower(), DEFAULT_CONTEXT_BUDGET)
        return budget.model_copy()

    def clear_cache(self) -> int:
        return self._cache.clear()

    @staticmethod
    def _estimate_tokens(text: str) -> int:
        """Estimate tokens using character-based heuristics.

        English: ~4 characters per token
        CJK (Korean, Japanese, Chinese): ~2 characters per token
        """
        cjk_count = sum(
            1
            for c in text
            if "\u4e00" <= c <= "\u9fff"  # CJK Unified
            or "\uac00" <= c <= "\ud7af"  # Korean Hangul
            or "\u3040" <= c <= "\u309f"  # Hiragana
            or "\u30a0" <= c <= "\u30ff"  # Katakana
        )
        non_cjk = len(text) - cjk_count
        return max(1, math.ceil(non_cjk / 4) + math.ceil(cjk_count / 2))


def _content_text(msg: Any) -> str:
    content = msg.content if isinstance(msg, ChatMessage) else msg.get("content", "")
    return content if isinstance(content, str) else str(content)
