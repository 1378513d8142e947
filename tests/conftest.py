"""
Tiered memory test fixtures.
Shared stores, fake providers and mocking utilities.
"""
from __future__ import annotations

import os
import tempfile
from unittest.mock import AsyncMock

import pytest

from tiered_memory.config import BackgroundConfig, MemorySystemConfig, StorageConfig
from tiered_memory.embedding import EmbeddingCache
from tiered_memory.storage import SQLiteStore
from tiered_memory.token_budget import TokenBudgetManager

VOCABULARY = [
    "customer", "sales", "texas", "revenue", "table", "product", "weather", "python",
]


class KeywordEmbedder:
    """Deterministic embedding provider: one dimension per vocabulary word.

    Texts sharing keywords are similar; texts without any are zero vectors.
    """

    model = "keyword-test"
    dimension = len(VOCABULARY)

    def __init__(self):
        self.calls: list[list[str]] = []

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        return [self.vector(text) for text in texts]

    @staticmethod
    def vector(text: str) -> list[float]:
        lowered = text.lower()
        return [float(lowered.count(word)) for word in VOCABULARY]


class FailingEmbedder:
    """Embedding provider whose every call fails."""

    model = "failing-test"

    async def embed(self, texts: list[str]) -> list[list[float]]:
        raise RuntimeError("embedding backend down")


@pytest.fixture
async def store():
    with tempfile.TemporaryDirectory() as tmpdir:
        s = SQLiteStore(db_path=os.path.join(tmpdir, "test.db"))
        await s.initialize()
        yield s
        await s.close()


@pytest.fixture
def embedder():
    return KeywordEmbedder()


@pytest.fixture
def embeddings(embedder):
    return EmbeddingCache(embedder)


@pytest.fixture
def tokens():
    """Token counter (uses char-based estimation if tiktoken is unavailable)."""
    return TokenBudgetManager()


@pytest.fixture
def mock_llm():
    """Mock chat provider; set ``mock_llm.chat.return_value`` per test."""
    mock = AsyncMock()
    mock.chat.return_value = "Mock summary of the conversation."
    return mock


@pytest.fixture
def system_config():
    """System config with an in-workspace database path and no retry delays."""
    return MemorySystemConfig(
        storage=StorageConfig(sqlite_db_path="memory/test.db"),
        background=BackgroundConfig(max_retries=0, base_delay_seconds=0.0),
    )


@pytest.fixture
def sample_messages():
    """Create sample conversation messages."""
    return [
        {"role": "user", "content": "Show me customer counts in Texas"},
        {"role": "assistant", "content": "Here are the customer counts by county."},
        {"role": "user", "content": "Now break down sales revenue by product"},
        {"role": "assistant", "content": "Revenue by product is listed below."},
    ]


@pytest.fixture
def failing_embedder():
    return FailingEmbedder()
