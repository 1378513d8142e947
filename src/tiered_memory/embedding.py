"""Embedding cache and default sentence-transformers provider.

EmbeddingCache deduplicates identical embedding requests within a short
TTL window, truncates oversized inputs and exposes cosine-similarity
helpers. SentenceTransformerEmbedder lazy-loads the model on first use to
avoid startup overhead.
"""

from __future__ import annotations

import asyncio
import struct
from typing import Any, Sequence, TypeVar

import numpy as np
from loguru import logger

from .cache import TTLCache
from .config import EmbeddingConfig, TimeoutConfig
from .exceptions import DimensionMismatchError, EmptyInputError
from .providers import EmbeddingProvider, call_with_timeout

T = TypeVar("T")


class SentenceTransformerEmbedder:
    """EmbeddingProvider backed by a local sentence-transformers model."""

    def __init__(self, config: EmbeddingConfig | None = None):
        """Initialize embedder.

        Args:
            config: Embedding configuration
        """
        self._config = config or EmbeddingConfig()
        self._model = None
        self._dimension = self._config.dimension

    @property
    def model(self) -> str:
        return self._config.model

    @property
    def dimension(self) -> int:
        return self._dimension

    def _ensure_model(self) -> None:
        """Lazy-load the sentence-transformers model."""
        if self._model is not None:
            return

        from sentence_transformers import SentenceTransformer

        logger.info(f"Loading embedding model: {self._config.model}")
        self._model = SentenceTransformer(
            self._config.model,
            trust_remote_code=self._config.trust_remote_code,
        )
        self._dimension = self._model.get_sentence_embedding_dimension()
        logger.info(f"Embedding model loaded: dim={self._dimension}")

    def _encode(self, texts: list[str]) -> list[list[float]]:
        self._ensure_model()
        embeddings: np.ndarray = self._model.encode(
            texts, batch_size=32, show_progress_bar=False,
            normalize_embeddings=True,
        )
        return embeddings.tolist()

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Encode texts in a worker thread so the event loop stays free."""
        if not texts:
            return []
        return await asyncio.to_thread(self._encode, texts)


class EmbeddingCache:
    """Caching front for an embedding provider.

    Cache entries are keyed by ``model:text`` (after truncation) and live
    for ``cache_ttl_seconds``.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        config: EmbeddingConfig | None = None,
        timeouts: TimeoutConfig | None = None,
    ):
        """Initialize embedding cache.

        Args:
            provider: Backend that produces the vectors
            config: Embedding configuration
            timeouts: Timeout configuration for provider calls
        """
        self._provider = provider
        self._config = config or EmbeddingConfig()
        self._timeouts = timeouts or TimeoutConfig()
        self._cache: TTLCache[tuple[float, ...]] = TTLCache(
            maxsize=self._config.cache_max_size,
            ttl_seconds=self._config.cache_ttl_seconds,
        )

    @property
    def model(self) -> str:
        return getattr(self._provider, "model", None) or self._config.model

    def _normalize(self, text: Any) -> str:
        """Reduce an input to plain text capped at ``max_input_length``."""
        if isinstance(text, list):
            # Vision-style content: [{"type": "text", "text": ...}, {"type": "image_url", ...}]
            text = " ".join(
                part.get("text", "")
                for part in text
                if isinstance(part, dict) and part.get("type") == "text"
            )
        elif text is None:
            text = ""
        elif not isinstance(text, str):
            text = str(text)

        text = text.strip()
        if len(text) > self._config.max_input_length:
            logger.debug(
                f"Truncating embedding input from {len(text)} "
                f"to {self._config.max_input_length} chars"
            )
            text = text[: self._config.max_input_length]
        return text

    def _key(self, text: str) -> str:
        return f"{self.model}:{text}"

    async def embed(self, text: Any) -> list[float]:
        """Embed a single input, serving repeated requests from cache.

        Raises:
            EmptyInputError: If the input has no text after normalization
        """
        normalized = self._normalize(text)
        if not normalized:
            raise EmptyInputError()

        key = self._key(normalized)
        cached = self._cache.get(key)
        if cached is not None:
            logger.debug("Embedding cache hit")
            return list(cached)

        vectors = await call_with_timeout(
            self._provider.embed([normalized]),
            self._timeouts.embedding_seconds,
            "embedding",
        )
        if not vectors:
            raise RuntimeError("Embedding provider returned no vectors")
        embedding = tuple(vectors[0])
        self._cache.set(key, embedding)
        return list(embedding)

    async def embed_batch(self, texts: Sequence[Any]) -> list[list[float]]:
        """Embed many inputs.

        Empty inputs and inputs that fail even individually are dropped, so
        the result may be shorter than ``texts``.
        """
        normalized = [self._normalize(t) for t in texts]
        normalized = [t for t in normalized if t]
        if not normalized:
            return []

        results: dict[int, list[float]] = {}
        misses: list[int] = []
        for i, text in enumerate(normalized):
            cached = self._cache.get(self._key(text))
            if cached is not None:
                results[i] = list(cached)
            else:
                misses.append(i)

        if misses:
            try:
                vectors = await call_with_timeout(
                    self._provider.embed([normalized[i] for i in misses]),
                    self._timeouts.embedding_seconds,
                    "embedding",
                )
                if len(vectors) != len(misses):
                    raise RuntimeError(
                        f"Provider returned {len(vectors)} vectors for {len(misses)} inputs"
                    )
                for i, vector in zip(misses, vectors):
                    self._cache.set(self._key(normalized[i]), tuple(vector))
                    results[i] = list(vector)
            except Exception as e:
                logger.warning(f"Batch embedding failed, falling back to single calls: {e}")
                for i in misses:
                    try:
                        results[i] = await self.embed(normalized[i])
                    except Exception as item_error:
                        logger.warning(f"Dropping embedding input {i}: {item_error}")

        return [results[i] for i in sorted(results)]

    def clear(self) -> int:
        return self._cache.clear()

    def stats(self) -> dict[str, Any]:
        return self._cache.get_stats()

    @staticmethod
    def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
        """Compute cosine similarity between two vectors.

        Returns 0.0 when either vector has zero norm.

        Raises:
            DimensionMismatchError: If the vectors differ in length
        """
        if len(a) != len(b):
            raise DimensionMismatchError(len(a), len(b))
        va = np.asarray(a, dtype=np.float64)
        vb = np.asarray(b, dtype=np.float64)
        norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
        if norm == 0.0:
            return 0.0
        return float(np.dot(va, vb) / norm)

    @classmethod
    def top_k_similar(
        cls,
        query: Sequence[float],
        candidates: Sequence[T],
        limit: int = 5,
        threshold: float = 0.7,
    ) -> list[tuple[T, float]]:
        """Rank candidates by similarity to ``query``.

        Candidates are objects or dicts carrying an ``embedding``; those
        without one are skipped.

        Returns:
            ``(candidate, similarity)`` pairs, best first
        """
        scored: list[tuple[T, float]] = []
        for candidate in candidates:
            embedding = (
                candidate.get("embedding")
                if isinstance(candidate, dict)
                else getattr(candidate, "embedding", None)
            )
            if not embedding:
                continue
            similarity = cls.cosine_similarity(query, embedding)
            if similarity >= threshold:
                scored.append((candidate, similarity))

        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored[:limit]


def serialize_embedding(embedding: Sequence[float]) -> bytes:
    """Serialize embedding to bytes for SQLite BLOB storage.

    Args:
        embedding: Embedding vector as list of floats

    Returns:
        Packed bytes (little-endian float32)
    """
    return struct.pack(f"<{len(embedding)}f", *embedding)


def deserialize_embedding(blob: bytes | None) -> list[float] | None:
    """Deserialize embedding from a SQLite BLOB."""
    if not blob:
        return None
    count = len(blob) // 4  # float32 = 4 bytes
    return list(struct.unpack(f"<{count}f", blob))
