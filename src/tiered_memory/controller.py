"""Self-editing memory operations for a single session.

The controller exposes search/add/update/consolidate/forget over the
session's facts (and, with a user id, the user's long-term facts).
Importance is on a 0-10 scale here and stored on a 0-1 scale; the
conversion happens only in this module.

Nothing is deleted: consolidation and forgetting decay importance and
change the fact status, keeping the rows.
"""

from __future__ import annotations

import re
import time
from datetime import datetime, timedelta, timezone
from typing import Sequence

from loguru import logger

from .cache import TTLCache
from .config import ControllerConfig, TimeoutConfig
from .embedding import EmbeddingCache
from .models import (
    ConsolidationResult,
    EntityFact,
    EntityKnowledge,
    FactStatus,
    MemoryItem,
    MemorySearchResult,
    MemoryType,
    _uuid,
)
from .providers import ChatProvider, call_with_timeout
from .storage import SQLiteStore

LLM_ROLE = "memory_extractor"

CONSOLIDATION_SYSTEM_PROMPT = """\
You are a memory consolidation assistant. Summarize the following memories \
into a concise summary that preserves the most important information. Focus on:
1. Key facts and decisions
2. Important entities (customers, products, etc.)
3. User preferences and constraints
4. Ongoing projects or investigations

Output a single paragraph summary (100-200 words)."""

_ENTITY_PATTERN = re.compile(r"\b([A-Z][a-z]+(?:\s+[A-Z][a-z]+)*)\b")

_MEMORY_TYPES = {t.value for t in MemoryType}


def create_entity_cache(config: ControllerConfig | None = None) -> TTLCache[EntityKnowledge]:
    """Build the process-wide entity cache shared by all controllers."""
    config = config or ControllerConfig()
    return TTLCache(
        maxsize=config.entity_cache_max_size,
        ttl_seconds=config.entity_cache_ttl_seconds,
    )


class MemoryController:
    """MemGPT-style memory operations bound to one session."""

    def __init__(
        self,
        session_id: str,
        store: SQLiteStore,
        embeddings: EmbeddingCache,
        llm: ChatProvider | None,
        user_id: str | None = None,
        config: ControllerConfig | None = None,
        timeouts: TimeoutConfig | None = None,
        entity_cache: TTLCache[EntityKnowledge] | None = None,
    ):
        """Initialize controller.

        Args:
            session_id: Session whose facts are managed
            store: Fact storage
            embeddings: Embedding cache for fact vectors
            llm: Chat provider used for consolidation
            user_id: Owner of long-term facts, if known
            config: Controller configuration
            timeouts: Timeouts for provider calls
            entity_cache: Shared entity cache (a private one is created if omitted)
        """
        self.session_id = session_id
        self.user_id = user_id
        self._store = store
        self._embeddings = embeddings
        self._llm = llm
        self._config = config or ControllerConfig()
        self._timeouts = timeouts or TimeoutConfig()
        self._entities = entity_cache if entity_cache is not None else create_entity_cache(self._config)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def search(
        self,
        query: str,
        limit: int = 10,
        min_importance: float = 3,
    ) -> MemorySearchResult:
        """Search active session and user facts.

        Args:
            query: Free-text query used for relevance scoring
            limit: Maximum number of items
            min_importance: Minimum importance on the 0-10 scale

        Returns:
            Items ordered by importance, with per-item relevance scores
        """
        start = time.perf_counter()
        logger.debug(f"Searching memory: {query[:50]!r}")

        try:
            floor = min_importance / 10
            items: list[MemoryItem] = []

            session_rows = await self._store.get_session_facts(
                self.session_id,
                min_importance=floor,
                statuses=[FactStatus.ACTIVE.value],
                limit=limit,
            )
            items.extend(self._to_item(row, MemoryType.EPISODIC) for row in session_rows)

            if self.user_id:
                user_rows = await self._store.get_user_facts(
                    self.user_id,
                    min_importance=floor,
                    statuses=[FactStatus.ACTIVE.value],
                    limit=limit,
                )
                items.extend(self._to_item(row, MemoryType.SEMANTIC) for row in user_rows)

            items.sort(key=lambda item: item.importance, reverse=True)
            items = items[:limit]

            scores = await self._relevance_scores(query, items)
            return MemorySearchResult(
                items=items,
                relevance_scores=scores,
                search_time_ms=(time.perf_counter() - start) * 1000,
            )
        except Exception as e:
            logger.warning(f"Memory search failed: {e}")
            return MemorySearchResult(search_time_ms=(time.perf_counter() - start) * 1000)

    async def add(
        self,
        content: str,
        key: str = "fact",
        type: MemoryType | str = MemoryType.EPISODIC,
        importance: float = 5,
        entities: Sequence[str] = (),
        expires_at: datetime | None = None,
        source: str = "extraction",
    ) -> MemoryItem | None:
        """Store a new session fact.

        Returns:
            The stored item, or None if persistence failed
        """
        type_value = type.value if isinstance(type, MemoryType) else str(type)
        logger.debug(f"Adding memory: {content[:50]!r} (importance: {importance})")

        embedding = await self._try_embed(f"{key}: {content}")
        fact_id = _uuid()
        try:
            await self._store.insert_session_fact({
                "id": fact_id,
                "session_id": self.session_id,
                "fact_type": type_value,
                "key": key,
                "value": content,
                "importance": importance / 10,
                "embedding": embedding,
                "expires_at": expires_at.isoformat() if expires_at else None,
            })
        except Exception as e:
            logger.error(f"Memory add failed: {e}")
            return None

        for entity in entities:
            self._record_entity(entity, content)

        return MemoryItem(
            id=fact_id,
            type=type_value,
            content=content,
            key=key,
            importance=importance,
            entities=list(entities),
            expires_at=expires_at,
            embedding=embedding,
            source=source,
        )

    async def update(
        self,
        memory_id: str,
        content: str | None = None,
        importance: float | None = None,
    ) -> bool:
        """Update a session fact's content and/or importance (0-10 scale)."""
        logger.debug(f"Updating memory: {memory_id[:8]}")
        updates: dict = {}
        if content:
            updates["value"] = content
            embedding = await self._try_embed(content)
            if embedding is not None:
                updates["embedding"] = embedding
        if importance is not None:
            updates["importance"] = max(0.0, min(1.0, importance / 10))
        if not updates:
            return False

        try:
            return await self._store.update_session_fact(
                memory_id, updates, session_id=self.session_id
            )
        except Exception as e:
            logger.error(f"Memory update failed: {e}")
            return False

    async def consolidate(
        self,
        memory_ids: Sequence[str] | None = None,
        older_than: datetime | None = None,
    ) -> ConsolidationResult:
        """Merge several active facts into one summary fact.

        Explicit ``memory_ids`` take precedence over ``older_than``. Source
        facts are decayed and marked consolidated, never deleted.
        """
        logger.info(f"Starting consolidation for session {self.session_id[:8]}")
        try:
            if memory_ids:
                memories = await self._store.get_session_facts(
                    self.session_id,
                    statuses=[FactStatus.ACTIVE.value],
                    ids=list(memory_ids),
                )
            else:
                memories = await self._store.get_session_facts(
                    self.session_id,
                    statuses=[FactStatus.ACTIVE.value],
                    older_than=(
                        older_than.astimezone(timezone.utc).isoformat()
                        if older_than else None
                    ),
                )

            if len(memories) < 2:
                return ConsolidationResult(
                    original_count=len(memories),
                    consolidated_count=len(memories),
                    summary="No consolidation needed",
                    compression_ratio=1,
                )

            memories_text = "\n".join(f"- {m['key']}: {m['value']}" for m in memories)
            response = await call_with_timeout(
                self._llm.chat(
                    LLM_ROLE,
                    [
                        {"role": "system", "content": CONSOLIDATION_SYSTEM_PROMPT},
                        {"role": "user", "content": f"Consolidate these memories:\n{memories_text}"},
                    ],
                    temperature=0.3,
                    max_tokens=300,
                ),
                self._timeouts.llm_seconds,
                "llm",
            )
            summary = (response or "").strip()
            if not summary:
                raise ValueError("LLM returned an empty consolidation summary")

            stored = await self.add(
                summary,
                key="consolidated_summary",
                type=MemoryType.EPISODIC,
                importance=self._config.consolidated_importance,
                source="consolidation",
            )
            if stored is None:
                raise RuntimeError("Could not persist consolidated summary")

            for memory in memories:
                await self._store.update_session_fact(memory["id"], {
                    "importance": max(0.1, (memory["importance"] or 0.5) * 0.5),
                    "status": FactStatus.CONSOLIDATED.value,
                }, session_id=self.session_id)

            logger.info(f"Consolidated {len(memories)} memories into {stored.id[:8]}")
            return ConsolidationResult(
                original_count=len(memories),
                consolidated_count=1,
                summary=summary,
                compression_ratio=len(memories),
            )
        except Exception as e:
            logger.error(f"Consolidation failed: {e}")
            return ConsolidationResult(
                original_count=0,
                consolidated_count=0,
                summary="Consolidation failed",
                compression_ratio=1,
            )

    async def forget(self, memory_id: str, reason: str) -> bool:
        """Decay a fact to near-zero importance and mark it forgotten.

        Session facts are tried first, then the user's long-term facts.
        """
        logger.info(f"Forgetting memory: {memory_id[:8]} (reason: {reason})")
        updates = {
            "importance": self._config.forgotten_importance,
            "key": f"forgotten_{reason}",
            "status": FactStatus.FORGOTTEN.value,
        }
        try:
            if await self._store.update_session_fact(
                memory_id, updates, session_id=self.session_id
            ):
                return True
            if self.user_id:
                return await self._store.update_user_fact(
                    memory_id, updates, user_id=self.user_id
                )
            return False
        except Exception as e:
            logger.error(f"Forget failed: {e}")
            return False

    async def schedule_consolidation(self) -> ConsolidationResult | None:
        """Consolidate old facts once the session holds too many."""
        try:
            count = await self._store.count_session_facts(
                self.session_id,
                min_importance=self._config.consolidation_min_importance,
                status=FactStatus.ACTIVE.value,
            )
            if count <= self._config.consolidation_trigger_count:
                return None

            logger.info(f"Memory count high ({count}), consolidating session {self.session_id[:8]}")
            cutoff = datetime.now(timezone.utc) - timedelta(
                seconds=self._config.consolidation_age_seconds
            )
            return await self.consolidate(older_than=cutoff)
        except Exception as e:
            logger.warning(f"Failed to check consolidation schedule: {e}")
            return None

    async def promote_to_user_memory(self, threshold: float = 0.8) -> int:
        """Copy important session facts into the user's long-term memory.

        Args:
            threshold: Minimum stored importance (0-1 scale)

        Returns:
            Number of facts promoted
        """
        if not self.user_id:
            logger.debug("Cannot promote memories without a user id")
            return 0

        try:
            facts = await self._store.get_session_facts(
                self.session_id,
                min_importance=threshold,
                statuses=[FactStatus.ACTIVE.value],
                limit=self._config.promote_limit,
            )
            existing = {
                (row["key"], row["value"])
                for row in await self._store.get_user_facts(self.user_id)
            }

            promoted = 0
            for fact in facts:
                if (fact["key"], fact["value"]) in existing:
                    continue
                await self._store.insert_user_fact({
                    "id": _uuid(),
                    "user_id": self.user_id,
                    "fact_type": fact["fact_type"],
                    "key": fact["key"],
                    "value": fact["value"],
                    "importance": fact["importance"],
                    "source_session_id": self.session_id,
                    "embedding": await self._try_embed(f"{fact['key']}: {fact['value']}"),
                })
                promoted += 1

            logger.info(f"Promoted {promoted} facts to user memory")
            return promoted
        except Exception as e:
            logger.error(f"Failed to promote memories: {e}")
            return 0

    def get_entity_knowledge(self, name: str) -> EntityKnowledge | None:
        return self._entities.get(name.lower())

    async def predict_needed_context(self, query: str) -> list[MemoryItem]:
        """Prefetch facts about entities named in ``query`` plus important ones."""
        entities = _ENTITY_PATTERN.findall(query)
        items: list[MemoryItem] = []

        for entity in entities[:3]:
            result = await self.search(entity, limit=2)
            items.extend(result.items)

        result = await self.search(query, limit=5, min_importance=7)
        items.extend(result.items)

        seen: set[str] = set()
        unique: list[MemoryItem] = []
        for item in items:
            if item.id not in seen:
                seen.add(item.id)
                unique.append(item)
        return unique

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _record_entity(self, name: str, content: str) -> None:
        key = name.lower()
        entity = self._entities.get(key)
        if entity is None:
            entity = EntityKnowledge(name=name)
        entity.facts.append(EntityFact(content=content, source=self.session_id))
        # Keep only the most recent facts
        entity.facts = entity.facts[-self._config.entity_max_facts:]
        entity.last_mentioned = datetime.now(timezone.utc)
        self._entities.set(key, entity)

    async def _try_embed(self, text: str) -> list[float] | None:
        try:
            return await self._embeddings.embed(text)
        except Exception as e:
            logger.warning(f"Embedding failed, storing without vector: {e}")
            return None

    async def _relevance_scores(
        self, query: str, items: list[MemoryItem]
    ) -> dict[str, float]:
        query_embedding = await self._try_embed(query) if items else None
        scores: dict[str, float] = {}
        for item in items:
            score = item.importance / 10
            if query_embedding is not None and item.embedding:
                try:
                    score = EmbeddingCache.cosine_similarity(query_embedding, item.embedding)
                except ValueError as e:
                    logger.debug(f"Using importance for {item.id[:8]}: {e}")
            scores[item.id] = score
        return scores

    @staticmethod
    def _to_item(row: dict, default_type: MemoryType) -> MemoryItem:
        fact_type = row.get("fact_type")
        return MemoryItem(
            id=row["id"],
            type=fact_type if fact_type in _MEMORY_TYPES else default_type.value,
            content=row["value"],
            key=row["key"],
            importance=(row["importance"] if row["importance"] is not None else 0.5) * 10,
            status=row.get("status") or FactStatus.ACTIVE.value,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            expires_at=row.get("expires_at"),
            embedding=row.get("embedding"),
        )
