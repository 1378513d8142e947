"""Memory Service - Facade for the tiered memory system.

Four-tier memory for every chat turn:
- Tier 1: Working context (recent turns + session summary)
- Tier 2: Session memory (relevant past turns + session facts)
- Tier 3: Long-term memory (user facts + saved memories)
- Tier 4: Context graph (private links to the domain knowledge graph)

``get_context`` is called before the model answers, ``update_after_turn``
after. Both degrade instead of failing the turn.
"""

from __future__ import annotations

from typing import Any, Protocol, Sequence

from loguru import logger
from pydantic import ValidationError

from .cache import TTLCache
from .compression import CompressionEngine
from .config import MemoryConfig, MemorySystemConfig
from .context_graph import ContextGraphService
from .controller import MemoryController, create_entity_cache
from .embedding import EmbeddingCache, SentenceTransformerEmbedder
from .extraction import MemoryWriter
from .models import (
    ChatMessage,
    CompressedContext,
    ContextRefType,
    EntityKnowledge,
    FactStatus,
    FactType,
    MemoryContext,
    MemoryFact,
    SavedMemory,
    StoredMessage,
    UpdateResult,
    _uuid,
)
from .providers import ChatProvider, EmbeddingProvider, EntityResolver
from .storage import SQLiteStore
from .tasks import BackgroundTaskQueue
from .token_budget import TokenBudgetManager

RECENT_TURNS = 6
MINIMAL_RECENT_TURNS = 4
PAST_TURN_CHARS = 500
SIMILARITY_THRESHOLD = 0.7
SAVED_MEMORY_IMPORTANCE = 0.8

NEW_CONVERSATION = "New conversation."

TOPIC_KEYWORDS: dict[str, list[str]] = {
    "customers": ["customer", "client", "account", "segment"],
    "sales": ["sales", "revenue", "pipeline", "opportunity", "deal"],
    "products": ["product", "inventory", "stock", "catalog"],
    "finance": ["finance", "budget", "expense", "profit", "loss"],
    "analytics": ["analyze", "analysis", "report", "metrics", "kpi"],
    "support": ["ticket", "support", "issue", "help"],
    "employees": ["employee", "staff", "hr", "department"],
}


class MemoryServiceInterface(Protocol):
    """Protocol defining the per-turn MemoryService API."""

    async def get_context(
        self,
        session_id: str,
        user_id: str | None,
        messages: Sequence[ChatMessage | dict],
        config: MemoryConfig | None = None,
    ) -> MemoryContext:
        """Build the memory context injected before the model answers."""
        ...

    async def update_after_turn(
        self,
        session_id: str,
        user_id: str | None,
        messages: Sequence[ChatMessage | dict],
        answer: str,
        config: MemoryConfig | None = None,
    ) -> UpdateResult | None:
        """Extract and persist memories after the model answered."""
        ...


def extract_topics(texts: Sequence[str]) -> list[str]:
    """Keyword-based topic detection (max 3 topics)."""
    all_text = " ".join(texts).lower()
    topics = [
        topic for topic, keywords in TOPIC_KEYWORDS.items()
        if any(kw in all_text for kw in keywords)
    ]
    return topics[:3]


def _recent_user_texts(messages: Sequence[ChatMessage]) -> list[str]:
    user_messages = [m for m in messages if m.role == "user"]
    return [m.content[:100] for m in user_messages[-3:]]


def generate_summary(messages: Sequence[ChatMessage]) -> str:
    """Extractive ``Discussing: ...`` summary of the latest user messages."""
    texts = _recent_user_texts(messages)
    if not texts:
        return NEW_CONVERSATION
    topics = extract_topics(texts)
    return f"Discussing: {', '.join(topics)}" if topics else NEW_CONVERSATION


def enhance_with_metadata(content: str, metadata: Any) -> str:
    """Append generated-image, tool and data-source tags from message metadata."""
    if not isinstance(metadata, dict):
        return content

    enhanced = content
    images = metadata.get("generatedImages")
    if isinstance(images, list) and images:
        prompts = ", ".join(str(img.get("prompt", "")) for img in images if isinstance(img, dict))
        enhanced += f" [GENERATED IMAGE(S): {prompts}]"

    tools = metadata.get("toolCalls")
    if isinstance(tools, list) and tools:
        names = ", ".join(str(t.get("toolName", "")) for t in tools if isinstance(t, dict))
        enhanced += f" [TOOLS USED: {names}]"

    sources = metadata.get("sourcesUsed")
    if isinstance(sources, list) and sources:
        domains = list(dict.fromkeys(
            str(s.get("domain", "")) for s in sources if isinstance(s, dict)
        ))
        enhanced += f" [DATA SOURCES: {', '.join(domains)}]"

    return enhanced


def format_memory_context(context: MemoryContext) -> str:
    """Render a memory context for inclusion in the system prompt."""
    parts: list[str] = []

    if context.summary and context.summary != NEW_CONVERSATION:
        parts.append(f"## Conversation Context\n{context.summary}")

    if context.session_facts:
        parts.append("\n## Session Context")
        parts.extend(f"- {f.key}: {f.value}" for f in context.session_facts)

    if context.user_profile_facts:
        parts.append("\n## Things to Remember About This User")
        parts.extend(f"- {f.value}" for f in context.user_profile_facts)

    if context.relevant_past_turns:
        parts.append("\n## Earlier in This Conversation")
        for turn in context.relevant_past_turns[:4]:
            role = "User" if turn.role == "user" else "Assistant"
            suffix = "..." if len(turn.content) > 200 else ""
            parts.append(f"{role}: {turn.content[:200]}{suffix}")

    return "\n".join(parts)


def _content_text(content: Any) -> str:
    """Plain text of a message content (None, str or a list of parts)."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(str(part.get("text", "")))
        return " ".join(parts)
    return str(content)


def _to_messages(messages: Sequence[ChatMessage | dict]) -> list[ChatMessage]:
    """Convert raw chat messages, skipping entries that are not messages."""
    converted: list[ChatMessage] = []
    for m in messages:
        if isinstance(m, ChatMessage):
            converted.append(m)
            continue
        try:
            converted.append(ChatMessage(
                role=str(m.get("role") or "user"),
                content=_content_text(m.get("content")),
                timestamp=m.get("timestamp"),
            ))
        except (AttributeError, ValidationError) as e:
            logger.warning(f"Skipping malformed chat message: {e}")
    return converted


def _row_to_fact(row: dict) -> MemoryFact:
    return MemoryFact(
        id=row["id"],
        type=row.get("fact_type") or FactType.PREFERENCE.value,
        key=row["key"],
        value=row["value"],
        importance=row.get("importance") if row.get("importance") is not None else 0.5,
        status=row.get("status") or FactStatus.ACTIVE.value,
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
        expires_at=row.get("expires_at"),
    )


class MemoryService:
    """Main memory service facade.

    Provides:
    - Four-tier context retrieval with fallbacks at every tier
    - Fact extraction and persistence after each turn
    - Budget-aware compressed history
    - Access to the per-session controller and per-user context graph

    Store and components are lazily initialized on first use.
    """

    def __init__(
        self,
        config: MemorySystemConfig | None = None,
        llm: ChatProvider | None = None,
        embedding_provider: EmbeddingProvider | None = None,
        resolver: EntityResolver | None = None,
        store: SQLiteStore | None = None,
    ):
        """Initialize memory service.

        Args:
            config: System configuration (uses defaults if not provided)
            llm: Chat provider for extraction, summaries and consolidation
            embedding_provider: Embedding backend; defaults to a local
                sentence-transformers model
            resolver: Optional entity resolver for context-graph linking
            store: Already initialized store; one is created from
                ``config.storage`` otherwise
        """
        self.config = config or MemorySystemConfig()
        self._llm = llm
        self._resolver = resolver
        self._store = store
        self._store_initialized = store is not None

        self.tokens = TokenBudgetManager(self.config.tokens)
        self.embeddings = EmbeddingCache(
            embedding_provider or SentenceTransformerEmbedder(self.config.embedding),
            self.config.embedding,
            self.config.timeouts,
        )
        self.tasks = BackgroundTaskQueue(self.config.background)
        self._entity_cache: TTLCache[EntityKnowledge] = create_entity_cache(self.config.controller)
        self._writer = MemoryWriter(llm, self.config.timeouts)
        self._compression: CompressionEngine | None = None

        logger.info(
            f"MemoryService initialized: sqlite_db_path={self.config.storage.sqlite_db_path!r}, "
            f"llm={'set' if llm else 'none'}"
        )

    def set_llm(self, llm: ChatProvider) -> None:
        """Set the chat provider (called after the agent is created)."""
        self._llm = llm
        self._writer = MemoryWriter(llm, self.config.timeouts)
        self._compression = None
        logger.info("MemoryService chat provider set")

    async def _ensure_store(self) -> SQLiteStore:
        """Lazy initialization of SQLite store."""
        if self._store is None:
            self._store = SQLiteStore(db_path=self.config.storage.sqlite_db_path)
        if not self._store_initialized:
            await self._store.initialize()
            self._store_initialized = True
        return self._store

    async def _ensure_compression(self) -> CompressionEngine:
        if self._compression is None:
            store = await self._ensure_store()
            self._compression = CompressionEngine(
                store,
                self._llm,
                self.tokens,
                embeddings=self.embeddings,
                config=self.config.compression,
                timeouts=self.config.timeouts,
            )
        return self._compression

    async def start(self) -> None:
        """Initialize storage and start the background workers."""
        await self._ensure_store()
        self.tasks.start()

    async def close(self) -> None:
        """Finish queued side effects and close the store."""
        await self.tasks.stop(drain=True)
        if self._store and self._store_initialized:
            await self._store.close()
            self._store_initialized = False
            logger.info("MemoryService: SQLiteStore closed")

    # ------------------------------------------------------------------
    # Sessions and messages
    # ------------------------------------------------------------------

    async def create_session(
        self,
        user_id: str | None = None,
        title: str | None = None,
        session_id: str | None = None,
    ) -> str:
        store = await self._ensure_store()
        return await store.insert_session({
            "id": session_id or _uuid(),
            "user_id": user_id,
            "title": title,
        })

    async def record_message(
        self,
        session_id: str,
        role: str,
        content: str,
        metadata: dict | None = None,
    ) -> StoredMessage:
        """Store a chat message and schedule its embedding."""
        engine = await self._ensure_compression()
        message = await engine.record_message(session_id, role, content, metadata)

        async def embed_message() -> None:
            embedding = await self.embeddings.embed(content)
            await self._store.update_message_embedding(message.id, embedding)

        if content.strip():
            await self.tasks.submit(f"embed_message:{message.id[:8]}", embed_message)
        return message

    async def assemble_context(
        self, session_id: str, mode: str | None = None
    ) -> CompressedContext:
        """Compressed history for a session within the budget of ``mode``."""
        engine = await self._ensure_compression()
        return await engine.assemble_context(session_id, self.tokens.budget_for(mode))

    # ------------------------------------------------------------------
    # Per-turn API
    # ------------------------------------------------------------------

    async def get_context(
        self,
        session_id: str,
        user_id: str | None,
        messages: Sequence[ChatMessage | dict],
        config: MemoryConfig | None = None,
    ) -> MemoryContext:
        """Build the four-tier memory context for the current turn."""
        config = config or self.config.defaults
        messages = _to_messages(messages)

        if not config.memory_enabled:
            return self.get_minimal_context(messages)

        try:
            logger.debug(
                f"Getting context for session: {session_id[:8]}, "
                f"user: {user_id[:8] if user_id else 'none'}, {len(messages)} messages"
            )
            store = await self._ensure_store()

            # Tier 1: working context
            recent_turns = messages[-RECENT_TURNS:]
            if config.include_session_summaries:
                summary = await self._get_summary(store, session_id, messages)
            else:
                summary = "Session summary disabled."

            query = self._last_user_message(messages)
            query_embedding = await self._embed_query(query) if query else None

            # Tier 2: session memory
            relevant_past_turns: list[ChatMessage] = []
            session_facts: list[MemoryFact] = []
            if config.reference_chat_history and query:
                relevant_past_turns = await self._get_past_turns(
                    store, session_id, query, query_embedding
                )
                session_facts = await self._get_session_facts(store, session_id, query_embedding)
                session_facts = session_facts[: config.max_memories_in_context]

            # Tier 3: long-term memory
            user_profile_facts: list[MemoryFact] = []
            if user_id:
                if config.reference_chat_history and query:
                    user_profile_facts.extend(
                        await self._get_user_facts(store, user_id, query_embedding)
                    )
                if config.reference_saved_memories:
                    user_profile_facts.extend(
                        await self._get_saved_memories(store, user_id, config)
                    )
                user_profile_facts = user_profile_facts[: config.max_memories_in_context]

            logger.debug(
                f"Memory context: {len(recent_turns)} recent, "
                f"{len(relevant_past_turns)} past turns, {len(session_facts)} session facts, "
                f"{len(user_profile_facts)} user facts"
            )
            return MemoryContext(
                summary=summary,
                recent_turns=recent_turns,
                relevant_past_turns=relevant_past_turns,
                session_facts=session_facts,
                user_profile_facts=user_profile_facts,
            )
        except Exception as e:
            logger.error(f"Failed to get memory context: {e}")
            return MemoryContext(
                summary="No previous context available.",
                recent_turns=messages[-RECENT_TURNS:],
            )

    def get_minimal_context(self, messages: Sequence[ChatMessage | dict]) -> MemoryContext:
        """Context without any store or provider call."""
        messages = _to_messages(messages)
        topics = extract_topics(_recent_user_texts(messages))
        summary = f"Recent discussion: {', '.join(topics)}" if topics else "New conversation"
        return MemoryContext(
            summary=summary,
            recent_turns=messages[-MINIMAL_RECENT_TURNS:],
        )

    async def update_after_turn(
        self,
        session_id: str,
        user_id: str | None,
        messages: Sequence[ChatMessage | dict],
        answer: str,
        config: MemoryConfig | None = None,
    ) -> UpdateResult | None:
        """Extract and persist memories from the turn that just finished.

        Entity linking and the compression check are handed to the
        background queue; their failures never fail the turn.

        Returns:
            Saved counts, or None if memory/auto-save is disabled or the
            update failed
        """
        config = config or self.config.defaults
        if not config.memory_enabled or not config.auto_save_memories:
            logger.debug("Memory update skipped (disabled or auto-save off)")
            return None

        try:
            messages = _to_messages(messages)
            store = await self._ensure_store()
            user_message = self._last_user_message(messages)

            output = await self._writer.extract(
                user_message or "", answer, config.memory_extraction_mode
            )
            session_facts = MemoryWriter.filter_by_threshold(
                output.session_facts, config.memory_extraction_mode
            )
            user_facts = MemoryWriter.filter_by_threshold(
                output.user_facts, config.memory_extraction_mode
            )
            logger.info(
                f"Extracted {len(output.session_facts)} session facts "
                f"({len(session_facts)} kept), {len(output.user_facts)} user facts "
                f"({len(user_facts)} kept)"
            )

            saved_session = await self._save_session_facts(store, session_id, session_facts)
            saved_user = 0
            if user_id and user_facts:
                saved_user = await self._save_user_facts(store, user_id, session_id, user_facts)

            summary_updated = False
            if config.include_session_summaries and (
                len(messages) % 4 == 0 or output.summary
            ):
                summary_updated = await self._refresh_summary(
                    store, session_id, messages, output.summary
                )

            if user_id:
                await self.tasks.submit(
                    f"link_entities:{session_id[:8]}",
                    lambda: self._link_turn_entities(
                        user_id, session_id, user_message or "", answer, saved_session
                    ),
                )

            await self.tasks.submit(
                f"compression_check:{session_id[:8]}",
                lambda: self._compression_check(session_id),
            )

            return UpdateResult(
                session_facts_saved=len(saved_session),
                user_facts_saved=saved_user,
                summary_updated=summary_updated,
            )
        except Exception as e:
            logger.error(f"Failed to update memory: {e}")
            return None

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    async def controller_for(
        self, session_id: str, user_id: str | None = None
    ) -> MemoryController:
        store = await self._ensure_store()
        return MemoryController(
            session_id,
            store,
            self.embeddings,
            self._llm,
            user_id=user_id,
            config=self.config.controller,
            timeouts=self.config.timeouts,
            entity_cache=self._entity_cache,
        )

    async def context_graph_for(self, user_id: str) -> ContextGraphService:
        store = await self._ensure_store()
        return ContextGraphService(
            user_id,
            store,
            resolver=self._resolver,
            config=self.config.context_graph,
            timeouts=self.config.timeouts,
        )

    # ------------------------------------------------------------------
    # Facts and saved memories
    # ------------------------------------------------------------------

    async def list_session_facts(
        self, session_id: str, include_inactive: bool = False
    ) -> list[MemoryFact]:
        store = await self._ensure_store()
        statuses = None if include_inactive else [FactStatus.ACTIVE.value]
        rows = await store.get_session_facts(session_id, statuses=statuses)
        return [_row_to_fact(row) for row in rows]

    async def list_user_facts(
        self, user_id: str, include_inactive: bool = False
    ) -> list[MemoryFact]:
        store = await self._ensure_store()
        statuses = None if include_inactive else [FactStatus.ACTIVE.value]
        rows = await store.get_user_facts(user_id, statuses=statuses)
        return [_row_to_fact(row) for row in rows]

    async def save_memory(
        self, user_id: str, content: str, source: str = "user"
    ) -> SavedMemory:
        """Save a memory the user explicitly asked to keep."""
        store = await self._ensure_store()
        memory = SavedMemory(user_id=user_id, content=content, source=source)
        await store.insert_saved_memory(memory.model_dump())
        logger.info(f"Saved memory {memory.id[:8]} for user {user_id[:8]}")
        return memory

    async def list_saved_memories(
        self, user_id: str, active_only: bool = True
    ) -> list[SavedMemory]:
        store = await self._ensure_store()
        rows = await store.get_saved_memories(user_id, active_only=active_only)
        return [SavedMemory(**row) for row in rows]

    async def update_saved_memory(
        self,
        user_id: str,
        memory_id: str,
        content: str | None = None,
        is_active: bool | None = None,
    ) -> bool:
        store = await self._ensure_store()
        updates: dict[str, Any] = {}
        if content is not None:
            updates["content"] = content
        if is_active is not None:
            updates["is_active"] = is_active
        return await store.update_saved_memory(memory_id, user_id, updates)

    # ------------------------------------------------------------------
    # Tier helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _last_user_message(messages: Sequence[ChatMessage]) -> str | None:
        for message in reversed(messages):
            if message.role == "user":
                return message.content
        return None

    async def _embed_query(self, query: str) -> list[float] | None:
        try:
            return await self.embeddings.embed(query)
        except Exception as e:
            logger.debug(f"Query embedding unavailable, using direct queries: {e}")
            return None

    async def _get_summary(
        self, store: SQLiteStore, session_id: str, messages: Sequence[ChatMessage]
    ) -> str:
        try:
            cached = await store.get_session_summary(session_id)
            if cached:
                return cached
            if len(messages) >= 4:
                return generate_summary(messages)
            return NEW_CONVERSATION
        except Exception as e:
            logger.warning(f"Failed to get session summary: {e}")
            return "Conversation in progress."

    async def _get_past_turns(
        self,
        store: SQLiteStore,
        session_id: str,
        query: str,
        query_embedding: list[float] | None,
    ) -> list[ChatMessage]:
        if query_embedding is not None:
            try:
                rows = await store.search_similar_messages(
                    session_id, query_embedding, SIMILARITY_THRESHOLD, limit=3
                )
                if rows:
                    return [
                        ChatMessage(
                            role=r["role"],
                            content=r["content"][:PAST_TURN_CHARS],
                            timestamp=r["created_at"],
                        )
                        for r in rows
                    ]
            except Exception as e:
                logger.debug(f"Message vector search unavailable: {e}")

        try:
            rows = await store.get_messages(session_id, newest_first=True, limit=20)
        except Exception as e:
            logger.warning(f"Past message fallback query failed: {e}")
            return []

        current = query[:100]
        filtered = [r for r in rows if r["content"][:100] != current]
        # Skip what the working context already shows
        older = list(reversed(filtered[RECENT_TURNS:]))[:RECENT_TURNS]
        if not older and filtered:
            older = list(reversed(filtered))[:MINIMAL_RECENT_TURNS]

        turns = [
            ChatMessage(
                role=r["role"],
                content=enhance_with_metadata(r["content"][:PAST_TURN_CHARS], r.get("metadata")),
                timestamp=r["created_at"],
            )
            for r in older
        ]
        logger.debug(f"Loaded {len(turns)} past turns via direct query")
        return turns

    async def _get_session_facts(
        self,
        store: SQLiteStore,
        session_id: str,
        query_embedding: list[float] | None,
    ) -> list[MemoryFact]:
        if query_embedding is not None:
            try:
                rows = await store.search_similar_session_facts(
                    session_id, query_embedding, SIMILARITY_THRESHOLD, limit=5
                )
                if rows:
                    return [_row_to_fact(r) for r in rows]
            except Exception as e:
                logger.debug(f"Session fact vector search unavailable: {e}")

        try:
            rows = await store.get_session_facts(
                session_id, statuses=[FactStatus.ACTIVE.value], limit=5
            )
            return [_row_to_fact(r) for r in rows]
        except Exception as e:
            logger.warning(f"Session fact fallback query failed: {e}")
            return []

    async def _get_user_facts(
        self,
        store: SQLiteStore,
        user_id: str,
        query_embedding: list[float] | None,
    ) -> list[MemoryFact]:
        if query_embedding is not None:
            try:
                rows = await store.search_similar_user_facts(
                    user_id, query_embedding, SIMILARITY_THRESHOLD, limit=5
                )
                if rows:
                    return [_row_to_fact(r) for r in rows]
            except Exception as e:
                logger.debug(f"User fact vector search unavailable: {e}")

        try:
            rows = await store.get_user_facts(
                user_id, statuses=[FactStatus.ACTIVE.value], limit=5
            )
            return [_row_to_fact(r) for r in rows]
        except Exception as e:
            logger.warning(f"User fact fallback query failed: {e}")
            return []

    async def _get_saved_memories(
        self, store: SQLiteStore, user_id: str, config: MemoryConfig
    ) -> list[MemoryFact]:
        try:
            rows = await store.get_saved_memories(
                user_id, active_only=True, limit=config.max_memories_in_context
            )
        except Exception as e:
            logger.warning(f"Failed to get saved memories: {e}")
            return []
        return [
            MemoryFact(
                id=r["id"],
                type=FactType.PREFERENCE.value,
                key="saved_memory",
                value=r["content"],
                importance=SAVED_MEMORY_IMPORTANCE,
                source=r.get("source") or "user",
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    async def _try_embed(self, text: str) -> list[float] | None:
        try:
            return await self.embeddings.embed(text)
        except Exception as e:
            logger.warning(f"Fact embedding failed: {e}")
            return None

    async def _save_session_facts(
        self, store: SQLiteStore, session_id: str, facts: list[MemoryFact]
    ) -> list[MemoryFact]:
        saved: list[MemoryFact] = []
        for fact in facts:
            fact_id = _uuid()
            try:
                await store.insert_session_fact({
                    "id": fact_id,
                    "session_id": session_id,
                    "fact_type": fact.type,
                    "key": fact.key,
                    "value": fact.value,
                    "importance": fact.importance,
                    "embedding": await self._try_embed(f"{fact.key}: {fact.value}"),
                })
            except Exception as e:
                logger.error(f"Failed to save session fact {fact.key}: {e}")
                continue
            saved.append(fact.model_copy(update={"id": fact_id}))
        return saved

    async def _save_user_facts(
        self,
        store: SQLiteStore,
        user_id: str,
        session_id: str,
        facts: list[MemoryFact],
    ) -> int:
        saved = 0
        for fact in facts:
            try:
                await store.insert_user_fact({
                    "id": _uuid(),
                    "user_id": user_id,
                    "fact_type": fact.type,
                    "key": fact.key,
                    "value": fact.value,
                    "importance": fact.importance,
                    "source_session_id": session_id,
                    "embedding": await self._try_embed(f"{fact.key}: {fact.value}"),
                })
                saved += 1
            except Exception as e:
                logger.error(f"Failed to save user fact {fact.key}: {e}")
        return saved

    async def _refresh_summary(
        self,
        store: SQLiteStore,
        session_id: str,
        messages: Sequence[ChatMessage],
        new_summary: str | None,
    ) -> bool:
        try:
            summary = new_summary or generate_summary(messages)
            embedding = await self._try_embed(summary)
            await store.update_session_summary(session_id, summary, embedding)
            return True
        except Exception as e:
            logger.warning(f"Failed to update session summary: {e}")
            return False

    async def _link_turn_entities(
        self,
        user_id: str,
        session_id: str,
        user_message: str,
        answer: str,
        saved_facts: list[MemoryFact],
    ) -> int:
        graph = await self.context_graph_for(user_id)
        linked = 0
        if user_message:
            linked += await graph.auto_link_entities(
                user_message, session_id, ContextRefType.QUERIED
            )
        linked += await graph.auto_link_entities(
            answer[:1000], session_id, ContextRefType.DISCUSSED
        )
        for fact in saved_facts:
            linked += await graph.auto_link_entities(
                f"{fact.key}: {fact.value}",
                session_id,
                ContextRefType.MENTIONED,
                memory_fact_id=fact.id,
            )
        logger.debug(f"Linked {linked} entities for session {session_id[:8]}")
        return linked

    async def _compression_check(self, session_id: str) -> bool:
        engine = await self._ensure_compression()
        return await engine.maybe_compress(session_id, self.config.compression.compress_threshold)
