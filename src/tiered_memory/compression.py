"""Progressive summarization of chat history.

Messages move one way through ``full -> compressed -> archived``. The most
recent messages stay verbatim, older ones are replaced by batch summaries
and the oldest are folded into a single session summary.
"""

from __future__ import annotations

from loguru import logger

from .config import CompressionConfig, TimeoutConfig
from .embedding import EmbeddingCache
from .models import (
    ChatMessage,
    CompressedContext,
    CompressionLevel,
    ContextBudget,
    StoredMessage,
    TokenBreakdown,
)
from .providers import ChatProvider, call_with_timeout
from .storage import SQLiteStore
from .token_budget import DEFAULT_CONTEXT_BUDGET, TokenBudgetManager

LLM_ROLE = "memory_extractor"

SUMMARIZER_SYSTEM_PROMPT = """\
You are a conversation summarizer. Compress the following conversation into \
a brief summary that preserves:
1. Key topics discussed
2. Important facts or decisions
3. User requests and assistant responses
4. Any constraints or preferences mentioned

Keep the summary concise (100-200 words) but informative enough to continue \
the conversation."""

EMPTY_SUMMARY = "Conversation in progress."


class CompressionEngine:
    """Sliding-window compression and budget-aware context assembly."""

    def __init__(
        self,
        store: SQLiteStore,
        llm: ChatProvider | None,
        tokens: TokenBudgetManager,
        embeddings: EmbeddingCache | None = None,
        config: CompressionConfig | None = None,
        timeouts: TimeoutConfig | None = None,
    ):
        """Initialize compression engine.

        Args:
            store: Message and session storage
            llm: Chat provider used for summaries
            tokens: Token counter
            embeddings: Optional embedding cache for session summary vectors
            config: Compression configuration
            timeouts: Timeouts for provider calls
        """
        self._store = store
        self._llm = llm
        self._tokens = tokens
        self._embeddings = embeddings
        self._config = config or CompressionConfig()
        self._timeouts = timeouts or TimeoutConfig()

    async def record_message(
        self,
        session_id: str,
        role: str,
        content: str,
        metadata: dict | None = None,
    ) -> StoredMessage:
        """Persist a new message at level ``full`` with its token count."""
        message = StoredMessage(
            session_id=session_id,
            role=role,
            content=content,
            metadata=metadata,
            token_count=self._tokens.count(content),
        )
        await self._store.insert_message({
            "id": message.id,
            "session_id": session_id,
            "role": role,
            "content": content,
            "metadata": metadata,
            "token_count": message.token_count,
            "created_at": message.created_at.isoformat(),
        })
        return message

    async def assemble_context(
        self,
        session_id: str,
        budget: ContextBudget | None = None,
    ) -> CompressedContext:
        """Build the history view of a session that fits ``budget``.

        Newest messages are kept verbatim, older ones use their compressed
        form, and the session summary stands in for whatever is left.
        """
        budget = budget or DEFAULT_CONTEXT_BUDGET
        logger.debug(f"Assembling compressed context for session: {session_id[:8]}")

        rows = await self._store.get_messages(session_id)
        if not rows:
            return CompressedContext()

        for row in rows:
            if row.get("token_count") is None:
                row["token_count"] = self._tokens.count(row["content"])
                await self._store.update_message_token_count(row["id"], row["token_count"])

        newest_first = list(reversed(rows))

        # Phase 1: most recent messages verbatim
        full: list[ChatMessage] = []
        full_tokens = 0
        for row in newest_first:
            if full_tokens + row["token_count"] > budget.full_messages:
                break
            full.insert(0, ChatMessage(role=row["role"], content=row["content"]))
            full_tokens += row["token_count"]

        # Phase 2: older messages in compressed form
        remaining = newest_first[len(full):]
        compressed: list[ChatMessage] = []
        compressed_tokens = 0
        consumed = 0
        last_summary: str | None = None
        for row in remaining:
            summary_text = row.get("compressed_content")
            if summary_text and summary_text == last_summary:
                # Same batch summary as the previous message
                consumed += 1
                continue

            content = summary_text or row["content"]
            tokens = self._tokens.count(content)
            room = budget.compressed_messages - compressed_tokens
            if tokens > room:
                if room <= self._config.min_compressed_room:
                    break
                content = self._tokens.truncate_to_fit(content, room)
                tokens = self._tokens.count(content)
            if compressed_tokens + tokens > budget.compressed_messages:
                break

            compressed.insert(
                0, ChatMessage(role=row["role"], content=f"[{row['role']}]: {content}")
            )
            compressed_tokens += tokens
            consumed += 1
            last_summary = summary_text

        # Phase 3: session summary for the rest
        summary = ""
        summary_tokens = 0
        if consumed < len(remaining):
            summary = await self.get_or_generate_summary(session_id, budget.session_summary)
            summary_tokens = self._tokens.count(summary)

        tokens_used = full_tokens + compressed_tokens + summary_tokens
        logger.debug(
            f"Context assembled: {len(full)} full, {len(compressed)} compressed, "
            f"summary: {summary_tokens} tokens ({tokens_used} / {budget.total})"
        )
        return CompressedContext(
            full_messages=full,
            compressed_messages=compressed,
            summary=summary,
            tokens_used=tokens_used,
            breakdown=TokenBreakdown(
                full=full_tokens, compressed=compressed_tokens, summary=summary_tokens
            ),
        )

    async def maybe_compress(self, session_id: str, threshold: int | None = None) -> bool:
        """Compress old messages once the session holds too many full ones.

        Returns:
            True if compression ran
        """
        threshold = self._config.compress_threshold if threshold is None else threshold
        full_count = await self._store.count_messages(session_id, CompressionLevel.FULL.value)
        if full_count <= threshold:
            return False

        logger.info(
            f"Session {session_id[:8]} has {full_count} full messages, triggering compression"
        )
        await self.compress_old_messages(session_id, self._config.keep_full_count)
        return True

    async def compress_old_messages(
        self, session_id: str, keep_full_count: int | None = None
    ) -> int:
        """Compress or archive everything but the newest messages.

        A batch whose LLM summary fails keeps its level and is picked up
        again on the next run.

        Returns:
            Number of messages whose level changed
        """
        keep = self._config.keep_full_count if keep_full_count is None else keep_full_count
        rows = await self._store.get_messages(
            session_id,
            levels=[CompressionLevel.FULL.value, CompressionLevel.COMPRESSED.value],
            newest_first=True,
        )
        if len(rows) <= keep:
            return 0

        to_compress = rows[keep:]
        logger.info(f"Compressing {len(to_compress)} messages in session {session_id[:8]}")

        changed = 0
        batch_size = self._config.batch_size
        for start in range(0, len(to_compress), batch_size):
            batch = to_compress[start:start + batch_size]
            try:
                summary = await self._summarize(
                    [ChatMessage(role=m["role"], content=m["content"]) for m in batch]
                )
            except Exception as e:
                logger.warning(f"Batch compression failed, leaving {len(batch)} messages as-is: {e}")
                continue

            summary_tokens = self._tokens.count(summary)
            batch_tokens = sum(self._tokens.count(m["content"]) for m in batch)
            if summary_tokens < batch_tokens * self._config.compression_ratio:
                level = CompressionLevel.COMPRESSED
            else:
                level = CompressionLevel.ARCHIVED

            for message in batch:
                updated = await self._store.update_message_compression(
                    message["id"],
                    level.value,
                    level.rank,
                    summary if level is CompressionLevel.COMPRESSED else None,
                    self._tokens.count(message["content"]),
                )
                if updated:
                    changed += 1

        await self.update_session_summary(session_id)
        return changed

    async def compress_messages(self, messages: list[ChatMessage]) -> str:
        """Summarize messages, falling back to an extractive summary.

        Returns:
            Summary text, or "" for no messages
        """
        if not messages:
            return ""
        try:
            return await self._summarize(messages)
        except Exception as e:
            logger.warning(f"Failed to compress messages, using extractive fallback: {e}")
            user_messages = [m for m in messages if m.role == "user"]
            return " | ".join(m.content[:100] for m in user_messages[-3:])

    async def _summarize(self, messages: list[ChatMessage]) -> str:
        """Call the summarizer LLM. Raises on provider failure."""
        if self._llm is None:
            raise RuntimeError("No chat provider configured for summarization")
        limit = self._config.max_chars_per_message
        conversation = "\n\n".join(
            f"{m.role.upper()}: {m.content[:limit]}" for m in messages
        )
        logger.debug(f"Summarizing {len(messages)} messages")
        response = await call_with_timeout(
            self._llm.chat(
                LLM_ROLE,
                [
                    {"role": "system", "content": SUMMARIZER_SYSTEM_PROMPT},
                    {"role": "user", "content": f"Summarize this conversation:\n\n{conversation}"},
                ],
                temperature=0.3,
                max_tokens=300,
            ),
            self._timeouts.llm_seconds,
            "llm",
        )
        return (response or "").strip() or EMPTY_SUMMARY

    async def get_or_generate_summary(self, session_id: str, max_tokens: int) -> str:
        """Return the stored session summary, generating it if missing."""
        cached = await self._store.get_session_summary(session_id)
        if cached:
            return self._tokens.truncate_to_fit(cached, max_tokens)

        archived = await self._store.get_messages(
            session_id,
            levels=[CompressionLevel.ARCHIVED.value],
            limit=self._config.summary_source_limit,
        )
        if not archived:
            return ""

        summary = await self.compress_messages(
            [ChatMessage(role=m["role"], content=m["content"]) for m in archived]
        )
        if summary:
            await self._save_summary(session_id, summary)
        return self._tokens.truncate_to_fit(summary, max_tokens)

    async def update_session_summary(self, session_id: str) -> str | None:
        """Regenerate the session summary from archived messages."""
        archived = await self._store.get_messages(
            session_id,
            levels=[CompressionLevel.ARCHIVED.value],
            limit=self._config.summary_refresh_limit,
        )
        if not archived:
            return None

        summary = await self.compress_messages(
            [ChatMessage(role=m["role"], content=m["content"]) for m in archived]
        )
        if summary:
            await self._save_summary(session_id, summary)
        return summary

    async def _save_summary(self, session_id: str, summary: str) -> None:
        embedding = None
        if self._embeddings is not None:
            try:
                embedding = await self._embeddings.embed(summary)
            except Exception as e:
                logger.warning(f"Session summary embedding failed: {e}")
        await self._store.update_session_summary(session_id, summary, embedding)
        logger.debug(f"Session summary updated for {session_id[:8]}")


def format_compressed_context(context: CompressedContext) -> str:
    """Render the compressed portions of a context for a system prompt.

    Full messages are sent as regular chat history and are not included.
    """
    parts: list[str] = []

    if context.summary:
        parts.append("## Earlier Conversation Summary")
        parts.append(context.summary)
        parts.append("")

    if context.compressed_messages:
        parts.append("## Previous Discussion (Summarized)")
        parts.extend(m.content for m in context.compressed_messages)
        parts.append("")

    return "\n".join(parts)
