"""Tests for CompressionEngine windowing, compression and summaries."""

from __future__ import annotations

import pytest

from tiered_memory.compression import (
    EMPTY_SUMMARY,
    CompressionEngine,
    format_compressed_context,
)
from tiered_memory.models import ChatMessage, CompressedContext, ContextBudget

LONG_TEXT = "The quarterly revenue analysis covers every region and product line in detail. " * 20


@pytest.fixture
def engine(store, mock_llm, tokens, embeddings):
    return CompressionEngine(store, mock_llm, tokens, embeddings=embeddings)


async def _record(engine, count, content="msg", session_id="s1"):
    for i in range(count):
        role = "user" if i % 2 == 0 else "assistant"
        await engine.record_message(session_id, role, f"{content} {i}")


class TestRecordMessage:
    @pytest.mark.asyncio
    async def test_records_full_with_token_count(self, engine, store, tokens):
        message = await engine.record_message("s1", "user", "Hello there", {"a": 1})
        rows = await store.get_messages("s1")
        assert rows[0]["id"] == message.id
        assert rows[0]["compression_level"] == "full"
        assert rows[0]["token_count"] == tokens.count("Hello there")
        assert rows[0]["metadata"] == {"a": 1}


class TestMaybeCompress:
    @pytest.mark.asyncio
    async def test_below_threshold_does_nothing(self, engine, mock_llm):
        await _record(engine, 20)
        assert await engine.maybe_compress("s1", threshold=20) is False
        mock_llm.chat.assert_not_called()

    @pytest.mark.asyncio
    async def test_25_messages_compress_oldest_15(self, engine, store, mock_llm):
        # Summary longer than the tiny messages -> batches are archived
        mock_llm.chat.return_value = (
            "The user and assistant exchanged a long series of short numbered messages."
        )
        await _record(engine, 25)

        assert await engine.maybe_compress("s1", threshold=20) is True

        rows = await store.get_messages("s1")
        assert [r["compression_level"] for r in rows[-10:]] == ["full"] * 10
        assert all(r["compression_level"] != "full" for r in rows[:15])
        assert await store.count_messages("s1", "full") == 10
        # 15 messages in batches of 6 -> 3 batch calls, plus the session summary
        assert mock_llm.chat.await_count == 4
        assert await store.get_session_summary("s1")

    @pytest.mark.asyncio
    async def test_short_summary_marks_compressed(self, engine, store, mock_llm):
        mock_llm.chat.return_value = "Revenue review."
        for i in range(12):
            await engine.record_message("s1", "user" if i % 2 == 0 else "assistant", LONG_TEXT)

        changed = await engine.compress_old_messages("s1", keep_full_count=6)

        assert changed == 6
        compressed = await store.get_messages("s1", levels=["compressed"])
        assert len(compressed) == 6
        assert all(r["compressed_content"] == "Revenue review." for r in compressed)

    @pytest.mark.asyncio
    async def test_archived_never_moves_back(self, engine, store, mock_llm):
        mock_llm.chat.return_value = "A summary that is longer than each tiny message."
        await _record(engine, 12)
        await engine.compress_old_messages("s1", keep_full_count=6)
        archived_ids = {r["id"] for r in await store.get_messages("s1", levels=["archived"])}
        assert len(archived_ids) == 6

        # A later pass with a great compression ratio must not revive archived rows
        mock_llm.chat.return_value = "x"
        await engine.compress_old_messages("s1", keep_full_count=0)
        rows = await store.get_messages("s1")
        for row in rows:
            if row["id"] in archived_ids:
                assert row["compression_level"] == "archived"
            else:
                assert row["compression_level"] in ("compressed", "archived")

    @pytest.mark.asyncio
    async def test_failed_batch_keeps_level(self, engine, store, mock_llm):
        mock_llm.chat.side_effect = RuntimeError("llm down")
        await _record(engine, 12)
        changed = await engine.compress_old_messages("s1", keep_full_count=6)
        assert changed == 0
        assert await store.count_messages("s1", "full") == 12

    @pytest.mark.asyncio
    async def test_no_llm_leaves_messages(self, store, tokens):
        engine = CompressionEngine(store, None, tokens)
        await _record(engine, 12)
        assert await engine.compress_old_messages("s1", keep_full_count=6) == 0


class TestCompressMessages:
    @pytest.mark.asyncio
    async def test_empty_input(self, engine, mock_llm):
        assert await engine.compress_messages([]) == ""
        mock_llm.chat.assert_not_called()

    @pytest.mark.asyncio
    async def test_prompt_truncates_long_messages(self, engine, mock_llm):
        await engine.compress_messages([ChatMessage(role="user", content="a" * 800)])
        prompt = mock_llm.chat.call_args.args[1][1]["content"]
        assert "USER: " + "a" * 500 in prompt
        assert "a" * 501 not in prompt
        assert mock_llm.chat.call_args.kwargs["temperature"] == 0.3
        assert mock_llm.chat.call_args.kwargs["max_tokens"] == 300

    @pytest.mark.asyncio
    async def test_empty_response_uses_placeholder(self, engine, mock_llm):
        mock_llm.chat.return_value = "   "
        result = await engine.compress_messages([ChatMessage(role="user", content="hi")])
        assert result == EMPTY_SUMMARY

    @pytest.mark.asyncio
    async def test_extractive_fallback(self, engine, mock_llm):
        mock_llm.chat.side_effect = RuntimeError("llm down")
        messages = [
            ChatMessage(role="user", content="first question"),
            ChatMessage(role="assistant", content="an answer"),
            ChatMessage(role="user", content="second question"),
            ChatMessage(role="user", content="third question"),
            ChatMessage(role="user", content="x" * 150),
        ]
        result = await engine.compress_messages(messages)
        assert result == f"second question | third question | {'x' * 100}"


class TestAssembleContext:
    @pytest.mark.asyncio
    async def test_empty_session(self, engine):
        context = await engine.assemble_context("s1")
        assert context == CompressedContext()

    @pytest.mark.asyncio
    async def test_small_session_is_all_full(self, engine):
        await _record(engine, 4)
        context = await engine.assemble_context("s1")
        assert [m.content for m in context.full_messages] == [f"msg {i}" for i in range(4)]
        assert context.compressed_messages == []
        assert context.summary == ""
        assert context.tokens_used == context.breakdown.full

    @pytest.mark.asyncio
    async def test_respects_sub_budgets(self, engine, store, mock_llm, tokens):
        mock_llm.chat.return_value = "Short summary."
        for i in range(30):
            await engine.record_message("s1", "user" if i % 2 == 0 else "assistant", LONG_TEXT)
        await engine.compress_old_messages("s1", keep_full_count=10)

        budget = ContextBudget(
            total=1000,
            full_messages=tokens.count(LONG_TEXT) * 2,
            compressed_messages=100,
            session_summary=50,
            reserved=0,
        )
        context = await engine.assemble_context("s1", budget)

        assert len(context.full_messages) == 2
        assert context.breakdown.full <= budget.full_messages
        assert context.breakdown.compressed <= budget.compressed_messages
        assert context.breakdown.summary <= budget.session_summary
        assert context.tokens_used == (
            context.breakdown.full + context.breakdown.compressed + context.breakdown.summary
        )

    @pytest.mark.asyncio
    async def test_batch_summary_rendered_once(self, engine, mock_llm, tokens):
        mock_llm.chat.return_value = "Revenue review."
        for i in range(12):
            await engine.record_message("s1", "user" if i % 2 == 0 else "assistant", LONG_TEXT)
        await engine.compress_old_messages("s1", keep_full_count=6)

        budget = ContextBudget(
            total=100_000,
            full_messages=tokens.count(LONG_TEXT) * 6,
            compressed_messages=1000,
            session_summary=500,
            reserved=0,
        )
        context = await engine.assemble_context("s1", budget)
        assert len(context.full_messages) == 6
        assert len(context.compressed_messages) == 1
        assert context.compressed_messages[0].content.endswith("Revenue review.")
        assert context.summary == ""

    @pytest.mark.asyncio
    async def test_summary_fills_remaining(self, engine, store, tokens):
        await _record(engine, 6)
        await store.update_session_summary("s1", "Earlier the user asked about sales.")
        budget = ContextBudget(
            total=1000, full_messages=tokens.count("msg 5"), compressed_messages=0,
            session_summary=200, reserved=0,
        )
        context = await engine.assemble_context("s1", budget)
        assert [m.content for m in context.full_messages] == ["msg 5"]
        assert context.summary == "Earlier the user asked about sales."


class TestSessionSummary:
    @pytest.mark.asyncio
    async def test_no_archived_messages(self, engine, mock_llm):
        assert await engine.get_or_generate_summary("s1", 100) == ""
        assert await engine.update_session_summary("s1") is None
        mock_llm.chat.assert_not_called()

    @pytest.mark.asyncio
    async def test_cached_summary_truncated(self, engine, store, tokens):
        await store.update_session_summary("s1", LONG_TEXT)
        summary = await engine.get_or_generate_summary("s1", 20)
        assert tokens.count(summary) <= 20

    @pytest.mark.asyncio
    async def test_summary_stored_with_embedding(self, engine, store, mock_llm):
        mock_llm.chat.return_value = "Customer sales in Texas were discussed."
        await _record(engine, 3)
        for row in await store.get_messages("s1"):
            await store.update_message_compression(row["id"], "archived", 2, None, 1)

        summary = await engine.update_session_summary("s1")

        assert summary == "Customer sales in Texas were discussed."
        session = await store.get_session("s1")
        assert session["summary_text"] == summary
        assert session["summary_embedding"]


class TestFormatCompressedContext:
    def test_formats_sections(self):
        context = CompressedContext(
            compressed_messages=[ChatMessage(role="user", content="[user]: asked about sales")],
            summary="Earlier: customers in Texas",
        )
        text = format_compressed_context(context)
        assert "## Earlier Conversation Summary\nEarlier: customers in Texas" in text
        assert "## Previous Discussion (Summarized)\n[user]: asked about sales" in text

    def test_empty_context(self):
        assert format_compressed_context(CompressedContext()) == ""
