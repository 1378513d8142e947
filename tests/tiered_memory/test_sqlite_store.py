"""Tests for the tiered memory SQLiteStore."""

from __future__ import annotations

import pytest

from tiered_memory.storage import SQLiteStore, rank_by_similarity


async def _add_message(store, message_id, content="hello", session_id="s1", role="user", created_at=None):
    await store.insert_message({
        "id": message_id,
        "session_id": session_id,
        "role": role,
        "content": content,
        "metadata": None,
        "token_count": 3,
        "created_at": created_at,
    })


class TestSchema:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "table",
        [
            "sessions",
            "messages",
            "session_memory_facts",
            "user_memory",
            "user_memories",
            "knowledge_graph_nodes",
            "context_references",
        ],
    )
    async def test_table_exists(self, store, table):
        async with store._db.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (table,)
        ) as cursor:
            rows = await cursor.fetchall()
        assert len(rows) == 1

    @pytest.mark.asyncio
    async def test_uninitialized_store_raises(self, tmp_path):
        s = SQLiteStore(db_path=str(tmp_path / "x.db"))
        with pytest.raises(RuntimeError, match="not initialized"):
            await s.get_session("s1")


class TestSessions:
    @pytest.mark.asyncio
    async def test_insert_is_idempotent(self, store):
        await store.insert_session({"id": "s1", "user_id": "u1", "title": "First"})
        await store.insert_session({"id": "s1", "user_id": "u2", "title": "Second"})
        session = await store.get_session("s1")
        assert session["title"] == "First"
        assert session["user_id"] == "u1"

    @pytest.mark.asyncio
    async def test_summary_creates_session(self, store):
        await store.update_session_summary("s-new", "Discussing sales", [1.0, 0.0])
        assert await store.get_session_summary("s-new") == "Discussing sales"
        session = await store.get_session("s-new")
        assert session["summary_embedding"] == [1.0, 0.0]

    @pytest.mark.asyncio
    async def test_summary_keeps_embedding_when_none_given(self, store):
        await store.update_session_summary("s1", "first", [1.0, 0.0])
        await store.update_session_summary("s1", "second")
        session = await store.get_session("s1")
        assert session["summary_text"] == "second"
        assert session["summary_embedding"] == [1.0, 0.0]

    @pytest.mark.asyncio
    async def test_missing_summary_is_none(self, store):
        assert await store.get_session_summary("nope") is None

    @pytest.mark.asyncio
    async def test_session_titles(self, store):
        await store.insert_session({"id": "s1", "title": "Sales review"})
        await store.insert_session({"id": "s2"})
        titles = await store.get_session_titles(["s1", "s2", "s3"])
        assert titles == {"s1": "Sales review", "s2": None}
        assert await store.get_session_titles([]) == {}


class TestMessages:
    @pytest.mark.asyncio
    async def test_messages_ordered_oldest_first(self, store):
        for i in range(3):
            await _add_message(store, f"m{i}", content=f"message {i}")
        rows = await store.get_messages("s1")
        assert [r["id"] for r in rows] == ["m0", "m1", "m2"]
        newest = await store.get_messages("s1", newest_first=True, limit=2)
        assert [r["id"] for r in newest] == ["m2", "m1"]

    @pytest.mark.asyncio
    async def test_metadata_roundtrip(self, store):
        await store.insert_message({
            "id": "m1",
            "session_id": "s1",
            "role": "assistant",
            "content": "Here is a chart",
            "metadata": {"toolCalls": [{"toolName": "sql"}]},
        })
        rows = await store.get_messages("s1")
        assert rows[0]["metadata"] == {"toolCalls": [{"toolName": "sql"}]}
        assert rows[0]["compression_level"] == "full"

    @pytest.mark.asyncio
    async def test_compression_is_monotonic(self, store):
        await _add_message(store, "m1")
        assert await store.update_message_compression("m1", "archived", 2, None, 3)
        assert not await store.update_message_compression("m1", "compressed", 1, "s", 3)
        assert not await store.update_message_compression("m1", "full", 0, None, 3)
        rows = await store.get_messages("s1")
        assert rows[0]["compression_level"] == "archived"

    @pytest.mark.asyncio
    async def test_count_and_level_filter(self, store):
        for i in range(4):
            await _add_message(store, f"m{i}")
        await store.update_message_compression("m0", "compressed", 1, "summary", 3)
        assert await store.count_messages("s1") == 4
        assert await store.count_messages("s1", "full") == 3
        compressed = await store.get_messages("s1", levels=["compressed"])
        assert [r["id"] for r in compressed] == ["m0"]
        assert compressed[0]["compressed_content"] == "summary"

    @pytest.mark.asyncio
    async def test_similar_messages(self, store):
        await _add_message(store, "m1", content="customers")
        await _add_message(store, "m2", content="weather")
        await _add_message(store, "m3", content="no vector")
        await store.update_message_embedding("m1", [1.0, 0.0])
        await store.update_message_embedding("m2", [0.0, 1.0])
        rows = await store.search_similar_messages("s1", [1.0, 0.1], threshold=0.7, limit=3)
        assert [r["id"] for r in rows] == ["m1"]
        assert rows[0]["similarity"] > 0.9


class TestFacts:
    @pytest.mark.asyncio
    async def test_session_facts_by_importance(self, store):
        for i, importance in enumerate([0.2, 0.9, 0.5]):
            await store.insert_session_fact({
                "id": f"f{i}",
                "session_id": "s1",
                "fact_type": "constraint",
                "key": f"k{i}",
                "value": f"v{i}",
                "importance": importance,
            })
        rows = await store.get_session_facts("s1")
        assert [r["id"] for r in rows] == ["f1", "f2", "f0"]
        rows = await store.get_session_facts("s1", min_importance=0.5)
        assert {r["id"] for r in rows} == {"f1", "f2"}
        assert await store.count_session_facts("s1", min_importance=0.3) == 2

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_columns(self, store):
        await store.insert_session_fact({
            "id": "f1", "session_id": "s1", "key": "k", "value": "v",
        })
        assert not await store.update_session_fact("f1", {"session_id": "other"})
        assert await store.update_session_fact("f1", {"status": "forgotten"})
        fact = await store.get_session_fact("f1")
        assert fact["session_id"] == "s1"
        assert fact["status"] == "forgotten"

    @pytest.mark.asyncio
    async def test_scoped_updates(self, store):
        await store.insert_session_fact({
            "id": "f1", "session_id": "s1", "key": "k", "value": "v",
        })
        await store.insert_user_fact({
            "id": "u-fact", "user_id": "alice", "key": "k", "value": "v",
        })

        assert not await store.update_session_fact("f1", {"value": "x"}, session_id="s2")
        assert not await store.update_user_fact("u-fact", {"value": "x"}, user_id="bob")
        assert (await store.get_session_fact("f1"))["value"] == "v"
        assert (await store.get_user_facts("alice"))[0]["value"] == "v"

        assert await store.update_session_fact("f1", {"value": "x"}, session_id="s1")
        assert await store.update_user_fact("u-fact", {"value": "x"}, user_id="alice")

    @pytest.mark.asyncio
    async def test_empty_ids_returns_nothing(self, store):
        await store.insert_session_fact({
            "id": "f1", "session_id": "s1", "key": "k", "value": "v",
        })
        assert await store.get_session_facts("s1", ids=[]) == []

    @pytest.mark.asyncio
    async def test_similar_facts_skip_inactive(self, store):
        await store.insert_session_fact({
            "id": "f1", "session_id": "s1", "key": "k", "value": "v",
            "embedding": [1.0, 0.0],
        })
        await store.insert_session_fact({
            "id": "f2", "session_id": "s1", "key": "k", "value": "v",
            "embedding": [1.0, 0.0], "status": "forgotten",
        })
        rows = await store.search_similar_session_facts("s1", [1.0, 0.0])
        assert [r["id"] for r in rows] == ["f1"]

    @pytest.mark.asyncio
    async def test_user_facts_scoped_by_user(self, store):
        await store.insert_user_fact({
            "id": "uf1", "user_id": "u1", "key": "format", "value": "tables",
            "embedding": [0.0, 1.0],
        })
        await store.insert_user_fact({
            "id": "uf2", "user_id": "u2", "key": "format", "value": "charts",
            "embedding": [0.0, 1.0],
        })
        rows = await store.get_user_facts("u1")
        assert [r["id"] for r in rows] == ["uf1"]
        similar = await store.search_similar_user_facts("u2", [0.0, 1.0])
        assert [r["id"] for r in similar] == ["uf2"]


class TestSavedMemories:
    @pytest.mark.asyncio
    async def test_saved_memory_lifecycle(self, store):
        await store.insert_saved_memory({"id": "sm1", "user_id": "u1", "content": "I like tables"})
        rows = await store.get_saved_memories("u1")
        assert rows[0]["is_active"] is True

        assert await store.update_saved_memory("sm1", "u1", {"is_active": False})
        assert await store.get_saved_memories("u1") == []
        assert len(await store.get_saved_memories("u1", active_only=False)) == 1

    @pytest.mark.asyncio
    async def test_update_requires_owner(self, store):
        await store.insert_saved_memory({"id": "sm1", "user_id": "u1", "content": "x"})
        assert not await store.update_saved_memory("sm1", "u2", {"content": "hijacked"})

    @pytest.mark.asyncio
    async def test_invalid_source_rejected(self, store):
        with pytest.raises(Exception):
            await store.insert_saved_memory(
                {"id": "sm1", "user_id": "u1", "content": "x", "source": "bogus"}
            )


class TestKnowledgeGraph:
    @pytest.mark.asyncio
    async def test_find_nodes_escapes_wildcards(self, store):
        await store.upsert_kg_node({"id": "n1", "type": "table", "name": "sales_2024"})
        await store.upsert_kg_node({"id": "n2", "type": "table", "name": "salesX2024"})
        rows = await store.find_kg_nodes(name_contains="sales_")
        assert [r["id"] for r in rows] == ["n1"]

    @pytest.mark.asyncio
    async def test_find_nodes_by_type(self, store):
        await store.upsert_kg_node({"id": "n1", "type": "customer", "name": "Acme"})
        rows = await store.find_kg_nodes(type_equals="customer")
        assert rows[0]["name"] == "Acme"
        assert await store.find_kg_nodes() == []

    @pytest.mark.asyncio
    async def test_deleting_node_cascades_references(self, store):
        await store.upsert_kg_node({"id": "n1", "type": "table", "name": "orders"})
        await store.insert_context_reference({
            "id": "r1", "user_id": "u1", "kg_node_id": "n1", "ref_type": "discussed",
        })
        await store._write("DELETE FROM knowledge_graph_nodes WHERE id = ?", ("n1",))
        assert await store.get_context_references("u1") == []


class TestRankBySimilarity:
    def test_zero_query(self):
        assert rank_by_similarity([{"embedding": [1.0]}], [0.0], 0.5, 5) == []

    def test_skips_dimension_mismatch(self):
        rows = [{"id": "a", "embedding": [1.0, 0.0, 0.0]}, {"id": "b", "embedding": [1.0, 0.0]}]
        ranked = rank_by_similarity(rows, [1.0, 0.0], 0.5, 5)
        assert [r["id"] for r in ranked] == ["b"]

    def test_threshold_is_exclusive(self):
        rows = [{"id": "a", "embedding": [1.0, 0.0]}]
        assert rank_by_similarity(rows, [1.0, 0.0], 1.0, 5) == []
