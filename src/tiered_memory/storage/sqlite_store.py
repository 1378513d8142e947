"""SQLite storage backend for the tiered memory subsystem.

Persists the five logical tables the subsystem works with (session
messages, session facts, user facts, sessions, context references) plus
saved user memories and the knowledge-graph node table the context
references point into. Uses aiosqlite for async access.

Vector similarity is computed in-process over float32 BLOB embeddings;
rows without an embedding are simply not candidates.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence

import aiosqlite
import numpy as np
from loguru import logger

from ..embedding import deserialize_embedding, serialize_embedding

_LEVEL_RANK_SQL = (
    "CASE compression_level WHEN 'full' THEN 0 "
    "WHEN 'compressed' THEN 1 ELSE 2 END"
)

_SESSION_FACT_COLUMNS = {
    "fact_type", "key", "value", "importance", "status", "embedding", "expires_at",
}

_USER_FACT_COLUMNS = {"fact_type", "key", "value", "importance", "status", "embedding"}

_SAVED_MEMORY_COLUMNS = {"content", "source", "is_active"}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _row_to_dict(row: aiosqlite.Row) -> dict:
    data = dict(row)
    if "embedding" in data:
        data["embedding"] = deserialize_embedding(data["embedding"])
    if "summary_embedding" in data:
        data["summary_embedding"] = deserialize_embedding(data["summary_embedding"])
    for key in ("metadata", "properties"):
        if isinstance(data.get(key), str):
            try:
                data[key] = json.loads(data[key])
            except json.JSONDecodeError:
                logger.warning(f"Invalid JSON in column {key!r}, ignoring")
                data[key] = None
    if "is_active" in data:
        data["is_active"] = bool(data["is_active"])
    return data


def _blob(embedding: Sequence[float] | None) -> bytes | None:
    return serialize_embedding(embedding) if embedding else None


def rank_by_similarity(
    rows: list[dict],
    query: Sequence[float],
    threshold: float,
    limit: int,
) -> list[dict]:
    """Return rows whose embedding similarity to ``query`` exceeds ``threshold``.

    Each returned row gets a ``similarity`` key. Rows whose embedding
    dimension differs from the query are skipped.
    """
    q = np.asarray(query, dtype=np.float32)
    q_norm = float(np.linalg.norm(q))
    if q_norm == 0.0:
        return []

    candidates = [r for r in rows if r.get("embedding") and len(r["embedding"]) == len(q)]
    if not candidates:
        return []

    matrix = np.asarray([r["embedding"] for r in candidates], dtype=np.float32)
    norms = np.linalg.norm(matrix, axis=1) * q_norm
    norms[norms == 0.0] = np.inf
    scores = (matrix @ q) / norms

    ranked = []
    for row, score in zip(candidates, scores.tolist()):
        if score > threshold:
            ranked.append({**row, "similarity": score})
    ranked.sort(key=lambda r: r["similarity"], reverse=True)
    return ranked[:limit]


class SQLiteStore:
    """SQLite storage backend for tiered memory.

    Uses WAL mode for concurrent reads and proper async handling.
    """

    def __init__(self, db_path: str = "./memory/tiered_memory.db"):
        """Initialize SQLite store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None
        logger.info(f"SQLiteStore initialized with db_path: {db_path}")

    async def initialize(self) -> None:
        """Create database tables and indexes if they don't exist."""
        db_dir = Path(self.db_path).parent
        db_dir.mkdir(parents=True, exist_ok=True)

        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row

        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")

        await self._create_tables()
        await self._create_indexes()

        await self._db.commit()
        logger.info("SQLite database initialized successfully")

    async def _create_tables(self) -> None:
        """Create all memory tables."""

        # Sessions (tier-1 summary lives here)
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                user_id TEXT,
                title TEXT,
                summary_text TEXT,
                summary_embedding BLOB,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        # Session messages with compression metadata
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                metadata TEXT,
                compression_level TEXT NOT NULL DEFAULT 'full',
                compressed_content TEXT,
                token_count INTEGER,
                embedding BLOB,
                created_at TEXT NOT NULL
            )
        """)

        # Session-scoped facts (tier 2)
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS session_memory_facts (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                fact_type TEXT NOT NULL,
                key TEXT NOT NULL,
                value TEXT NOT NULL,
                importance REAL DEFAULT 0.5,
                status TEXT NOT NULL DEFAULT 'active',
                embedding BLOB,
                expires_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        # User-scoped facts (tier 3)
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS user_memory (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                fact_type TEXT NOT NULL,
                key TEXT NOT NULL,
                value TEXT NOT NULL,
                importance REAL DEFAULT 0.5,
                status TEXT NOT NULL DEFAULT 'active',
                source_session_id TEXT,
                embedding BLOB,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        # Explicitly saved memories
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS user_memories (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                content TEXT NOT NULL,
                source TEXT DEFAULT 'user'
                    CHECK (source IN ('user', 'chat', 'system')),
                is_active INTEGER DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        # Shared domain knowledge graph nodes (owned by the graph builder)
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS knowledge_graph_nodes (
                id TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                name TEXT NOT NULL,
                properties TEXT,
                importance_score REAL DEFAULT 0.5,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        # Private bridge between a user's context and graph nodes
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS context_references (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                session_id TEXT,
                kg_node_id TEXT NOT NULL,
                memory_fact_id TEXT,
                ref_type TEXT NOT NULL,
                context TEXT,
                importance REAL DEFAULT 0.5,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (kg_node_id) REFERENCES knowledge_graph_nodes(id)
                    ON DELETE CASCADE
            )
        """)

        logger.debug("All tables created successfully")

    async def _create_indexes(self) -> None:
        """Create indexes for performance optimization."""
        statements = [
            "CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id, created_at)",
            "CREATE INDEX IF NOT EXISTS idx_messages_level ON messages(session_id, compression_level)",
            "CREATE INDEX IF NOT EXISTS idx_session_facts_session ON session_memory_facts(session_id)",
            "CREATE INDEX IF NOT EXISTS idx_session_facts_importance ON session_memory_facts(importance DESC)",
            "CREATE INDEX IF NOT EXISTS idx_user_memory_user ON user_memory(user_id)",
            "CREATE INDEX IF NOT EXISTS idx_user_memories_active ON user_memories(user_id, is_active)",
            "CREATE INDEX IF NOT EXISTS idx_kg_nodes_type ON knowledge_graph_nodes(type)",
            "CREATE INDEX IF NOT EXISTS idx_kg_nodes_name ON knowledge_graph_nodes(name)",
            "CREATE INDEX IF NOT EXISTS idx_context_refs_user ON context_references(user_id)",
            "CREATE INDEX IF NOT EXISTS idx_context_refs_node ON context_references(kg_node_id)",
            "CREATE INDEX IF NOT EXISTS idx_context_refs_user_node ON context_references(user_id, kg_node_id)",
        ]
        for statement in statements:
            await self._db.execute(statement)

        logger.debug("All indexes created successfully")

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("SQLite database connection closed")

    async def _fetch_all(self, query: str, params: Sequence[Any] = ()) -> list[dict]:
        if not self._db:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        async with self._db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_dict(row) for row in rows]

    async def _fetch_one(self, query: str, params: Sequence[Any] = ()) -> dict | None:
        rows = await self._fetch_all(query, params)
        return rows[0] if rows else None

    async def _write(self, query: str, params: Sequence[Any] = ()) -> int:
        """Execute a write statement and commit.

        Returns:
            Number of affected rows
        """
        if not self._db:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        cursor = await self._db.execute(query, params)
        await self._db.commit()
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def insert_session(self, session: dict) -> str:
        """Insert a session if it does not exist yet.

        Args:
            session: Dict with ``id`` and optional ``user_id``/``title``

        Returns:
            Session ID
        """
        now = _now()
        await self._write(
            """
            INSERT OR IGNORE INTO sessions (id, user_id, title, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (session["id"], session.get("user_id"), session.get("title"), now, now),
        )
        return session["id"]

    async def get_session(self, session_id: str) -> dict | None:
        return await self._fetch_one(
            """
            SELECT id, user_id, title, summary_text, summary_embedding,
                   created_at, updated_at
            FROM sessions WHERE id = ?
            """,
            (session_id,),
        )

    async def get_session_summary(self, session_id: str) -> str | None:
        row = await self._fetch_one(
            "SELECT summary_text FROM sessions WHERE id = ?", (session_id,)
        )
        return row["summary_text"] if row else None

    async def update_session_summary(
        self,
        session_id: str,
        summary: str,
        embedding: Sequence[float] | None = None,
    ) -> None:
        """Store the running session summary, creating the session row if needed."""
        await self.insert_session({"id": session_id})
        await self._write(
            """
            UPDATE sessions
            SET summary_text = ?,
                summary_embedding = COALESCE(?, summary_embedding),
                updated_at = ?
            WHERE id = ?
            """,
            (summary, _blob(embedding), _now(), session_id),
        )

    async def get_session_titles(self, session_ids: Sequence[str]) -> dict[str, str | None]:
        if not session_ids:
            return {}
        placeholders = ", ".join("?" for _ in session_ids)
        rows = await self._fetch_all(
            f"SELECT id, title FROM sessions WHERE id IN ({placeholders})",
            tuple(session_ids),
        )
        return {row["id"]: row["title"] for row in rows}

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def insert_message(self, message: dict) -> str:
        """Insert a session message at compression level ``full``."""
        await self._write(
            """
            INSERT INTO messages (
                id, session_id, role, content, metadata,
                compression_level, token_count, embedding, created_at
            )
            VALUES (?, ?, ?, ?, ?, 'full', ?, ?, ?)
            """,
            (
                message["id"],
                message["session_id"],
                message["role"],
                message["content"],
                json.dumps(message["metadata"]) if message.get("metadata") else None,
                message.get("token_count"),
                _blob(message.get("embedding")),
                message.get("created_at") or _now(),
            ),
        )
        return message["id"]

    async def get_messages(
        self,
        session_id: str,
        levels: Sequence[str] | None = None,
        newest_first: bool = False,
        limit: int | None = None,
    ) -> list[dict]:
        """Get session messages, optionally filtered by compression level."""
        query = """
            SELECT id, session_id, role, content, metadata, compression_level,
                   compressed_content, token_count, created_at
            FROM messages
            WHERE session_id = ?
        """
        params: list[Any] = [session_id]
        if levels:
            query += f" AND compression_level IN ({', '.join('?' for _ in levels)})"
            params.extend(levels)
        direction = "DESC" if newest_first else "ASC"
        query += f" ORDER BY created_at {direction}, rowid {direction}"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        return await self._fetch_all(query, params)

    async def count_messages(self, session_id: str, level: str | None = None) -> int:
        query = "SELECT COUNT(*) AS n FROM messages WHERE session_id = ?"
        params: list[Any] = [session_id]
        if level:
            query += " AND compression_level = ?"
            params.append(level)
        row = await self._fetch_one(query, params)
        return row["n"] if row else 0

    async def update_message_compression(
        self,
        message_id: str,
        level: str,
        level_rank: int,
        compressed_content: str | None,
        token_count: int,
    ) -> bool:
        """Move a message to a compression level.

        The update only applies when it does not move the message back to a
        lower level.

        Returns:
            True if the row was updated
        """
        updated = await self._write(
            f"""
            UPDATE messages
            SET compression_level = ?, compressed_content = ?, token_count = ?
            WHERE id = ? AND {_LEVEL_RANK_SQL} <= ?
            """,
            (level, compressed_content, token_count, message_id, level_rank),
        )
        return updated > 0

    async def update_message_token_count(self, message_id: str, token_count: int) -> None:
        await self._write(
            "UPDATE messages SET token_count = ? WHERE id = ?",
            (token_count, message_id),
        )

    async def update_message_embedding(
        self, message_id: str, embedding: Sequence[float]
    ) -> None:
        await self._write(
            "UPDATE messages SET embedding = ? WHERE id = ?",
            (_blob(embedding), message_id),
        )

    async def search_similar_messages(
        self,
        session_id: str,
        embedding: Sequence[float],
        threshold: float = 0.7,
        limit: int = 3,
    ) -> list[dict]:
        """Vector search over a session's embedded messages."""
        rows = await self._fetch_all(
            """
            SELECT id, role, content, metadata, embedding, created_at
            FROM messages
            WHERE session_id = ? AND embedding IS NOT NULL
            """,
            (session_id,),
        )
        return rank_by_similarity(rows, embedding, threshold, limit)

    # ------------------------------------------------------------------
    # Session facts
    # ------------------------------------------------------------------

    async def insert_session_fact(self, fact: dict) -> str:
        now = _now()
        await self._write(
            """
            INSERT INTO session_memory_facts (
                id, session_id, fact_type, key, value, importance,
                status, embedding, expires_at, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                fact["id"],
                fact["session_id"],
                fact.get("fact_type", "preference"),
                fact["key"],
                fact["value"],
                fact.get("importance", 0.5),
                fact.get("status", "active"),
                _blob(fact.get("embedding")),
                fact.get("expires_at"),
                fact.get("created_at") or now,
                now,
            ),
        )
        logger.debug(f"Session fact inserted: {fact['id'][:8]}")
        return fact["id"]

    async def get_session_fact(self, fact_id: str) -> dict | None:
        return await self._fetch_one(
            "SELECT * FROM session_memory_facts WHERE id = ?", (fact_id,)
        )

    async def get_session_facts(
        self,
        session_id: str,
        min_importance: float | None = None,
        statuses: Sequence[str] | None = None,
        ids: Sequence[str] | None = None,
        older_than: str | None = None,
        limit: int | None = None,
    ) -> list[dict]:
        """Get session facts ordered by importance (highest first)."""
        query = "SELECT * FROM session_memory_facts WHERE session_id = ?"
        params: list[Any] = [session_id]
        if min_importance is not None:
            query += " AND importance >= ?"
            params.append(min_importance)
        if statuses:
            query += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params.extend(statuses)
        if ids is not None:
            if not ids:
                return []
            query += f" AND id IN ({', '.join('?' for _ in ids)})"
            params.extend(ids)
        if older_than is not None:
            query += " AND created_at < ?"
            params.append(older_than)
        query += " ORDER BY importance DESC, created_at DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        return await self._fetch_all(query, params)

    async def count_session_facts(
        self,
        session_id: str,
        min_importance: float = 0.0,
        status: str | None = None,
    ) -> int:
        query = (
            "SELECT COUNT(*) AS n FROM session_memory_facts "
            "WHERE session_id = ? AND importance >= ?"
        )
        params: list[Any] = [session_id, min_importance]
        if status:
            query += " AND status = ?"
            params.append(status)
        row = await self._fetch_one(query, params)
        return row["n"] if row else 0

    async def update_session_fact(
        self, fact_id: str, updates: dict, session_id: str | None = None
    ) -> bool:
        """Update selected columns of a session fact.

        Args:
            fact_id: Fact to update
            updates: Column values; unknown columns are ignored
            session_id: When given, only a fact of this session is updated

        Returns:
            True if a row was updated
        """
        return await self._update_columns(
            "session_memory_facts", _SESSION_FACT_COLUMNS, fact_id, updates,
            scope=("session_id", session_id) if session_id is not None else None,
        )

    async def search_similar_session_facts(
        self,
        session_id: str,
        embedding: Sequence[float],
        threshold: float = 0.7,
        limit: int = 5,
    ) -> list[dict]:
        rows = await self._fetch_all(
            """
            SELECT * FROM session_memory_facts
            WHERE session_id = ? AND status = 'active' AND embedding IS NOT NULL
            """,
            (session_id,),
        )
        return rank_by_similarity(rows, embedding, threshold, limit)

    # ------------------------------------------------------------------
    # User facts
    # ------------------------------------------------------------------

    async def insert_user_fact(self, fact: dict) -> str:
        now = _now()
        await self._write(
            """
            INSERT INTO user_memory (
                id, user_id, fact_type, key, value, importance, status,
                source_session_id, embedding, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                fact["id"],
                fact["user_id"],
                fact.get("fact_type", "preference"),
                fact["key"],
                fact["value"],
                fact.get("importance", 0.5),
                fact.get("status", "active"),
                fact.get("source_session_id"),
                _blob(fact.get("embedding")),
                now,
                now,
            ),
        )
        logger.debug(f"User fact inserted: {fact['id'][:8]}")
        return fact["id"]

    async def get_user_facts(
        self,
        user_id: str,
        min_importance: float | None = None,
        statuses: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> list[dict]:
        query = "SELECT * FROM user_memory WHERE user_id = ?"
        params: list[Any] = [user_id]
        if min_importance is not None:
            query += " AND importance >= ?"
            params.append(min_importance)
        if statuses:
            query += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params.extend(statuses)
        query += " ORDER BY importance DESC, created_at DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        return await self._fetch_all(query, params)

    async def update_user_fact(
        self, fact_id: str, updates: dict, user_id: str | None = None
    ) -> bool:
        """Update selected columns of a user fact, owned by ``user_id`` if given."""
        return await self._update_columns(
            "user_memory", _USER_FACT_COLUMNS, fact_id, updates,
            scope=("user_id", user_id) if user_id is not None else None,
        )

    async def search_similar_user_facts(
        self,
        user_id: str,
        embedding: Sequence[float],
        threshold: float = 0.7,
        limit: int = 5,
    ) -> list[dict]:
        rows = await self._fetch_all(
            """
            SELECT * FROM user_memory
            WHERE user_id = ? AND status = 'active' AND embedding IS NOT NULL
            """,
            (user_id,),
        )
        return rank_by_similarity(rows, embedding, threshold, limit)

    # ------------------------------------------------------------------
    # Saved memories
    # ------------------------------------------------------------------

    async def insert_saved_memory(self, memory: dict) -> str:
        now = _now()
        await self._write(
            """
            INSERT INTO user_memories (id, user_id, content, source, is_active, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                memory["id"],
                memory["user_id"],
                memory["content"],
                memory.get("source", "user"),
                1 if memory.get("is_active", True) else 0,
                now,
                now,
            ),
        )
        return memory["id"]

    async def get_saved_memories(
        self,
        user_id: str,
        active_only: bool = True,
        limit: int | None = None,
    ) -> list[dict]:
        query = "SELECT * FROM user_memories WHERE user_id = ?"
        params: list[Any] = [user_id]
        if active_only:
            query += " AND is_active = 1"
        query += " ORDER BY created_at DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        return await self._fetch_all(query, params)

    async def update_saved_memory(self, memory_id: str, user_id: str, updates: dict) -> bool:
        """Update a saved memory owned by ``user_id``."""
        updates = {k: v for k, v in updates.items() if k in _SAVED_MEMORY_COLUMNS}
        if not updates:
            return False
        if "is_active" in updates:
            updates["is_active"] = 1 if updates["is_active"] else 0
        assignments = ", ".join(f"{col} = ?" for col in updates)
        count = await self._write(
            f"UPDATE user_memories SET {assignments}, updated_at = ? WHERE id = ? AND user_id = ?",
            (*updates.values(), _now(), memory_id, user_id),
        )
        return count > 0

    # ------------------------------------------------------------------
    # Knowledge graph nodes
    # ------------------------------------------------------------------

    async def upsert_kg_node(self, node: dict) -> str:
        """Insert or update a knowledge-graph node."""
        now = _now()
        await self._write(
            """
            INSERT INTO knowledge_graph_nodes (
                id, type, name, properties, importance_score, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                type = excluded.type,
                name = excluded.name,
                properties = excluded.properties,
                importance_score = excluded.importance_score,
                updated_at = excluded.updated_at
            """,
            (
                node["id"],
                node["type"],
                node["name"],
                json.dumps(node.get("properties") or {}),
                node.get("importance_score", 0.5),
                now,
                now,
            ),
        )
        return node["id"]

    async def get_kg_node(self, node_id: str) -> dict | None:
        return await self._fetch_one(
            "SELECT id, type, name, properties FROM knowledge_graph_nodes WHERE id = ?",
            (node_id,),
        )

    async def find_kg_nodes(
        self,
        name_contains: str | None = None,
        type_equals: str | None = None,
        type_contains: str | None = None,
        limit: int = 10,
    ) -> list[dict]:
        """Find graph nodes by case-insensitive name/type match (OR-combined)."""
        clauses: list[str] = []
        params: list[Any] = []
        if name_contains:
            clauses.append("name LIKE ? ESCAPE '\\'")
            params.append(f"%{_escape_like(name_contains)}%")
        if type_equals:
            clauses.append("type = ?")
            params.append(type_equals)
        if type_contains:
            clauses.append("type LIKE ? ESCAPE '\\'")
            params.append(f"%{_escape_like(type_contains)}%")
        if not clauses:
            return []
        params.append(limit)
        return await self._fetch_all(
            f"""
            SELECT id, type, name, properties FROM knowledge_graph_nodes
            WHERE {' OR '.join(clauses)}
            ORDER BY importance_score DESC, name ASC
            LIMIT ?
            """,
            params,
        )

    # ------------------------------------------------------------------
    # Context references (always user-scoped)
    # ------------------------------------------------------------------

    async def find_context_reference(
        self,
        user_id: str,
        kg_node_id: str,
        session_id: str | None = None,
    ) -> dict | None:
        query = "SELECT * FROM context_references WHERE user_id = ? AND kg_node_id = ?"
        params: list[Any] = [user_id, kg_node_id]
        if session_id:
            query += " AND session_id = ?"
            params.append(session_id)
        query += " ORDER BY created_at ASC LIMIT 1"
        return await self._fetch_one(query, params)

    async def insert_context_reference(self, ref: dict) -> str:
        now = _now()
        await self._write(
            """
            INSERT INTO context_references (
                id, user_id, session_id, kg_node_id, memory_fact_id,
                ref_type, context, importance, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                ref["id"],
                ref["user_id"],
                ref.get("session_id"),
                ref["kg_node_id"],
                ref.get("memory_fact_id"),
                ref["ref_type"],
                ref.get("context"),
                ref.get("importance", 0.5),
                now,
                now,
            ),
        )
        return ref["id"]

    async def update_context_reference(
        self,
        ref_id: str,
        user_id: str,
        importance: float,
        ref_type: str | None = None,
        context: str | None = None,
        memory_fact_id: str | None = None,
    ) -> None:
        await self._write(
            """
            UPDATE context_references
            SET importance = ?,
                ref_type = COALESCE(?, ref_type),
                context = COALESCE(?, context),
                memory_fact_id = COALESCE(?, memory_fact_id),
                updated_at = ?
            WHERE id = ? AND user_id = ?
            """,
            (importance, ref_type, context, memory_fact_id, _now(), ref_id, user_id),
        )

    async def get_context_references(
        self,
        user_id: str,
        kg_node_id: str | None = None,
        limit: int | None = None,
    ) -> list[dict]:
        """Get one user's references joined with node name/type, newest first."""
        query = """
            SELECT cr.id, cr.user_id, cr.session_id, cr.kg_node_id, cr.memory_fact_id,
                   cr.ref_type, cr.context, cr.importance, cr.created_at, cr.updated_at,
                   kg.name AS entity_name, kg.type AS entity_type
            FROM context_references cr
            LEFT JOIN knowledge_graph_nodes kg ON cr.kg_node_id = kg.id
            WHERE cr.user_id = ?
        """
        params: list[Any] = [user_id]
        if kg_node_id:
            query += " AND cr.kg_node_id = ?"
            params.append(kg_node_id)
        query += " ORDER BY cr.created_at DESC, cr.rowid DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        return await self._fetch_all(query, params)

    async def get_top_entities(self, user_id: str, limit: int = 10) -> list[dict]:
        return await self._fetch_all(
            """
            SELECT kg.id AS entity_id, kg.name AS entity_name, kg.type AS entity_type,
                   COUNT(cr.id) AS mention_count, MAX(cr.created_at) AS last_mentioned
            FROM context_references cr
            JOIN knowledge_graph_nodes kg ON cr.kg_node_id = kg.id
            WHERE cr.user_id = ?
            GROUP BY kg.id, kg.name, kg.type
            ORDER BY mention_count DESC, last_mentioned DESC
            LIMIT ?
            """,
            (user_id, limit),
        )

    async def delete_user_context_references(self, user_id: str) -> int:
        """Hard-delete every reference owned by ``user_id``."""
        return await self._write(
            "DELETE FROM context_references WHERE user_id = ?", (user_id,)
        )

    # ------------------------------------------------------------------
    # Cross-user aggregates (callers must authorize)
    # ------------------------------------------------------------------

    async def get_users_for_entity(self, kg_node_id: str) -> list[dict]:
        return await self._fetch_all(
            """
            SELECT user_id, COUNT(*) AS mention_count, MAX(created_at) AS last_mentioned,
                   GROUP_CONCAT(DISTINCT ref_type) AS ref_types
            FROM context_references
            WHERE kg_node_id = ?
            GROUP BY user_id
            ORDER BY mention_count DESC, last_mentioned DESC
            """,
            (kg_node_id,),
        )

    async def get_shared_entities(self, min_users: int = 2, limit: int = 50) -> list[dict]:
        return await self._fetch_all(
            """
            SELECT kg.id AS entity_id, kg.name AS entity_name, kg.type AS entity_type,
                   COUNT(DISTINCT cr.user_id) AS user_count,
                   COUNT(cr.id) AS total_mentions,
                   MAX(cr.created_at) AS last_activity
            FROM context_references cr
            JOIN knowledge_graph_nodes kg ON cr.kg_node_id = kg.id
            GROUP BY kg.id, kg.name, kg.type
            HAVING COUNT(DISTINCT cr.user_id) >= ?
            ORDER BY user_count DESC, total_mentions DESC
            LIMIT ?
            """,
            (min_users, limit),
        )

    async def get_collaboration_opportunities(self, user_id: str, limit: int = 20) -> list[dict]:
        return await self._fetch_all(
            """
            SELECT kg.id AS entity_id, kg.name AS entity_name, kg.type AS entity_type,
                   COUNT(DISTINCT cr.user_id) - 1 AS other_user_count,
                   SUM(CASE WHEN cr.user_id = ? THEN 1 ELSE 0 END) AS user_mention_count
            FROM context_references cr
            JOIN knowledge_graph_nodes kg ON cr.kg_node_id = kg.id
            WHERE cr.kg_node_id IN (
                SELECT DISTINCT kg_node_id FROM context_references WHERE user_id = ?
            )
            GROUP BY kg.id, kg.name, kg.type
            HAVING COUNT(DISTINCT cr.user_id) > 1
            ORDER BY other_user_count DESC
            LIMIT ?
            """,
            (user_id, user_id, limit),
        )

    async def get_entity_reference_stats(self, kg_node_id: str) -> dict:
        row = await self._fetch_one(
            """
            SELECT COUNT(DISTINCT user_id) AS total_users, COUNT(*) AS total_mentions,
                   MIN(created_at) AS first_mentioned, MAX(created_at) AS last_mentioned
            FROM context_references
            WHERE kg_node_id = ?
            """,
            (kg_node_id,),
        )
        return row or {}

    async def get_entity_user_breakdown(self, kg_node_id: str) -> list[dict]:
        return await self._fetch_all(
            """
            SELECT user_id, COUNT(*) AS mention_count, MAX(created_at) AS last_active
            FROM context_references
            WHERE kg_node_id = ?
            GROUP BY user_id
            ORDER BY mention_count DESC
            """,
            (kg_node_id,),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _update_columns(
        self,
        table: str,
        allowed: set[str],
        row_id: str,
        updates: dict,
        scope: tuple[str, str] | None = None,
    ) -> bool:
        updates = {k: v for k, v in updates.items() if k in allowed}
        if not updates:
            return False
        if "embedding" in updates:
            updates["embedding"] = _blob(updates["embedding"])
        assignments = ", ".join(f"{col} = ?" for col in updates)
        query = f"UPDATE {table} SET {assignments}, updated_at = ? WHERE id = ?"
        params: list[Any] = [*updates.values(), _now(), row_id]
        if scope is not None:
            query += f" AND {scope[0]} = ?"
            params.append(scope[1])
        count = await self._write(query, params)
        return count > 0
