"""Bridge between a user's conversational context and the domain knowledge graph.

Each user's context references are private: every instance method is
scoped to the user the service was created for. Graph nodes themselves
are shared and owned by an external graph builder.

Cross-user analytics are exposed as static methods that require an
``AccessContext`` carrying the ``memory:cross_user`` scope.
"""

from __future__ import annotations

from typing import Any

from loguru import logger

from .config import ContextGraphConfig, TimeoutConfig
from .exceptions import AuthorizationError, MissingUserError
from .models import (
    AccessContext,
    ContextReference,
    ContextRefType,
    CrossGraphResult,
    DiscussionReference,
    GraphEntity,
    ResolvedEntity,
    _uuid,
)
from .providers import EntityResolver, call_with_timeout
from .storage import SQLiteStore

CROSS_USER_SCOPE = "memory:cross_user"

MAX_CONTEXT_CHARS = 500

_WORD_PUNCTUATION = ".,;:!?\"'()[]{}"


def require_cross_user_access(access: AccessContext | None, operation: str) -> None:
    """Raise unless ``access`` grants the cross-user scope.

    Raises:
        AuthorizationError: If no context is given or the scope is missing
    """
    if not isinstance(access, AccessContext):
        logger.warning(f"Rejected cross-user query '{operation}': no access context")
        raise AuthorizationError(operation)
    if not access.has_scope(CROSS_USER_SCOPE):
        logger.warning(
            f"Rejected cross-user query '{operation}' for principal {access.principal_id[:8]}"
        )
        raise AuthorizationError(operation, access.principal_id)


class ContextGraphService:
    """User-scoped links from conversations to knowledge-graph nodes."""

    def __init__(
        self,
        user_id: str,
        store: SQLiteStore,
        resolver: EntityResolver | None = None,
        config: ContextGraphConfig | None = None,
        timeouts: TimeoutConfig | None = None,
    ):
        """Initialize the service for one user.

        Args:
            user_id: Owner of every reference read or written
            store: Reference and graph-node storage
            resolver: Optional entity resolver; without it only direct
                name matching is used
            config: Linking configuration
            timeouts: Timeouts for resolver calls

        Raises:
            MissingUserError: If ``user_id`` is empty
        """
        if not user_id:
            raise MissingUserError("context graph")
        self.user_id = user_id
        self._store = store
        self._resolver = resolver
        self._config = config or ContextGraphConfig()
        self._timeouts = timeouts or TimeoutConfig()
        self._stopwords = {w.lower() for w in self._config.stopwords}

    async def link_to_entity(
        self,
        kg_node_id: str,
        ref_type: ContextRefType | str,
        session_id: str | None = None,
        memory_fact_id: str | None = None,
        context: str | None = None,
        importance: float = 0.5,
    ) -> str | None:
        """Create or strengthen a reference from this user to a graph node.

        An existing reference (same user and node, and same session when
        given) is updated instead of duplicated. Its importance only grows;
        its type and context are replaced only by an equally or more
        important mention.

        Returns:
            Reference id, or None if the node does not exist or storage failed
        """
        ref_type = ContextRefType(ref_type)
        if context is not None:
            context = context[:MAX_CONTEXT_CHARS]

        try:
            node = await self._store.get_kg_node(kg_node_id)
            if node is None:
                logger.warning(f"KG node not found: {kg_node_id}")
                return None

            existing = await self._store.find_context_reference(
                self.user_id, kg_node_id, session_id
            )
            if existing:
                stronger = importance >= (existing["importance"] or 0.0)
                await self._store.update_context_reference(
                    existing["id"],
                    self.user_id,
                    importance=max(existing["importance"] or 0.0, importance),
                    ref_type=ref_type.value if stronger else None,
                    context=context if stronger else None,
                    memory_fact_id=memory_fact_id,
                )
                return existing["id"]

            return await self._store.insert_context_reference({
                "id": _uuid(),
                "user_id": self.user_id,
                "session_id": session_id,
                "kg_node_id": kg_node_id,
                "memory_fact_id": memory_fact_id,
                "ref_type": ref_type.value,
                "context": context,
                "importance": importance,
            })
        except Exception as e:
            logger.error(f"Failed to link entity {kg_node_id}: {e}")
            return None

    async def auto_link_entities(
        self,
        text: str,
        session_id: str | None,
        ref_type: ContextRefType | str,
        memory_fact_id: str | None = None,
    ) -> int:
        """Detect graph entities mentioned in ``text`` and link them.

        Resolver matches are linked with the resolver's confidence. Direct
        word matches are linked as ``mentioned`` with low importance.

        Returns:
            Number of distinct nodes linked
        """
        if not text or not text.strip():
            return 0

        snippet = text[: self._config.context_snippet_chars]
        linked: set[str] = set()

        for entity in await self._resolve(text):
            nodes = await self._store.find_kg_nodes(
                name_contains=entity.name,
                type_equals=entity.name.lower(),
                limit=self._config.resolver_match_limit,
            )
            for node in nodes:
                link_id = await self.link_to_entity(
                    node["id"],
                    ref_type,
                    session_id=session_id,
                    memory_fact_id=memory_fact_id,
                    context=snippet,
                    importance=entity.confidence,
                )
                if link_id:
                    linked.add(node["id"])

        words = [w.strip(_WORD_PUNCTUATION) for w in text.split()]
        words = [w for w in words if len(w) >= self._config.min_word_length]
        for word in words[: self._config.max_direct_words]:
            if word.lower() in self._stopwords:
                continue
            nodes = await self._store.find_kg_nodes(
                name_contains=word, limit=self._config.direct_match_limit
            )
            for node in nodes:
                if node["id"] in linked:
                    continue
                link_id = await self.link_to_entity(
                    node["id"],
                    ContextRefType.MENTIONED,
                    session_id=session_id,
                    context=snippet,
                    importance=self._config.direct_match_importance,
                )
                if link_id:
                    linked.add(node["id"])

        logger.debug(f"Auto-linked {len(linked)} entities from text")
        return len(linked)

    async def _resolve(self, text: str) -> list[ResolvedEntity]:
        if self._resolver is None:
            return []
        try:
            return await call_with_timeout(
                self._resolver.extract_entities(text),
                self._timeouts.resolver_seconds,
                "entity_resolver",
            )
        except Exception as e:
            logger.warning(f"Entity resolver failed, using direct matching only: {e}")
            return []

    async def what_did_i_discuss_about(self, name_or_type: str) -> list[CrossGraphResult]:
        """Answer "what did I discuss about X" from this user's references only."""
        logger.debug(f"Cross-graph query for {name_or_type!r}")
        try:
            nodes = await self._store.find_kg_nodes(
                name_contains=name_or_type, type_contains=name_or_type, limit=10
            )
            results: list[CrossGraphResult] = []
            for node in nodes:
                refs = await self._store.get_context_references(
                    self.user_id, kg_node_id=node["id"], limit=20
                )
                if not refs:
                    continue

                session_ids = list({r["session_id"] for r in refs if r["session_id"]})
                titles = await self._store.get_session_titles(session_ids)

                results.append(CrossGraphResult(
                    entity=GraphEntity(
                        id=node["id"],
                        name=node["name"],
                        type=node["type"],
                        properties=node.get("properties") or {},
                    ),
                    references=[
                        DiscussionReference(
                            session_title=_session_title(r["session_id"], titles),
                            context=r["context"] or "",
                            ref_type=r["ref_type"],
                            when=r["created_at"],
                        )
                        for r in refs
                    ],
                    total_mentions=len(refs),
                ))
            return results
        except Exception as e:
            logger.error(f"Cross-graph query failed: {e}")
            return []

    async def get_context_references(self, limit: int | None = None) -> list[ContextReference]:
        rows = await self._store.get_context_references(self.user_id, limit=limit)
        return [ContextReference(**row) for row in rows]

    async def get_recent_references(self, limit: int = 20) -> list[ContextReference]:
        try:
            return await self.get_context_references(limit=limit)
        except Exception as e:
            logger.error(f"Failed to get recent references: {e}")
            return []

    async def get_top_entities(self, limit: int = 10) -> list[dict[str, Any]]:
        """Entities this user mentions most, with count and last mention."""
        try:
            return await self._store.get_top_entities(self.user_id, limit)
        except Exception as e:
            logger.error(f"Failed to get top entities: {e}")
            return []

    async def clear_user_context(self) -> int:
        """Hard-delete every reference owned by this user.

        Returns:
            Number of references removed
        """
        count = await self._store.delete_user_context_references(self.user_id)
        logger.info(f"Cleared {count} context references for user {self.user_id[:8]}")
        return count

    # ------------------------------------------------------------------
    # Cross-user analytics (requires memory:cross_user)
    # ------------------------------------------------------------------

    @staticmethod
    async def get_users_discussing_entity(
        store: SQLiteStore, access: AccessContext | None, kg_node_id: str
    ) -> list[dict[str, Any]]:
        """All users who referenced a node, most active first."""
        require_cross_user_access(access, "get_users_discussing_entity")
        rows = await store.get_users_for_entity(kg_node_id)
        for row in rows:
            row["ref_types"] = sorted(set((row.get("ref_types") or "").split(",")) - {""})
        return rows

    @staticmethod
    async def get_shared_entities(
        store: SQLiteStore, access: AccessContext | None, min_users: int = 2
    ) -> list[dict[str, Any]]:
        """Nodes referenced by at least ``min_users`` distinct users."""
        require_cross_user_access(access, "get_shared_entities")
        return await store.get_shared_entities(min_users=min_users, limit=50)

    @staticmethod
    async def get_collaboration_opportunities(
        store: SQLiteStore, access: AccessContext | None, user_id: str
    ) -> list[dict[str, Any]]:
        """Nodes ``user_id`` referenced that other users referenced too."""
        require_cross_user_access(access, "get_collaboration_opportunities")
        return await store.get_collaboration_opportunities(user_id, limit=20)

    @staticmethod
    async def get_entity_discussion_details(
        store: SQLiteStore,
        access: AccessContext | None,
        kg_node_id: str,
        include_user_details: bool = False,
    ) -> dict[str, Any]:
        """Aggregate discussion stats for a node, optionally per user."""
        require_cross_user_access(access, "get_entity_discussion_details")
        node = await store.get_kg_node(kg_node_id)
        stats = await store.get_entity_reference_stats(kg_node_id)
        users = await store.get_entity_user_breakdown(kg_node_id) if include_user_details else []
        return {
            "entity": (
                {"id": node["id"], "name": node["name"], "type": node["type"]}
                if node else None
            ),
            "stats": {
                "total_users": stats.get("total_users") or 0,
                "total_mentions": stats.get("total_mentions") or 0,
                "first_mentioned": stats.get("first_mentioned"),
                "last_mentioned": stats.get("last_mentioned"),
            },
            "users": users,
        }


def _session_title(session_id: str | None, titles: dict[str, str | None]) -> str:
    if not session_id or session_id not in titles:
        return "Unknown"
    return titles[session_id] or "Untitled"
