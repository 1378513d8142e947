"""Tiered memory core data models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid4())


def clamp_importance(value: Any, default: float = 0.5) -> float:
    """Coerce an importance value onto the internal 0-1 scale."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return max(0.0, min(1.0, float(value)))


class CompressionLevel(str, Enum):
    FULL = "full"
    COMPRESSED = "compressed"
    ARCHIVED = "archived"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]


_LEVEL_RANK = {
    CompressionLevel.FULL: 0,
    CompressionLevel.COMPRESSED: 1,
    CompressionLevel.ARCHIVED: 2,
}


class FactType(str, Enum):
    PREFERENCE = "preference"  # format, style
    CONSTRAINT = "constraint"  # e.g. "looking at Texas"
    CONTEXT = "context"
    TOPIC = "topic"
    EXPERTISE = "expertise"
    GOAL = "goal"


class MemoryType(str, Enum):
    WORKING = "working"
    EPISODIC = "episodic"
    SEMANTIC = "semantic"
    PROCEDURAL = "procedural"


class FactStatus(str, Enum):
    ACTIVE = "active"
    FORGOTTEN = "forgotten"
    CONSOLIDATED = "consolidated"


class ContextRefType(str, Enum):
    DISCUSSED = "discussed"
    QUERIED = "queried"
    MENTIONED = "mentioned"
    INTERESTED_IN = "interested_in"
    ANALYZED = "analyzed"


class ChatMessage(BaseModel):
    """A single conversation message as seen by the chat handler."""

    role: str  # "user", "assistant", "system"
    content: str
    timestamp: str | None = None


class StoredMessage(BaseModel):
    """A persisted session message with compression metadata."""

    id: str = Field(default_factory=_uuid)
    session_id: str
    role: str
    content: str
    compression_level: CompressionLevel = CompressionLevel.FULL
    compressed_content: str | None = None
    token_count: int | None = None
    metadata: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class MemoryFact(BaseModel):
    """A session- or user-scoped fact.

    ``importance`` is always on the internal 0-1 scale.
    """

    id: str | None = None
    type: str = FactType.PREFERENCE.value
    key: str
    value: str
    importance: float = 0.5
    status: FactStatus = FactStatus.ACTIVE
    source: str | None = None
    embedding: list[float] | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    expires_at: datetime | None = None

    @field_validator("importance", mode="before")
    @classmethod
    def _clamp_importance(cls, value: Any) -> float:
        return clamp_importance(value)

    @field_validator("key", "value", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> str:
        return "" if value is None else str(value)


class SavedMemory(BaseModel):
    """A memory the user explicitly asked to keep (never decays)."""

    id: str = Field(default_factory=_uuid)
    user_id: str
    content: str
    source: str = "user"  # "user", "chat", "system"
    is_active: bool = True
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class ContextBudget(BaseModel):
    """Token budget split into non-overlapping sub-budgets."""

    total: int
    full_messages: int
    compressed_messages: int
    session_summary: int
    reserved: int


class TokenBreakdown(BaseModel):
    full: int = 0
    compressed: int = 0
    summary: int = 0


class CompressedContext(BaseModel):
    """Result of windowed context assembly."""

    full_messages: list[ChatMessage] = Field(default_factory=list)
    compressed_messages: list[ChatMessage] = Field(default_factory=list)
    summary: str = ""
    tokens_used: int = 0
    breakdown: TokenBreakdown = Field(default_factory=TokenBreakdown)


class MemoryContext(BaseModel):
    """Four-tier memory context for a single turn."""

    # Tier 1: working context
    summary: str
    recent_turns: list[ChatMessage] = Field(default_factory=list)
    # Tier 2: session memory
    relevant_past_turns: list[ChatMessage] = Field(default_factory=list)
    session_facts: list[MemoryFact] = Field(default_factory=list)
    # Tier 3: long-term memory
    user_profile_facts: list[MemoryFact] = Field(default_factory=list)


class MemoryWriterOutput(BaseModel):
    """Facts extracted from one conversation turn."""

    session_facts: list[MemoryFact] = Field(default_factory=list)
    user_facts: list[MemoryFact] = Field(default_factory=list)
    summary: str | None = None


class UpdateResult(BaseModel):
    """Counts reported by MemoryService.update_after_turn."""

    session_facts_saved: int = 0
    user_facts_saved: int = 0
    summary_updated: bool = False


class MemoryItem(BaseModel):
    """A fact as exposed by MemoryController.

    ``importance`` is on the public 0-10 scale.
    """

    id: str
    type: str = MemoryType.EPISODIC.value
    content: str
    key: str | None = None
    importance: float
    entities: list[str] = Field(default_factory=list)
    status: FactStatus = FactStatus.ACTIVE
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    expires_at: datetime | None = None
    embedding: list[float] | None = None
    source: str = "extraction"  # "extraction", "consolidation", "user", "system"


class MemorySearchResult(BaseModel):
    items: list[MemoryItem] = Field(default_factory=list)
    relevance_scores: dict[str, float] = Field(default_factory=dict)
    search_time_ms: float = 0.0


class ConsolidationResult(BaseModel):
    original_count: int
    consolidated_count: int
    summary: str
    compression_ratio: float


class EntityFact(BaseModel):
    content: str
    source: str
    confidence: float = 0.8
    timestamp: datetime = Field(default_factory=_utcnow)


class EntityRelationship(BaseModel):
    relation_type: str
    target_entity: str
    evidence: str = ""


class EntityKnowledge(BaseModel):
    """Process-local entity cache entry; never a source of truth."""

    id: str = Field(default_factory=lambda: f"entity_{uuid4().hex[:12]}")
    type: str = "other"
    name: str
    aliases: list[str] = Field(default_factory=list)
    facts: list[EntityFact] = Field(default_factory=list)
    relationships: list[EntityRelationship] = Field(default_factory=list)
    last_mentioned: datetime = Field(default_factory=_utcnow)


class ContextReference(BaseModel):
    """A private link from one user's context to a knowledge-graph node."""

    id: str
    user_id: str
    session_id: str | None = None
    kg_node_id: str
    memory_fact_id: str | None = None
    ref_type: ContextRefType
    context: str | None = None
    importance: float = 0.5
    created_at: datetime | None = None
    updated_at: datetime | None = None
    entity_name: str | None = None
    entity_type: str | None = None


class GraphEntity(BaseModel):
    id: str
    name: str
    type: str
    properties: dict[str, Any] = Field(default_factory=dict)


class DiscussionReference(BaseModel):
    session_title: str
    context: str
    ref_type: str
    when: datetime | None = None


class CrossGraphResult(BaseModel):
    """Answer to "what did I discuss about X" for one graph node."""

    entity: GraphEntity
    references: list[DiscussionReference] = Field(default_factory=list)
    total_mentions: int = 0


class ResolvedEntity(BaseModel):
    """Entity returned by the external entity resolver."""

    name: str
    type: str | None = None
    confidence: float = 0.5


class AccessContext(BaseModel):
    """Authorization context of the caller of cross-user analytics."""

    principal_id: str
    scopes: set[str] = Field(default_factory=set)

    def has_scope(self, scope: str) -> bool:
        return scope in self.scopes
