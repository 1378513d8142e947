"""Tiered conversational memory.

Four tiers of memory around every chat turn:
- Tier 1: Working context (recent turns + session summary)
- Tier 2: Session memory (relevant past turns + session facts)
- Tier 3: Long-term memory (user facts + saved memories)
- Tier 4: Context graph (private links into a shared knowledge graph)
"""

from .compression import CompressionEngine, format_compressed_context
from .config import (
    ExtractionMode,
    MemoryConfig,
    MemorySystemConfig,
    load_config,
)
from .context_graph import CROSS_USER_SCOPE, ContextGraphService
from .controller import MemoryController
from .embedding import EmbeddingCache, SentenceTransformerEmbedder
from .exceptions import (
    AuthorizationError,
    DimensionMismatchError,
    EmptyInputError,
    MemorySystemError,
    MissingUserError,
    ProviderTimeoutError,
)
from .extraction import MemoryWriter
from .memory_service import (
    MemoryService,
    MemoryServiceInterface,
    format_memory_context,
)
from .models import (
    AccessContext,
    ChatMessage,
    CompressedContext,
    ContextBudget,
    MemoryContext,
    MemoryFact,
    MemoryItem,
    UpdateResult,
)
from .providers import ChatProvider, EmbeddingProvider, EntityResolver, StreamingChatAdapter
from .storage import SQLiteStore
from .tasks import BackgroundTaskQueue
from .token_budget import TokenBudgetManager

__all__ = [
    "AccessContext",
    "AuthorizationError",
    "BackgroundTaskQueue",
    "CROSS_USER_SCOPE",
    "ChatMessage",
    "ChatProvider",
    "CompressedContext",
    "CompressionEngine",
    "ContextBudget",
    "ContextGraphService",
    "DimensionMismatchError",
    "EmbeddingCache",
    "EmbeddingProvider",
    "EmptyInputError",
    "EntityResolver",
    "ExtractionMode",
    "MemoryConfig",
    "MemoryContext",
    "MemoryController",
    "MemoryFact",
    "MemoryItem",
    "MemoryService",
    "MemoryServiceInterface",
    "MemorySystemConfig",
    "MemorySystemError",
    "MemoryWriter",
    "MissingUserError",
    "ProviderTimeoutError",
    "SQLiteStore",
    "SentenceTransformerEmbedder",
    "StreamingChatAdapter",
    "TokenBudgetManager",
    "UpdateResult",
    "format_compressed_context",
    "format_memory_context",
    "load_config",
]
