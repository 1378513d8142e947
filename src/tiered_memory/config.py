"""Tiered memory configuration models."""

from __future__ import annotations

import os
import re
from enum import Enum
from pathlib import Path

import yaml
from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, Field, model_validator


class ExtractionMode(str, Enum):
    CONSERVATIVE = "conservative"
    BALANCED = "balanced"
    AGGRESSIVE = "aggressive"


# Minimum importance (0-1) an extracted fact needs to be persisted
EXTRACTION_THRESHOLDS: dict[ExtractionMode, float] = {
    ExtractionMode.CONSERVATIVE: 0.8,
    ExtractionMode.BALANCED: 0.5,
    ExtractionMode.AGGRESSIVE: 0.3,
}


class MemoryConfig(BaseModel):
    """Per-user memory preferences, passed with every turn."""

    memory_enabled: bool = True  # Master toggle
    reference_saved_memories: bool = True
    reference_chat_history: bool = True
    auto_save_memories: bool = False
    memory_extraction_mode: ExtractionMode = ExtractionMode.BALANCED
    max_memories_in_context: int = Field(default=10, ge=0)
    include_session_summaries: bool = False


class StorageConfig(BaseModel):
    """Storage paths configuration."""

    sqlite_db_path: str = "./memory/tiered_memory.db"

    @model_validator(mode="after")
    def _validate_paths(self) -> "StorageConfig":
        normalized = os.path.normpath(self.sqlite_db_path)
        parts = normalized.replace("\\", "/").split("/")
        if ".." in parts:
            raise ValueError(
                f"sqlite_db_path must not contain '..' components: "
                f"{self.sqlite_db_path!r}"
            )
        self.sqlite_db_path = normalized
        return self


class EmbeddingConfig(BaseModel):
    """Embedding model and cache configuration."""

    model: str = "nomic-ai/nomic-embed-text-v2-moe"
    dimension: int = 768
    max_input_length: int = 8000  # characters, applied before the provider call
    cache_ttl_seconds: int = 300
    cache_max_size: int = 1000
    trust_remote_code: bool = False


class TokenConfig(BaseModel):
    """Token counting configuration."""

    model: str = "gpt-4"
    cache_max_size: int = 1000
    cache_evict_count: int = 100


class CompressionConfig(BaseModel):
    """Sliding-window compression configuration."""

    batch_size: int = 6  # ~3 user/assistant turns
    keep_full_count: int = 10
    compress_threshold: int = 20
    compression_ratio: float = 0.5  # summary must be below this share to count as "compressed"
    max_chars_per_message: int = 500
    summary_source_limit: int = 20
    summary_refresh_limit: int = 50
    min_compressed_room: int = 50


class ControllerConfig(BaseModel):
    """Self-editing memory operation configuration."""

    consolidation_trigger_count: int = 20
    consolidation_min_importance: float = 0.3
    consolidation_age_seconds: int = 3600
    consolidated_importance: float = 8.0  # public 0-10 scale
    forgotten_importance: float = 0.01
    promote_limit: int = 10
    entity_cache_ttl_seconds: int = 3600
    entity_cache_max_size: int = 500
    entity_max_facts: int = Field(default=20, ge=1)


class ContextGraphConfig(BaseModel):
    """Knowledge graph bridge configuration."""

    stopwords: list[str] = Field(
        default_factory=lambda: [
            "what", "where", "when", "which", "have", "does", "many",
            "much", "this", "that", "with", "from", "about",
        ]
    )
    max_direct_words: int = 10
    min_word_length: int = 4
    direct_match_importance: float = 0.3
    resolver_match_limit: int = 5
    direct_match_limit: int = 2
    context_snippet_chars: int = 200


class TimeoutConfig(BaseModel):
    """Timeouts (seconds) applied to every external call."""

    llm_seconds: float = 30.0
    embedding_seconds: float = 10.0
    resolver_seconds: float = 5.0


class BackgroundConfig(BaseModel):
    """Background side-effect queue configuration."""

    workers: int = 2
    max_queue_size: int = 100
    max_retries: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0


class MemorySystemConfig(BaseModel):
    """Top-level tiered memory configuration."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    tokens: TokenConfig = Field(default_factory=TokenConfig)
    compression: CompressionConfig = Field(default_factory=CompressionConfig)
    controller: ControllerConfig = Field(default_factory=ControllerConfig)
    context_graph: ContextGraphConfig = Field(default_factory=ContextGraphConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    background: BackgroundConfig = Field(default_factory=BackgroundConfig)
    defaults: MemoryConfig = Field(default_factory=MemoryConfig)


_ENV_PATTERN = re.compile(r"\$\{(\w+)\}")


def load_config(config_path: str | Path) -> MemorySystemConfig:
    """Load a MemorySystemConfig from a YAML file.

    ``${VAR}`` placeholders are replaced with environment variables (after
    loading ``.env``); unknown variables are left untouched.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Validated MemorySystemConfig.

    Raises:
        FileNotFoundError: If the configuration file is not found.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    load_dotenv()
    content = path.read_text(encoding="utf-8")

    def replacer(match: re.Match) -> str:
        return os.getenv(match.group(1), match.group(0))

    content = _ENV_PATTERN.sub(replacer, content)

    try:
        data = yaml.safe_load(content) or {}
    except yaml.YAMLError as e:
        logger.critical(f"Error parsing YAML file: {e}")
        raise

    # Allow the settings to live under a top-level "memory" key
    if isinstance(data, dict) and "memory" in data:
        data = data["memory"]

    config = MemorySystemConfig.model_validate(data)
    logger.debug(f"Loaded memory config from {path}")
    return config
