"""Storage backends for tiered memory.

This package provides the persistent store used by every memory tier.
"""

from __future__ import annotations

from .sqlite_store import SQLiteStore, rank_by_similarity

__all__ = ["SQLiteStore", "rank_by_similarity"]
