"""Application configuration dataclasses.

Frozen dataclasses with sensible defaults for each subsystem.  Values are
overridden at construction time; only ``MemorySettings.from_env`` looks at
the process environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class StoreConfig:
    """Connection settings for the Redis-backed owner stores."""

    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "recallmcp"


@dataclass(frozen=True)
class EmbeddingConfig:
    """Embedding provider settings."""

    provider: str = "hashing"
    model: str = "text-embedding-3-small"
    api_key: str | None = None
    base_url: str = "https://api.openai.com/v1"
    dimension: int = 512
    timeout_seconds: float = 30.0


@dataclass(frozen=True)
class LLMConfig:
    """LLM provider settings used by the proposal engine."""

    provider: str = "openai"
    model: str = "gpt-4"
    api_key: str | None = None
    base_url: str = "https://api.openai.com/v1"
    temperature: float = 0.2
    max_tokens: int = 4096
    timeout_seconds: float = 30.0


@dataclass(frozen=True)
class RetrievalConfig:
    """Ranking parameters for relevance-based retrieval."""

    max_results: int = 10
    min_similarity: float = 0.3
    max_per_type: int = 3
    recent_window_hours: float = 24.0
    recent_boost: float = 1.5
    recency_floor: float = 0.1
    # Scoring weights (must sum to 1.0)
    similarity_weight: float = 0.4
    importance_weight: float = 0.4
    recency_weight: float = 0.2
    # Conversation context boost
    max_context_boost: float = 0.2
    context_boost_per_match: float = 0.05
    history_window: int = 5


@dataclass(frozen=True)
class ValidationConfig:
    """Thresholds used by the edit validator."""

    high_importance: float = 0.7
    near_duplicate_similarity: float = 0.9
    min_semantic_similarity: float = 0.3
    contradiction_similarity: float = 0.2
    max_growth_ratio: float = 3.0
    importance_swing: float = 0.3
    frequent_access_count: int = 5
    heavy_access_count: int = 10
    min_merge_similarity: float = 0.5
    max_merge_length_ratio: float = 0.8
    replace_high_importance_confidence: float = 0.9
    delete_high_importance_confidence: float = 0.95
    merge_high_importance_confidence: float = 0.8
    min_content_length: int = 5
    long_content_length: int = 1000
    similar_search_limit: int = 5


@dataclass(frozen=True)
class ConflictConfig:
    """Thresholds used by the conflict resolver."""

    contradiction_similarity: float = 0.2
    duplicate_similarity: float = 0.8
    replace_confidence: float = 0.8
    information_loss_margin: float = 0.2
    delete_importance: float = 0.7
    merge_preservation: float = 0.3
    merge_source_importance: float = 0.5
    search_limit: int = 10


@dataclass(frozen=True)
class AuditConfig:
    """Settings for the JSONL audit log and version retention."""

    directory: str = "."
    enabled: bool = True
    max_versions_per_memory: int = 10
    retention_days: int = 90
    recent_agent_edit_limit: int = 100
    low_confidence_edit_limit: int = 50
    low_confidence_threshold: float = 0.5

    def log_path(self, owner_key: str) -> Path:
        """Return the audit log file for a sanitized owner key."""
        return Path(self.directory) / f"memory_audit_{owner_key}.jsonl"


def _env_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class MemorySettings:
    """Read-only settings surface consumed by the memory manager."""

    memory_enabled: bool = True
    importance_threshold: float = 0.0
    max_context_tokens: int = 800
    max_memories: int = 10000
    retention_days: int = 365

    @classmethod
    def from_env(cls, prefix: str = "RECALLMCP_") -> MemorySettings:
        """Build settings from ``<prefix>*`` environment variables.

        Unset variables keep their defaults.
        """
        defaults = cls()
        env = os.environ
        return cls(
            memory_enabled=_env_bool(
                env.get(f"{prefix}MEMORY_ENABLED", str(defaults.memory_enabled))
            ),
            importance_threshold=float(
                env.get(
                    f"{prefix}IMPORTANCE_THRESHOLD",
                    defaults.importance_threshold,
                )
            ),
            max_context_tokens=int(
                env.get(f"{prefix}MAX_CONTEXT_TOKENS", defaults.max_context_tokens)
            ),
            max_memories=int(env.get(f"{prefix}MAX_MEMORIES", defaults.max_memories)),
            retention_days=int(
                env.get(f"{prefix}RETENTION_DAYS", defaults.retention_days)
            ),
        )
