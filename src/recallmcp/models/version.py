"""Immutable snapshots of a memory at one point of its edit history."""

from __future__ import annotations

import time
import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import Field

from recallmcp.models.memory import Memory
from recallmcp.models.memory import MemoryType

SIGNIFICANT_IMPORTANCE_CHANGE = 0.2
SIGNIFICANT_EMOTION_CHANGE = 0.3


class EditSource(str, Enum):
    """Who or what produced a version."""

    USER = "USER"
    AGENT = "AGENT"
    SYSTEM = "SYSTEM"
    MIGRATION = "MIGRATION"
    ROLLBACK = "ROLLBACK"


def _new_version_id() -> str:
    return f"ver_{uuid.uuid4().hex}"


class VersionedMemory(BaseModel):
    """Full copy of a memory's editable fields at one version.

    Instances are frozen.  Flag changes (``is_current``) are made by the
    version manager through ``model_copy`` and persisted as a new record
    for the same ``version_id``.
    """

    model_config = {"frozen": True}

    version_id: str = Field(
        default_factory=_new_version_id,
        description="Unique version identifier.",
    )
    memory_id: str = Field(
        description="Id of the memory this version belongs to.",
    )
    version_number: int = Field(
        ge=1,
        description="1-based, strictly increasing per memory.",
    )
    content: str
    type: MemoryType
    importance: float
    embedding: list[float] | None = None
    emotional_weight: float = 0.0
    metadata: dict[str, Any] = Field(default_factory=dict)
    version_timestamp: float = Field(
        default_factory=time.time,
        description="Unix epoch when the version was recorded.",
    )
    edit_reason: str = Field(
        default="",
        description="Human-readable reason for the edit.",
    )
    edit_source: EditSource = Field(
        default=EditSource.SYSTEM,
        description="Origin of the edit.",
    )
    edit_confidence: float = Field(
        default=1.0,
        description="Confidence reported for the edit.",
    )
    agent_reasoning: str | None = Field(
        default=None,
        description="Reasoning supplied by the proposal source, if any.",
    )
    is_original: bool = False
    is_current: bool = False
    is_backup: bool = False

    @classmethod
    def from_memory(
        cls,
        memory: Memory,
        *,
        version_number: int = 1,
        edit_reason: str = "Initial creation",
        edit_source: EditSource = EditSource.SYSTEM,
        edit_confidence: float = 1.0,
        agent_reasoning: str | None = None,
        is_current: bool = True,
        is_backup: bool = False,
        timestamp: float | None = None,
    ) -> VersionedMemory:
        """Snapshot *memory* as version *version_number*."""
        return cls(
            memory_id=memory.id,
            version_number=version_number,
            content=memory.content,
            type=memory.type,
            importance=memory.importance,
            embedding=list(memory.embedding) if memory.embedding else None,
            emotional_weight=memory.emotional_weight,
            metadata=dict(memory.metadata),
            version_timestamp=time.time() if timestamp is None else timestamp,
            edit_reason=edit_reason,
            edit_source=edit_source,
            edit_confidence=edit_confidence,
            agent_reasoning=agent_reasoning,
            is_original=version_number == 1,
            is_current=is_current,
            is_backup=is_backup,
        )

    def to_memory(self, live: Memory | None = None) -> Memory:
        """Rebuild a live memory from this version.

        Identity and access statistics come from *live* when given.
        """
        restored = {
            "content": self.content,
            "type": self.type,
            "importance": self.importance,
            "embedding": list(self.embedding) if self.embedding else None,
            "emotional_weight": self.emotional_weight,
            "metadata": dict(self.metadata),
        }
        if live is None:
            return Memory(id=self.memory_id, **restored)
        return live.model_copy(update=restored)

    def is_significant_change_from(self, other: VersionedMemory) -> bool:
        """Whether this version differs materially from *other*."""
        return (
            self.content != other.content
            or self.type != other.type
            or abs(self.importance - other.importance) > SIGNIFICANT_IMPORTANCE_CHANGE
            or abs(self.emotional_weight - other.emotional_weight)
            > SIGNIFICANT_EMOTION_CHANGE
        )

    def flags(self) -> list[str]:
        flags: list[str] = []
        if self.is_original:
            flags.append("ORIGINAL")
        if self.is_current:
            flags.append("CURRENT")
        if self.is_backup:
            flags.append("BACKUP")
        return flags

    def summary(self) -> str:
        """One-line description, e.g. ``v3 (AGENT) - Refined [CURRENT]``."""
        text = f"v{self.version_number} ({self.edit_source.value}) - {self.edit_reason}"
        flags = self.flags()
        if flags:
            text += f" [{', '.join(flags)}]"
        return text

    def formatted_timestamp(self) -> str:
        return datetime.fromtimestamp(self.version_timestamp).strftime(
            "%Y-%m-%d %H:%M:%S"
        )
