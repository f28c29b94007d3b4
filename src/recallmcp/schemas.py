"""Pydantic models for the MCP interface.

Input models validate tool arguments; output models shape responses.
Every result carries ``status`` (``ok``, ``rejected``, ``not_found`` or
``skipped``) with an ``error_code`` and ``message`` when not ``ok``.
FastMCP serializes the models automatically.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel
from pydantic import Field

from recallmcp.engine.processor import OperationOutcome
from recallmcp.manager import MemoryStats
from recallmcp.manager import TurnResult
from recallmcp.models import Memory
from recallmcp.models import MemoryRelationship
from recallmcp.models import MemoryType
from recallmcp.models import RelationshipType
from recallmcp.models import VersionedMemory
from recallmcp.operations.schemas import MAX_CONTENT_LENGTH
from recallmcp.operations.schemas import MIN_CONTENT_LENGTH

# ---------------------------------------------------------------------------
# Input models
# ---------------------------------------------------------------------------


class OwnerInput(BaseModel):
    """Fields shared by every tool input."""

    owner_id: str = Field(
        min_length=1,
        description="Persona or user whose memories are addressed.",
    )


class RememberInput(OwnerInput):
    """Input for the remember tool."""

    content: str = Field(
        min_length=MIN_CONTENT_LENGTH,
        max_length=MAX_CONTENT_LENGTH,
        description="Free-text content to store.",
    )
    memory_type: MemoryType = Field(
        default=MemoryType.FACT,
        description="Memory category.",
    )
    importance: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Importance in [0, 1].",
    )
    emotional_weight: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        description="Emotional salience in [0, 1].",
    )
    metadata: dict[str, Any] | None = Field(
        default=None,
        description="Opaque key/value data stored with the memory.",
    )


class TurnInput(OwnerInput):
    """Input for the process_turn tool."""

    user_message: str = Field(
        min_length=1,
        description="What the user said this turn.",
    )
    assistant_response: str = Field(
        default="",
        description="What the assistant answered.",
    )
    history: list[str] = Field(
        default_factory=list,
        description="Earlier messages, most recent last.",
    )


class RetrieveInput(OwnerInput):
    """Input for retrieve_memories and semantic_search."""

    query: str = Field(
        min_length=1,
        description="Natural language query.",
    )
    history: list[str] = Field(
        default_factory=list,
        description="Earlier messages used for context boosting.",
    )
    max_results: int | None = Field(
        default=None,
        ge=1,
        le=100,
        description="Maximum number of memories to return.",
    )


class LinkInput(OwnerInput):
    """Input for the link_memories tool."""

    from_memory_id: str = Field(min_length=1)
    to_memory_id: str = Field(min_length=1)
    relationship_type: RelationshipType = RelationshipType.RELATED_TO
    strength: float = Field(default=0.5, ge=0.0, le=1.0)
    bidirectional: bool = Field(
        default=False,
        description="Also insert the reverse edge (SIMILAR and RELATED_TO only).",
    )


class RollbackInput(OwnerInput):
    """Input for the rollback_memory tool."""

    memory_id: str = Field(min_length=1)
    version_number: int | None = Field(
        default=None,
        ge=1,
        description="Version to restore; the original version when omitted.",
    )
    reason: str = Field(
        min_length=1,
        description="Why the rollback is made, kept in the version history.",
    )


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------


class MemoryView(BaseModel):
    """A memory as returned to MCP clients (embedding omitted)."""

    id: str
    content: str
    type: MemoryType
    importance: float
    emotional_weight: float
    timestamp: float
    last_accessed: float
    access_count: int
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_memory(cls, memory: Memory) -> MemoryView:
        return cls.model_validate(memory.model_dump(exclude={"embedding"}))


class VersionView(BaseModel):
    """One entry of a memory's version history (embedding omitted)."""

    version_number: int
    summary: str
    content: str
    type: MemoryType
    importance: float
    timestamp: str
    edit_source: str
    edit_confidence: float
    agent_reasoning: str | None = None

    @classmethod
    def from_version(cls, version: VersionedMemory) -> VersionView:
        return cls(
            version_number=version.version_number,
            summary=version.summary(),
            content=version.content,
            type=version.type,
            importance=version.importance,
            timestamp=version.formatted_timestamp(),
            edit_source=version.edit_source.value,
            edit_confidence=version.edit_confidence,
            agent_reasoning=version.agent_reasoning,
        )


# ---------------------------------------------------------------------------
# Output models
# ---------------------------------------------------------------------------


class ToolResult(BaseModel):
    """Status envelope shared by every tool result."""

    status: str = Field(
        default="ok",
        description="ok, rejected, not_found, skipped or failed.",
    )
    error_code: str | None = Field(
        default=None,
        description="Machine-readable reason when status is not ok.",
    )
    message: str = Field(
        default="",
        description="Human-readable explanation.",
    )


class RememberResult(ToolResult):
    memory_id: str | None = None


class ApplyOperationResult(ToolResult):
    outcome: OperationOutcome | None = None


class ProcessTurnResult(ToolResult):
    turn: TurnResult | None = None


class MemoriesResult(ToolResult):
    """Result of retrieve_memories and semantic_search."""

    memories: list[MemoryView] = Field(default_factory=list)
    context: str | None = Field(
        default=None,
        description="Prompt-ready context block, when requested.",
    )


class GetMemoryResult(ToolResult):
    memory: MemoryView | None = None
    relationships: list[MemoryRelationship] = Field(default_factory=list)


class LinkResult(ToolResult):
    relationships: list[MemoryRelationship] = Field(default_factory=list)


class HistoryResult(ToolResult):
    memory_id: str
    versions: list[VersionView] = Field(default_factory=list)


class RollbackResult(ToolResult):
    memory: MemoryView | None = None


class BackupResult(ToolResult):
    version_number: int | None = None


class AuditTrailResult(ToolResult):
    report: str = ""


class StatsResult(ToolResult):
    stats: MemoryStats | None = None
    audit: dict[str, int] = Field(default_factory=dict)


class DeleteOwnerResult(ToolResult):
    keys_removed: int = 0
