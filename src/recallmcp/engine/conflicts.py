"""Semantic conflict detection for proposed operations.

The resolver never vetoes an operation.  It classifies conflicts between
the operation and existing memories, attaches suggested resolution
strategies and derives a recommended action from the highest severity
found.  Internal failures surface as an error resolution recommending a
retry.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from enum import Enum
from itertools import combinations
from typing import assert_never

from pydantic import BaseModel
from pydantic import Field
from redis.exceptions import RedisError

from recallmcp.config import ConflictConfig
from recallmcp.engine.embedding import Embedder
from recallmcp.errors import RecallError
from recallmcp.models import Memory
from recallmcp.models import RelationshipType
from recallmcp.operations import CreateOperation
from recallmcp.operations import DeleteOperation
from recallmcp.operations import MemoryOperation
from recallmcp.operations import MergeOperation
from recallmcp.operations import ReplaceOperation
from recallmcp.operations import UpdateOperation
from recallmcp.similarity import cosine_similarity
from recallmcp.store.base import MemoryStore

logger = logging.getLogger(__name__)


class ConflictType(str, Enum):
    CONTRADICTION = "CONTRADICTION"
    DUPLICATE = "DUPLICATE"
    RELATED_CONTRADICTION = "RELATED_CONTRADICTION"
    INFORMATION_LOSS = "INFORMATION_LOSS"
    DEPENDENCY_BREAK = "DEPENDENCY_BREAK"


class ConflictSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    ConflictSeverity.LOW: 0,
    ConflictSeverity.MEDIUM: 1,
    ConflictSeverity.HIGH: 2,
}

_SEVERITY_BY_TYPE = {
    ConflictType.CONTRADICTION: ConflictSeverity.HIGH,
    ConflictType.INFORMATION_LOSS: ConflictSeverity.HIGH,
    ConflictType.DEPENDENCY_BREAK: ConflictSeverity.MEDIUM,
    ConflictType.RELATED_CONTRADICTION: ConflictSeverity.MEDIUM,
    ConflictType.DUPLICATE: ConflictSeverity.LOW,
}


class ResolutionStrategy(str, Enum):
    REPLACE_EXISTING = "REPLACE_EXISTING"
    UPDATE_EXISTING = "UPDATE_EXISTING"
    CREATE_ALTERNATIVE = "CREATE_ALTERNATIVE"
    MERGE_MEMORIES = "MERGE_MEMORIES"
    PRESERVE_ORIGINAL = "PRESERVE_ORIGINAL"
    UPDATE_RELATIONSHIPS = "UPDATE_RELATIONSHIPS"
    SELECTIVE_MERGE = "SELECTIVE_MERGE"
    IMPROVE_MERGE = "IMPROVE_MERGE"


class RecommendedAction(str, Enum):
    PROCEED = "PROCEED"
    PROCEED_WITH_WARNING = "PROCEED_WITH_WARNING"
    REQUIRE_REVIEW = "REQUIRE_REVIEW"
    BLOCK_OPERATION = "BLOCK_OPERATION"
    RETRY_DETECTION = "RETRY_DETECTION"


# ---------------------------------------------------------------------------
# Result models
# ---------------------------------------------------------------------------


class ResolutionSuggestion(BaseModel):
    model_config = {"frozen": True}

    strategy: ResolutionStrategy
    reasoning: str


class DetectedConflict(BaseModel):
    """One conflict between an operation and an existing memory."""

    conflict_type: ConflictType
    memory_id: str = Field(description="Id of the conflicting memory.")
    content_preview: str = Field(description="Short preview of its content.")
    description: str
    similarity: float = Field(
        default=0.0,
        description="Cosine similarity behind the finding; 0.0 when not similarity-based.",
    )
    suggestions: list[ResolutionSuggestion] = Field(default_factory=list)

    @classmethod
    def about(
        cls,
        conflict_type: ConflictType,
        memory: Memory,
        description: str,
        similarity: float = 0.0,
    ) -> DetectedConflict:
        return cls(
            conflict_type=conflict_type,
            memory_id=memory.id,
            content_preview=memory.preview(),
            description=description,
            similarity=similarity,
        )

    @property
    def severity(self) -> ConflictSeverity:
        return _SEVERITY_BY_TYPE[self.conflict_type]

    def suggest(self, strategy: ResolutionStrategy, reasoning: str) -> DetectedConflict:
        self.suggestions.append(ResolutionSuggestion(strategy=strategy, reasoning=reasoning))
        return self

    def log_summary(self) -> str:
        return (
            f"{self.conflict_type.value} conflict with memory {self.memory_id} "
            f"(similarity: {self.similarity:.2f}, {len(self.suggestions)} resolutions)"
        )

    def summary(self) -> str:
        lines = [
            f"CONFLICT: {self.conflict_type.value}",
            f"Description: {self.description}",
            f"Conflicting memory: {self.memory_id}",
            f"Content: {self.content_preview}",
        ]
        if self.similarity > 0.0:
            lines.append(f"Similarity: {self.similarity:.2f}")
        lines.append(f"Severity: {self.severity.value}")
        if self.suggestions:
            lines.append("Suggested resolutions:")
            lines.extend(
                f"{i}. {s.strategy.value}: {s.reasoning}"
                for i, s in enumerate(self.suggestions, start=1)
            )
        return "\n".join(lines)


class ConflictResolution(BaseModel):
    """Aggregate of every conflict detected for one operation."""

    has_conflicts: bool = False
    message: str = ""
    conflicts: list[DetectedConflict] = Field(default_factory=list)
    error_message: str | None = None

    @classmethod
    def none_found(cls, message: str) -> ConflictResolution:
        return cls(message=message)

    @classmethod
    def for_operation(
        cls, operation_label: str, conflicts: Sequence[DetectedConflict]
    ) -> ConflictResolution:
        if not conflicts:
            return cls.none_found(f"No conflicts detected for {operation_label} operation")
        return cls(
            has_conflicts=True,
            message=f"Conflicts detected for {operation_label} operation",
            conflicts=list(conflicts),
        )

    @classmethod
    def error(cls, error_message: str) -> ConflictResolution:
        return cls(message="Conflict detection failed", error_message=error_message)

    @property
    def is_error(self) -> bool:
        return self.error_message is not None

    @property
    def conflict_count(self) -> int:
        return len(self.conflicts)

    def by_type(self, conflict_type: ConflictType) -> list[DetectedConflict]:
        return [c for c in self.conflicts if c.conflict_type == conflict_type]

    def by_severity(self, severity: ConflictSeverity) -> list[DetectedConflict]:
        return [c for c in self.conflicts if c.severity == severity]

    @property
    def highest_severity(self) -> ConflictSeverity | None:
        if not self.conflicts:
            return None
        return max((c.severity for c in self.conflicts), key=lambda s: s.rank)

    @property
    def recommended_action(self) -> RecommendedAction:
        if self.is_error:
            return RecommendedAction.RETRY_DETECTION
        highest = self.highest_severity
        if highest is None:
            return RecommendedAction.PROCEED
        if highest == ConflictSeverity.HIGH:
            return RecommendedAction.BLOCK_OPERATION
        if highest == ConflictSeverity.MEDIUM:
            return RecommendedAction.REQUIRE_REVIEW
        return RecommendedAction.PROCEED_WITH_WARNING

    def combine(self, other: ConflictResolution | None) -> ConflictResolution:
        if other is None:
            return self
        if self.is_error or other.is_error:
            return ConflictResolution.error(
                self.error_message if self.is_error else other.error_message or ""
            )
        merged = [*self.conflicts, *other.conflicts]
        if not merged:
            return ConflictResolution.none_found(f"{self.message}; {other.message}")
        return ConflictResolution(
            has_conflicts=True,
            message=f"{self.message}; {other.message}",
            conflicts=merged,
        )

    def log_summary(self) -> str:
        if self.is_error:
            return f"ERROR: {self.error_message}"
        highest = self.highest_severity
        if highest is None:
            return f"NO CONFLICTS: {self.message}"
        return (
            f"CONFLICTS: {self.conflict_count} total ({highest.value} severity) "
            f"- {self.message}"
        )

    def summary(self) -> str:
        if self.is_error or not self.has_conflicts:
            return self.log_summary()
        lines = [f"CONFLICTS DETECTED: {self.message}", f"Total: {self.conflict_count}"]
        for severity in (ConflictSeverity.HIGH, ConflictSeverity.MEDIUM, ConflictSeverity.LOW):
            count = len(self.by_severity(severity))
            if count:
                lines.append(f"{severity.value.title()} severity: {count}")
        for i, conflict in enumerate(self.conflicts, start=1):
            lines.append(f"--- Conflict {i} ---")
            lines.append(conflict.summary())
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class ConflictResolver:
    """Classifies semantic conflicts for each operation kind."""

    def __init__(
        self,
        store: MemoryStore,
        embedder: Embedder,
        *,
        config: ConflictConfig | None = None,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._config = config or ConflictConfig()

    async def detect(self, operation: MemoryOperation) -> ConflictResolution:
        logger.debug("Detecting conflicts for %s", operation.describe())
        try:
            match operation:
                case CreateOperation():
                    resolution = await self._detect_create(operation)
                case UpdateOperation():
                    resolution = await self._detect_update(operation)
                case ReplaceOperation():
                    resolution = await self._detect_replace(operation)
                case DeleteOperation():
                    resolution = await self._detect_delete(operation)
                case MergeOperation():
                    resolution = await self._detect_merge(operation)
                case _:
                    assert_never(operation)
        except (RecallError, RedisError) as exc:
            logger.warning("Conflict detection failed for %s: %s", operation.describe(), exc)
            return ConflictResolution.error(f"Could not check for conflicts: {exc}")
        logger.debug("Conflict detection: %s", resolution.log_summary())
        return resolution

    # -- helpers --

    async def _vector_of(self, memory: Memory) -> list[float]:
        if memory.embedding:
            return memory.embedding
        return await self._embedder.embed(memory.content)

    async def _fetch(self, memory_id: str) -> Memory | None:
        return await self._store.get(memory_id, track_access=False)

    async def _related_memories(self, memory_id: str) -> list[Memory]:
        related: list[Memory] = []
        for relationship in await self._store.get_relationships_for(memory_id):
            other = await self._fetch(relationship.other_end(memory_id))
            if other is not None:
                related.append(other)
        return related

    async def _dependents(self, memory_id: str) -> list[Memory]:
        """Memories with a BUILDS_ON edge pointing at ``memory_id``."""
        dependents: list[Memory] = []
        for relationship in await self._store.get_relationships_for(memory_id):
            if (
                relationship.relationship_type == RelationshipType.BUILDS_ON
                and relationship.to_memory_id == memory_id
            ):
                other = await self._fetch(relationship.from_memory_id)
                if other is not None:
                    dependents.append(other)
        return dependents

    async def _related_contradictions(
        self, memory_id: str, new_content: str, *, replacing: bool
    ) -> list[DetectedConflict]:
        cfg = self._config
        vector = await self._embedder.embed(new_content)
        conflicts: list[DetectedConflict] = []
        for related in await self._related_memories(memory_id):
            similarity = cosine_similarity(vector, await self._vector_of(related))
            if similarity >= cfg.contradiction_similarity:
                continue
            verb = "Replacement" if replacing else "Update"
            conflict = DetectedConflict.about(
                ConflictType.RELATED_CONTRADICTION,
                related,
                f"{verb} would contradict related memory",
                similarity,
            )
            if replacing:
                conflict.suggest(
                    ResolutionStrategy.UPDATE_RELATIONSHIPS,
                    "Update or remove relationships that no longer apply",
                ).suggest(
                    ResolutionStrategy.CREATE_ALTERNATIVE,
                    "Create a new memory instead of replacing to preserve relationships",
                )
            else:
                conflict.suggest(
                    ResolutionStrategy.UPDATE_RELATIONSHIPS,
                    "Update memory relationships to reflect the new information",
                )
            conflicts.append(conflict)
        return conflicts

    # -- per-kind detection --

    async def _detect_create(self, op: CreateOperation) -> ConflictResolution:
        cfg = self._config
        vector = await self._embedder.embed(op.content)
        conflicts: list[DetectedConflict] = []
        for hit in await self._store.find_similar(vector, cfg.search_limit):
            existing = hit.memory
            if (
                hit.similarity < cfg.contradiction_similarity
                and existing.type == op.memory_type
            ):
                conflict = DetectedConflict.about(
                    ConflictType.CONTRADICTION,
                    existing,
                    "New memory contradicts existing memory",
                    hit.similarity,
                )
                if (
                    op.confidence > cfg.replace_confidence
                    and op.importance > existing.importance
                ):
                    conflict.suggest(
                        ResolutionStrategy.REPLACE_EXISTING,
                        "High confidence new information should replace the "
                        "less important existing memory",
                    )
                else:
                    conflict.suggest(
                        ResolutionStrategy.CREATE_ALTERNATIVE,
                        "Create an alternative memory to preserve both perspectives",
                    )
                conflicts.append(conflict)
            elif hit.similarity > cfg.duplicate_similarity:
                conflicts.append(
                    DetectedConflict.about(
                        ConflictType.DUPLICATE,
                        existing,
                        "Very similar memory already exists",
                        hit.similarity,
                    )
                    .suggest(
                        ResolutionStrategy.MERGE_MEMORIES,
                        "Merge with the existing similar memory",
                    )
                    .suggest(
                        ResolutionStrategy.UPDATE_EXISTING,
                        "Update the existing memory with the new details",
                    )
                )
        return ConflictResolution.for_operation("CREATE", conflicts)

    async def _detect_update(self, op: UpdateOperation) -> ConflictResolution:
        cfg = self._config
        existing = await self._fetch(op.memory_id)
        if existing is None:
            return ConflictResolution.error(f"Memory not found: {op.memory_id}")

        conflicts: list[DetectedConflict] = []
        if op.new_content is not None:
            vector = await self._embedder.embed(op.new_content)
            similarity = cosine_similarity(vector, await self._vector_of(existing))
            if similarity < cfg.contradiction_similarity:
                conflicts.append(
                    DetectedConflict.about(
                        ConflictType.CONTRADICTION,
                        existing,
                        "Update content contradicts existing memory",
                        similarity,
                    )
                    .suggest(
                        ResolutionStrategy.REPLACE_EXISTING,
                        "Use a REPLACE operation instead of UPDATE for contradictory content",
                    )
                    .suggest(
                        ResolutionStrategy.CREATE_ALTERNATIVE,
                        "Create a new memory for the contradictory information",
                    )
                )
            conflicts.extend(
                await self._related_contradictions(
                    op.memory_id, op.new_content, replacing=False
                )
            )
        return ConflictResolution.for_operation("UPDATE", conflicts)

    async def _detect_replace(self, op: ReplaceOperation) -> ConflictResolution:
        cfg = self._config
        existing = await self._fetch(op.memory_id)
        if existing is None:
            return ConflictResolution.error(f"Memory not found: {op.memory_id}")

        conflicts = await self._related_contradictions(
            op.memory_id, op.new_content, replacing=True
        )
        if existing.importance > op.new_importance + cfg.information_loss_margin:
            conflicts.append(
                DetectedConflict.about(
                    ConflictType.INFORMATION_LOSS,
                    existing,
                    "Replacement has significantly lower importance",
                ).suggest(
                    ResolutionStrategy.PRESERVE_ORIGINAL,
                    "Keep the original memory and create a new one for the "
                    "additional information",
                )
            )
        return ConflictResolution.for_operation("REPLACE", conflicts)

    async def _detect_delete(self, op: DeleteOperation) -> ConflictResolution:
        cfg = self._config
        existing = await self._fetch(op.memory_id)
        if existing is None:
            return ConflictResolution.error(f"Memory not found: {op.memory_id}")

        conflicts: list[DetectedConflict] = []
        if existing.importance > cfg.delete_importance:
            conflicts.append(
                DetectedConflict.about(
                    ConflictType.INFORMATION_LOSS,
                    existing,
                    "Deleting high importance memory",
                ).suggest(
                    ResolutionStrategy.PRESERVE_ORIGINAL,
                    "Consider reducing importance instead of deleting",
                )
            )
        dependents = await self._dependents(op.memory_id)
        if dependents:
            conflicts.append(
                DetectedConflict.about(
                    ConflictType.DEPENDENCY_BREAK,
                    existing,
                    f"{len(dependents)} other memories build on this memory",
                )
                .suggest(
                    ResolutionStrategy.UPDATE_RELATIONSHIPS,
                    "Update dependent memories before deletion",
                )
                .suggest(
                    ResolutionStrategy.PRESERVE_ORIGINAL,
                    "Keep the memory but lower its importance",
                )
            )
        return ConflictResolution.for_operation("DELETE", conflicts)

    async def _detect_merge(self, op: MergeOperation) -> ConflictResolution:
        cfg = self._config
        sources: list[Memory] = []
        for source_id in op.source_memory_ids:
            memory = await self._fetch(source_id)
            if memory is not None:
                sources.append(memory)
        vectors = {m.id: await self._vector_of(m) for m in sources}

        conflicts: list[DetectedConflict] = []
        for first, second in combinations(sources, 2):
            similarity = cosine_similarity(vectors[first.id], vectors[second.id])
            if similarity < cfg.contradiction_similarity:
                conflicts.append(
                    DetectedConflict.about(
                        ConflictType.CONTRADICTION,
                        first,
                        f"Source memories contradict each other ({first.id} vs {second.id})",
                        similarity,
                    )
                    .suggest(
                        ResolutionStrategy.SELECTIVE_MERGE,
                        "Merge only the non-contradictory memories",
                    )
                    .suggest(
                        ResolutionStrategy.CREATE_ALTERNATIVE,
                        "Keep separate memories for the contradictory information",
                    )
                )

        merged_vector = await self._embedder.embed(op.merged_content)
        for source in sources:
            preservation = cosine_similarity(merged_vector, vectors[source.id])
            if (
                preservation < cfg.merge_preservation
                and source.importance > cfg.merge_source_importance
            ):
                conflicts.append(
                    DetectedConflict.about(
                        ConflictType.INFORMATION_LOSS,
                        source,
                        "Merged content does not preserve important source information",
                        preservation,
                    ).suggest(
                        ResolutionStrategy.IMPROVE_MERGE,
                        "Revise the merged content to better preserve the source",
                    )
                )
        return ConflictResolution.for_operation("MERGE", conflicts)
