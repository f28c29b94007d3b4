"""Pre-flight safety checks for proposed operations.

The validator looks at the current store state and either passes an
operation (possibly with warnings) or fails it with an error code.  Hard
failures protect near-duplicates, high-importance memories and dissimilar
merges; everything else is reported as a warning.  Embedding failures are
raised to the caller, which treats them as operation failures.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from itertools import combinations
from typing import assert_never

from pydantic import BaseModel
from pydantic import Field

from recallmcp.config import ValidationConfig
from recallmcp.engine.embedding import Embedder
from recallmcp.models import Memory
from recallmcp.models import MemoryType
from recallmcp.operations import CreateOperation
from recallmcp.operations import DeleteOperation
from recallmcp.operations import MemoryOperation
from recallmcp.operations import MergeOperation
from recallmcp.operations import ReplaceOperation
from recallmcp.operations import UpdateOperation
from recallmcp.similarity import cosine_similarity
from recallmcp.store.base import MemoryStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Sensitive content patterns
# ---------------------------------------------------------------------------

_SENSITIVE_WORDS = ("password", "ssn", "social security", "credit card")
_SSN_RE = re.compile(r"\b\d{3}-\d{2}-\d{4}\b")
_CARD_RE = re.compile(r"\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b")

# Type changes that alter how a memory is interpreted.
_SIGNIFICANT_TYPE_PAIRS = {
    frozenset({MemoryType.FACT, MemoryType.PREFERENCE}),
}


def sensitive_content_warnings(content: str) -> list[str]:
    """Warnings for content that looks like it holds personal secrets."""
    lowered = content.lower()
    warnings: list[str] = []
    if any(word in lowered for word in _SENSITIVE_WORDS):
        warnings.append("Content may contain sensitive information")
    if _SSN_RE.search(content):
        warnings.append("Content contains a social-security-number-like pattern")
    if _CARD_RE.search(content):
        warnings.append("Content contains a card-number-like pattern")
    return warnings


def is_significant_type_change(old: MemoryType, new: MemoryType) -> bool:
    if old == new:
        return False
    if MemoryType.EVENT in (old, new):
        return True
    return frozenset({old, new}) in _SIGNIFICANT_TYPE_PAIRS


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------


class ValidationResult(BaseModel):
    """Outcome of validating one operation."""

    success: bool = Field(description="Whether the operation may proceed.")
    message: str = Field(default="", description="Human-readable outcome.")
    warnings: list[str] = Field(
        default_factory=list,
        description="Non-fatal concerns accumulated during validation.",
    )
    error_code: str | None = Field(
        default=None,
        description="Machine-readable reason for a failure.",
    )

    @classmethod
    def ok(
        cls, message: str = "Validation passed", warnings: Sequence[str] = ()
    ) -> ValidationResult:
        return cls(success=True, message=message, warnings=list(warnings))

    @classmethod
    def fail(
        cls, error_code: str, message: str, warnings: Sequence[str] = ()
    ) -> ValidationResult:
        return cls(
            success=False,
            message=message,
            warnings=list(warnings),
            error_code=error_code,
        )

    def combine(self, other: ValidationResult) -> ValidationResult:
        """Merge two results; the first failure wins, warnings accumulate."""
        warnings = [*self.warnings, *other.warnings]
        if not self.success:
            return self.model_copy(update={"warnings": warnings})
        if not other.success:
            return other.model_copy(update={"warnings": warnings})
        return ValidationResult.ok(self.message, warnings)

    def summary(self) -> str:
        status = "PASSED" if self.success else f"FAILED ({self.error_code})"
        text = f"Validation {status}: {self.message}"
        if self.warnings:
            text += f" [{len(self.warnings)} warning(s): {'; '.join(self.warnings)}]"
        return text


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------


class EditValidator:
    """Store-aware safety checks for each operation kind."""

    def __init__(
        self,
        store: MemoryStore,
        embedder: Embedder,
        *,
        config: ValidationConfig | None = None,
        importance_threshold: float = 0.0,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._config = config or ValidationConfig()
        self._importance_threshold = importance_threshold

    async def validate(self, operation: MemoryOperation) -> ValidationResult:
        if not operation.is_valid():
            return ValidationResult.fail(
                "invalid_operation",
                f"Operation failed structural validation: {operation.describe()}",
            )
        match operation:
            case CreateOperation():
                result = await self._validate_create(operation)
            case UpdateOperation():
                result = await self._validate_update(operation)
            case ReplaceOperation():
                result = await self._validate_replace(operation)
            case DeleteOperation():
                result = await self._validate_delete(operation)
            case MergeOperation():
                result = await self._validate_merge(operation)
            case _:
                assert_never(operation)
        logger.debug("%s -> %s", operation.describe(), result.summary())
        return result

    # -- shared checks --

    def check_content_quality(self, content: str) -> ValidationResult:
        """Generic gate: too-short content fails, long or sensitive content warns."""
        cfg = self._config
        stripped = content.strip()
        if len(stripped) < cfg.min_content_length:
            return ValidationResult.fail(
                "content_too_short",
                f"Content must be at least {cfg.min_content_length} characters",
            )
        warnings: list[str] = []
        if len(stripped) > cfg.long_content_length:
            warnings.append(
                f"Content is very long ({len(stripped)} characters); consider splitting it"
            )
        warnings.extend(sensitive_content_warnings(stripped))
        return ValidationResult.ok(warnings=warnings)

    async def _vector_of(self, memory: Memory) -> list[float]:
        if memory.embedding:
            return memory.embedding
        return await self._embedder.embed(memory.content)

    async def _similarity(self, vector: Sequence[float], memory: Memory) -> float:
        return cosine_similarity(vector, await self._vector_of(memory))

    async def _fetch(self, memory_id: str) -> Memory | None:
        return await self._store.get(memory_id, track_access=False)

    # -- per-kind checks --

    async def _validate_create(self, op: CreateOperation) -> ValidationResult:
        cfg = self._config
        warnings: list[str] = []

        vector = await self._embedder.embed(op.content)
        similar = await self._store.find_similar(vector, cfg.similar_search_limit)
        for hit in similar:
            if hit.similarity > cfg.near_duplicate_similarity:
                return ValidationResult.fail(
                    "near_duplicate",
                    f"Near-duplicate memory already exists: {hit.memory.id} "
                    f"(similarity {hit.similarity:.2f})",
                )
        related = [h for h in similar if h.similarity >= cfg.min_semantic_similarity]
        if related:
            warnings.append(
                f"Similar memories already exist ({len(related)}); "
                "consider UPDATE or MERGE instead"
            )

        if op.importance < self._importance_threshold:
            return ValidationResult.fail(
                "importance_below_threshold",
                f"Importance {op.importance:.2f} is below the minimum "
                f"{self._importance_threshold:.2f}",
                warnings,
            )

        return ValidationResult.ok("Create validated", warnings).combine(
            self.check_content_quality(op.content)
        )

    async def _validate_update(self, op: UpdateOperation) -> ValidationResult:
        cfg = self._config
        target = await self._fetch(op.memory_id)
        if target is None:
            return ValidationResult.fail(
                "memory_not_found", f"Memory to update not found: {op.memory_id}"
            )

        warnings: list[str] = []
        result = ValidationResult.ok("Update validated")
        if op.new_content is not None:
            vector = await self._embedder.embed(op.new_content)
            similarity = await self._similarity(vector, target)
            if similarity < cfg.contradiction_similarity:
                return ValidationResult.fail(
                    "content_too_dissimilar",
                    f"New content is too different from the existing memory "
                    f"(similarity {similarity:.2f}); use REPLACE instead",
                )
            if similarity < cfg.min_semantic_similarity:
                warnings.append(
                    f"New content differs substantially from the original "
                    f"(similarity {similarity:.2f})"
                )
            if len(op.new_content) > cfg.max_growth_ratio * len(target.content):
                warnings.append(
                    "Content grows to more than "
                    f"{cfg.max_growth_ratio:g}x its original length"
                )
            result = result.combine(self.check_content_quality(op.new_content))

        if op.new_importance is not None:
            change = op.new_importance - target.importance
            if abs(change) > cfg.importance_swing:
                warnings.append(
                    f"Large importance change: {target.importance:.2f} -> "
                    f"{op.new_importance:.2f}"
                )
            if change < 0 and target.access_count > cfg.frequent_access_count:
                warnings.append(
                    f"Lowering importance of a frequently accessed memory "
                    f"({target.access_count} accesses)"
                )

        if op.new_type is not None and is_significant_type_change(
            target.type, op.new_type
        ):
            warnings.append(
                f"Significant type change: {target.type.value} -> {op.new_type.value}"
            )

        return result.combine(ValidationResult.ok(warnings=warnings))

    async def _validate_replace(self, op: ReplaceOperation) -> ValidationResult:
        cfg = self._config
        target = await self._fetch(op.memory_id)
        if target is None:
            return ValidationResult.fail(
                "memory_not_found", f"Memory to replace not found: {op.memory_id}"
            )

        warnings: list[str] = []
        if target.importance >= cfg.high_importance:
            if op.confidence < cfg.replace_high_importance_confidence:
                return ValidationResult.fail(
                    "insufficient_confidence",
                    f"Replacing a high-importance memory requires confidence >= "
                    f"{cfg.replace_high_importance_confidence:.2f}",
                )
            warnings.append(
                f"Replacing high-importance memory (importance {target.importance:.2f})"
            )

        vector = await self._embedder.embed(op.new_content)
        similarity = await self._similarity(vector, target)
        if similarity < cfg.min_semantic_similarity:
            warnings.append(
                f"Replacement is unrelated to the original (similarity "
                f"{similarity:.2f}); consider CREATE instead"
            )

        return ValidationResult.ok("Replace validated", warnings).combine(
            self.check_content_quality(op.new_content)
        )

    async def _validate_delete(self, op: DeleteOperation) -> ValidationResult:
        cfg = self._config
        target = await self._fetch(op.memory_id)
        if target is None:
            return ValidationResult.fail(
                "memory_not_found", f"Memory to delete not found: {op.memory_id}"
            )

        warnings: list[str] = []
        if target.importance >= cfg.high_importance:
            if op.confidence < cfg.delete_high_importance_confidence:
                return ValidationResult.fail(
                    "insufficient_confidence",
                    f"Deleting a high-importance memory requires confidence >= "
                    f"{cfg.delete_high_importance_confidence:.2f}",
                )
            warnings.append(
                f"Deleting high-importance memory (importance {target.importance:.2f})"
            )

        if target.access_count > cfg.heavy_access_count:
            warnings.append(
                f"Deleting a frequently accessed memory ({target.access_count} accesses)"
            )

        relationships = await self._store.get_relationships_for(op.memory_id)
        if relationships:
            if op.delete_relationships:
                warnings.append(f"Will delete {len(relationships)} relationship(s)")
            else:
                warnings.append(
                    f"{len(relationships)} relationship(s) would be orphaned "
                    "and are removed with the memory"
                )

        return ValidationResult.ok("Delete validated", warnings)

    async def _validate_merge(self, op: MergeOperation) -> ValidationResult:
        cfg = self._config
        sources: list[Memory] = []
        missing: list[str] = []
        for source_id in op.source_memory_ids:
            memory = await self._fetch(source_id)
            if memory is None:
                missing.append(source_id)
            else:
                sources.append(memory)
        if missing:
            return ValidationResult.fail(
                "memory_not_found",
                f"Source memories not found: {', '.join(missing)}",
            )

        vectors = [await self._vector_of(m) for m in sources]
        pairwise = [cosine_similarity(a, b) for a, b in combinations(vectors, 2)]
        average = sum(pairwise) / len(pairwise)
        if average < cfg.min_merge_similarity:
            return ValidationResult.fail(
                "sources_too_dissimilar",
                f"Source memories are too dissimilar to merge "
                f"(average similarity {average:.2f})",
            )

        important = [m for m in sources if m.importance >= cfg.high_importance]
        if important and op.confidence < cfg.merge_high_importance_confidence:
            return ValidationResult.fail(
                "insufficient_confidence",
                f"Merging high-importance memories requires confidence >= "
                f"{cfg.merge_high_importance_confidence:.2f}",
            )

        result = ValidationResult.ok("Merge validated").combine(
            self.check_content_quality(op.merged_content)
        )
        if not result.success:
            return result

        warnings: list[str] = []
        merged_vector = await self._embedder.embed(op.merged_content)
        for memory, vector in zip(sources, vectors):
            similarity = cosine_similarity(merged_vector, vector)
            if similarity < cfg.min_semantic_similarity:
                warnings.append(
                    f"Merged content may not preserve memory {memory.id} "
                    f"(similarity {similarity:.2f})"
                )
        total_length = sum(len(m.content) for m in sources)
        if len(op.merged_content) > cfg.max_merge_length_ratio * total_length:
            warnings.append(
                "Merged content is close to a plain concatenation of the sources"
            )
        return result.combine(ValidationResult.ok(warnings=warnings))
