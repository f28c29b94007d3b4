"""Applies operations to one owner's store.

Pipeline per operation, serialised under the owner's lock:
structural check -> validator -> conflict resolver (advisory) ->
OPERATION_START -> one transaction (pre-state snapshot, mutation, new
current version) -> OPERATION_COMPLETE -> version pruning.

Infrastructure errors become ``failed`` outcomes and the transaction is
discarded, so nothing is partially written.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from enum import Enum
from typing import assert_never

from pydantic import BaseModel
from pydantic import Field
from redis.exceptions import RedisError

from recallmcp.audit import AuditEvent
from recallmcp.audit import AuditEventType
from recallmcp.audit import VersionManager
from recallmcp.engine.conflicts import ConflictResolution
from recallmcp.engine.conflicts import ConflictResolver
from recallmcp.engine.conflicts import RecommendedAction
from recallmcp.engine.embedding import Embedder
from recallmcp.engine.validator import EditValidator
from recallmcp.errors import DimensionMismatchError
from recallmcp.errors import EmbeddingError
from recallmcp.errors import MemoryNotFoundError
from recallmcp.errors import RecallError
from recallmcp.models import EditSource
from recallmcp.models import Memory
from recallmcp.models import MemoryRelationship
from recallmcp.models import RelationshipType
from recallmcp.observability import record_outcome
from recallmcp.observability import timed
from recallmcp.operations import CreateOperation
from recallmcp.operations import DeleteOperation
from recallmcp.operations import MemoryOperation
from recallmcp.operations import MergeOperation
from recallmcp.operations import OperationType
from recallmcp.operations import ReplaceOperation
from recallmcp.operations import UpdateOperation
from recallmcp.store.base import MemoryStore

logger = logging.getLogger(__name__)

GENERALIZES_STRENGTH = 0.8


class OutcomeStatus(str, Enum):
    APPLIED = "applied"
    REJECTED = "rejected"
    FAILED = "failed"
    SKIPPED = "skipped"


class OperationOutcome(BaseModel):
    """What happened to one operation."""

    operation_type: OperationType
    status: OutcomeStatus
    memory_id: str | None = Field(
        default=None,
        description="Memory created or changed; the new memory for MERGE.",
    )
    version_number: int | None = Field(
        default=None,
        description="Version recorded for that memory by this operation.",
    )
    affected_memory_ids: list[str] = Field(default_factory=list)
    error_code: str | None = None
    message: str = ""
    warnings: list[str] = Field(default_factory=list)
    conflicts: ConflictResolution | None = None

    @property
    def applied(self) -> bool:
        return self.status == OutcomeStatus.APPLIED


def failure_code(exc: Exception) -> str:
    """Error code reported for an infrastructure failure."""
    if isinstance(exc, EmbeddingError):
        return "embedding_failed"
    if isinstance(exc, DimensionMismatchError):
        return "dimension_mismatch"
    return "store_error"


class OperationProcessor:
    """Validates, audits and atomically applies operations for one owner."""

    def __init__(
        self,
        store: MemoryStore,
        embedder: Embedder,
        validator: EditValidator,
        resolver: ConflictResolver,
        versions: VersionManager,
        *,
        block_on_conflict: bool = False,
        edit_source: EditSource = EditSource.AGENT,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._validator = validator
        self._resolver = resolver
        self._versions = versions
        self._block_on_conflict = block_on_conflict
        self._edit_source = edit_source

    async def process(
        self,
        operation: MemoryOperation,
        *,
        edit_source: EditSource | None = None,
    ) -> OperationOutcome:
        kind = operation.kind
        with timed(f"processor.{kind.value.lower()}"):
            outcome = await self._process(operation, edit_source or self._edit_source)
        record_outcome(kind=kind.value, status=outcome.status.value)
        logger.info(
            "%s %s: %s", kind.value, outcome.status.value, outcome.message
        )
        if outcome.applied and outcome.memory_id:
            await self._prune(outcome.memory_id)
        return outcome

    async def process_batch(
        self, operations: Sequence[MemoryOperation]
    ) -> list[OperationOutcome]:
        """Process operations sequentially, in order."""
        return [await self.process(op) for op in operations]

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _process(
        self, operation: MemoryOperation, edit_source: EditSource
    ) -> OperationOutcome:
        if not operation.is_valid():
            return self._outcome(
                operation,
                OutcomeStatus.REJECTED,
                error_code="invalid_operation",
                message=f"Operation failed structural validation: {operation.describe()}",
            )

        async with self._store.lock:
            try:
                validation = await self._validator.validate(operation)
            except (RecallError, RedisError) as exc:
                logger.warning("Validation aborted for %s: %s", operation.describe(), exc)
                return self._outcome(
                    operation,
                    OutcomeStatus.FAILED,
                    error_code=failure_code(exc),
                    message=f"Validation could not complete: {exc}",
                )
            if not validation.success:
                return self._outcome(
                    operation,
                    OutcomeStatus.REJECTED,
                    error_code=validation.error_code,
                    message=validation.message,
                    warnings=validation.warnings,
                )

            conflicts = await self._resolver.detect(operation)
            if (
                self._block_on_conflict
                and conflicts.recommended_action == RecommendedAction.BLOCK_OPERATION
            ):
                return self._outcome(
                    operation,
                    OutcomeStatus.REJECTED,
                    error_code="blocked_by_conflict",
                    message=conflicts.log_summary(),
                    warnings=validation.warnings,
                    conflicts=conflicts,
                )

            await self._log(AuditEventType.OPERATION_START, operation)
            try:
                outcome = await self._apply(operation, edit_source)
            except MemoryNotFoundError as exc:
                await self._log(
                    AuditEventType.OPERATION_FAILED, operation, error=str(exc)
                )
                return self._outcome(
                    operation,
                    OutcomeStatus.REJECTED,
                    error_code="memory_not_found",
                    message=str(exc),
                    warnings=validation.warnings,
                    conflicts=conflicts,
                )
            except (RecallError, RedisError) as exc:
                logger.warning("Applying %s failed: %s", operation.describe(), exc)
                await self._log(
                    AuditEventType.OPERATION_FAILED, operation, error=str(exc)
                )
                return self._outcome(
                    operation,
                    OutcomeStatus.FAILED,
                    error_code=failure_code(exc),
                    message=f"Operation failed, nothing was written: {exc}",
                    warnings=validation.warnings,
                    conflicts=conflicts,
                )

        outcome = outcome.model_copy(
            update={"warnings": validation.warnings, "conflicts": conflicts}
        )
        await self._log(
            AuditEventType.OPERATION_COMPLETE,
            operation,
            memory_id=outcome.memory_id,
            version_number=outcome.version_number,
        )
        return outcome

    async def _apply(
        self, operation: MemoryOperation, edit_source: EditSource
    ) -> OperationOutcome:
        match operation:
            case CreateOperation():
                return await self._apply_create(operation, edit_source)
            case UpdateOperation():
                return await self._apply_update(operation, edit_source)
            case ReplaceOperation():
                return await self._apply_replace(operation, edit_source)
            case DeleteOperation():
                return await self._apply_delete(operation)
            case MergeOperation():
                return await self._apply_merge(operation, edit_source)
            case _:
                assert_never(operation)

    async def _prune(self, memory_id: str) -> None:
        try:
            await self._versions.prune_versions(memory_id)
        except (RecallError, RedisError) as exc:
            logger.warning("Version pruning for %s failed: %s", memory_id, exc)

    # ------------------------------------------------------------------
    # Per-kind mutations
    # ------------------------------------------------------------------

    async def _require(self, memory_id: str) -> Memory:
        memory = await self._store.get(memory_id, track_access=False)
        if memory is None:
            raise MemoryNotFoundError(memory_id)
        return memory

    async def _apply_create(
        self, op: CreateOperation, edit_source: EditSource
    ) -> OperationOutcome:
        vector = await self._embedder.embed(op.content)
        memory = Memory(
            content=op.content.strip(),
            type=op.memory_type,
            importance=op.importance,
            embedding=vector,
            metadata=dict(op.metadata or {}),
        )
        async with self._store.transaction() as tx:
            tx.put_memory(memory)
            version = self._versions.stage_new_version(
                tx,
                memory,
                [],
                edit_reason=op.describe(),
                edit_source=edit_source,
                edit_confidence=op.confidence,
                agent_reasoning=op.reasoning,
            )
        return self._outcome(
            op,
            OutcomeStatus.APPLIED,
            memory_id=memory.id,
            version_number=version.version_number,
            affected=[memory.id],
            message=f"Created memory {memory.id}",
        )

    async def _apply_update(
        self, op: UpdateOperation, edit_source: EditSource
    ) -> OperationOutcome:
        target = await self._require(op.memory_id)
        changes: dict = {}
        if op.new_content is not None:
            changes["content"] = op.new_content.strip()
            changes["embedding"] = await self._embedder.embed(op.new_content)
        if op.new_type is not None:
            changes["type"] = op.new_type
        if op.new_importance is not None:
            changes["importance"] = op.new_importance
        if op.new_metadata is not None:
            changes["metadata"] = {**target.metadata, **op.new_metadata}
        updated = Memory.model_validate({**target.model_dump(), **changes})
        version = await self._commit_edit(op, target, updated, edit_source)
        return self._outcome(
            op,
            OutcomeStatus.APPLIED,
            memory_id=updated.id,
            version_number=version,
            affected=[updated.id],
            message=f"Updated memory {updated.id} ({', '.join(sorted(changes))})",
        )

    async def _apply_replace(
        self, op: ReplaceOperation, edit_source: EditSource
    ) -> OperationOutcome:
        target = await self._require(op.memory_id)
        vector = await self._embedder.embed(op.new_content)
        replaced = Memory.model_validate(
            {
                **target.model_dump(),
                "content": op.new_content.strip(),
                "type": op.new_type,
                "importance": op.new_importance,
                "embedding": vector,
                "metadata": dict(op.new_metadata or {}),
            }
        )
        version = await self._commit_edit(op, target, replaced, edit_source)
        return self._outcome(
            op,
            OutcomeStatus.APPLIED,
            memory_id=replaced.id,
            version_number=version,
            affected=[replaced.id],
            message=f"Replaced memory {replaced.id}",
        )

    async def _commit_edit(
        self,
        op: UpdateOperation | ReplaceOperation,
        before: Memory,
        after: Memory,
        edit_source: EditSource,
    ) -> int:
        history = await self._versions.get_history(before.id)
        async with self._store.transaction() as tx:
            history = self._versions.stage_snapshot(tx, before, history)
            tx.put_memory(after)
            version = self._versions.stage_new_version(
                tx,
                after,
                history,
                edit_reason=op.describe(),
                edit_source=edit_source,
                edit_confidence=op.confidence,
                agent_reasoning=op.reasoning,
            )
        return version.version_number

    async def _apply_delete(self, op: DeleteOperation) -> OperationOutcome:
        target = await self._require(op.memory_id)
        history = await self._versions.get_history(target.id)
        async with self._store.transaction() as tx:
            history = self._versions.stage_snapshot(tx, target, history)
            self._versions.stage_close_history(tx, history)
            removed = await tx.remove_memory(target.id)
        return self._outcome(
            op,
            OutcomeStatus.APPLIED,
            memory_id=target.id,
            affected=[target.id],
            message=f"Deleted memory {target.id} and {len(removed)} relationship(s)",
        )

    async def _apply_merge(
        self, op: MergeOperation, edit_source: EditSource
    ) -> OperationOutcome:
        sources = [await self._require(source_id) for source_id in op.source_memory_ids]
        vector = await self._embedder.embed(op.merged_content)
        merged = Memory(
            content=op.merged_content.strip(),
            type=op.merged_type,
            importance=op.merged_importance,
            embedding=vector,
            emotional_weight=max(s.emotional_weight for s in sources),
            metadata={
                **(op.merged_metadata or {}),
                "merged_from": [s.id for s in sources],
            },
        )
        histories = {s.id: await self._versions.get_history(s.id) for s in sources}

        async with self._store.transaction() as tx:
            tx.put_memory(merged)
            version = self._versions.stage_new_version(
                tx,
                merged,
                [],
                edit_reason=f"Merged from {len(sources)} memories",
                edit_source=edit_source,
                edit_confidence=op.confidence,
                agent_reasoning=op.reasoning,
            )
            for source in sources:
                if op.delete_source_memories:
                    history = self._versions.stage_snapshot(
                        tx, source, histories[source.id]
                    )
                    self._versions.stage_close_history(tx, history)
                    await tx.remove_memory(source.id)
                else:
                    tx.put_relationship(
                        MemoryRelationship(
                            from_memory_id=merged.id,
                            to_memory_id=source.id,
                            relationship_type=RelationshipType.GENERALIZES,
                            strength=GENERALIZES_STRENGTH,
                        )
                    )

        verb = "deleted" if op.delete_source_memories else "kept"
        return self._outcome(
            op,
            OutcomeStatus.APPLIED,
            memory_id=merged.id,
            version_number=version.version_number,
            affected=[merged.id, *(s.id for s in sources)],
            message=(
                f"Merged {len(sources)} memories into {merged.id} (sources {verb})"
            ),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _outcome(
        operation: MemoryOperation,
        status: OutcomeStatus,
        *,
        memory_id: str | None = None,
        version_number: int | None = None,
        affected: Sequence[str] = (),
        error_code: str | None = None,
        message: str = "",
        warnings: Sequence[str] = (),
        conflicts: ConflictResolution | None = None,
    ) -> OperationOutcome:
        if memory_id is None and len(operation.target_memory_ids) == 1:
            memory_id = operation.target_memory_ids[0]
        return OperationOutcome(
            operation_type=operation.kind,
            status=status,
            memory_id=memory_id,
            version_number=version_number,
            affected_memory_ids=list(affected),
            error_code=error_code,
            message=message,
            warnings=list(warnings),
            conflicts=conflicts,
        )

    async def _log(
        self,
        event_type: AuditEventType,
        operation: MemoryOperation,
        *,
        memory_id: str | None = None,
        version_number: int | None = None,
        error: str | None = None,
    ) -> None:
        targets = operation.target_memory_ids
        payload: dict = {}
        if version_number is not None:
            payload["version_number"] = version_number
        if len(targets) > 1:
            payload["source_memory_ids"] = targets
        if error is not None:
            payload["error"] = error
        await self._versions.audit.log(
            AuditEvent(
                event_type=event_type,
                owner_id=self._store.owner_id,
                memory_id=memory_id or (targets[0] if len(targets) == 1 else None),
                operation_type=operation.kind.value,
                description=operation.describe(),
                confidence=operation.confidence,
                agent_reasoning=operation.reasoning or None,
                payload=payload,
            )
        )
