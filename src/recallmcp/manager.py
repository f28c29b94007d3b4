"""Top-level memory facade shared by every owner.

``MemoryManager`` wires one bundle of engines per owner on top of a
``MemoryStoreFactory`` and exposes the memory lifecycle: direct edits,
retrieval, operation processing, conversation turns, context formatting,
statistics and owner deletion.  With memory disabled every mutating or
retrieval call is a no-op returning an empty result.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel
from pydantic import Field

from recallmcp.audit import AuditEvent
from recallmcp.audit import AuditEventType
from recallmcp.audit import AuditLogger
from recallmcp.audit import VersionManager
from recallmcp.config import AuditConfig
from recallmcp.config import ConflictConfig
from recallmcp.config import LLMConfig
from recallmcp.config import MemorySettings
from recallmcp.config import RetrievalConfig
from recallmcp.config import ValidationConfig
from recallmcp.engine.conflicts import ConflictResolver
from recallmcp.engine.context import format_memory_context
from recallmcp.engine.embedding import Embedder
from recallmcp.engine.llm_adapters import LLMAdapter
from recallmcp.engine.llm_adapters import NoopLLMAdapter
from recallmcp.engine.processor import OperationOutcome
from recallmcp.engine.processor import OperationProcessor
from recallmcp.engine.processor import OutcomeStatus
from recallmcp.engine.proposals import ProposalEngine
from recallmcp.engine.retrieval import analyze_conversation_context
from recallmcp.engine.retrieval import ContextAnalysis
from recallmcp.engine.retrieval import RetrievalEngine
from recallmcp.engine.retrieval import should_trigger_retrieval
from recallmcp.engine.validator import EditValidator
from recallmcp.errors import MemoryNotFoundError
from recallmcp.models import EditSource
from recallmcp.models import Memory
from recallmcp.models import MemoryRelationship
from recallmcp.models import MemoryType
from recallmcp.models import RelationshipType
from recallmcp.observability import timed
from recallmcp.operations import MemoryOperation
from recallmcp.operations.schemas import MAX_CONTENT_LENGTH
from recallmcp.operations.schemas import MIN_CONTENT_LENGTH
from recallmcp.store.base import MemoryStore
from recallmcp.store.base import sanitize_owner_id
from recallmcp.store.factory import MemoryStoreFactory

logger = logging.getLogger(__name__)

_SECONDS_PER_DAY = 86400


def _check_content_length(content: str) -> None:
    length = len(content.strip())
    if not MIN_CONTENT_LENGTH <= length <= MAX_CONTENT_LENGTH:
        raise ValueError(
            f"content must be {MIN_CONTENT_LENGTH}-{MAX_CONTENT_LENGTH} "
            f"characters, got {length}"
        )


# ---------------------------------------------------------------------------
# Result models
# ---------------------------------------------------------------------------


class MemoryStats(BaseModel):
    """Aggregate counters for one owner's store."""

    owner_id: str
    total_memories: int = 0
    total_relationships: int = 0
    total_storage_size: int = Field(
        default=0,
        description="Sum of content lengths, in characters.",
    )
    total_versions: int = 0
    by_type: dict[str, int] = Field(default_factory=dict)


class TurnResult(BaseModel):
    """Everything that happened while processing one conversation turn."""

    owner_id: str
    skipped: bool = Field(
        default=False,
        description="True when memory is disabled and nothing ran.",
    )
    retrieved_memory_ids: list[str] = Field(default_factory=list)
    outcomes: list[OperationOutcome] = Field(default_factory=list)
    exclusion_rationale: str | None = None
    errors: list[str] = Field(default_factory=list)

    @property
    def applied_count(self) -> int:
        return sum(1 for o in self.outcomes if o.applied)


class MaintenanceReport(BaseModel):
    owner_id: str
    memories_over_limit: int = 0
    memories_expired: int = 0
    versions_expired: int = 0


@dataclass
class OwnerMemory:
    """Engines bound to one owner's store."""

    owner_id: str
    store: MemoryStore
    audit: AuditLogger
    retrieval: RetrievalEngine
    validator: EditValidator
    resolver: ConflictResolver
    versions: VersionManager
    processor: OperationProcessor


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class MemoryManager:
    """Entry point for every memory operation, keyed by owner id."""

    def __init__(
        self,
        factory: MemoryStoreFactory,
        embedder: Embedder,
        llm: LLMAdapter | None = None,
        *,
        settings: MemorySettings | None = None,
        llm_config: LLMConfig | None = None,
        retrieval_config: RetrievalConfig | None = None,
        validation_config: ValidationConfig | None = None,
        conflict_config: ConflictConfig | None = None,
        audit_config: AuditConfig | None = None,
        block_on_conflict: bool = False,
    ) -> None:
        self._factory = factory
        self._embedder = embedder
        self._settings = settings or MemorySettings()
        self._retrieval_config = retrieval_config or RetrievalConfig()
        self._validation_config = validation_config or ValidationConfig()
        self._conflict_config = conflict_config or ConflictConfig()
        self._audit_config = audit_config or AuditConfig()
        self._block_on_conflict = block_on_conflict
        self._proposals = ProposalEngine(llm or NoopLLMAdapter(), llm_config)
        self._owners: dict[str, OwnerMemory] = {}
        self._lock = asyncio.Lock()

    @property
    def settings(self) -> MemorySettings:
        return self._settings

    @property
    def enabled(self) -> bool:
        return self._settings.memory_enabled

    @property
    def factory(self) -> MemoryStoreFactory:
        return self._factory

    # ------------------------------------------------------------------
    # Owner bundles
    # ------------------------------------------------------------------

    async def for_owner(self, owner_id: str) -> OwnerMemory:
        """Return the cached engine bundle for *owner_id*, building it once."""
        owner_key = sanitize_owner_id(owner_id)
        async with self._lock:
            bundle = self._owners.get(owner_key)
            if bundle is not None and bundle.store.is_ready:
                return bundle
            store = await self._factory.get_store(owner_id)
            audit = AuditLogger(self._audit_config, owner_key)
            threshold = self._settings.importance_threshold
            validator = EditValidator(
                store,
                self._embedder,
                config=self._validation_config,
                importance_threshold=threshold,
            )
            resolver = ConflictResolver(
                store, self._embedder, config=self._conflict_config
            )
            versions = VersionManager(store, audit, self._audit_config)
            bundle = OwnerMemory(
                owner_id=owner_id,
                store=store,
                audit=audit,
                retrieval=RetrievalEngine(
                    store,
                    self._embedder,
                    config=self._retrieval_config,
                    importance_threshold=threshold,
                ),
                validator=validator,
                resolver=resolver,
                versions=versions,
                processor=OperationProcessor(
                    store,
                    self._embedder,
                    validator,
                    resolver,
                    versions,
                    block_on_conflict=self._block_on_conflict,
                ),
            )
            self._owners[owner_key] = bundle
            return bundle

    # ------------------------------------------------------------------
    # Direct edits
    # ------------------------------------------------------------------

    async def save_memory(
        self,
        owner_id: str,
        content: str,
        *,
        memory_type: MemoryType = MemoryType.FACT,
        importance: float = 0.5,
        emotional_weight: float = 0.0,
        metadata: dict[str, Any] | None = None,
    ) -> Memory | None:
        """Store a memory as-is, bypassing validation (user-sourced edit).

        Only the content length is checked; out-of-range content raises
        ``ValueError``.
        """
        if not self.enabled:
            return None
        _check_content_length(content)
        owner = await self.for_owner(owner_id)
        memory = Memory(
            content=content,
            type=memory_type,
            importance=importance,
            emotional_weight=emotional_weight,
            embedding=await self._embedder.embed(content),
            metadata=dict(metadata or {}),
        )
        async with owner.store.lock:
            await owner.versions.record_edit(
                memory, previous=None, edit_reason="Created directly"
            )
        return memory

    async def get_memory(self, owner_id: str, memory_id: str) -> Memory | None:
        """Fetch a memory, recording the access."""
        if not self.enabled:
            return None
        owner = await self.for_owner(owner_id)
        return await owner.store.get(memory_id)

    async def update_memory(self, owner_id: str, memory: Memory) -> Memory | None:
        """Overwrite a memory with *memory*, re-embedding changed content.

        Raises ``MemoryNotFoundError`` when it does not exist and
        ``ValueError`` for out-of-range content.
        """
        if not self.enabled:
            return None
        _check_content_length(memory.content)
        owner = await self.for_owner(owner_id)
        async with owner.store.lock:
            previous = await owner.store.get(memory.id, track_access=False)
            if previous is None:
                raise MemoryNotFoundError(memory.id)
            if memory.content != previous.content or not memory.embedding:
                memory = memory.model_copy(
                    update={"embedding": await self._embedder.embed(memory.content)}
                )
            await owner.versions.record_edit(
                memory, previous=previous, edit_reason="Updated directly"
            )
        return memory

    async def delete_memory(self, owner_id: str, memory_id: str) -> bool:
        if not self.enabled:
            return False
        owner = await self.for_owner(owner_id)
        async with owner.store.lock:
            return await owner.versions.record_delete(memory_id)

    async def create_relationship(
        self,
        owner_id: str,
        from_memory_id: str,
        to_memory_id: str,
        relationship_type: RelationshipType = RelationshipType.RELATED_TO,
        strength: float = 0.5,
        *,
        bidirectional: bool = False,
    ) -> list[MemoryRelationship]:
        """Link two memories; the reverse edge is only added when asked.

        ``bidirectional=True`` is accepted only for SIMILAR and RELATED_TO.
        """
        if not self.enabled:
            return []
        relationship = MemoryRelationship(
            from_memory_id=from_memory_id,
            to_memory_id=to_memory_id,
            relationship_type=relationship_type,
            strength=strength,
        )
        edges = [relationship]
        if bidirectional:
            edges.append(relationship.reversed())
        owner = await self.for_owner(owner_id)
        async with owner.store.lock:
            for memory_id in {from_memory_id, to_memory_id}:
                if not await owner.store.exists(memory_id):
                    raise MemoryNotFoundError(memory_id)
            async with owner.store.transaction() as tx:
                for edge in edges:
                    tx.put_relationship(edge)
        return edges

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def apply_operation(
        self,
        owner_id: str,
        operation: MemoryOperation,
        *,
        edit_source: EditSource = EditSource.AGENT,
    ) -> OperationOutcome:
        if not self.enabled:
            return OperationOutcome(
                operation_type=operation.kind,
                status=OutcomeStatus.SKIPPED,
                message="Memory is disabled",
            )
        owner = await self.for_owner(owner_id)
        return await owner.processor.process(operation, edit_source=edit_source)

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def should_trigger_retrieval(
        self, message: str, history: Sequence[str] | None = None
    ) -> bool:
        if not self.enabled:
            return False
        return should_trigger_retrieval(message, history)

    def analyze_conversation_context(
        self, history: Sequence[str] | None
    ) -> ContextAnalysis:
        return analyze_conversation_context(history)

    async def retrieve_relevant(
        self,
        owner_id: str,
        query: str,
        history: Sequence[str] | None = None,
        *,
        now: float | None = None,
    ) -> list[Memory]:
        if not self.enabled:
            return []
        owner = await self.for_owner(owner_id)
        return await owner.retrieval.retrieve(query, history, now=now)

    async def semantic_search(
        self, owner_id: str, text: str, max_results: int | None = None
    ) -> list[Memory]:
        if not self.enabled:
            return []
        owner = await self.for_owner(owner_id)
        return await owner.retrieval.semantic_search(text, max_results)

    async def format_context(
        self,
        owner_id: str,
        memories: Sequence[Memory],
        *,
        max_tokens: int | None = None,
        now: float | None = None,
    ) -> str:
        """Render *memories* with their relationships as a prompt block."""
        if not memories:
            return ""
        owner = await self.for_owner(owner_id)
        relationships = {
            m.id: await owner.store.get_relationships_for(m.id) for m in memories
        }
        related_ids = {
            rel.other_end(memory_id)
            for memory_id, rels in relationships.items()
            for rel in rels
        }
        previews = {
            m.id: m.preview() for m in await owner.store.get_many(sorted(related_ids))
        }
        return format_memory_context(
            memories,
            relationships,
            max_tokens=max_tokens or self._settings.max_context_tokens,
            previews=previews,
            now=now,
        )

    # ------------------------------------------------------------------
    # Conversation turns
    # ------------------------------------------------------------------

    async def process_conversation(
        self,
        owner_id: str,
        user_message: str,
        assistant_response: str,
        history: Sequence[str] | None = None,
    ) -> TurnResult:
        """Retrieve context, ask the proposal source, apply what it proposes."""
        if not self.enabled:
            return TurnResult(owner_id=owner_id, skipped=True)
        owner = await self.for_owner(owner_id)
        with timed("manager.process_conversation"):
            memories = await owner.retrieval.retrieve(user_message, history)
            batch = await self._proposals.propose(
                user_message, assistant_response, memories
            )
            outcomes = await owner.processor.process_batch(batch.operations)
        if not batch.operations and batch.exclusion_rationale:
            logger.info("No memory operations: %s", batch.exclusion_rationale)
        return TurnResult(
            owner_id=owner_id,
            retrieved_memory_ids=[m.id for m in memories],
            outcomes=outcomes,
            exclusion_rationale=batch.exclusion_rationale,
            errors=batch.errors,
        )

    async def generate_search_queries(
        self, user_message: str, history: Sequence[str] | None = None
    ) -> list[str]:
        if not self.enabled:
            return []
        return await self._proposals.search_queries(user_message, history or ())

    # ------------------------------------------------------------------
    # Statistics, export, maintenance
    # ------------------------------------------------------------------

    async def memory_stats(self, owner_id: str) -> MemoryStats:
        owner = await self.for_owner(owner_id)
        store = owner.store
        memories = await store.get_all()
        by_type: dict[str, int] = {}
        for memory in memories:
            by_type[memory.type.value] = by_type.get(memory.type.value, 0) + 1
        return MemoryStats(
            owner_id=owner_id,
            total_memories=len(memories),
            total_relationships=await store.relationship_count(),
            total_storage_size=sum(len(m.content) for m in memories),
            total_versions=len(await store.get_version_log()),
            by_type=by_type,
        )

    async def all_memory_stats(self) -> list[MemoryStats]:
        """Statistics for every owner with persisted memories."""
        return [
            await self.memory_stats(owner_key)
            for owner_key in await self._factory.known_owner_keys()
        ]

    async def export_memories(self, owner_id: str) -> str:
        owner = await self.for_owner(owner_id)
        return await owner.store.export_json()

    async def run_maintenance(
        self, owner_id: str, *, now: float | None = None
    ) -> MaintenanceReport:
        """Apply the memory cap, memory retention and version retention.

        Evicted memories go through the versioned delete path so their
        history stays readable.
        """
        now = time.time() if now is None else now
        owner = await self.for_owner(owner_id)
        cutoff = now - self._settings.retention_days * _SECONDS_PER_DAY
        async with owner.store.lock:
            memories = await owner.store.get_all()
            memories.sort(key=lambda m: (m.importance, m.timestamp), reverse=True)
            keep = max(self._settings.max_memories, 0)
            over_limit = [m.id for m in memories[keep:]]
            expired = [
                m.id
                for m in memories[:keep]
                if m.timestamp < cutoff
            ]
            for memory_id in over_limit + expired:
                await owner.versions.record_delete(memory_id)
        versions_expired = await owner.versions.apply_retention(now)
        logger.info(
            "Maintenance for %s: %d over limit, %d expired, %d versions expired",
            owner_id,
            len(over_limit),
            len(expired),
            versions_expired,
        )
        return MaintenanceReport(
            owner_id=owner_id,
            memories_over_limit=len(over_limit),
            memories_expired=len(expired),
            versions_expired=versions_expired,
        )

    async def delete_owner(self, owner_id: str) -> int:
        """Irreversibly discard an owner's store and audit log.

        A single OWNER_DELETED tombstone event is left in a fresh log.
        Returns the number of store keys removed.
        """
        owner_key = sanitize_owner_id(owner_id)
        async with self._lock:
            self._owners.pop(owner_key, None)
        removed = await self._factory.delete_owner(owner_id)
        audit = AuditLogger(self._audit_config, owner_key)
        await audit.delete()
        await audit.log(
            AuditEvent(
                event_type=AuditEventType.OWNER_DELETED,
                owner_id=owner_id,
                description="All memories, relationships and versions discarded",
                payload={"keys_removed": removed},
            )
        )
        return removed

    async def close(self) -> None:
        async with self._lock:
            self._owners.clear()
        await self._factory.close_all()
