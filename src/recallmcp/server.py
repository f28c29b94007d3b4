"""RecallMCP: FastMCP server exposing long-term conversational memory.

Tools delegate to a ``MemoryManager`` backed by per-owner Redis stores.
Call ``configure(redis_url=...)`` before using the server.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import asdict
from time import perf_counter

from dotenv import load_dotenv
from fastmcp import FastMCP
from pydantic import ValidationError
from redis.exceptions import RedisError  # type: ignore[import-untyped]

from recallmcp.config import AuditConfig
from recallmcp.config import ConflictConfig
from recallmcp.config import EmbeddingConfig
from recallmcp.config import LLMConfig
from recallmcp.config import MemorySettings
from recallmcp.config import RetrievalConfig
from recallmcp.config import StoreConfig
from recallmcp.config import ValidationConfig
from recallmcp.engine import build_embedder
from recallmcp.engine import build_llm_adapter
from recallmcp.engine import Embedder
from recallmcp.engine import LLMAdapter
from recallmcp.engine.processor import failure_code
from recallmcp.errors import DimensionMismatchError
from recallmcp.errors import EmbeddingError
from recallmcp.errors import MemoryNotFoundError
from recallmcp.errors import StoreError
from recallmcp.errors import VersionNotFoundError
from recallmcp.manager import MemoryManager
from recallmcp.observability import record_latency
from recallmcp.operations import parse_operation
from recallmcp.schemas import ApplyOperationResult
from recallmcp.schemas import AuditTrailResult
from recallmcp.schemas import BackupResult
from recallmcp.schemas import DeleteOwnerResult
from recallmcp.schemas import GetMemoryResult
from recallmcp.schemas import HistoryResult
from recallmcp.schemas import LinkInput
from recallmcp.schemas import LinkResult
from recallmcp.schemas import MemoriesResult
from recallmcp.schemas import MemoryView
from recallmcp.schemas import OwnerInput
from recallmcp.schemas import ProcessTurnResult
from recallmcp.schemas import RememberInput
from recallmcp.schemas import RememberResult
from recallmcp.schemas import RetrieveInput
from recallmcp.schemas import RollbackInput
from recallmcp.schemas import RollbackResult
from recallmcp.schemas import StatsResult
from recallmcp.schemas import TurnInput
from recallmcp.schemas import VersionView
from recallmcp.store import MemoryStoreFactory

logger = logging.getLogger(__name__)

mcp = FastMCP("RecallMCP")

# ---------------------------------------------------------------------------
# Manager instance (set via configure())
# ---------------------------------------------------------------------------

_manager: MemoryManager | None = None


async def configure(
    redis_url: str = "redis://localhost:6379",
    *,
    key_prefix: str = "recallmcp",
    settings: MemorySettings | None = None,
    embedder: Embedder | None = None,
    embedding_config: EmbeddingConfig | None = None,
    llm_adapter: LLMAdapter | None = None,
    llm_config: LLMConfig | None = None,
    retrieval_config: RetrievalConfig | None = None,
    validation_config: ValidationConfig | None = None,
    conflict_config: ConflictConfig | None = None,
    audit_config: AuditConfig | None = None,
    block_on_conflict: bool = False,
) -> None:
    """Initialize the memory backend.

    Must be called before the MCP tools can function.  Without an explicit
    ``llm_adapter`` the proposal source is built only when ``llm_config``
    is given; otherwise conversation turns propose nothing.
    """
    global _manager
    if _manager is not None:
        try:
            await _manager.factory.aclose()
        except RuntimeError:
            # Tests may reconfigure across event loops.
            pass

    if llm_adapter is None and llm_config is not None:
        llm_adapter = build_llm_adapter(llm_config)
    factory = MemoryStoreFactory.from_url(
        redis_url, StoreConfig(redis_url=redis_url, key_prefix=key_prefix)
    )
    _manager = MemoryManager(
        factory,
        embedder or build_embedder(embedding_config or EmbeddingConfig()),
        llm_adapter,
        settings=settings,
        llm_config=llm_config,
        retrieval_config=retrieval_config,
        validation_config=validation_config,
        conflict_config=conflict_config,
        audit_config=audit_config,
        block_on_conflict=block_on_conflict,
    )


async def shutdown() -> None:
    """Close every owner store and the Redis client."""
    global _manager
    if _manager is not None:
        await _manager.close()
        await _manager.factory.aclose()
        _manager = None


async def _reset_memory() -> None:
    """Delete every owner's store data; exposed for test cleanup."""
    if _manager is None:
        return
    factory = _manager.factory
    for owner_key in await factory.known_owner_keys():
        await factory.delete_owner(owner_key)


def _get_manager() -> MemoryManager:
    """Return the memory manager or raise."""
    if _manager is None:
        raise RuntimeError("Memory manager not configured. Call configure() first.")
    return _manager


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_DISABLED_MESSAGE = "Memory is disabled"


def _validation_message(exc: ValidationError) -> str:
    err = exc.errors()[0] if exc.errors() else {}
    loc = ".".join(str(part) for part in err.get("loc", ()))
    msg = str(err.get("msg", "Invalid input"))
    return f"{loc}: {msg}" if loc else msg


def _record(tool: str, start: float, ok: bool) -> None:
    record_latency(
        operation=f"mcp.{tool}",
        duration_ms=(perf_counter() - start) * 1000,
        ok=ok,
    )


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool
async def remember(
    owner_id: str,
    content: str,
    memory_type: str = "FACT",
    importance: float = 0.5,
    emotional_weight: float = 0.0,
    metadata: dict | None = None,
) -> RememberResult:
    """Store a memory directly, as a user edit.

    Args:
        owner_id: Persona or user owning the memory.
        content: Free-text content.
        memory_type: FACT, PREFERENCE, EMOTION, EVENT, RELATIONSHIP, MERGED or SUMMARY.
        importance: Importance in [0, 1].
        emotional_weight: Emotional salience in [0, 1].
        metadata: Optional key/value data.
    """
    start = perf_counter()
    ok = False
    try:
        manager = _get_manager()
        try:
            validated = RememberInput.model_validate(
                {
                    "owner_id": owner_id,
                    "content": content,
                    "memory_type": memory_type.strip().upper(),
                    "importance": importance,
                    "emotional_weight": emotional_weight,
                    "metadata": metadata,
                }
            )
        except ValidationError as exc:
            return RememberResult(
                status="rejected",
                error_code="validation_error",
                message=_validation_message(exc),
            )

        try:
            memory = await manager.save_memory(
                validated.owner_id,
                validated.content,
                memory_type=validated.memory_type,
                importance=validated.importance,
                emotional_weight=validated.emotional_weight,
                metadata=validated.metadata,
            )
        except (EmbeddingError, DimensionMismatchError, StoreError, RedisError) as exc:
            logger.warning("remember failed for owner %s: %s", owner_id, exc)
            return RememberResult(
                status="failed", error_code=failure_code(exc), message=str(exc)
            )
        except ValueError as exc:
            return RememberResult(
                status="rejected", error_code="validation_error", message=str(exc)
            )
        if memory is None:
            return RememberResult(status="skipped", message=_DISABLED_MESSAGE)
        ok = True
        return RememberResult(memory_id=memory.id, message="Memory stored")
    finally:
        _record("remember", start, ok)


@mcp.tool
async def apply_operation(owner_id: str, operation: dict) -> ApplyOperationResult:
    """Validate, check and apply one memory operation.

    Args:
        owner_id: Persona or user owning the memories.
        operation: Operation object with a ``type`` of CREATE, UPDATE,
            REPLACE, DELETE or MERGE and camelCase fields.
    """
    start = perf_counter()
    ok = False
    try:
        manager = _get_manager()
        try:
            OwnerInput.model_validate({"owner_id": owner_id})
            parsed = parse_operation(operation)
        except ValidationError as exc:
            return ApplyOperationResult(
                status="rejected",
                error_code="validation_error",
                message=_validation_message(exc),
            )
        except ValueError as exc:
            return ApplyOperationResult(
                status="rejected", error_code="validation_error", message=str(exc)
            )

        outcome = await manager.apply_operation(owner_id, parsed)
        ok = outcome.applied
        return ApplyOperationResult(
            status="ok" if outcome.applied else outcome.status.value,
            error_code=outcome.error_code,
            message=outcome.message,
            outcome=outcome,
        )
    finally:
        _record("apply_operation", start, ok)


@mcp.tool
async def process_turn(
    owner_id: str,
    user_message: str,
    assistant_response: str = "",
    history: list[str] | None = None,
) -> ProcessTurnResult:
    """Let the proposal source turn a conversation exchange into memory edits.

    Args:
        owner_id: Persona or user owning the memories.
        user_message: What the user said.
        assistant_response: What the assistant answered.
        history: Earlier messages, most recent last.
    """
    start = perf_counter()
    ok = False
    try:
        manager = _get_manager()
        try:
            validated = TurnInput.model_validate(
                {
                    "owner_id": owner_id,
                    "user_message": user_message,
                    "assistant_response": assistant_response,
                    "history": history or [],
                }
            )
        except ValidationError as exc:
            return ProcessTurnResult(
                status="rejected",
                error_code="validation_error",
                message=_validation_message(exc),
            )

        turn = await manager.process_conversation(
            validated.owner_id,
            validated.user_message,
            validated.assistant_response,
            validated.history,
        )
        if turn.skipped:
            return ProcessTurnResult(
                status="skipped", message=_DISABLED_MESSAGE, turn=turn
            )
        ok = True
        return ProcessTurnResult(
            message=f"{turn.applied_count} of {len(turn.outcomes)} operation(s) applied",
            turn=turn,
        )
    finally:
        _record("process_turn", start, ok)


@mcp.tool
async def retrieve_memories(
    owner_id: str,
    query: str,
    history: list[str] | None = None,
    include_context: bool = False,
) -> MemoriesResult:
    """Retrieve the memories most relevant to a message.

    Args:
        owner_id: Persona or user owning the memories.
        query: The current message.
        history: Earlier messages used to boost related memories.
        include_context: Also return a prompt-ready context block.
    """
    start = perf_counter()
    ok = False
    try:
        manager = _get_manager()
        try:
            validated = RetrieveInput.model_validate(
                {"owner_id": owner_id, "query": query, "history": history or []}
            )
        except ValidationError as exc:
            return MemoriesResult(
                status="rejected",
                error_code="validation_error",
                message=_validation_message(exc),
            )

        memories = await manager.retrieve_relevant(
            validated.owner_id, validated.query, validated.history
        )
        context = None
        if include_context:
            context = await manager.format_context(validated.owner_id, memories)
        ok = True
        return MemoriesResult(
            memories=[MemoryView.from_memory(m) for m in memories],
            context=context,
        )
    finally:
        _record("retrieve_memories", start, ok)


@mcp.tool
async def semantic_search(
    owner_id: str,
    query: str,
    max_results: int = 10,
) -> MemoriesResult:
    """Rank memories purely by embedding similarity to a query.

    Args:
        owner_id: Persona or user owning the memories.
        query: Natural language query.
        max_results: Maximum number of memories to return (1-100).
    """
    start = perf_counter()
    ok = False
    try:
        manager = _get_manager()
        try:
            validated = RetrieveInput.model_validate(
                {"owner_id": owner_id, "query": query, "max_results": max_results}
            )
        except ValidationError as exc:
            return MemoriesResult(
                status="rejected",
                error_code="validation_error",
                message=_validation_message(exc),
            )

        memories = await manager.semantic_search(
            validated.owner_id, validated.query, validated.max_results
        )
        ok = True
        return MemoriesResult(memories=[MemoryView.from_memory(m) for m in memories])
    finally:
        _record("semantic_search", start, ok)


@mcp.tool
async def get_memory(owner_id: str, memory_id: str) -> GetMemoryResult:
    """Fetch one memory with its relationships.

    Args:
        owner_id: Persona or user owning the memory.
        memory_id: Id of the memory.
    """
    start = perf_counter()
    ok = False
    try:
        manager = _get_manager()
        try:
            OwnerInput.model_validate({"owner_id": owner_id})
        except ValidationError as exc:
            return GetMemoryResult(
                status="rejected",
                error_code="validation_error",
                message=_validation_message(exc),
            )
        memory = await manager.get_memory(owner_id, memory_id)
        if memory is None:
            return GetMemoryResult(
                status="not_found",
                error_code="memory_not_found",
                message=f"Memory {memory_id} not found",
            )
        owner = await manager.for_owner(owner_id)
        relationships = await owner.store.get_relationships_for(memory_id)
        ok = True
        return GetMemoryResult(
            memory=MemoryView.from_memory(memory), relationships=relationships
        )
    finally:
        _record("get_memory", start, ok)


@mcp.tool
async def link_memories(
    owner_id: str,
    from_memory_id: str,
    to_memory_id: str,
    relationship_type: str = "RELATED_TO",
    strength: float = 0.5,
    bidirectional: bool = False,
) -> LinkResult:
    """Create a directed relationship between two memories.

    Args:
        owner_id: Persona or user owning the memories.
        from_memory_id: Source memory.
        to_memory_id: Target memory.
        relationship_type: SIMILAR, CONTRADICTS, BUILDS_ON, RELATED_TO,
            SPECIALIZES, GENERALIZES, FOLLOWS or PRECEDES.
        strength: Strength in [0, 1].
        bidirectional: Also add the reverse edge (SIMILAR and RELATED_TO only).
    """
    start = perf_counter()
    ok = False
    try:
        manager = _get_manager()
        try:
            validated = LinkInput.model_validate(
                {
                    "owner_id": owner_id,
                    "from_memory_id": from_memory_id,
                    "to_memory_id": to_memory_id,
                    "relationship_type": relationship_type.strip().upper(),
                    "strength": strength,
                    "bidirectional": bidirectional,
                }
            )
        except ValidationError as exc:
            return LinkResult(
                status="rejected",
                error_code="validation_error",
                message=_validation_message(exc),
            )

        try:
            edges = await manager.create_relationship(
                validated.owner_id,
                validated.from_memory_id,
                validated.to_memory_id,
                validated.relationship_type,
                validated.strength,
                bidirectional=validated.bidirectional,
            )
        except MemoryNotFoundError as exc:
            return LinkResult(
                status="rejected", error_code="memory_not_found", message=str(exc)
            )
        except ValueError as exc:
            return LinkResult(
                status="rejected", error_code="validation_error", message=str(exc)
            )
        if not edges:
            return LinkResult(status="skipped", message=_DISABLED_MESSAGE)
        ok = True
        return LinkResult(relationships=edges)
    finally:
        _record("link_memories", start, ok)


@mcp.tool
async def memory_history(
    owner_id: str, memory_id: str, limit: int | None = None
) -> HistoryResult:
    """List a memory's versions, newest first.

    Args:
        owner_id: Persona or user owning the memory.
        memory_id: Id of the memory (live or deleted).
        limit: Maximum number of versions; all when omitted.
    """
    start = perf_counter()
    ok = False
    try:
        manager = _get_manager()
        try:
            OwnerInput.model_validate({"owner_id": owner_id})
        except ValidationError as exc:
            return HistoryResult(
                memory_id=memory_id,
                status="rejected",
                error_code="validation_error",
                message=_validation_message(exc),
            )
        owner = await manager.for_owner(owner_id)
        history = list(reversed(await owner.versions.get_history(memory_id)))
        if limit is not None:
            history = history[: max(limit, 0)]
        ok = True
        return HistoryResult(
            memory_id=memory_id,
            versions=[VersionView.from_version(v) for v in history],
        )
    finally:
        _record("memory_history", start, ok)


@mcp.tool
async def rollback_memory(
    owner_id: str,
    memory_id: str,
    reason: str,
    version_number: int | None = None,
) -> RollbackResult:
    """Restore a memory to an earlier version, recorded as a new version.

    Args:
        owner_id: Persona or user owning the memory.
        memory_id: Id of the memory (a deleted memory is recreated).
        reason: Why the rollback is made.
        version_number: Version to restore; the original when omitted.
    """
    start = perf_counter()
    ok = False
    try:
        manager = _get_manager()
        try:
            validated = RollbackInput.model_validate(
                {
                    "owner_id": owner_id,
                    "memory_id": memory_id,
                    "reason": reason,
                    "version_number": version_number,
                }
            )
        except ValidationError as exc:
            return RollbackResult(
                status="rejected",
                error_code="validation_error",
                message=_validation_message(exc),
            )

        owner = await manager.for_owner(validated.owner_id)
        try:
            if validated.version_number is None:
                memory = await owner.versions.rollback_to_original(
                    validated.memory_id, validated.reason
                )
            else:
                memory = await owner.versions.rollback_to_version(
                    validated.memory_id, validated.version_number, validated.reason
                )
        except VersionNotFoundError as exc:
            return RollbackResult(
                status="not_found", error_code="version_not_found", message=str(exc)
            )
        ok = True
        return RollbackResult(memory=MemoryView.from_memory(memory))
    finally:
        _record("rollback_memory", start, ok)


@mcp.tool
async def backup_memory(owner_id: str, memory_id: str, reason: str) -> BackupResult:
    """Append a backup version of a live memory.

    Args:
        owner_id: Persona or user owning the memory.
        memory_id: Id of the memory.
        reason: Why the backup is taken.
    """
    start = perf_counter()
    ok = False
    try:
        manager = _get_manager()
        try:
            OwnerInput.model_validate({"owner_id": owner_id})
        except ValidationError as exc:
            return BackupResult(
                status="rejected",
                error_code="validation_error",
                message=_validation_message(exc),
            )
        owner = await manager.for_owner(owner_id)
        try:
            backup = await owner.versions.create_backup(memory_id, reason)
        except MemoryNotFoundError as exc:
            return BackupResult(
                status="not_found", error_code="memory_not_found", message=str(exc)
            )
        ok = True
        return BackupResult(
            version_number=backup.version_number, message=backup.summary()
        )
    finally:
        _record("backup_memory", start, ok)


@mcp.tool
async def export_audit_trail(
    owner_id: str,
    start: float = 0.0,
    end: float | None = None,
) -> AuditTrailResult:
    """Render every version recorded in a time window as a text report.

    Args:
        owner_id: Persona or user owning the memories.
        start: Window start, Unix epoch seconds.
        end: Window end, Unix epoch seconds; now when omitted.
    """
    started = perf_counter()
    ok = False
    try:
        manager = _get_manager()
        try:
            OwnerInput.model_validate({"owner_id": owner_id})
        except ValidationError as exc:
            return AuditTrailResult(
                status="rejected",
                error_code="validation_error",
                message=_validation_message(exc),
            )
        if end is not None and end < start:
            return AuditTrailResult(
                status="rejected",
                error_code="validation_error",
                message="end must not be earlier than start",
            )
        owner = await manager.for_owner(owner_id)
        report = await owner.versions.export_audit_trail(start, end)
        ok = True
        return AuditTrailResult(report=report)
    finally:
        _record("export_audit_trail", started, ok)


@mcp.tool
async def memory_stats(owner_id: str) -> StatsResult:
    """Memory, relationship and version counters for one owner.

    Args:
        owner_id: Persona or user owning the memories.
    """
    start = perf_counter()
    ok = False
    try:
        manager = _get_manager()
        try:
            OwnerInput.model_validate({"owner_id": owner_id})
        except ValidationError as exc:
            return StatsResult(
                status="rejected",
                error_code="validation_error",
                message=_validation_message(exc),
            )
        owner = await manager.for_owner(owner_id)
        stats = await manager.memory_stats(owner_id)
        audit = asdict(await owner.versions.statistics())
        ok = True
        return StatsResult(stats=stats, audit=audit)
    finally:
        _record("memory_stats", start, ok)


@mcp.tool
async def delete_owner(owner_id: str, confirm: bool = False) -> DeleteOwnerResult:
    """Irreversibly delete every memory, relationship and version of an owner.

    Args:
        owner_id: Persona or user to erase.
        confirm: Must be true; guards against accidental calls.
    """
    start = perf_counter()
    ok = False
    try:
        manager = _get_manager()
        try:
            OwnerInput.model_validate({"owner_id": owner_id})
        except ValidationError as exc:
            return DeleteOwnerResult(
                status="rejected",
                error_code="validation_error",
                message=_validation_message(exc),
            )
        if not confirm:
            return DeleteOwnerResult(
                status="rejected",
                error_code="confirmation_required",
                message="Pass confirm=true to delete all data of this owner",
            )
        removed = await manager.delete_owner(owner_id)
        ok = True
        return DeleteOwnerResult(
            keys_removed=removed, message=f"Deleted {removed} key(s) for {owner_id}"
        )
    finally:
        _record("delete_owner", start, ok)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    """Run the server over stdio, configured from the environment."""
    load_dotenv(override=False)
    logging.basicConfig(
        level=os.environ.get("RECALLMCP_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    env = os.environ
    llm_config = None
    if env.get("RECALLMCP_LLM_API_KEY"):
        llm_config = LLMConfig(
            api_key=env["RECALLMCP_LLM_API_KEY"],
            model=env.get("RECALLMCP_LLM_MODEL", LLMConfig.model),
            base_url=env.get("RECALLMCP_LLM_BASE_URL", LLMConfig.base_url),
        )
    embedding_config = EmbeddingConfig(
        provider=env.get("RECALLMCP_EMBEDDING_PROVIDER", EmbeddingConfig.provider),
        api_key=env.get("RECALLMCP_EMBEDDING_API_KEY"),
        dimension=int(
            env.get("RECALLMCP_EMBEDDING_DIMENSION", EmbeddingConfig.dimension)
        ),
    )
    asyncio.run(
        configure(
            env.get("RECALLMCP_REDIS_URL", StoreConfig.redis_url),
            settings=MemorySettings.from_env(),
            embedding_config=embedding_config,
            llm_config=llm_config,
            audit_config=AuditConfig(
                directory=env.get("RECALLMCP_AUDIT_DIR", AuditConfig.directory)
            ),
        )
    )
    mcp.run()
