"""Storage port for per-owner memory stores.

The engine depends only on these protocols.  A store instance holds the
memories, relationships and versions of exactly one owner.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Sequence
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from typing import Protocol
from typing import runtime_checkable

from recallmcp.errors import InvalidOwnerError
from recallmcp.models import Memory
from recallmcp.models import MemoryRelationship
from recallmcp.models import MemoryType
from recallmcp.models import RelationshipType
from recallmcp.models import VersionedMemory

_OWNER_UNSAFE_RE = re.compile(r"[^a-zA-Z0-9_-]")


def sanitize_owner_id(owner_id: str) -> str:
    """Map an owner id onto a key-safe, lowercase token.

    Every character outside ``[a-zA-Z0-9_-]`` becomes ``_``.
    """
    if owner_id is None or not owner_id.strip():
        raise InvalidOwnerError("owner id must be a non-empty string")
    return _OWNER_UNSAFE_RE.sub("_", owner_id).lower()


@dataclass(frozen=True)
class SimilarMemory:
    """A nearest-neighbour hit: the memory and its cosine similarity."""

    memory: Memory
    similarity: float


class StoreTransaction(Protocol):
    """Write batch applied atomically when its context exits cleanly."""

    def put_memory(self, memory: Memory) -> None: ...

    async def remove_memory(self, memory_id: str) -> list[MemoryRelationship]: ...

    def put_relationship(self, relationship: MemoryRelationship) -> None: ...

    def remove_relationship(self, relationship: MemoryRelationship) -> None: ...

    def put_version(self, version: VersionedMemory) -> None: ...

    def remove_version(self, version: VersionedMemory) -> None: ...


@runtime_checkable
class MemoryStore(Protocol):
    """Persistent, owner-isolated memory store."""

    owner_id: str
    lock: asyncio.Lock

    def transaction(self) -> AbstractAsyncContextManager[StoreTransaction]: ...

    # -- memories --

    async def save(self, memory: Memory) -> str: ...

    async def save_many(self, memories: Sequence[Memory]) -> list[str]: ...

    async def get(self, memory_id: str, *, track_access: bool = True) -> Memory | None: ...

    async def get_many(self, memory_ids: Sequence[str]) -> list[Memory]: ...

    async def get_all(self) -> list[Memory]: ...

    async def exists(self, memory_id: str) -> bool: ...

    async def update(self, memory: Memory) -> None: ...

    async def update_many(self, memories: Sequence[Memory]) -> None: ...

    async def delete(self, memory_id: str) -> bool: ...

    async def delete_many(self, memory_ids: Sequence[str]) -> int: ...

    async def record_access(self, memory_ids: Sequence[str]) -> list[Memory]: ...

    # -- filters --

    async def get_by_type(
        self, memory_type: MemoryType, limit: int | None = None
    ) -> list[Memory]: ...

    async def get_by_importance(
        self, min_importance: float, limit: int | None = None
    ) -> list[Memory]: ...

    async def get_recent(self, limit: int) -> list[Memory]: ...

    async def get_frequent(self, limit: int) -> list[Memory]: ...

    async def get_top_scored(self, limit: int) -> list[Memory]: ...

    async def search_content(
        self, text: str, limit: int | None = None
    ) -> list[Memory]: ...

    async def get_in_time_range(self, start: float, end: float) -> list[Memory]: ...

    async def get_emotional(
        self, min_weight: float, limit: int | None = None
    ) -> list[Memory]: ...

    async def get_with_embeddings(self) -> list[Memory]: ...

    async def find_similar(
        self, vector: Sequence[float], k: int
    ) -> list[SimilarMemory]: ...

    # -- relationships --

    async def save_relationship(self, relationship: MemoryRelationship) -> None: ...

    async def get_relationship(
        self, from_id: str, to_id: str
    ) -> MemoryRelationship | None: ...

    async def get_relationships_for(
        self, memory_id: str
    ) -> list[MemoryRelationship]: ...

    async def get_relationships_by_type(
        self, memory_id: str, relationship_type: RelationshipType
    ) -> list[MemoryRelationship]: ...

    async def relationship_exists(self, from_id: str, to_id: str) -> bool: ...

    async def delete_relationship(self, from_id: str, to_id: str) -> bool: ...

    async def delete_relationships_for(self, memory_id: str) -> int: ...

    # -- versions --

    async def get_versions(self, memory_id: str) -> list[VersionedMemory]: ...

    async def get_version_log(
        self, start: float | None = None, end: float | None = None
    ) -> list[VersionedMemory]: ...

    # -- counters --

    async def count(self) -> int: ...

    async def relationship_count(self) -> int: ...

    async def total_storage_size(self) -> int: ...

    # -- maintenance --

    @property
    def is_ready(self) -> bool: ...

    async def delete_old_memories(self, keep_count: int) -> int: ...

    async def delete_older_than(self, cutoff: float) -> int: ...

    async def export_json(self) -> str: ...
