"""Redis-backed owner store.

All keys of one owner live under ``{prefix}:{owner}:``:

- ``memory:{id}`` memory JSON; ``memories`` sorted set of ids scored by
  creation timestamp (iteration order: timestamp, then id).
- ``rel:{from}:{to}`` relationship JSON; ``rel_out:{id}`` / ``rel_in:{id}``
  sets of partner ids; ``relationships`` set of ``from:to`` pairs.
- ``version:{version_id}`` version JSON; ``versions:{memory_id}`` sorted set
  scored by version number; ``version_log`` sorted set scored by version
  timestamp.

Multi-key writes go through :meth:`RedisMemoryStore.transaction`, which
queues commands on a MULTI/EXEC pipeline and executes them only when the
block exits cleanly.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator
from collections.abc import Sequence
from contextlib import asynccontextmanager

from redis.asyncio import Redis  # type: ignore[import-untyped]
from redis.asyncio.client import Pipeline  # type: ignore[import-untyped]
from redis.exceptions import RedisError  # type: ignore[import-untyped]

from recallmcp.errors import MemoryNotFoundError
from recallmcp.errors import StoreError
from recallmcp.models import Memory
from recallmcp.models import MemoryRelationship
from recallmcp.models import MemoryType
from recallmcp.models import RelationshipType
from recallmcp.models import VersionedMemory
from recallmcp.similarity import cosine_similarity
from recallmcp.store.base import sanitize_owner_id
from recallmcp.store.base import SimilarMemory

logger = logging.getLogger(__name__)

_CLEAR_BATCH_SIZE = 100


def _decode(raw: bytes | str) -> str:
    return raw.decode() if isinstance(raw, bytes) else raw


# ---------------------------------------------------------------------------
# Key layout
# ---------------------------------------------------------------------------


class _OwnerKeys:
    def __init__(self, prefix: str, owner_key: str) -> None:
        self.root = f"{prefix}:{owner_key}"
        self.memories = f"{self.root}:memories"
        self.relationships = f"{self.root}:relationships"
        self.version_log = f"{self.root}:version_log"

    def memory(self, memory_id: str) -> str:
        return f"{self.root}:memory:{memory_id}"

    def relationship(self, from_id: str, to_id: str) -> str:
        return f"{self.root}:rel:{from_id}:{to_id}"

    def rel_out(self, memory_id: str) -> str:
        return f"{self.root}:rel_out:{memory_id}"

    def rel_in(self, memory_id: str) -> str:
        return f"{self.root}:rel_in:{memory_id}"

    def version(self, version_id: str) -> str:
        return f"{self.root}:version:{version_id}"

    def versions(self, memory_id: str) -> str:
        return f"{self.root}:versions:{memory_id}"


# ---------------------------------------------------------------------------
# Transaction
# ---------------------------------------------------------------------------


class RedisStoreTransaction:
    """Queues writes on a MULTI/EXEC pipeline.

    Reads needed to stage a write (e.g. the relationships of a memory being
    removed) go through the regular connection; callers serialise writers
    per owner with ``store.lock`` so those reads stay consistent.
    """

    def __init__(self, store: RedisMemoryStore, pipe: Pipeline) -> None:
        self._store = store
        self._keys = store._keys
        self._pipe = pipe
        self.queued = 0

    def put_memory(self, memory: Memory) -> None:
        self._pipe.set(self._keys.memory(memory.id), memory.model_dump_json())
        self._pipe.zadd(self._keys.memories, {memory.id: memory.timestamp})
        self.queued += 1

    async def remove_memory(self, memory_id: str) -> list[MemoryRelationship]:
        """Queue removal of a memory and every relationship touching it."""
        relationships = await self._store.get_relationships_for(memory_id)
        for relationship in relationships:
            self.remove_relationship(relationship)
        self._pipe.delete(
            self._keys.memory(memory_id),
            self._keys.rel_out(memory_id),
            self._keys.rel_in(memory_id),
        )
        self._pipe.zrem(self._keys.memories, memory_id)
        self.queued += 1
        return relationships

    def put_relationship(self, relationship: MemoryRelationship) -> None:
        src = relationship.from_memory_id
        dst = relationship.to_memory_id
        self._pipe.set(
            self._keys.relationship(src, dst), relationship.model_dump_json()
        )
        self._pipe.sadd(self._keys.rel_out(src), dst)
        self._pipe.sadd(self._keys.rel_in(dst), src)
        self._pipe.sadd(self._keys.relationships, relationship.pair_key)
        self.queued += 1

    def remove_relationship(self, relationship: MemoryRelationship) -> None:
        src = relationship.from_memory_id
        dst = relationship.to_memory_id
        self._pipe.delete(self._keys.relationship(src, dst))
        self._pipe.srem(self._keys.rel_out(src), dst)
        self._pipe.srem(self._keys.rel_in(dst), src)
        self._pipe.srem(self._keys.relationships, relationship.pair_key)
        self.queued += 1

    def put_version(self, version: VersionedMemory) -> None:
        self._pipe.set(self._keys.version(version.version_id), version.model_dump_json())
        self._pipe.zadd(
            self._keys.versions(version.memory_id),
            {version.version_id: version.version_number},
        )
        self._pipe.zadd(
            self._keys.version_log, {version.version_id: version.version_timestamp}
        )
        self.queued += 1

    def remove_version(self, version: VersionedMemory) -> None:
        self._pipe.delete(self._keys.version(version.version_id))
        self._pipe.zrem(self._keys.versions(version.memory_id), version.version_id)
        self._pipe.zrem(self._keys.version_log, version.version_id)
        self.queued += 1


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class RedisMemoryStore:
    """Memories, relationships and versions of one owner, kept in Redis."""

    def __init__(
        self,
        redis: Redis,
        owner_id: str,
        *,
        key_prefix: str = "recallmcp",
    ) -> None:
        self.owner_id = owner_id
        self.owner_key = sanitize_owner_id(owner_id)
        self.lock = asyncio.Lock()
        self._redis = redis
        self._keys = _OwnerKeys(key_prefix, self.owner_key)
        self._closed = False

    # -- lifecycle --

    @property
    def is_ready(self) -> bool:
        return not self._closed

    async def close(self) -> None:
        """Mark the store closed; the shared Redis client stays open."""
        self._closed = True

    def _ensure_open(self) -> None:
        if self._closed:
            raise StoreError(f"store for owner '{self.owner_id}' is closed")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[RedisStoreTransaction]:
        """Apply every write queued in the block as one MULTI/EXEC.

        If the block raises, nothing is sent to Redis.
        """
        self._ensure_open()
        async with self._redis.pipeline(transaction=True) as pipe:
            tx = RedisStoreTransaction(self, pipe)
            yield tx
            if not tx.queued:
                return
            try:
                await pipe.execute()
            except RedisError as exc:
                raise StoreError(f"transaction failed: {exc}") from exc

    # -- memories: write --

    async def save(self, memory: Memory) -> str:
        async with self.transaction() as tx:
            tx.put_memory(memory)
        return memory.id

    async def save_many(self, memories: Sequence[Memory]) -> list[str]:
        async with self.transaction() as tx:
            for memory in memories:
                tx.put_memory(memory)
        return [m.id for m in memories]

    async def update(self, memory: Memory) -> None:
        """Overwrite an existing memory; raises if it does not exist."""
        if not await self.exists(memory.id):
            raise MemoryNotFoundError(memory.id)
        await self.save(memory)

    async def update_many(self, memories: Sequence[Memory]) -> None:
        for memory in memories:
            if not await self.exists(memory.id):
                raise MemoryNotFoundError(memory.id)
        await self.save_many(memories)

    async def delete(self, memory_id: str) -> bool:
        """Delete a memory and cascade to its relationships."""
        if not await self.exists(memory_id):
            return False
        async with self.transaction() as tx:
            await tx.remove_memory(memory_id)
        return True

    async def delete_many(self, memory_ids: Sequence[str]) -> int:
        deleted = 0
        async with self.transaction() as tx:
            for memory_id in dict.fromkeys(memory_ids):
                if await self.exists(memory_id):
                    await tx.remove_memory(memory_id)
                    deleted += 1
        return deleted

    async def record_access(self, memory_ids: Sequence[str]) -> list[Memory]:
        """Increment access statistics for each existing memory.

        Runs under ``store.lock``; callers must not already hold it.
        """
        now = time.time()
        async with self.lock:
            memories = await self.get_many(memory_ids)
            for memory in memories:
                memory.mark_accessed(now)
            if memories:
                await self.save_many(memories)
        return memories

    # -- memories: read --

    async def get(self, memory_id: str, *, track_access: bool = True) -> Memory | None:
        """Return a memory, recording the read unless *track_access* is False.

        A tracked read takes ``store.lock``; code already holding it passes
        ``track_access=False``.
        """
        self._ensure_open()
        if not track_access:
            return await self._read(memory_id)
        async with self.lock:
            memory = await self._read(memory_id)
            if memory is not None:
                memory.mark_accessed()
                await self._redis.set(
                    self._keys.memory(memory_id), memory.model_dump_json()
                )
        return memory

    async def _read(self, memory_id: str) -> Memory | None:
        data = await self._redis.get(self._keys.memory(memory_id))
        if data is None:
            return None
        return Memory.model_validate_json(data)

    async def exists(self, memory_id: str) -> bool:
        self._ensure_open()
        return bool(await self._redis.exists(self._keys.memory(memory_id)))

    async def get_many(self, memory_ids: Sequence[str]) -> list[Memory]:
        """Fetch memories in the given order, skipping missing ids."""
        self._ensure_open()
        ids = list(memory_ids)
        if not ids:
            return []
        pipe = self._redis.pipeline()
        for memory_id in ids:
            pipe.get(self._keys.memory(memory_id))
        raw_results = await pipe.execute()
        return [
            Memory.model_validate_json(raw) for raw in raw_results if raw is not None
        ]

    async def get_all(self) -> list[Memory]:
        """Every memory, in store iteration order."""
        self._ensure_open()
        ids = [_decode(raw) for raw in await self._redis.zrange(self._keys.memories, 0, -1)]
        return await self._get_ordered(ids)

    async def _get_ordered(self, ids: list[str]) -> list[Memory]:
        if not ids:
            return []
        pipe = self._redis.pipeline()
        for memory_id in ids:
            pipe.get(self._keys.memory(memory_id))
        raw_results = await pipe.execute()

        stale_ids: list[str] = []
        results: list[Memory] = []
        for memory_id, raw in zip(ids, raw_results):
            if raw is None:
                stale_ids.append(memory_id)
            else:
                results.append(Memory.model_validate_json(raw))
        if stale_ids:
            logger.warning(
                "Dropping %d stale ids from %s", len(stale_ids), self._keys.memories
            )
            await self._redis.zrem(self._keys.memories, *stale_ids)
        return results

    # -- filters --

    async def get_by_type(
        self, memory_type: MemoryType, limit: int | None = None
    ) -> list[Memory]:
        """Memories of one type, newest first."""
        matches = [m for m in await self.get_all() if m.type == memory_type]
        matches.sort(key=lambda m: m.timestamp, reverse=True)
        return matches[:limit]

    async def get_by_importance(
        self, min_importance: float, limit: int | None = None
    ) -> list[Memory]:
        """Memories at or above *min_importance*, most important first."""
        matches = [m for m in await self.get_all() if m.importance >= min_importance]
        matches.sort(key=lambda m: (m.importance, m.timestamp), reverse=True)
        return matches[:limit]

    async def get_recent(self, limit: int) -> list[Memory]:
        ids = [
            _decode(raw)
            for raw in await self._redis.zrevrange(self._keys.memories, 0, limit - 1)
        ]
        return await self._get_ordered(ids) if limit > 0 else []

    async def get_frequent(self, limit: int) -> list[Memory]:
        memories = await self.get_all()
        memories.sort(key=lambda m: (m.access_count, m.last_accessed), reverse=True)
        return memories[:limit]

    async def get_top_scored(self, limit: int) -> list[Memory]:
        now = time.time()
        memories = await self.get_all()
        memories.sort(key=lambda m: m.overall_score(now), reverse=True)
        return memories[:limit]

    async def search_content(self, text: str, limit: int | None = None) -> list[Memory]:
        """Case-insensitive substring search, most important first."""
        needle = text.casefold()
        matches = [m for m in await self.get_all() if needle in m.content.casefold()]
        matches.sort(key=lambda m: m.importance, reverse=True)
        return matches[:limit]

    async def get_in_time_range(self, start: float, end: float) -> list[Memory]:
        """Memories created within ``[start, end]``, newest first."""
        self._ensure_open()
        ids = [
            _decode(raw)
            for raw in await self._redis.zrangebyscore(self._keys.memories, start, end)
        ]
        memories = await self._get_ordered(ids)
        memories.reverse()
        return memories

    async def get_emotional(
        self, min_weight: float, limit: int | None = None
    ) -> list[Memory]:
        matches = [
            m for m in await self.get_all() if m.emotional_weight >= min_weight
        ]
        matches.sort(key=lambda m: m.emotional_weight, reverse=True)
        return matches[:limit]

    async def get_with_embeddings(self) -> list[Memory]:
        matches = [m for m in await self.get_all() if m.has_embedding]
        matches.sort(key=lambda m: m.importance, reverse=True)
        return matches

    async def find_similar(
        self, vector: Sequence[float], k: int
    ) -> list[SimilarMemory]:
        """Top *k* memories by cosine similarity to *vector*.

        Only memories with an embedding are considered.  The sort is stable
        over store iteration order, so equal similarities keep creation
        order.
        """
        if k <= 0:
            return []
        hits = [
            SimilarMemory(memory=m, similarity=cosine_similarity(vector, m.embedding))
            for m in await self.get_all()
            if m.embedding
        ]
        hits.sort(key=lambda hit: hit.similarity, reverse=True)
        return hits[:k]

    # -- relationships --

    async def save_relationship(self, relationship: MemoryRelationship) -> None:
        """Insert or replace the edge for ``(from, to)``.

        Both ends must exist.  The reverse edge is never added implicitly.
        """
        await self.save_relationships([relationship])

    async def save_relationships(
        self, relationships: Sequence[MemoryRelationship]
    ) -> None:
        for relationship in relationships:
            for memory_id in (relationship.from_memory_id, relationship.to_memory_id):
                if not await self.exists(memory_id):
                    raise MemoryNotFoundError(memory_id)
        async with self.transaction() as tx:
            for relationship in relationships:
                tx.put_relationship(relationship)

    async def get_relationship(
        self, from_id: str, to_id: str
    ) -> MemoryRelationship | None:
        self._ensure_open()
        data = await self._redis.get(self._keys.relationship(from_id, to_id))
        if data is None:
            return None
        return MemoryRelationship.model_validate_json(data)

    async def relationship_exists(self, from_id: str, to_id: str) -> bool:
        self._ensure_open()
        return bool(await self._redis.exists(self._keys.relationship(from_id, to_id)))

    async def update_relationship(self, relationship: MemoryRelationship) -> bool:
        """Overwrite an existing edge; returns False if it does not exist."""
        if not await self.relationship_exists(
            relationship.from_memory_id, relationship.to_memory_id
        ):
            return False
        async with self.transaction() as tx:
            tx.put_relationship(relationship)
        return True

    async def get_relationships_for(self, memory_id: str) -> list[MemoryRelationship]:
        """Edges in either direction, strongest first."""
        self._ensure_open()
        outgoing = await self._redis.smembers(self._keys.rel_out(memory_id))
        incoming = await self._redis.smembers(self._keys.rel_in(memory_id))
        keys = [self._keys.relationship(memory_id, _decode(o)) for o in sorted(outgoing)]
        keys += [self._keys.relationship(_decode(i), memory_id) for i in sorted(incoming)]
        relationships = await self._fetch_relationships(keys)
        relationships.sort(key=lambda r: r.strength, reverse=True)
        return relationships

    async def get_relationships_by_type(
        self, memory_id: str, relationship_type: RelationshipType
    ) -> list[MemoryRelationship]:
        """Outgoing edges of one type, strongest first."""
        self._ensure_open()
        outgoing = await self._redis.smembers(self._keys.rel_out(memory_id))
        keys = [self._keys.relationship(memory_id, _decode(o)) for o in sorted(outgoing)]
        relationships = [
            r
            for r in await self._fetch_relationships(keys)
            if r.relationship_type == relationship_type
        ]
        relationships.sort(key=lambda r: r.strength, reverse=True)
        return relationships

    async def get_bidirectional(self, a: str, b: str) -> list[MemoryRelationship]:
        """The edges ``a -> b`` and ``b -> a`` that exist."""
        return await self._fetch_relationships(
            [self._keys.relationship(a, b), self._keys.relationship(b, a)]
        )

    async def get_all_relationships(self) -> list[MemoryRelationship]:
        self._ensure_open()
        pairs = sorted(
            _decode(p) for p in await self._redis.smembers(self._keys.relationships)
        )
        keys = [self._keys.relationship(*pair.split(":", 1)) for pair in pairs]
        return await self._fetch_relationships(keys)

    async def _fetch_relationships(self, keys: list[str]) -> list[MemoryRelationship]:
        if not keys:
            return []
        pipe = self._redis.pipeline()
        for key in keys:
            pipe.get(key)
        raw_results = await pipe.execute()
        return [
            MemoryRelationship.model_validate_json(raw)
            for raw in raw_results
            if raw is not None
        ]

    async def delete_relationship(self, from_id: str, to_id: str) -> bool:
        relationship = await self.get_relationship(from_id, to_id)
        if relationship is None:
            return False
        async with self.transaction() as tx:
            tx.remove_relationship(relationship)
        return True

    async def delete_relationships_for(self, memory_id: str) -> int:
        relationships = await self.get_relationships_for(memory_id)
        if relationships:
            async with self.transaction() as tx:
                for relationship in relationships:
                    tx.remove_relationship(relationship)
        return len(relationships)

    async def delete_weak_relationships(self, min_strength: float) -> int:
        """Remove every edge weaker than *min_strength*."""
        weak = [r for r in await self.get_all_relationships() if r.strength < min_strength]
        if weak:
            async with self.transaction() as tx:
                for relationship in weak:
                    tx.remove_relationship(relationship)
        return len(weak)

    # -- versions --

    async def get_versions(self, memory_id: str) -> list[VersionedMemory]:
        """All versions of a memory, oldest first."""
        self._ensure_open()
        ids = await self._redis.zrange(self._keys.versions(memory_id), 0, -1)
        return await self._fetch_versions([_decode(v) for v in ids])

    async def get_version_log(
        self, start: float | None = None, end: float | None = None
    ) -> list[VersionedMemory]:
        """Versions of every memory recorded within ``[start, end]``."""
        self._ensure_open()
        ids = await self._redis.zrangebyscore(
            self._keys.version_log,
            "-inf" if start is None else start,
            "+inf" if end is None else end,
        )
        return await self._fetch_versions([_decode(v) for v in ids])

    async def version_count(self, memory_id: str | None = None) -> int:
        self._ensure_open()
        if memory_id is None:
            return await self._redis.zcard(self._keys.version_log)
        return await self._redis.zcard(self._keys.versions(memory_id))

    async def _fetch_versions(self, version_ids: list[str]) -> list[VersionedMemory]:
        if not version_ids:
            return []
        pipe = self._redis.pipeline()
        for version_id in version_ids:
            pipe.get(self._keys.version(version_id))
        raw_results = await pipe.execute()
        return [
            VersionedMemory.model_validate_json(raw)
            for raw in raw_results
            if raw is not None
        ]

    # -- counters --

    async def count(self) -> int:
        self._ensure_open()
        return await self._redis.zcard(self._keys.memories)

    async def count_by_type(self, memory_type: MemoryType) -> int:
        return sum(1 for m in await self.get_all() if m.type == memory_type)

    async def relationship_count(self) -> int:
        self._ensure_open()
        return await self._redis.scard(self._keys.relationships)

    async def total_storage_size(self) -> int:
        """Sum of content lengths across all memories."""
        return sum(len(m.content) for m in await self.get_all())

    # -- maintenance --

    async def delete_old_memories(self, keep_count: int) -> int:
        """Keep the *keep_count* most important (then newest) memories."""
        memories = await self.get_all()
        if len(memories) <= keep_count:
            return 0
        memories.sort(key=lambda m: (m.importance, m.timestamp), reverse=True)
        doomed = [m.id for m in memories[max(keep_count, 0) :]]
        return await self.delete_many(doomed)

    async def delete_older_than(self, cutoff: float) -> int:
        """Delete memories created strictly before *cutoff*."""
        self._ensure_open()
        ids = await self._redis.zrangebyscore(self._keys.memories, "-inf", f"({cutoff}")
        return await self.delete_many([_decode(i) for i in ids])

    async def clear_all_data(self) -> None:
        """Remove every key of this owner.

        Deletes in batches to avoid loading all keys into memory at once.
        """
        self._ensure_open()
        batch: list = []
        async for key in self._redis.scan_iter(match=f"{self._keys.root}:*"):
            batch.append(key)
            if len(batch) >= _CLEAR_BATCH_SIZE:
                await self._redis.delete(*batch)
                batch.clear()
        if batch:
            await self._redis.delete(*batch)

    async def export_json(self) -> str:
        """Pretty-printed JSON array of every memory."""
        memories = await self.get_all()
        return json.dumps([m.model_dump(mode="json") for m in memories], indent=2)
