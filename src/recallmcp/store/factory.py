"""Per-owner store factory.

Holds an explicit map from owner id to store handle.  Stores are created
lazily on first request and cached; closing one owner's store leaves the
others untouched.
"""

from __future__ import annotations

import asyncio
import logging

from redis.asyncio import Redis  # type: ignore[import-untyped]

from recallmcp.config import StoreConfig
from recallmcp.store.base import sanitize_owner_id
from recallmcp.store.redis_store import RedisMemoryStore

logger = logging.getLogger(__name__)

_SCAN_BATCH_SIZE = 100


class MemoryStoreFactory:
    """Creates, caches, closes and deletes owner stores."""

    def __init__(self, redis: Redis, config: StoreConfig | None = None) -> None:
        self._redis = redis
        self._config = config or StoreConfig()
        self._stores: dict[str, RedisMemoryStore] = {}
        self._lock = asyncio.Lock()

    @classmethod
    def from_url(cls, redis_url: str, config: StoreConfig | None = None) -> MemoryStoreFactory:
        return cls(Redis.from_url(redis_url), config)

    @property
    def key_prefix(self) -> str:
        return self._config.key_prefix

    async def get_store(self, owner_id: str) -> RedisMemoryStore:
        """Return the cached store for *owner_id*, creating it if needed."""
        owner_key = sanitize_owner_id(owner_id)
        async with self._lock:
            store = self._stores.get(owner_key)
            if store is None:
                logger.debug("Opening memory store for owner %s", owner_id)
                store = RedisMemoryStore(
                    self._redis, owner_id, key_prefix=self._config.key_prefix
                )
                self._stores[owner_key] = store
            return store

    def has_store(self, owner_id: str) -> bool:
        return sanitize_owner_id(owner_id) in self._stores

    def open_owner_ids(self) -> list[str]:
        return [store.owner_id for store in self._stores.values()]

    @property
    def open_count(self) -> int:
        return len(self._stores)

    async def close_store(self, owner_id: str) -> bool:
        """Close and forget one owner's store."""
        async with self._lock:
            store = self._stores.pop(sanitize_owner_id(owner_id), None)
        if store is None:
            return False
        await store.close()
        return True

    async def close_all(self) -> None:
        async with self._lock:
            stores = list(self._stores.values())
            self._stores.clear()
        for store in stores:
            await store.close()

    async def delete_owner(self, owner_id: str) -> int:
        """Permanently discard every memory, relationship and version of an owner.

        Irreversible.  Returns the number of keys removed.
        """
        owner_key = sanitize_owner_id(owner_id)
        await self.close_store(owner_id)
        removed = 0
        batch: list = []
        async for key in self._redis.scan_iter(
            match=f"{self._config.key_prefix}:{owner_key}:*"
        ):
            batch.append(key)
            if len(batch) >= _SCAN_BATCH_SIZE:
                removed += await self._redis.delete(*batch)
                batch.clear()
        if batch:
            removed += await self._redis.delete(*batch)
        logger.warning("Deleted all memory data for owner %s (%d keys)", owner_id, removed)
        return removed

    async def known_owner_keys(self) -> list[str]:
        """Sanitized keys of every owner with persisted memories."""
        suffix = ":memories"
        owners: set[str] = set()
        async for key in self._redis.scan_iter(
            match=f"{self._config.key_prefix}:*{suffix}"
        ):
            text = key.decode() if isinstance(key, bytes) else key
            owner = text[len(self._config.key_prefix) + 1 : -len(suffix)]
            if owner and ":" not in owner:
                owners.add(owner)
        return sorted(owners)

    async def aclose(self) -> None:
        """Close every store and the Redis client."""
        await self.close_all()
        await self._redis.aclose()
