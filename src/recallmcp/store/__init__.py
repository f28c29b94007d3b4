"""Store domain — storage port, Redis implementation and owner factory."""

from recallmcp.store.base import MemoryStore
from recallmcp.store.base import sanitize_owner_id
from recallmcp.store.base import SimilarMemory
from recallmcp.store.base import StoreTransaction
from recallmcp.store.factory import MemoryStoreFactory
from recallmcp.store.redis_store import RedisMemoryStore

__all__ = [
    "MemoryStore",
    "MemoryStoreFactory",
    "RedisMemoryStore",
    "SimilarMemory",
    "StoreTransaction",
    "sanitize_owner_id",
]
