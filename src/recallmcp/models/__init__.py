"""Models domain — memories, relationships and version snapshots."""

from recallmcp.models.memory import clamp_unit
from recallmcp.models.memory import Memory
from recallmcp.models.memory import MemoryType
from recallmcp.models.relationship import BIDIRECTIONAL_TYPES
from recallmcp.models.relationship import MemoryRelationship
from recallmcp.models.relationship import RelationshipType
from recallmcp.models.version import EditSource
from recallmcp.models.version import VersionedMemory

__all__ = [
    "BIDIRECTIONAL_TYPES",
    "EditSource",
    "Memory",
    "MemoryRelationship",
    "MemoryType",
    "RelationshipType",
    "VersionedMemory",
    "clamp_unit",
]
