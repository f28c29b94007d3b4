"""Directed, typed edges between memories."""

from __future__ import annotations

import time
from enum import Enum

from pydantic import BaseModel
from pydantic import Field
from pydantic import field_validator

from recallmcp.models.memory import clamp_unit


class RelationshipType(str, Enum):
    """Semantic kinds of memory relationship."""

    SIMILAR = "SIMILAR"
    CONTRADICTS = "CONTRADICTS"
    BUILDS_ON = "BUILDS_ON"
    RELATED_TO = "RELATED_TO"
    SPECIALIZES = "SPECIALIZES"
    GENERALIZES = "GENERALIZES"
    FOLLOWS = "FOLLOWS"
    PRECEDES = "PRECEDES"


# Logically symmetric kinds.  The store never inserts the reverse edge itself.
BIDIRECTIONAL_TYPES = frozenset({RelationshipType.SIMILAR, RelationshipType.RELATED_TO})


class MemoryRelationship(BaseModel):
    """A directed edge ``from_memory_id -> to_memory_id``.

    At most one edge exists per ``(from, to)`` pair in a store; saving a
    second edge for the same pair replaces the first.
    """

    model_config = {"validate_assignment": True}

    from_memory_id: str = Field(
        description="Source memory id.",
    )
    to_memory_id: str = Field(
        description="Target memory id.",
    )
    relationship_type: RelationshipType = Field(
        default=RelationshipType.RELATED_TO,
        description="Kind of relationship.",
    )
    strength: float = Field(
        default=0.5,
        description="Strength in [0, 1], clamped on every write.",
    )
    timestamp: float = Field(
        default_factory=time.time,
        description="Unix epoch when the edge was created.",
    )

    @field_validator("strength", mode="before")
    @classmethod
    def _clamp(cls, value: object) -> float:
        return clamp_unit(value)

    @property
    def pair_key(self) -> str:
        return f"{self.from_memory_id}:{self.to_memory_id}"

    @property
    def is_bidirectional(self) -> bool:
        return self.relationship_type in BIDIRECTIONAL_TYPES

    def touches(self, memory_id: str) -> bool:
        return memory_id in (self.from_memory_id, self.to_memory_id)

    def other_end(self, memory_id: str) -> str:
        """Return the id at the opposite end from *memory_id*."""
        if memory_id == self.from_memory_id:
            return self.to_memory_id
        return self.from_memory_id

    def reversed(self) -> MemoryRelationship:
        """Return the reverse edge of a bidirectional relationship."""
        if not self.is_bidirectional:
            raise ValueError(
                f"{self.relationship_type.value} relationships are directional"
            )
        return MemoryRelationship(
            from_memory_id=self.to_memory_id,
            to_memory_id=self.from_memory_id,
            relationship_type=self.relationship_type,
            strength=self.strength,
        )
