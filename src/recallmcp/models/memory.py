"""Pydantic model for the atomic unit of recall.

``importance`` and ``emotional_weight`` are clamped into ``[0, 1]`` on
construction and on every assignment; they are never rejected for being
out of range.
"""

from __future__ import annotations

import math
import time
import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import Field
from pydantic import field_validator

_SECONDS_PER_DAY = 86400.0
_RECENCY_HALF_LIFE_DAYS = 30.0


class MemoryType(str, Enum):
    """Kinds of memory the engine stores."""

    FACT = "FACT"
    PREFERENCE = "PREFERENCE"
    EMOTION = "EMOTION"
    EVENT = "EVENT"
    RELATIONSHIP = "RELATIONSHIP"
    MERGED = "MERGED"
    SUMMARY = "SUMMARY"


def clamp_unit(value: object) -> float:
    """Coerce *value* to a float and clamp it into ``[0, 1]``."""
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValueError(f"expected a number, got {value!r}") from exc
    if math.isnan(number):
        raise ValueError("NaN is not a valid score")
    return min(max(number, 0.0), 1.0)


def _new_id() -> str:
    return uuid.uuid4().hex


class Memory(BaseModel):
    """A single long-term memory owned by one conversational persona."""

    model_config = {"validate_assignment": True}

    id: str = Field(
        default_factory=_new_id,
        description="Unique memory identifier (UUID hex), immutable.",
    )
    content: str = Field(
        description="Free-text content of the memory.",
    )
    type: MemoryType = Field(
        default=MemoryType.FACT,
        description="Memory category.",
    )
    importance: float = Field(
        default=0.5,
        description="Importance in [0, 1], clamped on every write.",
    )
    embedding: list[float] | None = Field(
        default=None,
        description="Embedding vector of the content, if computed.",
    )
    timestamp: float = Field(
        default_factory=time.time,
        description="Unix epoch when the memory was created.",
    )
    last_accessed: float = Field(
        default_factory=time.time,
        description="Unix epoch of the most recent read.",
    )
    access_count: int = Field(
        default=0,
        ge=0,
        description="Number of reads recorded for this memory.",
    )
    emotional_weight: float = Field(
        default=0.0,
        description="Emotional salience in [0, 1], clamped on every write.",
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Opaque key/value side-channel, not interpreted by the engine.",
    )

    @field_validator("importance", "emotional_weight", mode="before")
    @classmethod
    def _clamp(cls, value: object) -> float:
        return clamp_unit(value)

    # -- access tracking --

    def mark_accessed(self, now: float | None = None) -> None:
        """Record one read of this memory."""
        self.access_count += 1
        self.last_accessed = time.time() if now is None else now

    # -- derived scores --

    def age_days(self, now: float | None = None) -> int:
        """Whole days elapsed since creation."""
        current = time.time() if now is None else now
        return max(int((current - self.timestamp) // _SECONDS_PER_DAY), 0)

    def recency_score(self, now: float | None = None) -> float:
        return math.exp(-self.age_days(now) / _RECENCY_HALF_LIFE_DAYS)

    def overall_score(self, now: float | None = None) -> float:
        """Blend of importance, recency and access frequency."""
        return (
            0.5 * self.importance
            + 0.3 * self.recency_score(now)
            + 0.2 * math.log(self.access_count + 1) / 10
        )

    @property
    def has_embedding(self) -> bool:
        return bool(self.embedding)

    def preview(self, length: int = 50) -> str:
        """Return the content truncated to *length* characters."""
        if len(self.content) <= length:
            return self.content
        return self.content[: length - 3] + "..."
