"""The closed set of memory mutation intents.

Five variants share ``reasoning`` and ``confidence``.  ``is_valid()`` is
purely structural (field presence and ranges) and never consults a store;
store-aware checks live in :mod:`recallmcp.engine.validator`.

Field names are snake_case in Python and camelCase on the wire
(``memoryType``, ``newContent``, ``sourceMemoryIds`` ...); the discriminator
is the ``type`` key.
"""

from __future__ import annotations

from enum import Enum
from typing import Any
from typing import Literal
from typing import Union

from pydantic import BaseModel
from pydantic import Field
from pydantic import field_validator
from pydantic.alias_generators import to_camel

from recallmcp.models import MemoryType

MIN_CONTENT_LENGTH = 3
MAX_CONTENT_LENGTH = 2000
MAX_MERGED_CONTENT_LENGTH = 3000

REPLACE_MIN_CONFIDENCE = 0.7
DELETE_MIN_CONFIDENCE = 0.8
DELETE_MIN_REASONING = 10
MERGE_MIN_CONFIDENCE = 0.6
MERGE_MIN_REASONING = 15
MERGE_MIN_SOURCES = 2

_PREVIEW_LENGTH = 50


class OperationType(str, Enum):
    """Discriminator values for the operation union."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    REPLACE = "REPLACE"
    DELETE = "DELETE"
    MERGE = "MERGE"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _in_unit_range(value: float | None) -> bool:
    return value is not None and 0.0 <= value <= 1.0


def _content_ok(content: str | None, max_length: int = MAX_CONTENT_LENGTH) -> bool:
    if content is None:
        return False
    return MIN_CONTENT_LENGTH <= len(content.strip()) <= max_length


def _preview(text: str | None) -> str:
    if text is None:
        return ""
    if len(text) <= _PREVIEW_LENGTH:
        return text
    return text[: _PREVIEW_LENGTH - 3] + "..."


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


class OperationBase(BaseModel):
    """Fields shared by every operation."""

    model_config = {
        "frozen": True,
        "alias_generator": to_camel,
        "populate_by_name": True,
    }

    reasoning: str = Field(
        default="",
        description="Why the proposal source wants this change.",
    )
    confidence: float = Field(
        default=0.0,
        description="Self-reported certainty in [0, 1], used as a safety gate.",
    )

    @field_validator("*", mode="before")
    @classmethod
    def _normalize_wire_values(cls, value: Any, info) -> Any:
        if not isinstance(value, str):
            return value
        # Proposal sources sometimes emit metadata as a bare string.
        if info.field_name.endswith("metadata"):
            return {"note": value}
        if info.field_name.endswith("_type"):
            return value.strip().upper()
        return value

    def _base_valid(self) -> bool:
        return bool(self.reasoning.strip()) and _in_unit_range(self.confidence)

    @property
    def target_memory_ids(self) -> list[str]:
        """Ids of existing memories this operation touches."""
        return []


# ---------------------------------------------------------------------------
# Variants
# ---------------------------------------------------------------------------


class CreateOperation(OperationBase):
    """Store a brand-new memory."""

    kind: Literal[OperationType.CREATE] = Field(
        default=OperationType.CREATE, alias="type"
    )
    content: str
    memory_type: MemoryType = MemoryType.FACT
    importance: float = 0.5
    metadata: dict[str, Any] | None = None

    def is_valid(self) -> bool:
        return (
            self._base_valid()
            and _content_ok(self.content)
            and _in_unit_range(self.importance)
        )

    def describe(self) -> str:
        return (
            f"CREATE memory: '{_preview(self.content)}' "
            f"(type={self.memory_type.value}, importance={self.importance:.2f}, "
            f"confidence={self.confidence:.2f})"
        )


class UpdateOperation(OperationBase):
    """Refine selected fields of an existing memory in place."""

    kind: Literal[OperationType.UPDATE] = Field(
        default=OperationType.UPDATE, alias="type"
    )
    memory_id: str
    new_content: str | None = None
    new_type: MemoryType | None = None
    new_importance: float | None = None
    new_metadata: dict[str, Any] | None = None

    @property
    def has_content_update(self) -> bool:
        return self.new_content is not None

    @property
    def has_type_update(self) -> bool:
        return self.new_type is not None

    @property
    def has_importance_update(self) -> bool:
        return self.new_importance is not None

    @property
    def has_metadata_update(self) -> bool:
        return self.new_metadata is not None

    @property
    def target_memory_ids(self) -> list[str]:
        return [self.memory_id]

    def is_valid(self) -> bool:
        if not self._base_valid() or not self.memory_id.strip():
            return False
        if not (
            self.has_content_update
            or self.has_type_update
            or self.has_importance_update
            or self.has_metadata_update
        ):
            return False
        if self.has_content_update and not _content_ok(self.new_content):
            return False
        if self.has_importance_update and not _in_unit_range(self.new_importance):
            return False
        return True

    def describe(self) -> str:
        changes: list[str] = []
        if self.has_content_update:
            changes.append(f"content='{_preview(self.new_content)}'")
        if self.new_type is not None:
            changes.append(f"type={self.new_type.value}")
        if self.has_importance_update:
            changes.append(f"importance={self.new_importance:.2f}")
        if self.has_metadata_update:
            changes.append("metadata")
        return (
            f"UPDATE memory {self.memory_id}: {', '.join(changes)} "
            f"(confidence={self.confidence:.2f})"
        )


class ReplaceOperation(OperationBase):
    """Overwrite every editable field of an existing memory."""

    kind: Literal[OperationType.REPLACE] = Field(
        default=OperationType.REPLACE, alias="type"
    )
    memory_id: str
    new_content: str
    new_type: MemoryType
    new_importance: float
    new_metadata: dict[str, Any] | None = None

    @property
    def target_memory_ids(self) -> list[str]:
        return [self.memory_id]

    def is_valid(self) -> bool:
        return (
            self._base_valid()
            and bool(self.memory_id.strip())
            and _content_ok(self.new_content)
            and _in_unit_range(self.new_importance)
            and self.confidence >= REPLACE_MIN_CONFIDENCE
        )

    def describe(self) -> str:
        return (
            f"REPLACE memory {self.memory_id} with: '{_preview(self.new_content)}' "
            f"(type={self.new_type.value}, importance={self.new_importance:.2f}, "
            f"confidence={self.confidence:.2f})"
        )


class DeleteOperation(OperationBase):
    """Remove an existing memory."""

    kind: Literal[OperationType.DELETE] = Field(
        default=OperationType.DELETE, alias="type"
    )
    memory_id: str
    delete_relationships: bool = True

    @property
    def target_memory_ids(self) -> list[str]:
        return [self.memory_id]

    def is_valid(self) -> bool:
        return (
            self._base_valid()
            and bool(self.memory_id.strip())
            and self.confidence >= DELETE_MIN_CONFIDENCE
            and len(self.reasoning.strip()) >= DELETE_MIN_REASONING
        )

    def describe(self) -> str:
        suffix = " and its relationships" if self.delete_relationships else ""
        return (
            f"DELETE memory {self.memory_id}{suffix} "
            f"(confidence={self.confidence:.2f})"
        )


class MergeOperation(OperationBase):
    """Combine several memories into a new one."""

    kind: Literal[OperationType.MERGE] = Field(
        default=OperationType.MERGE, alias="type"
    )
    source_memory_ids: list[str]
    merged_content: str
    merged_type: MemoryType = MemoryType.MERGED
    merged_importance: float = 0.5
    merged_metadata: dict[str, Any] | None = None
    delete_source_memories: bool = True

    @property
    def target_memory_ids(self) -> list[str]:
        return list(self.source_memory_ids)

    def is_valid(self) -> bool:
        ids = [sid.strip() for sid in self.source_memory_ids]
        return (
            self._base_valid()
            and len(ids) >= MERGE_MIN_SOURCES
            and all(ids)
            and len(set(ids)) == len(ids)
            and _content_ok(self.merged_content, MAX_MERGED_CONTENT_LENGTH)
            and _in_unit_range(self.merged_importance)
            and self.confidence >= MERGE_MIN_CONFIDENCE
            and len(self.reasoning.strip()) >= MERGE_MIN_REASONING
        )

    def describe(self) -> str:
        return (
            f"MERGE {len(self.source_memory_ids)} memories into: "
            f"'{_preview(self.merged_content)}' "
            f"(type={self.merged_type.value}, importance={self.merged_importance:.2f}, "
            f"confidence={self.confidence:.2f})"
        )


MemoryOperation = Union[
    CreateOperation,
    UpdateOperation,
    ReplaceOperation,
    DeleteOperation,
    MergeOperation,
]

_OPERATION_MODELS: dict[OperationType, type[OperationBase]] = {
    OperationType.CREATE: CreateOperation,
    OperationType.UPDATE: UpdateOperation,
    OperationType.REPLACE: ReplaceOperation,
    OperationType.DELETE: DeleteOperation,
    OperationType.MERGE: MergeOperation,
}


def parse_operation(data: dict[str, Any]) -> MemoryOperation:
    """Build the operation variant named by ``data["type"]``.

    Raises ``ValueError`` for an unknown or missing type and
    ``pydantic.ValidationError`` for malformed fields.
    """
    raw_type = data.get("type", data.get("kind"))
    if not isinstance(raw_type, str):
        raise ValueError("operation is missing a 'type' field")
    try:
        op_type = OperationType(raw_type.strip().upper())
    except ValueError as exc:
        raise ValueError(f"unknown operation type {raw_type!r}") from exc
    payload = {k: v for k, v in data.items() if k not in ("type", "kind")}
    payload["type"] = op_type
    return _OPERATION_MODELS[op_type].model_validate(payload)  # type: ignore[return-value]
