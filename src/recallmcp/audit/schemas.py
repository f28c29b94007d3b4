"""Audit event types and data models."""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import Field


class AuditEventType(str, Enum):
    """Categories of auditable events."""

    OPERATION_START = "OPERATION_START"
    OPERATION_COMPLETE = "OPERATION_COMPLETE"
    OPERATION_FAILED = "OPERATION_FAILED"
    ROLLBACK = "ROLLBACK"
    BACKUP_CREATED = "BACKUP_CREATED"
    VERSIONS_PRUNED = "VERSIONS_PRUNED"
    OWNER_DELETED = "OWNER_DELETED"


class AuditEvent(BaseModel):
    """A single immutable audit log entry."""

    model_config = {"frozen": True}

    timestamp: float = Field(
        default_factory=time.time,
        description="Unix epoch when the event occurred.",
    )
    event_type: AuditEventType = Field(
        description="Category of the audited action.",
    )
    owner_id: str = Field(
        description="Owner whose store the event concerns.",
    )
    memory_id: str | None = Field(
        default=None,
        description="Memory the event concerns, when there is exactly one.",
    )
    operation_type: str | None = Field(
        default=None,
        description="CREATE, UPDATE, REPLACE, DELETE or MERGE for operation events.",
    )
    description: str = Field(
        default="",
        description="Human-readable description of the action.",
    )
    confidence: float | None = Field(
        default=None,
        description="Confidence reported by the proposal source.",
    )
    agent_reasoning: str | None = Field(
        default=None,
        description="Reasoning reported by the proposal source.",
    )
    payload: dict[str, Any] = Field(
        default_factory=dict,
        description="Arbitrary event-specific data.",
    )

    def to_log_line(self) -> str:
        """Human-readable single-line rendering."""
        parts = [f"{self.event_type.value}"]
        if self.operation_type:
            parts.append(self.operation_type)
        if self.memory_id:
            parts.append(f"memory={self.memory_id}")
        if self.description:
            parts.append(self.description)
        if self.confidence is not None:
            parts.append(f"confidence={self.confidence:.2f}")
        return " | ".join(parts)
