"""Audit subsystem: JSONL event log and append-only version history."""

from recallmcp.audit.schemas import AuditEvent
from recallmcp.audit.schemas import AuditEventType
from recallmcp.audit.store import AuditLogger
from recallmcp.audit.versions import AuditStatistics
from recallmcp.audit.versions import VersionManager

__all__ = [
    "AuditEvent",
    "AuditEventType",
    "AuditLogger",
    "AuditStatistics",
    "VersionManager",
]
