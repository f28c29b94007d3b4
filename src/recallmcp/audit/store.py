"""Async JSONL audit logger, one file per owner."""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from pathlib import Path

from pydantic import ValidationError

from recallmcp.audit.schemas import AuditEvent
from recallmcp.audit.schemas import AuditEventType
from recallmcp.config import AuditConfig

logger = logging.getLogger(__name__)


class AuditLogger:
    """Append-only JSONL audit log with async I/O.

    Uses ``asyncio.to_thread`` for file operations to avoid blocking
    the event loop, guarded by an ``asyncio.Lock`` for serialization.
    """

    def __init__(self, config: AuditConfig, owner_key: str) -> None:
        self.config = config
        self.owner_key = owner_key
        self.path = config.log_path(owner_key)
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    async def log(self, event: AuditEvent) -> None:
        """Append *event* as a single JSON line to the audit file."""
        if not self.config.enabled:
            return
        line = event.model_dump_json() + "\n"
        async with self._lock:
            await asyncio.to_thread(partial(self._append, self.path, line))

    @staticmethod
    def _append(path: Path, line: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as fh:
            fh.write(line)

    async def delete(self) -> bool:
        """Remove the owner's audit file; returns whether one existed."""
        async with self._lock:
            return await asyncio.to_thread(self._unlink, self.path)

    @staticmethod
    def _unlink(path: Path) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def read_events(
        self,
        *,
        event_type: AuditEventType | None = None,
        since: float | None = None,
    ) -> list[AuditEvent]:
        """Read events back from the audit file, optionally filtered."""
        if not self.path.exists():
            return []

        async with self._lock:
            raw = await asyncio.to_thread(self.path.read_text, encoding="utf-8")
        events: list[AuditEvent] = []
        for line_no, line in enumerate(raw.strip().splitlines(), start=1):
            try:
                evt = AuditEvent.model_validate_json(line)
            except ValidationError:
                logger.warning(
                    "Skipping malformed audit event line %d in %s",
                    line_no,
                    self.path,
                )
                continue
            if event_type is not None and evt.event_type != event_type:
                continue
            if since is not None and evt.timestamp < since:
                continue
            events.append(evt)
        return events
