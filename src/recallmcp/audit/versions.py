"""Append-only version history, rollback, retention and audit export.

Exactly one version of a live memory is current at any time.  Every write
that touches history is staged on a store transaction so the version and
the live record change together; rollback never rewrites history, it
appends a ROLLBACK version.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from pathlib import Path

from recallmcp.audit.schemas import AuditEvent
from recallmcp.audit.schemas import AuditEventType
from recallmcp.audit.store import AuditLogger
from recallmcp.config import AuditConfig
from recallmcp.errors import MemoryNotFoundError
from recallmcp.errors import VersionNotFoundError
from recallmcp.models import EditSource
from recallmcp.models import Memory
from recallmcp.models import VersionedMemory
from recallmcp.observability import timed
from recallmcp.store.base import MemoryStore
from recallmcp.store.base import StoreTransaction

logger = logging.getLogger(__name__)

_SECONDS_PER_DAY = 86400
_EXPORT_RULE_WIDTH = 80
_EXPORT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass(frozen=True)
class AuditStatistics:
    total_versions: int = 0
    memories_with_versions: int = 0
    user_edits: int = 0
    agent_edits: int = 0
    system_edits: int = 0
    recent_agent_edits: int = 0
    low_confidence_edits: int = 0


def _is_protected(version: VersionedMemory) -> bool:
    return version.is_original or version.is_current or version.is_backup


def _format_date(epoch_seconds: float) -> str:
    return datetime.fromtimestamp(epoch_seconds).strftime(_EXPORT_DATE_FORMAT)


def format_version_for_export(version: VersionedMemory) -> str:
    lines = [
        f"Version ID: {version.version_id}",
        f"Memory ID: {version.memory_id}",
        f"Version Number: {version.version_number}",
        f"Timestamp: {version.formatted_timestamp()}",
        f"Edit Source: {version.edit_source.value}",
        f"Edit Reason: {version.edit_reason}",
        f"Confidence: {version.edit_confidence:.2f}",
        f"Flags: {' '.join(version.flags())}",
    ]
    if version.agent_reasoning:
        lines.append(f"Agent Reasoning: {version.agent_reasoning}")
    lines.append(f"Content: {version.content}")
    return "\n".join(lines) + "\n"


class VersionManager:
    """Version history of one owner's memories."""

    def __init__(
        self,
        store: MemoryStore,
        audit: AuditLogger,
        config: AuditConfig | None = None,
    ) -> None:
        self._store = store
        self._audit = audit
        self._config = config or AuditConfig()

    @property
    def audit(self) -> AuditLogger:
        return self._audit

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_history(self, memory_id: str) -> list[VersionedMemory]:
        """Every version of a memory, oldest first."""
        return await self._store.get_versions(memory_id)

    async def get_recent_history(
        self, memory_id: str, limit: int = 10
    ) -> list[VersionedMemory]:
        """The *limit* newest versions of a memory, newest first."""
        history = await self.get_history(memory_id)
        return list(reversed(history))[:limit]

    async def get_version(
        self, memory_id: str, version_number: int
    ) -> VersionedMemory | None:
        for version in await self.get_history(memory_id):
            if version.version_number == version_number:
                return version
        return None

    async def get_current_version(self, memory_id: str) -> VersionedMemory | None:
        for version in await self.get_history(memory_id):
            if version.is_current:
                return version
        return None

    async def get_original_version(self, memory_id: str) -> VersionedMemory | None:
        for version in await self.get_history(memory_id):
            if version.is_original:
                return version
        return None

    async def version_count(self, memory_id: str) -> int:
        return len(await self.get_history(memory_id))

    # ------------------------------------------------------------------
    # Staging (callers hold ``store.lock`` and an open transaction)
    # ------------------------------------------------------------------

    def stage_snapshot(
        self,
        tx: StoreTransaction,
        memory: Memory,
        history: Sequence[VersionedMemory],
    ) -> list[VersionedMemory]:
        """Record the pre-edit state as the original version if none exists."""
        if history:
            return list(history)
        original = VersionedMemory.from_memory(
            memory,
            version_number=1,
            edit_reason="Initial state before first edit",
            edit_source=EditSource.SYSTEM,
        )
        tx.put_version(original)
        return [original]

    def stage_close_history(
        self, tx: StoreTransaction, history: Sequence[VersionedMemory]
    ) -> None:
        """Queue clearing the current flag on whichever version holds it."""
        for version in history:
            if version.is_current:
                tx.put_version(version.model_copy(update={"is_current": False}))

    def stage_new_version(
        self,
        tx: StoreTransaction,
        memory: Memory,
        history: Sequence[VersionedMemory],
        *,
        edit_reason: str,
        edit_source: EditSource,
        edit_confidence: float = 1.0,
        agent_reasoning: str | None = None,
    ) -> VersionedMemory:
        """Queue a new current version numbered after the latest one."""
        self.stage_close_history(tx, history)
        next_number = max((v.version_number for v in history), default=0) + 1
        version = VersionedMemory.from_memory(
            memory,
            version_number=next_number,
            edit_reason=edit_reason,
            edit_source=edit_source,
            edit_confidence=edit_confidence,
            agent_reasoning=agent_reasoning,
        )
        tx.put_version(version)
        return version

    # ------------------------------------------------------------------
    # Direct edits
    # ------------------------------------------------------------------

    async def record_edit(
        self,
        memory: Memory,
        *,
        previous: Memory | None,
        edit_reason: str,
        edit_source: EditSource = EditSource.USER,
    ) -> VersionedMemory:
        """Save *memory* and its new current version in one transaction.

        *previous* is the state before the edit, snapshotted as the original
        when the memory has no history yet.  Callers hold ``store.lock``.
        """
        history = await self.get_history(memory.id)
        async with self._store.transaction() as tx:
            if previous is not None:
                history = self.stage_snapshot(tx, previous, history)
            tx.put_memory(memory)
            version = self.stage_new_version(
                tx, memory, history, edit_reason=edit_reason, edit_source=edit_source
            )
        return version

    async def record_delete(self, memory_id: str) -> bool:
        """Delete a live memory, keeping its history with no current version.

        Callers hold ``store.lock``.
        """
        memory = await self._store.get(memory_id, track_access=False)
        if memory is None:
            return False
        history = await self.get_history(memory_id)
        async with self._store.transaction() as tx:
            history = self.stage_snapshot(tx, memory, history)
            self.stage_close_history(tx, history)
            await tx.remove_memory(memory_id)
        return True

    # ------------------------------------------------------------------
    # Rollback and backup
    # ------------------------------------------------------------------

    async def rollback_to_version(
        self, memory_id: str, version_number: int, reason: str
    ) -> Memory:
        """Restore *version_number* into the live memory as a new version.

        A deleted memory is recreated without its former relationships.
        Raises ``VersionNotFoundError`` when the version does not exist.
        """
        with timed("audit.rollback"):
            async with self._store.lock:
                history = await self.get_history(memory_id)
                if not history:
                    raise VersionNotFoundError(memory_id)
                target = next(
                    (v for v in history if v.version_number == version_number), None
                )
                if target is None:
                    raise VersionNotFoundError(memory_id, version_number)

                live = await self._store.get(memory_id, track_access=False)
                restored = target.to_memory(live)
                if live is None:
                    restored = restored.model_copy(
                        update={"timestamp": history[0].version_timestamp}
                    )
                async with self._store.transaction() as tx:
                    tx.put_memory(restored)
                    version = self.stage_new_version(
                        tx,
                        restored,
                        history,
                        edit_reason=f"Rollback to version {version_number}: {reason}",
                        edit_source=EditSource.ROLLBACK,
                        edit_confidence=1.0,
                        agent_reasoning=(
                            f"Restored from version {version_number} due to: {reason}"
                        ),
                    )

        from_version = max(v.version_number for v in history)
        logger.info(
            "Rolled back memory %s to v%d as v%d",
            memory_id,
            version_number,
            version.version_number,
        )
        await self._audit.log(
            AuditEvent(
                event_type=AuditEventType.ROLLBACK,
                owner_id=self._store.owner_id,
                memory_id=memory_id,
                description=reason,
                payload={
                    "from_version": from_version,
                    "to_version": version_number,
                    "new_version": version.version_number,
                    "restored_deleted": live is None,
                },
            )
        )
        return restored

    async def rollback_to_original(self, memory_id: str, reason: str) -> Memory:
        original = await self.get_original_version(memory_id)
        if original is None:
            raise VersionNotFoundError(memory_id, 1)
        return await self.rollback_to_version(
            memory_id, original.version_number, reason
        )

    async def create_backup(self, memory_id: str, reason: str) -> VersionedMemory:
        """Append a backup version of the live memory; backups are never current."""
        async with self._store.lock:
            memory = await self._store.get(memory_id, track_access=False)
            if memory is None:
                raise MemoryNotFoundError(memory_id)
            history = await self.get_history(memory_id)
            async with self._store.transaction() as tx:
                history = self.stage_snapshot(tx, memory, history)
                backup = VersionedMemory.from_memory(
                    memory,
                    version_number=max(v.version_number for v in history) + 1,
                    edit_reason=f"Backup: {reason}",
                    edit_source=EditSource.SYSTEM,
                    agent_reasoning=f"Manual backup created: {reason}",
                    is_current=False,
                    is_backup=True,
                )
                tx.put_version(backup)

        await self._audit.log(
            AuditEvent(
                event_type=AuditEventType.BACKUP_CREATED,
                owner_id=self._store.owner_id,
                memory_id=memory_id,
                description=reason,
                payload={"version_number": backup.version_number},
            )
        )
        return backup

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    async def prune_versions(self, memory_id: str, keep: int | None = None) -> int:
        """Drop the oldest unprotected versions above *keep*.

        Original, current and backup versions are never removed.
        """
        keep = self._config.max_versions_per_memory if keep is None else keep
        async with self._store.lock:
            history = await self.get_history(memory_id)
            excess = len(history) - keep
            if excess <= 0:
                return 0
            doomed = [v for v in history if not _is_protected(v)][:excess]
            if not doomed:
                return 0
            async with self._store.transaction() as tx:
                for version in doomed:
                    tx.remove_version(version)

        logger.debug("Pruned %d versions of memory %s", len(doomed), memory_id)
        await self._audit.log(
            AuditEvent(
                event_type=AuditEventType.VERSIONS_PRUNED,
                owner_id=self._store.owner_id,
                memory_id=memory_id,
                payload={
                    "removed": [v.version_number for v in doomed],
                    "keep": keep,
                },
            )
        )
        return len(doomed)

    async def delete_versions_older_than(self, cutoff: float) -> int:
        """Remove unprotected versions recorded before *cutoff*."""
        async with self._store.lock:
            doomed = [
                v
                for v in await self._store.get_version_log(end=cutoff)
                if v.version_timestamp < cutoff and not _is_protected(v)
            ]
            if not doomed:
                return 0
            async with self._store.transaction() as tx:
                for version in doomed:
                    tx.remove_version(version)

        await self._audit.log(
            AuditEvent(
                event_type=AuditEventType.VERSIONS_PRUNED,
                owner_id=self._store.owner_id,
                description=f"Retention cutoff {_format_date(cutoff)}",
                payload={"removed_count": len(doomed), "cutoff": cutoff},
            )
        )
        return len(doomed)

    async def apply_retention(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        cutoff = now - self._config.retention_days * _SECONDS_PER_DAY
        return await self.delete_versions_older_than(cutoff)

    # ------------------------------------------------------------------
    # Export and statistics
    # ------------------------------------------------------------------

    async def export_audit_trail(
        self,
        start: float = 0.0,
        end: float | None = None,
        *,
        now: float | None = None,
    ) -> str:
        """Flat-text report of every version recorded within ``[start, end]``."""
        now = time.time() if now is None else now
        end = now if end is None else end
        versions = await self._store.get_version_log(start, end)
        parts = [
            "Memory Audit Trail Export\n",
            f"Generated: {_format_date(now)}\n",
            f"Time Range: {_format_date(start)} to {_format_date(end)}\n",
            f"Total Versions: {len(versions)}\n",
            "=" * (_EXPORT_RULE_WIDTH + 1) + "\n\n",
        ]
        for version in versions:
            parts.append(format_version_for_export(version))
            parts.append("\n" + "-" * _EXPORT_RULE_WIDTH + "\n\n")
        return "".join(parts)

    async def export_audit_trail_to_file(
        self,
        directory: str | Path,
        start: float = 0.0,
        end: float | None = None,
        *,
        now: float | None = None,
    ) -> Path:
        """Write the report to ``memory_audit_<YYYYmmdd_HHMMSS>.txt``."""
        now = time.time() if now is None else now
        report = await self.export_audit_trail(start, end, now=now)
        stamp = datetime.fromtimestamp(now).strftime("%Y%m%d_%H%M%S")
        path = Path(directory) / f"memory_audit_{stamp}.txt"
        await asyncio.to_thread(partial(self._write_report, path, report))
        logger.info("Exported audit trail to %s", path)
        return path

    @staticmethod
    def _write_report(path: Path, report: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(report, encoding="utf-8")

    async def statistics(self) -> AuditStatistics:
        cfg = self._config
        versions = await self._store.get_version_log()
        newest_first = sorted(versions, key=lambda v: v.version_timestamp, reverse=True)
        agent_versions = [v for v in newest_first if v.edit_source == EditSource.AGENT]
        low_confidence = [
            v for v in newest_first if v.edit_confidence < cfg.low_confidence_threshold
        ]
        return AuditStatistics(
            total_versions=len(versions),
            memories_with_versions=len({v.memory_id for v in versions}),
            user_edits=sum(1 for v in versions if v.edit_source == EditSource.USER),
            agent_edits=len(agent_versions),
            system_edits=sum(1 for v in versions if v.edit_source == EditSource.SYSTEM),
            recent_agent_edits=min(len(agent_versions), cfg.recent_agent_edit_limit),
            low_confidence_edits=min(len(low_confidence), cfg.low_confidence_edit_limit),
        )
