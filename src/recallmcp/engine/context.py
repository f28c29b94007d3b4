"""Render retrieved memories as a prompt context block.

Memories are ordered by a priority score (importance, access recency and
access frequency) and appended until the token budget is spent.  Tokens
are estimated as ``len(text) // 4``.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Mapping
from collections.abc import Sequence
from datetime import datetime

from recallmcp.models import Memory
from recallmcp.models import MemoryRelationship
from recallmcp.models import MemoryType
from recallmcp.models import RelationshipType

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 800
MAX_RELATED_PER_MEMORY = 2

HEADER_TEMPLATE = (
    "=== RELEVANT MEMORIES FROM PREVIOUS CONVERSATIONS ===\n"
    "Context: {count} memories retrieved for query relevance\n"
    "Instructions: Use this context naturally when relevant to the conversation\n\n"
)
ITEM_TEMPLATE = (
    "[{stars}] {type_tag} {when}\n"
    "Content: {content}\n"
    "Context: {context} | Accessed: {access_count} times\n{related}\n"
)
RELATED_TEMPLATE = "Related: {preview} ({label})\n"
FOOTER = (
    "\n=== END MEMORY CONTEXT ===\n"
    "Note: Integrate these memories naturally into your response when relevant."
)
TRUNCATION_MARKER = "... (additional memories truncated for length)\n"

_SECONDS_PER_HOUR = 3600
_SECONDS_PER_DAY = 86400
_RECENCY_SPAN_SECONDS = 7 * _SECONDS_PER_DAY

_TYPE_TAGS = {
    MemoryType.FACT: "[FACT]",
    MemoryType.PREFERENCE: "[PREF]",
    MemoryType.EMOTION: "[EMOT]",
    MemoryType.EVENT: "[EVENT]",
    MemoryType.RELATIONSHIP: "[REL]",
}

_RELATIONSHIP_LABELS = {
    RelationshipType.SIMILAR: "similar",
    RelationshipType.CONTRADICTS: "contradicts",
    RelationshipType.BUILDS_ON: "builds on",
    RelationshipType.RELATED_TO: "related",
}


def estimate_tokens(text: str) -> int:
    return len(text) // 4


def importance_stars(importance: float) -> str:
    if importance >= 0.8:
        return "★★★"
    if importance >= 0.6:
        return "★★☆"
    if importance >= 0.4:
        return "★☆☆"
    return "☆☆☆"


def type_tag(memory_type: MemoryType) -> str:
    return _TYPE_TAGS.get(memory_type, "[INFO]")


def relative_timestamp(timestamp: float, now: float) -> str:
    """``Recent``, ``Nh ago``, ``Nd ago`` or a short date for older memories."""
    elapsed = now - timestamp
    if elapsed < _SECONDS_PER_DAY:
        hours = int(elapsed // _SECONDS_PER_HOUR)
        return "Recent" if hours < 1 else f"{hours}h ago"
    if elapsed < 7 * _SECONDS_PER_DAY:
        return f"{int(elapsed // _SECONDS_PER_DAY)}d ago"
    return datetime.fromtimestamp(timestamp).strftime("%b %d, %H:%M")


def emotional_context(memory: Memory) -> str:
    if memory.emotional_weight > 0.5:
        return "Emotional (Strong)" if memory.emotional_weight > 0.8 else "Emotional"
    return "Neutral"


def priority_score(memory: Memory, now: float) -> float:
    """0.5 importance + 0.3 access recency (linear over 7 days) + 0.2 frequency."""
    age = now - memory.last_accessed
    recency = max(0.0, 1.0 - age / _RECENCY_SPAN_SECONDS)
    frequency = min(1.0, math.log(memory.access_count + 1) / 5.0)
    return 0.5 * memory.importance + 0.3 * recency + 0.2 * frequency


def _related_lines(
    memory_id: str,
    relationships: Mapping[str, Sequence[MemoryRelationship]],
    previews: Mapping[str, str],
) -> str:
    lines: list[str] = []
    for relationship in relationships.get(memory_id, ())[:MAX_RELATED_PER_MEMORY]:
        other = relationship.other_end(memory_id)
        preview = previews.get(other) or f"Related memory #{other[:8]}"
        label = _RELATIONSHIP_LABELS.get(relationship.relationship_type, "connected")
        lines.append(RELATED_TEMPLATE.format(preview=preview, label=label))
    return "".join(lines)


def format_memory(
    memory: Memory,
    *,
    relationships: Mapping[str, Sequence[MemoryRelationship]] | None = None,
    previews: Mapping[str, str] | None = None,
    now: float | None = None,
) -> str:
    now = time.time() if now is None else now
    return ITEM_TEMPLATE.format(
        stars=importance_stars(memory.importance),
        type_tag=type_tag(memory.type),
        when=relative_timestamp(memory.timestamp, now),
        content=memory.content,
        context=emotional_context(memory),
        access_count=memory.access_count,
        related=_related_lines(memory.id, relationships or {}, previews or {}),
    )


def format_fallback_context(memories: Sequence[Memory]) -> str:
    """Compact bullet list used when the full layout cannot fit."""
    bullets = "".join(f"• {m.content}\n" for m in memories)
    return (
        f"RELEVANT MEMORIES:\n{bullets}\n"
        "Use this context naturally in your response when relevant."
    )


def format_memory_context(
    memories: Sequence[Memory],
    relationships: Mapping[str, Sequence[MemoryRelationship]] | None = None,
    *,
    max_tokens: int = DEFAULT_MAX_TOKENS,
    previews: Mapping[str, str] | None = None,
    now: float | None = None,
) -> str:
    """Build the context block for *memories* within *max_tokens*.

    ``relationships`` maps a memory id to its relationships; up to two are
    rendered per memory, using ``previews`` (memory id -> short text) for
    the related memory when available.  Returns ``""`` for no memories.
    """
    if not memories:
        return ""
    now = time.time() if now is None else now

    header = HEADER_TEMPLATE.format(count=len(memories))
    budget = max_tokens - estimate_tokens(header) - estimate_tokens(FOOTER)
    if budget <= 0:
        logger.debug("Token budget %d too small for full layout", max_tokens)
        return format_fallback_context(memories)

    ordered = sorted(memories, key=lambda m: priority_score(m, now), reverse=True)
    parts = [header]
    used = 0
    for memory in ordered:
        item = format_memory(
            memory, relationships=relationships, previews=previews, now=now
        )
        cost = estimate_tokens(item)
        if used + cost > budget:
            logger.debug("Token limit reached, truncating memory context")
            parts.append(TRUNCATION_MARKER)
            break
        parts.append(item)
        used += cost
    parts.append(FOOTER)
    logger.debug("Formatted memory context: %d estimated tokens", used)
    return "".join(parts)
