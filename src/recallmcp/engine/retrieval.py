"""Relevance-ranked retrieval over one owner's store.

Ranking blends semantic similarity (plus a small conversation-context
boost), importance and recency, then enforces a per-type diversity cap.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass
from dataclasses import field

from recallmcp.config import RetrievalConfig
from recallmcp.engine.embedding import Embedder
from recallmcp.errors import EmbeddingError
from recallmcp.models import Memory
from recallmcp.observability import timed
from recallmcp.similarity import context_boost
from recallmcp.similarity import cosine_similarity
from recallmcp.store.base import MemoryStore

logger = logging.getLogger(__name__)

_SECONDS_PER_HOUR = 3600.0
_SECONDS_PER_DAY = 86400.0

# ---------------------------------------------------------------------------
# Trigger heuristics
# ---------------------------------------------------------------------------

_MIN_TRIGGER_LENGTH = 10
_LONG_MESSAGE_LENGTH = 50
_GREETINGS = ("hi", "hello", "hey", "good morning", "good evening", "good night")
_ACKNOWLEDGEMENTS = frozenset({"yes", "no", "ok", "okay", "thanks", "thank you"})
_QUESTION_WORDS = ("what", "how", "why", "when", "where", "who")
_RECALL_CUES = ("remember", "recall", "told you", "mentioned", "said", "talked about")

_TOPIC_KEYWORDS = (
    "work",
    "job",
    "career",
    "family",
    "friend",
    "hobby",
    "travel",
    "food",
    "movie",
    "book",
    "music",
    "sport",
    "health",
    "weather",
)
_COMPLEXITY_THRESHOLD = 0.3


def should_trigger_retrieval(
    message: str, history: Sequence[str] | None = None
) -> bool:
    """Decide whether a user message is worth a retrieval round-trip.

    Short messages, bare greetings and acknowledgements are skipped;
    questions, recall cues ("remember", "mentioned", ...) and long messages
    trigger retrieval.
    """
    del history
    if len(message) < _MIN_TRIGGER_LENGTH:
        return False
    lowered = message.lower().strip()
    for greeting in _GREETINGS:
        if lowered == greeting or lowered.startswith(greeting + " "):
            return False
    if lowered in _ACKNOWLEDGEMENTS:
        return False
    if "?" in lowered or lowered.startswith(_QUESTION_WORDS):
        return True
    if any(cue in lowered for cue in _RECALL_CUES):
        return True
    return len(message) > _LONG_MESSAGE_LENGTH


@dataclass(frozen=True)
class ContextAnalysis:
    """Coarse signal about whether a conversation needs long-term memory."""

    needs_memory: bool
    topics: list[str] = field(default_factory=list)
    complexity: float = 0.0


def analyze_conversation_context(history: Sequence[str] | None) -> ContextAnalysis:
    """Detect topics and estimate vocabulary complexity of *history*."""
    if not history:
        return ContextAnalysis(needs_memory=False)

    topics: list[str] = []
    for message in history:
        lowered = message.lower()
        for keyword in _TOPIC_KEYWORDS:
            if keyword in lowered and keyword not in topics:
                topics.append(keyword)

    total_words = 0
    unique: set[str] = set()
    for message in history:
        words = message.lower().split()
        total_words += len(words)
        unique.update(w for w in words if len(w) > 3)

    if total_words == 0:
        complexity = 0.0
    else:
        diversity = len(unique) / total_words
        average_length = total_words / len(history)
        complexity = min(1.0, diversity * 2.0 + average_length / 50.0)

    return ContextAnalysis(
        needs_memory=complexity > _COMPLEXITY_THRESHOLD or bool(topics),
        topics=topics,
        complexity=complexity,
    )


# ---------------------------------------------------------------------------
# Retrieval engine
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RankedMemory:
    """A retrieval candidate with the components of its weighted score."""

    memory: Memory
    similarity: float
    context_boost: float
    recency_factor: float
    score: float


class RetrievalEngine:
    """Ranks one owner's memories against a query and conversation context."""

    def __init__(
        self,
        store: MemoryStore,
        embedder: Embedder,
        *,
        config: RetrievalConfig | None = None,
        importance_threshold: float = 0.0,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._config = config or RetrievalConfig()
        self._importance_threshold = importance_threshold

    def recency_factor(self, memory: Memory, now: float) -> float:
        """Boosted constant inside the recent window, hyperbolic decay after."""
        cfg = self._config
        age_seconds = now - memory.timestamp
        if age_seconds < cfg.recent_window_hours * _SECONDS_PER_HOUR:
            return cfg.recent_boost
        days_old = int(age_seconds // _SECONDS_PER_DAY)
        return max(cfg.recency_floor, 1.0 / (1.0 + 0.1 * days_old))

    async def rank(
        self,
        query: str,
        history: Sequence[str] | None = None,
        *,
        now: float | None = None,
    ) -> list[RankedMemory]:
        """Score every eligible candidate, best first, before diversity capping.

        Returns an empty list when the query cannot be embedded.
        """
        cfg = self._config
        try:
            query_vector = await self._embedder.embed(query)
        except EmbeddingError as exc:
            logger.warning("Query embedding failed, skipping retrieval: %s", exc)
            return []

        current = time.time() if now is None else now
        recent_history = list(history or [])[-cfg.history_window :]
        candidates = await self._store.get_by_importance(self._importance_threshold)

        ranked: list[RankedMemory] = []
        for memory in candidates:
            if not memory.embedding:
                continue
            boost = context_boost(
                memory.content,
                recent_history,
                per_match=cfg.context_boost_per_match,
                maximum=cfg.max_context_boost,
            )
            similarity = cosine_similarity(query_vector, memory.embedding) + boost
            if similarity < cfg.min_similarity:
                continue
            recency = self.recency_factor(memory, current)
            score = (
                cfg.similarity_weight * similarity
                + cfg.importance_weight * memory.importance
                + cfg.recency_weight * recency
            )
            ranked.append(
                RankedMemory(
                    memory=memory,
                    similarity=similarity,
                    context_boost=boost,
                    recency_factor=recency,
                    score=score,
                )
            )
        ranked.sort(key=lambda r: r.score, reverse=True)
        return ranked

    def select_diverse(self, ranked: Sequence[RankedMemory]) -> list[RankedMemory]:
        """Take the best candidates, admitting at most ``max_per_type`` per type."""
        cfg = self._config
        per_type: Counter = Counter()
        selected: list[RankedMemory] = []
        for candidate in ranked:
            if len(selected) >= cfg.max_results:
                break
            memory_type = candidate.memory.type
            if per_type[memory_type] >= cfg.max_per_type:
                continue
            per_type[memory_type] += 1
            selected.append(candidate)
        return selected

    async def retrieve(
        self,
        query: str,
        history: Sequence[str] | None = None,
        *,
        now: float | None = None,
        track_access: bool = True,
    ) -> list[Memory]:
        """Return a ranked, type-diverse shortlist of relevant memories."""
        with timed("retrieval.retrieve"):
            selected = self.select_diverse(await self.rank(query, history, now=now))
            memories = [r.memory for r in selected]
            if track_access and memories:
                await self._store.record_access([m.id for m in memories])
            logger.debug(
                "Retrieved %d memories for owner %s",
                len(memories),
                self._store.owner_id,
            )
            return memories

    async def semantic_search(
        self, text: str, max_results: int | None = None
    ) -> list[Memory]:
        """Pure similarity search above the minimum similarity threshold."""
        limit = self._config.max_results if max_results is None else max_results
        with timed("retrieval.semantic_search"):
            try:
                vector = await self._embedder.embed(text)
            except EmbeddingError as exc:
                logger.warning("Search embedding failed: %s", exc)
                return []
            hits = await self._store.find_similar(vector, await self._store.count())
            return [
                hit.memory
                for hit in hits
                if hit.similarity >= self._config.min_similarity
            ][: max(limit, 0)]
