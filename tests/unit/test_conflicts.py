"""Unit tests for semantic conflict detection."""

from __future__ import annotations

import math

from recallmcp.engine.conflicts import ConflictResolution
from recallmcp.engine.conflicts import ConflictResolver
from recallmcp.engine.conflicts import ConflictSeverity
from recallmcp.engine.conflicts import ConflictType
from recallmcp.engine.conflicts import DetectedConflict
from recallmcp.engine.conflicts import RecommendedAction
from recallmcp.engine.conflicts import ResolutionStrategy
from recallmcp.models import Memory
from recallmcp.models import MemoryRelationship
from recallmcp.models import MemoryType
from recallmcp.models import RelationshipType
from recallmcp.operations import CreateOperation
from recallmcp.operations import DeleteOperation
from recallmcp.operations import MergeOperation
from recallmcp.operations import ReplaceOperation
from recallmcp.operations import UpdateOperation
from tests.helpers.fakes import FakeStore
from tests.helpers.fakes import TableEmbedder

X = [1.0, 0.0]
Y = [0.0, 1.0]


def _at(similarity: float) -> list[float]:
    return [similarity, math.sqrt(1.0 - similarity**2)]


def _make_memory(content: str = "User lives in Berlin", **overrides) -> Memory:
    defaults = {"content": content, "embedding": X}
    defaults.update(overrides)
    return Memory(**defaults)


def _make_resolver(*memories: Memory, table=None):
    store = FakeStore()
    store.add(*memories)
    return ConflictResolver(store, TableEmbedder(dict(table or {}))), store


def _strategies(conflict: DetectedConflict) -> list[ResolutionStrategy]:
    return [s.strategy for s in conflict.suggestions]


class TestConflictResolution:
    def _conflict(self, conflict_type: ConflictType) -> DetectedConflict:
        return DetectedConflict.about(conflict_type, _make_memory(), "test")

    def test_no_conflicts_proceeds(self):
        resolution = ConflictResolution.for_operation("CREATE", [])
        assert not resolution.has_conflicts
        assert resolution.message == "No conflicts detected for CREATE operation"
        assert resolution.recommended_action == RecommendedAction.PROCEED

    def test_action_follows_highest_severity(self):
        low = self._conflict(ConflictType.DUPLICATE)
        medium = self._conflict(ConflictType.DEPENDENCY_BREAK)
        high = self._conflict(ConflictType.INFORMATION_LOSS)

        def action(*conflicts):
            return ConflictResolution.for_operation("X", conflicts).recommended_action

        assert action(low) == RecommendedAction.PROCEED_WITH_WARNING
        assert action(low, medium) == RecommendedAction.REQUIRE_REVIEW
        assert action(low, medium, high) == RecommendedAction.BLOCK_OPERATION

    def test_error_recommends_retry(self):
        resolution = ConflictResolution.error("boom")
        assert resolution.is_error
        assert not resolution.has_conflicts
        assert resolution.recommended_action == RecommendedAction.RETRY_DETECTION
        assert resolution.log_summary() == "ERROR: boom"

    def test_log_summary(self):
        clean = ConflictResolution.for_operation("CREATE", [])
        assert clean.log_summary() == (
            "NO CONFLICTS: No conflicts detected for CREATE operation"
        )
        found = ConflictResolution.for_operation(
            "DELETE",
            [
                self._conflict(ConflictType.DUPLICATE),
                self._conflict(ConflictType.CONTRADICTION),
            ],
        )
        assert found.log_summary() == (
            "CONFLICTS: 2 total (HIGH severity) - Conflicts detected for DELETE operation"
        )

    def test_severity_mapping(self):
        assert self._conflict(ConflictType.CONTRADICTION).severity == ConflictSeverity.HIGH
        assert (
            self._conflict(ConflictType.RELATED_CONTRADICTION).severity
            == ConflictSeverity.MEDIUM
        )
        assert self._conflict(ConflictType.DUPLICATE).severity == ConflictSeverity.LOW

    def test_combine_accumulates_conflicts(self):
        first = ConflictResolution.for_operation(
            "A", [self._conflict(ConflictType.DUPLICATE)]
        )
        second = ConflictResolution.for_operation(
            "B", [self._conflict(ConflictType.CONTRADICTION)]
        )
        combined = first.combine(second)
        assert combined.conflict_count == 2
        assert combined.highest_severity == ConflictSeverity.HIGH
        assert first.combine(None) is first

    def test_combine_propagates_errors(self):
        ok = ConflictResolution.for_operation("A", [])
        combined = ok.combine(ConflictResolution.error("down"))
        assert combined.is_error
        assert combined.error_message == "down"

    def test_summary_lists_suggestions(self):
        conflict = self._conflict(ConflictType.DUPLICATE).suggest(
            ResolutionStrategy.MERGE_MEMORIES, "merge them"
        )
        text = ConflictResolution.for_operation("CREATE", [conflict]).summary()
        assert "CONFLICTS DETECTED" in text
        assert "Low severity: 1" in text
        assert "1. MERGE_MEMORIES: merge them" in text


class TestDetectCreate:
    def _create(self, content: str, **overrides) -> CreateOperation:
        defaults = {"content": content, "reasoning": "stated", "confidence": 0.9}
        defaults.update(overrides)
        return CreateOperation(**defaults)

    async def test_no_existing_memories(self):
        resolver, _ = _make_resolver(table={"User likes jazz": X})
        resolution = await resolver.detect(self._create("User likes jazz"))
        assert resolution.recommended_action == RecommendedAction.PROCEED

    async def test_contradiction_same_type(self):
        existing = _make_memory(importance=0.3)
        resolver, _ = _make_resolver(existing, table={"User lives in Paris": Y})
        resolution = await resolver.detect(
            self._create("User lives in Paris", importance=0.8)
        )

        [conflict] = resolution.conflicts
        assert conflict.conflict_type == ConflictType.CONTRADICTION
        assert conflict.memory_id == existing.id
        assert _strategies(conflict) == [ResolutionStrategy.REPLACE_EXISTING]
        assert resolution.recommended_action == RecommendedAction.BLOCK_OPERATION

    async def test_contradiction_suggests_alternative_when_less_important(self):
        existing = _make_memory(importance=0.9)
        resolver, _ = _make_resolver(existing, table={"User lives in Paris": Y})
        resolution = await resolver.detect(
            self._create("User lives in Paris", importance=0.5)
        )
        assert _strategies(resolution.conflicts[0]) == [
            ResolutionStrategy.CREATE_ALTERNATIVE
        ]

    async def test_dissimilar_other_type_is_not_a_conflict(self):
        existing = _make_memory(type=MemoryType.EMOTION)
        resolver, _ = _make_resolver(existing, table={"User lives in Paris": Y})
        resolution = await resolver.detect(self._create("User lives in Paris"))
        assert not resolution.has_conflicts

    async def test_duplicate(self):
        existing = _make_memory()
        resolver, _ = _make_resolver(existing, table={"User lives in Berlin.": _at(0.95)})
        resolution = await resolver.detect(self._create("User lives in Berlin."))

        [conflict] = resolution.conflicts
        assert conflict.conflict_type == ConflictType.DUPLICATE
        assert _strategies(conflict) == [
            ResolutionStrategy.MERGE_MEMORIES,
            ResolutionStrategy.UPDATE_EXISTING,
        ]
        assert resolution.recommended_action == RecommendedAction.PROCEED_WITH_WARNING

    async def test_embedding_failure_is_an_error_resolution(self):
        resolver, _ = _make_resolver(_make_memory())
        resolution = await resolver.detect(self._create("Unknown text"))
        assert resolution.is_error
        assert resolution.recommended_action == RecommendedAction.RETRY_DETECTION


class TestDetectUpdate:
    def _update(self, memory_id: str, content: str) -> UpdateOperation:
        return UpdateOperation(
            memory_id=memory_id,
            new_content=content,
            reasoning="refined",
            confidence=0.9,
        )

    async def test_missing_memory_is_error(self):
        resolver, _ = _make_resolver(table={"Anything here": X})
        resolution = await resolver.detect(self._update("ghost", "Anything here"))
        assert resolution.error_message == "Memory not found: ghost"

    async def test_contradictory_content(self):
        target = _make_memory()
        resolver, _ = _make_resolver(target, table={"Cats are mammals": Y})
        resolution = await resolver.detect(self._update(target.id, "Cats are mammals"))
        assert [c.conflict_type for c in resolution.conflicts] == [
            ConflictType.CONTRADICTION
        ]

    async def test_related_contradiction(self):
        target = _make_memory()
        related = _make_memory("User speaks German", embedding=Y)
        resolver, store = _make_resolver(
            target, related, table={"User lives in Berlin-Mitte": X}
        )
        store.link(MemoryRelationship(from_memory_id=target.id, to_memory_id=related.id))

        resolution = await resolver.detect(
            self._update(target.id, "User lives in Berlin-Mitte")
        )

        [conflict] = resolution.conflicts
        assert conflict.conflict_type == ConflictType.RELATED_CONTRADICTION
        assert conflict.memory_id == related.id
        assert resolution.recommended_action == RecommendedAction.REQUIRE_REVIEW


class TestDetectReplace:
    def _replace(self, memory_id: str, importance: float) -> ReplaceOperation:
        return ReplaceOperation(
            memory_id=memory_id,
            new_content="User lives in Munich",
            new_type=MemoryType.FACT,
            new_importance=importance,
            reasoning="moved",
            confidence=0.9,
        )

    async def test_information_loss(self):
        target = _make_memory(importance=0.9)
        resolver, _ = _make_resolver(target, table={"User lives in Munich": X})
        resolution = await resolver.detect(self._replace(target.id, 0.5))

        [conflict] = resolution.conflicts
        assert conflict.conflict_type == ConflictType.INFORMATION_LOSS
        assert _strategies(conflict) == [ResolutionStrategy.PRESERVE_ORIGINAL]

    async def test_related_contradiction_suggests_alternatives(self):
        target = _make_memory(importance=0.5)
        related = _make_memory("User speaks German", embedding=Y)
        resolver, store = _make_resolver(target, related, table={"User lives in Munich": X})
        store.link(MemoryRelationship(from_memory_id=related.id, to_memory_id=target.id))

        resolution = await resolver.detect(self._replace(target.id, 0.5))

        [conflict] = resolution.conflicts
        assert _strategies(conflict) == [
            ResolutionStrategy.UPDATE_RELATIONSHIPS,
            ResolutionStrategy.CREATE_ALTERNATIVE,
        ]


class TestDetectDelete:
    def _delete(self, memory_id: str) -> DeleteOperation:
        return DeleteOperation(
            memory_id=memory_id, reasoning="User asked to forget", confidence=0.99
        )

    async def test_high_importance(self):
        target = _make_memory(importance=0.8)
        resolver, _ = _make_resolver(target)
        resolution = await resolver.detect(self._delete(target.id))
        assert [c.conflict_type for c in resolution.conflicts] == [
            ConflictType.INFORMATION_LOSS
        ]

    async def test_dependency_break_counts_incoming_builds_on(self):
        target = _make_memory(importance=0.5)
        child = _make_memory("User is learning German grammar")
        unrelated = _make_memory("User likes pretzels")
        resolver, store = _make_resolver(target, child, unrelated)
        store.link(
            MemoryRelationship(
                from_memory_id=child.id,
                to_memory_id=target.id,
                relationship_type=RelationshipType.BUILDS_ON,
            )
        )
        store.link(
            MemoryRelationship(
                from_memory_id=target.id,
                to_memory_id=unrelated.id,
                relationship_type=RelationshipType.BUILDS_ON,
            )
        )

        resolution = await resolver.detect(self._delete(target.id))

        [conflict] = resolution.conflicts
        assert conflict.conflict_type == ConflictType.DEPENDENCY_BREAK
        assert conflict.description == "1 other memories build on this memory"

    async def test_plain_delete_has_no_conflicts(self):
        target = _make_memory(importance=0.5)
        resolver, _ = _make_resolver(target)
        resolution = await resolver.detect(self._delete(target.id))
        assert resolution.recommended_action == RecommendedAction.PROCEED


class TestDetectMerge:
    def _merge(self, ids, content="User likes hot drinks") -> MergeOperation:
        return MergeOperation(
            source_memory_ids=ids,
            merged_content=content,
            reasoning="Both are drink preferences",
            confidence=0.9,
        )

    async def test_contradicting_sources(self):
        a = _make_memory("User likes tea", embedding=X)
        b = _make_memory("User hates tea", embedding=Y)
        resolver, _ = _make_resolver(a, b, table={"User likes hot drinks": _at(0.7)})
        resolution = await resolver.detect(self._merge([a.id, b.id]))

        [conflict] = resolution.conflicts
        assert conflict.conflict_type == ConflictType.CONTRADICTION
        assert _strategies(conflict) == [
            ResolutionStrategy.SELECTIVE_MERGE,
            ResolutionStrategy.CREATE_ALTERNATIVE,
        ]

    async def test_poorly_preserved_important_source(self):
        a = _make_memory("User likes tea", importance=0.9)
        b = _make_memory("User likes coffee", importance=0.4)
        resolver, _ = _make_resolver(a, b, table={"Weather was nice": Y})
        resolution = await resolver.detect(self._merge([a.id, b.id], "Weather was nice"))

        [conflict] = resolution.conflicts
        assert conflict.conflict_type == ConflictType.INFORMATION_LOSS
        assert conflict.memory_id == a.id

    async def test_missing_sources_are_skipped(self):
        a = _make_memory("User likes tea")
        resolver, _ = _make_resolver(a, table={"User likes hot drinks": X})
        resolution = await resolver.detect(self._merge([a.id, "ghost"]))
        assert not resolution.is_error
        assert not resolution.has_conflicts
