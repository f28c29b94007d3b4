"""Unit tests for the per-owner memory manager facade."""

from __future__ import annotations

import asyncio
import json
import time

import pytest

from recallmcp.audit import AuditEventType
from recallmcp.audit import AuditLogger
from recallmcp.config import MemorySettings
from recallmcp.engine.processor import OutcomeStatus
from recallmcp.errors import MemoryNotFoundError
from recallmcp.manager import MemoryManager
from recallmcp.models import MemoryType
from recallmcp.models import RelationshipType
from recallmcp.operations import CreateOperation
from recallmcp.operations import UpdateOperation
from tests.helpers.fakes import ScriptedLLM

DAY = 86400.0


@pytest.fixture()
def make_manager(store_factory, embedder, audit_config):
    managers: list[MemoryManager] = []

    def _make(**kwargs) -> MemoryManager:
        kwargs.setdefault("audit_config", audit_config)
        manager = MemoryManager(store_factory, embedder, **kwargs)
        managers.append(manager)
        return manager

    return _make


@pytest.fixture()
def manager(make_manager) -> MemoryManager:
    return make_manager()


def _create_op(content: str) -> dict:
    return {
        "type": "CREATE",
        "content": content,
        "memoryType": "PREFERENCE",
        "importance": 0.7,
        "reasoning": "User shared a preference",
        "confidence": 0.9,
    }


class TestOwnerBundles:
    async def test_bundles_are_cached_per_sanitized_owner(self, manager):
        first = await manager.for_owner("Alice")
        second = await manager.for_owner("alice")
        assert first is second

    async def test_bundle_is_rebuilt_after_store_close(self, manager):
        first = await manager.for_owner("alice")
        await manager.factory.close_store("alice")
        second = await manager.for_owner("alice")
        assert second is not first
        assert second.store.is_ready

    async def test_owners_are_isolated(self, manager):
        await manager.save_memory("alice", "User dog Rex loves walks")
        assert await manager.semantic_search("bob", "dog Rex walks") == []
        assert len(await manager.semantic_search("alice", "dog Rex walks")) == 1


class TestDirectEdits:
    async def test_save_and_get(self, manager):
        memory = await manager.save_memory(
            "alice",
            "User is allergic to peanuts",
            memory_type=MemoryType.FACT,
            importance=0.9,
            metadata={"source": "onboarding"},
        )

        assert memory.embedding
        loaded = await manager.get_memory("alice", memory.id)
        assert loaded.content == "User is allergic to peanuts"
        assert loaded.access_count == 1

        owner = await manager.for_owner("alice")
        [version] = await owner.versions.get_history(memory.id)
        assert version.edit_reason == "Created directly"
        assert version.is_current

    async def test_update_reembeds_changed_content(self, manager):
        memory = await manager.save_memory("alice", "User likes tea")
        edited = memory.model_copy(update={"content": "User likes coffee"})

        updated = await manager.update_memory("alice", edited)

        assert updated.embedding != memory.embedding
        owner = await manager.for_owner("alice")
        history = await owner.versions.get_history(memory.id)
        assert [v.edit_reason for v in history] == ["Created directly", "Updated directly"]
        assert [v.is_current for v in history] == [False, True]

    async def test_update_missing(self, manager):
        memory = await manager.save_memory("alice", "User likes tea")
        await manager.delete_memory("alice", memory.id)
        with pytest.raises(MemoryNotFoundError):
            await manager.update_memory("alice", memory)

    async def test_delete(self, manager):
        memory = await manager.save_memory("alice", "User likes tea")
        assert await manager.delete_memory("alice", memory.id)
        assert not await manager.delete_memory("alice", memory.id)
        assert await manager.get_memory("alice", memory.id) is None

    @pytest.mark.parametrize("content", ["  x  ", "ab", "y" * 2001])
    async def test_save_rejects_content_outside_length_bounds(self, manager, content):
        with pytest.raises(ValueError):
            await manager.save_memory("alice", content)
        assert (await manager.memory_stats("alice")).total_memories == 0

    async def test_update_rejects_content_outside_length_bounds(self, manager):
        memory = await manager.save_memory("alice", "User likes tea")
        with pytest.raises(ValueError):
            await manager.update_memory(
                "alice", memory.model_copy(update={"content": "z"})
            )
        assert (await manager.get_memory("alice", memory.id)).content == "User likes tea"


class TestRelationships:
    async def test_single_directed_edge_by_default(self, manager):
        a = await manager.save_memory("alice", "User likes tea")
        b = await manager.save_memory("alice", "User likes green tea")

        edges = await manager.create_relationship("alice", a.id, b.id)

        assert len(edges) == 1
        store = (await manager.for_owner("alice")).store
        assert await store.relationship_exists(a.id, b.id)
        assert not await store.relationship_exists(b.id, a.id)

    async def test_bidirectional_symmetric_type(self, manager):
        a = await manager.save_memory("alice", "User likes tea")
        b = await manager.save_memory("alice", "User likes green tea")

        edges = await manager.create_relationship(
            "alice", a.id, b.id, RelationshipType.SIMILAR, 0.9, bidirectional=True
        )

        assert [(e.from_memory_id, e.to_memory_id) for e in edges] == [
            (a.id, b.id),
            (b.id, a.id),
        ]
        store = (await manager.for_owner("alice")).store
        assert await store.relationship_count() == 2

    async def test_bidirectional_directional_type_is_refused(self, manager):
        a = await manager.save_memory("alice", "User likes tea")
        b = await manager.save_memory("alice", "User likes green tea")
        with pytest.raises(ValueError):
            await manager.create_relationship(
                "alice", a.id, b.id, RelationshipType.BUILDS_ON, bidirectional=True
            )

    async def test_missing_end(self, manager):
        a = await manager.save_memory("alice", "User likes tea")
        with pytest.raises(MemoryNotFoundError):
            await manager.create_relationship("alice", a.id, "ghost")


class TestOperationsAndTurns:
    async def test_apply_operation(self, manager):
        outcome = await manager.apply_operation(
            "alice",
            CreateOperation(
                content="User plays the cello",
                reasoning="Stated hobby",
                confidence=0.9,
            ),
        )
        assert outcome.applied
        assert (await manager.get_memory("alice", outcome.memory_id)).content == (
            "User plays the cello"
        )

    async def test_concurrent_duplicates_are_serialized(self, manager):
        operation = CreateOperation(
            content="User was born in Lisbon",
            reasoning="Biographical fact",
            confidence=0.9,
        )

        outcomes = await asyncio.gather(
            *(manager.apply_operation("alice", operation) for _ in range(3))
        )

        assert sorted(o.status for o in outcomes) == [
            OutcomeStatus.APPLIED,
            OutcomeStatus.REJECTED,
            OutcomeStatus.REJECTED,
        ]
        assert {o.error_code for o in outcomes if not o.applied} == {"near_duplicate"}

    async def test_process_conversation(self, make_manager):
        llm = ScriptedLLM([json.dumps({"operations": [_create_op("User loves jazz piano")]})])
        manager = make_manager(llm=llm)
        existing = await manager.save_memory("alice", "User dog Rex loves walks")

        turn = await manager.process_conversation(
            "alice", "My dog Rex loves long walks, and I love jazz piano", "Great!"
        )

        assert turn.retrieved_memory_ids == [existing.id]
        assert turn.applied_count == 1
        assert f"- ID: {existing.id}" in llm.prompts[0]
        [memory] = await manager.semantic_search("alice", "jazz piano")
        assert memory.type == MemoryType.PREFERENCE

    async def test_process_conversation_without_operations(self, make_manager):
        llm = ScriptedLLM(
            [json.dumps({"operations": [], "exclusionRationale": "Just a greeting"})]
        )
        manager = make_manager(llm=llm)

        turn = await manager.process_conversation("alice", "Hello there!", "Hi!")

        assert turn.outcomes == []
        assert turn.exclusion_rationale == "Just a greeting"
        assert not turn.skipped

    async def test_generate_search_queries(self, make_manager):
        llm = ScriptedLLM([json.dumps({"searchQueries": ["dog", "walks"]})])
        manager = make_manager(llm=llm)
        assert await manager.generate_search_queries("How is Rex?") == ["dog", "walks"]

    async def test_default_proposal_source_proposes_nothing(self, manager):
        turn = await manager.process_conversation("alice", "I live in Oslo", "Nice")
        assert turn.outcomes == []


class TestRetrievalAndContext:
    async def test_retrieve_relevant(self, manager):
        dog = await manager.save_memory("alice", "User dog Rex loves walks")
        await manager.save_memory("alice", "User works night shifts as nurse")

        memories = await manager.retrieve_relevant("alice", "dog Rex walks")

        assert [m.id for m in memories] == [dog.id]
        assert (await manager.get_memory("alice", dog.id)).access_count == 2

    def test_should_trigger_retrieval(self, manager):
        assert manager.should_trigger_retrieval("Do you remember my dog's name?")
        assert not manager.should_trigger_retrieval("ok")

    async def test_format_context_includes_related_previews(self, manager):
        dog = await manager.save_memory("alice", "User dog Rex loves walks", importance=0.9)
        park = await manager.save_memory("alice", "User walks Rex in the park")
        await manager.create_relationship(
            "alice", dog.id, park.id, RelationshipType.BUILDS_ON
        )

        context = await manager.format_context("alice", [dog])

        assert "Content: User dog Rex loves walks" in context
        assert "Related: User walks Rex in the park (builds on)" in context
        assert await manager.format_context("alice", []) == ""


class TestConcurrentAccess:
    async def test_access_tracking_keeps_concurrent_update(self, manager, monkeypatch):
        memory = await manager.save_memory(
            "alice", "User loves hiking in the mountains on weekends"
        )
        owner = await manager.for_owner("alice")
        read_many = owner.store.get_many

        async def slow_get_many(memory_ids):
            memories = await read_many(memory_ids)
            await asyncio.sleep(0.05)
            return memories

        monkeypatch.setattr(owner.store, "get_many", slow_get_many)
        new_content = "User loves hiking in the mountains on weekends with friends"

        _, outcome = await asyncio.gather(
            manager.retrieve_relevant("alice", "hiking in the mountains"),
            manager.apply_operation(
                "alice",
                UpdateOperation(
                    memory_id=memory.id,
                    new_content=new_content,
                    reasoning="User added detail",
                    confidence=0.9,
                ),
            ),
        )

        assert outcome.applied
        live = await owner.store.get(memory.id, track_access=False)
        current = await owner.versions.get_current_version(memory.id)
        assert live.content == current.content == new_content
        assert live.access_count == 1


class TestDisabled:
    async def test_every_call_is_a_noop(self, make_manager):
        manager = make_manager(settings=MemorySettings(memory_enabled=False))

        assert await manager.save_memory("alice", "User likes tea") is None
        outcome = await manager.apply_operation(
            "alice",
            CreateOperation(content="User likes tea", reasoning="r", confidence=0.9),
        )
        assert outcome.status == OutcomeStatus.SKIPPED
        assert (await manager.process_conversation("alice", "hi", "hello")).skipped
        assert await manager.retrieve_relevant("alice", "tea") == []
        assert await manager.create_relationship("alice", "a", "b") == []
        assert not manager.should_trigger_retrieval("Do you remember my tea?")
        assert (await manager.memory_stats("alice")).total_memories == 0


class TestStatsAndMaintenance:
    async def test_memory_stats(self, manager):
        a = await manager.save_memory("alice", "User likes tea", memory_type=MemoryType.PREFERENCE)
        b = await manager.save_memory("alice", "User is a nurse")
        await manager.create_relationship("alice", a.id, b.id)
        await manager.save_memory("Bob", "Bob likes chess")

        stats = await manager.memory_stats("alice")

        assert stats.total_memories == 2
        assert stats.total_relationships == 1
        assert stats.total_storage_size == len(a.content) + len(b.content)
        assert stats.total_versions == 2
        assert stats.by_type == {"PREFERENCE": 1, "FACT": 1}
        assert [s.owner_id for s in await manager.all_memory_stats()] == ["alice", "bob"]

    async def test_export_memories(self, manager):
        memory = await manager.save_memory("alice", "User likes tea")
        exported = json.loads(await manager.export_memories("alice"))
        assert [item["id"] for item in exported] == [memory.id]

    async def test_maintenance_caps_memory_count(self, make_manager):
        manager = make_manager(settings=MemorySettings(max_memories=2))
        await manager.save_memory("alice", "Most important", importance=0.9)
        await manager.save_memory("alice", "Somewhat important", importance=0.5)
        doomed = await manager.save_memory("alice", "Barely important", importance=0.1)

        report = await manager.run_maintenance("alice")

        assert report.memories_over_limit == 1
        assert report.memories_expired == 0
        assert await manager.get_memory("alice", doomed.id) is None
        owner = await manager.for_owner("alice")
        history = await owner.versions.get_history(doomed.id)
        assert len(history) == 1 and not history[0].is_current

    async def test_maintenance_expires_old_memories(self, make_manager):
        manager = make_manager(settings=MemorySettings(retention_days=30))
        await manager.save_memory("alice", "Old news")

        report = await manager.run_maintenance("alice", now=time.time() + 31 * DAY)

        assert report.memories_expired == 1
        assert (await manager.memory_stats("alice")).total_memories == 0


class TestDeleteOwner:
    async def test_discards_everything_and_leaves_tombstone(self, manager, audit_config):
        memory = await manager.save_memory("alice", "User likes tea")
        await manager.apply_operation(
            "alice",
            CreateOperation(content="User is a nurse", reasoning="r", confidence=0.9),
        )
        await manager.save_memory("bob", "Bob likes chess")
        audit = AuditLogger(audit_config, "alice")
        assert await audit.read_events()

        removed = await manager.delete_owner("alice")

        assert removed > 0
        assert await manager.get_memory("alice", memory.id) is None
        assert (await manager.memory_stats("alice")).total_versions == 0
        [event] = await audit.read_events()
        assert event.event_type == AuditEventType.OWNER_DELETED
        assert event.payload == {"keys_removed": removed}
        assert (await manager.memory_stats("bob")).total_memories == 1
