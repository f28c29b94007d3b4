"""Unit tests for the store-aware edit validator."""

from __future__ import annotations

import math

import pytest

from recallmcp.engine.validator import EditValidator
from recallmcp.engine.validator import is_significant_type_change
from recallmcp.engine.validator import sensitive_content_warnings
from recallmcp.engine.validator import ValidationResult
from recallmcp.errors import EmbeddingError
from recallmcp.models import Memory
from recallmcp.models import MemoryRelationship
from recallmcp.models import MemoryType
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
    """Unit vector with the given cosine similarity to ``X``."""
    return [similarity, math.sqrt(1.0 - similarity**2)]


def _make_memory(content: str = "User lives in Berlin", **overrides) -> Memory:
    defaults = {"content": content, "embedding": X, "importance": 0.5}
    defaults.update(overrides)
    return Memory(**defaults)


def _make_validator(*memories: Memory, table=None, **kwargs):
    store = FakeStore()
    store.add(*memories)
    return EditValidator(store, TableEmbedder(dict(table or {})), **kwargs), store


def _create(content: str, **overrides) -> CreateOperation:
    defaults = {"content": content, "reasoning": "stated", "confidence": 0.9}
    defaults.update(overrides)
    return CreateOperation(**defaults)


def _update(memory_id: str, **overrides) -> UpdateOperation:
    defaults = {"memory_id": memory_id, "reasoning": "refined", "confidence": 0.9}
    defaults.update(overrides)
    return UpdateOperation(**defaults)


class TestValidationResult:
    def test_combine_first_failure_wins(self):
        first = ValidationResult.fail("a", "first", ["w1"])
        second = ValidationResult.fail("b", "second", ["w2"])
        combined = first.combine(second)
        assert combined.error_code == "a"
        assert combined.warnings == ["w1", "w2"]

    def test_combine_success_with_failure(self):
        combined = ValidationResult.ok(warnings=["w1"]).combine(
            ValidationResult.fail("b", "bad")
        )
        assert not combined.success
        assert combined.error_code == "b"
        assert combined.warnings == ["w1"]

    def test_summary(self):
        result = ValidationResult.fail("near_duplicate", "dup", ["careful"])
        assert result.summary() == (
            "Validation FAILED (near_duplicate): dup [1 warning(s): careful]"
        )


class TestHelpers:
    @pytest.mark.parametrize(
        "content",
        [
            "my password is hunter2",
            "SSN 123-45-6789",
            "card 4111 1111 1111 1111",
        ],
    )
    def test_sensitive_content_detected(self, content):
        assert sensitive_content_warnings(content)

    def test_plain_content_is_clean(self):
        assert sensitive_content_warnings("User likes jazz") == []

    def test_significant_type_changes(self):
        assert is_significant_type_change(MemoryType.FACT, MemoryType.PREFERENCE)
        assert is_significant_type_change(MemoryType.EMOTION, MemoryType.EVENT)
        assert not is_significant_type_change(MemoryType.FACT, MemoryType.EMOTION)
        assert not is_significant_type_change(MemoryType.FACT, MemoryType.FACT)


class TestValidateCreate:
    async def test_structurally_invalid_operation(self):
        validator, _ = _make_validator()
        result = await validator.validate(_create("hi"))
        assert result.error_code == "invalid_operation"

    async def test_passes_on_empty_store(self):
        validator, _ = _make_validator(table={"User owns a red bicycle": X})
        result = await validator.validate(_create("User owns a red bicycle"))
        assert result.success
        assert result.warnings == []

    async def test_near_duplicate_fails(self):
        existing = _make_memory()
        validator, _ = _make_validator(existing, table={"User lives in Berlin!": X})
        result = await validator.validate(_create("User lives in Berlin!"))
        assert result.error_code == "near_duplicate"
        assert existing.id in result.message

    async def test_similar_memory_warns(self):
        validator, _ = _make_validator(
            _make_memory(), table={"User works in Berlin": _at(0.5)}
        )
        result = await validator.validate(_create("User works in Berlin"))
        assert result.success
        assert any("Similar memories already exist (1)" in w for w in result.warnings)

    async def test_importance_below_threshold_fails(self):
        validator, _ = _make_validator(
            table={"User owns a red bicycle": X}, importance_threshold=0.5
        )
        result = await validator.validate(
            _create("User owns a red bicycle", importance=0.3)
        )
        assert result.error_code == "importance_below_threshold"

    async def test_short_content_fails_quality_gate(self):
        validator, _ = _make_validator(table={"abcd": X})
        result = await validator.validate(_create("abcd"))
        assert result.error_code == "content_too_short"

    async def test_sensitive_content_warns(self):
        content = "User's password is hunter2"
        validator, _ = _make_validator(table={content: X})
        result = await validator.validate(_create(content))
        assert result.success
        assert "Content may contain sensitive information" in result.warnings

    async def test_embedding_failure_propagates(self):
        validator, _ = _make_validator()
        with pytest.raises(EmbeddingError):
            await validator.validate(_create("Not embeddable text"))


class TestValidateUpdate:
    async def test_missing_memory(self):
        validator, _ = _make_validator()
        result = await validator.validate(_update("nope", new_importance=0.4))
        assert result.error_code == "memory_not_found"

    async def test_contradictory_content_fails(self):
        target = _make_memory()
        validator, _ = _make_validator(target, table={"Cats are mammals": Y})
        result = await validator.validate(
            _update(target.id, new_content="Cats are mammals")
        )
        assert result.error_code == "content_too_dissimilar"

    async def test_dissimilar_content_warns(self):
        target = _make_memory()
        validator, _ = _make_validator(target, table={"User moved away": _at(0.25)})
        result = await validator.validate(_update(target.id, new_content="User moved away"))
        assert result.success
        assert any("differs substantially" in w for w in result.warnings)

    async def test_large_growth_warns(self):
        target = _make_memory("User likes tea")
        longer = "User likes tea, especially green tea brewed at low heat"
        validator, _ = _make_validator(target, table={longer: X})
        result = await validator.validate(_update(target.id, new_content=longer))
        assert result.success
        assert any("3x its original length" in w for w in result.warnings)

    async def test_importance_swing_warns(self):
        target = _make_memory(importance=0.2)
        validator, _ = _make_validator(target)
        result = await validator.validate(_update(target.id, new_importance=0.9))
        assert any("Large importance change" in w for w in result.warnings)

    async def test_lowering_frequently_accessed_memory_warns(self):
        target = _make_memory(importance=0.8, access_count=6)
        validator, _ = _make_validator(target)
        result = await validator.validate(_update(target.id, new_importance=0.7))
        assert result.success
        assert any("frequently accessed" in w for w in result.warnings)

    async def test_type_change_warns(self):
        target = _make_memory()
        validator, _ = _make_validator(target)
        result = await validator.validate(
            _update(target.id, new_type=MemoryType.PREFERENCE)
        )
        assert result.warnings == ["Significant type change: FACT -> PREFERENCE"]

    async def test_does_not_record_access(self):
        target = _make_memory()
        validator, store = _make_validator(target)
        await validator.validate(_update(target.id, new_importance=0.6))
        assert store.accessed == []


class TestValidateReplace:
    def _replace(self, memory_id: str, confidence: float) -> ReplaceOperation:
        return ReplaceOperation(
            memory_id=memory_id,
            new_content="User lives in Munich now",
            new_type=MemoryType.FACT,
            new_importance=0.8,
            reasoning="moved",
            confidence=confidence,
        )

    async def test_high_importance_needs_high_confidence(self):
        target = _make_memory(importance=0.8)
        validator, _ = _make_validator(target, table={"User lives in Munich now": X})
        result = await validator.validate(self._replace(target.id, 0.85))
        assert result.error_code == "insufficient_confidence"

    async def test_high_importance_with_high_confidence_warns(self):
        target = _make_memory(importance=0.8)
        validator, _ = _make_validator(target, table={"User lives in Munich now": X})
        result = await validator.validate(self._replace(target.id, 0.95))
        assert result.success
        assert any("high-importance" in w for w in result.warnings)

    async def test_unrelated_replacement_warns(self):
        target = _make_memory()
        validator, _ = _make_validator(target, table={"User lives in Munich now": Y})
        result = await validator.validate(self._replace(target.id, 0.8))
        assert result.success
        assert any("consider CREATE" in w for w in result.warnings)


class TestValidateDelete:
    def _delete(self, memory_id: str, confidence: float, **kwargs) -> DeleteOperation:
        return DeleteOperation(
            memory_id=memory_id,
            reasoning="User asked to forget this",
            confidence=confidence,
            **kwargs,
        )

    async def test_high_importance_needs_very_high_confidence(self):
        target = _make_memory(importance=0.7)
        validator, _ = _make_validator(target)
        assert (await validator.validate(self._delete(target.id, 0.94))).error_code == (
            "insufficient_confidence"
        )
        assert (await validator.validate(self._delete(target.id, 0.95))).success

    async def test_heavily_accessed_memory_warns(self):
        target = _make_memory(access_count=11)
        validator, _ = _make_validator(target)
        result = await validator.validate(self._delete(target.id, 0.9))
        assert any("11 accesses" in w for w in result.warnings)

    async def test_relationship_warnings(self):
        target = _make_memory()
        other = _make_memory("Other memory")
        validator, store = _make_validator(target, other)
        store.link(
            MemoryRelationship(from_memory_id=other.id, to_memory_id=target.id)
        )

        cascading = await validator.validate(self._delete(target.id, 0.9))
        orphaning = await validator.validate(
            self._delete(target.id, 0.9, delete_relationships=False)
        )

        assert cascading.warnings == ["Will delete 1 relationship(s)"]
        assert "orphaned" in orphaning.warnings[0]


class TestValidateMerge:
    def _merge(self, ids, content="User enjoys tea and coffee", confidence=0.8):
        return MergeOperation(
            source_memory_ids=ids,
            merged_content=content,
            reasoning="Both are drink preferences",
            confidence=confidence,
        )

    async def test_missing_source(self):
        a = _make_memory("User likes tea")
        validator, _ = _make_validator(a)
        result = await validator.validate(self._merge([a.id, "ghost"]))
        assert result.error_code == "memory_not_found"
        assert "ghost" in result.message

    async def test_dissimilar_sources_fail(self):
        a = _make_memory("User likes tea", embedding=X)
        b = _make_memory("User hates rain", embedding=Y)
        validator, _ = _make_validator(a, b)
        result = await validator.validate(self._merge([a.id, b.id]))
        assert result.error_code == "sources_too_dissimilar"

    async def test_important_sources_need_confidence(self):
        a = _make_memory("User likes tea", importance=0.9)
        b = _make_memory("User likes coffee")
        validator, _ = _make_validator(a, b)
        result = await validator.validate(self._merge([a.id, b.id], confidence=0.7))
        assert result.error_code == "insufficient_confidence"

    async def test_passes_with_preservation_warning(self):
        a = _make_memory("User likes green tea", embedding=X)
        b = _make_memory("User likes black tea", embedding=_at(0.6))
        validator, _ = _make_validator(a, b, table={"User likes tea": _at(0.2)})
        result = await validator.validate(self._merge([a.id, b.id], "User likes tea"))
        assert result.success
        assert len([w for w in result.warnings if "may not preserve" in w]) == 1
        assert a.id in result.warnings[0]

    async def test_concatenation_warns(self):
        a = _make_memory("User likes tea")
        b = _make_memory("User likes coffee")
        merged = "User likes tea. User likes coffee."
        validator, _ = _make_validator(a, b, table={merged: X})
        result = await validator.validate(self._merge([a.id, b.id], merged))
        assert result.success
        assert any("concatenation" in w for w in result.warnings)
