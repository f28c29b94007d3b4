"""Unit tests for proposal prompts, tolerant parsing and the proposal engine."""

from __future__ import annotations

import json

from recallmcp.engine.prompt_builder import build_analysis_prompt
from recallmcp.engine.prompt_builder import build_search_query_prompt
from recallmcp.engine.prompt_builder import build_system_prompt
from recallmcp.engine.proposals import extract_json_object
from recallmcp.engine.proposals import ParseStage
from recallmcp.engine.proposals import parse_search_queries
from recallmcp.engine.proposals import ProposalEngine
from recallmcp.engine.proposals import ProposalParser
from recallmcp.engine.proposals import strip_code_fence
from recallmcp.errors import LLMError
from recallmcp.models import Memory
from recallmcp.models import MemoryType
from recallmcp.operations import CreateOperation
from recallmcp.operations import DeleteOperation
from tests.helpers.fakes import ScriptedLLM

_CREATE = {
    "type": "CREATE",
    "content": "User lives in Berlin",
    "memoryType": "FACT",
    "importance": 0.8,
    "reasoning": "User stated where they live",
    "confidence": 0.9,
}
_DELETE = {
    "type": "DELETE",
    "memoryId": "abc",
    "reasoning": "User asked to forget this",
    "confidence": 0.95,
}


class TestTextHelpers:
    def test_strip_code_fence(self):
        assert strip_code_fence('```json\n{"a": 1}\n```') == '{"a": 1}'
        assert strip_code_fence("```\n{}\n```") == "{}"
        assert strip_code_fence("  plain  ") == "plain"

    def test_extract_json_object_skips_invalid_candidates(self):
        text = 'noise {not json} then {"ok": true} trailing'
        assert extract_json_object(text) == {"ok": True}

    def test_extract_json_object_respects_braces_in_strings(self):
        text = 'Here: {"content": "a } tricky { value", "n": 1} done'
        assert extract_json_object(text) == {"content": "a } tricky { value", "n": 1}

    def test_extract_json_object_none(self):
        assert extract_json_object("no objects here") is None


class TestProposalParser:
    def test_strict_json(self):
        batch = ProposalParser().parse(json.dumps({"operations": [_CREATE, _DELETE]}))
        assert batch.stage == ParseStage.JSON
        assert [type(op) for op in batch.operations] == [CreateOperation, DeleteOperation]
        assert batch.errors == []

    def test_code_fenced_json(self):
        raw = "```json\n" + json.dumps({"operations": [_CREATE]}) + "\n```"
        batch = ProposalParser().parse(raw)
        assert batch.stage == ParseStage.JSON
        assert batch.operations[0].content == "User lives in Berlin"

    def test_json_embedded_in_prose(self):
        raw = "Sure! Here is my analysis:\n" + json.dumps({"operations": [_CREATE]}) + "\nBye"
        batch = ProposalParser().parse(raw)
        assert batch.stage == ParseStage.EXTRACTED
        assert len(batch.operations) == 1

    def test_single_operation_object(self):
        batch = ProposalParser().parse(json.dumps(_DELETE))
        assert [op.memory_id for op in batch.operations] == ["abc"]

    def test_line_heuristic(self):
        raw = "Operations:\n" + json.dumps(_CREATE) + ",\n" + json.dumps(_DELETE) + "\n{oops"
        batch = ProposalParser().parse(raw)
        assert batch.stage == ParseStage.LINES
        assert len(batch.operations) == 2

    def test_exclusion_rationale(self):
        raw = json.dumps({"operations": [], "exclusionRationale": " Small talk only "})
        batch = ProposalParser().parse(raw)
        assert batch.operations == []
        assert batch.exclusion_rationale == "Small talk only"

    def test_rationale_from_plain_text(self):
        batch = ProposalParser().parse("No operations needed because this was a greeting.")
        assert batch.operations == []
        assert batch.exclusion_rationale == (
            "No operations needed because this was a greeting."
        )
        assert batch.errors == ["No JSON object found in proposal response"]

    def test_empty_response(self):
        batch = ProposalParser().parse("   ")
        assert batch.errors == ["Empty response from proposal source"]

    def test_bad_entries_are_dropped_individually(self):
        raw = json.dumps(
            {
                "operations": [
                    _CREATE,
                    "not an object",
                    {"type": "RENAME"},
                    {"type": "UPDATE", "reasoning": "missing id"},
                ]
            }
        )
        batch = ProposalParser().parse(raw)
        assert len(batch.operations) == 1
        assert len(batch.errors) == 3
        assert batch.errors[0] == "Operation 1: expected an object"
        assert "unknown operation type" in batch.errors[1]
        assert batch.errors[2].startswith("Operation 3:")

    def test_operations_must_be_array(self):
        batch = ProposalParser().parse(json.dumps({"operations": "CREATE"}))
        assert batch.errors == ["'operations' must be an array"]

    def test_structurally_invalid_operation_is_kept(self):
        raw = json.dumps({"operations": [{**_CREATE, "confidence": 1.5}]})
        batch = ProposalParser().parse(raw)
        assert len(batch.operations) == 1
        assert not batch.operations[0].is_valid()


class TestParseSearchQueries:
    def test_json_array(self):
        raw = json.dumps({"searchQueries": ["berlin", " ", "job", 3]})
        assert parse_search_queries(raw) == ["berlin", "job"]

    def test_caps_at_five(self):
        raw = json.dumps({"searchQueries": [f"q{i}" for i in range(8)]})
        assert parse_search_queries(raw) == ["q0", "q1", "q2", "q3", "q4"]

    def test_bulleted_lines(self):
        raw = "- user's dog\n2. favourite food\n\n* hometown"
        assert parse_search_queries(raw) == ["user's dog", "favourite food", "hometown"]

    def test_empty(self):
        assert parse_search_queries(None) == []
        assert parse_search_queries(json.dumps({"searchQueries": []})) == []


class TestPrompts:
    def test_system_prompt_lists_operations_and_types(self):
        prompt = build_system_prompt()
        for kind in ("CREATE", "UPDATE", "REPLACE", "DELETE", "MERGE"):
            assert f"**{kind}**" in prompt
        assert "**PREFERENCE**" in prompt
        assert "**MERGED**" not in prompt
        assert "exclusionRationale" in prompt

    def test_analysis_prompt_with_memories(self):
        memory = Memory(content="User likes tea", type=MemoryType.PREFERENCE, importance=0.7)
        prompt = build_analysis_prompt("I love green tea", "Nice!", [memory])
        assert "### User Message:\nI love green tea" in prompt
        assert f"- ID: {memory.id}" in prompt
        assert "Type: PREFERENCE" in prompt
        assert "Importance: 0.70" in prompt
        assert "None found." not in prompt

    def test_analysis_prompt_without_memories(self):
        prompt = build_analysis_prompt("Hello", "Hi there", [])
        assert "None found." in prompt

    def test_search_prompt_caps_history(self):
        history = [f"turn {i}" for i in range(8)]
        prompt = build_search_query_prompt("What about my trip?", history)
        assert "- turn 4\n" in prompt
        assert "turn 5" not in prompt
        assert "searchQueries" in prompt


class TestProposalEngine:
    async def test_propose_parses_answer(self):
        llm = ScriptedLLM([json.dumps({"operations": [_CREATE]})])
        batch = await ProposalEngine(llm).propose("I live in Berlin", "Cool!")
        assert len(batch.operations) == 1
        assert llm.systems == [build_system_prompt()]
        assert "I live in Berlin" in llm.prompts[0]

    async def test_propose_llm_failure_is_reported(self):
        llm = ScriptedLLM([LLMError("timeout")])
        batch = await ProposalEngine(llm).propose("hi", "hello")
        assert batch.operations == []
        assert batch.errors == ["LLM call failed: timeout"]

    async def test_search_queries(self):
        llm = ScriptedLLM([json.dumps({"searchQueries": ["trip to Japan"]})])
        queries = await ProposalEngine(llm).search_queries("Remember my trip?", ["earlier"])
        assert queries == ["trip to Japan"]
        assert "- earlier" in llm.prompts[0]

    async def test_search_queries_llm_failure(self):
        llm = ScriptedLLM([LLMError("down")])
        assert await ProposalEngine(llm).search_queries("hi") == []
