"""End-to-end integration tests: conversation turns, versions and audit log."""

from __future__ import annotations

import json
import re
from pathlib import Path

import pytest
from fastmcp import Client

from recallmcp.audit import AuditEventType
from recallmcp.audit import AuditLogger
from recallmcp.config import AuditConfig
from recallmcp.server import configure
from recallmcp.server import mcp
from recallmcp.server import shutdown


def _parse(result) -> dict:
    return json.loads(result.content[0].text)


class _MessageEchoLLMAdapter:
    """Store each user message, refining the first retrieved memory if any."""

    def __init__(self) -> None:
        self.calls = 0

    async def complete(
        self,
        prompt: str,
        *,
        system: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 4096,
        timeout_seconds: float = 30.0,
    ) -> str:
        del system, temperature, max_tokens, timeout_seconds
        self.calls += 1
        message = re.search(r"### User Message:\n(.+)", prompt).group(1).strip()
        existing = re.findall(r"^- ID: (\S+)$", prompt, flags=re.MULTILINE)
        if existing:
            operation = {
                "type": "UPDATE",
                "memoryId": existing[0],
                "newContent": message,
                "reasoning": "User added detail to a known fact",
                "confidence": 0.85,
            }
        else:
            operation = {
                "type": "CREATE",
                "content": message,
                "memoryType": "FACT",
                "importance": 0.6,
                "reasoning": "User shared a new fact",
                "confidence": 0.9,
            }
        return json.dumps({"operations": [operation]})


@pytest.fixture
async def turn_client(redis_client, redis_container, tmp_path: Path):
    audit_config = AuditConfig(directory=str(tmp_path))
    adapter = _MessageEchoLLMAdapter()
    await configure(
        redis_url=redis_container,
        llm_adapter=adapter,
        audit_config=audit_config,
    )
    async with Client(mcp) as client:
        yield client, adapter, audit_config
    await shutdown()


class TestConversationTurns:
    async def test_second_turn_refines_first_memory(self, turn_client):
        client, adapter, audit_config = turn_client

        first = _parse(
            await client.call_tool(
                "process_turn",
                {
                    "owner_id": "alice",
                    "user_message": "My dog Rex loves long walks",
                    "assistant_response": "Rex sounds lovely!",
                },
            )
        )
        assert first["turn"]["retrieved_memory_ids"] == []
        [created] = first["turn"]["outcomes"]
        assert created["status"] == "applied"
        memory_id = created["memory_id"]

        second = _parse(
            await client.call_tool(
                "process_turn",
                {
                    "owner_id": "alice",
                    "user_message": "Do you remember my dog Rex? He loves long walks in the park",
                    "assistant_response": "Of course!",
                },
            )
        )
        assert second["turn"]["retrieved_memory_ids"] == [memory_id]
        [updated] = second["turn"]["outcomes"]
        assert updated["operation_type"] == "UPDATE"
        assert updated["status"] == "applied"
        assert updated["version_number"] == 2
        assert adapter.calls == 2

        history = _parse(
            await client.call_tool(
                "memory_history", {"owner_id": "alice", "memory_id": memory_id}
            )
        )
        assert [v["content"] for v in history["versions"]] == [
            "Do you remember my dog Rex? He loves long walks in the park",
            "My dog Rex loves long walks",
        ]

        events = await AuditLogger(audit_config, "alice").read_events()
        assert [e.event_type for e in events] == [
            AuditEventType.OPERATION_START,
            AuditEventType.OPERATION_COMPLETE,
            AuditEventType.OPERATION_START,
            AuditEventType.OPERATION_COMPLETE,
        ]

    async def test_rollback_after_agent_edit_is_audited(self, turn_client):
        client, _, audit_config = turn_client
        for message in (
            "My dog Rex loves long walks",
            "Do you remember my dog Rex? He loves long walks in the park",
        ):
            await client.call_tool(
                "process_turn", {"owner_id": "alice", "user_message": message}
            )
        search = _parse(
            await client.call_tool(
                "semantic_search", {"owner_id": "alice", "query": "dog Rex walks"}
            )
        )
        [memory] = search["memories"]

        rolled_back = _parse(
            await client.call_tool(
                "rollback_memory",
                {"owner_id": "alice", "memory_id": memory["id"], "reason": "Too wordy"},
            )
        )

        assert rolled_back["memory"]["content"] == "My dog Rex loves long walks"
        rollbacks = await AuditLogger(audit_config, "alice").read_events(
            event_type=AuditEventType.ROLLBACK
        )
        assert len(rollbacks) == 1
        assert rollbacks[0].memory_id == memory["id"]


class TestDuplicateOperations:
    async def test_second_identical_create_is_rejected(self, turn_client):
        client, _, _ = turn_client
        operation = {
            "type": "CREATE",
            "content": "User was born in Lisbon",
            "reasoning": "Biographical fact",
            "confidence": 0.9,
        }

        results = [
            _parse(
                await client.call_tool(
                    "apply_operation", {"owner_id": "alice", "operation": operation}
                )
            )
            for _ in range(2)
        ]

        assert sorted(r["status"] for r in results) == ["ok", "rejected"]
        assert {r["error_code"] for r in results} == {None, "near_duplicate"}

    async def test_owners_do_not_share_duplicates(self, turn_client):
        client, _, _ = turn_client
        operation = {
            "type": "CREATE",
            "content": "User was born in Lisbon",
            "reasoning": "Biographical fact",
            "confidence": 0.9,
        }
        for owner_id in ("alice", "bob"):
            result = await client.call_tool(
                "apply_operation", {"owner_id": owner_id, "operation": operation}
            )
            assert _parse(result)["status"] == "ok"
