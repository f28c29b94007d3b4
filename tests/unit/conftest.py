"""Unit test fixtures — Redis-backed stores and the MCP client."""

from __future__ import annotations

import pytest
from fastmcp import Client

from recallmcp.config import AuditConfig
from recallmcp.engine.embedding import HashingEmbedder
from recallmcp.store import MemoryStoreFactory

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def embedder() -> HashingEmbedder:
    return HashingEmbedder(512)


@pytest.fixture()
def audit_config(tmp_path) -> AuditConfig:
    return AuditConfig(directory=str(tmp_path / "audit"))


@pytest.fixture()
async def store_factory(redis_client):
    """Yield a store factory sharing the flushed test Redis client."""
    factory = MemoryStoreFactory(redis_client)
    yield factory
    await factory.close_all()


@pytest.fixture()
async def store(store_factory):
    return await store_factory.get_store("alice")


@pytest.fixture()
async def mcp_client(redis_client, redis_container, audit_config):
    """Yield a FastMCP Client wired to a freshly configured RecallMCP server."""
    from recallmcp.server import configure
    from recallmcp.server import mcp
    from recallmcp.server import shutdown

    await configure(redis_url=redis_container, audit_config=audit_config)

    async with Client(mcp) as client:
        yield client
    await shutdown()
