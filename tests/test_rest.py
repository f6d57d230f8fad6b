"""Integration tests for the admin REST API.

Uses httpx AsyncClient with ASGITransport against a real orchestrator
built over the scripted provider and the recording transport.
"""

import asyncio

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from parley.api.rest import create_app
from parley.api.runner import AgentRunner
from parley.api.tools import ToolRegistry
from parley.approval import ApprovalGate
from parley.llm.failover import CooldownTable, FailoverProvider
from parley.orchestrator import NOTHING_TO_STOP_MESSAGE, ConversationOrchestrator
from parley.session import InMemorySessionStore

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def approval(transport) -> ApprovalGate:
    return ApprovalGate(transport, timeout=5)


@pytest.fixture
def orchestrator(settings, transport, provider, approval) -> ConversationOrchestrator:
    cooldowns = CooldownTable(60)
    runner = AgentRunner(FailoverProvider(provider, cooldowns=cooldowns), ToolRegistry(), settings)
    return ConversationOrchestrator(
        settings,
        transport,
        runner,
        InMemorySessionStore(),
        approval=approval,
        cooldowns=cooldowns,
        usage_footer=False,
    )


@pytest_asyncio.fixture
async def client(orchestrator, settings):
    app = create_app(orchestrator, settings)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    await orchestrator.close()


@pytest_asyncio.fixture
async def secured_client(orchestrator, settings):
    settings.admin_token = "s3cret"
    app = create_app(orchestrator, settings)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


# ---------------------------------------------------------------------------
# Health + status
# ---------------------------------------------------------------------------


class TestStatus:
    @pytest.mark.asyncio
    async def test_health(self, client):
        r = await client.get("/health")
        assert r.status_code == 200
        assert r.json() == {"status": "healthy"}

    @pytest.mark.asyncio
    async def test_status_idle(self, client, settings):
        r = await client.get("/status")
        assert r.status_code == 200
        data = r.json()
        assert data["agent"] == settings.agent_name
        assert data["model"] == "primary"
        assert data["running"] == []
        assert data["pending_approvals"] == 0
        assert data["model_cooldowns"] == {}


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


class TestConversations:
    @pytest.mark.asyncio
    async def test_set_queue(self, client, orchestrator):
        r = await client.put("/conversations/42/queue", json={"mode": "interrupt", "debounce_ms": 300})

        assert r.status_code == 200
        assert r.json() == {"conversation_id": "42", "mode": "interrupt", "debounce_ms": 300}
        assert orchestrator.queue_mode("42").value == "interrupt"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [{}, {"mode": "sideways"}, {"debounce_ms": "fast"}, {"debounce_ms": True}, {"debounce_ms": 20_000}],
    )
    async def test_set_queue_rejects(self, client, body):
        r = await client.put("/conversations/42/queue", json=body)
        assert r.status_code == 400
        assert "error" in r.json()

    @pytest.mark.asyncio
    async def test_invalid_json(self, client):
        r = await client.put(
            "/conversations/42/queue", content=b"{nope", headers={"content-type": "application/json"}
        )
        assert r.status_code == 400

    @pytest.mark.asyncio
    async def test_stop_idle(self, client, transport):
        r = await client.post("/conversations/42/stop")
        assert r.status_code == 200
        assert r.json() == {"conversation_id": "42", "stopped": False}
        assert transport.texts("42") == [NOTHING_TO_STOP_MESSAGE]

    @pytest.mark.asyncio
    async def test_inject_message_runs_pipeline(self, client, orchestrator, provider, transport):
        provider.script("primary", "injected answer")

        r = await client.post("/conversations/42/messages", json={"text": "hello", "author_id": "ops"})

        assert r.status_code == 202
        assert r.json()["status"] == "accepted"
        await orchestrator.drain()
        assert transport.texts("42") == ["injected answer"]

    @pytest.mark.asyncio
    async def test_inject_requires_text(self, client):
        r = await client.post("/conversations/42/messages", json={"author_id": "ops"})
        assert r.status_code == 400

    @pytest.mark.asyncio
    async def test_stop_active_run(self, client, orchestrator, provider):
        provider.gate = asyncio.Event()
        provider.script("primary", "late")

        await client.post("/conversations/42/messages", json={"text": "work"})
        while not provider.calls:
            await asyncio.sleep(0.005)

        r = await client.post("/conversations/42/stop")
        assert r.json()["stopped"] is True
        await orchestrator.drain()
        assert orchestrator.status()["running"] == []


# ---------------------------------------------------------------------------
# Approvals
# ---------------------------------------------------------------------------


class TestApprovals:
    @pytest.mark.asyncio
    async def test_approve(self, client, approval):
        future, request_id = await approval.request_approval("42", "rm -rf build")

        r = await client.post(f"/approvals/{request_id}", json={"approved": True})

        assert r.status_code == 200
        assert r.json() == {"request_id": request_id, "approved": True}
        assert await future is True

    @pytest.mark.asyncio
    async def test_unknown_request(self, client):
        r = await client.post("/approvals/deadbeef", json={"approved": False})
        assert r.status_code == 404

    @pytest.mark.asyncio
    async def test_approved_must_be_bool(self, client):
        r = await client.post("/approvals/deadbeef", json={"approved": "yes"})
        assert r.status_code == 400


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class TestAuth:
    """Bearer token on everything except /health."""

    @pytest.mark.asyncio
    async def test_health_is_open(self, secured_client):
        assert (await secured_client.get("/health")).status_code == 200

    @pytest.mark.asyncio
    async def test_missing_token(self, secured_client):
        assert (await secured_client.get("/status")).status_code == 401
        assert (await secured_client.post("/conversations/1/stop")).status_code == 401

    @pytest.mark.asyncio
    async def test_valid_token(self, secured_client):
        r = await secured_client.get("/status", headers={"Authorization": "Bearer s3cret"})
        assert r.status_code == 200

    @pytest.mark.asyncio
    async def test_wrong_token(self, secured_client):
        r = await secured_client.get("/status", headers={"Authorization": "Bearer nope"})
        assert r.status_code == 401
