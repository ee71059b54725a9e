"""Test suite for concurrent operations."""

import asyncio

import pytest
from httpx import ASGITransport, AsyncClient

from sagespark_chat.api.app import app, get_session_registry, get_user_repository
from sagespark_chat.repositories.json_file import JsonFileRepository
from sagespark_chat.services.sessions import SessionRegistry


@pytest.fixture
def registry(provider, tmp_path):
    users = JsonFileRepository(tmp_path / "db.json")
    registry = SessionRegistry(provider, users)
    app.dependency_overrides[get_session_registry] = lambda: registry
    app.dependency_overrides[get_user_repository] = lambda: users
    yield registry
    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_concurrent_conversations(registry):
    """Test handling multiple concurrent conversations."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        await client.get("/session")
        responses = await asyncio.gather(*[client.post("/conversations") for _ in range(10)])

        assert all(r.status_code == 200 for r in responses)
        conversation_ids = [r.json()["id"] for r in responses]
        assert len(set(conversation_ids)) == 10
        assert len((await client.get("/conversations")).json()) == 10


@pytest.mark.asyncio
async def test_parallel_messages_to_distinct_conversations(registry, provider):
    """Completions for different conversations may overlap."""
    provider.gate = asyncio.Event()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        await client.get("/session")
        conversation_ids = [(await client.post("/conversations")).json()["id"] for _ in range(5)]

        tasks = [
            asyncio.create_task(
                client.post(f"/conversations/{conv_id}/messages", json={"content": f"What's {i} plus {i}?"})
            )
            for i, conv_id in enumerate(conversation_ids)
        ]
        while len(provider.calls) < len(conversation_ids):
            await asyncio.sleep(0.01)
        provider.gate.set()
        responses = await asyncio.gather(*tasks)

        assert all(r.status_code == 200 for r in responses)
        for i, response in enumerate(responses):
            messages = response.json()["messages"]
            assert [m["content"] for m in messages] == [f"What's {i} plus {i}?", provider.reply]


@pytest.mark.asyncio
async def test_overlapping_send_to_same_conversation_is_rejected(registry, provider):
    provider.gate = asyncio.Event()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        await client.get("/session")
        conversation_id = (await client.post("/conversations")).json()["id"]

        first = asyncio.create_task(
            client.post(f"/conversations/{conversation_id}/messages", json={"content": "first"})
        )
        while not provider.calls:
            await asyncio.sleep(0.01)

        pending = (await client.get(f"/conversations/{conversation_id}")).json()
        assert [m["is_loading"] for m in pending["messages"]] == [False, True]

        second = await client.post(f"/conversations/{conversation_id}/messages", json={"content": "second"})
        assert second.status_code == 409

        provider.gate.set()
        response = await first
        assert response.status_code == 200
        assert [m["content"] for m in response.json()["messages"]] == ["first", provider.reply]
