"""Knowledge base management API tests."""

from __future__ import annotations

import pytest

from src.app.api.deps import get_current_user
from src.app.conversations.schemas import MessageCreate, SenderKind
from src.knowledge.models import KnowledgeSource


@pytest.fixture
def as_admin(app, user_factory):
    admin = user_factory("admin")

    async def _admin():
        return admin

    app.dependency_overrides[get_current_user] = _admin
    return admin


async def test_create_and_fetch_entry(client, current_user):
    response = await client.post(
        "/api/v1/knowledge",
        json={"content": "Refunds take five business days.", "metadata": {"topic": "billing"}},
    )

    assert response.status_code == 201, response.text
    created = response.json()
    assert created["source"] == "manual"
    assert created["metadata"] == {"topic": "billing", "created_by": str(current_user.id)}
    assert "embedding" not in created

    fetched = await client.get(f"/api/v1/knowledge/{created['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["content"] == "Refunds take five business days."


async def test_duplicate_entry_conflicts(client):
    body = {"content": "Q: refund?\nA: five days", "source_id": "conv-1"}
    assert (await client.post("/api/v1/knowledge", json=body)).status_code == 201
    assert (await client.post("/api/v1/knowledge", json=body)).status_code == 409


async def test_embedding_outage_returns_502(client, embedder):
    embedder.fail = True
    response = await client.post("/api/v1/knowledge", json={"content": "Refund policy"})
    assert response.status_code == 502


async def test_list_filters(client, knowledge_service):
    await knowledge_service.add_entry("Refund policy", source=KnowledgeSource.MANUAL)
    await knowledge_service.add_entry("Shipping policy", source=KnowledgeSource.BULK_IMPORT)

    everything = await client.get("/api/v1/knowledge")
    imported = await client.get("/api/v1/knowledge?source=bulk_import")
    searched = await client.get("/api/v1/knowledge?search=refund")

    assert len(everything.json()) == 2
    assert [e["content"] for e in imported.json()] == ["Shipping policy"]
    assert [e["content"] for e in searched.json()] == ["Refund policy"]


async def test_update_entry(client, knowledge_service, embedder):
    entry = await knowledge_service.add_entry("Refund policy")

    response = await client.patch(
        f"/api/v1/knowledge/{entry.id}", json={"content": "Shipping policy"}
    )

    assert response.status_code == 200
    assert response.json()["content"] == "Shipping policy"
    assert embedder.calls[-1] == "Shipping policy"


async def test_missing_entry(client):
    assert (await client.get("/api/v1/knowledge/missing")).status_code == 404
    assert (
        await client.patch("/api/v1/knowledge/missing", json={"content": "x"})
    ).status_code == 404


async def test_stats(client, knowledge_service):
    await knowledge_service.add_entry("one")
    await knowledge_service.add_entry("two")

    response = await client.get("/api/v1/knowledge/stats")

    assert response.json() == {"total": 2, "by_source": {"manual": 2}}


async def test_delete_is_admin_only(client, app, knowledge_service, user_factory):
    entry = await knowledge_service.add_entry("Refund policy")

    forbidden = await client.delete(f"/api/v1/knowledge/{entry.id}")
    assert forbidden.status_code == 403

    admin = user_factory("admin")

    async def _admin():
        return admin

    app.dependency_overrides[get_current_user] = _admin
    assert (await client.delete(f"/api/v1/knowledge/{entry.id}")).status_code == 204
    assert (await client.delete(f"/api/v1/knowledge/{entry.id}")).status_code == 404


async def test_bulk_delete(client, as_admin, knowledge_service):
    a = await knowledge_service.add_entry("one")
    b = await knowledge_service.add_entry("two")

    response = await client.post("/api/v1/knowledge/bulk-delete", json={"ids": [a.id, b.id, "nope"]})

    assert response.json() == {"deleted": 2}


async def test_import_conversations(client, ledger, account):
    conversation = await ledger.upsert_conversation(account.id, "chat-9")
    for kind, text in [
        (SenderKind.CLIENT, "Do you ship to Canada?"),
        (SenderKind.AGENT, "Yes, shipping takes 5 days."),
    ]:
        await ledger.create_message(
            MessageCreate(conversation_id=conversation.id, content=text, sender_kind=kind)
        )

    first = await client.post("/api/v1/knowledge/import-conversations")
    second = await client.post("/api/v1/knowledge/import-conversations")

    assert first.json() == {"imported": 1, "skipped": 0, "failed": 0}
    assert second.json() == {"imported": 0, "skipped": 1, "failed": 0}
