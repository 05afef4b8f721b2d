"""Webhook endpoint tests over the ASGI app."""

from __future__ import annotations

import json

from src.app.conversations.schemas import SenderKind
from src.app.conversations.signature import compute_signature

URL = "/api/v1/chatra/webhook"

FRAGMENT = {
    "event": "chatFragment",
    "data": {
        "id": "chat-42",
        "client": {"name": "Dana", "info": {"email": "dana@example.com"}},
        "messages": [
            {"id": "m1", "type": "client", "text": "How do I get a refund?", "createdAt": 1767225600},
        ],
    },
}


async def _post(client, payload, secret="whsec-test", query=""):
    body = json.dumps(payload).encode()
    headers = {"Content-Type": "application/json"}
    if secret:
        headers["X-Chatra-Signature"] = compute_signature(body, secret)
    return await client.post(f"{URL}{query}", content=body, headers=headers)


async def test_signed_fragment_is_ingested_and_drafted(client, account, ledger, llm):
    response = await _post(client, FRAGMENT)

    assert response.status_code == 200, response.text
    data = response.json()
    assert data["success"] is True
    assert data["event"] == "messages_received"
    assert data["messages_inserted"] == 1
    assert data["drafts_requested"] == 1
    assert data["drafts_created"] == 1
    assert response.headers["access-control-allow-origin"] == "*"

    kinds = [m.sender_kind for m in ledger.all_messages()]
    assert kinds == [SenderKind.CLIENT, SenderKind.LLM]
    assert "How do I get a refund?" in llm.prompts[0]


async def test_redelivery_is_idempotent(client, account, ledger):
    await _post(client, FRAGMENT)
    response = await _post(client, FRAGMENT)

    data = response.json()
    assert data["messages_inserted"] == 0
    assert data["duplicates"] == 1
    assert data["drafts_requested"] == 0
    assert len(ledger.all_messages()) == 2


async def test_invalid_json(client, account):
    response = await client.post(URL, content=b"{nope", headers={"Content-Type": "application/json"})
    assert response.status_code == 400
    assert response.json()["error"] == "Invalid JSON payload"


async def test_unrecognized_payload(client, account):
    response = await _post(client, {"hello": "world"})
    assert response.status_code == 400
    assert response.json()["error"] == "Invalid webhook payload"
    assert "details" in response.json()


async def test_bad_signature_rejected(client, account, ledger):
    response = await _post(client, FRAGMENT, secret="wrong-secret")
    assert response.status_code == 401
    assert ledger.all_messages() == []


async def test_unsigned_request_rejected(client, account):
    response = await _post(client, FRAGMENT, secret=None)
    assert response.status_code == 401


async def test_no_active_account(client):
    response = await _post(client, FRAGMENT)
    assert response.status_code == 404
    assert response.json()["error"] == "No active accounts configured"


async def test_account_hint_in_query(client, account):
    response = await _post(client, FRAGMENT, query="?account=acct-1")
    assert response.status_code == 200

    unknown = await _post(client, FRAGMENT, query="?account=other")
    assert unknown.status_code == 404


async def test_ingest_failure_returns_500(client, account, pipeline, monkeypatch):
    async def broken(event, account):
        raise RuntimeError("database down")

    monkeypatch.setattr(pipeline, "ingest", broken)
    response = await _post(client, FRAGMENT)

    assert response.status_code == 500
    assert response.json() == {"error": "Internal server error", "details": "database down"}


async def test_account_lookup_failure_returns_500(client, account, accounts, monkeypatch):
    async def broken(*args, **kwargs):
        raise RuntimeError("database down")

    monkeypatch.setattr(accounts, "list_active", broken)
    monkeypatch.setattr(accounts, "get_by_external_id", broken)
    monkeypatch.setattr(accounts, "get", broken)
    response = await _post(client, FRAGMENT)

    assert response.status_code == 500
    assert response.json() == {"error": "Internal server error", "details": "database down"}


async def test_health_and_preflight(client):
    health = await client.get(URL)
    assert health.status_code == 200
    assert health.json()["service"] == "chatra-webhook"

    preflight = await client.options(URL)
    assert preflight.status_code == 200
    assert "POST" in preflight.headers["access-control-allow-methods"]
