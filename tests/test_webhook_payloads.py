"""Tests for webhook payload normalization and HMAC signature checks."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from src.app.conversations.payloads import (
    ChatResolved,
    ChatStarted,
    MessagesReceived,
    normalize_payload,
    parse_timestamp,
)
from src.app.conversations.schemas import SenderKind
from src.app.conversations.signature import (
    compute_signature,
    extract_signature,
    verify_signature,
)
from src.app.core.errors import ValidationError

RECEIVED_AT = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


# ── Legacy Envelope ──────────────────────────────────────────────────────────


def test_legacy_chat_started():
    event = normalize_payload(
        {
            "event": "chatStarted",
            "data": {
                "id": "chat-1",
                "client": {"name": "Dana", "info": {"email": "dana@example.com"}},
                "account": {"id": "acct-1"},
            },
        },
        RECEIVED_AT,
    )
    assert isinstance(event, ChatStarted)
    assert event.conversation_external_id == "chat-1"
    assert event.account_external_id == "acct-1"
    assert event.client.name == "Dana"
    assert event.client.email == "dana@example.com"


def test_legacy_fragment_preserves_order_and_senders():
    event = normalize_payload(
        {
            "event": "chatFragment",
            "data": {
                "id": "chat-1",
                "client": {"displayedName": "Dana"},
                "messages": [
                    {"id": "m1", "type": "client", "text": "Hi", "createdAt": 1767225600},
                    {"id": "m2", "type": "agent", "text": "Hello!", "agentName": "Sam"},
                    {"id": "m3", "type": "client", "message": "Where is my refund?"},
                ],
            },
        },
        RECEIVED_AT,
    )
    assert isinstance(event, MessagesReceived)
    assert [m.external_id for m in event.messages] == ["m1", "m2", "m3"]
    assert [m.sender_kind for m in event.messages] == [
        SenderKind.CLIENT,
        SenderKind.AGENT,
        SenderKind.CLIENT,
    ]
    assert event.messages[0].sender_name == "Dana"
    assert event.messages[1].sender_name == "Sam"
    assert event.messages[2].text == "Where is my refund?"
    assert event.messages[0].sent_at == datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert event.messages[2].sent_at == RECEIVED_AT


def test_legacy_transcript_is_resolved_event():
    event = normalize_payload(
        {
            "event": "chatTranscript",
            "data": {"id": "chat-1", "messages": [{"id": "m1", "text": "bye"}]},
        },
        RECEIVED_AT,
    )
    assert isinstance(event, ChatResolved)
    assert event.messages[0].sender_kind is SenderKind.CLIENT


def test_legacy_unknown_event_rejected():
    with pytest.raises(ValidationError):
        normalize_payload({"event": "chatRated", "data": {"id": "chat-1"}})


def test_legacy_missing_conversation_id_rejected():
    with pytest.raises(ValidationError):
        normalize_payload({"event": "chatFragment", "data": {"messages": []}})


# ── Flat Envelope ────────────────────────────────────────────────────────────


def test_flat_payload_with_messages():
    event = normalize_payload(
        {
            "client": {"chatId": "chat-9", "name": "Lee"},
            "accountId": "acct-2",
            "messages": [{"id": "x1", "type": "client", "text": "Hello"}],
        },
        RECEIVED_AT,
    )
    assert isinstance(event, MessagesReceived)
    assert event.conversation_external_id == "chat-9"
    assert event.account_external_id == "acct-2"
    assert event.messages[0].sender_name == "Lee"


def test_flat_payload_without_messages_is_chat_started():
    event = normalize_payload({"chatId": "chat-9"})
    assert isinstance(event, ChatStarted)


def test_flat_payload_conversation_id_precedence():
    event = normalize_payload(
        {"conversationExternalId": "explicit", "chatId": "top", "client": {"chatId": "nested"}}
    )
    assert event.conversation_external_id == "explicit"


def test_flat_agent_message_defaults_sender_name():
    event = normalize_payload(
        {"chatId": "c", "messages": [{"id": "a1", "type": "agent", "text": "On it"}]}
    )
    assert event.messages[0].sender_name == "Agent"


# ── Message Rules ────────────────────────────────────────────────────────────


def test_unknown_sender_is_skipped():
    event = normalize_payload(
        {
            "chatId": "c",
            "messages": [
                {"id": "s1", "type": "system", "text": "Chat assigned"},
                {"id": "c1", "type": "client", "text": "Hi"},
            ],
        }
    )
    assert [m.external_id for m in event.messages] == ["c1"]


def test_message_without_id_rejected():
    with pytest.raises(ValidationError):
        normalize_payload({"chatId": "c", "messages": [{"type": "client", "text": "Hi"}]})


def test_messages_must_be_a_list():
    with pytest.raises(ValidationError):
        normalize_payload({"chatId": "c", "messages": {"id": "1"}})


@pytest.mark.parametrize("payload", [[], "text", {"foo": "bar"}])
def test_unrecognized_shapes_rejected(payload):
    with pytest.raises(ValidationError):
        normalize_payload(payload)


# ── Timestamps ───────────────────────────────────────────────────────────────


def test_parse_timestamp_variants():
    expected = datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert parse_timestamp(1767225600, RECEIVED_AT) == expected
    assert parse_timestamp(1767225600000, RECEIVED_AT) == expected
    assert parse_timestamp("2026-01-01T00:00:00Z", RECEIVED_AT) == expected
    assert parse_timestamp("2026-01-01T00:00:00", RECEIVED_AT) == expected
    assert parse_timestamp("not a date", RECEIVED_AT) == RECEIVED_AT
    assert parse_timestamp(None, RECEIVED_AT) == RECEIVED_AT


# ── Signatures ───────────────────────────────────────────────────────────────


def test_signature_roundtrip_and_prefix():
    body = b'{"chatId": "c"}'
    digest = compute_signature(body, "secret")
    assert verify_signature(body, digest, "secret")
    assert verify_signature(body, f"sha256={digest}", "secret")
    assert verify_signature(body, digest.upper(), "secret")


def test_signature_rejects_tampering_and_missing_values():
    body = b'{"chatId": "c"}'
    digest = compute_signature(body, "secret")
    assert not verify_signature(body + b" ", digest, "secret")
    assert not verify_signature(body, digest, "other-secret")
    assert not verify_signature(body, None, "secret")
    assert not verify_signature(body, digest, "")
    assert not verify_signature(body, "sha256=café", "secret")


def test_extract_signature_header_order():
    headers = {"x-signature": "third", "x-hub-signature-256": "second"}
    assert extract_signature(headers) == "second"
    assert extract_signature({"signature": " raw "}) == "raw"
    assert extract_signature({}) is None
