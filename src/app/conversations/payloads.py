"""Normalization of Chatra webhook payloads into internal events.

Chatra has delivered two payload shapes over time:

- Legacy envelope: ``{"event": "chatStarted" | "chatFragment" | "chatTranscript",
  "data": {"id", "client", "messages", "account"}}``
- Flat envelope: ``{"client": {"chatId", ...}, "messages": [...]}``, where the
  conversation id may also appear as top-level ``chatId`` or
  ``conversationExternalId``.

Both are reduced to one of three event variants (ChatStarted,
MessagesReceived, ChatResolved). Anything that fits neither shape raises
ValidationError so provider-format drift stops at this module.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

import structlog
from pydantic import BaseModel, Field

from src.app.conversations.schemas import SenderKind
from src.app.core.errors import ValidationError

logger = structlog.get_logger(__name__)

EPOCH_MILLIS_CUTOFF = 1e12

_ACCEPTED_SENDERS = {
    "client": SenderKind.CLIENT,
    "agent": SenderKind.AGENT,
}


# ── Event Variants ──────────────────────────────────────────────────────────


class ClientIdentity(BaseModel):
    """Customer identity as reported by the provider."""

    name: str | None = None
    email: str | None = None


class ProviderMessage(BaseModel):
    """One message from a webhook payload, in payload order."""

    external_id: str
    sender_kind: SenderKind
    text: str = ""
    sender_name: str | None = None
    sent_at: datetime


class _EventBase(BaseModel):
    conversation_external_id: str
    account_external_id: str | None = None
    client: ClientIdentity = Field(default_factory=ClientIdentity)


class ChatStarted(_EventBase):
    kind: Literal["chat_started"] = "chat_started"


class MessagesReceived(_EventBase):
    kind: Literal["messages_received"] = "messages_received"
    messages: list[ProviderMessage] = Field(default_factory=list)


class ChatResolved(_EventBase):
    """Final transcript; its messages are recorded but never drafted against."""

    kind: Literal["chat_resolved"] = "chat_resolved"
    messages: list[ProviderMessage] = Field(default_factory=list)


ProviderEvent = Annotated[
    Union[ChatStarted, MessagesReceived, ChatResolved],
    Field(discriminator="kind"),
]


# ── Field Helpers ───────────────────────────────────────────────────────────


def _str_or_none(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, (str, int)) and not isinstance(value, bool):
        text = str(value).strip()
        return text or None
    return None


def _as_dict(value: Any, field: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationError(f"'{field}' must be an object")
    return value


def parse_timestamp(value: Any, default: datetime) -> datetime:
    """Parse a provider timestamp.

    Accepts epoch seconds, epoch milliseconds (values above 1e12) and
    ISO-8601 strings. Missing or unparseable values fall back to ``default``.
    Naive datetimes are taken as UTC.
    """
    if value is None or isinstance(value, bool):
        return default

    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return default
        try:
            value = float(stripped)
        except ValueError:
            try:
                parsed = datetime.fromisoformat(stripped.replace("Z", "+00:00"))
            except ValueError:
                logger.warning("webhook.timestamp_unparseable", value=stripped[:64])
                return default
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed

    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > EPOCH_MILLIS_CUTOFF else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            logger.warning("webhook.timestamp_out_of_range", value=value)
            return default

    return default


def _client_identity(client: dict) -> ClientIdentity:
    info = client.get("info") if isinstance(client.get("info"), dict) else {}
    return ClientIdentity(
        name=_str_or_none(client.get("name"))
        or _str_or_none(client.get("displayedName"))
        or _str_or_none(info.get("name")),
        email=_str_or_none(info.get("email")) or _str_or_none(client.get("email")),
    )


def _normalize_messages(
    raw_messages: Any,
    client: ClientIdentity,
    received_at: datetime,
) -> list[ProviderMessage]:
    if raw_messages is None:
        return []
    if not isinstance(raw_messages, list):
        raise ValidationError("'messages' must be a list")

    messages: list[ProviderMessage] = []
    for index, raw in enumerate(raw_messages):
        if not isinstance(raw, dict):
            raise ValidationError(f"messages[{index}] must be an object")

        external_id = _str_or_none(raw.get("id"))
        if external_id is None:
            raise ValidationError(f"messages[{index}] has no id")

        tag = raw.get("type", raw.get("senderType", "client"))
        sender_kind = _ACCEPTED_SENDERS.get(str(tag).lower()) if tag is not None else None
        if sender_kind is None:
            logger.info("webhook.message_skipped", message_id=external_id, sender=tag)
            continue

        text = raw.get("text")
        if text is None:
            text = raw.get("message")
        text = text if isinstance(text, str) else ""

        if sender_kind is SenderKind.AGENT:
            sender_name = _str_or_none(raw.get("agentName")) or "Agent"
        else:
            sender_name = client.name

        messages.append(
            ProviderMessage(
                external_id=external_id,
                sender_kind=sender_kind,
                text=text,
                sender_name=sender_name,
                sent_at=parse_timestamp(
                    raw.get("createdAt", raw.get("timestamp")), received_at
                ),
            )
        )
    return messages


# ── Shapes ──────────────────────────────────────────────────────────────────


_LEGACY_EVENTS = {"chatStarted", "chatFragment", "chatTranscript"}


def _normalize_legacy(payload: dict, received_at: datetime) -> ChatStarted | MessagesReceived | ChatResolved:
    event = payload.get("event")
    if event not in _LEGACY_EVENTS:
        raise ValidationError(f"Unsupported webhook event: {event!r}")

    data = _as_dict(payload.get("data"), "data")
    conversation_id = _str_or_none(data.get("id"))
    if conversation_id is None:
        raise ValidationError("Webhook data has no conversation id")

    client = _client_identity(_as_dict(data.get("client"), "client"))
    account = _str_or_none(_as_dict(data.get("account"), "account").get("id"))
    common = {
        "conversation_external_id": conversation_id,
        "account_external_id": account,
        "client": client,
    }

    if event == "chatStarted":
        return ChatStarted(**common)
    messages = _normalize_messages(data.get("messages"), client, received_at)
    if event == "chatFragment":
        return MessagesReceived(**common, messages=messages)
    return ChatResolved(**common, messages=messages)


def _normalize_flat(payload: dict, received_at: datetime) -> ChatStarted | MessagesReceived:
    client_raw = _as_dict(payload.get("client"), "client")
    conversation_id = (
        _str_or_none(payload.get("conversationExternalId"))
        or _str_or_none(payload.get("chatId"))
        or _str_or_none(client_raw.get("chatId"))
    )
    if conversation_id is None:
        raise ValidationError("Webhook payload has no conversation id")

    client = _client_identity(client_raw)
    account = _str_or_none(_as_dict(payload.get("account"), "account").get("id")) or _str_or_none(
        payload.get("accountId")
    )
    common = {
        "conversation_external_id": conversation_id,
        "account_external_id": account,
        "client": client,
    }

    if "messages" not in payload:
        return ChatStarted(**common)
    return MessagesReceived(
        **common,
        messages=_normalize_messages(payload.get("messages"), client, received_at),
    )


def normalize_payload(
    payload: Any, received_at: datetime | None = None
) -> ChatStarted | MessagesReceived | ChatResolved:
    """Reduce a decoded webhook body to one internal event.

    Args:
        payload: Decoded JSON body.
        received_at: Default timestamp for messages without one.

    Returns:
        ChatStarted, MessagesReceived or ChatResolved.

    Raises:
        ValidationError: If the payload fits neither known shape.
    """
    received_at = received_at or datetime.now(timezone.utc)
    if not isinstance(payload, dict):
        raise ValidationError("Webhook payload must be a JSON object")
    if "event" in payload:
        return _normalize_legacy(payload, received_at)
    if any(key in payload for key in ("client", "chatId", "conversationExternalId")):
        return _normalize_flat(payload, received_at)
    raise ValidationError("Unrecognized webhook payload shape")
