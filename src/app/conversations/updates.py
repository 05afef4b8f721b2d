"""Server-sent change stream for a single conversation.

The dashboard keeps one stream open per conversation view. The stream polls
the ledger for messages created after a watermark and pushes them as
``messages`` events. Every event is a ``data:`` line carrying JSON with a
``type`` field: ``connected``, ``messages``, ``heartbeat`` or ``error``.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import datetime, timezone

import structlog

from src.app.conversations.repository import ConversationLedger

logger = structlog.get_logger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def format_event(payload: dict) -> str:
    """Encode one SSE event."""
    return f"data: {json.dumps(payload, default=str)}\n\n"


async def stream_conversation_updates(
    ledger: ConversationLedger,
    conversation_id: uuid.UUID,
    *,
    since: datetime | None = None,
    poll_interval: float = 2.0,
    heartbeat_interval: float = 30.0,
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
) -> AsyncIterator[str]:
    """Yield SSE events for new messages in a conversation.

    Args:
        ledger: Ledger to poll.
        conversation_id: Conversation being watched.
        since: Initial watermark; defaults to the connection time.
        poll_interval: Seconds between ledger polls.
        heartbeat_interval: Seconds between keepalive events.
        is_disconnected: Returns True once the client has gone away.
    """
    watermark = since or datetime.now(timezone.utc)
    if watermark.tzinfo is None:
        watermark = watermark.replace(tzinfo=timezone.utc)
    log = logger.bind(conversation_id=str(conversation_id))

    yield format_event({
        "type": "connected",
        "conversation_id": str(conversation_id),
        "timestamp": _now_iso(),
    })
    last_heartbeat = time.monotonic()

    while True:
        if is_disconnected is not None and await is_disconnected():
            log.debug("updates.client_disconnected")
            return

        await asyncio.sleep(poll_interval)

        try:
            messages = await ledger.messages_since(conversation_id, watermark)
        except Exception as exc:
            log.warning("updates.poll_failed", error=str(exc))
            yield format_event({
                "type": "error",
                "message": "Failed to check for updates",
                "timestamp": _now_iso(),
            })
            continue

        if messages:
            watermark = max(m.created_at for m in messages)
            yield format_event({
                "type": "messages",
                "messages": [m.model_dump(mode="json") for m in messages],
                "timestamp": _now_iso(),
            })

        if time.monotonic() - last_heartbeat >= heartbeat_interval:
            last_heartbeat = time.monotonic()
            yield format_event({"type": "heartbeat", "timestamp": _now_iso()})
