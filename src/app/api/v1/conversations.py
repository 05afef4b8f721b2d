"""Dashboard conversation endpoints.

List, detail, live change stream and agent-authored messages. All
endpoints require an authenticated agent.
"""

from __future__ import annotations

import uuid
from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from src.app.api.deps import get_approval_workflow, get_current_user, get_ledger
from src.app.config import get_settings
from src.app.conversations.approval import ApprovalWorkflow
from src.app.conversations.repository import ConversationLedger
from src.app.conversations.schemas import (
    AgentMessageRequest,
    AgentMessageResult,
    ConversationDetail,
    ConversationListResponse,
)
from src.app.conversations.updates import stream_conversation_updates
from src.app.core.errors import NotFoundError
from src.app.models.user import User

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/conversations", tags=["conversations"])


@router.get("", response_model=ConversationListResponse)
async def list_conversations(
    limit: int = Query(50, ge=1, le=200),
    ledger: ConversationLedger = Depends(get_ledger),
    current_user: User = Depends(get_current_user),
):
    """Conversations ordered by latest activity, with dashboard counters."""
    conversations = await ledger.list_conversations(limit)
    stats = await ledger.dashboard_stats()
    return ConversationListResponse(conversations=conversations, stats=stats)


@router.get("/{conversation_id}", response_model=ConversationDetail)
async def get_conversation(
    conversation_id: uuid.UUID,
    ledger: ConversationLedger = Depends(get_ledger),
    current_user: User = Depends(get_current_user),
):
    """A conversation with its messages, oldest first."""
    conversation = await ledger.get_conversation(conversation_id)
    if conversation is None:
        raise NotFoundError(f"Conversation {conversation_id} not found")
    messages = await ledger.list_messages(conversation_id)
    return ConversationDetail(conversation=conversation, messages=messages)


@router.get("/{conversation_id}/updates")
async def conversation_updates(
    conversation_id: uuid.UUID,
    request: Request,
    since: datetime | None = None,
    ledger: ConversationLedger = Depends(get_ledger),
    current_user: User = Depends(get_current_user),
):
    """Server-sent events for messages created after ``since``."""
    conversation = await ledger.get_conversation(conversation_id)
    if conversation is None:
        raise NotFoundError(f"Conversation {conversation_id} not found")

    settings = get_settings()
    logger.info(
        "updates.stream_opened",
        conversation_id=str(conversation_id),
        user_id=str(current_user.id),
    )
    return StreamingResponse(
        stream_conversation_updates(
            ledger,
            conversation_id,
            since=since,
            poll_interval=settings.UPDATES_POLL_INTERVAL,
            heartbeat_interval=settings.UPDATES_HEARTBEAT_INTERVAL,
            is_disconnected=request.is_disconnected,
        ),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/{conversation_id}/messages", response_model=AgentMessageResult)
async def send_agent_message(
    conversation_id: uuid.UUID,
    body: AgentMessageRequest,
    workflow: ApprovalWorkflow = Depends(get_approval_workflow),
    current_user: User = Depends(get_current_user),
):
    """Record a message written by the agent and send it to the customer.

    The message is kept even if delivery fails; ``warning`` says so.
    """
    return await workflow.send_agent_message(
        conversation_id, body.content, agent_name=current_user.display_name
    )
