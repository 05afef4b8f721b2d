"""Approval endpoints for AI-drafted messages."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends

from src.app.api.deps import get_approval_workflow, get_current_user
from src.app.conversations.approval import ApprovalWorkflow
from src.app.conversations.schemas import (
    ApprovalResult,
    ApproveRequest,
    EditMessageRequest,
    Message,
)
from src.app.models.user import User

router = APIRouter(prefix="/api/v1/messages", tags=["messages"])


@router.post("/{message_id}/approve", response_model=ApprovalResult)
async def approve_message(
    message_id: uuid.UUID,
    body: ApproveRequest | None = None,
    workflow: ApprovalWorkflow = Depends(get_approval_workflow),
    current_user: User = Depends(get_current_user),
):
    """Approve a draft: deliver it once and optionally add it to the knowledge base."""
    body = body or ApproveRequest()
    return await workflow.approve(
        message_id,
        extract_to_knowledge=body.extract_to_knowledge,
        approver_name=current_user.display_name,
    )


@router.post("/{message_id}/reject", response_model=ApprovalResult)
async def reject_message(
    message_id: uuid.UUID,
    workflow: ApprovalWorkflow = Depends(get_approval_workflow),
    current_user: User = Depends(get_current_user),
):
    return await workflow.reject(message_id)


@router.patch("/{message_id}", response_model=Message)
async def edit_message(
    message_id: uuid.UUID,
    body: EditMessageRequest,
    workflow: ApprovalWorkflow = Depends(get_approval_workflow),
    current_user: User = Depends(get_current_user),
):
    """Replace the text of an undelivered draft (409 once delivered)."""
    return await workflow.edit(message_id, body.content)
