"""Chatra webhook endpoint.

Requests carry no JWT; they are authenticated by the HMAC signature over
the raw body. Failures answer ``{"error": ..., "details": ...}``.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse, Response

from src.app.api.deps import get_ingestion_pipeline
from src.app.config import ReplyGenerationMode, get_settings
from src.app.conversations.ingestion import WebhookIngestionPipeline
from src.app.conversations.payloads import normalize_payload
from src.app.conversations.signature import extract_signature
from src.app.core.errors import AuthorizationError, NotFoundError, ValidationError
from src.app.core.monitoring import webhook_events_total

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/chatra/webhook", tags=["webhook"])

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": (
        "Content-Type, Authorization, X-Chatra-Signature, X-Hub-Signature-256, X-Signature"
    ),
}


def _error(status_code: int, error: str, details: Any = None) -> JSONResponse:
    content: dict[str, Any] = {"error": error}
    if details is not None:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content, headers=CORS_HEADERS)


@router.options("")
async def webhook_preflight():
    """Answer CORS preflight requests from the provider."""
    return Response(status_code=200, headers=CORS_HEADERS)


@router.get("")
async def webhook_health():
    """Lets the provider (or an operator) confirm the endpoint is reachable."""
    return JSONResponse(
        content={
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": "chatra-webhook",
        },
        headers=CORS_HEADERS,
    )


@router.post("")
async def receive_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    pipeline: WebhookIngestionPipeline = Depends(get_ingestion_pipeline),
):
    """Ingest one provider event.

    Query parameters:
        account: Optional external account id used when the payload
            carries none.
    """
    settings = get_settings()
    body = await request.body()

    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        webhook_events_total.labels(event="unknown", outcome="invalid_json").inc()
        logger.warning("webhook.invalid_json", size=len(body))
        return _error(400, "Invalid JSON payload")

    try:
        event = normalize_payload(payload)
    except ValidationError as exc:
        webhook_events_total.labels(event="unknown", outcome="invalid_payload").inc()
        logger.warning("webhook.invalid_payload", error=str(exc))
        return _error(400, "Invalid webhook payload", str(exc))

    try:
        account = await pipeline.resolve_account(
            event,
            body,
            extract_signature(request.headers),
            mode=settings.WEBHOOK_SIGNATURE_MODE,
            account_hint=request.query_params.get("account"),
        )
    except NotFoundError as exc:
        webhook_events_total.labels(event=event.kind, outcome="unknown_account").inc()
        return _error(404, str(exc))
    except AuthorizationError as exc:
        webhook_events_total.labels(event=event.kind, outcome="unauthorized").inc()
        return _error(401, str(exc))
    except Exception as exc:
        webhook_events_total.labels(event=event.kind, outcome="error").inc()
        logger.exception("webhook.account_lookup_failed", event_kind=event.kind)
        return _error(500, "Internal server error", str(exc))

    try:
        result = await pipeline.ingest(event, account)
    except Exception as exc:
        webhook_events_total.labels(event=event.kind, outcome="error").inc()
        logger.exception("webhook.ingest_failed", event_kind=event.kind)
        return _error(500, "Internal server error", str(exc))

    drafted: int | None = None
    if result.drafts:
        if settings.REPLY_GENERATION_MODE is ReplyGenerationMode.background:
            background_tasks.add_task(pipeline.run_drafts, result.drafts)
        else:
            drafted = (await pipeline.run_drafts(result.drafts)).drafted

    webhook_events_total.labels(event=event.kind, outcome="processed").inc()
    return JSONResponse(
        content={
            "success": True,
            "event": event.kind,
            "conversation_id": str(result.conversation.id),
            "messages_inserted": result.inserted,
            "duplicates": result.duplicates,
            "drafts_requested": len(result.drafts),
            "drafts_created": drafted,
        },
        headers=CORS_HEADERS,
    )
