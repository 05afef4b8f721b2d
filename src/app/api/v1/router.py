"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.app.api.v1 import auth, conversations, health, knowledge, messages, webhook

router = APIRouter()

router.include_router(health.router)
router.include_router(auth.router)
router.include_router(webhook.router)
router.include_router(conversations.router)
router.include_router(messages.router)
router.include_router(knowledge.router)
