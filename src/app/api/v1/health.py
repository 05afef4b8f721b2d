"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks.
"""

from __future__ import annotations

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.app.config import get_settings
from src.app.core.database import get_engine

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check.

    No external dependencies are checked -- just that the server is running.
    """
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies() -> dict:
    """Check database (with pgvector) and LLM key configuration."""
    checks: dict = {"database": "ok", "pgvector": "ok", "litellm": "ok"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
            installed = await conn.scalar(
                text("SELECT 1 FROM pg_extension WHERE extname = 'vector'")
            )
            if not installed:
                checks["pgvector"] = "missing"
    except Exception as e:
        checks["database"] = "error"
        checks["pgvector"] = "unknown"
        checks["database_error"] = str(e)

    settings = get_settings()
    if not (settings.ANTHROPIC_API_KEY or settings.OPENAI_API_KEY or settings.GEMINI_API_KEY):
        checks["litellm"] = "no_keys"

    return checks


@router.get("/health/ready")
async def readiness_check():
    """Readiness check: verifies DB and pgvector.

    Returns 200 if the database is reachable with pgvector installed,
    503 otherwise. Missing LLM keys only degrade drafting and are reported
    without failing readiness.
    """
    checks = await _check_dependencies()
    all_healthy = checks.get("database") == "ok" and checks.get("pgvector") == "ok"

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if all_healthy else "degraded",
            "checks": checks,
        },
    )
