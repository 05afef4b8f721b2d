"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan events for database and service initialization, domain error
handlers, and the v1 API router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import JSONResponse, Response

from src.app.config import get_settings
from src.app.core.database import close_db, get_session, init_db
from src.app.core.errors import (
    AlreadyDeliveredError,
    AuthorizationError,
    EmbeddingError,
    NotFoundError,
    ValidationError,
)
from src.app.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.app.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.app.api.v1.router import router as v1_router

log = structlog.get_logger(__name__)


def build_services(app: FastAPI) -> None:
    """Construct the service graph and store it on ``app.state``.

    Every dependency below is a plain constructor call; nothing here
    touches the network.
    """
    from src.app.conversations.approval import ApprovalWorkflow
    from src.app.conversations.generator import ReplyGenerator
    from src.app.conversations.ingestion import WebhookIngestionPipeline
    from src.app.conversations.repository import AccountRepository, ConversationLedger
    from src.app.services.chatra import ChatraClient
    from src.app.services.llm import get_llm_service
    from src.app.services.users import UserRepository
    from src.knowledge.config import KnowledgeBaseConfig
    from src.knowledge.embeddings import EmbeddingService
    from src.knowledge.ingestion.pipeline import ConversationKnowledgeImporter
    from src.knowledge.rag.retriever import KnowledgeRetriever
    from src.knowledge.service import KnowledgeService
    from src.knowledge.store import PgVectorKnowledgeStore

    settings = get_settings()
    kb_config = KnowledgeBaseConfig()

    ledger = ConversationLedger(session_factory=get_session)
    accounts = AccountRepository(session_factory=get_session)
    embedding_service = EmbeddingService(kb_config)
    store = PgVectorKnowledgeStore(
        session_factory=get_session, dimensions=kb_config.embedding_dimensions
    )
    knowledge_service = KnowledgeService(embedding_service, store)
    retriever = KnowledgeRetriever(embedding_service, store, kb_config)
    generator = ReplyGenerator(
        retriever, get_llm_service(), ledger, sender_name=settings.AI_SENDER_NAME
    )
    chatra = ChatraClient(
        base_url=settings.CHATRA_API_BASE_URL, timeout=settings.CHATRA_TIMEOUT
    )

    app.state.ledger = ledger
    app.state.accounts = accounts
    app.state.user_repository = UserRepository(session_factory=get_session)
    app.state.knowledge_service = knowledge_service
    app.state.ingestion_pipeline = WebhookIngestionPipeline(
        ledger, accounts, generator, history_limit=settings.HISTORY_LIMIT
    )
    app.state.approval_workflow = ApprovalWorkflow(
        ledger,
        accounts,
        chatra,
        knowledge_service,
        default_sender_name=settings.AI_SENDER_NAME,
    )
    app.state.knowledge_importer = ConversationKnowledgeImporter(
        ledger, knowledge_service, max_attempts=kb_config.import_max_attempts
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and services on startup, close on shutdown."""
    settings = get_settings()
    configure_structlog()
    await init_db()

    # Initialize Sentry if DSN is configured
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    try:
        build_services(app)
        log.info("startup.services_initialized")
    except Exception:
        # Endpoints answer 503 for any service left unset.
        log.error("startup.services_init_failed", exc_info=True)

    yield

    await close_db()


# ── Error Handlers ────────────────────────────────────────────────────────


async def _validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


async def _already_delivered_handler(request: Request, exc: AlreadyDeliveredError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


async def _not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


async def _authorization_handler(request: Request, exc: AuthorizationError) -> JSONResponse:
    if exc.forbidden:
        return JSONResponse(status_code=403, content={"detail": str(exc)})
    return JSONResponse(
        status_code=401,
        content={"detail": str(exc)},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def _embedding_error_handler(request: Request, exc: EmbeddingError) -> JSONResponse:
    log.warning("api.embedding_unavailable", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=502, content={"detail": "Embedding provider unavailable"}
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Support Hub API",
        version="0.1.0",
        description="Human-in-the-loop AI reply assistant for Chatra customer support",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    # Most specific class wins, so AlreadyDeliveredError maps to 409, not 400
    app.add_exception_handler(ValidationError, _validation_error_handler)
    app.add_exception_handler(AlreadyDeliveredError, _already_delivered_handler)
    app.add_exception_handler(NotFoundError, _not_found_handler)
    app.add_exception_handler(AuthorizationError, _authorization_handler)
    app.add_exception_handler(EmbeddingError, _embedding_error_handler)

    # Include v1 API router (health, auth, webhook, dashboard)
    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
