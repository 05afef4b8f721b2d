"""FastAPI dependency injection for services and authentication.

Services are built once in the application lifespan and stored on
``app.state``; these dependencies fetch them (503 if startup did not
provide one) and authenticate the calling agent from a Bearer JWT.
"""

from __future__ import annotations

from typing import Any

from fastapi import Depends, HTTPException, Request, status

from src.app.core.errors import AuthorizationError
from src.app.core.security import verify_token
from src.app.models.user import User


def _get_state_service(request: Request, name: str, label: str) -> Any:
    """Retrieve a service from app.state, 503 if not available."""
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not available",
        )
    return service


def get_ledger(request: Request) -> Any:
    return _get_state_service(request, "ledger", "Conversation ledger")


def get_accounts(request: Request) -> Any:
    return _get_state_service(request, "accounts", "Account repository")


def get_ingestion_pipeline(request: Request) -> Any:
    return _get_state_service(request, "ingestion_pipeline", "Ingestion pipeline")


def get_approval_workflow(request: Request) -> Any:
    return _get_state_service(request, "approval_workflow", "Approval workflow")


def get_knowledge_service(request: Request) -> Any:
    return _get_state_service(request, "knowledge_service", "Knowledge service")


def get_knowledge_importer(request: Request) -> Any:
    return _get_state_service(request, "knowledge_importer", "Knowledge importer")


def get_user_repository(request: Request) -> Any:
    return _get_state_service(request, "user_repository", "User repository")


async def get_current_user(
    request: Request,
    users: Any = Depends(get_user_repository),
) -> User:
    """Extract and validate the current agent from a Bearer JWT.

    Raises:
        AuthorizationError: If no valid token is provided or the agent
            no longer exists or is inactive.
    """
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        token = auth_header[7:]
    else:
        # EventSource cannot set headers; the change stream passes the token in the query.
        token = request.query_params.get("access_token")
    if not token:
        raise AuthorizationError("Not authenticated")

    payload = verify_token(token, token_type="access")
    user = await users.get_active(payload["sub"])
    if user is None:
        raise AuthorizationError("User not found or inactive")
    return user


async def require_admin(current_user: User = Depends(get_current_user)) -> User:
    """Like get_current_user, but only for agents with the admin role."""
    if current_user.role != "admin":
        raise AuthorizationError("Admin role required", forbidden=True)
    return current_user


# Alias for cleaner endpoint signatures
require_auth = Depends(get_current_user)
