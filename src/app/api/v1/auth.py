"""Authentication API endpoints.

Provides login, token refresh and current agent info.
All endpoints except login and refresh require a valid JWT token.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends

from src.app.api.deps import get_current_user, get_user_repository
from src.app.core.errors import AuthorizationError
from src.app.core.security import (
    create_access_token,
    create_refresh_token,
    verify_password,
    verify_token,
)
from src.app.models.user import User
from src.app.schemas.auth import (
    LoginRequest,
    TokenRefreshRequest,
    TokenResponse,
    UserResponse,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


def _issue_tokens(user: User) -> TokenResponse:
    token_data = {
        "sub": str(user.id),
        "email": user.email,
        "role": user.role,
    }
    return TokenResponse(
        access_token=create_access_token(token_data),
        refresh_token=create_refresh_token(token_data),
    )


@router.post("/login", response_model=TokenResponse)
async def login(body: LoginRequest, users: Any = Depends(get_user_repository)):
    """Authenticate an agent and return JWT tokens."""
    user = await users.get_active_by_email(body.email)
    if not user or not user.hashed_password:
        logger.info("auth.login_failed", reason="unknown_user")
        raise AuthorizationError("Invalid email or password")

    if not verify_password(body.password, user.hashed_password):
        logger.info("auth.login_failed", reason="bad_password", user_id=str(user.id))
        raise AuthorizationError("Invalid email or password")

    logger.info("auth.login_succeeded", user_id=str(user.id))
    return _issue_tokens(user)


@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(body: TokenRefreshRequest, users: Any = Depends(get_user_repository)):
    """Refresh an expired access token using a valid refresh token."""
    payload = verify_token(body.refresh_token, token_type="refresh")
    user = await users.get_active(payload["sub"])
    if not user:
        raise AuthorizationError("User not found or inactive")
    return _issue_tokens(user)


@router.get("/me", response_model=UserResponse)
async def get_me(current_user: User = Depends(get_current_user)):
    """Return the authenticated agent."""
    return UserResponse(
        id=str(current_user.id),
        email=current_user.email,
        name=current_user.name,
        role=current_user.role,
    )
