"""Agent user repository -- lookups for login and token validation."""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.models.user import User


class UserRepository:
    """Async access to dashboard agents.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def get_active(self, user_id: str) -> User | None:
        """Active user by id (as found in a token ``sub`` claim)."""
        try:
            parsed = uuid.UUID(str(user_id))
        except ValueError:
            return None
        async for session in self._session_factory():
            result = await session.execute(
                select(User).where(User.id == parsed, User.is_active.is_(True))
            )
            return result.scalar_one_or_none()

    async def get_active_by_email(self, email: str) -> User | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(User).where(
                    func.lower(User.email) == email.lower(),
                    User.is_active.is_(True),
                )
            )
            return result.scalar_one_or_none()

    async def create(
        self,
        *,
        email: str,
        hashed_password: str,
        name: str | None = None,
        role: str = "agent",
    ) -> User:
        async for session in self._session_factory():
            user = User(
                email=email.lower(),
                hashed_password=hashed_password,
                name=name,
                role=role,
                is_active=True,
            )
            session.add(user)
            await session.commit()
            await session.refresh(user)
            return user
