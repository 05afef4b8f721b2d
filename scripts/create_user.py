#!/usr/bin/env python3
"""CLI script to create a dashboard agent.

Usage:
    uv run python scripts/create_user.py --email agent@example.com --password changeme
    uv run python scripts/create_user.py --email admin@example.com --password changeme --role admin --name "Jordan"
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path so we can import src.app
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def create_user(email: str, password: str, name: str | None, role: str) -> None:
    from src.app.core.database import get_engine, get_session, init_db
    from src.app.core.security import hash_password
    from src.app.services.users import UserRepository

    await init_db()
    users = UserRepository(session_factory=get_session)

    if await users.get_active_by_email(email) is not None:
        print(f"User already exists: {email}")
    else:
        user = await users.create(
            email=email,
            hashed_password=hash_password(password),
            name=name,
            role=role,
        )
        print(f"User created: {user.email} ({user.role}, id={user.id})")

    engine = get_engine()
    await engine.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Create a dashboard agent")
    parser.add_argument("--email", required=True)
    parser.add_argument("--password", required=True)
    parser.add_argument("--name", default=None)
    parser.add_argument("--role", choices=["agent", "admin"], default="agent")
    args = parser.parse_args()

    asyncio.run(create_user(args.email, args.password, args.name, args.role))


if __name__ == "__main__":
    main()
