#!/usr/bin/env python3
"""CLI script to register a Chatra account.

Usage:
    uv run python scripts/create_account.py --name "Acme Support" --external-id abc123 \
        --api-key PUBLIC_KEY --api-secret SECRET_KEY --webhook-secret s3cret

Connects directly to the database using DATABASE_URL from environment or .env file.
The webhook secret is the HMAC key the provider signs webhook bodies with.
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


async def create_account(
    name: str,
    external_id: str,
    api_key: str,
    api_secret: str | None,
    webhook_secret: str,
) -> None:
    """Insert the account unless one with the same external id exists."""
    from src.app.conversations.repository import AccountRepository
    from src.app.core.database import get_engine, get_session, init_db

    await init_db()
    accounts = AccountRepository(session_factory=get_session)

    existing = await accounts.get_by_external_id(external_id)
    if existing is not None:
        print(f"Account already registered: {existing.name} ({existing.id})")
    else:
        account = await accounts.create(
            name=name,
            external_id=external_id,
            api_key=api_key,
            webhook_secret=webhook_secret,
            api_secret=api_secret,
        )
        print("Account registered successfully:")
        print(f"  ID:          {account.id}")
        print(f"  Name:        {account.name}")
        print(f"  External ID: {account.external_id}")
        print(f"  Webhook URL: /api/v1/chatra/webhook?account={account.external_id}")

    engine = get_engine()
    await engine.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Register a Chatra account")
    parser.add_argument("--name", required=True, help="Display name")
    parser.add_argument("--external-id", required=True, help="Chatra account id")
    parser.add_argument("--api-key", required=True, help="Chatra public API key")
    parser.add_argument("--api-secret", default=None, help="Chatra secret API key")
    parser.add_argument("--webhook-secret", required=True, help="Webhook HMAC secret")
    args = parser.parse_args()

    asyncio.run(
        create_account(
            args.name, args.external_id, args.api_key, args.api_secret, args.webhook_secret
        )
    )


if __name__ == "__main__":
    main()
