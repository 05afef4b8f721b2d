#!/usr/bin/env python3
"""Load Q/A pairs into the knowledge base.

Two modes:
- ``--transcripts FILE``: historical transcripts exported as JSON
  (source ``bulk_import``)
- ``--from-conversations``: client -> agent exchanges already recorded in
  the ledger (source ``conversation_import``)

Usage:
    uv run python scripts/ingest_knowledge.py --transcripts data/transcripts.json
    uv run python scripts/ingest_knowledge.py --from-conversations
    uv run python scripts/ingest_knowledge.py --transcripts data/transcripts.json --dry-run
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path so we can import src modules
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def ingest(transcripts_path: str | None, from_conversations: bool, dry_run: bool) -> None:
    from src.app.api.middleware.logging import configure_structlog
    from src.app.conversations.repository import ConversationLedger
    from src.app.core.database import get_engine, get_session, init_db
    from src.knowledge.config import KnowledgeBaseConfig
    from src.knowledge.embeddings import EmbeddingService
    from src.knowledge.ingestion.pipeline import (
        ConversationKnowledgeImporter,
        load_transcripts,
        transcript_pairs,
    )
    from src.knowledge.service import KnowledgeService
    from src.knowledge.store import PgVectorKnowledgeStore

    configure_structlog()

    transcripts = load_transcripts(transcripts_path) if transcripts_path else []
    if dry_run:
        pairs = sum(len(transcript_pairs(t)) for t in transcripts)
        print(f"[DRY RUN] {len(transcripts)} transcripts, {pairs} Q/A pairs")
        return

    await init_db()
    config = KnowledgeBaseConfig()
    knowledge = KnowledgeService(
        EmbeddingService(config),
        PgVectorKnowledgeStore(
            session_factory=get_session, dimensions=config.embedding_dimensions
        ),
    )
    importer = ConversationKnowledgeImporter(
        ConversationLedger(session_factory=get_session),
        knowledge,
        max_attempts=config.import_max_attempts,
    )

    if transcripts:
        result = await importer.import_transcripts(transcripts)
        print(
            f"Transcripts: imported={result.imported} "
            f"skipped={result.skipped} failed={result.failed}"
        )
    if from_conversations:
        result = await importer.import_conversations()
        print(
            f"Conversations: imported={result.imported} "
            f"skipped={result.skipped} failed={result.failed}"
        )

    engine = get_engine()
    await engine.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Load Q/A pairs into the knowledge base")
    parser.add_argument("--transcripts", default=None, help="Path to a transcript JSON export")
    parser.add_argument(
        "--from-conversations",
        action="store_true",
        help="Import client -> agent pairs recorded in the ledger",
    )
    parser.add_argument("--dry-run", action="store_true", help="Count pairs without writing")
    args = parser.parse_args()

    if not args.transcripts and not args.from_conversations:
        parser.error("provide --transcripts and/or --from-conversations")

    asyncio.run(ingest(args.transcripts, args.from_conversations, args.dry_run))


if __name__ == "__main__":
    main()
