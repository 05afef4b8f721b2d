"""Knowledge import tooling.

Builds Q/A entries from recorded client -> agent turns in the ledger and
from exported transcript files.
"""

from src.knowledge.ingestion.pipeline import (
    ConversationKnowledgeImporter,
    load_transcripts,
    transcript_pairs,
)

__all__ = [
    "ConversationKnowledgeImporter",
    "load_transcripts",
    "transcript_pairs",
]
