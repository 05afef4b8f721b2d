"""Initial schema: accounts, conversations, messages, knowledge, users.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19

Creates the pgvector extension, the conversation ledger tables, the
knowledge_entries table with an IVFFlat cosine index, and dashboard users.
"""

from typing import Sequence, Union

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Enable pgvector extension (requires superuser or CREATE privilege)
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    op.execute("""
        CREATE TABLE IF NOT EXISTS chat_accounts (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            name VARCHAR(200) NOT NULL,
            external_id VARCHAR(200) NOT NULL,
            api_key VARCHAR(500) NOT NULL,
            api_secret VARCHAR(500),
            webhook_secret VARCHAR(500) NOT NULL,
            is_active BOOLEAN DEFAULT true,
            created_at TIMESTAMPTZ DEFAULT now(),
            updated_at TIMESTAMPTZ,
            CONSTRAINT uq_chat_accounts_external_id UNIQUE (external_id)
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS conversations (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            account_id UUID NOT NULL REFERENCES chat_accounts(id),
            external_id VARCHAR(200) NOT NULL,
            client_name VARCHAR(300),
            client_email VARCHAR(300),
            status VARCHAR(20) DEFAULT 'active',
            last_message_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ DEFAULT now(),
            updated_at TIMESTAMPTZ DEFAULT now(),
            CONSTRAINT uq_conversations_account_external UNIQUE (account_id, external_id)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_conversations_last_message_at
        ON conversations(last_message_at)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS messages (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            external_id VARCHAR(200),
            conversation_id UUID NOT NULL REFERENCES conversations(id),
            content TEXT NOT NULL,
            sender_kind VARCHAR(20) NOT NULL,
            sender_name VARCHAR(300),
            message_kind VARCHAR(20) DEFAULT 'text',
            retrieved_context JSONB,
            confidence DOUBLE PRECISION,
            approval BOOLEAN,
            delivered_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ DEFAULT now(),
            updated_at TIMESTAMPTZ,
            CONSTRAINT uq_messages_external_id UNIQUE (external_id)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_messages_conversation_created
        ON messages(conversation_id, created_at)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS knowledge_entries (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            content TEXT NOT NULL,
            content_hash VARCHAR(64) NOT NULL,
            source VARCHAR(50) NOT NULL,
            source_id VARCHAR(200),
            embedding vector(1536) NOT NULL,
            metadata JSONB DEFAULT '{}',
            created_at TIMESTAMPTZ DEFAULT now(),
            updated_at TIMESTAMPTZ DEFAULT now(),
            CONSTRAINT uq_knowledge_content_source UNIQUE (content_hash, source_id)
        )
    """)

    # IVFFlat index for cosine similarity vector search
    # Note: This index is most effective when the table has data.
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_knowledge_entries_embedding
        ON knowledge_entries
        USING ivfflat (embedding vector_cosine_ops)
        WITH (lists = 100)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            email VARCHAR(255) NOT NULL,
            name VARCHAR(200),
            hashed_password VARCHAR(255),
            role VARCHAR(50) DEFAULT 'agent',
            is_active BOOLEAN DEFAULT true,
            created_at TIMESTAMPTZ DEFAULT now(),
            updated_at TIMESTAMPTZ,
            CONSTRAINT uq_users_email UNIQUE (email)
        )
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS users")
    op.execute("DROP TABLE IF EXISTS knowledge_entries")
    op.execute("DROP TABLE IF EXISTS messages")
    op.execute("DROP TABLE IF EXISTS conversations")
    op.execute("DROP TABLE IF EXISTS chat_accounts")
    # Don't drop the vector extension -- other tables may use it
