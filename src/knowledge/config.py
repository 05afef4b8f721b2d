"""Knowledge Base configuration via Pydantic BaseSettings.

All settings load from environment variables with the KNOWLEDGE_ prefix.
For example, KNOWLEDGE_EMBEDDING_MODEL sets embedding_model.
"""

from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class KnowledgeBaseConfig(BaseSettings):
    """Configuration for the knowledge vector table and embedding service.

    Attributes:
        embedding_model: LiteLLM embedding model name.
        embedding_dimensions: Dimensionality of stored and query vectors.
        embedding_api_key: Optional API key passed to the embedding provider.
            Falls back to the provider's standard env var when empty.
        embedding_timeout: Seconds before an embedding call is abandoned.
        default_top_k: Default number of results returned by retrieval.
        similarity_threshold: Results must score strictly above this value.
        import_max_attempts: Embedding attempts per entry in import tooling.
    """

    model_config = SettingsConfigDict(
        env_prefix="KNOWLEDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Embedding
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536
    embedding_api_key: str = ""
    embedding_timeout: float = 20.0

    # Retrieval
    default_top_k: int = 5
    similarity_threshold: float = 0.7

    # Import tooling
    import_max_attempts: int = 3
