"""
Application configuration using Pydantic Settings.
All config is loaded from environment variables / .env file.
"""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    # ── App ──────────────────────────────────────────────
    APP_NAME: str = "poprag-knowledge"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"  # comma-separated

    # ── Supabase ─────────────────────────────────────────
    SUPABASE_URL: str = ""
    SUPABASE_KEY: str = ""  # anon/public key
    SUPABASE_SERVICE_KEY: str = ""  # service_role key (pipeline writes bypass RLS)
    KNOWLEDGE_BUCKET: str = "poprag"
    KNOWLEDGE_SOURCES_TABLE: str = "knowledge_sources"
    DOCUMENT_CHUNKS_TABLE: str = "document_chunks"

    # ── Security ─────────────────────────────────────────
    JWT_SECRET_KEY: str = ""  # JWT signing key
    JWT_ALGORITHM: str = "HS256"

    # ── Embedding (Provider-Agnostic) ────────────────────
    EMBEDDING_PROVIDER: str = "openai"  # openai | gemini
    EMBEDDING_MODEL: str = "text-embedding-3-small"
    EMBEDDING_DIMENSIONS: int = 1536
    EMBEDDING_API_KEY: str = ""
    EMBEDDING_BATCH_SIZE: int = 50  # chunks per provider call

    # ── Document conversion (Workers AI toMarkdown) ──────
    CLOUDFLARE_ACCOUNT_ID: str = ""
    CLOUDFLARE_API_TOKEN: str = ""
    CLOUDFLARE_API_BASE_URL: str = "https://api.cloudflare.com/client/v4"
    DOCUMENT_CONVERSION_TIMEOUT: int = 120  # seconds

    # ── Vector index (Vectorize) ─────────────────────────
    VECTORIZE_INDEX_NAME: str = "poprag-knowledge"
    VECTORIZE_TIMEOUT: int = 30  # seconds
    VECTOR_METADATA_LIMIT: int = 2800  # bytes, index hard limit is 3KB
    VECTOR_DELETE_BATCH_SIZE: int = 100

    # ── Chunking ─────────────────────────────────────────
    CHUNK_SIZE: int = 1024  # characters
    CHUNK_OVERLAP: int = 200
    MIN_CHUNK_SIZE: int = 100

    # ── Retry ────────────────────────────────────────────
    RETRY_ATTEMPTS: int = 3  # retries after the first attempt
    RETRY_BASE_DELAY_MS: int = 400

    # ── Ingestion ────────────────────────────────────────
    CHUNK_INSERT_BATCH_SIZE: int = 10  # rows per insert statement
    DB_PARAMETER_CEILING: int = 100  # bound variables per statement
    INGESTION_LOCK_TTL_SECONDS: int = 15 * 60
    BULK_REINDEX_CONCURRENCY: int = 3
    STALE_AFTER_DAYS: int = 30
    INDEX_DESCRIBE_CACHE_TTL: int = 60  # seconds

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": True,
    }


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance (singleton)."""
    return Settings()
