"""
Knowledge ingestion backend - FastAPI Application Entry Point.

Feature-based modular architecture:
  Each feature in app/features/ has its own router, service and schemas.
  External stores are built once in the lifespan and injected into the
  knowledge service, which routes reach through `app.state`.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import Settings, get_settings
from app.core.database import create_supabase_admin_client
from app.features.knowledge.deletion import KnowledgeSourceDeleter
from app.features.knowledge.embedding import EmbeddingClient, LangChainEmbeddingProvider
from app.features.knowledge.parser import CloudflareMarkdownConverter, DocumentParser
from app.features.knowledge.pipeline import IngestionPipeline
from app.features.knowledge.repository import SupabaseKnowledgeRepository
from app.features.knowledge.router import router as knowledge_router
from app.features.knowledge.schemas import ChunkingOptions
from app.features.knowledge.service import KnowledgeService
from app.features.knowledge.storage import SupabaseBlobStore
from app.features.knowledge.vector_index import VectorizeIndex
from app.features.knowledge.writers import ChunkStoreWriter, VectorIndexWriter, chunk_insert_batch_size

logger = logging.getLogger(__name__)


def build_knowledge_service(
    settings: Settings,
    db,
    converter: CloudflareMarkdownConverter,
    index: VectorizeIndex,
) -> KnowledgeService:
    """Wire stores, clients and the pipeline together from settings."""
    retry = {"retries": settings.RETRY_ATTEMPTS, "base_delay_ms": settings.RETRY_BASE_DELAY_MS}

    store = SupabaseKnowledgeRepository(
        db,
        sources_table=settings.KNOWLEDGE_SOURCES_TABLE,
        chunks_table=settings.DOCUMENT_CHUNKS_TABLE,
    )
    blob_store = SupabaseBlobStore(db, settings.KNOWLEDGE_BUCKET)

    embedder = EmbeddingClient(
        LangChainEmbeddingProvider(dimensions=settings.EMBEDDING_DIMENSIONS),
        model=settings.EMBEDDING_MODEL,
        dimensions=settings.EMBEDDING_DIMENSIONS,
        batch_size=settings.EMBEDDING_BATCH_SIZE,
        **retry,
    )
    chunk_writer = ChunkStoreWriter(
        store,
        batch_size=chunk_insert_batch_size(
            parameter_ceiling=settings.DB_PARAMETER_CEILING,
            max_rows=settings.CHUNK_INSERT_BATCH_SIZE,
        ),
        **retry,
    )
    vector_writer = VectorIndexWriter(index, metadata_limit=settings.VECTOR_METADATA_LIMIT, **retry)

    pipeline = IngestionPipeline(
        store,
        DocumentParser(converter),
        embedder,
        chunk_writer,
        vector_writer,
        index,
        chunking=ChunkingOptions(
            chunk_size=settings.CHUNK_SIZE,
            chunk_overlap=settings.CHUNK_OVERLAP,
            min_chunk_size=settings.MIN_CHUNK_SIZE,
        ),
        lock_ttl_seconds=settings.INGESTION_LOCK_TTL_SECONDS,
        delete_batch_size=settings.VECTOR_DELETE_BATCH_SIZE,
        **retry,
    )
    deleter = KnowledgeSourceDeleter(
        store, blob_store, index, batch_size=settings.VECTOR_DELETE_BATCH_SIZE, **retry
    )

    return KnowledgeService(
        store,
        blob_store,
        index,
        pipeline,
        deleter,
        bucket=settings.KNOWLEDGE_BUCKET,
        stale_after_days=settings.STALE_AFTER_DAYS,
        bulk_concurrency=settings.BULK_REINDEX_CONCURRENCY,
        index_cache_ttl=settings.INDEX_DESCRIBE_CACHE_TTL,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle: startup & shutdown."""
    settings = get_settings()
    logger.info(f"🚀 {settings.APP_NAME} v{settings.APP_VERSION} starting...")
    logger.info(f"🧠 Embedding: {settings.EMBEDDING_PROVIDER} ({settings.EMBEDDING_MODEL}, {settings.EMBEDDING_DIMENSIONS}d)")
    logger.info(f"🔗 Supabase: {settings.SUPABASE_URL[:40]}...")

    db = await create_supabase_admin_client()
    converter = CloudflareMarkdownConverter(
        settings.CLOUDFLARE_ACCOUNT_ID,
        settings.CLOUDFLARE_API_TOKEN,
        base_url=settings.CLOUDFLARE_API_BASE_URL,
        timeout=settings.DOCUMENT_CONVERSION_TIMEOUT,
    )
    index = VectorizeIndex(
        settings.CLOUDFLARE_ACCOUNT_ID,
        settings.VECTORIZE_INDEX_NAME,
        settings.CLOUDFLARE_API_TOKEN,
        base_url=settings.CLOUDFLARE_API_BASE_URL,
        timeout=settings.VECTORIZE_TIMEOUT,
    )
    app.state.knowledge_service = build_knowledge_service(settings, db, converter, index)

    yield

    logger.info("👋 Shutting down...")
    await converter.close()
    await index.close()


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Knowledge ingestion: uploaded documents to searchable vectors",
        lifespan=lifespan,
    )

    # ── CORS ─────────────────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Register Feature Routers ─────────────────────────
    app.include_router(knowledge_router, prefix="/api/knowledge", tags=["Knowledge"])

    # ── Health Check ─────────────────────────────────────
    @app.get("/health", tags=["System"])
    async def health_check():
        return {
            "status": "healthy",
            "app": settings.APP_NAME,
            "version": settings.APP_VERSION,
        }

    return app


app = create_app()
