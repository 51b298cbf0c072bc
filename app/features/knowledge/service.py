"""
Knowledge feature: Service layer around the ingestion pipeline.
Handles uploads, (re)indexing, deletion and health reporting for knowledge sources.
"""

import asyncio
import hashlib
import logging
import uuid
from datetime import datetime, timedelta, timezone

from cachetools import TTLCache

from app.core.exceptions import SourceFileMissingError, SourceNotFoundError
from app.core.retry import AbortSignal
from app.features.knowledge.deletion import KnowledgeSourceDeleter
from app.features.knowledge.pipeline import IngestionPipeline
from app.features.knowledge.repository import RelationalStore
from app.features.knowledge.schemas import (
    BulkReindexResult,
    DeletionReport,
    HealthIssue,
    IngestionResult,
    KnowledgeSource,
    ProgressCallback,
    ReindexOutcome,
    SourceStatus,
)
from app.features.knowledge.storage import BlobStore, source_object_key
from app.features.knowledge.vector_index import VectorIndex, check_index_health

logger = logging.getLogger(__name__)

SAMPLE_CHUNKS = 10


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class KnowledgeService:
    """Operations on knowledge sources, built on the injected stores and pipeline."""

    def __init__(
        self,
        store: RelationalStore,
        blob_store: BlobStore,
        index: VectorIndex,
        pipeline: IngestionPipeline,
        deleter: KnowledgeSourceDeleter,
        *,
        bucket: str | None = None,
        stale_after_days: int = 30,
        bulk_concurrency: int = 3,
        index_cache_ttl: int = 60,
    ):
        self.store = store
        self.blob_store = blob_store
        self.index = index
        self.pipeline = pipeline
        self.deleter = deleter
        self.bucket = bucket
        self.stale_after = timedelta(days=stale_after_days)
        self.bulk_concurrency = bulk_concurrency
        self._index_cache: TTLCache = TTLCache(maxsize=1, ttl=index_cache_ttl)

    # ── Sources ──────────────────────────────────────────

    async def create_source(
        self, agent_id: str, file_name: str, content: bytes, mime: str
    ) -> KnowledgeSource:
        """Store the uploaded file and record it as an `uploaded` knowledge source."""
        source_id = str(uuid.uuid4())
        key = source_object_key(agent_id, source_id, file_name)

        await self.blob_store.put(key, content, mime)
        source = KnowledgeSource(
            id=source_id,
            agent_id=agent_id,
            type="file",
            bucket=self.bucket,
            storage_key=key,
            file_name=file_name,
            mime=mime,
            bytes=len(content),
            checksum=hashlib.sha256(content).hexdigest(),
            status=SourceStatus.UPLOADED,
        )
        created = await self.store.create_source(source)
        logger.info(f"📥 Uploaded {file_name} as knowledge source {source_id} ({len(content)} bytes)")
        return created

    async def get_source(self, source_id: str) -> KnowledgeSource:
        source = await self.store.get_source(source_id)
        if source is None:
            raise SourceNotFoundError(source_id)
        return source

    async def list_sources(
        self, agent_id: str | None = None, status: SourceStatus | None = None
    ) -> list[KnowledgeSource]:
        return await self.store.list_sources(agent_id=agent_id, status=status)

    async def load_content(self, source: KnowledgeSource) -> bytes:
        """Fetch the stored document bytes.

        Raises:
            SourceFileMissingError: No storage key, or the blob is gone.
        """
        if not source.storage_key:
            raise SourceFileMissingError(source.id, "No stored file")
        content = await self.blob_store.get(source.storage_key)
        if content is None:
            raise SourceFileMissingError(source.id, "File not found in storage")
        return content

    # ── Indexing ─────────────────────────────────────────

    async def index_source(
        self,
        source_id: str,
        progress: ProgressCallback | None = None,
        abort_signal: AbortSignal | None = None,
    ) -> IngestionResult:
        """Run (or resume) ingestion for a source."""
        source = await self.get_source(source_id)
        content = await self.load_content(source)
        return await self.pipeline.process(
            source_id, content, progress=progress, abort_signal=abort_signal, resume=True
        )

    async def reindex(
        self,
        source_id: str,
        progress: ProgressCallback | None = None,
        abort_signal: AbortSignal | None = None,
    ) -> IngestionResult:
        """Delete the source's chunks and vectors, then index it again from its stored file."""
        source = await self.get_source(source_id)
        content = await self.load_content(source)
        logger.info(f"🔁 Reindexing knowledge source {source_id} ({source.file_name})")
        return await self.pipeline.process(
            source_id,
            content,
            progress=progress,
            abort_signal=abort_signal,
            resume=False,
            purge_existing=True,
        )

    async def bulk_reindex(
        self, source_ids: list[str], abort_signal: AbortSignal | None = None
    ) -> BulkReindexResult:
        """Reindex many sources, at most `bulk_concurrency` at a time."""
        semaphore = asyncio.Semaphore(self.bulk_concurrency)

        async def _reindex_one(source_id: str) -> ReindexOutcome:
            async with semaphore:
                try:
                    await self.reindex(source_id, abort_signal=abort_signal)
                    return ReindexOutcome(source_id=source_id, success=True)
                except Exception as e:
                    logger.warning(f"⚠️ Bulk reindex of {source_id} failed: {e}")
                    return ReindexOutcome(source_id=source_id, success=False, error=str(e))

        results = await asyncio.gather(*(_reindex_one(sid) for sid in source_ids))
        successful = sum(1 for r in results if r.success)
        return BulkReindexResult(
            total=len(source_ids),
            successful=successful,
            failed=len(results) - successful,
            results=list(results),
        )

    async def delete_source(self, source_id: str) -> DeletionReport:
        return await self.deleter.delete(source_id)

    # ── Health ───────────────────────────────────────────

    def _staleness(self, source: KnowledgeSource, now: datetime) -> tuple[bool, int]:
        updated = source.updated_at or source.created_at
        if updated is None:
            return False, 0
        if updated.tzinfo is None:
            updated = updated.replace(tzinfo=timezone.utc)
        age = now - updated
        return age > self.stale_after, age.days

    async def health_overview(self, agent_id: str | None = None) -> dict:
        """Aggregate status counts, chunk totals and staleness across sources."""
        sources = await self.store.list_sources(agent_id=agent_id)
        chunk_counts = await asyncio.gather(*(self.store.count_chunks(s.id) for s in sources))
        now = _utcnow()

        status_counts = {status.value: 0 for status in SourceStatus}
        total_chunks = 0
        total_bytes = 0
        stale_count = 0
        entries = []
        for source, chunks in zip(sources, chunk_counts):
            is_stale, days = self._staleness(source, now)
            status_counts[source.status.value] += 1
            total_chunks += chunks
            total_bytes += source.bytes or 0
            stale_count += int(is_stale)
            entries.append({
                "id": source.id,
                "agent_id": source.agent_id,
                "file_name": source.file_name,
                "status": source.status.value,
                "chunk_count": chunks,
                "is_stale": is_stale,
                "has_errors": bool(source.parser_errors),
                "days_since_update": days,
            })

        return {
            "total_sources": len(sources),
            "status_counts": status_counts,
            "total_chunks": total_chunks,
            "total_bytes": total_bytes,
            "stale_count": stale_count,
            "sources": entries,
        }

    async def health_detail(self, source_id: str) -> dict:
        """Chunk sample, blob presence, staleness, vector coverage and issues for one source."""
        source = await self.get_source(source_id)
        chunk_count = await self.store.count_chunks(source_id)
        samples = await self.store.list_chunks(source_id, limit=SAMPLE_CHUNKS)

        blob_exists = False
        if source.storage_key:
            try:
                blob_exists = await self.blob_store.exists(source.storage_key)
            except Exception as e:
                logger.warning(f"⚠️ Could not check blob {source.storage_key}: {e}")

        is_stale, days = self._staleness(source, _utcnow())

        vector_coverage = 0.0
        if chunk_count > 0:
            with_vectors = sum(1 for c in samples if c.vector_id)
            if with_vectors:
                vector_coverage = with_vectors / min(len(samples), chunk_count) * 100
            elif source.vector_ids:
                vector_coverage = len(source.vector_ids) / chunk_count * 100

        issues: list[HealthIssue] = []
        if source.status == SourceStatus.FAILED:
            issues.append(HealthIssue(type="error", message="Indexing failed"))
        issues.extend(HealthIssue(type="error", message=e) for e in source.parser_errors)
        if is_stale:
            issues.append(HealthIssue(type="warning", message=f"Not updated in {days} days"))
        if source.storage_key and not blob_exists:
            issues.append(HealthIssue(type="error", message="Stored file not found"))
        if chunk_count == 0 and source.status == SourceStatus.INDEXED:
            issues.append(HealthIssue(type="warning", message="No chunks extracted"))

        return {
            "source": source.model_dump(mode="json", exclude={"checkpoint"}),
            "chunk_count": chunk_count,
            "sample_chunks": [c.model_dump(mode="json") for c in samples],
            "blob_exists": blob_exists,
            "is_stale": is_stale,
            "days_since_update": days,
            "vector_coverage": vector_coverage,
            "issues": [i.model_dump() for i in issues],
        }

    async def index_health(self) -> dict:
        """Vector index diagnostics, cached for `index_cache_ttl` seconds."""
        cached = self._index_cache.get("index")
        if cached is not None:
            return cached
        health = await check_index_health(self.index)
        if health["status"] == "healthy":
            self._index_cache["index"] = health
        return health
