"""
Knowledge feature: ingestion orchestrator.

Drives one knowledge source through parse → chunk → embed → write:

  1. Take the source's advisory lock, then read the source under it.
  2. Parse, then persist `status=parsed` (vector ids cleared).
  3. Chunk. If a checkpoint from an earlier run matches these chunks, resume
     after its last committed batch, first dropping rows and vectors of the
     batch that failed mid-write; otherwise delete whatever earlier runs left
     behind (vectors, then chunk rows) before writing anything new.
  4. For each embedding batch, strictly in order: embed → write chunk rows
     (concurrent sub-batches) → write vectors → save the checkpoint.
  5. Persist `status=indexed` together with every vector id in one update.

Any failure marks the source `failed`, appends the message to
`parser_errors`, tells the progress sink and re-raises. Batches committed
before the failure stay in place; the checkpoint lets the next run pick up
from there.
"""

import hashlib
import json
import logging
import uuid
from datetime import datetime, timedelta, timezone

from app.core.exceptions import EmptyDocumentError, SourceLockedError, SourceNotFoundError
from app.core.retry import AbortSignal, with_retry
from app.features.knowledge.chunker import chunk_text
from app.features.knowledge.deletion import delete_vector_ids
from app.features.knowledge.embedding import EmbeddingClient
from app.features.knowledge.parser import DocumentParser
from app.features.knowledge.repository import RelationalStore
from app.features.knowledge.schemas import (
    ChunkingOptions,
    DocumentChunk,
    IngestionCheckpoint,
    IngestionResult,
    KnowledgeSource,
    ProgressCallback,
    ProgressEvent,
    SourceStatus,
    ensure_transition,
)
from app.features.knowledge.vector_index import VectorIndex, wait_for_mutation
from app.features.knowledge.writers import ChunkStoreWriter, VectorIndexWriter

logger = logging.getLogger(__name__)


def chunk_fingerprint(chunks: list[str], options: ChunkingOptions, batch_size: int) -> str:
    """Stable digest of the chunking parameters and chunk texts."""
    digest = hashlib.sha256()
    params = {**options.model_dump(), "batch_size": batch_size}
    digest.update(json.dumps(params, sort_keys=True).encode("utf-8"))
    for chunk in chunks:
        digest.update(b"\x00")
        digest.update(chunk.encode("utf-8"))
    return digest.hexdigest()


class IngestionPipeline:
    def __init__(
        self,
        store: RelationalStore,
        parser: DocumentParser,
        embedder: EmbeddingClient,
        chunk_writer: ChunkStoreWriter,
        vector_writer: VectorIndexWriter,
        index: VectorIndex,
        *,
        chunking: ChunkingOptions | None = None,
        lock_ttl_seconds: int = 900,
        delete_batch_size: int = 100,
        retries: int = 3,
        base_delay_ms: int = 400,
        mutation_wait: float = 30.0,
        mutation_poll_interval: float = 1.0,
    ):
        self.store = store
        self.parser = parser
        self.embedder = embedder
        self.chunk_writer = chunk_writer
        self.vector_writer = vector_writer
        self.index = index
        self.chunking = chunking or ChunkingOptions()
        self.lock_ttl = timedelta(seconds=lock_ttl_seconds)
        self.delete_batch_size = delete_batch_size
        self.retries = retries
        self.base_delay_ms = base_delay_ms
        self.mutation_wait = mutation_wait
        self.mutation_poll_interval = mutation_poll_interval

    async def process(
        self,
        source_id: str,
        content: bytes,
        *,
        progress: ProgressCallback | None = None,
        abort_signal: AbortSignal | None = None,
        resume: bool = True,
        purge_existing: bool = False,
    ) -> IngestionResult:
        """Ingest `content` as the knowledge source `source_id`.

        Args:
            source_id: Knowledge source to index.
            content: Raw document bytes.
            progress: Optional async sink for milestone notifications.
            abort_signal: Cancels the run at the next retry boundary.
            resume: Skip batches recorded by a matching checkpoint.
            purge_existing: Reindex. Delete prior chunks and vectors and
                rebuild even if the source is already indexed.

        Returns:
            IngestionResult. An indexed source without `purge_existing`
            comes back untouched with `skipped=True`.

        Raises:
            SourceNotFoundError: No such source.
            SourceLockedError: Another run holds the source's lock.
            Exception: Whatever stage failed, after it was recorded on the source.
        """
        source = await self.store.get_source(source_id)
        if source is None:
            raise SourceNotFoundError(source_id)

        if source.status == SourceStatus.INDEXED and not purge_existing:
            logger.info(f"⏭️ Knowledge source {source_id} already indexed, skipping")
            return IngestionResult(
                source_id=source_id,
                chunks_processed=len(source.vector_ids),
                skipped=True,
            )

        run_id = uuid.uuid4().hex
        stale_before = datetime.now(timezone.utc) - self.lock_ttl
        if not await self.store.try_lock(source_id, run_id, stale_before):
            raise SourceLockedError(source_id)

        try:
            # Another run may have finished between the first read and the lock
            source = await self.store.get_source(source_id)
            if source is None:
                raise SourceNotFoundError(source_id)
            if source.status == SourceStatus.INDEXED and not purge_existing:
                logger.info(f"⏭️ Knowledge source {source_id} was indexed by another run, skipping")
                return IngestionResult(
                    source_id=source_id,
                    chunks_processed=len(source.vector_ids),
                    skipped=True,
                )

            logger.info(f"🚀 Starting ingestion for knowledge source {source_id} ({source.file_name})")
            try:
                return await self._run(source, content, progress, abort_signal, resume, purge_existing)
            except Exception as e:
                logger.error(f"❌ Ingestion failed for {source_id}: {e}")
                await self._record_failure(source_id, e, progress)
                raise
        finally:
            await self._release_lock(source_id, run_id)

    async def _run(
        self,
        source: KnowledgeSource,
        content: bytes,
        progress: ProgressCallback | None,
        abort_signal: AbortSignal | None,
        resume: bool,
        purge_existing: bool,
    ) -> IngestionResult:
        if abort_signal is not None:
            abort_signal.throw_if_aborted()

        # 1. Parse
        ensure_transition(source.status, SourceStatus.PARSED)
        parsed = await self.parser.parse(content, source.mime or "text/plain", source.file_name)
        await self.store.update_source(
            source.id, {"status": SourceStatus.PARSED, "vector_ids": []}
        )
        await self._emit(progress, ProgressEvent(message="Parsed document", metadata=parsed.metadata))

        # 2. Chunk
        content_type = "markdown" if parsed.metadata.get("type") in ("markdown", "converted") else "text"
        options = self.chunking.model_copy(update={"content_type": content_type})
        chunks = chunk_text(parsed.content, options)
        if not chunks:
            raise EmptyDocumentError(source.id)
        await self._emit(progress, ProgressEvent(message=f"Split into {len(chunks)} chunks", chunks=len(chunks)))
        logger.info(f"✂️ Split {source.id} into {len(chunks)} chunks")

        # 3. Resume or clean up after earlier runs
        batch_size = self.embedder.batch_size
        fingerprint = chunk_fingerprint(chunks, options, batch_size)
        checkpoint = source.checkpoint
        resumable = (
            resume
            and not purge_existing
            and checkpoint is not None
            and checkpoint.fingerprint == fingerprint
            and checkpoint.chunk_count == len(chunks)
            and checkpoint.batch_size == batch_size
        )
        if resumable:
            start_batch = checkpoint.batches_completed
            vector_ids = list(checkpoint.vector_ids)
            logger.info(f"⏩ Resuming {source.id} after batch {start_batch}")
            await self._discard_uncommitted(source, start_batch * batch_size, abort_signal)
            await self._emit(progress, ProgressEvent(message=f"Resuming after batch {start_batch}"))
        else:
            if purge_existing or checkpoint is not None or source.status != SourceStatus.UPLOADED:
                await self._purge_artifacts(source, abort_signal)
            start_batch = 0
            vector_ids = []

        # 4. Embed and write, one batch at a time
        batches = self.embedder.batches(chunks)
        total = len(batches)
        inserted = 0
        for number in range(start_batch, total):
            texts = batches[number]
            offset = number * batch_size
            vectors = await self.embedder.embed_batch(
                texts,
                abort_signal=abort_signal,
                label=f"embed batch {number + 1}/{total}",
            )

            rows = []
            for i, text in enumerate(texts):
                chunk_id = str(uuid.uuid4())
                rows.append(
                    DocumentChunk(
                        id=chunk_id,
                        source_id=source.id,
                        agent_id=source.agent_id,
                        text=text,
                        chunk_index=offset + i,
                        vector_id=chunk_id,
                    )
                )
            await self.chunk_writer.write(rows, abort_signal)
            written = await self.vector_writer.write(
                source.agent_id, rows, vectors, source.file_name, abort_signal
            )
            vector_ids.extend(written)
            inserted += len(written)

            checkpoint = IngestionCheckpoint(
                fingerprint=fingerprint,
                chunk_count=len(chunks),
                batch_size=batch_size,
                batches_completed=number + 1,
                vector_ids=list(vector_ids),
            )
            await self.store.update_source(source.id, {"checkpoint": checkpoint.model_dump()})

            await self._emit(
                progress,
                ProgressEvent(
                    message=f"Embedded batch {number + 1}/{total}",
                    progress=round((number + 1) / total * 100, 2),
                    batch=number + 1,
                    total_batches=total,
                ),
            )

        # 5. Status and vector ids land together
        ensure_transition(SourceStatus.PARSED, SourceStatus.INDEXED)
        await self.store.update_source(
            source.id,
            {
                "status": SourceStatus.INDEXED,
                "vector_ids": vector_ids,
                "progress": 100,
                "checkpoint": None,
            },
        )
        await self._emit(progress, ProgressEvent(message=f"Inserted {len(vector_ids)} vectors", progress=100))
        logger.info(f"🎉 Indexed knowledge source {source.id}: {len(chunks)} chunks")

        return IngestionResult(
            source_id=source.id,
            chunks_processed=len(chunks),
            vectors_inserted=inserted,
            batches_skipped=start_batch,
        )

    async def _purge_artifacts(self, source: KnowledgeSource, abort_signal: AbortSignal | None) -> None:
        """Delete vectors and chunk rows written by earlier runs of this source."""
        ids = list(source.vector_ids)
        if source.checkpoint:
            ids.extend(source.checkpoint.vector_ids)
        ids.extend(
            await with_retry(
                lambda: self.store.list_chunk_vector_ids(source.id),
                retries=self.retries,
                base_delay_ms=self.base_delay_ms,
                abort_signal=abort_signal,
                label="list chunk vector ids",
            )
        )
        ids = list(dict.fromkeys(ids))

        if ids:
            logger.info(f"🧹 Removing {len(ids)} previous vectors for {source.id}")
            await self._delete_vectors(ids, abort_signal)

        await with_retry(
            lambda: self.store.delete_chunks(source.id),
            retries=self.retries,
            base_delay_ms=self.base_delay_ms,
            abort_signal=abort_signal,
            label="delete previous chunks",
        )
        await self.store.update_source(source.id, {"checkpoint": None, "vector_ids": []})

    async def _discard_uncommitted(
        self, source: KnowledgeSource, from_index: int, abort_signal: AbortSignal | None
    ) -> None:
        """Delete rows and vectors of a batch that failed before its checkpoint was saved."""
        rows = await with_retry(
            lambda: self.store.list_chunks(source.id),
            retries=self.retries,
            base_delay_ms=self.base_delay_ms,
            abort_signal=abort_signal,
            label="list chunks",
        )
        stray = [row for row in rows if row.chunk_index >= from_index]
        if not stray:
            return

        logger.info(f"🧹 Discarding {len(stray)} uncommitted chunks of {source.id}")
        ids = [row.vector_id for row in stray if row.vector_id]
        if ids:
            await self._delete_vectors(ids, abort_signal)
        await with_retry(
            lambda: self.store.delete_chunks(source.id, from_index=from_index),
            retries=self.retries,
            base_delay_ms=self.base_delay_ms,
            abort_signal=abort_signal,
            label="delete uncommitted chunks",
        )

    async def _delete_vectors(self, ids: list[str], abort_signal: AbortSignal | None) -> None:
        mutation_ids, _ = await delete_vector_ids(
            self.index,
            ids,
            batch_size=self.delete_batch_size,
            retries=self.retries,
            base_delay_ms=self.base_delay_ms,
            abort_signal=abort_signal,
        )
        if mutation_ids:
            try:
                await wait_for_mutation(
                    self.index,
                    mutation_ids[-1],
                    max_wait=self.mutation_wait,
                    poll_interval=self.mutation_poll_interval,
                )
            except TimeoutError as e:
                logger.warning(f"⚠️ {e}; continuing")

    async def _record_failure(
        self, source_id: str, error: Exception, progress: ProgressCallback | None
    ) -> None:
        message = str(error) or type(error).__name__
        try:
            current = await self.store.get_source(source_id)
            errors = [*(current.parser_errors if current else []), message]
            await self.store.update_source(
                source_id,
                {"status": SourceStatus.FAILED, "parser_errors": errors, "vector_ids": []},
            )
        except Exception as e:
            logger.error(f"❌ Could not record failure on {source_id}: {e}")
        await self._emit(progress, ProgressEvent(message="Ingestion failed", error=message))

    async def _release_lock(self, source_id: str, run_id: str) -> None:
        try:
            await self.store.release_lock(source_id, run_id)
        except Exception as e:
            logger.warning(f"⚠️ Could not release lock on {source_id}: {e}")

    @staticmethod
    async def _emit(progress: ProgressCallback | None, event: ProgressEvent) -> None:
        if progress is None:
            return
        try:
            await progress(event)
        except Exception as e:
            logger.warning(f"⚠️ Progress sink failed: {e}")
