"""
Background entry points for knowledge ingestion.

  - run_index_task / run_reindex_task: FastAPI BackgroundTasks
    scheduled by the knowledge router.
  - handle_index_messages: queue consumer. Each message names a source; the
    stored file is fetched and run through the pipeline while progress is
    written back to the source row so clients can poll it.
"""

import logging
from typing import Any, Protocol

from pydantic import AliasChoices, BaseModel, Field, ValidationError

from app.core.exceptions import SourceFileMissingError, SourceLockedError
from app.features.knowledge.repository import RelationalStore
from app.features.knowledge.schemas import ProgressCallback, ProgressEvent, SourceStatus
from app.features.knowledge.service import KnowledgeService

logger = logging.getLogger(__name__)


class IndexMessage(BaseModel):
    source_id: str = Field(validation_alias=AliasChoices("source_id", "sourceId"))
    agent_id: str | None = Field(default=None, validation_alias=AliasChoices("agent_id", "agentId"))


class QueueMessage(Protocol):
    body: Any

    def ack(self) -> None: ...

    def retry(self) -> None: ...


# ── BackgroundTasks ──────────────────────────────────────

async def run_index_task(service: KnowledgeService, source_id: str) -> None:
    """Index a freshly uploaded source. Failures are already recorded on the source."""
    try:
        result = await service.index_source(source_id)
        logger.info(f"🎉 Background indexing finished for {source_id}: {result.chunks_processed} chunks")
    except Exception as e:
        logger.error(f"❌ Background indexing failed for {source_id}: {e}")


async def run_reindex_task(service: KnowledgeService, source_id: str) -> None:
    try:
        result = await service.reindex(source_id)
        logger.info(f"🎉 Background reindex finished for {source_id}: {result.chunks_processed} chunks")
    except Exception as e:
        logger.error(f"❌ Background reindex failed for {source_id}: {e}")


# ── Queue consumer ───────────────────────────────────────

def progress_writer(store: RelationalStore, source_id: str) -> ProgressCallback:
    """Progress sink that persists the percentage on the source row."""

    async def _write(event: ProgressEvent) -> None:
        if event.progress is not None:
            await store.update_source(source_id, {"progress": round(event.progress)})

    return _write


async def _mark_failed(store: RelationalStore, source_id: str, message: str) -> None:
    try:
        source = await store.get_source(source_id)
        errors = list(source.parser_errors) if source else []
        if not errors or errors[-1] != message:
            errors.append(message)
        await store.update_source(
            source_id,
            {"status": SourceStatus.FAILED, "parser_errors": errors, "vector_ids": []},
        )
    except Exception as e:
        logger.error(f"❌ [Queue] Failed to update status for source {source_id}: {e}")


async def handle_index_messages(messages: list[QueueMessage], service: KnowledgeService) -> None:
    """Process a batch of indexing messages.

    Missing sources and sources without a stored file are acked (retrying
    cannot help). Pipeline failures mark the source failed and the message is
    retried. A source locked by another run is retried without touching it.
    """
    store = service.store
    for message in messages:
        try:
            source_id = IndexMessage.model_validate(message.body).source_id
        except ValidationError as e:
            logger.error(f"❌ [Queue] Malformed message {message.body!r}, acking: {e}")
            message.ack()
            continue

        try:
            source = await store.get_source(source_id)
            if source is None:
                logger.error(f"❌ [Queue] Source {source_id} not found, acking to prevent retry")
                message.ack()
                continue

            try:
                content = await service.load_content(source)
            except SourceFileMissingError as e:
                logger.error(f"❌ [Queue] {e.message}")
                await _mark_failed(store, source_id, e.message)
                message.ack()
                continue

            logger.info(f"📨 [Queue] Processing source {source_id} ({source.file_name}, {len(content)} bytes)")
            await service.pipeline.process(
                source_id, content, progress=progress_writer(store, source_id)
            )
            logger.info(f"✅ [Queue] Indexed source {source_id}")
            message.ack()

        except SourceLockedError as e:
            logger.warning(f"⚠️ [Queue] {e.message}; retrying later")
            message.retry()
        except Exception as e:
            logger.error(f"❌ [Queue] Failed to process source {source_id}: {e}")
            await _mark_failed(store, source_id, str(e) or type(e).__name__)
            message.retry()
