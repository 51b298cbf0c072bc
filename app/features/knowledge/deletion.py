"""
Knowledge feature: remove a knowledge source and everything derived from it.

Order: vectors, then the blob, then the source row (which cascades to its
chunk rows). Only the row delete may fail the operation; vector and blob
failures are logged so the user's delete always goes through.
"""

import asyncio
import logging

from app.core.exceptions import SourceNotFoundError
from app.core.retry import AbortSignal, with_retry
from app.features.knowledge.repository import RelationalStore
from app.features.knowledge.schemas import DeletionReport, KnowledgeSource
from app.features.knowledge.storage import BlobStore
from app.features.knowledge.vector_index import VectorIndex

logger = logging.getLogger(__name__)


async def delete_vector_ids(
    index: VectorIndex,
    ids: list[str],
    *,
    batch_size: int = 100,
    retries: int = 3,
    base_delay_ms: int = 400,
    abort_signal: AbortSignal | None = None,
    tolerate_failures: bool = False,
) -> tuple[list[str], int]:
    """Delete `ids` from the index in concurrent batches.

    Returns:
        (mutation ids, number of failed batches). Failed batches are only
        counted when `tolerate_failures` is set; otherwise the first failure
        is raised once every batch has finished.
    """
    batches = [ids[i:i + batch_size] for i in range(0, len(ids), batch_size)]

    async def _delete(number: int, batch: list[str]):
        return await with_retry(
            lambda: index.delete_by_ids(batch),
            retries=retries,
            base_delay_ms=base_delay_ms,
            abort_signal=abort_signal,
            label=f"delete vectors batch {number}/{len(batches)}",
        )

    results = await asyncio.gather(
        *(_delete(n + 1, batch) for n, batch in enumerate(batches)),
        return_exceptions=True,
    )

    mutation_ids: list[str] = []
    failed = 0
    for number, result in enumerate(results, start=1):
        if isinstance(result, BaseException):
            if not tolerate_failures or not isinstance(result, Exception):
                raise result
            failed += 1
            logger.warning(f"⚠️ Failed to delete vector batch {number}/{len(batches)}: {result}")
        elif result.mutation_id:
            mutation_ids.append(result.mutation_id)
    return mutation_ids, failed


class KnowledgeSourceDeleter:
    def __init__(
        self,
        store: RelationalStore,
        blob_store: BlobStore,
        index: VectorIndex,
        *,
        batch_size: int = 100,
        retries: int = 3,
        base_delay_ms: int = 400,
    ):
        self.store = store
        self.blob_store = blob_store
        self.index = index
        self.batch_size = batch_size
        self.retries = retries
        self.base_delay_ms = base_delay_ms

    async def delete(self, source_id: str) -> DeletionReport:
        """Delete a knowledge source with best-effort cleanup of its vectors and blob.

        Raises:
            SourceNotFoundError: No such source.
            Exception: Whatever the final row delete raised.
        """
        source = await self.store.get_source(source_id)
        if source is None:
            raise SourceNotFoundError(source_id)

        logger.info(f"🗑️ Deleting knowledge source {source_id}")
        vector_ids = await self._collect_vector_ids(source)
        report = DeletionReport(source_id=source_id, vectors_requested=len(vector_ids))

        if vector_ids:
            report.mutation_ids, report.vector_batches_failed = await delete_vector_ids(
                self.index,
                vector_ids,
                batch_size=self.batch_size,
                retries=self.retries,
                base_delay_ms=self.base_delay_ms,
                tolerate_failures=True,
            )

        if source.storage_key:
            try:
                await self.blob_store.delete(source.storage_key)
                report.blob_deleted = True
                logger.info(f"✅ Removed blob {source.storage_key}")
            except Exception as e:
                logger.warning(f"⚠️ Could not remove blob {source.storage_key}: {e}")

        # CASCADE removes document_chunks
        await self.store.delete_source(source_id)
        logger.info(
            f"✅ Deleted knowledge source {source_id} "
            f"({report.vectors_requested} vectors, {report.vector_batches_failed} failed batches)"
        )
        return report

    async def _collect_vector_ids(self, source: KnowledgeSource) -> list[str]:
        ids = list(source.vector_ids)
        if source.checkpoint:
            ids.extend(source.checkpoint.vector_ids)
        try:
            ids.extend(await self.store.list_chunk_vector_ids(source.id))
        except Exception as e:
            logger.warning(f"⚠️ Could not read chunk vector ids for {source.id}: {e}")
        return list(dict.fromkeys(ids))
