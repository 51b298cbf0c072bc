"""
Knowledge feature: write embedded chunks to the chunk store and the vector index.
"""

import asyncio
import json
import logging

from app.core.exceptions import VectorMetadataTooLargeError
from app.core.retry import AbortSignal, with_retry
from app.features.knowledge.repository import RelationalStore
from app.features.knowledge.schemas import DocumentChunk, VectorRecord
from app.features.knowledge.vector_index import VectorIndex

logger = logging.getLogger(__name__)

CHUNK_ROW_FIELDS = len(DocumentChunk.model_fields)  # 7 bound values per row


def chunk_insert_batch_size(
    fields_per_row: int = CHUNK_ROW_FIELDS,
    parameter_ceiling: int = 100,
    max_rows: int = 10,
) -> int:
    """Rows per insert so that `rows * fields_per_row` stays under the ceiling."""
    return max(1, min(max_rows, parameter_ceiling // fields_per_row))


def metadata_size(metadata: dict) -> int:
    return len(json.dumps(metadata, separators=(",", ":")).encode("utf-8"))


class ChunkStoreWriter:
    """Insert chunk rows in parameter-limited sub-batches, written concurrently."""

    def __init__(
        self,
        store: RelationalStore,
        *,
        batch_size: int | None = None,
        retries: int = 3,
        base_delay_ms: int = 400,
    ):
        self.store = store
        self.batch_size = batch_size or chunk_insert_batch_size()
        self.retries = retries
        self.base_delay_ms = base_delay_ms

    async def write(
        self,
        chunks: list[DocumentChunk],
        abort_signal: AbortSignal | None = None,
    ) -> int:
        """Insert every row; returns once all sub-batches have committed."""
        sub_batches = [
            chunks[i:i + self.batch_size] for i in range(0, len(chunks), self.batch_size)
        ]
        await asyncio.gather(
            *(self._insert(rows, abort_signal) for rows in sub_batches)
        )
        return len(chunks)

    async def _insert(self, rows: list[DocumentChunk], abort_signal: AbortSignal | None):
        first = rows[0].chunk_index
        await with_retry(
            lambda: self.store.insert_chunks(rows),
            retries=self.retries,
            base_delay_ms=self.base_delay_ms,
            abort_signal=abort_signal,
            label=f"insert chunks {first}-{first + len(rows) - 1}",
        )


class VectorIndexWriter:
    """Insert chunk vectors into the owning agent's namespace."""

    def __init__(
        self,
        index: VectorIndex,
        *,
        metadata_limit: int = 2800,
        retries: int = 3,
        base_delay_ms: int = 400,
    ):
        self.index = index
        self.metadata_limit = metadata_limit
        self.retries = retries
        self.base_delay_ms = base_delay_ms

    def build_records(
        self,
        agent_id: str,
        chunks: list[DocumentChunk],
        vectors: list[list[float]],
        file_name: str | None = None,
    ) -> list[VectorRecord]:
        """Pair chunks with their vectors. Chunk text stays in the chunk store only.

        Raises:
            VectorMetadataTooLargeError: Metadata would not fit the index limit.
        """
        records = []
        for chunk, values in zip(chunks, vectors, strict=True):
            metadata = {
                "sourceId": chunk.source_id,
                "chunkId": chunk.id,
                "fileName": file_name or "",
            }
            size = metadata_size(metadata)
            if size > self.metadata_limit:
                raise VectorMetadataTooLargeError(size, self.metadata_limit)
            records.append(
                VectorRecord(
                    id=chunk.vector_id or chunk.id,
                    values=values,
                    namespace=agent_id,
                    metadata=metadata,
                )
            )
        return records

    async def write(
        self,
        agent_id: str,
        chunks: list[DocumentChunk],
        vectors: list[list[float]],
        file_name: str | None = None,
        abort_signal: AbortSignal | None = None,
    ) -> list[str]:
        """Insert the vectors and return their ids in chunk order."""
        records = self.build_records(agent_id, chunks, vectors, file_name)
        if not records:
            return []
        await with_retry(
            lambda: self.index.insert(records),
            retries=self.retries,
            base_delay_ms=self.base_delay_ms,
            abort_signal=abort_signal,
            label=f"insert {len(records)} vectors",
        )
        return [record.id for record in records]
