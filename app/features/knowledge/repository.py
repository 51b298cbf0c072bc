"""
Knowledge feature: relational metadata store.

`SupabaseKnowledgeRepository` keeps knowledge sources and their chunk rows in
two Postgres tables reached through PostgREST. `document_chunks.source_id`
references `knowledge_sources.id` with ON DELETE CASCADE.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Protocol

from pydantic_core import to_jsonable_python
from supabase import AsyncClient

from app.features.knowledge.schemas import DocumentChunk, KnowledgeSource, SourceStatus

logger = logging.getLogger(__name__)


class RelationalStore(Protocol):
    async def create_source(self, source: KnowledgeSource) -> KnowledgeSource: ...

    async def get_source(self, source_id: str) -> KnowledgeSource | None: ...

    async def list_sources(
        self, agent_id: str | None = None, status: SourceStatus | None = None
    ) -> list[KnowledgeSource]: ...

    async def update_source(self, source_id: str, changes: dict[str, Any]) -> None: ...

    async def try_lock(self, source_id: str, run_id: str, stale_before: datetime) -> bool: ...

    async def release_lock(self, source_id: str, run_id: str) -> None: ...

    async def delete_source(self, source_id: str) -> None: ...

    async def insert_chunks(self, chunks: list[DocumentChunk]) -> None: ...

    async def list_chunks(self, source_id: str, limit: int | None = None) -> list[DocumentChunk]: ...

    async def list_chunk_vector_ids(self, source_id: str) -> list[str]: ...

    async def count_chunks(self, source_id: str) -> int: ...

    async def delete_chunks(self, source_id: str, from_index: int | None = None) -> None: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SupabaseKnowledgeRepository:
    """RelationalStore over the Supabase async client."""

    def __init__(
        self,
        db: AsyncClient,
        sources_table: str = "knowledge_sources",
        chunks_table: str = "document_chunks",
    ):
        self.db = db
        self.sources_table = sources_table
        self.chunks_table = chunks_table

    # ── Knowledge sources ────────────────────────────────

    async def create_source(self, source: KnowledgeSource) -> KnowledgeSource:
        row = source.model_dump(mode="json", exclude_none=True)
        result = await self.db.table(self.sources_table).insert(row).execute()
        return KnowledgeSource.model_validate(result.data[0]) if result.data else source

    async def get_source(self, source_id: str) -> KnowledgeSource | None:
        result = await (
            self.db.table(self.sources_table)
            .select("*")
            .eq("id", source_id)
            .limit(1)
            .execute()
        )
        return KnowledgeSource.model_validate(result.data[0]) if result.data else None

    async def list_sources(
        self, agent_id: str | None = None, status: SourceStatus | None = None
    ) -> list[KnowledgeSource]:
        query = self.db.table(self.sources_table).select("*")
        if agent_id:
            query = query.eq("agent_id", agent_id)
        if status:
            query = query.eq("status", SourceStatus(status).value)
        result = await query.order("created_at", desc=True).execute()
        return [KnowledgeSource.model_validate(row) for row in result.data or []]

    async def update_source(self, source_id: str, changes: dict[str, Any]) -> None:
        payload = to_jsonable_python({**changes, "updated_at": _utcnow()})
        await self.db.table(self.sources_table).update(payload).eq("id", source_id).execute()

    async def try_lock(self, source_id: str, run_id: str, stale_before: datetime) -> bool:
        """Take the per-source advisory lock with a single conditional update.

        Succeeds only when nobody holds the lock or the holder's lock is older
        than `stale_before`.
        """
        result = await (
            self.db.table(self.sources_table)
            .update({"locked_by": run_id, "locked_at": _utcnow().isoformat()})
            .eq("id", source_id)
            .or_(f"locked_by.is.null,locked_at.lt.{stale_before.isoformat()}")
            .execute()
        )
        return bool(result.data)

    async def release_lock(self, source_id: str, run_id: str) -> None:
        await (
            self.db.table(self.sources_table)
            .update({"locked_by": None, "locked_at": None})
            .eq("id", source_id)
            .eq("locked_by", run_id)
            .execute()
        )

    async def delete_source(self, source_id: str) -> None:
        await self.db.table(self.sources_table).delete().eq("id", source_id).execute()

    # ── Document chunks ──────────────────────────────────

    async def insert_chunks(self, chunks: list[DocumentChunk]) -> None:
        if not chunks:
            return
        rows = [chunk.model_dump(mode="json", exclude_none=True) for chunk in chunks]
        await self.db.table(self.chunks_table).insert(rows).execute()

    async def list_chunks(self, source_id: str, limit: int | None = None) -> list[DocumentChunk]:
        query = (
            self.db.table(self.chunks_table)
            .select("*")
            .eq("source_id", source_id)
            .order("chunk_index")
        )
        if limit is not None:
            query = query.limit(limit)
        result = await query.execute()
        return [DocumentChunk.model_validate(row) for row in result.data or []]

    async def list_chunk_vector_ids(self, source_id: str) -> list[str]:
        result = await (
            self.db.table(self.chunks_table)
            .select("vector_id")
            .eq("source_id", source_id)
            .execute()
        )
        return [row["vector_id"] for row in result.data or [] if row.get("vector_id")]

    async def count_chunks(self, source_id: str) -> int:
        result = await (
            self.db.table(self.chunks_table)
            .select("id", count="exact")
            .eq("source_id", source_id)
            .limit(1)
            .execute()
        )
        return result.count or 0

    async def delete_chunks(self, source_id: str, from_index: int | None = None) -> None:
        """Delete the source's chunk rows, or only those at `chunk_index >= from_index`."""
        query = self.db.table(self.chunks_table).delete().eq("source_id", source_id)
        if from_index is not None:
            query = query.gte("chunk_index", from_index)
        await query.execute()
