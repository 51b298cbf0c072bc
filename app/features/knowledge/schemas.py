"""
Knowledge feature: data shapes for knowledge sources, chunks and pipeline events.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.core.exceptions import InvalidStatusTransitionError


class SourceStatus(str, Enum):
    UPLOADED = "uploaded"
    PARSED = "parsed"
    INDEXED = "indexed"
    FAILED = "failed"


# Nothing ever moves back to UPLOADED once a source has left it.
ALLOWED_TRANSITIONS: dict[SourceStatus, frozenset[SourceStatus]] = {
    SourceStatus.UPLOADED: frozenset({SourceStatus.PARSED, SourceStatus.FAILED}),
    SourceStatus.PARSED: frozenset({SourceStatus.PARSED, SourceStatus.INDEXED, SourceStatus.FAILED}),
    SourceStatus.INDEXED: frozenset({SourceStatus.PARSED, SourceStatus.FAILED}),
    SourceStatus.FAILED: frozenset({SourceStatus.PARSED, SourceStatus.FAILED}),
}


def can_transition(current: SourceStatus, target: SourceStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def ensure_transition(current: SourceStatus, target: SourceStatus) -> None:
    """Raise InvalidStatusTransitionError unless `current -> target` is allowed."""
    if not can_transition(current, target):
        raise InvalidStatusTransitionError(current.value, target.value)


class IngestionCheckpoint(BaseModel):
    """Saga ledger: what a run has already committed to the chunk and vector stores."""
    fingerprint: str
    chunk_count: int
    batch_size: int
    batches_completed: int = 0
    vector_ids: list[str] = Field(default_factory=list)


class KnowledgeSource(BaseModel):
    id: str
    agent_id: str
    type: str = "file"
    bucket: Optional[str] = None
    storage_key: Optional[str] = None
    file_name: Optional[str] = None
    mime: Optional[str] = None
    bytes: Optional[int] = None
    checksum: Optional[str] = None
    status: SourceStatus = SourceStatus.UPLOADED
    parser_errors: list[str] = Field(default_factory=list)
    vector_ids: list[str] = Field(default_factory=list)
    progress: int = 0
    checkpoint: Optional[IngestionCheckpoint] = None
    locked_by: Optional[str] = None
    locked_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True, use_enum_values=False)

    @model_validator(mode="before")
    @classmethod
    def _nulls_to_empty_lists(cls, data: Any) -> Any:
        # Nullable array columns come back as None from PostgREST
        if isinstance(data, dict):
            for key in ("parser_errors", "vector_ids"):
                if key in data and data[key] is None:
                    data = {**data, key: []}
        return data


class DocumentChunk(BaseModel):
    id: str
    source_id: str
    agent_id: str
    text: str
    chunk_index: int
    vector_id: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ParsedDocument(BaseModel):
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class ChunkingOptions(BaseModel):
    chunk_size: int = Field(default=1024, ge=1)
    chunk_overlap: int = Field(default=200, ge=0)
    min_chunk_size: int = Field(default=100, ge=0)
    content_type: Literal["text", "markdown"] = "text"

    @model_validator(mode="after")
    def _check_bounds(self) -> "ChunkingOptions":
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        if self.min_chunk_size * 2 > self.chunk_size:
            raise ValueError("min_chunk_size must be at most half of chunk_size")
        return self


class VectorRecord(BaseModel):
    id: str
    values: list[float]
    namespace: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class MutationResult(BaseModel):
    mutation_id: Optional[str] = None


class IndexDescription(BaseModel):
    dimensions: int
    vector_count: int
    processed_up_to_mutation: Optional[str] = None


class ProgressEvent(BaseModel):
    """Notification pushed to the optional progress sink."""
    message: Optional[str] = None
    progress: Optional[float] = None
    error: Optional[str] = None

    model_config = ConfigDict(extra="allow")


ProgressCallback = Callable[[ProgressEvent], Awaitable[None]]


class IngestionResult(BaseModel):
    source_id: str
    success: bool = True
    chunks_processed: int = 0
    vectors_inserted: int = 0
    batches_skipped: int = 0
    skipped: bool = False  # source was already indexed


class DeletionReport(BaseModel):
    source_id: str
    vectors_requested: int = 0
    vector_batches_failed: int = 0
    blob_deleted: bool = False
    mutation_ids: list[str] = Field(default_factory=list)


class ReindexOutcome(BaseModel):
    source_id: str
    success: bool
    error: Optional[str] = None


class BulkReindexResult(BaseModel):
    total: int
    successful: int
    failed: int
    results: list[ReindexOutcome]


# ── API request / response shapes ────────────────────

class KnowledgeSourceResponse(BaseModel):
    id: str
    agent_id: str
    file_name: Optional[str] = None
    mime: Optional[str] = None
    bytes: Optional[int] = None
    status: SourceStatus
    progress: int = 0
    parser_errors: list[str] = Field(default_factory=list)
    vector_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_source(cls, source: KnowledgeSource) -> "KnowledgeSourceResponse":
        return cls(
            id=source.id,
            agent_id=source.agent_id,
            file_name=source.file_name,
            mime=source.mime,
            bytes=source.bytes,
            status=source.status,
            progress=source.progress,
            parser_errors=source.parser_errors,
            vector_count=len(source.vector_ids),
            created_at=source.created_at,
            updated_at=source.updated_at,
        )


class BulkReindexRequest(BaseModel):
    source_ids: list[str] = Field(min_length=1)


class HealthIssue(BaseModel):
    type: Literal["error", "warning"]
    message: str
