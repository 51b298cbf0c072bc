"""
Unit tests for IngestionPipeline: happy path, partial failure, resume, reindex and locking.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from app.core.exceptions import (
    EmptyDocumentError,
    IngestionCancelledError,
    SourceLockedError,
    SourceNotFoundError,
)
from app.core.retry import AbortSignal
from app.features.knowledge.pipeline import chunk_fingerprint
from app.features.knowledge.schemas import SourceStatus
from fakes import (
    TEST_CHUNKING,
    FakeEmbeddingProvider,
    FakeStore,
    FakeVectorIndex,
    build_pipeline,
    document_with_chunks,
    make_source,
)


class FailingInsertIndex(FakeVectorIndex):
    """Raises on the `fail_on`-th insert (1-based), after the chunk rows are written."""

    def __init__(self, fail_on: int):
        super().__init__()
        self.fail_on = fail_on
        self.inserts = 0

    async def insert(self, records):
        self.inserts += 1
        if self.inserts == self.fail_on:
            raise ValueError("index write failed")
        return await super().insert(records)


class DelayedLockStore(FakeStore):
    """Holds the first `try_lock` call until `release` is set."""

    def __init__(self, *sources):
        super().__init__(*sources)
        self.release = asyncio.Event()
        self.lock_calls = 0

    async def try_lock(self, source_id, run_id, stale_before):
        self.lock_calls += 1
        if self.lock_calls == 1:
            await self.release.wait()
        return await super().try_lock(source_id, run_id, stale_before)


def collector():
    events = []

    async def sink(event):
        events.append(event)

    return events, sink


# -- Happy path --

class TestIngestion:
    async def test_indexes_source(self, pipeline, store, index):
        result = await pipeline.process("src-1", document_with_chunks(7))

        source = store.sources["src-1"]
        assert result.success
        assert result.chunks_processed == 7
        assert result.vectors_inserted == 7
        assert source.status == SourceStatus.INDEXED
        assert source.progress == 100
        assert source.checkpoint is None
        assert sorted(source.vector_ids) == sorted(index.vectors)
        assert len(store.chunks) == 7

    async def test_status_sequence_and_invariant(self, pipeline, store):
        await pipeline.process("src-1", document_with_chunks(4))

        assert store.status_history["src-1"] == [
            SourceStatus.UPLOADED,
            SourceStatus.PARSED,
            SourceStatus.INDEXED,
        ]
        assert store.invariant_violations == []

    async def test_chunk_rows_are_ordered_and_linked_to_vectors(self, pipeline, store, index):
        await pipeline.process("src-1", document_with_chunks(5))

        rows = await store.list_chunks("src-1")
        assert [row.chunk_index for row in rows] == [0, 1, 2, 3, 4]
        for row in rows:
            record = index.vectors[row.vector_id]
            assert record.namespace == "agent-1"
            assert record.metadata["chunkId"] == row.id
            assert record.metadata["sourceId"] == "src-1"

    async def test_batches_embed_sequentially(self, pipeline, provider):
        await pipeline.process("src-1", document_with_chunks(7))

        assert [len(call) for call in provider.calls] == [3, 3, 1]
        assert provider.max_in_flight == 1

    async def test_lock_released_after_success(self, pipeline, store):
        await pipeline.process("src-1", document_with_chunks(2))
        assert store.sources["src-1"].locked_by is None

    async def test_progress_events(self, pipeline):
        events, sink = collector()

        await pipeline.process("src-1", document_with_chunks(7), progress=sink)

        assert [e.message for e in events] == [
            "Parsed document",
            "Split into 7 chunks",
            "Embedded batch 1/3",
            "Embedded batch 2/3",
            "Embedded batch 3/3",
            "Inserted 7 vectors",
        ]
        assert [e.progress for e in events[2:]] == [33.33, 66.67, 100.0, 100]

    async def test_failing_progress_sink_is_ignored(self, pipeline, store):
        async def sink(event):
            raise RuntimeError("socket closed")

        result = await pipeline.process("src-1", document_with_chunks(2), progress=sink)

        assert result.success
        assert store.sources["src-1"].status == SourceStatus.INDEXED

    async def test_converted_documents_are_chunked_as_markdown(self, store, index, provider, converter):
        store.sources["src-1"] = make_source(mime="application/pdf", file_name="report.pdf")
        pipeline = build_pipeline(store, index, provider, converter)

        result = await pipeline.process("src-1", b"%PDF-1.7")

        assert converter.calls == [("application/pdf", "report.pdf")]
        assert result.chunks_processed == 1

    async def test_already_indexed_is_skipped(self, index, provider):
        store = FakeStore(make_source(status=SourceStatus.INDEXED, vector_ids=["v1", "v2"]))
        pipeline = build_pipeline(store, index, provider)

        result = await pipeline.process("src-1", document_with_chunks(3))

        assert result.skipped
        assert result.chunks_processed == 2
        assert provider.calls == []
        assert store.status_history["src-1"] == [SourceStatus.INDEXED]


# -- Failure handling --

class TestIngestionFailure:
    async def test_partial_failure_keeps_committed_batch(self, index):
        store = FakeStore(make_source())
        provider = FakeEmbeddingProvider(failures={2: ValueError("quota exceeded")})
        pipeline = build_pipeline(store, index, provider, batch_size=3)

        with pytest.raises(ValueError, match="quota exceeded"):
            await pipeline.process("src-1", document_with_chunks(7))

        source = store.sources["src-1"]
        assert source.status == SourceStatus.FAILED
        assert source.vector_ids == []
        assert source.parser_errors == ["quota exceeded"]
        assert len(store.chunks) == 3
        assert len(index.vectors) == 3
        assert source.checkpoint.batches_completed == 1
        assert store.invariant_violations == []

    async def test_failure_notifies_progress_sink(self, index):
        store = FakeStore(make_source())
        provider = FakeEmbeddingProvider(failures={1: ValueError("bad request")})
        pipeline = build_pipeline(store, index, provider)
        events, sink = collector()

        with pytest.raises(ValueError):
            await pipeline.process("src-1", document_with_chunks(2), progress=sink)

        assert events[-1].error == "bad request"
        assert store.sources["src-1"].locked_by is None

    async def test_errors_accumulate(self, index):
        store = FakeStore(make_source(parser_errors=["earlier failure"]))
        pipeline = build_pipeline(store, index, FakeEmbeddingProvider())

        with pytest.raises(EmptyDocumentError):
            await pipeline.process("src-1", b"")

        source = store.sources["src-1"]
        assert source.status == SourceStatus.FAILED
        assert source.parser_errors[0] == "earlier failure"
        assert "No text could be extracted" in source.parser_errors[1]

    async def test_cancelled_before_start(self, pipeline, store, provider):
        signal = AbortSignal()
        signal.abort("shutdown")

        with pytest.raises(IngestionCancelledError):
            await pipeline.process("src-1", document_with_chunks(3), abort_signal=signal)

        assert provider.calls == []
        assert store.sources["src-1"].status == SourceStatus.FAILED

    async def test_missing_source(self, pipeline):
        with pytest.raises(SourceNotFoundError):
            await pipeline.process("nope", b"text")


# -- Resume --

class TestResume:
    async def test_resumes_after_last_committed_batch(self, index):
        store = FakeStore(make_source())
        provider = FakeEmbeddingProvider(failures={2: ValueError("quota exceeded")})
        pipeline = build_pipeline(store, index, provider, batch_size=3)
        content = document_with_chunks(7)

        with pytest.raises(ValueError):
            await pipeline.process("src-1", content)
        result = await pipeline.process("src-1", content)

        source = store.sources["src-1"]
        assert result.batches_skipped == 1
        assert result.vectors_inserted == 4
        assert source.status == SourceStatus.INDEXED
        assert len(source.vector_ids) == 7
        assert len(store.chunks) == 7
        assert len(index.vectors) == 7
        # first run: batch 1 ok, batch 2 failed; second run: batches 2 and 3
        assert [len(call) for call in provider.calls] == [3, 3, 3, 1]

    async def test_changed_content_starts_over(self, index):
        store = FakeStore(make_source())
        provider = FakeEmbeddingProvider(failures={2: ValueError("quota exceeded")})
        pipeline = build_pipeline(store, index, provider, batch_size=3)

        with pytest.raises(ValueError):
            await pipeline.process("src-1", document_with_chunks(7))
        result = await pipeline.process("src-1", document_with_chunks(4))

        assert result.batches_skipped == 0
        assert len(store.chunks) == 4
        assert len(index.vectors) == 4
        assert sorted(index.vectors) == sorted(store.sources["src-1"].vector_ids)

    async def test_resume_disabled_starts_over(self, index):
        store = FakeStore(make_source())
        provider = FakeEmbeddingProvider(failures={2: ValueError("quota exceeded")})
        pipeline = build_pipeline(store, index, provider, batch_size=3)
        content = document_with_chunks(7)

        with pytest.raises(ValueError):
            await pipeline.process("src-1", content)
        result = await pipeline.process("src-1", content, resume=False)

        assert result.batches_skipped == 0
        assert len(store.chunks) == 7
        assert len(index.vectors) == 7

    async def test_rows_of_interrupted_batch_are_replaced(self):
        store = FakeStore(make_source())
        index = FailingInsertIndex(fail_on=2)
        pipeline = build_pipeline(store, index, FakeEmbeddingProvider(), batch_size=3)
        content = document_with_chunks(7)

        with pytest.raises(ValueError, match="index write failed"):
            await pipeline.process("src-1", content)
        assert len(store.chunks) == 6

        result = await pipeline.process("src-1", content)

        rows = await store.list_chunks("src-1")
        assert result.batches_skipped == 1
        assert [row.chunk_index for row in rows] == list(range(7))
        assert all(row.vector_id in index.vectors for row in rows)
        assert len(index.vectors) == 7
        assert sorted(store.sources["src-1"].vector_ids) == sorted(index.vectors)

    def test_fingerprint_depends_on_params_and_text(self):
        base = chunk_fingerprint(["a", "b"], TEST_CHUNKING, 3)
        assert base == chunk_fingerprint(["a", "b"], TEST_CHUNKING, 3)
        assert base != chunk_fingerprint(["a", "c"], TEST_CHUNKING, 3)
        assert base != chunk_fingerprint(["a", "b"], TEST_CHUNKING, 4)
        assert base != chunk_fingerprint(["ab"], TEST_CHUNKING, 3)


# -- Reindex --

class TestReindex:
    async def test_reindex_replaces_chunks_and_vectors(self, pipeline, store, index):
        await pipeline.process("src-1", document_with_chunks(5))
        old_chunks = set(store.chunks)
        old_vectors = set(index.vectors)

        result = await pipeline.process(
            "src-1", document_with_chunks(3), resume=False, purge_existing=True
        )

        source = store.sources["src-1"]
        assert result.chunks_processed == 3
        assert source.status == SourceStatus.INDEXED
        assert len(store.chunks) == 3
        assert len(index.vectors) == 3
        assert old_chunks.isdisjoint(store.chunks)
        assert old_vectors.isdisjoint(index.vectors)
        assert store.invariant_violations == []

    async def test_reindex_status_sequence(self, pipeline, store):
        await pipeline.process("src-1", document_with_chunks(2))
        await pipeline.process("src-1", document_with_chunks(2), resume=False, purge_existing=True)

        assert store.status_history["src-1"] == [
            SourceStatus.UPLOADED,
            SourceStatus.PARSED,
            SourceStatus.INDEXED,
            SourceStatus.PARSED,
            SourceStatus.INDEXED,
        ]

    async def test_unconfirmed_delete_mutation_does_not_block(self, pipeline, store, index):
        await pipeline.process("src-1", document_with_chunks(2))
        index.describe_error = RuntimeError("info unavailable")

        result = await pipeline.process(
            "src-1", document_with_chunks(2), resume=False, purge_existing=True
        )

        assert result.success
        assert len(index.vectors) == 2

    async def test_failed_vector_delete_fails_reindex(self, pipeline, store, index):
        await pipeline.process("src-1", document_with_chunks(2))
        index.delete_error = ValueError("index unavailable")

        with pytest.raises(ValueError):
            await pipeline.process(
                "src-1", document_with_chunks(2), resume=False, purge_existing=True
            )

        assert store.sources["src-1"].status == SourceStatus.FAILED


# -- Locking --

class TestLocking:
    async def test_held_lock_rejects_second_run(self, index, provider):
        store = FakeStore(make_source(locked_by="other-run", locked_at=datetime.now(timezone.utc)))
        pipeline = build_pipeline(store, index, provider)

        with pytest.raises(SourceLockedError):
            await pipeline.process("src-1", document_with_chunks(2))

        source = store.sources["src-1"]
        assert source.status == SourceStatus.UPLOADED
        assert source.locked_by == "other-run"
        assert provider.calls == []

    async def test_stale_lock_is_taken_over(self, index, provider):
        stale = datetime.now(timezone.utc) - timedelta(hours=2)
        store = FakeStore(make_source(locked_by="crashed-run", locked_at=stale))
        pipeline = build_pipeline(store, index, provider)

        result = await pipeline.process("src-1", document_with_chunks(2))

        assert result.success
        assert store.sources["src-1"].locked_by is None

    async def test_run_locking_after_another_finished_sees_its_result(self, index, provider):
        store = DelayedLockStore(make_source())
        pipeline = build_pipeline(store, index, provider)
        content = document_with_chunks(4)

        # late reads the row as `uploaded`, then waits for the lock
        late = asyncio.create_task(pipeline.process("src-1", content))
        await asyncio.sleep(0)
        first = await pipeline.process("src-1", content)
        store.release.set()
        second = await late

        assert first.chunks_processed == 4
        assert second.skipped
        assert len(store.chunks) == 4
        assert len(index.vectors) == 4
        assert sorted(store.sources["src-1"].vector_ids) == sorted(index.vectors)
        assert store.sources["src-1"].locked_by is None

    async def test_reindex_locking_after_another_run_purges_its_output(self, index, provider):
        store = DelayedLockStore(make_source())
        pipeline = build_pipeline(store, index, provider)
        content = document_with_chunks(4)

        late = asyncio.create_task(
            pipeline.process("src-1", content, resume=False, purge_existing=True)
        )
        await asyncio.sleep(0)
        await pipeline.process("src-1", content)
        store.release.set()
        await late

        assert store.sources["src-1"].status == SourceStatus.INDEXED
        assert len(store.chunks) == 4
        assert len(index.vectors) == 4
        assert store.invariant_violations == []
