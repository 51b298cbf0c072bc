"""Shared fixtures: a fully wired pipeline over in-memory stores."""

import pytest

from app.features.knowledge.deletion import KnowledgeSourceDeleter
from app.features.knowledge.service import KnowledgeService
from fakes import (
    DIMENSIONS,
    FakeBlobStore,
    FakeConverter,
    FakeEmbeddingProvider,
    FakeStore,
    FakeVectorIndex,
    build_pipeline,
    make_source,
)


@pytest.fixture
def source():
    return make_source()


@pytest.fixture
def store(source):
    return FakeStore(source)


@pytest.fixture
def blob_store(source):
    return FakeBlobStore({source.storage_key: b"hello world"})


@pytest.fixture
def index():
    return FakeVectorIndex(dimensions=DIMENSIONS)


@pytest.fixture
def provider():
    return FakeEmbeddingProvider(dimensions=DIMENSIONS)


@pytest.fixture
def converter():
    return FakeConverter()


@pytest.fixture
def pipeline(store, index, provider, converter):
    return build_pipeline(store, index, provider, converter)


@pytest.fixture
def deleter(store, blob_store, index):
    return KnowledgeSourceDeleter(store, blob_store, index, retries=0, base_delay_ms=0)


@pytest.fixture
def service(store, blob_store, index, pipeline, deleter):
    return KnowledgeService(
        store, blob_store, index, pipeline, deleter, bucket="test-bucket", index_cache_ttl=60
    )
