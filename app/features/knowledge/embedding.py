"""
Knowledge feature: Embedding client.
Wraps the LangChain embedding model behind a narrow provider interface and
sends chunks to it in sequential, retried batches.
"""

import logging
from typing import Callable, Protocol

from langchain_core.embeddings import Embeddings

from app.core.exceptions import EmbeddingIntegrityError
from app.core.llm_provider import create_embeddings
from app.core.retry import AbortSignal, with_retry

logger = logging.getLogger(__name__)


class EmbeddingProvider(Protocol):
    async def embed(
        self,
        texts: list[str],
        model: str | None = None,
        abort_signal: AbortSignal | None = None,
    ) -> list[list[float]]: ...


class LangChainEmbeddingProvider:
    """EmbeddingProvider backed by LangChain embedding models.

    One model instance is created per model name and kept on this provider.
    """

    def __init__(
        self,
        factory: Callable[[str | None], Embeddings] = create_embeddings,
        dimensions: int | None = None,
    ):
        self._factory = factory
        self._models: dict[str | None, Embeddings] = {}
        self.dimensions = dimensions

    def get_model(self, model: str | None = None) -> Embeddings:
        """Get or create the embeddings model instance for `model`."""
        if model not in self._models:
            self._models[model] = self._factory(model)
        return self._models[model]

    async def embed(
        self,
        texts: list[str],
        model: str | None = None,
        abort_signal: AbortSignal | None = None,
    ) -> list[list[float]]:
        if abort_signal is not None:
            abort_signal.throw_if_aborted()

        vectors = await self.get_model(model).aembed_documents(texts)
        # Truncate to the desired dimensionality (Matryoshka models)
        if self.dimensions:
            return [list(v[:self.dimensions]) for v in vectors]
        return [list(v) for v in vectors]


def normalize_text(text: str) -> str:
    return text.replace("\n", " ")


class EmbeddingClient:
    """Batching, retrying and validating front for an EmbeddingProvider."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        *,
        model: str | None = None,
        dimensions: int = 1536,
        batch_size: int = 50,
        retries: int = 3,
        base_delay_ms: int = 400,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.provider = provider
        self.model = model
        self.dimensions = dimensions
        self.batch_size = batch_size
        self.retries = retries
        self.base_delay_ms = base_delay_ms

    def batches(self, texts: list[str]) -> list[list[str]]:
        return [texts[i:i + self.batch_size] for i in range(0, len(texts), self.batch_size)]

    async def embed(
        self,
        chunks: list[str],
        model: str | None = None,
        abort_signal: AbortSignal | None = None,
    ) -> list[list[float]]:
        """Embed every chunk, one provider call per batch, strictly in order.

        Args:
            chunks: Chunk texts.
            model: Model name overriding the client's default.
            abort_signal: Cancels the remaining batches.

        Returns:
            One vector per chunk, in chunk order.

        Raises:
            EmbeddingIntegrityError: Wrong vector count or dimension.
        """
        batches = self.batches(chunks)
        vectors: list[list[float]] = []
        for index, batch in enumerate(batches):
            logger.info(f"🔄 Embedding batch {index + 1}/{len(batches)} ({len(batch)} chunks)...")
            vectors.extend(
                await self.embed_batch(
                    batch,
                    model=model,
                    abort_signal=abort_signal,
                    label=f"embed batch {index + 1}/{len(batches)}",
                )
            )
        return vectors

    async def embed_batch(
        self,
        texts: list[str],
        *,
        model: str | None = None,
        abort_signal: AbortSignal | None = None,
        label: str | None = None,
    ) -> list[list[float]]:
        """Embed a single batch through the retry engine and validate the result."""
        if not texts:
            return []
        if len(texts) > self.batch_size:
            raise ValueError(f"batch of {len(texts)} exceeds batch_size {self.batch_size}")
        for i, text in enumerate(texts):
            if not text:
                raise EmbeddingIntegrityError(f"Cannot embed empty text at position {i}")

        inputs = [normalize_text(t) for t in texts]
        model_name = model or self.model

        vectors = await with_retry(
            lambda: self.provider.embed(inputs, model_name, abort_signal),
            retries=self.retries,
            base_delay_ms=self.base_delay_ms,
            abort_signal=abort_signal,
            label=label or "embed batch",
        )
        self._validate(vectors, expected=len(inputs))
        return vectors

    def _validate(self, vectors: list[list[float]], expected: int) -> None:
        if vectors is None or len(vectors) != expected:
            got = "none" if vectors is None else len(vectors)
            raise EmbeddingIntegrityError(
                f"Embedding count mismatch: expected {expected}, got {got}",
            )
        for i, vector in enumerate(vectors):
            if len(vector) != self.dimensions:
                raise EmbeddingIntegrityError(
                    f"Invalid embedding {i} dimensions: expected {self.dimensions}, got {len(vector)}",
                )
