import time
from collections.abc import Callable, Sequence
from typing import Any

import structlog

from .cache import CachedEmbedder, EmbeddingCache
from .configuration import PipelineConfig
from .embeddings import is_blank
from .errors import InvalidQueryError
from .indexing.factory import IndexFactory
from .indexing.factory import index_factory as default_index_factory
from .models import (
    ALL_FIELDS,
    BatchResult,
    PipelineStats,
    SearchBounds,
    SimilarityFilters,
    SimilarityQuery,
    SimilarityResult,
    VectorField,
    as_fields,
)
from .processor import BatchProcessor
from .provider import EmbeddingProvider
from .search import SimilarityQueryEngine
from .store.base import VectorStore

logger = structlog.get_logger()


class EmbeddingPipeline:
    """
    Entry point of the embedding subsystem for outer layers (REST handlers,
    the CLI, the worker).

    The pipeline owns the cache it is given, so separate pipelines (and
    tests) never share cached vectors unless they share the cache object.

    Attributes:
        store: The record and vector store.
        config: Pipeline settings.
        provider: The embedding provider, with its deterministic fallback.
        cache: The embedding cache.
        embedder: Cache-first front of the provider.
        processor: Backfills missing vectors.
        engine: Answers similarity queries.
    """

    def __init__(
        self,
        store: VectorStore,
        config: PipelineConfig | None = None,
        provider: EmbeddingProvider | None = None,
        cache: EmbeddingCache | None = None,
        index_factory: IndexFactory | None = None,
        should_continue_processing_hook: None | Callable[[int, int], bool] = None,
    ):
        self.store = store
        self.config = config or PipelineConfig()
        self.provider = (
            provider
            if provider is not None
            else EmbeddingProvider.from_config(self.config.embedding)
        )
        self.cache = cache if cache is not None else EmbeddingCache()
        self.embedder = CachedEmbedder(self.provider, self.cache)
        self.processor = BatchProcessor(
            store,
            self.embedder,
            self.config.processing,
            should_continue_processing_hook,
        )
        self.engine = SimilarityQueryEngine(
            store,
            index_factory
            or default_index_factory(
                self.config.indexing, self.provider.dimensions, store
            ),
        )

    def _invalidate(self, fields: Sequence[VectorField]) -> None:
        for field in fields:
            self.engine.invalidate(field)

    async def process_missing(self, field: VectorField | str | None = None) -> BatchResult:
        try:
            return await self.processor.process_missing(field)
        finally:
            self._invalidate(as_fields(field))

    async def rebuild_all(self, field: VectorField | str | None = None) -> BatchResult:
        try:
            return await self.processor.rebuild_all(field)
        finally:
            self._invalidate(as_fields(field))

    async def update_one(self, record_id: str) -> None:
        """
        Regenerate the vectors of one record.

        Raises:
            RecordNotFoundError: If the record does not exist.
        """
        try:
            await self.processor.update_one(record_id)
        finally:
            self._invalidate(ALL_FIELDS)

    def request_cancellation(self) -> None:
        self.processor.request_cancellation()

    async def stats(self) -> PipelineStats:
        return PipelineStats(
            coverage=await self.processor.coverage(),
            cache=self.cache.stats(),
        )

    def clear_cache(self) -> None:
        self.cache.clear()

    async def test_embedding(self, text: str) -> dict[str, Any]:
        """Embed one text and report the vector, its dimension and the
        latency. Only side effect: the cache is warmed."""
        start = time.perf_counter()
        vector = await self.embedder.embed(text)
        latency_ms = (time.perf_counter() - start) * 1000
        if vector is None:
            raise InvalidQueryError("text must not be empty")
        return {"vector": vector, "dimension": len(vector), "latency_ms": latency_ms}

    async def test_batch(self, texts: Sequence[str]) -> dict[str, Any]:
        """Embed `texts` in one batch and report count and latencies."""
        start = time.perf_counter()
        await self.embedder.embed_batch(texts)
        latency_ms = (time.perf_counter() - start) * 1000
        count = len(texts)
        return {
            "count": count,
            "latency_ms": latency_ms,
            "avg_per_item": latency_ms / count if count else 0.0,
        }

    async def similarity_search(
        self,
        query: str | None = None,
        record_id: str | None = None,
        filters: SimilarityFilters | None = None,
        threshold: float | None = None,
        limit: int | None = None,
        field: VectorField | str = VectorField.TITLE,
    ) -> list[SimilarityResult]:
        """
        Records near a query text, or near the stored vector of a record.
        Exactly one of `query` and `record_id` must be given.

        Raises:
            InvalidQueryError: On a bad combination of arguments or bounds.
            RecordNotFoundError: If `record_id` does not exist.
            VectorNotFoundError: If `record_id` has no vector for `field`.
        """
        if (query is None) == (record_id is None):
            raise InvalidQueryError("exactly one of query and record_id is required")
        search = self.config.search
        bounds = SearchBounds.check(
            threshold=threshold if threshold is not None else search.threshold,
            limit=limit
            if limit is not None
            else (search.similar_limit if record_id is not None else search.limit),
            field=field,
        )

        if record_id is not None:
            return await self.engine.find_similar(
                record_id,
                bounds.field,
                limit=bounds.limit,
                threshold=bounds.threshold,
                filters=filters,
            )

        if query is None or is_blank(query):
            raise InvalidQueryError("query text must not be empty")
        vector = await self.embedder.embed(query)
        if vector is None:
            raise InvalidQueryError("query text must not be empty")
        return await self.engine.query(
            SimilarityQuery.build(
                vector=vector,
                filters=filters,
                threshold=bounds.threshold,
                limit=bounds.limit,
                field=bounds.field,
            )
        )
