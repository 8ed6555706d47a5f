import asyncio

import structlog
from ddtrace.trace import tracer

from .errors import RecordNotFoundError, VectorNotFoundError
from .indexing.base import VectorIndex
from .indexing.brute_force import BruteForceIndex
from .indexing.factory import IndexFactory
from .models import (
    Record,
    SearchBounds,
    SimilarityFilters,
    SimilarityQuery,
    SimilarityResult,
    VectorField,
)
from .store.base import VectorStore

logger = structlog.get_logger()


class SimilarityQueryEngine:
    """
    Ranks stored records by cosine distance to a query vector.

    Candidates come from one VectorIndex per field, built lazily from the
    store. Filters, exclusions and the threshold are applied to the
    candidates, and the candidate window is doubled until the limit is met,
    the index runs dry, or the window already reaches past the threshold.
    """

    def __init__(self, store: VectorStore, index_factory: IndexFactory | None = None):
        self.store = store
        self.index_factory = index_factory or (lambda _: BruteForceIndex())
        self._indexes: dict[VectorField, VectorIndex] = {}
        self._lock = asyncio.Lock()

    def invalidate(self, field: VectorField | None = None) -> None:
        """Drop the cached index of `field` (every field when None)."""
        if field is None:
            self._indexes.clear()
        else:
            self._indexes.pop(field, None)

    async def index_for(self, field: VectorField) -> VectorIndex:
        async with self._lock:
            index = self._indexes.get(field)
            if index is None:
                index = self.index_factory(field)
                if not index.external:
                    loaded = 0
                    async for record_id, vector in self.store.iter_vectors(field):
                        await index.insert(record_id, vector)
                        loaded += 1
                    await logger.adebug(
                        "vector index loaded", field=field.value, vectors=loaded
                    )
                self._indexes[field] = index
            return index

    @tracer.wrap()
    async def query(self, query: SimilarityQuery) -> list[SimilarityResult]:
        index = await self.index_for(query.field)
        k = query.limit + len(query.exclude_ids)
        fetched: dict[str, Record | None] = {}
        while True:
            candidates = await index.query(query.vector, k)
            eligible = [
                c
                for c in candidates
                if c.distance < query.threshold and c.record_id not in query.exclude_ids
            ]
            unseen = [c.record_id for c in eligible if c.record_id not in fetched]
            if unseen:
                records = await self.store.get_many(unseen)
                for record_id in unseen:
                    fetched[record_id] = records.get(record_id)

            results: list[SimilarityResult] = []
            for candidate in eligible:
                record = fetched[candidate.record_id]
                if record is None or not query.filters.matches(record):
                    continue
                results.append(
                    SimilarityResult(
                        record_id=record.id,
                        fields=record.stored_fields(),
                        distance=candidate.distance,
                    )
                )
                if len(results) == query.limit:
                    break

            exhausted = len(candidates) < k
            past_threshold = bool(candidates) and (
                candidates[-1].distance >= query.threshold
            )
            if len(results) >= query.limit or exhausted or past_threshold:
                await logger.adebug(
                    "similarity query finished",
                    field=query.field.value,
                    candidates=len(candidates),
                    results=len(results),
                )
                return results
            k *= 2

    async def find_similar(
        self,
        record_id: str,
        field: VectorField = VectorField.TITLE,
        limit: int = 10,
        threshold: float = 0.8,
        filters: SimilarityFilters | None = None,
    ) -> list[SimilarityResult]:
        """
        Records near the stored vector of `record_id`, excluding the record
        itself.

        Raises:
            RecordNotFoundError: If the record does not exist.
            VectorNotFoundError: If the record has no vector for `field`.
            InvalidQueryError: If the bounds are out of range.
        """
        bounds = SearchBounds.check(threshold=threshold, limit=limit, field=field)
        record = await self.store.get(record_id)
        if record is None:
            raise RecordNotFoundError(record_id)
        vector = record.vector(bounds.field)
        if vector is None:
            raise VectorNotFoundError(record_id, bounds.field.value)
        return await self.query(
            SimilarityQuery.build(
                vector=vector,
                field=bounds.field,
                limit=bounds.limit,
                threshold=bounds.threshold,
                filters=filters,
                exclude_ids=frozenset({record_id}),
            )
        )
