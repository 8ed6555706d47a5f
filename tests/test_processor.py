import asyncio
from collections.abc import Sequence

import pytest

from fusion_vectors.cache import CachedEmbedder, EmbeddingCache
from fusion_vectors.configuration import ProcessingConfig
from fusion_vectors.errors import PersistenceError, RecordNotFoundError
from fusion_vectors.models import FieldUpdate, VectorField
from fusion_vectors.processor import BatchProcessor
from fusion_vectors.provider import EmbeddingProvider
from fusion_vectors.store.memory import InMemoryVectorStore
from tests.utils import CountingEmbedding, make_record


class FlakyStore(InMemoryVectorStore):
    """Rejects the writes of the listed call numbers (1-based)."""

    def __init__(self, *args, fail_writes: Sequence[int] = (), **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_writes = set(fail_writes)
        self.writes = 0

    async def write_vectors(self, updates: Sequence[FieldUpdate]) -> None:
        self.writes += 1
        if self.writes in self.fail_writes:
            raise PersistenceError("disk full")
        await super().write_vectors(updates)


def make_processor(
    store: InMemoryVectorStore,
    cached_embedder: CachedEmbedder,
    batch_size: int = 5,
    concurrency: int = 1,
    **kwargs,
) -> BatchProcessor:
    return BatchProcessor(
        store,
        cached_embedder,
        ProcessingConfig(batch_size=batch_size, concurrency=concurrency, delay=0),
        **kwargs,
    )


async def test_find_missing(store: InMemoryVectorStore, cached_embedder: CachedEmbedder):
    store.add(make_record("1", title="a", description="b"))
    store.add(make_record("2", title="a", vectors={VectorField.TITLE: [1.0]}))
    store.add(make_record("3", title="  ", description=None))
    store.add(
        make_record(
            "4", title="a", description="b", vectors={VectorField.TITLE: [1.0]}
        )
    )
    processor = make_processor(store, cached_embedder)

    assert await processor.find_missing() == ["1", "4"]
    assert await processor.find_missing("title") == ["1"]
    assert await processor.find_missing(VectorField.DESCRIPTION) == ["1", "4"]


async def test_process_missing_fills_every_field(
    store: InMemoryVectorStore, cached_embedder: CachedEmbedder
):
    for i in range(12):
        store.add(make_record(str(i), title=f"title {i}", description=f"desc {i}"))
    store.add(make_record("empty", title="", description=None))
    processor = make_processor(store, cached_embedder)

    result = await processor.process_missing()

    assert result.processed == 12
    assert result.errors == 0
    assert not result.cancelled
    for i in range(12):
        record = await store.get(str(i))
        assert record is not None
        assert len(record.vectors[VectorField.TITLE]) == 384
        assert len(record.vectors[VectorField.DESCRIPTION]) == 384
    empty = await store.get("empty")
    assert empty is not None and empty.vectors == {}


async def test_backfill_is_idempotent(
    store: InMemoryVectorStore,
    cached_embedder: CachedEmbedder,
    counting_fallback: CountingEmbedding,
):
    for i in range(7):
        store.add(make_record(str(i), title=f"title {i}"))
    processor = make_processor(store, cached_embedder)

    first = await processor.process_missing()
    calls = len(counting_fallback.calls)
    second = await processor.process_missing()

    assert first.processed == 7
    assert second.processed == 0
    assert second.errors == 0
    assert len(counting_fallback.calls) == calls


async def test_duplicate_titles_are_generated_once(
    store: InMemoryVectorStore,
    cached_embedder: CachedEmbedder,
    counting_fallback: CountingEmbedding,
):
    store.add(make_record("1", title="Camden burglary"))
    store.add(make_record("2", title="Camden burglary"))
    processor = make_processor(store, cached_embedder, batch_size=1)

    result = await processor.process_missing("title")

    assert result.processed == 2
    assert counting_fallback.calls == ["Camden burglary"]
    first = await store.get("1")
    second = await store.get("2")
    assert first is not None and second is not None
    assert first.vectors[VectorField.TITLE] == second.vectors[VectorField.TITLE]


async def test_failed_sub_batch_is_isolated(cached_embedder: CachedEmbedder):
    store = FlakyStore(
        [make_record(str(i), title=f"title {i}") for i in range(12)],
        fail_writes=[2],
    )
    processor = make_processor(store, cached_embedder, batch_size=5)

    result = await processor.process_missing()

    assert result.processed == 7
    assert result.errors == 5
    assert store.writes == 3
    missing = await processor.find_missing()
    assert missing == [str(i) for i in range(5, 10)]


async def test_failed_embedding_is_isolated(store: InMemoryVectorStore):
    class FailingEmbedder(CachedEmbedder):
        async def embed_batch(self, texts):
            if any(t == "poison" for t in texts):
                raise RuntimeError("provider and fallback failed")
            return await super().embed_batch(texts)

    store.add(make_record("1", title="fine"))
    store.add(make_record("2", title="poison"))
    store.add(make_record("3", title="fine too"))
    processor = make_processor(
        store,
        FailingEmbedder(EmbeddingProvider(), EmbeddingCache()),
        batch_size=1,
    )

    result = await processor.process_missing()

    assert result.processed == 2
    assert result.errors == 1
    assert await processor.find_missing() == ["2"]


async def test_rebuild_all_regenerates_every_vector(
    store: InMemoryVectorStore, cached_embedder: CachedEmbedder
):
    for i in range(10):
        store.add(
            make_record(
                str(i), title=f"title {i}", vectors={VectorField.TITLE: [0.0] * 384}
            )
        )
    store.add(make_record("10", title="title 10"))
    store.add(make_record("11", title="title 11"))
    processor = make_processor(store, cached_embedder)

    result = await processor.rebuild_all("title")

    assert result.processed == 12
    assert result.errors == 0
    coverage = await processor.coverage("title")
    assert coverage.with_vector[VectorField.TITLE] == 12
    assert coverage.missing[VectorField.TITLE] == 0
    record = await store.get("0")
    assert record is not None
    assert record.vectors[VectorField.TITLE] != [0.0] * 384


async def test_rebuild_one_field_keeps_the_other(
    store: InMemoryVectorStore, cached_embedder: CachedEmbedder
):
    description_vector = [1.0] + [0.0] * 383
    store.add(
        make_record(
            "1",
            title="a",
            description="b",
            vectors={
                VectorField.TITLE: [0.0] * 384,
                VectorField.DESCRIPTION: description_vector,
            },
        )
    )
    processor = make_processor(store, cached_embedder)

    await processor.rebuild_all(VectorField.TITLE)

    record = await store.get("1")
    assert record is not None
    assert record.vectors[VectorField.DESCRIPTION] == description_vector


async def test_update_one(store: InMemoryVectorStore, cached_embedder: CachedEmbedder):
    store.add(make_record("1", title="old", vectors={VectorField.TITLE: [0.0] * 384}))
    processor = make_processor(store, cached_embedder)

    outcome = await processor.update_one("1")

    assert outcome.ok
    assert outcome.size == 1
    record = await store.get("1")
    assert record is not None
    assert record.vectors[VectorField.TITLE] == await cached_embedder.embed("old")


async def test_update_one_regenerates_existing_vectors(
    store: InMemoryVectorStore, cached_embedder: CachedEmbedder
):
    stale = [1.0] + [0.0] * 383
    store.add(
        make_record(
            "1",
            title="new title",
            description="new description",
            vectors={VectorField.TITLE: stale, VectorField.DESCRIPTION: stale},
        )
    )
    processor = make_processor(store, cached_embedder)
    assert await processor.find_missing() == []

    await processor.update_one("1")

    record = await store.get("1")
    assert record is not None
    assert record.vectors[VectorField.TITLE] == await cached_embedder.embed("new title")
    assert record.vectors[VectorField.DESCRIPTION] == await cached_embedder.embed(
        "new description"
    )


async def test_update_one_missing_record(
    store: InMemoryVectorStore, cached_embedder: CachedEmbedder
):
    processor = make_processor(store, cached_embedder)
    with pytest.raises(RecordNotFoundError):
        await processor.update_one("nope")


async def test_update_one_propagates_persistence_errors(cached_embedder: CachedEmbedder):
    store = FlakyStore([make_record("1", title="a")], fail_writes=[1])
    processor = make_processor(store, cached_embedder)
    with pytest.raises(PersistenceError):
        await processor.update_one("1")


async def test_hook_stops_before_next_sub_batch(
    store: InMemoryVectorStore, cached_embedder: CachedEmbedder
):
    for i in range(12):
        store.add(make_record(str(i), title=f"title {i}"))
    processor = make_processor(
        store,
        cached_embedder,
        batch_size=5,
        should_continue_processing_hook=lambda loops, _res: loops < 1,
    )

    result = await processor.process_missing()

    assert result.cancelled
    assert result.processed == 5
    assert result.skipped == 7
    assert len(await processor.find_missing()) == 7


async def test_request_cancellation_finishes_in_flight_sub_batch(
    store: InMemoryVectorStore, cached_embedder: CachedEmbedder
):
    for i in range(10):
        store.add(make_record(str(i), title=f"title {i}"))
    processor = make_processor(store, cached_embedder, batch_size=2)

    original_write = store.write_vectors
    writes: list[int] = []

    async def write_then_cancel(updates):
        writes.append(len(updates))
        processor.request_cancellation()
        await original_write(updates)

    store.write_vectors = write_then_cancel  # type: ignore[method-assign]

    result = await processor.process_missing()

    assert writes == [2]
    assert result.cancelled
    assert result.processed == 2
    assert result.skipped == 8
    assert processor.cancellation_requested

    processor.reset_cancellation()
    store.write_vectors = original_write  # type: ignore[method-assign]
    result = await processor.process_missing()
    assert result.processed == 8


async def test_concurrent_sub_batches(
    store: InMemoryVectorStore, cached_embedder: CachedEmbedder
):
    in_flight = 0
    peak = 0
    original_write = store.write_vectors

    async def slow_write(updates):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.05)
        await original_write(updates)
        in_flight -= 1

    store.write_vectors = slow_write  # type: ignore[method-assign]
    for i in range(20):
        store.add(make_record(str(i), title=f"title {i}"))
    processor = make_processor(store, cached_embedder, batch_size=2, concurrency=3)

    result = await processor.process_missing()

    assert result.processed == 20
    assert peak == 3


async def test_process_batch_of_nothing(
    store: InMemoryVectorStore, cached_embedder: CachedEmbedder
):
    processor = make_processor(store, cached_embedder)
    result = await processor.process_batch([])
    assert result.processed == 0
    assert result.errors == 0
    assert not result.cancelled
