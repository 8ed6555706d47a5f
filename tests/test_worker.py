import asyncio
import datetime
from collections.abc import Sequence

from fusion_vectors.errors import PersistenceError
from fusion_vectors.models import Record, VectorField
from fusion_vectors.pipeline import EmbeddingPipeline
from fusion_vectors.store.memory import InMemoryVectorStore
from fusion_vectors.worker import Worker
from tests.utils import make_record


class UnreachableStore(InMemoryVectorStore):
    """Fails the first `failures` lookups for missing vectors."""

    def __init__(self, *args, failures: int = 1, **kwargs):
        super().__init__(*args, **kwargs)
        self.failures = failures
        self.lookups = 0

    async def find_missing(self, fields: Sequence[VectorField]) -> list[Record]:
        self.lookups += 1
        if self.lookups <= self.failures:
            raise PersistenceError("database is down")
        return await super().find_missing(fields)


async def test_once_backfills_and_exits(
    pipeline: EmbeddingPipeline, store: InMemoryVectorStore
):
    for i in range(7):
        store.add(make_record(str(i), title=f"title {i}"))

    exception = await Worker(pipeline, once=True).run()

    assert exception is None
    assert await pipeline.processor.find_missing() == []


async def test_once_only_processes_the_requested_field(
    pipeline: EmbeddingPipeline, store: InMemoryVectorStore
):
    store.add(make_record("1", title="a", description="b"))

    await Worker(pipeline, once=True, field=VectorField.DESCRIPTION).run()

    record = await store.get("1")
    assert record is not None
    assert list(record.vectors) == [VectorField.DESCRIPTION]


async def test_once_implies_exit_on_error(pipeline: EmbeddingPipeline):
    store = UnreachableStore([make_record("1")])
    pipeline = EmbeddingPipeline(
        store, pipeline.config, provider=pipeline.provider, cache=pipeline.cache
    )
    worker = Worker(pipeline, once=True)
    assert worker.exit_on_error

    exception = await worker.run()

    assert exception is not None
    assert "database is down" in str(exception)


async def test_keeps_polling_after_an_error(pipeline: EmbeddingPipeline):
    store = UnreachableStore([make_record("1", title="a")], failures=2)
    pipeline = EmbeddingPipeline(
        store, pipeline.config, provider=pipeline.provider, cache=pipeline.cache
    )
    worker = Worker(
        pipeline, poll_interval=datetime.timedelta(0), exit_on_error=False
    )

    async def stop_when_done():
        while True:
            record = await store.get("1")
            if record is not None and VectorField.TITLE in record.vectors:
                break
            await asyncio.sleep(0.01)
        worker.request_graceful_shutdown()

    stopper = asyncio.create_task(stop_when_done())
    exception = await asyncio.wait_for(worker.run(), timeout=5)
    await stopper

    assert exception is None
    record = await store.get("1")
    assert record is not None
    assert VectorField.TITLE in record.vectors


async def test_graceful_shutdown_interrupts_the_sleep(pipeline: EmbeddingPipeline):
    worker = Worker(pipeline, poll_interval=datetime.timedelta(hours=1))
    task = asyncio.create_task(worker.run())
    await asyncio.sleep(0.05)

    worker.request_graceful_shutdown()
    exception = await asyncio.wait_for(task, timeout=5)

    assert exception is None
    assert pipeline.processor.cancellation_requested
