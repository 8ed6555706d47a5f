import asyncio
import time
from collections.abc import Callable, Sequence

import structlog
from ddtrace.trace import tracer

from .cache import CachedEmbedder
from .configuration import ProcessingConfig
from .embeddings import batch_indices
from .errors import RecordNotFoundError
from .models import (
    ALL_FIELDS,
    BatchResult,
    CoverageStats,
    FieldUpdate,
    Record,
    SubBatchOutcome,
    VectorField,
    as_fields,
)
from .store.base import VectorStore

logger = structlog.get_logger()


class ProcessingStats:
    """
    Tracks processing statistics of one processor.

    Attributes:
        total_processing_time (float): The total time spent in sub-batches.
        total_records (int): The number of records processed.
        wall_start (float): The time when processing started.
    """

    def __init__(self):
        self.total_processing_time = 0.0
        self.total_records = 0
        self.wall_start = time.perf_counter()

    def add_request_time(self, duration: float, record_count: int):
        self.total_processing_time += duration
        self.total_records += record_count

    async def print_stats(self):
        """
        Logs the processing statistics at DEBUG level: records per second
        of wall time and records per second of sub-batch time.
        """
        records_per_second_per_task = (
            self.total_records / self.total_processing_time
            if self.total_processing_time > 0
            else 0
        )
        wall_time = time.perf_counter() - self.wall_start
        records_per_second = self.total_records / wall_time if wall_time > 0 else 0
        await logger.adebug(
            "Processing stats",
            wall_time=wall_time,
            total_processing_time=self.total_processing_time,
            total_records=self.total_records,
            records_per_second=records_per_second,
            records_per_second_per_task=records_per_second_per_task,
            task=id(asyncio.current_task()),
        )


class BatchProcessor:
    """
    Backfills missing vectors in bounded sub-batches.

    Each sub-batch embeds the texts still lacking vectors through the
    CachedEmbedder and writes them back to the store. A failing sub-batch is
    counted in `errors` and the job moves on. Cancellation is checked before
    each sub-batch starts; sub-batches already running always finish.

    Attributes:
        store: The record and vector store.
        embedder: Cache-first embedder.
        config: Batch size, concurrency and pacing.
        stats: Processing timings.
    """

    def __init__(
        self,
        store: VectorStore,
        embedder: CachedEmbedder,
        config: ProcessingConfig | None = None,
        should_continue_processing_hook: None | Callable[[int, int], bool] = None,
    ):
        self.store = store
        self.embedder = embedder
        self.config = config or ProcessingConfig()
        self.stats = ProcessingStats()
        self._should_continue_processing_hook = should_continue_processing_hook or (
            lambda _loops, _res: True
        )
        self._cancellation_requested = asyncio.Event()

    def request_cancellation(self) -> None:
        """Stop every running job before its next sub-batch."""
        self._cancellation_requested.set()

    def reset_cancellation(self) -> None:
        self._cancellation_requested.clear()

    @property
    def cancellation_requested(self) -> bool:
        return self._cancellation_requested.is_set()

    def _should_continue_processing(self, loops: int, res: int) -> bool:
        if self._cancellation_requested.is_set():
            return False
        return self._should_continue_processing_hook(loops, res)

    async def find_missing(self, field: VectorField | str | None = None) -> list[str]:
        """Ids of the records with text but no vector for `field`, or for any
        field when `field` is None."""
        records = await self.store.find_missing(as_fields(field))
        return [record.id for record in records]

    async def process_batch(
        self,
        records: Sequence[Record],
        fields: Sequence[VectorField] = ALL_FIELDS,
    ) -> BatchResult:
        """
        Embed and store the missing vectors of `records`.

        Records are split into sub-batches of `batch_size`, started in order
        with at most `concurrency` in flight. Every record of a sub-batch
        counts as processed when the sub-batch succeeds and as an error when
        it fails.
        """
        result = BatchResult()
        if not records:
            return result
        batches = batch_indices(len(records), self.config.batch_size)
        semaphore = asyncio.Semaphore(self.config.concurrency)
        tasks: list[asyncio.Task[SubBatchOutcome]] = []

        async def run(index: int, batch: Sequence[Record]) -> SubBatchOutcome:
            try:
                outcome = await self._run_sub_batch(index, batch, fields)
                result.add(outcome)
                return outcome
            finally:
                if self.config.delay > 0:
                    await asyncio.sleep(self.config.delay)
                semaphore.release()

        for index, (start, end) in enumerate(batches):
            await semaphore.acquire()
            if not self._should_continue_processing(index, result.processed):
                semaphore.release()
                result.cancelled = True
                result.skipped = len(records) - start
                await logger.ainfo(
                    "batch job cancelled",
                    started_batches=index,
                    skipped=result.skipped,
                )
                break
            tasks.append(asyncio.create_task(run(index, records[start:end])))

        await asyncio.gather(*tasks)
        await self.stats.print_stats()
        return result

    async def _run_sub_batch(
        self,
        index: int,
        records: Sequence[Record],
        fields: Sequence[VectorField],
    ) -> SubBatchOutcome:
        try:
            return await self._process_sub_batch(index, records, fields)
        except Exception as e:
            await logger.awarning(
                "sub-batch failed",
                batch=index,
                records=len(records),
                error=f"{type(e).__name__}: {e}",
            )
            return SubBatchOutcome(index=index, size=len(records), error=e)

    @tracer.wrap()
    async def _process_sub_batch(
        self,
        index: int,
        records: Sequence[Record],
        fields: Sequence[VectorField],
        force: bool = False,
    ) -> SubBatchOutcome:
        """
        Embeds the texts of one sub-batch and writes them in a single store
        call. With `force`, every field with text is regenerated.
        """
        start_time = time.perf_counter()
        current_span = tracer.current_span()
        if current_span:
            current_span.set_tag("records", len(records))
        updates: list[FieldUpdate] = []
        for field in fields:
            pending = [
                record
                for record in records
                if (record.has_text(field) if force else record.needs_vector(field))
            ]
            if not pending:
                continue
            vectors = await self.embedder.embed_batch(
                [record.text(field) for record in pending]
            )
            for record, vector in zip(pending, vectors, strict=True):
                if vector is None:
                    continue
                updates.append(
                    FieldUpdate.create(
                        record.id, field, vector, self.embedder.dimensions
                    )
                )
        if updates:
            await self.store.write_vectors(updates)
        self.stats.add_request_time(time.perf_counter() - start_time, len(records))
        await logger.adebug(
            "sub-batch finished", batch=index, records=len(records), updates=len(updates)
        )
        return SubBatchOutcome(index=index, size=len(records), updates=updates)

    async def process_missing(self, field: VectorField | str | None = None) -> BatchResult:
        """Backfill every record missing a vector for `field` (all fields when
        None)."""
        fields = as_fields(field)
        records = await self.store.find_missing(fields)
        await logger.ainfo(
            "processing missing vectors",
            records=len(records),
            fields=[f.value for f in fields],
        )
        result = await self.process_batch(records, fields)
        await logger.ainfo("finished processing missing vectors", **result.model_dump())
        return result

    async def rebuild_all(self, field: VectorField | str | None = None) -> BatchResult:
        """Clear the stored vectors of `field` (all fields when None) and
        regenerate them."""
        fields = as_fields(field)
        cleared = await self.store.clear_vectors(fields)
        await logger.ainfo(
            "cleared vectors for rebuild",
            records=cleared,
            fields=[f.value for f in fields],
        )
        return await self.process_missing(field)

    async def update_one(self, record_id: str) -> SubBatchOutcome:
        """
        Regenerate the vectors of a single record from its current text.

        Unlike a backfill, every field with text is embedded again, including
        fields that already carry a vector, so an edited title or description
        never keeps a stale vector. Fields with blank text are left untouched.

        Raises:
            RecordNotFoundError: If the record does not exist.
        """
        record = await self.store.get(record_id)
        if record is None:
            raise RecordNotFoundError(record_id)
        return await self._process_sub_batch(0, [record], ALL_FIELDS, force=True)

    async def coverage(self, field: VectorField | str | None = None) -> CoverageStats:
        return await self.store.coverage(as_fields(field))
