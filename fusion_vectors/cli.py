import asyncio
import datetime
import functools
import logging
import signal
import sys
from collections.abc import Callable, Coroutine, Sequence
from typing import Any, TypeVar

import click
import structlog
from dotenv import find_dotenv, load_dotenv
from pytimeparse import parse  # type: ignore
from rich.console import Console
from rich.table import Table

from . import __version__
from .configuration import PipelineConfig
from .errors import FusionVectorsError
from .indexing.config import (
    HNSWIndexing,
    IndexingConfig,
    IVFFlatIndexing,
    select_indexing,
)
from .models import (
    BatchResult,
    SimilarityFilters,
    SimilarityResult,
    VectorField,
    as_fields,
)
from .pipeline import EmbeddingPipeline
from .store.base import VectorStore
from .store.memory import InMemoryVectorStore
from .tracing import configure_tracing

load_dotenv(dotenv_path=find_dotenv(usecwd=True))
# .env may carry DD_TRACE_ENABLED
configure_tracing()

structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(logging.INFO))
log = structlog.get_logger()

DEFAULT_DB_URL = "postgres://postgres@localhost:5432/postgres"

T = TypeVar("T")


class TimeDurationParamType(click.ParamType):
    name = "time duration"

    def convert(self, value, param, ctx) -> int:  # type: ignore
        if isinstance(value, int):
            return value
        val: int | None = parse(value)  # type: ignore
        if val is not None:
            return val  # type: ignore
        try:
            val = int(value, 10)
            if val < 0:
                self.fail(
                    "time duration can't be negative",
                    param,
                    ctx,
                )
            return val
        except ValueError:
            self.fail(
                f"{value!r} is not a valid duration string or integer",
                param,
                ctx,
            )


def get_log_level(level: str) -> int:
    level_upper = level.upper()
    # getLevelName maps names to numbers for backwards compatibility
    level_name = logging.getLevelName(level_upper)  # type: ignore
    if level_upper != "INFO" and isinstance(level_name, int):
        return level_name
    return logging.getLevelName("INFO")  # type: ignore


def configure_logging(log_level: str) -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(get_log_level(log_level))
    )


def db_options(f: Callable[..., Any]) -> Callable[..., Any]:
    f = click.option(
        "--table",
        type=click.STRING,
        default="incidents",
        show_default=True,
        help="The table holding the incident records",
    )(f)
    f = click.option(
        "-d",
        "--db-url",
        type=click.STRING,
        default=DEFAULT_DB_URL,
        show_default=True,
        envvar="FUSION_VECTORS_DB_URL",
        help="The database URL to connect to",
    )(f)
    return f


def log_level_option(f: Callable[..., Any]) -> Callable[..., Any]:
    return click.option(
        "--log-level",
        type=click.Choice(
            ["DEBUG", "INFO", "WARN", "ERROR", "FATAL", "CRITICAL"],
            case_sensitive=False,
        ),
        default=None,
        help="Defaults to FUSION_VECTORS_LOG_LEVEL, or INFO.",
    )(f)


field_option = click.option(
    "-f",
    "--field",
    type=click.Choice([f.value for f in VectorField]),
    default=None,
    help="Only process this field. All fields when omitted.",
)


def load_config(log_level: str | None) -> PipelineConfig:
    config = PipelineConfig.from_env()
    if log_level is not None:
        config.processing.log_level = log_level.upper()  # type: ignore
    configure_logging(config.processing.log_level)
    return config


def create_store(db_url: str, table: str) -> VectorStore:
    from .store.postgres import PostgresVectorStore

    return PostgresVectorStore(db_url, table=table)


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run a coroutine, turning pipeline errors into a CLI error."""
    try:
        return asyncio.run(coro)
    except FusionVectorsError as e:
        raise click.ClickException(f"{e.msg}: {e}" if str(e) else e.msg) from e


def print_batch_result(console: Console, title: str, result: BatchResult) -> None:
    table = Table(title=title)
    table.add_column("processed", justify="right")
    table.add_column("errors", justify="right")
    table.add_column("cancelled")
    table.add_column("skipped", justify="right")
    table.add_row(
        str(result.processed),
        str(result.errors),
        str(result.cancelled),
        str(result.skipped),
    )
    console.print(table)


def print_results(console: Console, results: Sequence[SimilarityResult]) -> None:
    table = Table(title=f"{len(results)} similar records")
    table.add_column("distance", justify="right")
    table.add_column("id")
    table.add_column("category")
    table.add_column("datetime")
    table.add_column("title")
    for result in results:
        fields = result.fields
        occurred_at = fields.get("occurred_at")
        table.add_row(
            f"{result.distance:.4f}",
            result.record_id,
            fields.get("category") or "",
            occurred_at.isoformat() if occurred_at else "",
            fields.get("title") or "",
        )
    console.print(table)


@click.group()
@click.version_option(version=__version__)
def cli():
    """Embedding pipeline of the incident fusion dashboard."""


@cli.command(name="process-missing")
@db_options
@field_option
@log_level_option
def process_missing(
    db_url: str, table: str, field: str | None, log_level: str | None
) -> None:
    """Generate the vectors that are missing."""
    config = load_config(log_level)
    pipeline = EmbeddingPipeline(create_store(db_url, table), config)
    result = run_async(pipeline.process_missing(field))
    print_batch_result(Console(), "missing vectors", result)


@cli.command()
@db_options
@field_option
@log_level_option
@click.option("--yes", is_flag=True, help="Do not ask for confirmation.")
def rebuild(
    db_url: str, table: str, field: str | None, log_level: str | None, yes: bool
) -> None:
    """Clear the stored vectors and regenerate them."""
    fields = ", ".join(f.value for f in as_fields(field))
    if not yes:
        click.confirm(f"This deletes every stored {fields} vector. Continue?", abort=True)
    config = load_config(log_level)
    pipeline = EmbeddingPipeline(create_store(db_url, table), config)
    result = run_async(pipeline.rebuild_all(field))
    print_batch_result(Console(), f"rebuilt {fields} vectors", result)


@cli.command()
@db_options
@log_level_option
@click.argument("record_id")
def update(db_url: str, table: str, log_level: str | None, record_id: str) -> None:
    """Regenerate the vectors of one record."""
    config = load_config(log_level)
    pipeline = EmbeddingPipeline(create_store(db_url, table), config)
    run_async(pipeline.update_one(record_id))
    log.info("record updated", record_id=record_id)


@cli.command()
@db_options
@log_level_option
def stats(db_url: str, table: str, log_level: str | None) -> None:
    """Show how many records have vectors."""
    config = load_config(log_level)
    pipeline = EmbeddingPipeline(create_store(db_url, table), config)
    pipeline_stats = run_async(pipeline.stats())
    coverage = pipeline_stats.coverage
    table_ = Table(title=f"{coverage.total} records")
    table_.add_column("field")
    table_.add_column("with vector", justify="right")
    table_.add_column("missing", justify="right")
    for field, count in coverage.with_vector.items():
        table_.add_row(field.value, str(count), str(coverage.missing[field]))
    Console().print(table_)


@cli.command()
@db_options
@log_level_option
@click.argument("query")
@click.option(
    "-f",
    "--field",
    type=click.Choice([f.value for f in VectorField]),
    default=VectorField.TITLE.value,
    show_default=True,
)
@click.option(
    "-c",
    "--category",
    "categories",
    type=click.STRING,
    multiple=True,
    help="Only return records of these categories.",
)
@click.option("--start", type=click.DateTime(), default=None)
@click.option("--end", type=click.DateTime(), default=None)
@click.option(
    "-t",
    "--threshold",
    type=click.FloatRange(0, 2, min_open=True),
    default=None,
    help="Maximum cosine distance (exclusive).",
)
@click.option("-n", "--limit", type=click.IntRange(1, 1000), default=None)
def search(
    db_url: str,
    table: str,
    log_level: str | None,
    query: str,
    field: str,
    categories: Sequence[str],
    start: datetime.datetime | None,
    end: datetime.datetime | None,
    threshold: float | None,
    limit: int | None,
) -> None:
    """Find the records closest to QUERY."""
    config = load_config(log_level)
    pipeline = EmbeddingPipeline(create_store(db_url, table), config)
    try:
        filters = SimilarityFilters(
            categories=frozenset(categories) if categories else None,
            start=start,
            end=end,
        )
    except ValueError as e:
        raise click.BadParameter(str(e)) from e
    results = run_async(
        pipeline.similarity_search(
            query=query,
            filters=filters,
            threshold=threshold,
            limit=limit,
            field=field,
        )
    )
    print_results(Console(), results)


@cli.command()
@db_options
@log_level_option
@click.argument("record_id")
@click.option(
    "-f",
    "--field",
    type=click.Choice([f.value for f in VectorField]),
    default=VectorField.TITLE.value,
    show_default=True,
)
@click.option(
    "-t",
    "--threshold",
    type=click.FloatRange(0, 2, min_open=True),
    default=None,
)
@click.option("-n", "--limit", type=click.IntRange(1, 1000), default=None)
def similar(
    db_url: str,
    table: str,
    log_level: str | None,
    record_id: str,
    field: str,
    threshold: float | None,
    limit: int | None,
) -> None:
    """Find the records closest to RECORD_ID."""
    config = load_config(log_level)
    pipeline = EmbeddingPipeline(create_store(db_url, table), config)
    results = run_async(
        pipeline.similarity_search(
            record_id=record_id, threshold=threshold, limit=limit, field=field
        )
    )
    print_results(Console(), results)


@cli.command(name="test-embedding")
@log_level_option
@click.argument("texts", nargs=-1, required=True)
def test_embedding(log_level: str | None, texts: Sequence[str]) -> None:
    """Embed TEXTS and report the latency. Needs no database."""
    config = load_config(log_level)
    pipeline = EmbeddingPipeline(InMemoryVectorStore(), config)
    console = Console()
    if not pipeline.provider.available:
        console.print("[yellow]provider unavailable, using deterministic embeddings")
    if len(texts) == 1:
        probe = run_async(pipeline.test_embedding(texts[0]))
        preview = ", ".join(f"{x:.4f}" for x in probe["vector"][:5])
        console.print(f"dimension: {probe['dimension']}")
        console.print(f"latency: {probe['latency_ms']:.1f} ms")
        console.print(f"vector: [{preview}, ...]")
    else:
        probe = run_async(pipeline.test_batch(list(texts)))
        console.print(f"count: {probe['count']}")
        console.print(f"latency: {probe['latency_ms']:.1f} ms")
        console.print(f"per item: {probe['avg_per_item']:.2f} ms")


@cli.command(name="create-indexes")
@db_options
@log_level_option
@click.option(
    "--index",
    type=click.Choice(["auto", "hnsw", "ivfflat"]),
    default="auto",
    show_default=True,
    help="auto picks IVFFlat for very large tables and HNSW otherwise.",
)
@click.option("--m", type=click.IntRange(2, 100), default=16, show_default=True)
@click.option(
    "--ef-construction", type=click.IntRange(1, 1000), default=64, show_default=True
)
@click.option("--lists", type=click.IntRange(1, 32768), default=None)
@click.option(
    "--create-schema",
    is_flag=True,
    help="Create the vector extension and the table first.",
)
def create_indexes(
    db_url: str,
    table: str,
    log_level: str | None,
    index: str,
    m: int,
    ef_construction: int,
    lists: int | None,
    create_schema: bool,
) -> None:
    """Create the approximate nearest-neighbour indexes."""
    from .store.postgres import PostgresVectorStore

    config = load_config(log_level)
    store = PostgresVectorStore(db_url, table=table)

    async def do() -> list[str]:
        if create_schema:
            await store.create_schema(config.embedding.dimensions)
        indexing: IndexingConfig
        if index == "hnsw":
            indexing = HNSWIndexing(m=m, ef_construction=ef_construction)
        elif index == "ivfflat":
            indexing = IVFFlatIndexing() if lists is None else IVFFlatIndexing(lists=lists)
        else:
            indexing = select_indexing(await store.count_vectors(VectorField.TITLE))
        return await store.create_indexes(indexing)

    for name in run_async(do()):
        click.echo(name)


def shutdown_handler(signum: int, _frame: Any):
    signame = signal.Signals(signum).name
    log.info(f"received {signame}, exiting")
    exit(0)


@cli.command(name="worker")
@db_options
@field_option
@log_level_option
@click.option(
    "--poll-interval",
    type=TimeDurationParamType(),
    default="5m",
    show_default=True,
    help="The interval, in duration string or integer (seconds), "
    "to wait before checking for missing vectors again.",
)
@click.option(
    "--once",
    type=click.BOOL,
    is_flag=True,
    default=False,
    show_default=True,
    help="Exit after processing all missing vectors (implies --exit-on-error).",
)
@click.option(
    "--exit-on-error",
    type=click.BOOL,
    default=None,
    show_default=True,
    help="Exit immediately when an error occurs.",
)
def worker(
    db_url: str,
    table: str,
    field: str | None,
    log_level: str | None,
    poll_interval: int,
    once: bool,
    exit_on_error: bool | None,
) -> None:
    """Backfill missing vectors periodically."""
    asyncio.run(
        async_run_worker(
            db_url, table, field, log_level, poll_interval, once, exit_on_error
        )
    )


async def async_run_worker(
    db_url: str,
    table: str,
    field: str | None,
    log_level: str | None,
    poll_interval: int,
    once: bool,
    exit_on_error: bool | None,
) -> None:
    from .worker import Worker

    config = load_config(log_level)
    pipeline = EmbeddingPipeline(create_store(db_url, table), config)
    worker = Worker(
        pipeline,
        datetime.timedelta(seconds=poll_interval),
        once,
        VectorField(field) if field is not None else None,
        exit_on_error,
    )

    # gracefully handle being asked to shut down; a second signal exits at once
    loop = asyncio.get_running_loop()

    def request_shutdown(signum: int) -> None:
        log.info(f"received {signal.Signals(signum).name}, shutting down")
        worker.request_graceful_shutdown()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
            signal.signal(sig, shutdown_handler)

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, functools.partial(request_shutdown, sig))

    exception = await worker.run()
    if exception is not None:
        sys.exit(1)
