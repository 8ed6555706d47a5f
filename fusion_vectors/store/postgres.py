from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from functools import cached_property
from typing import Any

import numpy as np
import psycopg
import structlog
from pgvector.psycopg import register_vector_async  # type: ignore
from psycopg import AsyncConnection, sql
from psycopg.rows import dict_row
from typing_extensions import override

from ..errors import PersistenceError
from ..indexing.config import HNSWIndexing, IndexingConfig, IVFFlatIndexing
from ..models import (
    ALL_FIELDS,
    CoverageStats,
    EmbeddingVector,
    FieldUpdate,
    Record,
    VectorField,
)
from .base import VectorStore

logger = structlog.get_logger()

# pgvector rejects a larger hnsw.ef_search
HNSW_MAX_EF_SEARCH = 1000


def search_settings(
    indexing: IndexingConfig | None, k: int
) -> dict[str, int | str]:
    """
    Transaction-local settings for a nearest-neighbour query of `k` rows.

    An HNSW scan yields at most `hnsw.ef_search` rows. When `k` is above
    the largest allowed value the query scans the table exactly instead, so
    a short result still means every stored vector was seen.
    """
    if isinstance(indexing, HNSWIndexing):
        if k > HNSW_MAX_EF_SEARCH:
            return {"enable_indexscan": "off"}
        return {"hnsw.ef_search": max(indexing.ef_search, k)}
    if isinstance(indexing, IVFFlatIndexing):
        return {"ivfflat.probes": indexing.probes}
    return {}


class IncidentQueryBuilder:
    """
    Builds the SQL statements used against the incidents table.

    Attributes:
        schema: The schema of the table.
        table: The table holding the incident records and their vectors.
    """

    def __init__(self, schema: str, table: str):
        self.schema = schema
        self.table = table

    @property
    def table_ident(self) -> sql.Identifier:
        return sql.Identifier(self.schema, self.table)

    @cached_property
    def select_columns(self) -> sql.Composed:
        return sql.SQL(", ").join(
            [
                sql.Identifier(c)
                for c in ("id", "title", "description", "category", "datetime")
            ]
            + [sql.Identifier(f.column) for f in ALL_FIELDS]
        )

    @staticmethod
    def needs_vector_predicate(field: VectorField) -> sql.Composed:
        return sql.SQL("(nullif(btrim({text}), '') is not null and {vec} is null)").format(
            text=sql.Identifier(field.value), vec=sql.Identifier(field.column)
        )

    @cached_property
    def get_query(self) -> sql.Composed:
        return sql.SQL("SELECT {} FROM {} WHERE id = %s").format(
            self.select_columns, self.table_ident
        )

    @cached_property
    def get_many_query(self) -> sql.Composed:
        return sql.SQL("SELECT {} FROM {} WHERE id = ANY(%s)").format(
            self.select_columns, self.table_ident
        )

    def find_missing_query(self, fields: Sequence[VectorField]) -> sql.Composed:
        return sql.SQL("SELECT {} FROM {} WHERE {} ORDER BY id").format(
            self.select_columns,
            self.table_ident,
            sql.SQL(" OR ").join([self.needs_vector_predicate(f) for f in fields]),
        )

    def update_query(self, fields: Sequence[VectorField]) -> sql.Composed:
        return sql.SQL("UPDATE {} SET {} WHERE id = %s").format(
            self.table_ident,
            sql.SQL(", ").join(
                [
                    sql.SQL("{} = %s").format(sql.Identifier(f.column))
                    for f in fields
                ]
            ),
        )

    def clear_query(self, fields: Sequence[VectorField]) -> sql.Composed:
        return sql.SQL("UPDATE {} SET {} WHERE {}").format(
            self.table_ident,
            sql.SQL(", ").join(
                [sql.SQL("{} = NULL").format(sql.Identifier(f.column)) for f in fields]
            ),
            sql.SQL(" OR ").join(
                [
                    sql.SQL("{} IS NOT NULL").format(sql.Identifier(f.column))
                    for f in fields
                ]
            ),
        )

    def coverage_query(self, fields: Sequence[VectorField]) -> sql.Composed:
        counts: list[sql.Composable] = [sql.SQL("count(*) AS total")]
        for f in fields:
            counts.append(
                sql.SQL("count({}) AS {}").format(
                    sql.Identifier(f.column), sql.Identifier(f"with_{f.value}")
                )
            )
            counts.append(
                sql.SQL("count(*) FILTER (WHERE {}) AS {}").format(
                    self.needs_vector_predicate(f),
                    sql.Identifier(f"missing_{f.value}"),
                )
            )
        return sql.SQL("SELECT {} FROM {}").format(
            sql.SQL(", ").join(counts), self.table_ident
        )

    def vectors_query(self, field: VectorField) -> sql.Composed:
        return sql.SQL(
            "SELECT id, {col} FROM {table} WHERE {col} IS NOT NULL ORDER BY id"
        ).format(col=sql.Identifier(field.column), table=self.table_ident)

    def nearest_query(self, field: VectorField) -> sql.Composed:
        return sql.SQL("""\
            SELECT id, {col} <=> %(query)s AS distance
            FROM {table}
            WHERE {col} IS NOT NULL
            ORDER BY {col} <=> %(query)s, id
            LIMIT %(limit)s
        """).format(col=sql.Identifier(field.column), table=self.table_ident)

    def count_vectors_query(self, field: VectorField) -> sql.Composed:
        return sql.SQL("SELECT count({}) FROM {}").format(
            sql.Identifier(field.column), self.table_ident
        )

    def create_table_query(self, dimensions: int) -> sql.Composed:
        return sql.SQL("""\
            CREATE TABLE IF NOT EXISTS {table} (
                id text PRIMARY KEY,
                title text,
                description text,
                category text,
                datetime timestamptz,
                {title_vec} vector({dims}),
                {description_vec} vector({dims})
            )
        """).format(
            table=self.table_ident,
            title_vec=sql.Identifier(VectorField.TITLE.column),
            description_vec=sql.Identifier(VectorField.DESCRIPTION.column),
            dims=sql.Literal(dimensions),
        )

    def index_name(self, field: VectorField, indexing: IndexingConfig) -> str:
        return f"idx_{self.table}_{field.column}_{indexing.implementation}"

    def create_index_query(
        self, field: VectorField, indexing: HNSWIndexing | IVFFlatIndexing
    ) -> sql.Composed:
        if isinstance(indexing, HNSWIndexing):
            method = sql.SQL("hnsw")
            options = sql.SQL("m = {}, ef_construction = {}").format(
                sql.Literal(indexing.m), sql.Literal(indexing.ef_construction)
            )
        else:
            method = sql.SQL("ivfflat")
            options = sql.SQL("lists = {}").format(sql.Literal(indexing.lists))
        return sql.SQL(
            "CREATE INDEX IF NOT EXISTS {name} ON {table} "
            "USING {method} ({col} vector_cosine_ops) WITH ({options})"
        ).format(
            name=sql.Identifier(self.index_name(field, indexing)),
            table=self.table_ident,
            method=method,
            col=sql.Identifier(field.column),
            options=options,
        )


def _to_vector(value: Any) -> EmbeddingVector | None:
    if value is None:
        return None
    if isinstance(value, np.ndarray):
        return value.astype(float).tolist()
    return [float(x) for x in value]


def _row_to_record(row: dict[str, Any]) -> Record:
    vectors = {}
    for field in ALL_FIELDS:
        vector = _to_vector(row.get(field.column))
        if vector is not None:
            vectors[field] = vector
    return Record(
        id=row["id"],
        title=row["title"],
        description=row["description"],
        category=row["category"],
        occurred_at=row["datetime"],
        vectors=vectors,
    )


class PostgresVectorStore(VectorStore):
    """
    VectorStore backed by a PostgreSQL table with pgvector columns.

    Every operation opens its own autocommit connection, so the store can be
    shared by concurrent sub-batches. Each record is written by a single
    UPDATE statement.
    """

    def __init__(self, db_url: str, table: str = "incidents", schema: str = "public"):
        self.db_url = db_url
        self.queries = IncidentQueryBuilder(schema, table)

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[AsyncConnection]:
        async with await psycopg.AsyncConnection.connect(
            self.db_url, autocommit=True
        ) as conn:
            await register_vector_async(conn)
            yield conn

    async def create_schema(self, dimensions: int) -> None:
        """Create the pgvector extension and the incidents table if missing."""
        async with await psycopg.AsyncConnection.connect(
            self.db_url, autocommit=True
        ) as conn:
            await conn.execute("CREATE EXTENSION IF NOT EXISTS vector")
        async with self.connection() as conn:
            await conn.execute(self.queries.create_table_query(dimensions))

    async def create_indexes(
        self,
        indexing: IndexingConfig,
        fields: Sequence[VectorField] = ALL_FIELDS,
    ) -> list[str]:
        """Create the ANN index of each field. Returns the index names."""
        if indexing.implementation == "none":
            return []
        assert isinstance(indexing, HNSWIndexing | IVFFlatIndexing)
        names: list[str] = []
        async with self.connection() as conn:
            for field in fields:
                await conn.execute(self.queries.create_index_query(field, indexing))
                names.append(self.queries.index_name(field, indexing))
                await logger.ainfo(
                    "vector index ready",
                    index=names[-1],
                    implementation=indexing.implementation,
                )
            await conn.execute(
                sql.SQL("ANALYZE {}").format(self.queries.table_ident)
            )
        return names

    async def insert_records(self, records: Sequence[Record]) -> None:
        """Insert or replace records, vectors included."""
        query = sql.SQL("""\
            INSERT INTO {table} (id, title, description, category, datetime, {cols})
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (id) DO UPDATE SET
                title = excluded.title,
                description = excluded.description,
                category = excluded.category,
                datetime = excluded.datetime,
                {updates}
        """).format(
            table=self.queries.table_ident,
            cols=sql.SQL(", ").join([sql.Identifier(f.column) for f in ALL_FIELDS]),
            updates=sql.SQL(", ").join(
                [
                    sql.SQL("{col} = excluded.{col}").format(
                        col=sql.Identifier(f.column)
                    )
                    for f in ALL_FIELDS
                ]
            ),
        )
        async with self.connection() as conn, conn.cursor() as cur:
            for record in records:
                vectors = [
                    np.array(v) if (v := record.vector(f)) is not None else None
                    for f in ALL_FIELDS
                ]
                await cur.execute(
                    query,
                    [
                        record.id,
                        record.title,
                        record.description,
                        record.category,
                        record.occurred_at,
                        *vectors,
                    ],
                )

    @override
    async def get(self, record_id: str) -> Record | None:
        async with (
            self.connection() as conn,
            conn.cursor(row_factory=dict_row) as cur,
        ):
            await cur.execute(self.queries.get_query, (record_id,))
            row = await cur.fetchone()
            return _row_to_record(row) if row is not None else None

    @override
    async def get_many(self, record_ids: Sequence[str]) -> dict[str, Record]:
        if not record_ids:
            return {}
        async with (
            self.connection() as conn,
            conn.cursor(row_factory=dict_row) as cur,
        ):
            await cur.execute(self.queries.get_many_query, (list(record_ids),))
            records = [_row_to_record(row) for row in await cur.fetchall()]
            return {record.id: record for record in records}

    @override
    async def find_missing(self, fields: Sequence[VectorField]) -> list[Record]:
        async with (
            self.connection() as conn,
            conn.cursor(row_factory=dict_row) as cur,
        ):
            await cur.execute(self.queries.find_missing_query(fields))
            return [_row_to_record(row) for row in await cur.fetchall()]

    @override
    async def write_vectors(self, updates: Sequence[FieldUpdate]) -> None:
        by_record: dict[str, dict[VectorField, EmbeddingVector]] = {}
        for update in updates:
            by_record.setdefault(update.record_id, {})[update.field] = update.vector
        try:
            async with self.connection() as conn, conn.cursor() as cur:
                for record_id, vectors in by_record.items():
                    fields = list(vectors)
                    await cur.execute(
                        self.queries.update_query(fields),
                        [np.array(vectors[f]) for f in fields] + [record_id],
                    )
                    if cur.rowcount == 0:
                        await logger.awarning(
                            "record vanished before its vectors were written",
                            record_id=record_id,
                        )
        except psycopg.Error as e:
            raise PersistenceError(str(e)) from e

    @override
    async def clear_vectors(self, fields: Sequence[VectorField]) -> int:
        try:
            async with self.connection() as conn, conn.cursor() as cur:
                await cur.execute(self.queries.clear_query(fields))
                return cur.rowcount
        except psycopg.Error as e:
            raise PersistenceError(str(e)) from e

    @override
    async def coverage(self, fields: Sequence[VectorField]) -> CoverageStats:
        async with (
            self.connection() as conn,
            conn.cursor(row_factory=dict_row) as cur,
        ):
            await cur.execute(self.queries.coverage_query(fields))
            row = await cur.fetchone()
            assert row is not None
            return CoverageStats(
                total=row["total"],
                with_vector={f: row[f"with_{f.value}"] for f in fields},
                missing={f: row[f"missing_{f.value}"] for f in fields},
            )

    async def count_vectors(self, field: VectorField) -> int:
        async with self.connection() as conn, conn.cursor() as cur:
            await cur.execute(self.queries.count_vectors_query(field))
            row = await cur.fetchone()
            return row[0] if row is not None else 0

    @override
    async def iter_vectors(
        self, field: VectorField
    ) -> AsyncIterator[tuple[str, EmbeddingVector]]:
        async with self.connection() as conn, conn.cursor() as cur:
            await cur.execute(self.queries.vectors_query(field))
            async for record_id, vector in cur:
                yield record_id, _to_vector(vector) or []

    async def nearest(
        self,
        field: VectorField,
        vector: EmbeddingVector,
        k: int,
        indexing: IndexingConfig | None = None,
    ) -> list[tuple[str, float]]:
        """The `k` stored vectors of `field` nearest to `vector`, using the
        `<=>` cosine distance operator and whatever index covers the column."""
        async with self.connection() as conn:
            async with conn.transaction():
                for name, value in search_settings(indexing, k).items():
                    await conn.execute(
                        sql.SQL("SET LOCAL {} = {}").format(
                            sql.SQL(name),  # type: ignore[arg-type]
                            sql.Literal(value),
                        )
                    )
                async with conn.cursor() as cur:
                    await cur.execute(
                        self.queries.nearest_query(field),
                        {"query": np.array(vector), "limit": k},
                    )
                    return [
                        (record_id, float(distance))
                        for record_id, distance in await cur.fetchall()
                    ]
