from collections.abc import Callable

from ..models import VectorField
from ..store.base import VectorStore
from .base import VectorIndex
from .brute_force import BruteForceIndex
from .config import HNSWIndexing, IndexingConfig, IVFFlatIndexing

IndexFactory = Callable[[VectorField], VectorIndex]


def index_factory(
    indexing: IndexingConfig,
    dimensions: int,
    store: VectorStore | None = None,
    in_process: bool = False,
) -> IndexFactory:
    """
    Returns a callable creating the index of a field.

    A PostgreSQL store answers HNSW and IVFFlat queries with pgvector unless
    `in_process` is set; otherwise those strategies run on FAISS. No
    indexing means an exact brute-force scan.
    """
    if isinstance(indexing, HNSWIndexing | IVFFlatIndexing) and not in_process:
        from ..store.postgres import PostgresVectorStore

        if isinstance(store, PostgresVectorStore):
            from .pgvector import PgVectorIndex

            pg_store = store

            def create_pgvector(field: VectorField) -> VectorIndex:
                return PgVectorIndex(pg_store, field, indexing)

            return create_pgvector

    if isinstance(indexing, HNSWIndexing):
        from .faiss_index import FaissHNSWIndex

        hnsw = indexing

        def create_hnsw(_: VectorField) -> VectorIndex:
            return FaissHNSWIndex(dimensions, hnsw)

        return create_hnsw

    if isinstance(indexing, IVFFlatIndexing):
        from .faiss_index import FaissIVFFlatIndex

        ivfflat = indexing

        def create_ivfflat(_: VectorField) -> VectorIndex:
            return FaissIVFFlatIndex(dimensions, ivfflat)

        return create_ivfflat

    return lambda _: BruteForceIndex()
