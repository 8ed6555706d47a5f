from typing_extensions import override

from ..models import EmbeddingVector, VectorField
from ..store.postgres import PostgresVectorStore
from .base import Candidate, VectorIndex
from .config import IndexingConfig


class PgVectorIndex(VectorIndex):
    """
    Index served by PostgreSQL itself: queries use the `<=>` operator over
    the vector column, accelerated by whatever HNSW or IVFFlat index exists
    on it. Vectors are maintained by the store, so insert and remove are
    no-ops.
    """

    external = True

    def __init__(
        self,
        store: PostgresVectorStore,
        field: VectorField,
        indexing: IndexingConfig | None = None,
    ):
        self.store = store
        self.field = field
        self.indexing = indexing

    @override
    async def insert(self, record_id: str, vector: EmbeddingVector) -> None:
        pass

    @override
    async def remove(self, record_id: str) -> None:
        pass

    @override
    async def query(self, vector: EmbeddingVector, k: int) -> list[Candidate]:
        if k < 1:
            return []
        rows = await self.store.nearest(self.field, vector, k, self.indexing)
        return [Candidate(record_id, distance) for record_id, distance in rows]
