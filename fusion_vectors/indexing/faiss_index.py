import faiss  # type: ignore
import numpy as np
import structlog
from typing_extensions import override

from ..models import EmbeddingVector
from .base import Candidate, VectorIndex
from .config import HNSWIndexing, IVFFlatIndexing

logger = structlog.get_logger()


def _normalized(vector: EmbeddingVector | np.ndarray) -> np.ndarray:
    """float32 row vector scaled to unit length. Zero vectors stay zero, so
    their inner product with any query is 0 (cosine distance 1.0)."""
    array = np.asarray(vector, dtype=np.float32).reshape(1, -1)
    norm = np.linalg.norm(array)
    if norm > 0:
        array = array / norm
    return array


class FaissHNSWIndex(VectorIndex):
    """
    HNSW graph index over inner products of unit vectors.

    FAISS HNSW cannot delete, so removed or replaced vectors are tombstoned
    and filtered out of the results. Queries over-fetch by the number of
    tombstones.
    """

    def __init__(self, dimensions: int, config: HNSWIndexing | None = None):
        self.dimensions = dimensions
        self.config = config or HNSWIndexing()
        self.index = faiss.IndexHNSWFlat(
            dimensions, self.config.m, faiss.METRIC_INNER_PRODUCT
        )
        self.index.hnsw.efConstruction = self.config.ef_construction
        self.index.hnsw.efSearch = self.config.ef_search
        # faiss position -> record id, None when tombstoned
        self._positions: list[str | None] = []
        self._by_id: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._by_id)

    @property
    def tombstones(self) -> int:
        return len(self._positions) - len(self._by_id)

    @override
    async def insert(self, record_id: str, vector: EmbeddingVector) -> None:
        if len(vector) != self.dimensions:
            raise ValueError(
                f"Vector dimension {len(vector)} does not match expected "
                f"dimension {self.dimensions}"
            )
        await self.remove(record_id)
        self.index.add(_normalized(vector))
        self._by_id[record_id] = len(self._positions)
        self._positions.append(record_id)

    @override
    async def remove(self, record_id: str) -> None:
        position = self._by_id.pop(record_id, None)
        if position is not None:
            self._positions[position] = None

    @override
    async def query(self, vector: EmbeddingVector, k: int) -> list[Candidate]:
        if not self._by_id or k < 1:
            return []
        fetch = min(k + self.tombstones, self.index.ntotal)
        self.index.hnsw.efSearch = max(self.config.ef_search, fetch)
        scores, positions = self.index.search(_normalized(vector), fetch)
        candidates: list[Candidate] = []
        for score, position in zip(scores[0], positions[0]):
            if position < 0:
                continue
            record_id = self._positions[position]
            if record_id is None:
                continue
            candidates.append(Candidate(record_id, 1.0 - float(score)))
            if len(candidates) == k:
                break
        return candidates


class FaissIVFFlatIndex(VectorIndex):
    """
    Inverted-file index over inner products of unit vectors.

    IVF partitions must be trained on the data, so the index is rebuilt
    lazily on the first query after any change. The partition count is
    capped by the number of vectors.
    """

    def __init__(self, dimensions: int, config: IVFFlatIndexing | None = None):
        self.dimensions = dimensions
        self.config = config or IVFFlatIndexing()
        self._vectors: dict[str, np.ndarray] = {}
        self._ids: list[str] = []
        self.index: faiss.IndexIVFFlat | None = None

    def __len__(self) -> int:
        return len(self._vectors)

    @override
    async def insert(self, record_id: str, vector: EmbeddingVector) -> None:
        if len(vector) != self.dimensions:
            raise ValueError(
                f"Vector dimension {len(vector)} does not match expected "
                f"dimension {self.dimensions}"
            )
        self._vectors.pop(record_id, None)
        self._vectors[record_id] = _normalized(vector)[0]
        self.index = None

    @override
    async def remove(self, record_id: str) -> None:
        if self._vectors.pop(record_id, None) is not None:
            self.index = None

    def _build(self) -> faiss.IndexIVFFlat:
        self._ids = list(self._vectors)
        matrix = np.vstack(list(self._vectors.values())).astype(np.float32)
        nlist = max(1, min(self.config.lists, len(self._ids)))
        quantizer = faiss.IndexFlatIP(self.dimensions)
        index = faiss.IndexIVFFlat(
            quantizer, self.dimensions, nlist, faiss.METRIC_INNER_PRODUCT
        )
        index.train(matrix)
        index.add(matrix)
        index.nprobe = min(self.config.probes, nlist)
        logger.debug(
            "ivfflat index trained",
            vectors=len(self._ids),
            lists=nlist,
            probes=index.nprobe,
        )
        return index

    @override
    async def query(self, vector: EmbeddingVector, k: int) -> list[Candidate]:
        if not self._vectors or k < 1:
            return []
        if self.index is None:
            self.index = self._build()
        scores, positions = self.index.search(
            _normalized(vector), min(k, len(self._ids))
        )
        return [
            Candidate(self._ids[position], 1.0 - float(score))
            for score, position in zip(scores[0], positions[0])
            if position >= 0
        ]
