import numpy as np
from typing_extensions import override

from ..models import EmbeddingVector
from .base import Candidate, VectorIndex, cosine_distances


class BruteForceIndex(VectorIndex):
    """Exact index: compares the query against every vector, in insertion order."""

    def __init__(self):
        self._vectors: dict[str, np.ndarray] = {}
        self._matrix: np.ndarray | None = None
        self._ids: list[str] = []

    def __len__(self) -> int:
        return len(self._vectors)

    @override
    async def insert(self, record_id: str, vector: EmbeddingVector) -> None:
        # replacing moves the record to the end of the scan order
        self._vectors.pop(record_id, None)
        self._vectors[record_id] = np.asarray(vector, dtype=np.float64)
        self._matrix = None

    @override
    async def remove(self, record_id: str) -> None:
        if self._vectors.pop(record_id, None) is not None:
            self._matrix = None

    def _snapshot(self) -> tuple[list[str], np.ndarray]:
        if self._matrix is None:
            self._ids = list(self._vectors)
            self._matrix = (
                np.vstack(list(self._vectors.values()))
                if self._vectors
                else np.zeros((0, 0), dtype=np.float64)
            )
        return self._ids, self._matrix

    @override
    async def query(self, vector: EmbeddingVector, k: int) -> list[Candidate]:
        ids, matrix = self._snapshot()
        if not ids or k < 1:
            return []
        distances = cosine_distances(matrix, np.asarray(vector, dtype=np.float64))
        order = np.argsort(distances, kind="stable")[:k]
        return [Candidate(ids[i], float(distances[i])) for i in order]
