from abc import ABC, abstractmethod
from dataclasses import dataclass

import numpy as np

from ..models import EmbeddingVector


@dataclass(frozen=True)
class Candidate:
    """A record id proposed by an index, with its cosine distance to the query."""

    record_id: str
    distance: float


def cosine_distances(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    """
    Cosine distance (1 - cos) between `query` and every row of `matrix`.
    Rows with zero norm are at distance 1.0.
    """
    query_norm = np.linalg.norm(query)
    if query_norm == 0:
        raise ValueError("query vector must not be the zero vector")
    if matrix.shape[0] == 0:
        return np.zeros(0, dtype=np.float64)
    row_norms = np.linalg.norm(matrix, axis=1)
    dots = matrix @ query
    with np.errstate(divide="ignore", invalid="ignore"):
        similarities = np.where(row_norms > 0, dots / (row_norms * query_norm), 0.0)
    return 1.0 - similarities


class VectorIndex(ABC):
    """
    Approximate nearest-neighbour capability over the vectors of one field.

    Implementations return candidates ordered by ascending cosine distance;
    candidates at equal distance keep a stable, implementation-defined order.
    An index may return fewer than `k` candidates, which callers treat as
    the index being exhausted.
    """

    # an external index reads the store directly and needs no loading
    external: bool = False

    @abstractmethod
    async def insert(self, record_id: str, vector: EmbeddingVector) -> None:
        """Add a vector, replacing any previous vector of the record."""

    @abstractmethod
    async def remove(self, record_id: str) -> None:
        """Forget the record. Unknown ids are ignored."""

    @abstractmethod
    async def query(self, vector: EmbeddingVector, k: int) -> list[Candidate]:
        """Return up to `k` candidates nearest to `vector`."""
