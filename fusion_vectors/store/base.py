from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence

from ..models import CoverageStats, EmbeddingVector, FieldUpdate, Record, VectorField


class VectorStore(ABC):
    """
    Persistence contract for the per-record vector fields.

    The store owns the durable vectors. Writes are atomic per record; no
    multi-record transaction is required.
    """

    @abstractmethod
    async def get(self, record_id: str) -> Record | None:
        """Return the record, or None when it does not exist."""

    @abstractmethod
    async def get_many(self, record_ids: Sequence[str]) -> dict[str, Record]:
        """Return the existing records among `record_ids`, keyed by id."""

    @abstractmethod
    async def find_missing(self, fields: Sequence[VectorField]) -> list[Record]:
        """
        Return the records that have non-empty text but no vector for at
        least one of `fields`, in the store's natural order.
        """

    @abstractmethod
    async def write_vectors(self, updates: Sequence[FieldUpdate]) -> None:
        """
        Persist vectors.

        Raises:
            PersistenceError: If the store rejected the write.
        """

    @abstractmethod
    async def clear_vectors(self, fields: Sequence[VectorField]) -> int:
        """Remove every stored vector of `fields`. Returns the records touched."""

    @abstractmethod
    async def coverage(self, fields: Sequence[VectorField]) -> CoverageStats:
        """Count records, stored vectors and missing vectors per field."""

    @abstractmethod
    def iter_vectors(
        self, field: VectorField
    ) -> AsyncIterator[tuple[str, EmbeddingVector]]:
        """Yield (record id, vector) for every stored vector of `field`."""
