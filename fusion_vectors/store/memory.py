from collections.abc import AsyncIterator, Iterable, Sequence

from typing_extensions import override

from ..models import CoverageStats, EmbeddingVector, FieldUpdate, Record, VectorField
from .base import VectorStore


class InMemoryVectorStore(VectorStore):
    """A VectorStore kept in a dict, in insertion order. Used by tests and
    for small local runs."""

    def __init__(self, records: Iterable[Record] = ()):
        self._records: dict[str, Record] = {}
        for record in records:
            self.add(record)

    def add(self, record: Record) -> None:
        self._records[record.id] = record.model_copy(deep=True)

    def remove(self, record_id: str) -> None:
        self._records.pop(record_id, None)

    def __len__(self) -> int:
        return len(self._records)

    @override
    async def get(self, record_id: str) -> Record | None:
        record = self._records.get(record_id)
        return record.model_copy(deep=True) if record is not None else None

    @override
    async def get_many(self, record_ids: Sequence[str]) -> dict[str, Record]:
        return {
            record_id: self._records[record_id].model_copy(deep=True)
            for record_id in record_ids
            if record_id in self._records
        }

    @override
    async def find_missing(self, fields: Sequence[VectorField]) -> list[Record]:
        return [
            record.model_copy(deep=True)
            for record in self._records.values()
            if any(record.needs_vector(field) for field in fields)
        ]

    @override
    async def write_vectors(self, updates: Sequence[FieldUpdate]) -> None:
        for update in updates:
            record = self._records.get(update.record_id)
            if record is None:
                continue
            record.vectors[update.field] = list(update.vector)

    @override
    async def clear_vectors(self, fields: Sequence[VectorField]) -> int:
        touched = 0
        for record in self._records.values():
            cleared = [field for field in fields if field in record.vectors]
            for field in cleared:
                del record.vectors[field]
            if cleared:
                touched += 1
        return touched

    @override
    async def coverage(self, fields: Sequence[VectorField]) -> CoverageStats:
        records = list(self._records.values())
        return CoverageStats(
            total=len(records),
            with_vector={
                field: sum(1 for r in records if r.vector(field) is not None)
                for field in fields
            },
            missing={
                field: sum(1 for r in records if r.needs_vector(field))
                for field in fields
            },
        )

    @override
    async def iter_vectors(
        self, field: VectorField
    ) -> AsyncIterator[tuple[str, EmbeddingVector]]:
        for record_id, record in list(self._records.items()):
            vector = record.vector(field)
            if vector is not None:
                yield record_id, list(vector)
