import datetime
from collections.abc import Sequence

import numpy as np

from fusion_vectors.embeddings import (
    DeterministicEmbedding,
    Embedder,
    EmbeddingResponse,
    Usage,
)
from fusion_vectors.models import EmbeddingVector, Record, VectorField

DIMENSION_COUNT = 384


class CountingEmbedding(DeterministicEmbedding):
    """Deterministic generator that records every text it embeds."""

    def __init__(self, dimensions: int = DIMENSION_COUNT):
        super().__init__(dimensions)
        self.calls: list[str] = []

    def embed_text(self, text: str) -> EmbeddingVector:
        self.calls.append(text)
        return super().embed_text(text)


class FakeEmbedder(Embedder):
    """
    Remote embedder double. Returns a scaled one-hot vector per document and
    fails the requests listed in `fail_requests` (1-based).
    """

    def __init__(
        self,
        dimensions: int = DIMENSION_COUNT,
        max_chunks: int = 2048,
        fail_requests: Sequence[int] = (),
        wrong_dimensions: bool = False,
        setup_error: Exception | None = None,
    ):
        self.dimensions = dimensions
        self.max_chunks = max_chunks
        self.fail_requests = set(fail_requests)
        self.wrong_dimensions = wrong_dimensions
        self.setup_error = setup_error
        self.requests: list[list[str]] = []

    def _max_chunks_per_batch(self) -> int:
        return self.max_chunks

    async def setup(self) -> None:
        if self.setup_error is not None:
            raise self.setup_error

    async def call_embed_api(self, documents: list[str]) -> EmbeddingResponse:
        self.requests.append(list(documents))
        if len(self.requests) in self.fail_requests:
            raise TimeoutError("request timed out")
        size = self.dimensions + 1 if self.wrong_dimensions else self.dimensions
        embeddings = []
        for document in documents:
            vector = [0.0] * size
            vector[len(document) % size] = 2.0
            embeddings.append(vector)
        return EmbeddingResponse(
            embeddings=embeddings,
            usage=Usage(prompt_tokens=len(documents), total_tokens=len(documents)),
        )


def make_record(
    record_id: str,
    title: str | None = "title",
    description: str | None = None,
    category: str | None = None,
    occurred_at: datetime.datetime | None = None,
    vectors: dict[VectorField, EmbeddingVector] | None = None,
) -> Record:
    return Record(
        id=record_id,
        title=title,
        description=description,
        category=category,
        occurred_at=occurred_at,
        vectors=vectors or {},
    )


def unit_vector(angle: float, dimensions: int = DIMENSION_COUNT) -> EmbeddingVector:
    """A unit vector in the plane of the first two axes, `angle` radians
    from e0. Its cosine distance to e0 is 1 - cos(angle)."""
    vector = np.zeros(dimensions)
    vector[0] = np.cos(angle)
    vector[1] = np.sin(angle)
    return vector.tolist()


def vector_at_distance(distance: float, dimensions: int = DIMENSION_COUNT) -> EmbeddingVector:
    """A unit vector whose cosine distance to e0 is `distance`."""
    return unit_vector(float(np.arccos(1.0 - distance)), dimensions)


E0 = unit_vector(0.0)
