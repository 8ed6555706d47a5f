import datetime
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any

from annotated_types import Ge, Gt, Le
from pydantic import (
    BaseModel,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)

from .errors import InvalidQueryError

EmbeddingVector = list[float]


class VectorField(str, Enum):
    """The embeddable text fields of an incident record."""

    TITLE = "title"
    DESCRIPTION = "description"

    @property
    def column(self) -> str:
        return f"{self.value}_vector"


ALL_FIELDS: tuple[VectorField, ...] = (VectorField.TITLE, VectorField.DESCRIPTION)


def as_fields(field: "VectorField | str | None") -> tuple[VectorField, ...]:
    """Resolve an optional field name into the fields an operation touches."""
    if field is None:
        return ALL_FIELDS
    return (VectorField(field),)


def as_utc(value: datetime.datetime) -> datetime.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value


class Record(BaseModel):
    """
    An incident record as seen by the embedding pipeline.

    Attributes:
        id: The record identifier.
        title: Short free-text title.
        description: Optional long free-text description.
        category: Optional category used by similarity filters.
        occurred_at: When the incident happened, used by date-window filters.
        vectors: The stored vector of each embeddable field, if any.
    """

    id: str
    title: str | None = None
    description: str | None = None
    category: str | None = None
    occurred_at: datetime.datetime | None = None
    vectors: dict[VectorField, EmbeddingVector] = Field(default_factory=dict)

    def text(self, field: VectorField) -> str | None:
        return getattr(self, field.value)

    def has_text(self, field: VectorField) -> bool:
        text = self.text(field)
        return text is not None and text.strip() != ""

    def vector(self, field: VectorField) -> EmbeddingVector | None:
        return self.vectors.get(field)

    def needs_vector(self, field: VectorField) -> bool:
        return self.has_text(field) and self.vector(field) is None

    def stored_fields(self) -> dict[str, Any]:
        """The raw stored fields, without vectors."""
        return self.model_dump(exclude={"vectors"})


class FieldUpdate(BaseModel):
    """A single vector write, validated against the pipeline dimension."""

    record_id: str
    field: VectorField
    vector: EmbeddingVector

    @field_validator("vector")
    @classmethod
    def check_vector(cls, v: EmbeddingVector, info: ValidationInfo) -> EmbeddingVector:
        dimensions = info.context.get("dimensions") if info.context else None
        if dimensions is not None and len(v) != dimensions:
            raise ValueError(f"expected {dimensions} dimensions, got {len(v)}")
        if not all(math.isfinite(x) for x in v):
            raise ValueError("vector contains non-finite values")
        return v

    @classmethod
    def create(
        cls,
        record_id: str,
        field: VectorField,
        vector: EmbeddingVector,
        dimensions: int,
    ) -> "FieldUpdate":
        return cls.model_validate(
            {"record_id": record_id, "field": field, "vector": vector},
            context={"dimensions": dimensions},
        )


@dataclass
class SubBatchOutcome:
    """The result of one sub-batch of a batch job."""

    index: int
    size: int
    updates: list[FieldUpdate] = field(default_factory=list)
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class BatchResult(BaseModel):
    """
    Counters reported by a batch job.

    Attributes:
        processed: Records of sub-batches that completed.
        errors: Records of sub-batches that failed.
        cancelled: Whether the job stopped early on request.
        skipped: Records never started because the job was cancelled.
    """

    processed: int = 0
    errors: int = 0
    cancelled: bool = False
    skipped: int = 0

    def add(self, outcome: SubBatchOutcome) -> None:
        if outcome.ok:
            self.processed += outcome.size
        else:
            self.errors += outcome.size


class SimilarityFilters(BaseModel):
    categories: frozenset[str] | None = None
    start: datetime.datetime | None = None
    end: datetime.datetime | None = None

    @model_validator(mode="after")
    def check_window(self) -> "SimilarityFilters":
        if (
            self.start is not None
            and self.end is not None
            and as_utc(self.start) > as_utc(self.end)
        ):
            raise ValueError("start must not be after end")
        return self

    def matches(self, record: Record) -> bool:
        if self.categories:
            if record.category is None or record.category not in self.categories:
                return False
        if self.start is not None or self.end is not None:
            if record.occurred_at is None:
                return False
            occurred_at = as_utc(record.occurred_at)
            if self.start is not None and occurred_at < as_utc(self.start):
                return False
            if self.end is not None and occurred_at > as_utc(self.end):
                return False
        return True


Threshold = Annotated[float, Gt(gt=0), Le(le=2)]
Limit = Annotated[int, Ge(ge=1), Le(le=1000)]


class SearchBounds(BaseModel):
    """The caller-supplied knobs of a search, checked before any work is done."""

    threshold: Threshold = 0.8
    limit: Limit = 20
    field: VectorField = VectorField.TITLE

    @classmethod
    def check(cls, **kwargs: Any) -> "SearchBounds":
        try:
            return cls.model_validate(
                {k: v for k, v in kwargs.items() if v is not None}
            )
        except ValidationError as e:
            raise InvalidQueryError.from_validation_error(e) from e


class SimilarityQuery(BaseModel):
    """
    A single similarity request. Distances are cosine distances: smaller is
    closer, and only candidates strictly below `threshold` are returned.
    """

    vector: Annotated[EmbeddingVector, Field(min_length=1)]
    filters: SimilarityFilters = Field(default_factory=SimilarityFilters)
    threshold: Threshold = 0.8
    limit: Limit = 20
    exclude_ids: frozenset[str] = frozenset()
    field: VectorField = VectorField.TITLE

    @field_validator("vector")
    @classmethod
    def check_vector(cls, v: EmbeddingVector) -> EmbeddingVector:
        if not all(math.isfinite(x) for x in v):
            raise ValueError("query vector contains non-finite values")
        if not any(v):
            raise ValueError("query vector must not be the zero vector")
        return v

    @classmethod
    def build(cls, **kwargs: Any) -> "SimilarityQuery":
        """Validate a query, raising InvalidQueryError on bad input."""
        try:
            return cls.model_validate(
                {k: v for k, v in kwargs.items() if v is not None}
            )
        except ValidationError as e:
            raise InvalidQueryError.from_validation_error(e) from e


class SimilarityResult(BaseModel):
    record_id: str
    fields: dict[str, Any]
    distance: float


class CoverageStats(BaseModel):
    total: int
    with_vector: dict[VectorField, int]
    missing: dict[VectorField, int]


class CacheStats(BaseModel):
    count: int
    approx_bytes: int


class PipelineStats(BaseModel):
    coverage: CoverageStats
    cache: CacheStats
