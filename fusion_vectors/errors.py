from pydantic import ValidationError


class FusionVectorsError(Exception):
    """Base class for every error raised by the embedding pipeline."""

    msg = "embedding pipeline failed"


class EmbeddingProviderError(FusionVectorsError):
    """
    Raised when an embedding provider API request fails.
    """

    msg = "embedding provider failed"


class ProviderUnavailableError(EmbeddingProviderError):
    """The remote provider is not configured or cannot be reached at all."""

    msg = "embedding provider unavailable"


class ProviderTransientError(EmbeddingProviderError):
    """A single provider request failed (timeout, rate limit, bad response)."""

    msg = "embedding provider request failed"


class RecordNotFoundError(FusionVectorsError):
    msg = "record not found"

    def __init__(self, record_id: str):
        super().__init__(f"record_id={record_id}")
        self.record_id = record_id


class VectorNotFoundError(RecordNotFoundError):
    msg = "record has no stored vector"

    def __init__(self, record_id: str, field: str):
        FusionVectorsError.__init__(self, f"record_id={record_id} field={field}")
        self.record_id = record_id
        self.field = field


class PersistenceError(FusionVectorsError):
    msg = "failed to persist vectors"


class InvalidQueryError(FusionVectorsError):
    msg = "invalid similarity query"

    @classmethod
    def from_validation_error(cls, e: ValidationError) -> "InvalidQueryError":
        details = "; ".join(
            f"{'.'.join(str(loc) for loc in err['loc']) or 'query'}: {err['msg']}"
            for err in e.errors()
        )
        error = cls(details)
        error.__cause__ = e
        return error
