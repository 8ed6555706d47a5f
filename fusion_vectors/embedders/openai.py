from functools import cached_property
from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel
from typing_extensions import override

if TYPE_CHECKING:
    import openai

from ..embeddings import (
    ApiKeyMixin,
    BaseURLMixin,
    Embedder,
    EmbeddingResponse,
    EmbeddingVector,
    Usage,
    logger,
)

# models that accept the `dimensions` request parameter
VARIABLE_DIMENSION_MODELS = {"text-embedding-3-small", "text-embedding-3-large"}


class OpenAI(ApiKeyMixin, BaseURLMixin, BaseModel, Embedder):
    """
    Embedder that uses OpenAI's API to embed documents into vector representations.

    Attributes:
        implementation (Literal["openai"]): The literal identifier for this
            implementation.
        model (str): The name of the OpenAI model used for embeddings.
        dimensions (int | None): Dimensions requested from the API. Set by the
            provider to the pipeline dimension when left empty.
        user (str | None): Optional user identifier for OpenAI API usage.
        timeout (float): Request timeout in seconds.
        max_retries (int): Retries performed by the OpenAI client itself.
    """

    implementation: Literal["openai"] = "openai"
    model: str = "text-embedding-3-small"
    dimensions: int | None = None
    user: str | None = None
    api_key_name: str | None = "OPENAI_API_KEY"
    base_url: str | None = None
    timeout: float = 30.0
    max_retries: int = 2

    @cached_property
    def _client(self) -> "openai.AsyncOpenAI":
        # Note: deferred import to avoid import overhead
        import openai

        return openai.AsyncOpenAI(
            base_url=self.base_url,
            api_key=self._api_key,
            timeout=self.timeout,
            max_retries=self.max_retries,
        )

    @override
    def _max_chunks_per_batch(self) -> int:
        return 2048

    @override
    async def call_embed_api(self, documents: list[str]) -> EmbeddingResponse:
        import openai

        dimensions = (
            self.dimensions
            if self.dimensions is not None and self.model in VARIABLE_DIMENSION_MODELS
            else openai.NOT_GIVEN
        )
        response = await self._client.embeddings.create(
            input=documents,
            model=self.model,
            dimensions=dimensions,
            user=self.user if self.user is not None else openai.NOT_GIVEN,
            encoding_format="float",
        )
        if len(response.data) != len(documents):
            raise RuntimeError(
                f"{len(documents)} items sent to openai but {len(response.data)} embeddings returned"  # noqa
            )
        embeddings: list[EmbeddingVector] = [
            item.embedding for item in sorted(response.data, key=lambda d: d.index)
        ]
        await logger.adebug(
            "openai embeddings created",
            model=self.model,
            count=len(embeddings),
        )
        return EmbeddingResponse(
            embeddings=embeddings,
            usage=Usage(
                prompt_tokens=response.usage.prompt_tokens,
                total_tokens=response.usage.total_tokens,
            ),
        )
