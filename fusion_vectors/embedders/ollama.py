from functools import cached_property
from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel
from typing_extensions import override

if TYPE_CHECKING:
    import ollama

from ..embeddings import (
    BaseURLMixin,
    Embedder,
    EmbeddingResponse,
    Usage,
    logger,
)


class Ollama(BaseModel, BaseURLMixin, Embedder):
    """
    Embedder backed by an Ollama server.

    Attributes:
        implementation (Literal["ollama"]): The literal identifier for this
            implementation.
        model (str): The name of the Ollama model used for embeddings.
        keep_alive (str | None): How long the server keeps the model loaded
            after a request.
        truncate (bool): Let the server cut inputs longer than the model
            context instead of failing the request.
        pull_missing (bool): Pull the model during setup when the server
            does not have it yet.
        max_chunks_per_batch (int): Documents per request. Ollama sets no
            limit of its own.
    """

    implementation: Literal["ollama"] = "ollama"
    model: str = "all-minilm"
    base_url: str | None = None
    keep_alive: str | None = None
    truncate: bool = True
    pull_missing: bool = True
    max_chunks_per_batch: int = 2048

    @cached_property
    def _client(self) -> "ollama.AsyncClient":
        # Note: deferred import to avoid import overhead
        import ollama

        return ollama.AsyncClient(host=self.base_url)

    @override
    def _max_chunks_per_batch(self) -> int:
        return self.max_chunks_per_batch

    @override
    async def setup(self):
        import ollama

        try:
            await self._client.show(self.model)
        except ollama.ResponseError as e:
            if e.status_code != 404 or not self.pull_missing:
                raise
            await logger.awarning(
                "pulling ollama model, this may take a while", model=self.model
            )
            await self._client.pull(self.model)

    @override
    async def call_embed_api(self, documents: list[str]) -> EmbeddingResponse:
        response = await self._client.embed(
            model=self.model,
            input=documents,
            truncate=self.truncate,
            keep_alive=self.keep_alive,
        )
        tokens = response.prompt_eval_count or 0
        await logger.adebug(
            "ollama embeddings created",
            model=self.model,
            count=len(response.embeddings),
            prompt_tokens=tokens,
        )
        return EmbeddingResponse(
            embeddings=[list(e) for e in response.embeddings],
            usage=Usage(prompt_tokens=tokens, total_tokens=tokens),
        )
