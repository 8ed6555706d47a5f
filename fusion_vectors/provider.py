import os
import time
from collections.abc import Mapping, Sequence

import structlog
from ddtrace.trace import tracer

from .configuration import EmbeddingConfig
from .embedders import OpenAI
from .embeddings import (
    ApiKeyMixin,
    DeterministicEmbedding,
    Embedder,
    EmbeddingStats,
    batch_indices,
    is_blank,
)
from .errors import (
    EmbeddingProviderError,
    ProviderTransientError,
    ProviderUnavailableError,
)
from .models import EmbeddingVector

logger = structlog.get_logger()


class EmbeddingProvider:
    """
    Turns text into vectors through a remote Embedder, falling back to the
    deterministic local generator whenever the remote side cannot be used.

    Failures never reach the caller: an unconfigured or unreachable embedder
    switches the whole provider to fallback mode (logged once), a failed
    request only affects the texts of that request.

    Attributes:
        embedder: The remote embedder, or None when not configured.
        dimensions: The dimension every returned vector has.
        max_input_chars: Texts are cut to this length before embedding.
        max_batch_size: The maximum number of texts per remote request.
        fallback: The deterministic local generator.
        stats: Request timings and counts.
    """

    def __init__(
        self,
        embedder: Embedder | None = None,
        dimensions: int = 384,
        max_input_chars: int = 8191,
        max_batch_size: int = 100,
        fallback: DeterministicEmbedding | None = None,
        unavailable_reason: ProviderUnavailableError | None = None,
    ):
        self.embedder = embedder
        self.dimensions = dimensions
        self.max_input_chars = max_input_chars
        self.max_batch_size = max_batch_size
        self.fallback = fallback or DeterministicEmbedding(dimensions)
        self.stats = EmbeddingStats()
        self._setup_done = False
        self._unavailable_reason: ProviderUnavailableError | None = None
        if self.fallback.dimensions != dimensions:
            raise ValueError(
                f"fallback dimensions {self.fallback.dimensions} != {dimensions}"
            )
        if embedder is None:
            self._mark_unavailable(
                unavailable_reason or ProviderUnavailableError("no embedder configured")
            )

    @classmethod
    def from_config(
        cls,
        config: EmbeddingConfig,
        secrets: Mapping[str, str | None] | None = None,
    ) -> "EmbeddingProvider":
        """Create a provider, resolving API keys from `secrets` or the
        environment. A missing key leaves the provider in fallback mode."""
        embedder = config.embedder
        unavailable: ProviderUnavailableError | None = None
        if embedder is not None:
            if isinstance(embedder, OpenAI) and embedder.dimensions is None:
                embedder = embedder.model_copy(
                    update={"dimensions": config.dimensions}
                )
            if isinstance(embedder, ApiKeyMixin) and embedder.api_key_name:
                name = embedder.api_key_name
                api_key = (
                    secrets.get(name) if secrets is not None else os.getenv(name)
                )
                try:
                    embedder.set_api_key({name: api_key})
                    logger.debug(f"obtained secret '{name}'")
                except ValueError as e:
                    unavailable = ProviderUnavailableError(str(e))
                    embedder = None
        return cls(
            embedder=embedder,
            dimensions=config.dimensions,
            max_input_chars=config.max_input_chars,
            max_batch_size=config.max_batch_size,
            unavailable_reason=unavailable,
        )

    @property
    def available(self) -> bool:
        return self.embedder is not None

    @property
    def unavailable_reason(self) -> ProviderUnavailableError | None:
        return self._unavailable_reason

    def _mark_unavailable(self, reason: ProviderUnavailableError) -> None:
        self.embedder = None
        self._unavailable_reason = reason
        logger.warning(
            "embedding provider unavailable, using deterministic embeddings",
            reason=str(reason),
            dimensions=self.dimensions,
        )

    async def _ensure_setup(self) -> None:
        if self._setup_done or self.embedder is None:
            return
        self._setup_done = True
        try:
            await self.embedder.setup()
        except Exception as e:
            self._mark_unavailable(ProviderUnavailableError(str(e)))

    async def generate(self, text: str | None) -> EmbeddingVector | None:
        """Embed one text. Blank text yields None."""
        return (await self.generate_batch([text]))[0]

    async def generate_batch(
        self, texts: Sequence[str | None]
    ) -> list[EmbeddingVector | None]:
        """
        Embed `texts`, keeping their order. The result has one entry per
        input; blank entries map to None.
        """
        results: list[EmbeddingVector | None] = [None] * len(texts)
        positions = [i for i, text in enumerate(texts) if not is_blank(text)]
        if not positions:
            return results
        documents = [texts[i][: self.max_input_chars] for i in positions]  # type: ignore[index]
        vectors = await self._embed_documents(documents)
        for position, vector in zip(positions, vectors, strict=True):
            results[position] = vector
        return results

    async def _embed_documents(self, documents: list[str]) -> list[EmbeddingVector]:
        await self._ensure_setup()
        embedder = self.embedder
        if embedder is None:
            return self._fallback(documents)

        max_items = min(self.max_batch_size, embedder._max_chunks_per_batch())
        batches = batch_indices(len(documents), max_items)
        vectors: list[EmbeddingVector] = []
        with tracer.trace("embeddings.provider.embed"):
            current_span = tracer.current_span()
            if current_span:
                current_span.set_tag("batches.total", len(batches))
            for batch_num, (start, end) in enumerate(batches, 1):
                batch = documents[start:end]
                try:
                    vectors.extend(await self._call_remote(embedder, batch))
                except ProviderTransientError as e:
                    await logger.awarning(
                        "embedding request failed, using deterministic embeddings",
                        batch=batch_num,
                        batches=len(batches),
                        items=len(batch),
                        error=str(e.__cause__ or e),
                    )
                    vectors.extend(self._fallback(batch))
        await self.stats.print_stats()
        return vectors

    async def _call_remote(
        self, embedder: Embedder, batch: list[str]
    ) -> list[EmbeddingVector]:
        with tracer.trace("embeddings.provider.request"):
            start_time = time.perf_counter()
            try:
                response = await embedder.call_embed_api(batch)
            except Exception as e:
                raise ProviderTransientError() from e
            duration = time.perf_counter() - start_time
        if len(response.embeddings) != len(batch):
            raise ProviderTransientError(
                f"expected {len(batch)} embeddings, got {len(response.embeddings)}"
            )
        for embedding in response.embeddings:
            if len(embedding) != self.dimensions:
                raise ProviderTransientError(
                    f"expected {self.dimensions} dimensions, got {len(embedding)}"
                )
        self.stats.add_request_time(duration, len(batch))
        await logger.adebug(
            "embedding request finished",
            items=len(batch),
            seconds=duration,
            usage=response.usage,
        )
        return response.embeddings

    def _fallback(self, documents: list[str]) -> list[EmbeddingVector]:
        try:
            vectors = [self.fallback.embed_text(document) for document in documents]
        except Exception as e:
            raise EmbeddingProviderError() from e
        self.stats.add_fallback(len(documents))
        return vectors
