import os
from typing import Annotated, Any, Literal

from annotated_types import Ge, Gt, Le
from pydantic import BaseModel, Field

from .embedders import Ollama, OpenAI
from .indexing.config import HNSWIndexing, IVFFlatIndexing, NoIndexing

ENV_PREFIX = "FUSION_VECTORS_"

LogLevel = Literal[
    "CRITICAL",
    "FATAL",
    "ERROR",
    "WARN",
    "WARNING",
    "INFO",
    "DEBUG",
]


class EmbeddingConfig(BaseModel):
    """
    Embedding settings.

    Attributes:
        embedder: The remote embedder. None means the deterministic local
            generator is used for every text.
        dimensions: The dimension of every stored vector.
        max_input_chars: Texts are truncated to this many characters before
            they are sent to the remote embedder.
        max_batch_size: The maximum number of texts per remote request.
    """

    embedder: Annotated[OpenAI | Ollama, Field(discriminator="implementation")] | None = (
        None
    )
    dimensions: Annotated[int, Gt(gt=0), Le(le=16000)] = 384
    max_input_chars: Annotated[int, Gt(gt=0)] = 8191
    max_batch_size: Annotated[int, Gt(gt=0), Le(le=2048)] = 100


class ProcessingConfig(BaseModel):
    """
    Batch processing settings.

    Attributes:
        batch_size: Records per sub-batch, between 1 and 2048. Default is 50.
        concurrency: Sub-batches in flight at once, between 1 and 10.
        delay: Pause in seconds after each sub-batch. Default is 0.1.
        log_level: The log level used by the CLI and worker.
    """

    implementation: Literal["default"] = "default"
    batch_size: Annotated[int, Gt(gt=0), Le(le=2048)] = 50
    concurrency: Annotated[int, Gt(gt=0), Le(le=10)] = 1
    delay: Annotated[float, Ge(ge=0)] = 0.1
    log_level: LogLevel = "INFO"


class SearchConfig(BaseModel):
    """
    Similarity search defaults. The threshold is a cosine distance: only
    candidates strictly closer than it are returned.
    """

    threshold: Annotated[float, Gt(gt=0), Le(le=2)] = 0.8
    limit: Annotated[int, Ge(ge=1), Le(le=1000)] = 20
    similar_limit: Annotated[int, Ge(ge=1), Le(le=1000)] = 10


class PipelineConfig(BaseModel):
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    processing: ProcessingConfig = Field(default_factory=ProcessingConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    indexing: HNSWIndexing | IVFFlatIndexing | NoIndexing = Field(
        default_factory=HNSWIndexing, discriminator="implementation"
    )

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "PipelineConfig":
        """Build a configuration from FUSION_VECTORS_* environment variables.

        Unset variables keep their defaults. FUSION_VECTORS_EMBEDDER selects
        "openai" (default), "ollama" or "none".
        """
        env = dict(os.environ if environ is None else environ)

        def get(name: str) -> str | None:
            value = env.get(ENV_PREFIX + name)
            return value if value else None

        embedder: dict[str, Any] | None = None
        implementation = (get("EMBEDDER") or "openai").lower()
        if implementation != "none":
            embedder = {"implementation": implementation}
            if get("MODEL"):
                embedder["model"] = get("MODEL")
            if get("BASE_URL"):
                embedder["base_url"] = get("BASE_URL")
            if implementation == "openai" and get("API_KEY_NAME"):
                embedder["api_key_name"] = get("API_KEY_NAME")

        embedding: dict[str, Any] = {"embedder": embedder}
        if get("DIMENSIONS"):
            embedding["dimensions"] = get("DIMENSIONS")
        if get("MAX_INPUT_CHARS"):
            embedding["max_input_chars"] = get("MAX_INPUT_CHARS")

        processing: dict[str, Any] = {}
        for key in ("batch_size", "concurrency", "delay", "log_level"):
            value = get(key.upper())
            if value is not None:
                processing[key] = value.upper() if key == "log_level" else value

        search: dict[str, Any] = {}
        if get("THRESHOLD"):
            search["threshold"] = get("THRESHOLD")

        indexing = {"implementation": (get("INDEX") or "hnsw").lower()}

        return cls.model_validate(
            {
                "embedding": embedding,
                "processing": processing,
                "search": search,
                "indexing": indexing,
            }
        )
