import os

import pytest

from fusion_vectors.cache import CachedEmbedder, EmbeddingCache
from fusion_vectors.configuration import PipelineConfig, ProcessingConfig
from fusion_vectors.indexing.config import NoIndexing
from fusion_vectors.pipeline import EmbeddingPipeline
from fusion_vectors.provider import EmbeddingProvider
from fusion_vectors.store.memory import InMemoryVectorStore
from tests.utils import CountingEmbedding


@pytest.fixture(autouse=True)
def __env_setup():  # type:ignore
    # Tests must never pick up a real API key or embedder from the environment.
    original_env = os.environ.copy()
    for name in list(os.environ):
        if name.startswith("FUSION_VECTORS_"):
            del os.environ[name]
    os.environ.pop("OPENAI_API_KEY", None)
    yield
    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def counting_fallback() -> CountingEmbedding:
    return CountingEmbedding()


@pytest.fixture
def provider(counting_fallback: CountingEmbedding) -> EmbeddingProvider:
    return EmbeddingProvider(fallback=counting_fallback)


@pytest.fixture
def cache() -> EmbeddingCache:
    return EmbeddingCache()


@pytest.fixture
def cached_embedder(
    provider: EmbeddingProvider, cache: EmbeddingCache
) -> CachedEmbedder:
    return CachedEmbedder(provider, cache)


@pytest.fixture
def processing_config() -> ProcessingConfig:
    return ProcessingConfig(batch_size=5, delay=0)


@pytest.fixture
def store() -> InMemoryVectorStore:
    return InMemoryVectorStore()


@pytest.fixture
def pipeline(
    store: InMemoryVectorStore,
    provider: EmbeddingProvider,
    cache: EmbeddingCache,
    processing_config: ProcessingConfig,
) -> EmbeddingPipeline:
    config = PipelineConfig(processing=processing_config, indexing=NoIndexing())
    return EmbeddingPipeline(store, config, provider=provider, cache=cache)
