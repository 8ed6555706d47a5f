import numpy as np
import pytest

from fusion_vectors.configuration import EmbeddingConfig
from fusion_vectors.embedders import Ollama, OpenAI
from fusion_vectors.embeddings import DeterministicEmbedding
from fusion_vectors.errors import EmbeddingProviderError, ProviderUnavailableError
from fusion_vectors.provider import EmbeddingProvider
from tests.utils import DIMENSION_COUNT, CountingEmbedding, FakeEmbedder


def is_remote(vector: list[float]) -> bool:
    # FakeEmbedder vectors are one-hot with value 2.0
    return max(vector) == 2.0


async def test_unconfigured_provider_uses_fallback():
    provider = EmbeddingProvider()
    assert not provider.available
    assert isinstance(provider.unavailable_reason, ProviderUnavailableError)

    vector = await provider.generate("robbery near station")
    assert vector == DeterministicEmbedding(DIMENSION_COUNT).embed_text(
        "robbery near station"
    )
    assert provider.stats.fallback_items == 1


async def test_generate_batch_keeps_positions():
    provider = EmbeddingProvider(embedder=FakeEmbedder())
    results = await provider.generate_batch(["a", "", None, "   ", "bb"])
    assert len(results) == 5
    assert results[1] is None
    assert results[2] is None
    assert results[3] is None
    assert results[0] is not None and results[0][1] == 2.0
    assert results[4] is not None and results[4][2] == 2.0


async def test_generate_blank_text_returns_none():
    provider = EmbeddingProvider(embedder=FakeEmbedder())
    assert await provider.generate("  ") is None
    assert await provider.generate_batch([]) == []


async def test_long_text_is_truncated():
    embedder = FakeEmbedder()
    provider = EmbeddingProvider(embedder=embedder, max_input_chars=10)
    await provider.generate("x" * 50)
    assert embedder.requests == [["x" * 10]]


@pytest.mark.parametrize(
    "max_batch_size,max_chunks,expected_sizes",
    [
        (3, 2048, [3, 3, 1]),
        (100, 2, [2, 2, 2, 1]),
        (100, 2048, [7]),
    ],
)
async def test_requests_are_split_into_sub_chunks(
    max_batch_size: int, max_chunks: int, expected_sizes: list[int]
):
    embedder = FakeEmbedder(max_chunks=max_chunks)
    provider = EmbeddingProvider(embedder=embedder, max_batch_size=max_batch_size)
    texts = ["t" * (i + 1) for i in range(7)]
    results = await provider.generate_batch(texts)
    assert [len(r) for r in embedder.requests] == expected_sizes
    # order is preserved across sub-chunks
    for i, vector in enumerate(results):
        assert vector is not None
        assert vector[(i + 1) % DIMENSION_COUNT] == 2.0


async def test_transient_failure_only_affects_its_sub_chunk():
    embedder = FakeEmbedder(fail_requests=[2])
    fallback = CountingEmbedding()
    provider = EmbeddingProvider(
        embedder=embedder, max_batch_size=3, fallback=fallback
    )
    texts = [f"incident {i}" for i in range(7)]
    results = await provider.generate_batch(texts)

    assert provider.available
    assert [is_remote(v) for v in results] == [  # type: ignore[arg-type]
        True,
        True,
        True,
        False,
        False,
        False,
        True,
    ]
    assert fallback.calls == texts[3:6]
    assert provider.stats.fallback_items == 3
    assert provider.stats.total_items == 4


async def test_wrong_dimension_response_falls_back():
    provider = EmbeddingProvider(embedder=FakeEmbedder(wrong_dimensions=True))
    vector = await provider.generate("a")
    assert vector is not None
    assert len(vector) == DIMENSION_COUNT
    assert abs(np.linalg.norm(vector) - 1.0) < 1e-6


async def test_failed_setup_marks_provider_unavailable():
    embedder = FakeEmbedder(setup_error=ConnectionError("connection refused"))
    provider = EmbeddingProvider(embedder=embedder)
    assert provider.available

    vector = await provider.generate("a")

    assert vector is not None
    assert not provider.available
    assert "connection refused" in str(provider.unavailable_reason)
    assert embedder.requests == []


async def test_fallback_failure_propagates():
    class BrokenEmbedding(DeterministicEmbedding):
        def embed_text(self, text: str) -> list[float]:
            raise RuntimeError("boom")

    provider = EmbeddingProvider(fallback=BrokenEmbedding(DIMENSION_COUNT))
    with pytest.raises(EmbeddingProviderError):
        await provider.generate("a")


def test_fallback_dimension_must_match():
    with pytest.raises(ValueError):
        EmbeddingProvider(dimensions=8, fallback=DeterministicEmbedding(16))


def test_from_config_without_api_key_falls_back():
    config = EmbeddingConfig(embedder=OpenAI())
    provider = EmbeddingProvider.from_config(config, secrets={})
    assert not provider.available
    assert "OPENAI_API_KEY" in str(provider.unavailable_reason)


def test_from_config_sets_key_and_dimensions():
    config = EmbeddingConfig(embedder=OpenAI(), dimensions=256)
    provider = EmbeddingProvider.from_config(
        config, secrets={"OPENAI_API_KEY": "sk-test"}
    )
    assert provider.available
    assert isinstance(provider.embedder, OpenAI)
    assert provider.embedder.dimensions == 256
    assert provider.embedder.has_api_key
    assert provider.dimensions == 256
    # the configured model is left untouched
    assert config.embedder is not None
    assert config.embedder.dimensions is None


def test_from_config_reads_key_from_environment(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("MY_KEY", "sk-env")
    config = EmbeddingConfig(embedder=OpenAI(api_key_name="MY_KEY"))
    provider = EmbeddingProvider.from_config(config)
    assert provider.available


def test_from_config_ollama_needs_no_key():
    config = EmbeddingConfig(embedder=Ollama())
    provider = EmbeddingProvider.from_config(config)
    assert provider.available
    assert isinstance(provider.embedder, Ollama)


def test_from_config_without_embedder():
    provider = EmbeddingProvider.from_config(EmbeddingConfig())
    assert not provider.available
    assert provider.dimensions == DIMENSION_COUNT
