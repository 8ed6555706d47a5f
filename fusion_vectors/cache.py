import threading
from collections.abc import Sequence

import structlog

from .embeddings import cache_key, is_blank
from .models import CacheStats, EmbeddingVector
from .provider import EmbeddingProvider

logger = structlog.get_logger()


class EmbeddingCache:
    """
    Content-addressed, process-lifetime cache of text -> vector.

    Keys are derived from the lower-cased, trimmed text, so texts differing
    only in case or surrounding whitespace share an entry. The cache is an
    optimization only: clearing it never touches persisted vectors.
    Safe to share between threads and tasks; the last writer of a key wins.
    """

    def __init__(self):
        self._entries: dict[str, EmbeddingVector] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, text: str) -> EmbeddingVector | None:
        key = cache_key(text)
        with self._lock:
            vector = self._entries.get(key)
            if vector is None:
                self.misses += 1
            else:
                self.hits += 1
            return vector

    def put(self, text: str, vector: EmbeddingVector) -> None:
        key = cache_key(text)
        with self._lock:
            self._entries[key] = vector

    def clear(self) -> None:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.info("embedding cache cleared", entries=count)

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                count=len(self._entries),
                approx_bytes=sum(len(v) * 8 for v in self._entries.values()),
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, text: str) -> bool:
        with self._lock:
            return cache_key(text) in self._entries


class CachedEmbedder:
    """
    Cache-first front of an EmbeddingProvider.

    Every distinct cache key missing from the cache is generated once per
    call, no matter how many inputs share it, and every generated vector is
    stored back into the cache.
    """

    def __init__(self, provider: EmbeddingProvider, cache: EmbeddingCache):
        self.provider = provider
        self.cache = cache

    @property
    def dimensions(self) -> int:
        return self.provider.dimensions

    async def embed(self, text: str | None) -> EmbeddingVector | None:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(
        self, texts: Sequence[str | None]
    ) -> list[EmbeddingVector | None]:
        results: list[EmbeddingVector | None] = [None] * len(texts)
        # cache key -> (text, positions waiting for it)
        pending: dict[str, tuple[str, list[int]]] = {}
        for i, text in enumerate(texts):
            if text is None or is_blank(text):
                continue
            key = cache_key(text)
            if key in pending:
                pending[key][1].append(i)
                continue
            cached = self.cache.get(text)
            if cached is not None:
                results[i] = cached
            else:
                pending[key] = (text, [i])

        if not pending:
            return results

        to_generate = [text for text, _ in pending.values()]
        await logger.adebug(
            "embedding cache lookup",
            requested=len(texts),
            generating=len(to_generate),
        )
        generated = await self.provider.generate_batch(to_generate)
        for (text, positions), vector in zip(
            pending.values(), generated, strict=True
        ):
            if vector is None:
                continue
            self.cache.put(text, vector)
            for position in positions:
                results[position] = vector
        return results
