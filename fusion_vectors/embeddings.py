import struct
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

import numpy as np
import structlog

from .models import EmbeddingVector

logger = structlog.get_logger()

CACHE_KEY_PREFIX = "emb_"


@dataclass
class Usage:
    """The number of tokens used in an embedding request"""

    prompt_tokens: int
    total_tokens: int


@dataclass
class EmbeddingResponse:
    """A generic embedding response"""

    embeddings: list[EmbeddingVector]
    usage: Usage


def batch_indices(item_count: int, max_items_per_batch: int) -> list[tuple[int, int]]:
    """
    Splits `item_count` consecutive items into (start, end) slices holding at
    most `max_items_per_batch` items each.
    """
    if max_items_per_batch < 1:
        raise ValueError("max_items_per_batch must be positive")
    return [
        (start, min(start + max_items_per_batch, item_count))
        for start in range(0, item_count, max_items_per_batch)
    ]


def string_hash(text: str) -> int:
    """
    32-bit rolling hash (h * 31 + c) over the UTF-16 code units of `text`,
    wrapped to a signed 32-bit integer. Returns the absolute value.
    """
    data = text.encode("utf-16-le", "surrogatepass")
    h = 0
    for unit in struct.unpack(f"<{len(data) // 2}H", data):
        h = (h * 31 + unit) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h)


def normalize_text(text: str) -> str:
    return text.strip().lower()


def cache_key(text: str) -> str:
    return f"{CACHE_KEY_PREFIX}{string_hash(normalize_text(text))}"


def is_blank(text: str | None) -> bool:
    return text is None or text.strip() == ""


class DeterministicEmbedding:
    """
    Local, provider-independent embedding generator.

    Each component is sin(hash * (i + 1)) * 0.5 for the hash of the
    normalized text, and the vector is scaled to unit length. Identical text
    always yields the identical vector, which keeps the cache consistent
    whether a value came from the provider or from here.
    """

    def __init__(self, dimensions: int = 384):
        if dimensions < 1:
            raise ValueError("dimensions must be positive")
        self.dimensions = dimensions

    def embed_text(self, text: str) -> EmbeddingVector:
        h = string_hash(normalize_text(text))
        vector = np.sin(h * np.arange(1, self.dimensions + 1, dtype=np.float64)) * 0.5
        magnitude = float(np.linalg.norm(vector))
        if magnitude == 0.0:
            # only reachable when the hash is 0
            vector = np.zeros(self.dimensions, dtype=np.float64)
            vector[0] = 1.0
            return vector.tolist()
        return (vector / magnitude).tolist()


class Embedder(ABC):
    """
    Abstract base class for a remote Embedder.

    Concrete embedders only know how to call their API for one request.
    Batching, truncation and fallback are handled by the EmbeddingProvider.
    """

    @abstractmethod
    def _max_chunks_per_batch(self) -> int:
        """
        The maximum number of documents that can be embedded per API call
        :return: int: the max document count
        """

    async def setup(self) -> None:  # noqa: B027 empty on purpose
        """
        Setup the embedder
        """

    @abstractmethod
    async def call_embed_api(self, documents: list[str]) -> EmbeddingResponse:
        """
        Call the embed API
        :param documents:
        :return:
        """


class BaseURLMixin:
    """
    A mixin class that provides functionality for managing base URLs.

    Attributes:
        base_url (str | None): The base URL for the API.
    """

    base_url: str | None = None


class ApiKeyMixin:
    """
    A mixin class that provides functionality for managing API keys.

    Attributes:
        api_key_name (str): The name of the environment variable holding
            the API key.
    """

    api_key_name: str | None = None
    _api_key_: str | None = None

    @property
    def _api_key(self) -> str:
        """
        Retrieves the stored API key.

        Raises:
            ValueError: If the API key has not been set.
        """
        if self._api_key_ is None:
            raise ValueError("API key not set")
        return self._api_key_

    @property
    def has_api_key(self) -> bool:
        return self._api_key_ is not None

    def set_api_key(self, secrets: dict[str, str | None]):
        """
        Sets the API key from the provided secrets.

        Raises:
            ValueError: If the API key is missing from the secrets.
        """
        api_key = (
            secrets.get(self.api_key_name, None)
            if self.api_key_name is not None
            else None
        )
        if not api_key:
            raise ValueError(f"missing API key: {self.api_key_name}")
        self._api_key_ = api_key


class EmbeddingStats:
    """
    Tracks embedding statistics of one provider.

    Attributes:
        total_request_time (float): The total time spent on remote requests.
        total_items (int): The number of texts embedded remotely.
        fallback_items (int): The number of texts embedded by the fallback.
        wall_start (float): The time at which tracking started.
    """

    def __init__(self):
        self.total_request_time = 0.0
        self.total_items = 0
        self.fallback_items = 0
        self.wall_start = time.perf_counter()

    def add_request_time(self, duration: float, item_count: int):
        self.total_request_time += duration
        self.total_items += item_count

    def add_fallback(self, item_count: int):
        self.fallback_items += item_count

    def items_per_second(self) -> float:
        return (
            self.total_items / self.total_request_time
            if self.total_request_time > 0
            else 0
        )

    async def print_stats(self):
        await logger.adebug(
            "Embedding stats",
            total_request_time=self.total_request_time,
            wall_time=time.perf_counter() - self.wall_start,
            total_items=self.total_items,
            fallback_items=self.fallback_items,
            items_per_second=self.items_per_second(),
        )
