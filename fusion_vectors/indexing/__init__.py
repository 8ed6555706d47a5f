from .base import Candidate, VectorIndex
from .brute_force import BruteForceIndex
from .config import (
    HNSWIndexing,
    IndexingConfig,
    IVFFlatIndexing,
    NoIndexing,
    select_indexing,
)

__all__ = [
    "BruteForceIndex",
    "Candidate",
    "HNSWIndexing",
    "IVFFlatIndexing",
    "IndexingConfig",
    "NoIndexing",
    "VectorIndex",
    "select_indexing",
]
