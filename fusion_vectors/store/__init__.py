from .base import VectorStore
from .memory import InMemoryVectorStore

__all__ = ["InMemoryVectorStore", "VectorStore"]
