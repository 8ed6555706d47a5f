__version__ = "0.4.0"

from .tracing import configure_tracing

configure_tracing()

from .pipeline import EmbeddingPipeline  # noqa: E402

__all__ = ["EmbeddingPipeline"]
