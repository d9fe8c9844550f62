"""
Embedding providers for carenotes.
"""

from functools import partial

from ..config import EmbeddingConfig
from .base import EmbeddingProvider, EmbeddingProviderFactory, ProgressCallback


def sentence_transformer_factory(config: EmbeddingConfig) -> EmbeddingProviderFactory:
    """Factory for the configured on-device sentence-transformers model."""
    from .embeddings import SentenceTransformerEmbedding

    def factory(progress: ProgressCallback) -> EmbeddingProvider:
        return SentenceTransformerEmbedding(
            config.model,
            cache_dir=config.cache_dir,
            progress=progress,
        )

    return factory


def static_factory(provider: EmbeddingProvider) -> EmbeddingProviderFactory:
    """Factory returning an already-built provider."""
    return partial(_return_provider, provider)


def _return_provider(provider: EmbeddingProvider, progress: ProgressCallback) -> EmbeddingProvider:
    progress(1.0)
    return provider


__all__ = [
    "EmbeddingProvider",
    "EmbeddingProviderFactory",
    "ProgressCallback",
    "sentence_transformer_factory",
    "static_factory",
]
