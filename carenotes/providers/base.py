"""
Provider protocols for the embedding layer.

Providers are matched structurally; anything with the right attributes
can be handed to EmbeddingGenerator, including test doubles.
"""

from typing import Callable, Protocol, runtime_checkable


# Receives download/load progress in [0, 1]
ProgressCallback = Callable[[float], None]


@runtime_checkable
class EmbeddingProvider(Protocol):
    """
    Turns record text into a fixed-length vector.

    Vectors written by the indexing loop and query vectors built for
    search must come from the same model, or distances are meaningless.
    A store built with one model needs its vector columns cleared before
    switching to another.

    Minimal implementation:
        class ConstantEmbedding:
            dimension = 384

            def embed(self, text: str) -> list[float]:
                return [1.0] * self.dimension

            def embed_batch(self, texts: list[str]) -> list[list[float]]:
                return [self.embed(t) for t in texts]
    """

    @property
    def dimension(self) -> int:
        """Vector length; must equal the store's vector width (384 by default)."""
        ...

    def embed(self, text: str) -> list[float]:
        """
        Embed one piece of text.

        May raise on model failure; EmbeddingGenerator turns that into None.
        """
        ...

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed several texts, returning one vector per input in order."""
        ...


# Builds a provider, reporting progress while weights download.
# Called once, off the caller's thread, by EmbeddingGenerator.load().
EmbeddingProviderFactory = Callable[[ProgressCallback], EmbeddingProvider]
