"""
Semantic search over indexed nodes and actors.

Rows are ranked by cosine distance between their stored vector and the
query vector, closest first. Rows that haven't been indexed yet have no
vector and are simply absent from results.
"""

import logging
from typing import Optional, Sequence

from .embeddings import EmbeddingGenerator
from .store import LocalStore

logger = logging.getLogger(__name__)

SEARCH_KINDS = ("entities", "actors")


def similarity(distance: float) -> float:
    """Presentation helper: 1 for identical direction, 0 for orthogonal."""
    return 1.0 - distance


def _check_limit(limit: int) -> None:
    if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
        raise ValueError(f"limit must be a positive integer, got {limit!r}")


class SemanticSearch:
    """Nearest-neighbour queries against the store's vector columns."""

    def __init__(self, store: LocalStore, generator: Optional[EmbeddingGenerator] = None):
        self._store = store
        self._generator = generator

    def _check_vector(self, query_vector: Sequence[float]) -> None:
        if len(query_vector) != self._store.dimension:
            raise ValueError(
                f"Query vector has {len(query_vector)} dimensions, "
                f"expected {self._store.dimension}"
            )

    def search_entities(self, query_vector: Sequence[float], limit: int = 5) -> list[dict]:
        """
        Indexed nodes closest to ``query_vector``.

        Each row carries its raw cosine ``distance`` (0 = same direction,
        2 = opposite), in ascending order.

        Raises:
            ValueError: If limit isn't a positive integer or the vector has
                the wrong length
        """
        _check_limit(limit)
        self._check_vector(query_vector)
        return self._store.nearest("nodes", query_vector, limit)

    def search_actors(self, query_vector: Sequence[float], limit: int = 5) -> list[dict]:
        """Indexed actors closest to ``query_vector``; see search_entities()."""
        _check_limit(limit)
        self._check_vector(query_vector)
        return self._store.nearest("actors", query_vector, limit)

    def search_text(self, query: str, limit: int = 10, *, kind: str = "entities") -> list[dict]:
        """
        Embed a text query (typed, or a transcription) and search with it.

        Returns an empty list when no vector can be produced: no
        generator, model not ready, or a blank query.
        """
        _check_limit(limit)
        if kind not in SEARCH_KINDS:
            raise ValueError(f"Unknown search kind {kind!r}; expected one of {SEARCH_KINDS}")
        if self._generator is None:
            return []
        vector = self._generator.generate(query)
        if vector is None:
            logger.debug("No query vector for %r (model ready: %s)", query, self._generator.is_ready)
            return []
        if kind == "actors":
            return self.search_actors(vector, limit)
        return self.search_entities(vector, limit)
