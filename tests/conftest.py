"""
Shared pytest fixtures for carenotes tests.

Provides mock embedding providers to avoid loading ML models during testing.
"""

import hashlib
import threading
from pathlib import Path

import pytest

from carenotes.api import CareNotes
from carenotes.config import StoreConfig
from carenotes.embeddings import EmbeddingGenerator
from carenotes.notify import ChangeBus
from carenotes.providers import static_factory
from carenotes.store import LocalStore

DIM = 384


class MockEmbeddingProvider:
    """
    Deterministic mock embedding provider for testing.

    Generates consistent embeddings based on text hash - no ML model loading.
    Texts containing any string in ``fail_on`` raise instead.
    """

    dimension = DIM
    model_name = "mock-model"

    def __init__(self, fail_on: tuple[str, ...] = ()):
        self.embed_calls = 0
        self.batch_calls = 0
        self.texts: list[str] = []
        self.fail_on = fail_on

    def embed(self, text: str) -> list[float]:
        """Generate deterministic embedding from text hash."""
        self.embed_calls += 1
        self.texts.append(text)
        if any(marker in text for marker in self.fail_on):
            raise RuntimeError(f"mock inference failure for {text!r}")
        h = hashlib.md5(text.encode()).hexdigest()
        embedding = []
        for i in range(0, 32, 2):
            val = int(h[i:i+2], 16) / 255.0 - 0.5
            embedding.append(val)
        # Pad to full dimension
        return (embedding * 24)[:self.dimension]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.batch_calls += 1
        return [self.embed(t) for t in texts]


class ConstantEmbeddingProvider:
    """Returns the same vector for every text."""

    dimension = DIM

    def __init__(self, vector: list[float]):
        self.vector = list(vector)
        self.embed_calls = 0

    def embed(self, text: str) -> list[float]:
        self.embed_calls += 1
        return list(self.vector)

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self.embed(t) for t in texts]


class BlockingEmbeddingProvider(MockEmbeddingProvider):
    """Blocks inside embed() until released, to observe in-flight state."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def embed(self, text: str) -> list[float]:
        self.entered.set()
        self.release.wait(5)
        return super().embed(text)


def unit_vector(index: int, dim: int = DIM) -> list[float]:
    v = [0.0] * dim
    v[index] = 1.0
    return v


def ready_generator(provider) -> EmbeddingGenerator:
    gen = EmbeddingGenerator.from_provider(provider)
    gen.load(background=False)
    assert gen.is_ready
    return gen


@pytest.fixture(autouse=True)
def _no_remote_env(monkeypatch):
    """Tests never pick up a developer's real sync credentials."""
    monkeypatch.delenv("CARENOTES_SYNC_URL", raising=False)
    monkeypatch.delenv("CARENOTES_SYNC_TOKEN", raising=False)
    monkeypatch.delenv("CARENOTES_STORE_PATH", raising=False)


@pytest.fixture
def mock_embedding_provider():
    """Create a fresh MockEmbeddingProvider instance."""
    return MockEmbeddingProvider()


@pytest.fixture
def store(tmp_path: Path):
    s = LocalStore(tmp_path / "carenotes.db")
    yield s
    s.close()


@pytest.fixture
def bus():
    return ChangeBus()


@pytest.fixture
def generator(mock_embedding_provider):
    """A READY generator backed by the mock provider."""
    return ready_generator(mock_embedding_provider)


@pytest.fixture
def notes(tmp_path: Path, mock_embedding_provider):
    """A CareNotes container with the mock provider, model not yet loaded."""
    app = CareNotes(
        config=StoreConfig(path=tmp_path),
        embedding_factory=static_factory(mock_embedding_provider),
        ops_log=False,
    )
    yield app
    app.close()
