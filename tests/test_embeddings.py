"""Tests for the embedding generator state machine."""

import threading

import pytest

from carenotes.embeddings import EmbeddingGenerator, EmbeddingState
from carenotes.errors import EmbeddingError
from carenotes.providers import static_factory

from conftest import DIM, BlockingEmbeddingProvider, MockEmbeddingProvider


class ShortVectorProvider(MockEmbeddingProvider):
    def embed(self, text):
        return super().embed(text)[:10]


def _failing_factory(progress):
    progress(0.3)
    raise OSError("network unreachable")


class TestLoading:

    def test_starts_unloaded(self, mock_embedding_provider):
        gen = EmbeddingGenerator.from_provider(mock_embedding_provider)
        assert gen.state is EmbeddingState.UNLOADED
        assert not gen.is_ready
        assert gen.generate("hello") is None
        assert mock_embedding_provider.embed_calls == 0

    def test_foreground_load(self, mock_embedding_provider):
        gen = EmbeddingGenerator.from_provider(mock_embedding_provider)
        gen.load(background=False)
        assert gen.state is EmbeddingState.READY
        assert gen.download_progress == 1.0
        assert gen.error is None

    def test_background_load(self, mock_embedding_provider):
        gen = EmbeddingGenerator(static_factory(mock_embedding_provider), dimension=DIM)
        thread = gen.load()
        assert thread is not None
        assert gen.wait_until_settled(timeout=5)
        assert gen.is_ready

    def test_downloading_state_while_factory_runs(self, mock_embedding_provider):
        entered = threading.Event()
        release = threading.Event()

        def slow_factory(progress):
            progress(0.5)
            entered.set()
            release.wait(5)
            return mock_embedding_provider

        gen = EmbeddingGenerator(slow_factory, dimension=DIM)
        gen.load()
        assert entered.wait(5)
        assert gen.state is EmbeddingState.DOWNLOADING
        assert gen.download_progress == 0.5
        assert gen.generate("hello") is None

        release.set()
        assert gen.wait_until_settled(timeout=5)

    def test_load_only_once(self, mock_embedding_provider):
        calls = []

        def factory(progress):
            calls.append(1)
            return mock_embedding_provider

        gen = EmbeddingGenerator(factory, dimension=DIM)
        gen.load(background=False)
        assert gen.load(background=False) is None
        assert gen.load() is None
        assert calls == [1]

    def test_load_failure_enters_error_state(self, caplog):
        gen = EmbeddingGenerator(_failing_factory, dimension=DIM)
        gen.load(background=False)

        assert gen.state is EmbeddingState.ERROR
        assert isinstance(gen.error, EmbeddingError)
        assert "network unreachable" in str(gen.error)
        assert gen.generate("hello") is None
        assert "failed to load" in caplog.text

    def test_error_state_is_terminal(self):
        gen = EmbeddingGenerator(_failing_factory, dimension=DIM)
        gen.load(background=False)
        gen.load(background=False)
        assert gen.state is EmbeddingState.ERROR

    def test_dimension_mismatch_is_a_load_error(self, mock_embedding_provider):
        gen = EmbeddingGenerator(static_factory(mock_embedding_provider), dimension=512)
        gen.load(background=False)
        assert gen.state is EmbeddingState.ERROR
        assert "384" in str(gen.error)

    def test_progress_is_clamped(self, mock_embedding_provider):
        seen = []

        def factory(progress):
            progress(-1)
            seen.append(gen.download_progress)
            progress(7)
            seen.append(gen.download_progress)
            return mock_embedding_provider

        gen = EmbeddingGenerator(factory, dimension=DIM)
        gen.load(background=False)
        assert seen == [0.0, 1.0]


class TestReadyCallbacks:

    def test_fires_once_on_ready(self, mock_embedding_provider):
        gen = EmbeddingGenerator.from_provider(mock_embedding_provider)
        calls = []
        gen.on_ready(lambda: calls.append(1))
        gen.load(background=False)
        assert calls == [1]

    def test_fires_immediately_when_already_ready(self, generator):
        calls = []
        gen_cancel = generator.on_ready(lambda: calls.append(1))
        assert calls == [1]
        gen_cancel()

    def test_cancelled_callback_does_not_fire(self, mock_embedding_provider):
        gen = EmbeddingGenerator.from_provider(mock_embedding_provider)
        calls = []
        cancel = gen.on_ready(lambda: calls.append(1))
        cancel()
        gen.load(background=False)
        assert calls == []

    def test_never_fires_on_error(self):
        gen = EmbeddingGenerator(_failing_factory, dimension=DIM)
        calls = []
        gen.on_ready(lambda: calls.append("before"))
        gen.load(background=False)
        gen.on_ready(lambda: calls.append("after"))
        assert calls == []

    def test_failing_callback_does_not_break_load(self, mock_embedding_provider):
        gen = EmbeddingGenerator.from_provider(mock_embedding_provider)
        calls = []

        def broken():
            raise RuntimeError("boom")

        gen.on_ready(broken)
        gen.on_ready(lambda: calls.append(1))
        gen.load(background=False)
        assert gen.is_ready
        assert calls == [1]


class TestGenerate:

    def test_returns_full_length_vector(self, generator):
        vector = generator.generate("type 2 diabetes")
        assert vector is not None
        assert len(vector) == DIM
        assert all(isinstance(x, float) for x in vector)

    def test_deterministic(self, generator):
        assert generator.generate("asthma") == generator.generate("asthma")

    @pytest.mark.parametrize("text", ["", "   ", "\n\t"])
    def test_blank_text_returns_none(self, generator, mock_embedding_provider, text):
        assert generator.generate(text) is None
        assert mock_embedding_provider.embed_calls == 0

    def test_model_failure_returns_none(self, caplog):
        gen = EmbeddingGenerator.from_provider(MockEmbeddingProvider(fail_on=("poison",)))
        gen.load(background=False)
        assert gen.generate("poison pill") is None
        assert gen.generate("fine") is not None
        assert gen.is_ready
        assert "Failed to generate embedding" in caplog.text

    def test_wrong_length_output_returns_none(self):
        gen = EmbeddingGenerator(static_factory(ShortVectorProvider()), dimension=DIM)
        gen.load(background=False)
        assert gen.generate("hello") is None

    def test_is_generating_during_call(self):
        provider = BlockingEmbeddingProvider()
        gen = EmbeddingGenerator.from_provider(provider)
        gen.load(background=False)

        results = []
        worker = threading.Thread(target=lambda: results.append(gen.generate("slow")))
        worker.start()
        assert provider.entered.wait(5)
        assert gen.is_generating

        provider.release.set()
        worker.join(5)
        assert not gen.is_generating
        assert results[0] is not None
