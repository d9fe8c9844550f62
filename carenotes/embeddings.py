"""
Embedding generator: text to fixed-length vectors with an on-device model.

The model is not available immediately. It moves through

    UNLOADED -> DOWNLOADING -> READY
                            -> ERROR

on a background thread started by load(). Until READY, generate()
returns None rather than blocking or raising, so callers can treat
"no vector yet" the same way whether the model is still downloading,
failed to load, or the input was empty.
"""

import enum
import logging
import threading
from typing import Callable, Optional

from .errors import EmbeddingError
from .providers import static_factory
from .providers.base import EmbeddingProvider, EmbeddingProviderFactory

logger = logging.getLogger(__name__)


class EmbeddingState(str, enum.Enum):
    UNLOADED = "unloaded"
    DOWNLOADING = "downloading"
    READY = "ready"
    ERROR = "error"


class EmbeddingGenerator:
    """
    Wraps an embedding provider with readiness tracking.

    Readable status: ``state``, ``is_ready``, ``is_generating``,
    ``error`` and ``download_progress``.

    generate() may be called from several threads at once; the wrapper
    adds no locking around the model call. Batch callers such as the
    indexing loop should call it sequentially.
    """

    def __init__(self, factory: EmbeddingProviderFactory, *, dimension: int = 384):
        self._factory = factory
        self._dimension = dimension
        self._provider: Optional[EmbeddingProvider] = None
        self._state = EmbeddingState.UNLOADED
        self._error: Optional[EmbeddingError] = None
        self._progress = 0.0
        self._generating = 0
        self._lock = threading.Lock()
        self._settled = threading.Event()
        self._ready_callbacks: list[Callable[[], None]] = []
        self._last_logged_decile = -1

    @classmethod
    def from_provider(cls, provider: EmbeddingProvider, *, dimension: Optional[int] = None) -> "EmbeddingGenerator":
        """A generator that is READY as soon as load() runs, for injected providers."""
        return cls(static_factory(provider), dimension=dimension or provider.dimension)

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    @property
    def state(self) -> EmbeddingState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is EmbeddingState.READY

    @property
    def is_generating(self) -> bool:
        return self._generating > 0

    @property
    def error(self) -> Optional[EmbeddingError]:
        return self._error

    @property
    def download_progress(self) -> float:
        return self._progress

    @property
    def dimension(self) -> int:
        return self._dimension

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    def load(self, *, background: bool = True) -> Optional[threading.Thread]:
        """
        Start loading the model. Only the first call has any effect.

        Args:
            background: Load on a daemon thread (default) or block until
                the model is READY or ERROR

        Returns:
            The loader thread when loading in the background, else None
        """
        with self._lock:
            if self._state is not EmbeddingState.UNLOADED:
                return None
            self._state = EmbeddingState.DOWNLOADING
            self._progress = 0.0

        if not background:
            self._load()
            return None
        thread = threading.Thread(target=self._load, name="carenotes-embedding-load", daemon=True)
        thread.start()
        return thread

    def wait_until_settled(self, timeout: Optional[float] = None) -> bool:
        """Block until the model is READY or ERROR. Returns is_ready."""
        self._settled.wait(timeout)
        return self.is_ready

    def _set_progress(self, fraction: float) -> None:
        self._progress = min(1.0, max(0.0, float(fraction)))
        decile = int(self._progress * 10)
        if 0 < self._progress < 1 and decile != self._last_logged_decile:
            self._last_logged_decile = decile
            logger.info("Embedding model download progress: %.1f%%", self._progress * 100)

    def _load(self) -> None:
        try:
            provider = self._factory(self._set_progress)
            if provider.dimension != self._dimension:
                raise EmbeddingError(
                    f"Model produces {provider.dimension}-dimension vectors, "
                    f"store expects {self._dimension}"
                )
        except Exception as e:
            error = e if isinstance(e, EmbeddingError) else EmbeddingError(str(e))
            with self._lock:
                self._error = error
                self._state = EmbeddingState.ERROR
                self._ready_callbacks.clear()
            logger.error("Embedding model failed to load: %s", e)
            self._settled.set()
            return

        with self._lock:
            self._provider = provider
            self._progress = 1.0
            self._state = EmbeddingState.READY
            callbacks = self._ready_callbacks
            self._ready_callbacks = []
        logger.info("Embedding model is ready for inference")
        self._settled.set()
        for callback in callbacks:
            self._fire(callback)

    def on_ready(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Call ``callback`` once when the model first becomes READY.

        Runs immediately if the model is already READY. Never runs if
        loading fails.

        Returns:
            A function that cancels the pending callback
        """
        with self._lock:
            if self._state is not EmbeddingState.READY:
                if self._state is not EmbeddingState.ERROR:
                    self._ready_callbacks.append(callback)

                def cancel() -> None:
                    with self._lock:
                        if callback in self._ready_callbacks:
                            self._ready_callbacks.remove(callback)

                return cancel
        self._fire(callback)
        return lambda: None

    @staticmethod
    def _fire(callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception as e:
            logger.warning("Ready callback %r failed: %s", callback, e, exc_info=True)

    # -------------------------------------------------------------------------
    # Inference
    # -------------------------------------------------------------------------

    def generate(self, text: str) -> Optional[list[float]]:
        """
        Embed ``text``.

        Returns:
            A ``dimension``-length vector, or None when the model isn't
            ready, is in the error state, the text is empty, or the model
            call fails
        """
        if not text or not text.strip():
            return None
        provider = self._provider
        if self._state is not EmbeddingState.READY or provider is None:
            return None

        with self._lock:
            self._generating += 1
        try:
            vector = [float(x) for x in provider.embed(text)]
        except Exception as e:
            logger.error("Failed to generate embedding: %s", e)
            return None
        finally:
            with self._lock:
                self._generating -= 1

        if len(vector) != self._dimension:
            logger.error(
                "Embedding has %d dimensions, expected %d", len(vector), self._dimension
            )
            return None
        return vector
