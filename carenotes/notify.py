"""
Change notification bus.

A "the store may have changed" signal with no payload. Writers call
notify() after inserting rows or applying a sync pull; subscribers
(the indexing loop, UI views) re-query the store themselves.
"""

import logging
import threading
from concurrent.futures import Executor
from typing import Callable, Optional

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[], None]


class ChangeBus:
    """
    Process-local publish/subscribe signal.

    Handlers run synchronously on the notifying thread, or are submitted
    to ``executor`` when one is given so a slow subscriber can't hold up
    the others. Handlers must be independent of each other and tolerate
    being called more often than strictly necessary.
    """

    def __init__(self, executor: Optional[Executor] = None):
        self._executor = executor
        self._handlers: dict[int, ChangeHandler] = {}
        self._next_token = 0
        self._lock = threading.Lock()

    def subscribe(self, handler: ChangeHandler) -> Callable[[], None]:
        """
        Register a zero-argument callback.

        Returns:
            A function that removes this registration (safe to call twice)
        """
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._handlers[token] = handler

        def unsubscribe() -> None:
            with self._lock:
                self._handlers.pop(token, None)

        return unsubscribe

    def notify(self) -> None:
        """Invoke every currently registered handler."""
        with self._lock:
            handlers = list(self._handlers.values())
        for handler in handlers:
            if self._executor is not None:
                self._executor.submit(self._call, handler)
            else:
                self._call(handler)

    @staticmethod
    def _call(handler: ChangeHandler) -> None:
        try:
            handler()
        except Exception as e:
            logger.warning("Change handler %r failed: %s", handler, e, exc_info=True)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._handlers)
