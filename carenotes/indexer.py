"""
Background indexing loop.

Keeps the store's vector columns eventually consistent with its text
columns. Each scan embeds at most one batch of nodes and one batch of
actors whose vector is NULL; a larger backlog drains over successive
triggers, since every new write notifies the bus and starts another
scan where the ``IS NULL`` predicate left off.

Writing a vector back goes straight to the store and does not notify
the change bus, so a scan never re-triggers itself.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from .embeddings import EmbeddingGenerator
from .errors import IndexingRowError, StorageError
from .notify import ChangeBus
from .store import LocalStore

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 20


def node_text(row: dict) -> str:
    """Text embedded for a node: title, type, code and payload."""
    parts = [row.get("title"), row.get("nodetype"), row.get("universalcode"), row.get("payload")]
    return " ".join(p for p in parts if p)


def actor_text(row: dict) -> str:
    """Text embedded for an actor: name, type, code and metadata."""
    parts = [row.get("name"), row.get("actortype"), row.get("globalcode"), row.get("metadata")]
    return " ".join(p for p in parts if p)


@dataclass
class ScanResult:
    """Outcome of one scan."""
    processed: int = 0
    errors: int = 0
    skipped: bool = False  # another scan was in flight, or the model wasn't ready


class IndexingLoop:
    """
    Embeds unindexed rows in bounded batches.

    Triggered when the embedding model first becomes ready and on every
    change notification while it is ready. At most one scan runs at a
    time; a trigger that arrives mid-scan is dropped, not queued.
    """

    def __init__(
        self,
        store: LocalStore,
        generator: EmbeddingGenerator,
        bus: ChangeBus,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self._store = store
        self._generator = generator
        self._bus = bus
        self._batch_size = batch_size
        self._scan_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._processed = 0
        self._errors = 0
        self._unsubscribers: list[Callable[[], None]] = []

    @property
    def processed_count(self) -> int:
        return self._processed

    @property
    def error_count(self) -> int:
        return self._errors

    @property
    def is_indexing(self) -> bool:
        return self._scan_lock.locked()

    @property
    def batch_size(self) -> int:
        return self._batch_size

    def start(self) -> None:
        """Scan once the model is ready, then on every change notification."""
        if self._unsubscribers:
            return
        self._unsubscribers = [
            self._generator.on_ready(self._on_ready),
            self._bus.subscribe(self._on_change),
        ]

    def stop(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def _on_ready(self) -> None:
        logger.info("Embedding model ready, catching up on unindexed rows")
        self.run_scan()

    def _on_change(self) -> None:
        if not self._generator.is_ready:
            return
        logger.debug("Store change detected, triggering scan")
        self.run_scan()

    def run_scan(self) -> ScanResult:
        """
        Embed up to one batch of unindexed nodes, then actors.

        A failure on one row is logged and counted; the batch continues.

        Returns:
            Counts for this scan; ``skipped`` if nothing ran
        """
        if not self._generator.is_ready:
            return ScanResult(skipped=True)
        if not self._scan_lock.acquire(blocking=False):
            logger.debug("Scan already in progress, dropping trigger")
            return ScanResult(skipped=True)

        result = ScanResult()
        try:
            nodes = self._store.unindexed_nodes(self._batch_size)
            if nodes:
                logger.info("Found %d unindexed node(s)", len(nodes))
            for row in nodes:
                self._index_row(result, "nodes", row, node_text(row), self._store.set_node_embedding)

            actors = self._store.unindexed_actors(self._batch_size)
            if actors:
                logger.info("Found %d unindexed actor(s)", len(actors))
            for row in actors:
                self._index_row(result, "actors", row, actor_text(row), self._store.set_actor_vector)
        except StorageError as e:
            logger.error("Indexing scan failed: %s", e)
        finally:
            self._scan_lock.release()

        if result.processed or result.errors:
            logger.info("Indexing scan done: %d indexed, %d failed", result.processed, result.errors)
        return result

    def _index_row(
        self,
        result: ScanResult,
        table: str,
        row: dict,
        text: str,
        write: Callable[[str, list[float]], int],
    ) -> None:
        try:
            vector = self._generator.generate(text)
            if vector is None:
                raise IndexingRowError(table, row["id"], "no embedding produced")
            write(row["id"], vector)
        except Exception as e:
            logger.warning("Failed to index %s %s: %s", table, row.get("id"), e)
            result.errors += 1
            with self._stats_lock:
                self._errors += 1
            return
        result.processed += 1
        with self._stats_lock:
            self._processed += 1

    def drain(self, max_scans: Optional[int] = None) -> ScanResult:
        """
        Run scans until nothing is left to index or a scan makes no progress.

        Rows that keep failing stay unindexed; they are retried by later scans.
        """
        total = ScanResult()
        scans = 0
        while max_scans is None or scans < max_scans:
            result = self.run_scan()
            scans += 1
            total.processed += result.processed
            total.errors += result.errors
            if result.skipped or result.processed == 0:
                total.skipped = result.skipped
                break
        return total
