"""
Application container for carenotes.

CareNotes owns one store, one change bus, one embedding generator, the
indexing loop, semantic search and the sync engine for the lifetime of
the application. UI layers read its status and call its write, search
and sync entry points; nothing here is a module-level global.
"""

import logging
from pathlib import Path
from typing import Optional

from .config import StoreConfig, get_default_store_path, load_or_create_config, remote_from_env
from .embeddings import EmbeddingGenerator
from .indexer import IndexingLoop, ScanResult
from .notify import ChangeBus
from .providers import sentence_transformer_factory
from .providers.base import EmbeddingProviderFactory
from .search import SemanticSearch
from .store import LocalStore
from .sync import SyncEngine, TransportFactory, http_transport_factory
from .types import Actor, Node, OREvent, get_node_schema, new_id, new_node, new_universal_code

logger = logging.getLogger(__name__)


class CareNotes:
    """
    Local-first record store with on-device semantic search.

    Example:
        app = CareNotes()
        app.load_model()
        patient = app.add_node("Patient", "Jane Doe", payload={"gender": "Female"})
        results = app.search_text("jane")
    """

    def __init__(
        self,
        store_path: Optional[str | Path] = None,
        *,
        config: Optional[StoreConfig] = None,
        embedding_factory: Optional[EmbeddingProviderFactory] = None,
        transport_factory: TransportFactory = http_transport_factory,
        bus: Optional[ChangeBus] = None,
        ops_log: bool = True,
    ) -> None:
        """
        Open (or create) a store.

        Args:
            store_path: Store directory. Defaults to CARENOTES_STORE_PATH
                or ~/.carenotes.
            config: Pre-loaded StoreConfig (skips filesystem config discovery)
            embedding_factory: Builds the embedding provider; defaults to the
                configured sentence-transformers model
            transport_factory: Builds the remote replication transport
            bus: Change bus to share with other components
            ops_log: Attach the rotating operations log in the store directory
        """
        if config is not None:
            self._config = config
        else:
            path = Path(store_path).expanduser().resolve() if store_path else get_default_store_path()
            self._config = load_or_create_config(path)
        self._store_path = self._config.path

        self._ops_log_handler = None
        if ops_log:
            from .logging_config import configure_ops_log
            self._ops_log_handler = configure_ops_log(self._store_path)

        dimension = self._config.embedding.dimension
        self.store = LocalStore(self._config.database_path, dimension=dimension)
        self.bus = bus or ChangeBus()
        self.generator = EmbeddingGenerator(
            embedding_factory or sentence_transformer_factory(self._config.embedding),
            dimension=dimension,
        )
        self.indexer = IndexingLoop(
            self.store, self.generator, self.bus, batch_size=self._config.batch_size,
        )
        self.searcher = SemanticSearch(self.store, self.generator)
        self.syncer = SyncEngine(
            self.store, self.bus, remote_from_env(self._config.remote),
            transport_factory=transport_factory,
        )
        self.indexer.start()

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def store_path(self) -> Path:
        return self._store_path

    # -------------------------------------------------------------------------
    # Model
    # -------------------------------------------------------------------------

    def load_model(self, *, background: bool = True) -> None:
        """Start loading the embedding model; indexing begins once it's ready."""
        self.generator.load(background=background)

    @property
    def is_embedding_ready(self) -> bool:
        return self.generator.is_ready

    @property
    def is_indexing(self) -> bool:
        return self.indexer.is_indexing

    def generate(self, text: str) -> Optional[list[float]]:
        return self.generator.generate(text)

    # -------------------------------------------------------------------------
    # Writes (each successful insert notifies the change bus)
    # -------------------------------------------------------------------------

    def insert_node(self, node: Node) -> int:
        result = self.store.insert_node(node)
        self.bus.notify()
        return result

    def add_node(
        self,
        nodetype: str,
        title: str,
        *,
        parentid: Optional[str] = None,
        payload: Optional[dict[str, str]] = None,
        universalcode: Optional[str] = None,
    ) -> Node:
        """Validate and insert a new node, returning it with its generated id."""
        if parentid:
            parent = self.store.get_node(parentid)
            expected = get_node_schema(nodetype).parent_type
            if parent is not None and expected and parent["nodetype"] != expected:
                raise ValueError(
                    f"{nodetype} records attach to a {expected}, "
                    f"not a {parent['nodetype']}"
                )
        node = new_node(
            nodetype, title, parentid=parentid, payload=payload, universalcode=universalcode,
        )
        self.insert_node(node)
        logger.info("Added %s %s (%s)", nodetype, node.id, node.universalcode)
        return node

    def insert_actor(self, actor: Actor) -> int:
        result = self.store.insert_actor(actor)
        self.bus.notify()
        return result

    def add_actor(
        self,
        actortype: str,
        name: str,
        *,
        globalcode: Optional[str] = None,
        parentid: Optional[str] = None,
        metadata: Optional[str] = None,
    ) -> Actor:
        name = name.strip()
        if not name:
            raise ValueError("An actor name is required")
        actor = Actor(
            id=new_id(), actortype=actortype, globalcode=globalcode or new_universal_code(),
            name=name, parentid=parentid, metadata=metadata,
        )
        self.insert_actor(actor)
        return actor

    def insert_event(self, event: OREvent) -> int:
        """Append an event. Events carry no searchable text, so no notify."""
        return self.store.insert_event(event)

    def add_event(
        self,
        streamid: str,
        opcode: int,
        refid: str,
        scope: str,
        *,
        status: str = "pending",
        payload: Optional[str] = None,
    ) -> OREvent:
        event = OREvent(
            id=new_id(), streamid=streamid, opcode=opcode, refid=refid,
            scope=scope, status=status, payload=payload,
        )
        self.insert_event(event)
        return event

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_nodes(self, parentid: Optional[str] = None) -> list[dict]:
        return self.store.get_nodes(parentid)

    def get_patients(self) -> list[dict]:
        return self.store.get_patients()

    def get_actors(self) -> list[dict]:
        return self.store.get_actors()

    def get_events(self, streamid: Optional[str] = None) -> list[dict]:
        return self.store.get_events(streamid)

    # -------------------------------------------------------------------------
    # Search, indexing, sync
    # -------------------------------------------------------------------------

    def search(self, query_vector: list[float], limit: int = 5, *, kind: str = "entities") -> list[dict]:
        if kind == "actors":
            return self.searcher.search_actors(query_vector, limit)
        return self.searcher.search_entities(query_vector, limit)

    def search_text(self, query: str, limit: int = 10, *, kind: str = "entities") -> list[dict]:
        return self.searcher.search_text(query, limit, kind=kind)

    def run_scan(self) -> ScanResult:
        return self.indexer.run_scan()

    def sync(self) -> bool:
        return self.syncer.sync()

    def status(self) -> dict:
        """Snapshot of model, indexing and sync state."""
        error = self.generator.error
        return {
            "store": str(self._store_path),
            "embedding": {
                "state": self.generator.state.value,
                "ready": self.generator.is_ready,
                "generating": self.generator.is_generating,
                "download_progress": self.generator.download_progress,
                "error": str(error) if error else None,
            },
            "indexing": {
                "running": self.indexer.is_indexing,
                "processed": self.indexer.processed_count,
                "errors": self.indexer.error_count,
                "unindexed": self.store.count_unindexed(),
            },
            "sync": {
                "configured": self.syncer.is_configured,
                "pending_changes": self.store.count_pending_changes(),
                "last_sync": self.syncer.last_sync,
                "last_error": self.syncer.last_error,
            },
        }

    def close(self) -> None:
        self.indexer.stop()
        self.syncer.close()
        self.store.close()
        if self._ops_log_handler is not None:
            logging.getLogger("carenotes").removeHandler(self._ops_log_handler)
            self._ops_log_handler.close()
            self._ops_log_handler = None

    def __enter__(self) -> "CareNotes":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
