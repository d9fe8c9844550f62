"""
carenotes - local-first clinical notes with on-device semantic search.

Records live in an embedded SQLite store replicated against a remote
replica. A background loop embeds newly written rows with a local
sentence-transformers model so they can be found by meaning.

Quick start:
    from carenotes import CareNotes

    app = CareNotes()
    app.load_model()
    app.add_node("Patient", "Jane Doe", payload={"gender": "Female"})
    results = app.search_text("female patient")
"""

from .api import CareNotes
from .embeddings import EmbeddingGenerator, EmbeddingState
from .errors import CareNotesError, EmbeddingError, IndexingRowError, StorageError, SyncError
from .indexer import IndexingLoop, ScanResult
from .notify import ChangeBus
from .search import SemanticSearch, similarity
from .store import LocalStore
from .sync import HttpReplicationTransport, SyncEngine
from .types import Actor, Node, NodeSchema, OREvent, new_node, register_node_type

__version__ = "0.1.0"

__all__ = [
    "CareNotes",
    "LocalStore",
    "ChangeBus",
    "EmbeddingGenerator",
    "EmbeddingState",
    "IndexingLoop",
    "ScanResult",
    "SemanticSearch",
    "similarity",
    "SyncEngine",
    "HttpReplicationTransport",
    "Node",
    "NodeSchema",
    "Actor",
    "OREvent",
    "new_node",
    "register_node_type",
    "CareNotesError",
    "StorageError",
    "SyncError",
    "EmbeddingError",
    "IndexingRowError",
]
