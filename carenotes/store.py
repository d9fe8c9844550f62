"""
Local record store using SQLite.

The store is the on-device source of truth for nodes, actors and
operational events. It also holds the vector columns written by the
indexing loop and answers nearest-neighbour queries through a
``vec_distance_cosine`` function from the sqlite-vec extension,
loaded on every connection.

Local inserts into replicated tables are recorded in ``sync_outbox``
so the sync engine can push them later. Rows applied from a remote
pull bypass the outbox.

The store never fires change notifications itself; callers that write
rows other components care about must notify the change bus.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, Optional, Sequence

import numpy as np
import sqlite_vec

from .errors import StorageError
from .types import Actor, Node, OREvent

logger = logging.getLogger(__name__)

VECTOR_DIMENSION = 384


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS actors (
        id TEXT PRIMARY KEY,
        parentid TEXT,
        actortype TEXT NOT NULL,
        globalcode TEXT NOT NULL,
        name TEXT NOT NULL,
        metadata TEXT,
        vector BLOB,
        pushtoken TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS collab (
        id TEXT PRIMARY KEY,
        actorid TEXT NOT NULL,
        targettype TEXT NOT NULL,
        targetid TEXT NOT NULL,
        role TEXT NOT NULL,
        permissions TEXT,
        createdat TEXT NOT NULL,
        expiresat TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS nodes (
        id TEXT PRIMARY KEY,
        parentid TEXT,
        nodetype TEXT NOT NULL,
        universalcode TEXT NOT NULL,
        title TEXT NOT NULL,
        payload TEXT,
        embedding BLOB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS points (
        id TEXT PRIMARY KEY,
        noderef TEXT NOT NULL,
        sellerid TEXT NOT NULL,
        sku TEXT NOT NULL,
        lat REAL NOT NULL,
        lon REAL NOT NULL,
        stock TEXT,
        price REAL NOT NULL,
        notes TEXT,
        version INTEGER DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS streams (
        id TEXT PRIMARY KEY,
        scope TEXT NOT NULL,
        createdby TEXT NOT NULL,
        createdat TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS streamcollab (
        streamid TEXT NOT NULL,
        actorid TEXT NOT NULL,
        role TEXT NOT NULL,
        joinedat TEXT,
        PRIMARY KEY (streamid, actorid)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orevents (
        id TEXT PRIMARY KEY,
        streamid TEXT NOT NULL,
        opcode INTEGER NOT NULL,
        refid TEXT NOT NULL,
        lat REAL,
        lng REAL,
        delta REAL DEFAULT 0,
        payload TEXT,
        scope TEXT NOT NULL,
        status TEXT,
        ts TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_nodes_parent ON nodes(parentid)",
    "CREATE INDEX IF NOT EXISTS idx_orevents_stream_ts ON orevents(streamid, ts)",
    """
    CREATE TABLE IF NOT EXISTS sync_outbox (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        tablename TEXT NOT NULL,
        rowkey TEXT NOT NULL,
        queued_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_state (
        key TEXT PRIMARY KEY,
        value TEXT
    )
    """,
]


@dataclass(frozen=True)
class TableSpec:
    """Replication metadata for one table."""
    primary_key: tuple[str, ...]
    vector_column: Optional[str] = None
    append_only: bool = False


# Tables replicated with the remote store. Vector columns are derived
# locally and never leave the device.
REPLICATED_TABLES: dict[str, TableSpec] = {
    "actors": TableSpec(("id",), vector_column="vector"),
    "collab": TableSpec(("id",)),
    "nodes": TableSpec(("id",), vector_column="embedding"),
    "points": TableSpec(("id",)),
    "streams": TableSpec(("id",)),
    "streamcollab": TableSpec(("streamid", "actorid")),
    "orevents": TableSpec(("id",), append_only=True),
}

NODE_COLUMNS = "id, parentid, nodetype, universalcode, title, payload"
ACTOR_COLUMNS = "id, parentid, actortype, globalcode, name, metadata, pushtoken"


# -----------------------------------------------------------------------------
# Vector encoding
# -----------------------------------------------------------------------------

def vector_to_blob(vector: Sequence[float], dimension: int = VECTOR_DIMENSION) -> bytes:
    """Serialize a vector in sqlite-vec's float32 format."""
    values = np.asarray(vector, dtype=np.float32)
    if values.ndim != 1 or len(values) != dimension:
        raise ValueError(f"Expected a {dimension}-dimension vector, got shape {values.shape}")
    return sqlite_vec.serialize_float32(values.tolist())


def blob_to_vector(blob: bytes) -> list[float]:
    return np.frombuffer(blob, dtype=np.float32).tolist()


# sqlite-vec yields NaN (stored as NULL) for a zero-norm vector; treat
# that as orthogonal and keep float32 rounding inside [0, 2].
_DISTANCE_SQL = "MAX(0.0, MIN(2.0, COALESCE(vec_distance_cosine({column}, ?), 1.0)))"


@dataclass
class OutboxEntry:
    """A local change waiting to be pushed. ``row`` is None if the row is gone."""
    seq: int
    table: str
    row: Optional[dict]


class LocalStore:
    """
    SQLite-backed store for carenotes records.

    One connection per store, shared across threads and serialised by a
    re-entrant lock.
    """

    def __init__(self, db_path: Path, dimension: int = VECTOR_DIMENSION):
        """
        Args:
            db_path: Path to SQLite database file
            dimension: Length of the vectors held in the vector columns
        """
        self._db_path = Path(db_path)
        self._dimension = dimension
        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = None
        self._columns: dict[str, list[str]] = {}
        self._init_db()

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def path(self) -> Path:
        return self._db_path

    def _init_db(self) -> None:
        """Open the database and create the schema if needed."""
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=5000")
            self._conn.enable_load_extension(True)
            sqlite_vec.load(self._conn)
            self._conn.enable_load_extension(False)
            for statement in SCHEMA:
                self._conn.execute(statement)
            self._conn.commit()
        except (sqlite3.Error, OSError, AttributeError) as e:
            raise StorageError(f"Cannot open store at {self._db_path}: {e}") from e

        for table in REPLICATED_TABLES:
            info = self._conn.execute(f"PRAGMA table_info({table})").fetchall()
            self._columns[table] = [row[1] for row in info]

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block under the write lock, committing on success."""
        with self._lock:
            if self._conn is None:
                raise StorageError("Store is closed")
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                raise StorageError(str(e)) from e
            except Exception:
                self._conn.rollback()
                raise

    # -------------------------------------------------------------------------
    # Generic primitives
    # -------------------------------------------------------------------------

    def execute(self, statement: str, params: Sequence[Any] = ()) -> int:
        """
        Run a schema or mutation statement.

        Returns:
            Number of rows affected (-1 for statements that affect none)

        Raises:
            StorageError: Malformed SQL or constraint violation
        """
        with self._transaction() as conn:
            return conn.execute(statement, tuple(params)).rowcount

    def query_all(self, statement: str, params: Sequence[Any] = ()) -> list[dict]:
        """Run a query and return every row as a column-name mapping."""
        with self._lock:
            if self._conn is None:
                raise StorageError("Store is closed")
            try:
                cursor = self._conn.execute(statement, tuple(params))
                return [dict(row) for row in cursor.fetchall()]
            except sqlite3.Error as e:
                raise StorageError(str(e)) from e

    def query_one(self, statement: str, params: Sequence[Any] = ()) -> Optional[dict]:
        rows = self.query_all(statement, params)
        return rows[0] if rows else None

    def insert(self, table: str, row: dict) -> int:
        """
        Insert one row into a replicated table and queue it for push.

        Only the supplied columns are written; no defaults are added
        beyond the table's own.

        Returns:
            1 on success

        Raises:
            StorageError: Unknown table or column, duplicate key, or
                constraint violation
        """
        if table not in REPLICATED_TABLES:
            raise StorageError(f"Unknown table: {table}")
        unknown = set(row) - set(self._columns[table])
        if unknown:
            raise StorageError(f"Unknown column(s) for {table}: {', '.join(sorted(unknown))}")

        columns = list(row)
        placeholders = ", ".join("?" for _ in columns)
        key = {k: row.get(k) for k in REPLICATED_TABLES[table].primary_key}
        with self._transaction() as conn:
            count = conn.execute(
                f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
                [row[c] for c in columns],
            ).rowcount
            conn.execute(
                "INSERT INTO sync_outbox (tablename, rowkey) VALUES (?, ?)",
                (table, json.dumps(key, sort_keys=True)),
            )
        return count

    # -------------------------------------------------------------------------
    # Record helpers
    # -------------------------------------------------------------------------

    def insert_node(self, node: Node) -> int:
        """Insert a node; a parentid must reference an existing node."""
        if node.parentid and self.get_node(node.parentid) is None:
            raise StorageError(f"Parent node not found: {node.parentid}")
        return self.insert("nodes", node.to_row())

    def insert_actor(self, actor: Actor) -> int:
        if actor.parentid and self.query_one(
            "SELECT id FROM actors WHERE id = ?", (actor.parentid,)
        ) is None:
            raise StorageError(f"Parent actor not found: {actor.parentid}")
        return self.insert("actors", actor.to_row())

    def insert_event(self, event: OREvent) -> int:
        return self.insert("orevents", event.to_row())

    def get_node(self, id: str) -> Optional[dict]:
        return self.query_one(f"SELECT {NODE_COLUMNS} FROM nodes WHERE id = ?", (id,))

    def get_nodes(self, parentid: Optional[str] = None) -> list[dict]:
        if parentid:
            return self.query_all(
                f"SELECT {NODE_COLUMNS} FROM nodes WHERE parentid = ? ORDER BY rowid",
                (parentid,),
            )
        return self.query_all(f"SELECT {NODE_COLUMNS} FROM nodes ORDER BY rowid")

    def get_patients(self) -> list[dict]:
        return self.query_all(
            f"SELECT {NODE_COLUMNS} FROM nodes WHERE nodetype = 'Patient' ORDER BY title"
        )

    def get_actors(self) -> list[dict]:
        return self.query_all(f"SELECT {ACTOR_COLUMNS} FROM actors ORDER BY rowid")

    def get_events(self, streamid: Optional[str] = None) -> list[dict]:
        """Events newest first, optionally restricted to one stream."""
        if streamid:
            return self.query_all(
                "SELECT * FROM orevents WHERE streamid = ? ORDER BY ts DESC", (streamid,)
            )
        return self.query_all("SELECT * FROM orevents ORDER BY ts DESC")

    # -------------------------------------------------------------------------
    # Vector columns
    # -------------------------------------------------------------------------

    def unindexed_nodes(self, limit: int) -> list[dict]:
        return self.query_all(
            f"SELECT {NODE_COLUMNS} FROM nodes WHERE embedding IS NULL ORDER BY rowid LIMIT ?",
            (limit,),
        )

    def unindexed_actors(self, limit: int) -> list[dict]:
        return self.query_all(
            f"SELECT {ACTOR_COLUMNS} FROM actors WHERE vector IS NULL ORDER BY rowid LIMIT ?",
            (limit,),
        )

    def count_unindexed(self) -> dict[str, int]:
        row = self.query_one(
            "SELECT (SELECT COUNT(*) FROM nodes WHERE embedding IS NULL) AS nodes, "
            "(SELECT COUNT(*) FROM actors WHERE vector IS NULL) AS actors"
        )
        return {"nodes": row["nodes"], "actors": row["actors"]}

    def _set_vector(self, table: str, id: str, vector: Optional[Sequence[float]]) -> int:
        column = REPLICATED_TABLES[table].vector_column
        try:
            blob = None if vector is None else vector_to_blob(vector, self._dimension)
        except (ValueError, TypeError) as e:
            raise StorageError(str(e)) from e
        return self.execute(f"UPDATE {table} SET {column} = ? WHERE id = ?", (blob, id))

    def set_node_embedding(self, id: str, vector: Sequence[float]) -> int:
        """Write a node's embedding. Not recorded for push, never notifies."""
        return self._set_vector("nodes", id, vector)

    def set_actor_vector(self, id: str, vector: Sequence[float]) -> int:
        return self._set_vector("actors", id, vector)

    def clear_node_embedding(self, id: str) -> int:
        """Mark a node for re-indexing."""
        return self._set_vector("nodes", id, None)

    def clear_actor_vector(self, id: str) -> int:
        return self._set_vector("actors", id, None)

    def get_node_embedding(self, id: str) -> Optional[list[float]]:
        row = self.query_one("SELECT embedding FROM nodes WHERE id = ?", (id,))
        if row is None or row["embedding"] is None:
            return None
        return blob_to_vector(row["embedding"])

    def get_actor_vector(self, id: str) -> Optional[list[float]]:
        row = self.query_one("SELECT vector FROM actors WHERE id = ?", (id,))
        if row is None or row["vector"] is None:
            return None
        return blob_to_vector(row["vector"])

    def nearest(self, table: str, query_vector: Sequence[float], limit: int) -> list[dict]:
        """
        Rows of ``table`` with a vector, closest first.

        Each row carries a ``distance`` column (cosine distance); the
        vector column itself is not returned.
        """
        if table == "nodes":
            columns, vector_column = NODE_COLUMNS, "embedding"
        elif table == "actors":
            columns, vector_column = ACTOR_COLUMNS, "vector"
        else:
            raise StorageError(f"Table has no vector column: {table}")
        try:
            blob = vector_to_blob(query_vector, self._dimension)
        except (ValueError, TypeError) as e:
            raise StorageError(str(e)) from e
        return self.query_all(
            f"SELECT {columns}, {_DISTANCE_SQL.format(column=vector_column)} AS distance "
            f"FROM {table} WHERE {vector_column} IS NOT NULL "
            f"ORDER BY distance, rowid LIMIT ?",
            (blob, limit),
        )

    # -------------------------------------------------------------------------
    # Replication support
    # -------------------------------------------------------------------------

    def _replicated_columns(self, table: str) -> list[str]:
        vector_column = REPLICATED_TABLES[table].vector_column
        return [c for c in self._columns[table] if c != vector_column]

    def pending_changes(self, limit: int = 100) -> list[OutboxEntry]:
        """Oldest queued local changes with their current row values."""
        entries = []
        for item in self.query_all(
            "SELECT seq, tablename, rowkey FROM sync_outbox ORDER BY seq LIMIT ?", (limit,)
        ):
            table = item["tablename"]
            key = json.loads(item["rowkey"])
            where = " AND ".join(f"{k} = ?" for k in key)
            row = self.query_one(
                f"SELECT {', '.join(self._replicated_columns(table))} FROM {table} WHERE {where}",
                list(key.values()),
            )
            entries.append(OutboxEntry(seq=item["seq"], table=table, row=row))
        return entries

    def count_pending_changes(self) -> int:
        return self.query_one("SELECT COUNT(*) AS n FROM sync_outbox")["n"]

    def ack_changes(self, seqs: Sequence[int]) -> int:
        """Drop pushed changes from the outbox."""
        if not seqs:
            return 0
        placeholders = ", ".join("?" for _ in seqs)
        return self.execute(f"DELETE FROM sync_outbox WHERE seq IN ({placeholders})", list(seqs))

    def apply_remote_changes(self, changes: Sequence[dict]) -> int:
        """
        Apply pulled rows, last write wins.

        Each change is ``{"table": name, "row": {...}}``. Existing rows have
        their replicated columns overwritten; local vector columns are kept.
        Append-only tables ignore rows that already exist. Nothing is
        recorded in the outbox.

        Returns:
            Number of rows inserted or actually changed

        Raises:
            StorageError: Unknown table, missing key, or constraint violation
        """
        applied = 0
        with self._transaction() as conn:
            for change in changes:
                table = change.get("table")
                if table not in REPLICATED_TABLES:
                    raise StorageError(f"Remote change for unknown table: {table!r}")
                spec = REPLICATED_TABLES[table]
                allowed = self._replicated_columns(table)
                row = {k: v for k, v in (change.get("row") or {}).items() if k in allowed}
                missing = [k for k in spec.primary_key if row.get(k) is None]
                if missing:
                    raise StorageError(f"Remote {table} row missing key: {', '.join(missing)}")

                columns = list(row)
                placeholders = ", ".join("?" for _ in columns)
                updates = [c for c in columns if c not in spec.primary_key]
                conflict = ", ".join(spec.primary_key)
                if spec.append_only or not updates:
                    action = "DO NOTHING"
                else:
                    # Unchanged rows are skipped so echoes don't count as applied
                    action = (
                        "DO UPDATE SET " + ", ".join(f"{c} = excluded.{c}" for c in updates)
                        + " WHERE " + " OR ".join(f"{table}.{c} IS NOT excluded.{c}" for c in updates)
                    )
                cursor = conn.execute(
                    f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) "
                    f"ON CONFLICT({conflict}) {action}",
                    [row[c] for c in columns],
                )
                applied += max(cursor.rowcount, 0)
        if applied:
            logger.debug("Applied %d remote change(s)", applied)
        return applied

    def get_sync_state(self, key: str) -> Optional[str]:
        row = self.query_one("SELECT value FROM sync_state WHERE key = ?", (key,))
        return row["value"] if row else None

    def set_sync_state(self, key: str, value: Optional[str]) -> None:
        self.execute(
            "INSERT INTO sync_state (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, value),
        )
