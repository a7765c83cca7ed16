"""
SQLite document store for VerDB.

This module stores JSON documents of every collection in a single SQLite
file. Live and history collections share the table and are told apart by
the collection column.

Invariants:
    - (collection, doc_key) is unique; duplicate inserts fail
    - Predicated writes check and write inside one BEGIN IMMEDIATE transaction
    - seq preserves insertion order and survives replace()

How to change safely:
    - Schema migrations must be backward compatible
    - Keep doc_key() encoding stable, existing rows depend on it
    - Use transactions for all write operations

Table schema:
    documents:
        - seq INTEGER PRIMARY KEY AUTOINCREMENT
        - collection TEXT
        - doc_key TEXT (canonical JSON of the document id)
        - body_json TEXT
        - UNIQUE (collection, doc_key)
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from .base import (
    DocumentNotFoundError,
    DuplicateKeyError,
    StoreConnectionError,
    StoreError,
    doc_key,
    matches,
)

logger = logging.getLogger(__name__)

_SCALARS = (str, int, float, bool, type(None))


def _json_path(path: str) -> str:
    """Convert a dotted path into a quoted SQLite JSON path."""
    return "$." + ".".join(f'"{part}"' for part in path.split("."))


def _predicate_sql(
    where: dict[str, Any] | None,
) -> tuple[str, list[Any], dict[str, Any]]:
    """Build an AND-ed json_extract() clause for an equality predicate.

    Only JSON scalars are compared in SQL. Objects and arrays (composite ids,
    tag lists) are returned as a residual predicate, checked with matches()
    on the decoded document so they compare the same way as in memory.

    Returns:
        (sql, params, residual)
    """
    clauses: list[str] = []
    params: list[Any] = []
    residual: dict[str, Any] = {}
    for path, value in (where or {}).items():
        if not isinstance(value, _SCALARS):
            residual[path] = value
        elif value is None:
            clauses.append("json_extract(body_json, ?) IS NULL")
            params.append(_json_path(path))
        else:
            clauses.append("json_extract(body_json, ?) = ?")
            params.extend([_json_path(path), value])
    sql = "".join(f" AND {clause}" for clause in clauses)
    return sql, params, residual


class SqliteDocumentStore:
    """SQLite-backed implementation of DocumentStore.

    Thread safety:
        Each operation opens its own connection. SQLite serializes writers;
        BEGIN IMMEDIATE takes the write lock before a predicate is read.

    Example:
        >>> store = SqliteDocumentStore("/var/lib/verdb/verdb.db")
        >>> await store.connect()
        >>> await store.insert("pages", {"_id": "p1", "_version": 1})
    """

    # SQLite schema version for migrations
    SCHEMA_VERSION = 1

    def __init__(
        self,
        db_path: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the store.

        Args:
            db_path: SQLite database file
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.db_path = Path(db_path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection.

        Raises:
            StoreConnectionError: If connect() was not called
        """
        if not self._connected:
            raise StoreConnectionError("Not connected")

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database schema."""
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS documents (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                collection TEXT NOT NULL,
                doc_key TEXT NOT NULL,
                body_json TEXT NOT NULL,
                UNIQUE (collection, doc_key)
            );

            CREATE INDEX IF NOT EXISTS idx_documents_collection
                ON documents(collection, seq);

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    async def connect(self) -> None:
        """Create the database file and schema if they don't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connected = True
        try:
            with self._get_connection() as conn:
                self._create_schema(conn)
        except sqlite3.Error as e:
            self._connected = False
            raise StoreConnectionError(f"Failed to open {self.db_path}: {e}") from e
        logger.info(f"Opened document store: {self.db_path}")

    async def close(self) -> None:
        self._connected = False

    async def get(self, collection: str, doc_id: Any) -> dict[str, Any] | None:
        with self._get_connection() as conn:
            try:
                cursor = conn.execute(
                    "SELECT body_json FROM documents WHERE collection = ? AND doc_key = ?",
                    (collection, doc_key(doc_id)),
                )
                row = cursor.fetchone()
            except sqlite3.Error as e:
                raise StoreError(f"get failed on {collection}: {e}") from e
            return json.loads(row["body_json"]) if row else None

    async def insert(self, collection: str, document: dict[str, Any]) -> None:
        key = doc_key(document["_id"])
        with self._get_connection() as conn:
            try:
                conn.execute(
                    "INSERT INTO documents (collection, doc_key, body_json) VALUES (?, ?, ?)",
                    (collection, key, json.dumps(document)),
                )
            except sqlite3.IntegrityError as e:
                raise DuplicateKeyError(collection, document["_id"]) from e
            except (sqlite3.Error, TypeError, ValueError) as e:
                raise StoreError(f"insert failed on {collection}: {e}") from e

        logger.debug(
            "Document inserted",
            extra={"collection": collection, "doc_key": key},
        )

    def _matched_row(
        self,
        conn: sqlite3.Connection,
        collection: str,
        key: str,
        predicate: str,
        params: list[Any],
        residual: dict[str, Any],
    ) -> bool:
        """Check id and predicate inside the caller's transaction."""
        row = conn.execute(
            "SELECT body_json FROM documents WHERE collection = ? AND doc_key = ?" + predicate,
            [collection, key, *params],
        ).fetchone()
        return row is not None and matches(json.loads(row["body_json"]), residual)

    async def replace(
        self,
        collection: str,
        doc_id: Any,
        document: dict[str, Any],
        expected: dict[str, Any] | None = None,
    ) -> None:
        predicate, params, residual = _predicate_sql(expected)
        key = doc_key(doc_id)
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                if residual and not self._matched_row(
                    conn, collection, key, predicate, params, residual
                ):
                    conn.execute("ROLLBACK")
                    raise DocumentNotFoundError(collection, doc_id)
                cursor = conn.execute(
                    "UPDATE documents SET body_json = ? WHERE collection = ? AND doc_key = ?"
                    + predicate,
                    [json.dumps(document), collection, key, *params],
                )
                if cursor.rowcount == 0:
                    conn.execute("ROLLBACK")
                    raise DocumentNotFoundError(collection, doc_id)
                conn.execute("COMMIT")
            except DocumentNotFoundError:
                raise
            except (sqlite3.Error, TypeError, ValueError) as e:
                conn.execute("ROLLBACK")
                raise StoreError(f"replace failed on {collection}: {e}") from e

    async def remove(
        self,
        collection: str,
        doc_id: Any,
        expected: dict[str, Any] | None = None,
    ) -> None:
        predicate, params, residual = _predicate_sql(expected)
        key = doc_key(doc_id)
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                if residual and not self._matched_row(
                    conn, collection, key, predicate, params, residual
                ):
                    conn.execute("ROLLBACK")
                    raise DocumentNotFoundError(collection, doc_id)
                cursor = conn.execute(
                    "DELETE FROM documents WHERE collection = ? AND doc_key = ?" + predicate,
                    [collection, key, *params],
                )
                if cursor.rowcount == 0:
                    conn.execute("ROLLBACK")
                    raise DocumentNotFoundError(collection, doc_id)
                conn.execute("COMMIT")
            except DocumentNotFoundError:
                raise
            except sqlite3.Error as e:
                conn.execute("ROLLBACK")
                raise StoreError(f"remove failed on {collection}: {e}") from e

    async def find(
        self,
        collection: str,
        where: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        predicate, params, residual = _predicate_sql(where)
        with self._get_connection() as conn:
            try:
                cursor = conn.execute(
                    "SELECT body_json FROM documents WHERE collection = ?"
                    + predicate
                    + " ORDER BY seq",
                    [collection, *params],
                )
                documents = [json.loads(row["body_json"]) for row in cursor.fetchall()]
            except sqlite3.Error as e:
                raise StoreError(f"find failed on {collection}: {e}") from e
        return [doc for doc in documents if matches(doc, residual)]

    def count(self, collection: str) -> int:
        """Number of documents in a collection."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT COUNT(*) FROM documents WHERE collection = ?", (collection,)
            )
            return cursor.fetchone()[0]
