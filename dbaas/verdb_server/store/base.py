"""
Base protocol and types for the document store abstraction.

This module defines the DocumentStore protocol that all backends must
implement, the store-level errors, and helpers shared by the backends.

Invariants:
    - Document ids are opaque JSON values; backends key them by doc_key()
    - insert() never overwrites an existing document
    - replace() and remove() honour the optional `expected` predicate atomically
    - find() returns documents in insertion order

How to change safely:
    - Protocol changes require updating all implementations
    - Keep doc_key() stable, it is the persisted primary key format
    - Add new predicate kinds to both backends at once
"""

from __future__ import annotations

import json
import logging
from abc import abstractmethod
from typing import (
    TYPE_CHECKING,
    Any,
    Dict,
    List,
    Optional,
    Protocol,
    runtime_checkable,
)

if TYPE_CHECKING:
    from ..config import ServerConfig

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Base exception for document store operations."""
    pass


class StoreConnectionError(StoreError):
    """Store is not connected or the connection failed."""
    pass


class DuplicateKeyError(StoreError):
    """A document with the same id already exists in the collection."""

    def __init__(self, collection: str, doc_id: Any) -> None:
        super().__init__(f"Duplicate key in {collection}: {doc_key(doc_id)}")
        self.collection = collection
        self.doc_id = doc_id


class DocumentNotFoundError(StoreError):
    """No document matched the id (and predicate, if one was given)."""

    def __init__(self, collection: str, doc_id: Any) -> None:
        super().__init__(f"Document not found in {collection}: {doc_key(doc_id)}")
        self.collection = collection
        self.doc_id = doc_id


def doc_key(doc_id: Any) -> str:
    """Encode a document id as a canonical string key.

    Composite ids such as {"_id": "a1", "_version": 3} encode identically
    regardless of dict ordering.

    Raises:
        StoreError: If the id is not JSON-serializable
    """
    try:
        return json.dumps(doc_id, sort_keys=True, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise StoreError(f"Document id is not JSON-serializable: {doc_id!r}") from e


def resolve_path(document: Dict[str, Any], path: str) -> Any:
    """Look up a dotted path ("_id._id") in a document.

    Returns:
        The value, or None if any segment is missing
    """
    value: Any = document
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return value


def matches(document: Dict[str, Any], where: Optional[Dict[str, Any]]) -> bool:
    """Check a document against an equality predicate on dotted paths."""
    if not where:
        return True
    return all(resolve_path(document, path) == value for path, value in where.items())


@runtime_checkable
class DocumentStore(Protocol):
    """Protocol for document store backends.

    Documents are plain dicts with an "_id" entry. Collections are created
    implicitly on first insert.

    Atomicity contract:
        - Each method is atomic for the single document it touches
        - The `expected` predicate of replace()/remove() is evaluated in
          the same atomic step as the write

    Example:
        >>> store = InMemoryDocumentStore()
        >>> await store.connect()
        >>> await store.insert("pages", {"_id": "p1", "_version": 1})
        >>> await store.replace("pages", "p1", {"_id": "p1", "_version": 2},
        ...                     expected={"_version": 1})
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open the store. Must be called before any other operation."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the store and release resources."""
        ...

    @abstractmethod
    async def get(self, collection: str, doc_id: Any) -> Optional[Dict[str, Any]]:
        """Fetch a document by id.

        Returns:
            A copy of the document, or None if it doesn't exist
        """
        ...

    @abstractmethod
    async def insert(self, collection: str, document: Dict[str, Any]) -> None:
        """Insert a new document.

        Raises:
            DuplicateKeyError: If a document with the same "_id" exists
            StoreError: For other write failures
        """
        ...

    @abstractmethod
    async def replace(
        self,
        collection: str,
        doc_id: Any,
        document: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Replace a document entirely.

        Args:
            collection: Collection name
            doc_id: Id of the document to replace
            document: New document body
            expected: Optional field -> value predicate the stored
                document must satisfy

        Raises:
            DocumentNotFoundError: If no document matches id and predicate
            StoreError: For other write failures
        """
        ...

    @abstractmethod
    async def remove(
        self,
        collection: str,
        doc_id: Any,
        expected: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Remove a document.

        Raises:
            DocumentNotFoundError: If no document matches id and predicate
            StoreError: For other write failures
        """
        ...

    @abstractmethod
    async def find(
        self,
        collection: str,
        where: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """List documents matching an equality predicate, in insertion order.

        Args:
            collection: Collection name
            where: Dotted path -> value mapping, e.g. {"_id._id": "p1"}
        """
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether the store is open."""
        ...


def create_document_store(config: "ServerConfig") -> DocumentStore:
    """Factory function to create a document store from configuration.

    Args:
        config: Server configuration

    Returns:
        Appropriate DocumentStore implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import StoreBackend
    from .memory import InMemoryDocumentStore
    from .sqlite import SqliteDocumentStore

    if config.storage.backend == StoreBackend.MEMORY:
        return InMemoryDocumentStore()
    elif config.storage.backend == StoreBackend.SQLITE:
        return SqliteDocumentStore(
            config.storage.db_path,
            wal_mode=config.storage.wal_mode,
            busy_timeout_ms=config.storage.busy_timeout_ms,
        )
    else:
        raise ValueError(f"Unsupported store backend: {config.storage.backend}")
