"""
In-memory document store implementation for testing.

This module provides a simple in-memory backend for:
- Unit tests
- Integration tests
- Local development without a database file

Invariants:
    - All data is lost on process exit
    - Stored documents are deep copies; callers never alias stored state
    - Provides the same predicate and duplicate-key semantics as SQLite

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the DocumentStore protocol
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .base import (
    DocumentNotFoundError,
    DuplicateKeyError,
    StoreConnectionError,
    doc_key,
    matches,
)

logger = logging.getLogger(__name__)


@dataclass
class _InjectedFailure:
    """A failure armed for the next matching operation."""
    operation: str
    exception: Exception
    collection: Optional[str] = None


class InMemoryDocumentStore:
    """In-memory implementation of DocumentStore for testing.

    Collections are insertion-ordered dicts keyed by doc_key(). Every
    operation runs under one asyncio lock, so each call is atomic with
    respect to other coroutines.

    Thread safety:
        Uses asyncio locks. Safe to use from multiple coroutines in one
        event loop.

    Example:
        >>> store = InMemoryDocumentStore()
        >>> await store.connect()
        >>> await store.insert("pages", {"_id": "p1", "title": "Home"})
        >>> await store.get("pages", "p1")
        {'_id': 'p1', 'title': 'Home'}
    """

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)
        self._connected = False
        self._lock = asyncio.Lock()
        self._failures: List[_InjectedFailure] = []

    @property
    def is_connected(self) -> bool:
        """Whether connected (always true after connect())."""
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryDocumentStore connected")

    async def close(self) -> None:
        """Close and clear all data."""
        self._connected = False
        self._collections.clear()
        self._failures.clear()
        logger.debug("InMemoryDocumentStore closed")

    async def get(self, collection: str, doc_id: Any) -> Optional[Dict[str, Any]]:
        self._check("get", collection)
        async with self._lock:
            document = self._collections[collection].get(doc_key(doc_id))
            return copy.deepcopy(document) if document is not None else None

    async def insert(self, collection: str, document: Dict[str, Any]) -> None:
        self._check("insert", collection)
        key = doc_key(document["_id"])
        async with self._lock:
            docs = self._collections[collection]
            if key in docs:
                raise DuplicateKeyError(collection, document["_id"])
            docs[key] = copy.deepcopy(document)

        logger.debug(
            "Document inserted",
            extra={"collection": collection, "doc_key": key},
        )

    async def replace(
        self,
        collection: str,
        doc_id: Any,
        document: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._check("replace", collection)
        key = doc_key(doc_id)
        async with self._lock:
            docs = self._collections[collection]
            current = docs.get(key)
            if current is None or not matches(current, expected):
                raise DocumentNotFoundError(collection, doc_id)
            docs[key] = copy.deepcopy(document)

    async def remove(
        self,
        collection: str,
        doc_id: Any,
        expected: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._check("remove", collection)
        key = doc_key(doc_id)
        async with self._lock:
            docs = self._collections[collection]
            current = docs.get(key)
            if current is None or not matches(current, expected):
                raise DocumentNotFoundError(collection, doc_id)
            del docs[key]

    async def find(
        self,
        collection: str,
        where: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        self._check("find", collection)
        async with self._lock:
            return [
                copy.deepcopy(doc)
                for doc in self._collections[collection].values()
                if matches(doc, where)
            ]

    def _check(self, operation: str, collection: str) -> None:
        """Raise if disconnected or if a failure is armed for this call."""
        if not self._connected:
            raise StoreConnectionError("Not connected")

        for failure in self._failures:
            if failure.operation == operation and failure.collection in (None, collection):
                self._failures.remove(failure)
                raise failure.exception

    # Testing helpers

    def inject_failure(
        self,
        operation: str,
        exception: Exception,
        collection: Optional[str] = None,
    ) -> None:
        """Make the next matching operation raise `exception` (testing helper).

        Args:
            operation: One of get, insert, replace, remove, find
            exception: Exception to raise
            collection: Only fail calls on this collection (any if None)
        """
        self._failures.append(_InjectedFailure(operation, exception, collection))

    def count(self, collection: str) -> int:
        """Number of documents in a collection (testing helper)."""
        return len(self._collections.get(collection, {}))

    def clear_collection(self, collection: str) -> None:
        """Drop all documents of a collection (testing helper)."""
        self._collections.pop(collection, None)
