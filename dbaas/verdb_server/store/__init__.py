"""
Document store abstraction for VerDB.

This module provides a pluggable document store interface supporting:
- SQLite (single file, JSON document bodies)
- In-memory (for testing)

The versioning core only talks to the DocumentStore protocol: get, insert,
replace, remove and find on named collections.

Invariants:
    - Single-document operations are atomic
    - Predicated replace/remove never write when the predicate fails
    - insert() never overwrites

How to change safely:
    - New backends must implement the DocumentStore protocol
    - Run the store unit tests against every backend
"""

from .base import (
    DocumentNotFoundError,
    DocumentStore,
    DuplicateKeyError,
    StoreConnectionError,
    StoreError,
    create_document_store,
    doc_key,
)
from .memory import InMemoryDocumentStore
from .sqlite import SqliteDocumentStore

__all__ = [
    # Protocol and errors
    "DocumentStore",
    "StoreError",
    "StoreConnectionError",
    "DuplicateKeyError",
    "DocumentNotFoundError",
    "doc_key",
    # Factory
    "create_document_store",
    # Implementations
    "InMemoryDocumentStore",
    "SqliteDocumentStore",
]
