"""
Error types for VerDB versioning.

This module defines every exception a versioned mutation can raise:
- VersioningError: Base exception
- NotFoundError: Persisted record missing
- VersionConflictError: Optimistic concurrency check failed
- PersistenceError: Store I/O failure on a history or live write
- InvariantViolationError: Duplicate composite history id
- SchemaError: Reserved or undeclared field names

Invariants:
    - All errors inherit from VersioningError
    - Store exceptions are always chained as __cause__, never leaked bare
    - Errors include context for debugging
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class VersioningError(Exception):
    """Base exception for all versioning errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "VERSIONING_ERROR"
        self.details = details or {}


class NotFoundError(VersioningError):
    """The persisted counterpart of a record doesn't exist.

    Raised when:
    - Updating a record that was never created
    - Updating or deleting a record another writer already deleted
    """

    def __init__(self, record_id: Any, collection: Optional[str] = None) -> None:
        super().__init__(
            f"Document to update not found: {record_id!r}",
            code="NOT_FOUND",
            details={"record_id": record_id, "collection": collection},
        )
        self.record_id = record_id
        self.collection = collection


class VersionConflictError(VersioningError):
    """In-memory and persisted versions disagree.

    Another writer committed a mutation since the record was read. Callers
    typically reload the record and retry.
    """

    def __init__(
        self,
        record_id: Any,
        expected_version: int,
        actual_version: Optional[int] = None,
    ) -> None:
        super().__init__(
            f"Modified and base versions do not match for {record_id!r}: "
            f"expected {expected_version}, found {actual_version}",
            code="VERSION_CONFLICT",
            details={
                "record_id": record_id,
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
        )
        self.record_id = record_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class PersistenceError(VersioningError):
    """The underlying store failed during a history or live write."""

    def __init__(self, message: str, collection: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="PERSISTENCE_ERROR",
            details={"collection": collection},
        )
        self.collection = collection


class InvariantViolationError(VersioningError):
    """A history record with the same composite id already exists.

    Composite ids embed the version being retired, so this only happens
    when an earlier mutation wrote history and then failed its live write.
    """

    def __init__(self, record_id: Any, version: int) -> None:
        super().__init__(
            f"History entry already exists for {record_id!r} at version {version}",
            code="INVARIANT_VIOLATION",
            details={"record_id": record_id, "version": version},
        )
        self.record_id = record_id
        self.version = version


class SchemaError(VersioningError):
    """A payload or schema uses reserved or undeclared field names."""

    def __init__(self, message: str, fields: Optional[List[str]] = None) -> None:
        super().__init__(
            message,
            code="SCHEMA_ERROR",
            details={"fields": fields or []},
        )
        self.fields = fields or []
