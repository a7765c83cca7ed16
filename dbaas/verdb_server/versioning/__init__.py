"""
Versioning core for VerDB.

This module handles:
- Optimistic concurrency control for live documents (VersionGuard)
- Append-only history of retired versions and deletions (HistoryWriter)
- Setup-time registration of the live and history field sets

Invariants:
    - A failed mutation leaves the live document untouched
    - Each successful mutation writes its history before its live change
    - History documents are never modified

How to change safely:
    - Keep the stored field names (_id, _version, _changed_by, _changed_at)
    - Translate every store error into a VersioningError
"""

from .collection import VersionedCollection
from .errors import (
    InvariantViolationError,
    NotFoundError,
    PersistenceError,
    SchemaError,
    VersionConflictError,
    VersioningError,
)
from .guard import VersionGuard
from .history import HistoryWriter
from .schema import FieldDef, FieldKind, VersionedSchema
from .types import (
    CreateMutation,
    DeleteMutation,
    HistoryId,
    HistoryRecord,
    LiveRecord,
    Mutation,
    UpdateMutation,
)

__all__ = [
    "VersionedCollection",
    "VersionGuard",
    "HistoryWriter",
    "VersionedSchema",
    "FieldDef",
    "FieldKind",
    "LiveRecord",
    "HistoryRecord",
    "HistoryId",
    "Mutation",
    "CreateMutation",
    "UpdateMutation",
    "DeleteMutation",
    "VersioningError",
    "NotFoundError",
    "VersionConflictError",
    "PersistenceError",
    "InvariantViolationError",
    "SchemaError",
]
