"""
Caller-facing facade over one versioned collection.

VersionedCollection binds a live collection to its history collection and
turns plain method calls into guarded mutations.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from ..config import VersioningConfig
from ..store.base import DocumentStore, StoreError
from .errors import PersistenceError
from .guard import VersionGuard
from .schema import VersionedSchema
from .types import CreateMutation, DeleteMutation, HistoryRecord, LiveRecord, UpdateMutation

logger = logging.getLogger(__name__)


class VersionedCollection:
    """A live collection with an append-only audit trail.

    Records returned by create() and update() carry the committed version;
    pass them back unchanged to the next mutation. Reload with get() after a
    VersionConflictError.

    Example:
        >>> pages = VersionedCollection.from_config(store, VersioningConfig())
        >>> page = await pages.create({"title": "Home"})
        >>> page = await pages.update(page, {"title": "Start"}, changed_by="user:42")
        >>> [h.version for h in await pages.history(page.record_id)]
        [1]
    """

    def __init__(self, guard: VersionGuard) -> None:
        self.guard = guard

    @classmethod
    def from_config(
        cls,
        store: DocumentStore,
        config: VersioningConfig,
        schema: Optional[VersionedSchema] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> VersionedCollection:
        return cls(VersionGuard.from_config(store, config, schema=schema, clock=clock))

    @property
    def name(self) -> str:
        return self.guard.collection

    async def create(
        self,
        payload: dict[str, Any],
        record_id: Any = None,
        changed_by: Any = None,
    ) -> LiveRecord:
        """Create a record at version 1. Writes no history."""
        return await self.guard.apply(CreateMutation(payload, record_id, changed_by))

    async def update(
        self,
        record: LiveRecord,
        payload: Optional[dict[str, Any]] = None,
        changed_by: Any = None,
    ) -> LiveRecord:
        """Commit a new payload for `record` (record.payload if None)."""
        return await self.guard.apply(UpdateMutation(record, payload, changed_by))

    async def delete(self, record: LiveRecord, changed_by: Any = None) -> LiveRecord:
        """Delete `record`, leaving a snapshot and a tombstone in history."""
        return await self.guard.apply(DeleteMutation(record, changed_by))

    async def get(self, record_id: Any) -> Optional[LiveRecord]:
        """Load the live record, or None if it doesn't exist."""
        try:
            document = await self.guard.store.get(self.name, record_id)
        except StoreError as e:
            raise PersistenceError(f"Failed to load {record_id!r}: {e}", collection=self.name) from e
        return LiveRecord.from_document(document) if document is not None else None

    async def history(self, record_id: Any) -> list[HistoryRecord]:
        """History of one record, oldest first."""
        return await self.guard.history.list_for(record_id)
