"""
History writer for VerDB.

Builds History Records from live pre-images and appends them to the
history collection. Holds no conflict logic of its own: the caller decides
which version is being retired.

Invariants:
    - History documents are only ever inserted, never replaced or removed
    - Tombstones carry no payload, only explicitly passed-through fields
    - _changed_at is stamped at write time by the injected clock
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from ..store.base import DocumentStore, DuplicateKeyError, StoreError
from .errors import InvariantViolationError, PersistenceError
from .types import (
    ID,
    RESERVED_FIELDS,
    TOMBSTONE_VERSION,
    HistoryId,
    HistoryRecord,
)

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class HistoryWriter:
    """Constructs and persists History Records.

    Attributes:
        store: Document store holding the history collection
        collection: History collection name

    Example:
        >>> writer = HistoryWriter(store, "versions")
        >>> await writer.write({"_id": "p1", "_version": 2, "title": "old"}, 2,
        ...                    changed_by="user:42")
    """

    def __init__(
        self,
        store: DocumentStore,
        collection: str,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        """Initialize the writer.

        Args:
            store: Document store
            collection: History collection name
            clock: Returns the current time in Unix ms
        """
        self.store = store
        self.collection = collection
        self._clock = clock or _now_ms

    async def write(
        self,
        pre_image: Dict[str, Any],
        version: int,
        changed_by: Any = None,
        tombstone: bool = False,
        extra_fields: Optional[Dict[str, Any]] = None,
    ) -> HistoryRecord:
        """Persist one History Record.

        Args:
            pre_image: Live document as it was before the mutation
            version: Version keying the composite id
            changed_by: Acting principal, omitted from the document if None
            tombstone: Write a deletion marker instead of a snapshot
            extra_fields: Fields to set on the record (the only fields a
                tombstone carries besides the bookkeeping ones)

        Returns:
            The persisted HistoryRecord

        Raises:
            InvariantViolationError: If the composite id already exists
            PersistenceError: If the store write fails
        """
        history_id = HistoryId(original_id=pre_image[ID], version=version)

        if tombstone:
            payload = dict(extra_fields or {})
            record_version = TOMBSTONE_VERSION
        else:
            payload = {k: v for k, v in pre_image.items() if k not in RESERVED_FIELDS}
            payload.update(extra_fields or {})
            record_version = version

        record = HistoryRecord(
            history_id=history_id,
            version=record_version,
            payload=payload,
            changed_at=self._clock(),
            changed_by=changed_by,
        )

        try:
            await self.store.insert(self.collection, record.to_document())
        except DuplicateKeyError as e:
            raise InvariantViolationError(history_id.original_id, version) from e
        except StoreError as e:
            raise PersistenceError(
                f"Failed to write history for {history_id.original_id!r}: {e}",
                collection=self.collection,
            ) from e

        logger.debug(
            "History record written",
            extra={
                "collection": self.collection,
                "record_id": history_id.original_id,
                "version": version,
                "tombstone": tombstone,
            },
        )
        return record

    async def list_for(self, original_id: Any) -> List[HistoryRecord]:
        """Return the history of one identifier in write order.

        Raises:
            PersistenceError: If the store read fails
        """
        try:
            documents = await self.store.find(self.collection, {f"{ID}.{ID}": original_id})
        except StoreError as e:
            raise PersistenceError(
                f"Failed to read history for {original_id!r}: {e}",
                collection=self.collection,
            ) from e
        return [HistoryRecord.from_document(doc) for doc in documents]

    async def get(self, original_id: Any, version: int) -> Optional[HistoryRecord]:
        """Fetch the History Record keyed (original_id, version), if any.

        Raises:
            PersistenceError: If the store read fails
        """
        history_id = HistoryId(original_id=original_id, version=version)
        try:
            document = await self.store.get(self.collection, history_id.to_dict())
        except StoreError as e:
            raise PersistenceError(
                f"Failed to read history for {original_id!r}: {e}",
                collection=self.collection,
            ) from e
        return HistoryRecord.from_document(document) if document is not None else None

    def now(self) -> int:
        """Current time in Unix ms, from the writer's clock."""
        return self._clock()
