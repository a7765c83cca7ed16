"""
Version guard: optimistic concurrency control for live documents.

Every mutation of a live document goes through VersionGuard.apply():

    create:  version := 1                               -> insert live
    update:  load, compare, history (id, v)             -> replace live @ v+1
    delete:  load, compare, history (id, v),
             tombstone (id, v+1)                        -> remove live

Invariants:
    - The live write happens only after every history write succeeded
    - Live writes are guarded by the predicate _version == v, so two writers
      that loaded the same version can't both commit
    - Exactly one history record is written per retired version
    - changed_by is only ever stored on history records

How to change safely:
    - Keep the order history-then-live; reversing it loses audit entries
    - Any new failure path must raise a VersioningError and skip the live write
    - Run tests/unit/test_guard.py after every change

Lost races:
    Two writers that loaded version v both try to insert history (id, v);
    the unique id lets exactly one through. The other gets
    VersionConflictError, whether or not the winner has replaced the live
    document yet.

Residual gap:
    A history write followed by a failed live write leaves an orphan history
    record. It is not compensated. While it is younger than
    claim_timeout_ms it is indistinguishable from an in-flight writer and
    retries conflict; after that, retrying the same transition surfaces
    InvariantViolationError.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Callable, Optional

from ..config import VersioningConfig
from ..store.base import DocumentNotFoundError, DocumentStore, DuplicateKeyError, StoreError
from .errors import (
    InvariantViolationError,
    NotFoundError,
    PersistenceError,
    VersionConflictError,
    VersioningError,
)
from .history import HistoryWriter
from .schema import VersionedSchema
from .types import (
    VERSION,
    CreateMutation,
    DeleteMutation,
    LiveRecord,
    Mutation,
    UpdateMutation,
)

logger = logging.getLogger(__name__)


class VersionGuard:
    """Gates every mutation of a live collection on a version match.

    Attributes:
        store: Document store holding the live collection
        collection: Live collection name
        history: Writer for the history collection
        schema: Field set payloads are validated against
        tenant_key: Field copied from the live document onto tombstones
        log_errors: Log aborted mutations before re-raising
        claim_timeout_ms: Age below which a colliding history entry is
            treated as another writer's in-flight claim

    Thread safety:
        Holds no mutable state. Concurrent writers are arbitrated by the
        store (predicated live writes, unique history ids).

    Example:
        >>> guard = VersionGuard(store, "pages", HistoryWriter(store, "pages.versions"))
        >>> page = await guard.apply(CreateMutation({"title": "Home"}))
        >>> page = await guard.apply(UpdateMutation(page, {"title": "Start"},
        ...                                         changed_by="user:42"))
        >>> page.version
        2
    """

    def __init__(
        self,
        store: DocumentStore,
        collection: str,
        history: HistoryWriter,
        schema: Optional[VersionedSchema] = None,
        tenant_key: Optional[str] = "tenant_id",
        log_errors: bool = False,
        claim_timeout_ms: int = 30_000,
    ) -> None:
        self.store = store
        self.collection = collection
        self.history = history
        self.schema = schema or VersionedSchema()
        self.tenant_key = tenant_key
        self.log_errors = log_errors
        self.claim_timeout_ms = claim_timeout_ms

    @classmethod
    def from_config(
        cls,
        store: DocumentStore,
        config: VersioningConfig,
        schema: Optional[VersionedSchema] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> VersionGuard:
        """Build a guard and its history writer from configuration."""
        return cls(
            store,
            config.live_collection,
            HistoryWriter(store, config.history_collection, clock=clock),
            schema=schema,
            tenant_key=config.tenant_key,
            log_errors=config.log_errors,
            claim_timeout_ms=config.claim_timeout_ms,
        )

    async def apply(self, mutation: Mutation) -> LiveRecord:
        """Run a mutation to completion.

        Returns:
            The committed record (for deletes: the removed record at its
            final, tombstoned version)

        Raises:
            NotFoundError: The persisted record is missing
            VersionConflictError: Another writer committed first
            PersistenceError: A store write failed
            InvariantViolationError: A history id was already taken
            SchemaError: The payload uses reserved or undeclared fields
        """
        try:
            if isinstance(mutation, CreateMutation):
                record = await self.on_create(mutation)
                await self._insert_live(record)
            elif isinstance(mutation, UpdateMutation):
                record = await self.on_update(mutation)
                await self._replace_live(record, base_version=record.version - 1)
            elif isinstance(mutation, DeleteMutation):
                record = await self.on_delete(mutation)
                await self._remove_live(record.record_id, base_version=record.version - 1)
            else:
                raise TypeError(f"Unsupported mutation: {type(mutation).__name__}")
        except VersioningError as e:
            if self.log_errors:
                logger.error(
                    f"Mutation aborted: {e.message}",
                    extra={
                        "collection": self.collection,
                        "mutation": type(mutation).__name__,
                        "code": e.code,
                    },
                )
            raise

        logger.debug(
            "Mutation committed",
            extra={
                "collection": self.collection,
                "mutation": type(mutation).__name__,
                "record_id": record.record_id,
                "version": record.version,
            },
        )
        return record

    async def on_create(self, mutation: CreateMutation) -> LiveRecord:
        """Prepare a new record at version 1. Creation can't conflict."""
        self.schema.validate_payload(mutation.payload)
        record_id = mutation.record_id
        if record_id is None:
            record_id = str(uuid.uuid4())
        return LiveRecord(record_id=record_id, version=1, payload=dict(mutation.payload))

    async def on_update(self, mutation: UpdateMutation) -> LiveRecord:
        """Check the version and write the pre-image to history.

        Returns:
            The record to commit, at persisted version + 1
        """
        record = mutation.record
        payload = dict(record.payload if mutation.payload is None else mutation.payload)
        self.schema.validate_payload(payload)

        base = await self._load(record)
        base_version = base[VERSION]

        await self._write_history(
            record.record_id,
            base_version,
            pre_image=base,
            changed_by=mutation.changed_by,
        )

        return LiveRecord(record_id=record.record_id, version=base_version + 1, payload=payload)

    async def on_delete(self, mutation: DeleteMutation) -> LiveRecord:
        """Check the version, write the pre-image and then a tombstone.

        Returns:
            The removed record at its tombstone version
        """
        record = mutation.record
        base = await self._load(record)
        base_version = base[VERSION]

        await self._write_history(
            record.record_id,
            base_version,
            pre_image=base,
            changed_by=mutation.changed_by,
        )

        extra = {}
        if self.tenant_key and base.get(self.tenant_key) is not None:
            extra[self.tenant_key] = base[self.tenant_key]

        await self._write_history(
            record.record_id,
            base_version,
            pre_image=base,
            changed_by=mutation.changed_by,
            tombstone=True,
            extra_fields=extra,
        )

        deleted = LiveRecord.from_document(base)
        deleted.version = base_version + 1
        return deleted

    async def _load(self, record: LiveRecord) -> dict[str, Any]:
        """Load the persisted counterpart and compare versions."""
        try:
            base = await self.store.get(self.collection, record.record_id)
        except StoreError as e:
            raise PersistenceError(
                f"Failed to load {record.record_id!r}: {e}", collection=self.collection
            ) from e

        if base is None:
            raise NotFoundError(record.record_id, self.collection)

        if base.get(VERSION) != record.version:
            raise VersionConflictError(record.record_id, record.version, base.get(VERSION))

        return base

    async def _write_history(
        self,
        record_id: Any,
        base_version: int,
        pre_image: dict[str, Any],
        changed_by: Any,
        tombstone: bool = False,
        extra_fields: Optional[dict[str, Any]] = None,
    ) -> None:
        """Write one history record, translating lost races into conflicts.

        The snapshot is keyed at base_version, the tombstone at
        base_version + 1.
        """
        version = base_version + 1 if tombstone else base_version
        try:
            await self.history.write(
                pre_image,
                version,
                changed_by=changed_by,
                tombstone=tombstone,
                extra_fields=extra_fields,
            )
        except InvariantViolationError as e:
            current = await self._current_version(record_id)
            if current != base_version:
                # Another writer claimed this transition and committed.
                raise VersionConflictError(record_id, base_version, current) from e
            if await self._claim_in_flight(record_id, version):
                # Another writer claimed this transition and is still committing.
                raise VersionConflictError(record_id, base_version, current) from e
            raise

    async def _claim_in_flight(self, record_id: Any, version: int) -> bool:
        """Whether the history entry at (record_id, version) is a fresh claim.

        An entry younger than claim_timeout_ms belongs to a writer that may
        not have reached its live write yet. Older entries are orphans.
        """
        existing = await self.history.get(record_id, version)
        if existing is None:
            return False
        return self.history.now() - existing.changed_at < self.claim_timeout_ms

    async def _current_version(self, record_id: Any) -> Optional[int]:
        """Re-read the persisted version, None if the record is gone."""
        try:
            current = await self.store.get(self.collection, record_id)
        except StoreError as e:
            raise PersistenceError(
                f"Failed to reload {record_id!r}: {e}", collection=self.collection
            ) from e
        return current.get(VERSION) if current is not None else None

    async def _lost_race(self, record_id: Any, base_version: int) -> VersioningError:
        """Explain why a predicated live write matched nothing."""
        current = await self._current_version(record_id)
        if current is None:
            return NotFoundError(record_id, self.collection)
        return VersionConflictError(record_id, base_version, current)

    async def _insert_live(self, record: LiveRecord) -> None:
        try:
            await self.store.insert(self.collection, record.to_document())
        except DuplicateKeyError as e:
            raise PersistenceError(
                f"Document already exists: {record.record_id!r}", collection=self.collection
            ) from e
        except StoreError as e:
            raise PersistenceError(
                f"Failed to create {record.record_id!r}: {e}", collection=self.collection
            ) from e

    async def _replace_live(self, record: LiveRecord, base_version: int) -> None:
        try:
            await self.store.replace(
                self.collection,
                record.record_id,
                record.to_document(),
                expected={VERSION: base_version},
            )
        except DocumentNotFoundError as e:
            raise (await self._lost_race(record.record_id, base_version)) from e
        except StoreError as e:
            raise PersistenceError(
                f"Failed to update {record.record_id!r}: {e}", collection=self.collection
            ) from e

    async def _remove_live(self, record_id: Any, base_version: int) -> None:
        try:
            await self.store.remove(self.collection, record_id, expected={VERSION: base_version})
        except DocumentNotFoundError as e:
            raise (await self._lost_race(record_id, base_version)) from e
        except StoreError as e:
            raise PersistenceError(
                f"Failed to remove {record_id!r}: {e}", collection=self.collection
            ) from e
