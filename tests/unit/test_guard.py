"""
Unit tests for the version guard.

Tests cover:
- Create/update/delete lifecycle and history contents
- Optimistic concurrency conflicts
- Concurrent writers racing on the same version, including update vs delete
- Failure atomicity (no live write after a failed history write)
- Orphan history detection and the claim window
- Error logging
"""

import asyncio
import logging

import pytest

from dbaas.verdb_server.config import VersioningConfig
from dbaas.verdb_server.store import InMemoryDocumentStore, StoreError
from dbaas.verdb_server.versioning import (
    CreateMutation,
    DeleteMutation,
    HistoryWriter,
    InvariantViolationError,
    LiveRecord,
    NotFoundError,
    PersistenceError,
    SchemaError,
    UpdateMutation,
    VersionConflictError,
    VersionedCollection,
    VersionGuard,
)

LIVE = "pages"
HISTORY = "pages.versions"


class YieldingStore(InMemoryDocumentStore):
    """Suspends after every store call so concurrent writers interleave."""

    async def get(self, collection, doc_id):
        doc = await super().get(collection, doc_id)
        await asyncio.sleep(0)
        return doc

    async def insert(self, collection, document):
        await super().insert(collection, document)
        await asyncio.sleep(0)

    async def replace(self, collection, doc_id, document, expected=None):
        await super().replace(collection, doc_id, document, expected)
        await asyncio.sleep(0)

    async def remove(self, collection, doc_id, expected=None):
        await super().remove(collection, doc_id, expected)
        await asyncio.sleep(0)

    async def find(self, collection, where=None):
        docs = await super().find(collection, where)
        await asyncio.sleep(0)
        return docs


class Clock:
    """Settable millisecond clock."""

    def __init__(self, now=1000):
        self.now = now

    def __call__(self):
        return self.now


class RacingStore(InMemoryDocumentStore):
    """Bumps the live version behind the guard's back after a history write."""

    async def insert(self, collection, document):
        await super().insert(collection, document)
        if collection == HISTORY:
            live_id = document["_id"]["_id"]
            live = await self.get(LIVE, live_id)
            live["_version"] += 1
            await self.replace(LIVE, live_id, live)


def make_pages(store, clock=None, **kwargs):
    guard = VersionGuard(
        store,
        LIVE,
        HistoryWriter(store, HISTORY, clock=clock or Clock()),
        tenant_key="company_id",
        **kwargs,
    )
    return VersionedCollection(guard)


class TestCreate:
    """Tests for create."""

    @pytest.fixture
    def store(self):
        return InMemoryDocumentStore()

    @pytest.fixture
    def pages(self, store):
        return make_pages(store)

    @pytest.mark.asyncio
    async def test_create_starts_at_version_1(self, store, pages):
        """Creating a record writes no history."""
        await store.connect()

        page = await pages.create({"title": "test", "content": "foobar"}, changed_by="user:u")

        assert page.version == 1
        assert store.count(HISTORY) == 0
        assert await store.get(LIVE, page.record_id) == {
            "_id": page.record_id,
            "_version": 1,
            "title": "test",
            "content": "foobar",
        }

    @pytest.mark.asyncio
    async def test_create_generates_id(self, store, pages):
        """Ids are generated when not supplied."""
        await store.connect()

        first = await pages.create({"title": "a"})
        second = await pages.create({"title": "b"})

        assert isinstance(first.record_id, str)
        assert first.record_id != second.record_id

    @pytest.mark.asyncio
    async def test_create_duplicate_id(self, store, pages):
        """Creating an existing id fails without touching it."""
        await store.connect()
        await pages.create({"title": "a"}, record_id="p1")

        with pytest.raises(PersistenceError):
            await pages.create({"title": "b"}, record_id="p1")

        assert (await pages.get("p1")).payload == {"title": "a"}

    @pytest.mark.asyncio
    async def test_create_rejects_reserved_fields(self, store, pages):
        """Payloads can't set bookkeeping fields."""
        await store.connect()

        with pytest.raises(SchemaError):
            await pages.create({"title": "a", "_version": 7})

        assert store.count(LIVE) == 0


class TestUpdate:
    """Tests for update."""

    @pytest.fixture
    def store(self):
        return InMemoryDocumentStore()

    @pytest.fixture
    def pages(self, store):
        return make_pages(store)

    @pytest.mark.asyncio
    async def test_update_writes_pre_image(self, store, pages):
        """History keeps the persisted pre-image, not the new values."""
        await store.connect()
        page = await pages.create(
            {"title": "foo", "content": "bar", "company_id": "c1"}, record_id="p1"
        )

        page = await pages.update(page, {**page.payload, "title": "foo 2"})

        assert page.version == 2
        history = await pages.history("p1")
        assert len(history) == 1
        entry = history[0]
        assert entry.version == 1
        assert entry.history_id.original_id == "p1"
        assert entry.history_id.version == 1
        assert entry.payload == {"title": "foo", "content": "bar", "company_id": "c1"}
        assert entry.changed_by is None
        assert entry.changed_at == 1000
        assert (await pages.get("p1")).payload["title"] == "foo 2"

    @pytest.mark.asyncio
    async def test_changed_by_only_on_history(self, store, pages):
        """The actor lands on history and never on the live document."""
        await store.connect()
        page = await pages.create({"title": "foo"}, record_id="p1")

        page = await pages.update(page, {"title": "bar"}, changed_by="user:u")

        history = await pages.history("p1")
        assert history[0].changed_by == "user:u"
        live = await store.get(LIVE, "p1")
        assert "_changed_by" not in live
        assert page.version == 2

    @pytest.mark.asyncio
    async def test_update_without_payload_commits_record_payload(self, store, pages):
        """A None payload commits the record's own payload."""
        await store.connect()
        page = await pages.create({"title": "foo"}, record_id="p1")
        page.payload["title"] = "edited in place"

        page = await pages.update(page)

        assert (await pages.get("p1")).payload == {"title": "edited in place"}
        assert (await pages.history("p1"))[0].payload == {"title": "foo"}

    @pytest.mark.asyncio
    async def test_versions_are_contiguous(self, store, pages):
        """N updates leave N history entries numbered 1..N."""
        await store.connect()
        page = await pages.create({"n": 0}, record_id="p1")

        for n in range(1, 6):
            page = await pages.update(page, {"n": n})

        history = await pages.history("p1")
        assert page.version == 6
        assert [h.version for h in history] == [1, 2, 3, 4, 5]
        assert [h.payload["n"] for h in history] == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_update_missing_record(self, store, pages):
        """Updating a record that doesn't exist fails with NotFoundError."""
        await store.connect()

        with pytest.raises(NotFoundError) as exc_info:
            await pages.update(LiveRecord("missing", 1, {"title": "x"}))

        assert exc_info.value.record_id == "missing"
        assert store.count(HISTORY) == 0
        assert store.count(LIVE) == 0

    @pytest.mark.asyncio
    async def test_stale_version_conflicts(self, store, pages):
        """A record loaded before another commit can't be saved."""
        await store.connect()
        await pages.create({"title": "foo"}, record_id="p1")
        first = await pages.get("p1")
        second = await pages.get("p1")

        await pages.update(first, {"title": "first"})
        with pytest.raises(VersionConflictError) as exc_info:
            await pages.update(second, {"title": "second"})

        assert exc_info.value.expected_version == 1
        assert exc_info.value.actual_version == 2
        assert exc_info.value.code == "VERSION_CONFLICT"
        assert store.count(HISTORY) == 1
        live = await pages.get("p1")
        assert live.version == 2
        assert live.payload == {"title": "first"}

    @pytest.mark.asyncio
    async def test_concurrent_updates_one_wins(self):
        """Two writers that read the same version: exactly one commits."""
        store = YieldingStore()
        pages = make_pages(store)
        await store.connect()
        await pages.create({"title": "foo"}, record_id="p1")
        record = await pages.get("p1")

        results = await asyncio.gather(
            pages.update(record, {"title": "a"}, changed_by="user:a"),
            pages.update(record, {"title": "b"}, changed_by="user:b"),
            return_exceptions=True,
        )

        committed = [r for r in results if isinstance(r, LiveRecord)]
        conflicts = [r for r in results if isinstance(r, VersionConflictError)]
        assert len(committed) == 1
        assert len(conflicts) == 1
        assert committed[0].version == 2
        history = await pages.history("p1")
        assert len(history) == 1
        assert (await pages.get("p1")).payload == committed[0].payload

    @pytest.mark.asyncio
    async def test_predicate_rejects_lost_race(self):
        """A live version that moved after the history write is a conflict."""
        store = RacingStore()
        pages = make_pages(store)
        await store.connect()
        page = await pages.create({"title": "foo"}, record_id="p1")

        with pytest.raises(VersionConflictError):
            await pages.update(page, {"title": "bar"})

        live = await pages.get("p1")
        assert live.payload == {"title": "foo"}
        # the history entry written before the failed live write stays
        assert store.count(HISTORY) == 1

    @pytest.mark.asyncio
    async def test_history_failure_aborts_update(self, store, pages):
        """No live write happens when the history write fails."""
        await store.connect()
        page = await pages.create({"title": "foo"}, record_id="p1")
        store.inject_failure("insert", StoreError("disk full"), collection=HISTORY)

        with pytest.raises(PersistenceError):
            await pages.update(page, {"title": "bar"})

        live = await pages.get("p1")
        assert live.version == 1
        assert live.payload == {"title": "foo"}
        assert store.count(HISTORY) == 0

    @pytest.mark.asyncio
    async def test_load_failure_aborts_update(self, store, pages):
        """A failed read surfaces as PersistenceError."""
        await store.connect()
        page = await pages.create({"title": "foo"}, record_id="p1")
        store.inject_failure("get", StoreError("timeout"), collection=LIVE)

        with pytest.raises(PersistenceError):
            await pages.update(page, {"title": "bar"})

        assert store.count(HISTORY) == 0

    @pytest.mark.asyncio
    async def test_orphan_history_is_invariant_violation(self, store):
        """A retry after a failed live write hits the orphan history entry."""
        clock = Clock()
        pages = make_pages(store, clock=clock)
        await store.connect()
        page = await pages.create({"title": "foo"}, record_id="p1")
        store.inject_failure("replace", StoreError("connection reset"), collection=LIVE)

        with pytest.raises(PersistenceError):
            await pages.update(page, {"title": "bar"})
        assert store.count(HISTORY) == 1
        assert (await pages.get("p1")).version == 1

        # a fresh entry could still be another writer's claim
        clock.now += 1000
        with pytest.raises(VersionConflictError):
            await pages.update(page, {"title": "bar"})

        clock.now += 30_000
        with pytest.raises(InvariantViolationError) as exc_info:
            await pages.update(page, {"title": "bar"})

        assert exc_info.value.code == "INVARIANT_VIOLATION"
        assert store.count(HISTORY) == 1
        assert (await pages.get("p1")).payload == {"title": "foo"}

    @pytest.mark.asyncio
    async def test_orphan_without_claim_window(self, store):
        """With no claim window every orphan is reported immediately."""
        pages = make_pages(store, claim_timeout_ms=0)
        await store.connect()
        page = await pages.create({"title": "foo"}, record_id="p1")
        store.inject_failure("replace", StoreError("connection reset"), collection=LIVE)
        with pytest.raises(PersistenceError):
            await pages.update(page, {"title": "bar"})

        with pytest.raises(InvariantViolationError):
            await pages.update(page, {"title": "bar"})


class TestConcurrentWriters:
    """Writers that loaded the same version, interleaved at every store call."""

    @pytest.fixture
    def store(self):
        return YieldingStore()

    @pytest.fixture
    def pages(self, store):
        return make_pages(store)

    @staticmethod
    def outcome(results):
        return sorted(type(r).__name__ for r in results)

    @pytest.mark.asyncio
    async def test_history_insert_race(self, store, pages):
        """Writers that lose the history insert conflict even before the winner commits."""
        await store.connect()
        await pages.create({"title": "foo"}, record_id="p1")
        record = await pages.get("p1")

        results = await asyncio.gather(
            pages.update(record, {"title": "a"}),
            pages.update(record, {"title": "b"}),
            pages.update(record, {"title": "c"}),
            return_exceptions=True,
        )

        assert self.outcome(results) == [
            "LiveRecord",
            "VersionConflictError",
            "VersionConflictError",
        ]
        winner = next(r for r in results if isinstance(r, LiveRecord))
        assert (await pages.get("p1")).payload == winner.payload
        assert store.count(HISTORY) == 1

    @pytest.mark.asyncio
    async def test_update_then_delete(self, store, pages):
        """An update that claims the version first wins over a delete."""
        await store.connect()
        await pages.create({"title": "foo", "company_id": "c1"}, record_id="p1")
        record = await pages.get("p1")

        updated, deleted = await asyncio.gather(
            pages.update(record, {"title": "bar", "company_id": "c1"}),
            pages.delete(record),
            return_exceptions=True,
        )

        assert isinstance(updated, LiveRecord)
        assert isinstance(deleted, VersionConflictError)
        live = await pages.get("p1")
        assert live.version == 2
        assert live.payload["title"] == "bar"
        assert [h.version for h in await pages.history("p1")] == [1]

    @pytest.mark.asyncio
    async def test_delete_then_update(self, store, pages):
        """A delete that claims the version first wins over an update."""
        await store.connect()
        await pages.create({"title": "foo", "company_id": "c1"}, record_id="p1")
        record = await pages.get("p1")

        deleted, updated = await asyncio.gather(
            pages.delete(record),
            pages.update(record, {"title": "bar", "company_id": "c1"}),
            return_exceptions=True,
        )

        assert isinstance(deleted, LiveRecord)
        assert isinstance(updated, VersionConflictError)
        assert await pages.get("p1") is None
        history = await pages.history("p1")
        assert [h.version for h in history] == [1, -1]
        assert history[1].payload == {"company_id": "c1"}

    @pytest.mark.asyncio
    async def test_concurrent_deletes(self, store, pages):
        """Two deletes of the same version leave one snapshot and one tombstone."""
        await store.connect()
        await pages.create({"title": "foo"}, record_id="p1")
        record = await pages.get("p1")

        results = await asyncio.gather(
            pages.delete(record), pages.delete(record), return_exceptions=True
        )

        assert self.outcome(results) == ["LiveRecord", "VersionConflictError"]
        assert await pages.get("p1") is None
        assert store.count(HISTORY) == 2


class TestDelete:
    """Tests for delete."""

    @pytest.fixture
    def store(self):
        return InMemoryDocumentStore()

    @pytest.fixture
    def pages(self, store):
        return make_pages(store)

    @pytest.mark.asyncio
    async def test_delete_writes_snapshot_and_tombstone(self, store, pages):
        """Delete leaves the pre-image and a tombstone, then removes the record."""
        await store.connect()
        page = await pages.create({"title": "foo", "company_id": "c1"}, record_id="p1")

        deleted = await pages.delete(page, changed_by="user:u")

        assert deleted.version == 2
        assert await pages.get("p1") is None
        history = await pages.history("p1")
        assert len(history) == 2

        snapshot, tombstone = history
        assert snapshot.version == 1
        assert not snapshot.is_tombstone
        assert snapshot.payload == {"title": "foo", "company_id": "c1"}
        assert snapshot.changed_by == "user:u"

        assert tombstone.is_tombstone
        assert tombstone.version == -1
        assert tombstone.history_id.version == 2
        assert tombstone.changed_by == "user:u"
        assert tombstone.payload == {"company_id": "c1"}

    @pytest.mark.asyncio
    async def test_tombstone_without_tenant_key(self, store, pages):
        """The tenant key is omitted from the tombstone when absent."""
        await store.connect()
        page = await pages.create({"title": "foo"}, record_id="p1")

        await pages.delete(page)

        tombstone = (await pages.history("p1"))[-1]
        assert tombstone.payload == {}
        doc = await store.get(HISTORY, {"_id": "p1", "_version": 2})
        assert "company_id" not in doc
        assert "_changed_by" not in doc

    @pytest.mark.asyncio
    async def test_delete_stale_version(self, store, pages):
        """Deletes are gated on the version like updates."""
        await store.connect()
        stale = await pages.create({"title": "foo"}, record_id="p1")
        await pages.update(stale, {"title": "bar"})

        with pytest.raises(VersionConflictError):
            await pages.delete(stale)

        assert await pages.get("p1") is not None
        assert store.count(HISTORY) == 1

    @pytest.mark.asyncio
    async def test_delete_missing(self, store, pages):
        """Deleting a missing record fails with NotFoundError."""
        await store.connect()

        with pytest.raises(NotFoundError):
            await pages.delete(LiveRecord("p1", 1))

    @pytest.mark.asyncio
    async def test_history_failure_aborts_delete(self, store, pages):
        """The record survives when the history write fails."""
        await store.connect()
        page = await pages.create({"title": "foo"}, record_id="p1")
        store.inject_failure("insert", StoreError("disk full"), collection=HISTORY)

        with pytest.raises(PersistenceError):
            await pages.delete(page)

        assert (await pages.get("p1")).version == 1
        assert store.count(HISTORY) == 0

    @pytest.mark.asyncio
    async def test_update_after_delete(self, store, pages):
        """A deleted record can't be updated."""
        await store.connect()
        page = await pages.create({"title": "foo"}, record_id="p1")
        await pages.delete(page)

        with pytest.raises(NotFoundError):
            await pages.update(page, {"title": "bar"})

        assert store.count(HISTORY) == 2


class TestScenario:
    """The full create/update/update/delete lifecycle."""

    @pytest.mark.asyncio
    async def test_lifecycle(self):
        store = InMemoryDocumentStore()
        pages = make_pages(store)
        await store.connect()

        page = await pages.create(
            {"title": "foo", "content": "bar", "path": "baz", "tags": ["a", "b", "c"]},
            record_id="r",
        )
        assert page.version == 1

        page = await pages.update(page, {**page.payload, "title": "foo 2"})
        history = await pages.history("r")
        assert len(history) == 1
        assert history[0].version == 1
        assert history[0].payload["title"] == "foo"
        assert page.version == 2

        page = await pages.update(page, {**page.payload, "content": "qux"}, changed_by="U")
        history = await pages.history("r")
        assert len(history) == 2
        assert history[0].changed_by is None
        assert history[1].changed_by == "U"
        assert page.version == 3

        await pages.delete(page, changed_by="U")
        history = await pages.history("r")
        assert len(history) == 4
        assert history[2].version == 3
        assert history[2].payload == {
            "title": "foo 2",
            "content": "qux",
            "path": "baz",
            "tags": ["a", "b", "c"],
        }
        assert history[3].version == -1
        assert history[3].changed_by == "U"
        assert await pages.get("r") is None


class TestGuardDispatch:
    """Tests for mutation dispatch, configuration and logging."""

    @pytest.mark.asyncio
    async def test_apply_dispatches_variants(self):
        """apply() accepts each mutation variant directly."""
        store = InMemoryDocumentStore()
        await store.connect()
        guard = VersionGuard(store, LIVE, HistoryWriter(store, HISTORY))

        page = await guard.apply(CreateMutation({"title": "foo"}, record_id="p1"))
        page = await guard.apply(UpdateMutation(page, {"title": "bar"}))
        deleted = await guard.apply(DeleteMutation(page))

        assert deleted.version == 3
        assert store.count(LIVE) == 0
        assert store.count(HISTORY) == 3

    @pytest.mark.asyncio
    async def test_apply_rejects_unknown_mutation(self):
        store = InMemoryDocumentStore()
        await store.connect()
        guard = VersionGuard(store, LIVE, HistoryWriter(store, HISTORY))

        with pytest.raises(TypeError):
            await guard.apply("delete everything")

    @pytest.mark.asyncio
    async def test_from_config(self):
        """Collections and tenant key come from VersioningConfig."""
        store = InMemoryDocumentStore()
        await store.connect()
        config = VersioningConfig(
            live_collection="notes", history_collection="notes_history", tenant_key="org"
        )
        notes = VersionedCollection.from_config(store, config)

        note = await notes.create({"body": "x", "org": "o1"}, record_id="n1")
        await notes.delete(note)

        assert notes.name == "notes"
        assert store.count("notes_history") == 2
        tombstone = await store.get("notes_history", {"_id": "n1", "_version": 2})
        assert tombstone["org"] == "o1"

    @pytest.mark.asyncio
    async def test_log_errors(self, caplog):
        """Aborted mutations are logged when log_errors is on, and still raised."""
        store = InMemoryDocumentStore()
        await store.connect()
        pages = make_pages(store, log_errors=True)
        page = await pages.create({"title": "foo"}, record_id="p1")
        await pages.update(page, {"title": "bar"})

        with caplog.at_level(logging.ERROR, logger="dbaas.verdb_server.versioning.guard"):
            with pytest.raises(VersionConflictError):
                await pages.update(page, {"title": "baz"})

        assert any("Mutation aborted" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_no_logging_by_default(self, caplog):
        store = InMemoryDocumentStore()
        await store.connect()
        pages = make_pages(store)

        with caplog.at_level(logging.ERROR, logger="dbaas.verdb_server.versioning.guard"):
            with pytest.raises(NotFoundError):
                await pages.update(LiveRecord("p1", 1))

        assert not [r for r in caplog.records if "Mutation aborted" in r.getMessage()]
