"""
Record shapes and mutation intents for VerDB versioning.

Live document layout:
    {"_id": <id>, "_version": <int>, ...payload}

History document layout:
    {"_id": {"_id": <id>, "_version": <int>},
     "_version": <int, -1 for a tombstone>,
     "_changed_by": <actor, omitted if none>,
     "_changed_at": <Unix ms>,
     ...payload (tombstones: pass-through fields only)}

Invariants:
    - LiveRecord payloads never contain reserved field names
    - A HistoryRecord's composite version is unique per original id
    - Mutations are immutable; each carries exactly the data it needs
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

ID = "_id"
VERSION = "_version"
CHANGED_BY = "_changed_by"
CHANGED_AT = "_changed_at"

RESERVED_FIELDS = frozenset({ID, VERSION, CHANGED_BY, CHANGED_AT})

TOMBSTONE_VERSION = -1


@dataclass(frozen=True)
class HistoryId:
    """Composite history identifier (original id, version)."""

    original_id: Any
    version: int

    def to_dict(self) -> Dict[str, Any]:
        return {ID: self.original_id, VERSION: self.version}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> HistoryId:
        return cls(original_id=data[ID], version=data[VERSION])


@dataclass
class LiveRecord:
    """The current authoritative state of a versioned document.

    Attributes:
        record_id: Opaque identifier
        version: Version the holder believes is current (1 after create)
        payload: User fields
    """

    record_id: Any
    version: int = 0
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_document(self) -> Dict[str, Any]:
        return {ID: self.record_id, VERSION: self.version, **self.payload}

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> LiveRecord:
        payload = {k: v for k, v in document.items() if k not in RESERVED_FIELDS}
        return cls(
            record_id=document[ID],
            version=document.get(VERSION, 0),
            payload=payload,
        )


@dataclass(frozen=True)
class HistoryRecord:
    """An immutable snapshot of a live record, or a deletion tombstone.

    Attributes:
        history_id: Composite (original id, version) key
        version: Version the live record had before the mutation, or -1
        payload: Copied fields (pass-through fields only for tombstones)
        changed_by: Actor that performed the mutation, if known
        changed_at: Write time (Unix ms)
    """

    history_id: HistoryId
    version: int
    payload: Dict[str, Any]
    changed_at: int
    changed_by: Any = None

    @property
    def original_id(self) -> Any:
        return self.history_id.original_id

    @property
    def is_tombstone(self) -> bool:
        return self.version == TOMBSTONE_VERSION

    def to_document(self) -> Dict[str, Any]:
        document = {**self.payload, ID: self.history_id.to_dict(), VERSION: self.version}
        if self.changed_by is not None:
            document[CHANGED_BY] = self.changed_by
        document[CHANGED_AT] = self.changed_at
        return document

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> HistoryRecord:
        payload = {k: v for k, v in document.items() if k not in RESERVED_FIELDS}
        return cls(
            history_id=HistoryId.from_dict(document[ID]),
            version=document[VERSION],
            payload=payload,
            changed_at=document[CHANGED_AT],
            changed_by=document.get(CHANGED_BY),
        )


@dataclass(frozen=True)
class CreateMutation:
    """Insert a new live record at version 1."""

    payload: Dict[str, Any]
    record_id: Any = None
    changed_by: Any = None


@dataclass(frozen=True)
class UpdateMutation:
    """Replace the payload of `record`, which must hold the persisted version.

    A None payload commits record.payload as-is.
    """

    record: LiveRecord
    payload: Optional[Dict[str, Any]] = None
    changed_by: Any = None


@dataclass(frozen=True)
class DeleteMutation:
    """Remove `record`, which must hold the persisted version."""

    record: LiveRecord
    changed_by: Any = None


Mutation = Union[CreateMutation, UpdateMutation, DeleteMutation]
