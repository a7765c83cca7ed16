"""
VerDB Server - optimistic-concurrency document versioning.

This package keeps an audit trail for documents held in a generic document
store and rejects conflicting concurrent writes:
- Live documents carry a monotonically increasing _version counter
- Every successful update or delete appends the previous state to an
  append-only history collection, keyed by (original id, version)
- Deletes end with a tombstone history entry (_version == -1)

Architecture:
    ┌─────────────┐     ┌──────────────────┐     ┌─────────────────┐
    │   Caller    │────▶│ VersionedCollection│──▶│  VersionGuard   │
    └─────────────┘     └──────────────────┘     └────────┬────────┘
                                                          │
                                   ┌──────────────────────┼───────────┐
                                   ▼                      ▼           │
                            ┌─────────────┐       ┌──────────────┐    │
                            │HistoryWriter│──────▶│DocumentStore │◀───┘
                            └─────────────┘       │(memory/SQLite)│
                                                  └──────────────┘

Invariants:
    - Each successful transition v -> v+1 writes exactly one history entry (id, v)
    - Versions increase by exactly 1 per successful mutation
    - The live write happens only after every history write succeeded
    - The acting principal (changed_by) is never stored on the live document

How to change safely:
    - Never update or delete history documents
    - Keep the reserved field names stable, they are part of the stored format
    - Run the concurrency tests after touching the guard

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
