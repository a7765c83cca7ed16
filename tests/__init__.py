"""
VerDB Test Suite.

This package contains:
- unit/: Unit tests (in-memory store, temporary SQLite files)
- integration/: Full versioning scenarios against SQLite, CLI
"""
