"""
CLI tools for VerDB administration.

This module provides command-line tools for:
- history: Inspect live documents and their history

Invariants:
    - Tools are read-only
    - Tools work offline (no running server required)
"""

from .history_cli import HistoryCLI

__all__ = ["HistoryCLI"]
