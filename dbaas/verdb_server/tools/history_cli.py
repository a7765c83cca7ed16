"""
History CLI tool for VerDB.

This tool inspects a versioned collection:
- show: Print the live document
- history: Print the history records of a document, oldest first

Usage:
    verdb-history show 6f1c...
    verdb-history history 6f1c... --format text
    verdb-history history 42 --json-id

Invariants:
    - Read-only: never writes to the store
    - Exit code 1 when the document (or its history) is not found
    - JSON output is deterministic (sorted keys)
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from ..config import ServerConfig
from ..main import open_collection, setup_logging
from ..versioning import VersionedCollection

logger = logging.getLogger(__name__)


class HistoryCLI:
    """Read-only views over a VersionedCollection.

    Example:
        >>> cli = HistoryCLI(collection)
        >>> print(await cli.history("p1"))
    """

    def __init__(self, collection: VersionedCollection) -> None:
        self.collection = collection

    async def show(self, record_id: Any) -> str | None:
        """Live document as JSON, None if it doesn't exist."""
        record = await self.collection.get(record_id)
        if record is None:
            return None
        return json.dumps(record.to_document(), indent=2, sort_keys=True)

    async def history(self, record_id: Any, fmt: str = "json") -> str | None:
        """History of a document as JSON or text, None if there is none."""
        records = await self.collection.history(record_id)
        if not records:
            return None

        if fmt == "json":
            return json.dumps([r.to_document() for r in records], indent=2, sort_keys=True)

        lines = []
        for r in records:
            kind = "DELETED" if r.is_tombstone else f"v{r.version}"
            actor = r.changed_by if r.changed_by is not None else "-"
            lines.append(f"  [{kind}] at={r.changed_at} by={actor}")
        return "\n".join(lines)


def _parse_id(raw: str, as_json: bool) -> Any:
    return json.loads(raw) if as_json else raw


async def _run(args: argparse.Namespace, config: ServerConfig) -> int:
    record_id = _parse_id(args.record_id, args.json_id)

    async with open_collection(config) as collection:
        cli = HistoryCLI(collection)
        if args.command == "show":
            output = await cli.show(record_id)
        else:
            output = await cli.history(record_id, args.format)

    if output is None:
        print(f"No {args.command} found for {record_id!r}", file=sys.stderr)
        return 1
    print(output)
    return 0


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for the history tool."""
    parser = argparse.ArgumentParser(description="VerDB history inspection tool")
    subparsers = parser.add_subparsers(dest="command", required=True)

    show_parser = subparsers.add_parser("show", help="Print the live document")
    show_parser.add_argument("record_id", help="Document id")
    show_parser.add_argument("--json-id", action="store_true", help="Parse the id as JSON")

    history_parser = subparsers.add_parser("history", help="Print the history of a document")
    history_parser.add_argument("record_id", help="Document id")
    history_parser.add_argument("--json-id", action="store_true", help="Parse the id as JSON")
    history_parser.add_argument(
        "--format", choices=["text", "json"], default="json", help="Output format"
    )

    args = parser.parse_args(argv)

    config = ServerConfig.from_env()
    setup_logging(config)

    sys.exit(asyncio.run(_run(args, config)))


if __name__ == "__main__":
    main()
