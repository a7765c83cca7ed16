"""
VerDB - process wiring.

This module turns a ServerConfig into running components:
- Logging (JSON or text)
- Document store connection
- VersionedCollection for the configured live/history collections

Invariants:
    - The store is connected before any collection is handed out
    - The store is closed when the context exits, even on error

How to change safely:
    - Keep setup_logging idempotent; tools call it on every start
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import json_log_formatter

from .config import ServerConfig
from .store import create_document_store
from .versioning import VersionedCollection, VersionedSchema

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]


@asynccontextmanager
async def open_collection(
    config: ServerConfig,
    schema: VersionedSchema | None = None,
) -> AsyncIterator[VersionedCollection]:
    """Connect the configured store and yield its versioned collection.

    Example:
        >>> async with open_collection(ServerConfig.from_env()) as pages:
        ...     page = await pages.create({"title": "Home"})
    """
    store = create_document_store(config)
    await store.connect()
    logger.info(
        "Document store connected",
        extra={
            "backend": config.storage.backend.value,
            "collection": config.versioning.live_collection,
        },
    )
    try:
        yield VersionedCollection.from_config(store, config.versioning, schema=schema)
    finally:
        await store.close()
