"""Entity store backends for marketflow."""

import logging
from pathlib import Path
from typing import Optional, Union

from .base import CommitResult, EntityStore, Write
from .memory import InMemoryEntityStore
from .sqlite import SQLiteEntityStore

logger = logging.getLogger(__name__)


def create_store(db_path: Optional[Union[str, Path]] = None) -> EntityStore:
    """SQLite store at ``db_path``, or an in-memory store when it is unset."""
    if db_path:
        logger.debug(f"Using SQLite entity store at {db_path}")
        return SQLiteEntityStore(db_path)
    return InMemoryEntityStore()


__all__ = [
    "CommitResult",
    "EntityStore",
    "InMemoryEntityStore",
    "SQLiteEntityStore",
    "Write",
    "create_store",
]
