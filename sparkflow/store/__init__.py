"""Tenant library storage used by workflow steps."""

from __future__ import annotations

from typing import Optional

from ..config import SparkflowConfig, load_config
from .inmemory import InMemoryLibraryStore
from .repository import LibraryStore
from .sql import SqlLibraryStore

_store_instance: LibraryStore | None = None


def get_library_store(
    library_url: Optional[str] = None, config: Optional[SparkflowConfig] = None
) -> LibraryStore:
    """Factory function to obtain the library store.

    ``library_url`` is an SQLAlchemy async URL such as
    ``sqlite+aiosqlite:///library.db`` or ``postgresql+asyncpg://...``. Without
    one an in-memory store is returned. Call ``init_db()`` on an
    ``SqlLibraryStore`` before first use to create its tables.
    """

    global _store_instance
    if _store_instance is not None and library_url is None and config is None:
        return _store_instance

    config = config or load_config()
    library_url = library_url or config.library_url
    if not library_url:
        _store_instance = InMemoryLibraryStore()
    else:
        _store_instance = SqlLibraryStore(library_url)
    return _store_instance


__all__ = [
    "InMemoryLibraryStore",
    "LibraryStore",
    "SqlLibraryStore",
    "get_library_store",
]
