"""
Search backends.

The in-memory backend is importable without any database driver; the DuckDB
and pgstac backends are imported from their own modules.
"""

from stac_search.backends.base import QueryCancelled, QueryHandle, SearchBackend
from stac_search.backends.factory import create_backend, load_items
from stac_search.backends.memory import ItemStore, MemoryBackend, ReadWriteLock, match_items
from stac_search.backends.pool import ConnectionPool

__all__ = [
    "SearchBackend",
    "QueryHandle",
    "QueryCancelled",
    "ConnectionPool",
    "ItemStore",
    "ReadWriteLock",
    "MemoryBackend",
    "match_items",
    "create_backend",
    "load_items",
]
