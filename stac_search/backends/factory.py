"""
Backend selection.

Exactly one backend is created per process from the ``backend`` section of
the configuration; requests never choose or combine backends.
"""

from pathlib import Path
from typing import List, Optional

from stac_search.backends.base import SearchBackend
from stac_search.backends.memory import ItemStore, MemoryBackend
from stac_search.config.config import Config
from stac_search.items import geoparquet
from stac_search.items.item import Item, read_items
from stac_search.utils.logging import get_logger
from stac_search.utils.metrics import MetricsManager

logger = get_logger(__name__)


def load_items(paths: List[str]) -> List[Item]:
    """Load items from JSON, newline-delimited JSON or parquet files."""
    items: List[Item] = []
    for path in paths:
        if Path(path).suffix == ".parquet":
            loaded = geoparquet.read_items(path)
        else:
            loaded = read_items(path)
        logger.info(f"Loaded {len(loaded)} items from {path}")
        items.extend(loaded)
    return items


def create_backend(config: Config, metrics: Optional[MetricsManager] = None) -> SearchBackend:
    """
    Create the configured backend.

    Args:
        config: Service configuration
        metrics: Metrics manager; the process-wide one when omitted

    Returns:
        The search backend named by ``config.backend.kind``
    """
    kind = config.backend.kind
    logger.info(f"Creating {kind} search backend")

    if kind == "duckdb":
        from stac_search.backends.duckdb_backend import DuckDBBackend

        return DuckDBBackend(config.backend.duckdb, config.search, metrics)

    if kind == "pgstac":
        from stac_search.backends.pgstac_backend import PgstacBackend

        return PgstacBackend(config.backend.pgstac, config.search, metrics)

    store = ItemStore(load_items(config.backend.memory.items))
    return MemoryBackend(store, config.search, metrics)
