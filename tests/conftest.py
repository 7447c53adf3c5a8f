"""
Test configuration and fixtures for STAC search.

This module provides pytest fixtures and configuration for testing.
"""

import sys
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional

import pytest

# Add the repository root to the Python path
sys.path.insert(0, str(Path(__file__).parent.parent))

from stac_search.backends.memory import ItemStore, MemoryBackend
from stac_search.config.config import (
    BackendConfig,
    Config,
    DuckDBBackendConfig,
    LoggingConfig,
    SearchSettings,
)
from stac_search.items.geoparquet import write_items
from stac_search.items.item import Item
from stac_search.utils.metrics import MetricsManager


def make_item(
    item_id: str,
    bbox: Optional[List[float]] = None,
    collection: Optional[str] = "test",
    properties: Optional[Dict[str, Any]] = None,
    geometry: Optional[Dict[str, Any]] = None,
    **timestamps: str,
) -> Item:
    """Build an item whose geometry is the rectangle of its bbox."""
    if geometry is None and bbox is not None:
        xmin, ymin, xmax, ymax = bbox[:4]
        geometry = {
            "type": "Polygon",
            "coordinates": [[[xmin, ymin], [xmax, ymin], [xmax, ymax], [xmin, ymax], [xmin, ymin]]],
        }
    props = dict(properties or {})
    props.update(timestamps)
    data: Dict[str, Any] = {"id": item_id, "geometry": geometry, "bbox": bbox, "properties": props}
    if collection is not None:
        data["collection"] = collection
    return Item.model_validate(data)


@pytest.fixture
def example_items() -> List[Item]:
    """The two-item set used throughout the search examples."""
    return [
        make_item("A", bbox=[0, 0, 1, 1], datetime="2020-01-01T00:00:00Z"),
        make_item("B", bbox=[5, 5, 6, 6], datetime="2021-06-01T00:00:00Z"),
    ]


@pytest.fixture
def sample_items() -> List[Item]:
    """A small, varied catalog."""
    return [
        make_item(
            "s2-1",
            bbox=[0, 0, 2, 2],
            collection="sentinel-2",
            properties={"eo:cloud_cover": 5.0, "platform": "sentinel-2a", "view": {"off_nadir": 3}},
            datetime="2021-01-10T10:00:00Z",
        ),
        make_item(
            "s2-2",
            bbox=[1, 1, 3, 3],
            collection="sentinel-2",
            properties={"eo:cloud_cover": 40.0, "platform": "sentinel-2b", "view": {"off_nadir": 12}},
            datetime="2021-02-10T10:00:00Z",
        ),
        make_item(
            "ls-1",
            bbox=[10, 10, 12, 12],
            collection="landsat",
            properties={"eo:cloud_cover": 15.0, "platform": "landsat-8"},
            datetime="2020-06-01T00:00:00Z",
        ),
        make_item(
            "ls-2",
            bbox=[-5, -5, -4, -4],
            collection="landsat",
            properties={"platform": "landsat-9"},
            start_datetime="2021-01-01T00:00:00Z",
            end_datetime="2021-12-31T23:59:59Z",
        ),
    ]


@pytest.fixture
def metrics() -> MetricsManager:
    """A metrics manager with its own registry."""
    return MetricsManager(namespace="test")


@pytest.fixture
def memory_backend(sample_items: List[Item], metrics: MetricsManager) -> MemoryBackend:
    """A memory backend over the sample catalog."""
    return MemoryBackend(ItemStore(sample_items), metrics=metrics)


@pytest.fixture
def parquet_path(tmp_path: Path, sample_items: List[Item]) -> Path:
    """The sample catalog written to a parquet file."""
    path = tmp_path / "items.parquet"
    write_items(path, sample_items)
    return path


@pytest.fixture
def test_config(parquet_path: Path) -> Config:
    """Provide a test configuration."""
    return Config(
        search=SearchSettings(default_limit=10, max_limit=100),
        backend=BackendConfig(
            kind="duckdb",
            duckdb=DuckDBBackendConfig(hrefs=[str(parquet_path)], exact_geometry=False),
        ),
        logging=LoggingConfig(level="DEBUG"),
        debug=True,
        environment="test",
    )


@pytest.fixture
def test_env_vars(monkeypatch: pytest.MonkeyPatch) -> Generator[Dict[str, str], None, None]:
    """Set up test environment variables."""
    env_vars = {
        "STAC_SEARCH_BACKEND_KIND": "duckdb",
        "STAC_SEARCH_BACKEND_DUCKDB_HREFS": "data/a.parquet,data/b.parquet",
        "STAC_SEARCH_BACKEND_DUCKDB_EXACT_GEOMETRY": "false",
        "STAC_SEARCH_SEARCH_MAX_LIMIT": "500",
        "STAC_SEARCH_LOGGING_LEVEL": "DEBUG",
        "STAC_SEARCH_DEBUG": "true",
        "STAC_SEARCH_ENVIRONMENT": "test",
    }

    for key, value in env_vars.items():
        monkeypatch.setenv(key, value)

    yield env_vars

    for key in env_vars:
        monkeypatch.delenv(key, raising=False)
