"""
Tests for the columnar encoding of items.
"""

import pyarrow as pa
import pyarrow.parquet as pq
import pytest

from conftest import make_item
from stac_search.items.geoparquet import (
    GEOPARQUET_VERSION,
    VERSION_KEY,
    items_to_table,
    read_items,
    row_to_item,
    write_items,
)
from stac_search.items.item import Item


def test_schema(sample_items):
    """Test the fixed column layout."""
    table = items_to_table(sample_items)

    assert table.num_rows == len(sample_items)
    assert table.schema.field("id").type == pa.string()
    assert table.schema.field("datetime").type == pa.timestamp("us", tz="UTC")
    assert table.schema.field("geometry").type == pa.binary()
    assert [field.name for field in table.schema.field("bbox").type] == ["xmin", "ymin", "xmax", "ymax"]
    assert pa.types.is_struct(table.schema.field("properties").type)
    assert table.schema.metadata[VERSION_KEY] == GEOPARQUET_VERSION.encode()


def test_round_trip(tmp_path, sample_items):
    """Test that writing and reading preserves items."""
    path = tmp_path / "items.parquet"
    write_items(path, sample_items)

    assert pq.read_schema(path).metadata[VERSION_KEY] == GEOPARQUET_VERSION.encode()

    decoded = read_items(path)
    assert len(decoded) == len(sample_items)
    for original, item in zip(sample_items, decoded):
        assert item.id == original.id
        assert item.collection == original.collection
        assert item.bbox == original.bbox
        assert item.shape().equals(original.shape())
        assert item.interval() == original.interval()
        for key, value in original.properties.items():
            if key not in ("datetime", "start_datetime", "end_datetime"):
                assert item.properties[key] == value


def test_multipolygon_normalization():
    """Test that a single-polygon multipolygon comes back as a polygon."""
    ring = [[0, 0], [1, 0], [1, 1], [0, 1], [0, 0]]
    item = make_item("a", geometry={"type": "MultiPolygon", "coordinates": [[ring]]}, datetime="2020-01-01T00:00:00Z")

    decoded = row_to_item(items_to_table([item]).to_pylist()[0])

    assert decoded.geometry["type"] == "Polygon"
    assert decoded.shape().equals(item.shape())
    assert decoded.bbox == [0.0, 0.0, 1.0, 1.0]


def test_three_dimensional_bbox():
    """Test 3-D bounding boxes alongside 2-D ones."""
    items = [
        Item(id="a", bbox=[0, 0, -5, 1, 1, 5]),
        Item(id="b", bbox=[0, 0, 1, 1]),
    ]
    rows = items_to_table(items).to_pylist()

    assert row_to_item(rows[0]).bbox == [0, 0, -5, 1, 1, 5]
    assert row_to_item(rows[1]).bbox == [0, 0, 1, 1]


def test_null_properties_are_dropped():
    """Test that properties missing on some items come back absent."""
    items = [
        make_item("a", properties={"x": 1}),
        make_item("b", properties={"y": "z"}),
    ]
    decoded = [row_to_item(row) for row in items_to_table(items).to_pylist()]

    assert decoded[0].properties == {"x": 1}
    assert decoded[1].properties == {"y": "z"}


def test_timestamps_are_normalized():
    """Test that timestamps come back in UTC with a Z suffix."""
    item = make_item("a", datetime="2020-01-01T02:00:00+02:00")
    decoded = row_to_item(items_to_table([item]).to_pylist()[0])
    assert decoded.properties["datetime"] == "2020-01-01T00:00:00Z"


def test_incompatible_property_types():
    """Test that a property cannot hold unrelated types across items."""
    items = [make_item("a", properties={"x": 1}), make_item("b", properties={"x": "one"})]
    with pytest.raises(ValueError):
        items_to_table(items)
