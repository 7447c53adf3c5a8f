"""
Columnar (parquet) encoding of items.

Items map onto a fixed column layout:

- ``type``, ``stac_version``, ``id``, ``collection``: strings
- ``stac_extensions``, ``links``, ``assets``: JSON text
- ``datetime``, ``start_datetime``, ``end_datetime``: UTC timestamps
- ``bbox``: struct of ``xmin``, ``ymin``, ``xmax``, ``ymax`` (plus ``zmin`` and
  ``zmax`` when any item is 3-D)
- ``geometry``: WKB
- ``properties``: struct of every other property

Decoding is lossy in three documented ways: a multi-polygon holding one
polygon comes back as that polygon, timestamps come back as UTC with a ``Z``
suffix, and null-valued properties come back absent. An item without a bbox
is given the bounds of its geometry.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import pyarrow as pa
import pyarrow.parquet as pq
import shapely
from shapely.geometry import MultiPolygon

from stac_search.items.item import Item
from stac_search.search.filter import geometry_to_json
from stac_search.search.intervals import format_datetime
from stac_search.utils.logging import get_logger

logger = get_logger(__name__)

GEOPARQUET_VERSION = "1.0.0"
VERSION_KEY = b"stac:geoparquet_version"

TIMESTAMP_COLUMNS = ("datetime", "start_datetime", "end_datetime")
JSON_COLUMNS = ("stac_extensions", "links", "assets")
# Columns that never hold properties
RESERVED_COLUMNS = (
    "type",
    "stac_version",
    "stac_extensions",
    "id",
    "collection",
    "bbox",
    "geometry",
    "properties",
    "links",
    "assets",
) + TIMESTAMP_COLUMNS

TIMESTAMP_TYPE = pa.timestamp("us", tz="UTC")


def _bbox_type(three_d: bool) -> pa.DataType:
    names = ["xmin", "ymin", "xmax", "ymax"] + (["zmin", "zmax"] if three_d else [])
    return pa.struct([(name, pa.float64()) for name in names])


def _bbox_record(item: Item, three_d: bool) -> Optional[Dict[str, Optional[float]]]:
    bbox = item.bbox
    if bbox is None:
        bounds = item.bounds()
        if bounds is None:
            return None
        bbox = list(bounds)
    if len(bbox) == 6:
        record = {"xmin": bbox[0], "ymin": bbox[1], "zmin": bbox[2], "xmax": bbox[3], "ymax": bbox[4], "zmax": bbox[5]}
    else:
        record = {"xmin": bbox[0], "ymin": bbox[1], "xmax": bbox[2], "ymax": bbox[3]}
        if three_d:
            record.update(zmin=None, zmax=None)
    return record


def _geometry_wkb(item: Item) -> Optional[bytes]:
    geometry = item.shape()
    if geometry is None:
        return None
    if isinstance(geometry, MultiPolygon) and len(geometry.geoms) == 1:
        geometry = geometry.geoms[0]
    return shapely.to_wkb(geometry)


def items_to_table(items: Iterable[Item]) -> pa.Table:
    """
    Encode items as an arrow table.

    Raises:
        DataError: If an item's geometry or timestamps cannot be parsed
        ValueError: If a property holds values of incompatible types across
            items
    """
    items = list(items)
    three_d = any(item.bbox is not None and len(item.bbox) == 6 for item in items)

    columns: Dict[str, List[Any]] = {name: [] for name in RESERVED_COLUMNS if name != "properties"}
    properties: List[Dict[str, Any]] = []
    for item in items:
        columns["type"].append(item.type)
        columns["stac_version"].append(item.stac_version)
        columns["stac_extensions"].append(json.dumps(item.stac_extensions))
        columns["id"].append(item.id)
        columns["collection"].append(item.collection)
        for name in TIMESTAMP_COLUMNS:
            columns[name].append(item.timestamp(name))
        columns["bbox"].append(_bbox_record(item, three_d))
        columns["geometry"].append(_geometry_wkb(item))
        columns["links"].append(json.dumps(item.links))
        columns["assets"].append(json.dumps(item.assets))
        properties.append({k: v for k, v in item.properties.items() if k not in TIMESTAMP_COLUMNS})

    types = {name: pa.string() for name in columns}
    types.update({name: TIMESTAMP_TYPE for name in TIMESTAMP_COLUMNS})
    types["bbox"] = _bbox_type(three_d)
    types["geometry"] = pa.binary()

    arrays = {name: pa.array(values, type=types[name]) for name, values in columns.items()}
    if any(properties):
        try:
            arrays["properties"] = pa.array(properties)
        except (pa.ArrowInvalid, pa.ArrowTypeError) as e:
            raise ValueError(f"Item properties cannot be stored in one column: {e}")

    table = pa.table(arrays)
    return table.replace_schema_metadata({VERSION_KEY: GEOPARQUET_VERSION.encode()})


def _bbox_list(record: Optional[Dict[str, Any]]) -> Optional[List[float]]:
    if record is None:
        return None
    if record.get("zmin") is not None and record.get("zmax") is not None:
        return [record["xmin"], record["ymin"], record["zmin"], record["xmax"], record["ymax"], record["zmax"]]
    return [record["xmin"], record["ymin"], record["xmax"], record["ymax"]]


def _drop_nulls(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _drop_nulls(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [_drop_nulls(v) for v in value]
    return value


def row_to_item(row: Dict[str, Any]) -> Item:
    """Decode one row (as produced by ``Table.to_pylist``) into an item."""
    properties: Dict[str, Any] = {}
    for name in TIMESTAMP_COLUMNS:
        value = row.get(name)
        if isinstance(value, datetime):
            properties[name] = format_datetime(value)
        elif value is not None:
            properties[name] = value
    properties.update(_drop_nulls(row.get("properties") or {}))
    for name, value in row.items():
        if name not in RESERVED_COLUMNS and not name.startswith("__") and value is not None:
            properties[name] = value

    data: Dict[str, Any] = {
        "type": row.get("type") or "Feature",
        "id": row["id"],
        "properties": properties,
    }
    if row.get("stac_version"):
        data["stac_version"] = row["stac_version"]
    for name in JSON_COLUMNS:
        if row.get(name) is not None:
            data[name] = json.loads(row[name])
    if row.get("collection") is not None:
        data["collection"] = row["collection"]
    data["bbox"] = _bbox_list(row.get("bbox"))
    if row.get("geometry") is not None:
        data["geometry"] = geometry_to_json(shapely.from_wkb(row["geometry"]))
    return Item.model_validate(data)


def table_to_items(table: pa.Table) -> List[Item]:
    """Decode an arrow table into items."""
    return [row_to_item(row) for row in table.to_pylist()]


def write_items(path: Union[str, Path], items: Iterable[Item]) -> None:
    """Write items to a parquet file."""
    table = items_to_table(items)
    pq.write_table(table, str(path))
    logger.debug(f"Wrote {table.num_rows} items to {path}")


def read_items(path: Union[str, Path]) -> List[Item]:
    """Read items from a parquet file."""
    table = pq.read_table(str(path))
    version = (table.schema.metadata or {}).get(VERSION_KEY)
    if version is not None and version.decode() != GEOPARQUET_VERSION:
        logger.warning(f"{path} was written with stac-geoparquet {version.decode()}")
    return table_to_items(table)
