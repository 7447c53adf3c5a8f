"""
Catalog items.

This module provides the item model searched by every backend: identity,
geometry, bounding box, timestamp or timestamp range, collection membership
and an open property bag. Geometry and timestamps are parsed lazily so that
a malformed stored item only fails the searches that need those fields.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from shapely.errors import GEOSException, ShapelyError
from shapely.geometry import shape
from shapely.geometry.base import BaseGeometry

from stac_search.search.intervals import parse_rfc3339
from stac_search.utils.errors import DataError, ErrorDetail
from stac_search.utils.logging import get_logger

logger = get_logger(__name__)

STAC_VERSION = "1.0.0"

Bounds = Tuple[float, float, float, float]


class Item(BaseModel):
    """One catalog record."""

    model_config = ConfigDict(extra="allow")

    type: str = "Feature"
    stac_version: str = STAC_VERSION
    stac_extensions: List[str] = Field(default_factory=list)
    id: str
    geometry: Optional[Dict[str, Any]] = None
    bbox: Optional[List[float]] = None
    properties: Dict[str, Any] = Field(default_factory=dict)
    links: List[Dict[str, Any]] = Field(default_factory=list)
    assets: Dict[str, Any] = Field(default_factory=dict)
    collection: Optional[str] = None

    @field_validator("bbox")
    @classmethod
    def validate_bbox(cls, v: Optional[List[float]]) -> Optional[List[float]]:
        """Validate that the bounding box is 2-D or 3-D."""
        if v is not None and len(v) not in (4, 6):
            raise ValueError(f"bbox must have 4 or 6 values, got {len(v)}")
        return v

    def interval(self) -> Tuple[Optional[datetime], Optional[datetime]]:
        """
        Return this item's temporal extent.

        A start/end range takes precedence over a single datetime. A range
        with one side missing borrows that side from ``datetime``, or from
        the other side of the range when there is no ``datetime``.

        Returns:
            ``(start, end)`` in UTC, or ``(None, None)`` when the item has no
            timestamp

        Raises:
            DataError: If a timestamp cannot be parsed
        """
        start = self.timestamp("start_datetime")
        end = self.timestamp("end_datetime")
        instant = self.timestamp("datetime")
        first = next((value for value in (start, instant, end) if value is not None), None)
        last = next((value for value in (end, instant, start) if value is not None), None)
        return first, last

    def timestamp(self, name: str) -> Optional[datetime]:
        """Parse one timestamp property, returning None when it is absent."""
        value = self.properties.get(name)
        if value is None:
            return None
        if isinstance(value, datetime):
            return value
        try:
            return parse_rfc3339(str(value))
        except ValueError:
            raise DataError(
                f"Item {self.id!r} has an unparsable {name}: {value!r}",
                details=[ErrorDetail(location=f"properties.{name}", value=str(value), message="invalid timestamp")],
                item_id=self.id,
            )

    def shape(self) -> Optional[BaseGeometry]:
        """
        Return the item geometry as a shapely geometry.

        Raises:
            DataError: If the geometry cannot be parsed or is invalid
        """
        if self.geometry is None:
            return None
        try:
            geometry = shape(self.geometry)
        except (ShapelyError, GEOSException, KeyError, TypeError, ValueError, IndexError) as e:
            raise DataError(
                f"Item {self.id!r} has an unparsable geometry: {e}",
                details=[ErrorDetail(location="geometry", message=str(e))],
                item_id=self.id,
            )
        if geometry.is_empty or not geometry.is_valid:
            raise DataError(
                f"Item {self.id!r} has an invalid geometry",
                details=[ErrorDetail(location="geometry", message="invalid geometry")],
                item_id=self.id,
            )
        return geometry

    def bounds(self) -> Optional[Bounds]:
        """
        Return the 2-D bounds of this item.

        The stored bbox is used when present; otherwise the bounds are
        computed from the geometry.
        """
        if self.bbox is not None:
            if len(self.bbox) == 6:
                return (self.bbox[0], self.bbox[1], self.bbox[3], self.bbox[4])
            return (self.bbox[0], self.bbox[1], self.bbox[2], self.bbox[3])
        geometry = self.shape()
        if geometry is None:
            return None
        return geometry.bounds

    def to_dict(self) -> Dict[str, Any]:
        """Return the canonical JSON mapping of this item."""
        data = self.model_dump(exclude_none=False)
        if data.get("collection") is None:
            data.pop("collection", None)
        if data.get("bbox") is None:
            data.pop("bbox", None)
        return data


def read_items(path: Union[str, Path]) -> List[Item]:
    """
    Read items from a JSON or newline-delimited JSON file.

    JSON files may hold a FeatureCollection or a single item.

    Raises:
        ValueError: If the file does not contain items
    """
    path = Path(path)
    return list(_iter_items(path))


def _iter_items(path: Path) -> Iterator[Item]:
    with open(path, "r") as file:
        if path.suffix in (".ndjson", ".jsonl"):
            for line_number, line in enumerate(file, start=1):
                if line.strip():
                    try:
                        yield Item.model_validate_json(line)
                    except ValueError as e:
                        raise ValueError(f"{path}:{line_number}: {e}")
            return
        data = json.load(file)

    if data.get("type") == "FeatureCollection":
        for feature in data.get("features", []):
            yield Item.model_validate(feature)
    elif data.get("type") == "Feature":
        yield Item.model_validate(data)
    else:
        raise ValueError(f"{path} does not contain a Feature or FeatureCollection")
