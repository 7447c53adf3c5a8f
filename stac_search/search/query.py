"""
Search query model.

This module provides the validated, immutable representation of a search
request. Queries are built from a POST-style JSON body with
:meth:`SearchQuery.build` or from GET-style string parameters with
:meth:`SearchQuery.from_params`; both turn every validation problem into a
single ``MalformedRequest`` carrying one detail per problem.
"""

import json
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)
from shapely.errors import GEOSException, ShapelyError
from shapely.geometry import box, shape
from shapely.geometry.base import BaseGeometry

from stac_search.config.config import SearchSettings
from stac_search.search.filter import Expr, parse_filter, to_json
from stac_search.search.intervals import DatetimeInterval, parse_interval
from stac_search.utils.errors import (
    ErrorDetail,
    MalformedRequest,
    UnsupportedCapability,
    error_details_from_pydantic,
)
from stac_search.utils.logging import get_logger

logger = get_logger(__name__)

# Request keys of search extensions that are recognized but not implemented
UNSUPPORTED_KEYS = {
    "query": "The query extension is not supported; use filter instead",
    "q": "Free-text search is not supported",
}

# The only filter-crs accepted; filter geometries are always WGS84
DEFAULT_FILTER_CRS = "http://www.opengis.net/def/crs/OGC/1.3/CRS84"


def _reject_unsupported(data: Dict[str, Any]) -> None:
    for key, message in UNSUPPORTED_KEYS.items():
        if data.pop(key, None) is not None:
            raise UnsupportedCapability(message, details=[ErrorDetail(param=key, message=message)])
    for key in ("filter-crs", "filter_crs"):
        crs = data.pop(key, None)
        if crs is not None and crs != DEFAULT_FILTER_CRS:
            message = f"filter-crs {crs!r} is not supported; only {DEFAULT_FILTER_CRS} is"
            raise UnsupportedCapability(
                message, details=[ErrorDetail(param="filter-crs", value=crs, message=message)]
            )


class SortDirection(str, Enum):
    """Sort directions for search results."""

    ASC = "asc"
    DESC = "desc"


class SortOption(BaseModel):
    """One sort key."""

    model_config = ConfigDict(frozen=True)

    field: str
    direction: SortDirection = SortDirection.ASC

    @field_validator("field")
    @classmethod
    def validate_field(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Sort field cannot be empty")
        return v.strip()

    @classmethod
    def parse(cls, text: str) -> "SortOption":
        """Parse ``field``, ``+field`` or ``-field``."""
        text = text.strip()
        if text.startswith("-"):
            return cls(field=text[1:], direction=SortDirection.DESC)
        if text.startswith("+"):
            text = text[1:]
        return cls(field=text, direction=SortDirection.ASC)


class Fields(BaseModel):
    """Field projection: paths to keep and paths to drop."""

    model_config = ConfigDict(frozen=True)

    include: List[str] = Field(default_factory=list)
    exclude: List[str] = Field(default_factory=list)

    @classmethod
    def parse(cls, text: str) -> "Fields":
        """Parse ``a,+b,-c`` into includes ``a``, ``b`` and exclude ``c``."""
        include, exclude = [], []
        for part in (p.strip() for p in text.split(",")):
            if not part:
                continue
            if part.startswith("-"):
                exclude.append(part[1:])
            else:
                include.append(part.lstrip("+"))
        return cls(include=include, exclude=exclude)


class SearchQuery(BaseModel):
    """
    A validated search request.

    Instances are immutable; :meth:`with_token` is the only way to derive a
    follow-up query.
    """

    model_config = ConfigDict(
        frozen=True, populate_by_name=True, arbitrary_types_allowed=True, extra="forbid"
    )

    ids: Optional[List[str]] = None
    collections: Optional[List[str]] = None
    bbox: Optional[List[float]] = None
    intersects: Optional[Dict[str, Any]] = None
    datetime: Optional[str] = None
    sortby: List[SortOption] = Field(default_factory=list)
    fields: Optional[Fields] = None
    filter_lang: Optional[str] = Field(None, alias="filter-lang")
    filter: Optional[Any] = None
    limit: Optional[int] = Field(None, validate_default=True)
    token: Optional[str] = None

    @field_validator("ids", "collections", mode="before")
    @classmethod
    def split_strings(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [part.strip() for part in v.split(",") if part.strip()]
        return v

    @field_validator("bbox", mode="before")
    @classmethod
    def split_bbox(cls, v: Any) -> Any:
        if isinstance(v, str):
            try:
                return [float(part) for part in v.split(",")]
            except ValueError:
                raise ValueError("bbox values must be numbers")
        return v

    @field_validator("bbox")
    @classmethod
    def validate_bbox(cls, v: Optional[List[float]]) -> Optional[List[float]]:
        """Validate that the bounding box has 4 or 6 ordered components."""
        if v is None:
            return v
        if len(v) not in (4, 6):
            raise ValueError(f"bbox must have 4 or 6 values, got {len(v)}")
        half = len(v) // 2
        for axis in range(half):
            if v[axis] > v[axis + half]:
                raise ValueError(f"bbox minimum exceeds maximum on axis {axis}")
        return v

    @field_validator("intersects", mode="before")
    @classmethod
    def parse_intersects(cls, v: Any) -> Any:
        if isinstance(v, str):
            try:
                return json.loads(v)
            except ValueError:
                raise ValueError("intersects must be a GeoJSON geometry")
        return v

    @field_validator("intersects")
    @classmethod
    def validate_intersects(cls, v: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if v is None:
            return v
        try:
            geometry = shape(v)
        except (ShapelyError, GEOSException, AttributeError, KeyError, TypeError, ValueError, IndexError):
            raise ValueError("intersects must be a GeoJSON geometry")
        if geometry.is_empty:
            raise ValueError("intersects geometry cannot be empty")
        return v

    @field_validator("datetime")
    @classmethod
    def validate_datetime(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        # Raises MalformedRequest with a datetime-specific detail
        return parse_interval(v).to_string()

    @field_validator("sortby", mode="before")
    @classmethod
    def parse_sortby(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, str):
            return [SortOption.parse(part) for part in v.split(",") if part.strip()]
        return v

    @field_validator("fields", mode="before")
    @classmethod
    def parse_fields(cls, v: Any) -> Any:
        if isinstance(v, str):
            return Fields.parse(v)
        return v

    @field_validator("filter")
    @classmethod
    def validate_filter(cls, v: Any, info: ValidationInfo) -> Optional[Expr]:
        return parse_filter(v, info.data.get("filter_lang"))

    @field_validator("limit")
    @classmethod
    def validate_limit(cls, v: Optional[int], info: ValidationInfo) -> int:
        """Validate that the limit is within the configured range."""
        limits = (info.context or {}).get("limits") or SearchSettings()
        if v is None:
            return limits.default_limit
        if v < 1:
            raise ValueError("Limit must be at least 1")
        if v > limits.max_limit:
            raise ValueError(f"Limit cannot exceed {limits.max_limit}")
        return v

    @model_validator(mode="after")
    def check_spatial_exclusive(self) -> "SearchQuery":
        if self.bbox is not None and self.intersects is not None:
            raise ValueError("bbox and intersects are mutually exclusive")
        return self

    @property
    def interval(self) -> Optional[DatetimeInterval]:
        """The parsed datetime expression."""
        return parse_interval(self.datetime) if self.datetime is not None else None

    @property
    def spatial(self) -> Optional[BaseGeometry]:
        """The bbox or intersects geometry as a shapely geometry."""
        if self.bbox is not None:
            half = len(self.bbox) // 2
            return box(self.bbox[0], self.bbox[1], self.bbox[half], self.bbox[half + 1])
        if self.intersects is not None:
            return shape(self.intersects)
        return None

    @property
    def spatial_bounds(self):
        """2-D bounds of the spatial constraint."""
        spatial = self.spatial
        return spatial.bounds if spatial is not None else None

    @classmethod
    def build(cls, data: Mapping[str, Any], limits: Optional[SearchSettings] = None) -> "SearchQuery":
        """
        Build a query from a JSON-style mapping.

        Args:
            data: Request body
            limits: Limit settings; the defaults are used when omitted

        Returns:
            The validated query

        Raises:
            MalformedRequest: If any part of the request is invalid
            UnsupportedCapability: If the request uses a search extension that
                is not implemented
        """
        data = dict(data)
        _reject_unsupported(data)
        try:
            return cls.model_validate(data, context={"limits": limits})
        except ValidationError as e:
            details = error_details_from_pydantic(e.errors())
            message = "; ".join(detail.message for detail in details)
            raise MalformedRequest(f"Invalid search request: {message}", details=details)

    @classmethod
    def from_params(
        cls, params: Mapping[str, str], limits: Optional[SearchSettings] = None
    ) -> "SearchQuery":
        """
        Build a query from GET-style string parameters.

        Raises:
            MalformedRequest: If any parameter is invalid
        """
        data: Dict[str, Any] = {}
        for key, value in params.items():
            if value is None or value == "":
                continue
            if key == "limit":
                try:
                    data["limit"] = int(value)
                except ValueError:
                    raise MalformedRequest(
                        f"Invalid limit: {value!r}",
                        details=[ErrorDetail(param="limit", value=value, message="limit must be an integer")],
                    )
            elif key in ("filter-lang", "filter_lang"):
                data["filter-lang"] = value
            else:
                data[key] = value
        return cls.build(data, limits)

    def with_token(self, token: Optional[str]) -> "SearchQuery":
        """Return a copy of this query that resumes from ``token``."""
        return self.model_copy(update={"token": token})

    def to_payload(self) -> Dict[str, Any]:
        """
        Return the JSON body of this query.

        The filter is always rendered as cql2-json.
        """
        payload: Dict[str, Any] = {}
        for name in ("ids", "collections", "bbox", "intersects", "datetime"):
            value = getattr(self, name)
            if value is not None:
                payload[name] = value
        if self.sortby:
            payload["sortby"] = [
                {"field": option.field, "direction": option.direction.value} for option in self.sortby
            ]
        if self.fields is not None:
            payload["fields"] = self.fields.model_dump()
        if self.filter is not None:
            payload["filter"] = to_json(self.filter)
            payload["filter-lang"] = "cql2-json"
        payload["limit"] = self.limit
        if self.token is not None:
            payload["token"] = self.token
        return payload
