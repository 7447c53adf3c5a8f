"""
Filter expressions for catalog searches.

A filter is an immutable tree of nodes. Every node is a frozen dataclass
carrying a ``kind`` tag, and the operations over the tree (evaluation,
SQL compilation, encoding) are plain functions dispatching on that tag, so
a new backend adds one compile function without touching the node types.

This module defines the nodes and the structured (cql2-json) encoding.
The textual (cql2-text) encoding lives in :mod:`stac_search.search.cql2`.
"""

import json
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Union

import shapely
from shapely.errors import GEOSException, ShapelyError
from shapely.geometry import box, mapping, shape
from shapely.geometry.base import BaseGeometry

from stac_search.search.intervals import (
    OPEN_MARKER,
    DatetimeInterval,
    format_datetime,
    parse_interval,
    parse_rfc3339,
)
from stac_search.utils.errors import ErrorDetail, MalformedRequest, UnsupportedCapability
from stac_search.utils.logging import get_logger

logger = get_logger(__name__)

LOGICAL_OPS = ("and", "or", "not")
COMPARISON_OPS = ("=", "<>", "<", "<=", ">", ">=")
SPATIAL_OPS = ("s_intersects", "s_within", "s_contains", "s_disjoint")
TEMPORAL_OPS = ("t_before", "t_after", "t_during", "t_intersects")

# Operators of the filter language that no backend implements
KNOWN_UNSUPPORTED_OPS = (
    "s_equals", "s_touches", "s_overlaps", "s_crosses",
    "t_equals", "t_meets", "t_metby", "t_overlaps", "t_overlappedby",
    "t_starts", "t_startedby", "t_finishes", "t_finishedby",
    "t_contains", "t_disjoint",
    "a_equals", "a_contains", "a_containedby", "a_overlaps",
    "casei", "accenti",
)

# Comparison operator as seen with its operands swapped
_MIRRORED = {"=": "=", "<>": "<>", "<": ">", "<=": ">=", ">": "<", ">=": "<="}

Literal = Union[str, int, float, bool, datetime, date]


def _malformed(message: str, value: Any = None) -> MalformedRequest:
    return MalformedRequest(
        message,
        details=[ErrorDetail(param="filter", value=value, message=message)],
    )


@dataclass(frozen=True)
class Property:
    """A dotted reference into an item."""

    name: str
    kind: ClassVar[str] = "property"


@dataclass(frozen=True)
class Logical:
    op: str
    args: Tuple["Expr", ...]
    kind: ClassVar[str] = "logical"


@dataclass(frozen=True)
class Comparison:
    op: str
    property: str
    value: Union[Literal, Property]
    kind: ClassVar[str] = "comparison"


@dataclass(frozen=True)
class IsNull:
    property: str
    kind: ClassVar[str] = "is_null"


@dataclass(frozen=True)
class Like:
    property: str
    pattern: str
    kind: ClassVar[str] = "like"


@dataclass(frozen=True)
class InList:
    property: str
    values: Tuple[Literal, ...]
    kind: ClassVar[str] = "in"


@dataclass(frozen=True)
class Between:
    property: str
    low: Literal
    high: Literal
    kind: ClassVar[str] = "between"


@dataclass(frozen=True)
class Spatial:
    op: str
    property: str
    geometry: BaseGeometry
    kind: ClassVar[str] = "spatial"


@dataclass(frozen=True)
class Temporal:
    op: str
    property: str
    value: DatetimeInterval
    kind: ClassVar[str] = "temporal"


Expr = Union[Logical, Comparison, IsNull, Like, InList, Between, Spatial, Temporal]


def and_(*args: Expr) -> Expr:
    """Combine expressions with AND, collapsing a single argument."""
    return args[0] if len(args) == 1 else Logical("and", tuple(args))


def or_(*args: Expr) -> Expr:
    """Combine expressions with OR, collapsing a single argument."""
    return args[0] if len(args) == 1 else Logical("or", tuple(args))


def not_(arg: Expr) -> Expr:
    return Logical("not", (arg,))


def walk(expr: Expr):
    """Yield every node of an expression, depth first."""
    yield expr
    if isinstance(expr, Logical):
        for arg in expr.args:
            yield from walk(arg)


def properties_of(expr: Expr) -> List[str]:
    """Return the property paths referenced by an expression, in order."""
    names: List[str] = []
    for node in walk(expr):
        if isinstance(node, Logical):
            continue
        names.append(node.property)
        if isinstance(node, Comparison) and isinstance(node.value, Property):
            names.append(node.value.name)
    return list(dict.fromkeys(names))


# Structured encoding


def from_json(data: Any) -> Expr:
    """
    Build an expression from its cql2-json form.

    Args:
        data: Decoded cql2-json document

    Returns:
        The expression tree

    Raises:
        MalformedRequest: If the document is not a valid filter
        UnsupportedCapability: If the document uses an operator that is
            part of the filter language but not implemented
    """
    if not isinstance(data, dict) or "op" not in data:
        raise _malformed("Filter node must be an object with an 'op'", data)
    op = str(data["op"]).lower()
    args = data.get("args")
    if not isinstance(args, list):
        raise _malformed(f"Filter operator {op!r} needs an 'args' list", data)

    if op in ("and", "or"):
        if len(args) < 2:
            raise _malformed(f"'{op}' needs at least two arguments", data)
        flat = []
        for arg in map(from_json, args):
            # Chains of the same operator may arrive nested
            flat.extend(arg.args if isinstance(arg, Logical) and arg.op == op else (arg,))
        return Logical(op, tuple(flat))
    if op == "not":
        if len(args) != 1:
            raise _malformed("'not' takes exactly one argument", data)
        return Logical("not", (from_json(args[0]),))
    if op in COMPARISON_OPS:
        _expect_arity(op, args, 2)
        return _comparison(op, args[0], args[1])
    if op == "isnull":
        _expect_arity(op, args, 1)
        return IsNull(_property_name(args[0], op))
    if op == "like":
        _expect_arity(op, args, 2)
        if not isinstance(args[1], str):
            raise _malformed("'like' pattern must be a string", args[1])
        return Like(_property_name(args[0], op), args[1])
    if op == "in":
        _expect_arity(op, args, 2)
        if not isinstance(args[1], list) or not args[1]:
            raise _malformed("'in' needs a non-empty list of values", args[1])
        return InList(_property_name(args[0], op), tuple(_literal(v) for v in args[1]))
    if op == "between":
        _expect_arity(op, args, 3)
        return Between(_property_name(args[0], op), _literal(args[1]), _literal(args[2]))
    if op in SPATIAL_OPS:
        _expect_arity(op, args, 2)
        return _spatial(op, args[0], args[1])
    if op in TEMPORAL_OPS:
        _expect_arity(op, args, 2)
        return Temporal(op, _property_name(args[0], op), _temporal_literal(args[1]))
    if op in KNOWN_UNSUPPORTED_OPS:
        raise UnsupportedCapability(
            f"Filter operator {op!r} is not supported",
            details=[ErrorDetail(param="filter", value=op, message="unsupported operator")],
        )
    raise _malformed(f"Unknown filter operator {op!r}", op)


def _expect_arity(op: str, args: List[Any], count: int) -> None:
    if len(args) != count:
        raise _malformed(f"'{op}' takes {count} argument(s), got {len(args)}", args)


def _is_property(value: Any) -> bool:
    return isinstance(value, dict) and set(value) == {"property"}


def _property_name(value: Any, op: str) -> str:
    if not _is_property(value) or not isinstance(value["property"], str) or not value["property"]:
        raise _malformed(f"'{op}' expects a property reference as its first argument", value)
    return value["property"]


def _comparison(op: str, left: Any, right: Any) -> Comparison:
    if _is_property(left):
        value = Property(_property_name(right, op)) if _is_property(right) else _literal(right)
        return Comparison(op, _property_name(left, op), value)
    if _is_property(right):
        return Comparison(_MIRRORED[op], _property_name(right, op), _literal(left))
    raise _malformed(f"'{op}' needs at least one property reference", [left, right])


def _literal(value: Any) -> Literal:
    if isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (datetime, date)):
        return value
    if isinstance(value, dict) and len(value) == 1:
        if "timestamp" in value:
            try:
                return parse_rfc3339(str(value["timestamp"]))
            except ValueError:
                raise _malformed(f"Invalid timestamp literal {value['timestamp']!r}", value)
        if "date" in value:
            try:
                return date.fromisoformat(str(value["date"]))
            except ValueError:
                raise _malformed(f"Invalid date literal {value['date']!r}", value)
    raise _malformed(f"Unsupported literal {value!r}", value)


def _temporal_literal(value: Any) -> DatetimeInterval:
    if isinstance(value, DatetimeInterval):
        return value
    if isinstance(value, dict) and "interval" in value:
        bounds = value["interval"]
        if not isinstance(bounds, list) or len(bounds) != 2:
            raise _malformed("Interval literal needs exactly two bounds", value)
        start, end = (_interval_bound(bound) for bound in bounds)
        return parse_interval(f"{start}/{end}")
    literal = _literal(value)
    if isinstance(literal, datetime):
        return DatetimeInterval(literal, literal)
    if isinstance(literal, date):
        return parse_interval(literal.isoformat())
    if isinstance(literal, str):
        return parse_interval(literal)
    raise _malformed(f"Expected a temporal literal, got {value!r}", value)


def _interval_bound(bound: Any) -> str:
    if isinstance(bound, dict):
        bound = bound.get("timestamp", bound.get("date"))
    if bound is None:
        return OPEN_MARKER
    return str(bound)


def _spatial(op: str, left: Any, right: Any) -> Spatial:
    if _is_property(left):
        return Spatial(op, _property_name(left, op), _geometry_literal(right))
    if _is_property(right):
        swapped = {"s_within": "s_contains", "s_contains": "s_within"}.get(op, op)
        return Spatial(swapped, _property_name(right, op), _geometry_literal(left))
    raise _malformed(f"'{op}' needs a property reference", [left, right])


def _geometry_literal(value: Any) -> BaseGeometry:
    if isinstance(value, BaseGeometry):
        return value
    if isinstance(value, dict) and "bbox" in value and len(value) == 1:
        coords = value["bbox"]
        if not isinstance(coords, list) or len(coords) not in (4, 6):
            raise _malformed("bbox literal needs 4 or 6 numbers", value)
        if len(coords) == 6:
            coords = [coords[0], coords[1], coords[3], coords[4]]
        return box(*coords)
    if isinstance(value, str):
        try:
            geometry = shapely.from_wkt(value)
        except (ShapelyError, GEOSException) as e:
            raise _malformed(f"Invalid WKT geometry literal: {e}", value)
        if geometry.is_empty:
            raise _malformed("Geometry literal cannot be empty", value)
        return geometry
    try:
        geometry = shape(value)
    except (ShapelyError, GEOSException, AttributeError, KeyError, TypeError, ValueError, IndexError):
        raise _malformed("Invalid geometry literal", value)
    if geometry.is_empty:
        raise _malformed("Geometry literal cannot be empty", value)
    return geometry


def to_json(expr: Expr) -> Dict[str, Any]:
    """Render an expression in its cql2-json form."""
    if isinstance(expr, Logical):
        return {"op": expr.op, "args": [to_json(arg) for arg in expr.args]}
    prop = {"property": expr.property}
    if isinstance(expr, Comparison):
        return {"op": expr.op, "args": [prop, _literal_json(expr.value)]}
    if isinstance(expr, IsNull):
        return {"op": "isNull", "args": [prop]}
    if isinstance(expr, Like):
        return {"op": "like", "args": [prop, expr.pattern]}
    if isinstance(expr, InList):
        return {"op": "in", "args": [prop, [_literal_json(v) for v in expr.values]]}
    if isinstance(expr, Between):
        return {"op": "between", "args": [prop, _literal_json(expr.low), _literal_json(expr.high)]}
    if isinstance(expr, Spatial):
        return {"op": expr.op, "args": [prop, geometry_to_json(expr.geometry)]}
    if isinstance(expr, Temporal):
        return {"op": expr.op, "args": [prop, _interval_json(expr.value)]}
    raise TypeError(f"Not a filter expression: {expr!r}")


def _literal_json(value: Union[Literal, Property]) -> Any:
    if isinstance(value, Property):
        return {"property": value.name}
    if isinstance(value, datetime):
        return {"timestamp": format_datetime(value)}
    if isinstance(value, date):
        return {"date": value.isoformat()}
    return value


def _interval_json(value: DatetimeInterval) -> Dict[str, Any]:
    if value.is_instant:
        return {"timestamp": format_datetime(value.start)}
    return {
        "interval": [
            format_datetime(value.start) if value.start else OPEN_MARKER,
            format_datetime(value.end) if value.end else OPEN_MARKER,
        ]
    }


def geometry_to_json(geometry: BaseGeometry) -> Dict[str, Any]:
    """Return the GeoJSON mapping of a geometry with lists for coordinates."""
    return _as_lists(mapping(geometry))


def _as_lists(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _as_lists(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_as_lists(item) for item in value]
    return value


def parse_filter(value: Any, lang: Optional[str] = None) -> Optional[Expr]:
    """
    Parse a filter in either encoding.

    Args:
        value: cql2-text string, cql2-json document or an expression
        lang: ``cql2-text`` or ``cql2-json``; inferred from the value when
            omitted

    Returns:
        The expression tree, or None for an empty filter

    Raises:
        MalformedRequest: If the filter cannot be parsed
    """
    if value is None or isinstance(value, (Logical, Comparison, IsNull, Like, InList, Between, Spatial, Temporal)):
        return value
    if lang not in (None, "cql2-text", "cql2-json"):
        raise _malformed(f"Unsupported filter-lang {lang!r}", lang)
    if isinstance(value, str):
        if not value.strip():
            return None
        if lang == "cql2-json" or value.lstrip().startswith("{"):
            try:
                value = json.loads(value)
            except ValueError as e:
                raise _malformed(f"Filter is not valid JSON: {e}", value)
            return from_json(value)
        from stac_search.search.cql2 import parse_text

        return parse_text(value)
    if isinstance(value, dict):
        if lang == "cql2-text":
            raise _malformed("filter-lang is cql2-text but the filter is a JSON object", value)
        return from_json(value)
    raise _malformed(f"Unsupported filter value of type {type(value).__name__}", str(value))


def wkt(geometry: BaseGeometry) -> str:
    """Render a geometry as WKT without losing precision."""
    return shapely.to_wkt(geometry, rounding_precision=-1, trim=True)
