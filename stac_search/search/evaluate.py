"""
Direct evaluation of filter expressions against items.

Evaluation is pure and uses two-valued logic: a comparison against a
missing or null property, or against a value of another type, is false,
and ``NOT`` negates that result. Only the item's own geometry and
timestamps can make evaluation fail, with a ``DataError`` that the caller
records against the item.
"""

import operator
import re
from datetime import date, datetime
from typing import Any, Callable, Dict, Optional, Tuple

from shapely.errors import GEOSException, ShapelyError
from shapely.geometry import shape
from shapely.geometry.base import BaseGeometry

from stac_search.items.item import Item
from stac_search.search.filter import (
    Between,
    Comparison,
    Expr,
    InList,
    IsNull,
    Like,
    Logical,
    Property,
    Spatial,
    Temporal,
)
from stac_search.search.intervals import parse_rfc3339

MISSING = object()

ITEM_FIELDS = ("id", "collection", "geometry")

_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "=": operator.eq,
    "<>": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


def resolve(item: Item, path: str) -> Any:
    """
    Resolve a property path against an item.

    ``id``, ``collection`` and ``geometry`` name item-level fields; any other
    path is looked up in the property bag, first as a literal key and then
    as a dotted path into nested objects.

    Returns:
        The value, or ``MISSING`` when the path does not exist
    """
    if path.startswith("properties."):
        path = path[len("properties."):]
    elif path in ITEM_FIELDS:
        return getattr(item, path)

    properties = item.properties
    if path in properties:
        return properties[path]
    value: Any = properties
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return MISSING
        value = value[part]
    return value


def _as_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return parse_rfc3339(value)
        except ValueError:
            return None
    return None


def _comparable(left: Any, right: Any) -> bool:
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool)
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return True
    return type(left) is type(right) and isinstance(left, (str, datetime, date))


def compare(op: str, left: Any, right: Any) -> bool:
    """Compare two values, treating missing, null and mismatched types as false."""
    if left is MISSING or right is MISSING or left is None or right is None:
        return False
    if isinstance(right, datetime) or isinstance(left, datetime):
        left, right = _as_datetime(left), _as_datetime(right)
        if left is None or right is None:
            return False
    elif isinstance(right, date) or isinstance(left, date):
        left, right = _as_date(left), _as_date(right)
        if left is None or right is None:
            return False
    if not _comparable(left, right):
        return False
    return _OPERATORS[op](left, right)


def _as_date(value: Any) -> Optional[date]:
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    instant = _as_datetime(value)
    return instant.date() if instant is not None else None


def like_pattern(pattern: str) -> "re.Pattern":
    """Translate a LIKE pattern (``%``, ``_``, backslash escapes) to a regex."""
    parts = []
    escaped = False
    for char in pattern:
        if escaped:
            parts.append(re.escape(char))
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == "%":
            parts.append(".*")
        elif char == "_":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    if escaped:
        parts.append(re.escape("\\"))
    return re.compile("".join(parts), re.DOTALL)


def _evaluate_logical(expr: Logical, item: Item) -> bool:
    if expr.op == "and":
        return all(evaluate(arg, item) for arg in expr.args)
    if expr.op == "or":
        return any(evaluate(arg, item) for arg in expr.args)
    return not evaluate(expr.args[0], item)


def _evaluate_comparison(expr: Comparison, item: Item) -> bool:
    right = resolve(item, expr.value.name) if isinstance(expr.value, Property) else expr.value
    return compare(expr.op, resolve(item, expr.property), right)


def _evaluate_is_null(expr: IsNull, item: Item) -> bool:
    value = resolve(item, expr.property)
    return value is MISSING or value is None


def _evaluate_like(expr: Like, item: Item) -> bool:
    value = resolve(item, expr.property)
    if not isinstance(value, str):
        return False
    return like_pattern(expr.pattern).fullmatch(value) is not None


def _evaluate_in(expr: InList, item: Item) -> bool:
    value = resolve(item, expr.property)
    return any(compare("=", value, candidate) for candidate in expr.values)


def _evaluate_between(expr: Between, item: Item) -> bool:
    value = resolve(item, expr.property)
    return compare(">=", value, expr.low) and compare("<=", value, expr.high)


def _item_geometry(item: Item, path: str) -> Optional[BaseGeometry]:
    if path == "geometry":
        return item.shape()
    value = resolve(item, path)
    if not isinstance(value, dict):
        return None
    try:
        return shape(value)
    except (ShapelyError, GEOSException, AttributeError, KeyError, TypeError, ValueError, IndexError):
        return None


def _evaluate_spatial(expr: Spatial, item: Item) -> bool:
    geometry = _item_geometry(item, expr.property)
    if geometry is None:
        return False
    if expr.op == "s_intersects":
        return geometry.intersects(expr.geometry)
    if expr.op == "s_within":
        return geometry.within(expr.geometry)
    if expr.op == "s_contains":
        return geometry.contains(expr.geometry)
    return geometry.disjoint(expr.geometry)


def _item_interval(item: Item, path: str) -> Tuple[Optional[datetime], Optional[datetime]]:
    if path in ("datetime", "properties.datetime"):
        return item.interval()
    instant = _as_datetime(resolve(item, path))
    return instant, instant


def _evaluate_temporal(expr: Temporal, item: Item) -> bool:
    start, end = _item_interval(item, expr.property)
    if start is None or end is None:
        return False
    low, high = expr.value.start, expr.value.end
    if expr.op == "t_before":
        return low is not None and end < low
    if expr.op == "t_after":
        return high is not None and start > high
    if expr.op == "t_during":
        return (low is None or start > low) and (high is None or end < high)
    return (high is None or start <= high) and (low is None or end >= low)


_EVALUATORS: Dict[str, Callable[[Any, Item], bool]] = {
    "logical": _evaluate_logical,
    "comparison": _evaluate_comparison,
    "is_null": _evaluate_is_null,
    "like": _evaluate_like,
    "in": _evaluate_in,
    "between": _evaluate_between,
    "spatial": _evaluate_spatial,
    "temporal": _evaluate_temporal,
}


def evaluate(expr: Expr, item: Item) -> bool:
    """
    Evaluate an expression against one item.

    Args:
        expr: Filter expression
        item: Item to test

    Returns:
        True if the item satisfies the expression

    Raises:
        DataError: If the expression needs the item's geometry or timestamps
            and they cannot be parsed
    """
    return _EVALUATORS[expr.kind](expr, item)
