"""
Ordering of matched items.

Items are ordered by the requested sort keys and then by id and collection,
so that repeated searches over unchanged data page identically.
"""

import functools
import json
from datetime import datetime
from typing import Any, List, Sequence

from stac_search.items.item import Item
from stac_search.search.evaluate import MISSING, resolve
from stac_search.search.intervals import parse_rfc3339
from stac_search.search.query import SortDirection, SortOption

TIMESTAMP_FIELDS = ("datetime", "start_datetime", "end_datetime")


def sort_value(item: Item, field: str) -> Any:
    """Return the value an item is sorted by for one field, or None."""
    value = resolve(item, field)
    if value is MISSING or value is None:
        return None
    name = field[len("properties."):] if field.startswith("properties.") else field
    if name in TIMESTAMP_FIELDS and isinstance(value, str):
        try:
            return parse_rfc3339(value)
        except ValueError:
            return None
    return value


def _rank(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return 1
    if isinstance(value, datetime):
        return 2
    if isinstance(value, str):
        return 3
    return 4


def compare_values(left: Any, right: Any) -> int:
    """
    Three-way comparison of two sort values.

    None sorts before any value; values of different types are ordered by a
    fixed type rank; structured values compare by their JSON text.
    """
    if left is None or right is None:
        return (left is not None) - (right is not None)
    left_rank, right_rank = _rank(left), _rank(right)
    if left_rank != right_rank:
        return -1 if left_rank < right_rank else 1
    if left_rank == 4:
        left, right = json.dumps(left, sort_keys=True), json.dumps(right, sort_keys=True)
    return (left > right) - (left < right)


def _compare_items(sortby: Sequence[SortOption], left: Item, right: Item) -> int:
    for option in sortby:
        result = compare_values(sort_value(left, option.field), sort_value(right, option.field))
        if result:
            return -result if option.direction == SortDirection.DESC else result
    result = compare_values(left.id, right.id)
    if result:
        return result
    return compare_values(left.collection, right.collection)


def sort_items(items: Sequence[Item], sortby: Sequence[SortOption]) -> List[Item]:
    """
    Sort items by the given keys with the id and collection tie-break.

    Ascending keys put missing values first, descending keys put them last.
    """
    key = functools.cmp_to_key(functools.partial(_compare_items, list(sortby)))
    return sorted(items, key=key)
