"""
Field projection for returned items.

Paths are dotted (``properties.eo:cloud_cover``). When includes are given
only those paths are kept; excludes are removed afterwards. The item ``id``
is always kept so that results stay addressable.
"""

import copy
from typing import Any, Dict, List, Optional

from stac_search.search.query import Fields

ALWAYS_INCLUDED = ("id",)

_MISSING = object()


def _split(path: str, document: Dict[str, Any]) -> List[str]:
    # Property keys may themselves contain dots, e.g. "proj.epsg"
    head, _, rest = path.partition(".")
    if head == "properties" and rest and isinstance(document.get("properties"), dict):
        return ["properties", rest] if rest in document["properties"] else ["properties", *rest.split(".")]
    return path.split(".")


def _get(document: Dict[str, Any], parts: List[str]) -> Any:
    value: Any = document
    for part in parts:
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _set(document: Dict[str, Any], parts: List[str], value: Any) -> None:
    target = document
    for part in parts[:-1]:
        target = target.setdefault(part, {})
    target[parts[-1]] = value


def _delete(document: Dict[str, Any], parts: List[str]) -> None:
    target: Any = document
    for part in parts[:-1]:
        if not isinstance(target, dict) or part not in target:
            return
        target = target[part]
    if isinstance(target, dict):
        target.pop(parts[-1], None)


def apply_fields(item: Dict[str, Any], fields: Optional[Fields]) -> Dict[str, Any]:
    """
    Project an item mapping.

    Args:
        item: Item mapping; it is not modified
        fields: Projection, or None to return the item unchanged

    Returns:
        The projected item mapping
    """
    if fields is None or (not fields.include and not fields.exclude):
        return item

    if fields.include:
        projected: Dict[str, Any] = {}
        for path in list(ALWAYS_INCLUDED) + list(fields.include):
            parts = _split(path, item)
            value = _get(item, parts)
            if value is not _MISSING:
                _set(projected, parts, copy.deepcopy(value))
    else:
        projected = copy.deepcopy(item)

    for path in fields.exclude:
        if path in ALWAYS_INCLUDED:
            continue
        _delete(projected, _split(path, projected))
    return projected
