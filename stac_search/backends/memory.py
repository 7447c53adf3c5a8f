"""
In-memory search backend.

The backend holds items in an :class:`ItemStore` owned by the caller and
evaluates every query directly, which makes it the reference the other
backends are measured against. Each stored item is tested in a fixed order,
stopping at the first failing stage:

1. id membership
2. collection membership
3. spatial: bounding-box overlap, then exact geometry intersection
4. datetime overlap
5. filter evaluation

An item whose geometry or timestamps cannot be parsed is excluded from the
result and reported in ``ItemCollection.errors``; the search itself succeeds.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple

from shapely.geometry.base import BaseGeometry

from stac_search.backends.base import QueryHandle, SearchBackend
from stac_search.config.config import SearchSettings
from stac_search.items.item import Bounds, Item
from stac_search.search.evaluate import evaluate
from stac_search.search.fields import apply_fields
from stac_search.search.intervals import DatetimeInterval
from stac_search.search.paging import decode_token, encode_token
from stac_search.search.query import SearchQuery
from stac_search.search.result import ItemCollection, ItemError
from stac_search.search.sort import sort_items
from stac_search.utils.errors import DataError
from stac_search.utils.logging import get_logger
from stac_search.utils.metrics import MetricsManager

logger = get_logger(__name__)

ItemKey = Tuple[Optional[str], str]


class ReadWriteLock:
    """A lock admitting many readers or one writer; waiting writers go first."""

    def __init__(self):
        self._condition = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._condition:
            while self._writer or self._waiting_writers:
                self._condition.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._condition:
                self._readers -= 1
                if not self._readers:
                    self._condition.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._condition:
            self._waiting_writers += 1
            while self._writer or self._readers:
                self._condition.wait()
            self._waiting_writers -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._condition:
                self._writer = False
                self._condition.notify_all()


class ItemStore:
    """
    Items keyed by (collection, id) with a collection index.

    Mutations take the write side of the store's lock and therefore never
    interleave with a running search.
    """

    def __init__(self, items: Optional[Iterable[Item]] = None):
        self._items: Dict[ItemKey, Item] = {}
        self._by_collection: Dict[Optional[str], Set[ItemKey]] = {}
        self.lock = ReadWriteLock()
        if items is not None:
            self.add_items(items)

    def _insert(self, item: Item) -> None:
        key = (item.collection, item.id)
        self._items[key] = item
        self._by_collection.setdefault(item.collection, set()).add(key)

    def add_item(self, item: Item) -> None:
        """Add an item, replacing any item with the same collection and id."""
        with self.lock.write():
            self._insert(item)

    def add_items(self, items: Iterable[Item]) -> int:
        """Add several items under one write lock; returns how many."""
        count = 0
        with self.lock.write():
            for item in items:
                self._insert(item)
                count += 1
        return count

    def remove_item(self, item_id: str, collection: Optional[str] = None) -> bool:
        """Remove an item; returns False if it was not stored."""
        key = (collection, item_id)
        with self.lock.write():
            if self._items.pop(key, None) is None:
                return False
            keys = self._by_collection.get(collection)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._by_collection[collection]
            return True

    def clear(self) -> None:
        with self.lock.write():
            self._items.clear()
            self._by_collection.clear()

    def get(self, item_id: str, collection: Optional[str] = None) -> Optional[Item]:
        with self.lock.read():
            return self._items.get((collection, item_id))

    def __len__(self) -> int:
        return len(self._items)

    def candidates(self, collections: Optional[List[str]] = None) -> List[Item]:
        """
        Return stored items, narrowed by the collection index when given.

        Callers must hold the read lock.
        """
        if collections is None:
            return list(self._items.values())
        keys: List[ItemKey] = []
        for collection in dict.fromkeys(collections):
            keys.extend(self._by_collection.get(collection, ()))
        return [self._items[key] for key in keys]


def _bounds_overlap(a: Bounds, b: Bounds) -> bool:
    return a[0] <= b[2] and a[2] >= b[0] and a[1] <= b[3] and a[3] >= b[1]


class _Matcher:
    """Per-query state for the staged item test."""

    def __init__(self, query: SearchQuery):
        self.query = query
        self.ids = set(query.ids) if query.ids is not None else None
        self.collections = set(query.collections) if query.collections is not None else None
        self.spatial: Optional[BaseGeometry] = query.spatial
        self.spatial_bounds: Optional[Bounds] = self.spatial.bounds if self.spatial is not None else None
        self.interval: Optional[DatetimeInterval] = query.interval

    def matches(self, item: Item) -> bool:
        """
        Test one item.

        Raises:
            DataError: If a stage needs the item's geometry or timestamps and
                they cannot be parsed
        """
        if self.ids is not None and item.id not in self.ids:
            return False
        if self.collections is not None and item.collection not in self.collections:
            return False
        if self.spatial is not None and not self._matches_spatial(item):
            return False
        if self.interval is not None and not self.interval.overlaps(*item.interval()):
            return False
        if self.query.filter is not None and not evaluate(self.query.filter, item):
            return False
        return True

    def _matches_spatial(self, item: Item) -> bool:
        bounds = item.bounds()
        if bounds is None or not _bounds_overlap(bounds, self.spatial_bounds):
            return False
        geometry = item.shape()
        if geometry is None:
            return True
        return geometry.intersects(self.spatial)


def match_items(
    items: Iterable[Item],
    query: SearchQuery,
    handle: Optional[QueryHandle] = None,
) -> Tuple[List[Item], List[ItemError]]:
    """
    Return the items matching a query, and the items that could not be read.

    Raises:
        QueryCancelled: If the handle is cancelled during the scan
    """
    matcher = _Matcher(query)
    matched: List[Item] = []
    errors: List[ItemError] = []
    for item in items:
        if handle is not None:
            handle.check()
        try:
            if matcher.matches(item):
                matched.append(item)
        except DataError as e:
            logger.warning(f"Skipping item {item.id!r}: {e.message}", extra={"item_id": item.id})
            errors.append(ItemError(item_id=item.id, collection=item.collection, message=e.message))
    return matched, errors


class MemoryBackend(SearchBackend):
    """Search backend evaluating queries over an in-memory item store."""

    name = "memory"
    capabilities = frozenset({"filter", "sort", "fields", "exact-geometry", "count"})

    def __init__(
        self,
        store: ItemStore,
        settings: Optional[SearchSettings] = None,
        metrics: Optional[MetricsManager] = None,
    ):
        super().__init__(settings, metrics)
        self.store = store

    async def _search(self, query: SearchQuery) -> ItemCollection:
        offset = decode_token(query.token, self.name)
        handle = QueryHandle()
        return await handle.run(self._execute, query, offset, handle)

    def _execute(self, query: SearchQuery, offset: int, handle: QueryHandle) -> ItemCollection:
        with self.store.lock.read():
            candidates = self.store.candidates(query.collections)
            matched, errors = match_items(candidates, query, handle)

        self.metrics.record_skipped_items(self.name, len(errors))
        ordered = sort_items(matched, query.sortby)
        page = ordered[offset:offset + query.limit]

        next_token = None
        if offset + query.limit < len(ordered):
            next_token = encode_token(self.name, offset + query.limit)
        prev_token = None
        if offset > 0:
            prev_token = encode_token(self.name, max(0, offset - query.limit))

        return ItemCollection.assemble(
            features=[apply_fields(item.to_dict(), query.fields) for item in page],
            limit=query.limit,
            matched=len(ordered),
            next_token=next_token,
            prev_token=prev_token,
            errors=errors,
        )
