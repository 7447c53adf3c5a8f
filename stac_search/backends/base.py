"""
Backend contract for catalog searches.

Every storage engine implements :class:`SearchBackend`. Blocking engine work
runs in a worker thread through a :class:`QueryHandle`, which forwards a
caller's cancellation to the engine (interrupting the running statement)
instead of letting it run to completion unobserved.
"""

import abc
import asyncio
import threading
import time
from typing import Any, Callable, FrozenSet, Optional

from stac_search.config.config import SearchSettings
from stac_search.search.query import SearchQuery
from stac_search.search.result import ItemCollection
from stac_search.utils.errors import SearchError
from stac_search.utils.logging import get_logger
from stac_search.utils.metrics import MetricsManager, metrics_manager

logger = get_logger(__name__)


class QueryCancelled(Exception):
    """Raised inside a worker thread once its query has been cancelled."""


class QueryHandle:
    """
    Cancellation handle for one blocking query.

    The worker attaches an engine-specific cancel callback (for example a
    connection's ``interrupt``) while its statement runs. Cancelling the
    awaiting task sets the handle and invokes the attached callback.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._cancel: Optional[Callable[[], None]] = None
        self.cancelled = threading.Event()

    def attach(self, cancel: Callable[[], None]) -> None:
        """Attach the callback that aborts the running statement."""
        with self._lock:
            self._cancel = cancel
            if self.cancelled.is_set():
                cancel()

    def detach(self) -> None:
        with self._lock:
            self._cancel = None

    def check(self) -> None:
        """Raise ``QueryCancelled`` if the query has been cancelled."""
        if self.cancelled.is_set():
            raise QueryCancelled()

    def cancel(self) -> None:
        with self._lock:
            self.cancelled.set()
            if self._cancel is not None:
                try:
                    self._cancel()
                except Exception as e:
                    logger.warning(f"Failed to cancel running query: {e}")

    async def run(self, fn: Callable[..., Any], *args: Any) -> Any:
        """
        Run a blocking function in a worker thread.

        If the awaiting task is cancelled, the query is cancelled and the
        worker is awaited so that its connection is released before the
        cancellation propagates.
        """
        task = asyncio.ensure_future(asyncio.to_thread(fn, *args))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            self.cancel()
            try:
                await task
            except Exception as e:
                logger.debug(f"Cancelled query ended with {type(e).__name__}: {e}")
            raise


class SearchBackend(abc.ABC):
    """
    Base class for search backends.

    Subclasses implement :meth:`_search`; :meth:`search` adds metrics and
    logging around it.
    """

    name: str = "backend"
    capabilities: FrozenSet[str] = frozenset()

    def __init__(
        self,
        settings: Optional[SearchSettings] = None,
        metrics: Optional[MetricsManager] = None,
    ):
        self.settings = settings or SearchSettings()
        self.metrics = metrics or metrics_manager

    async def search(self, query: SearchQuery) -> ItemCollection:
        """
        Run a search.

        Args:
            query: Validated query

        Returns:
            One page of results

        Raises:
            SearchError: A subclass naming what went wrong
        """
        start = time.perf_counter()
        outcome = "ok"
        try:
            result = await self._search(query)
            logger.debug(
                f"{self.name} search returned {result.number_returned} items",
                extra={"backend": self.name, "matched": result.number_matched},
            )
            return result
        except SearchError as e:
            outcome = e.code.name.lower()
            raise
        except asyncio.CancelledError:
            outcome = "cancelled"
            raise
        except Exception:
            outcome = "error"
            raise
        finally:
            self.metrics.record_search(self.name, outcome, time.perf_counter() - start)

    @abc.abstractmethod
    async def _search(self, query: SearchQuery) -> ItemCollection:
        """Run a search; implemented by each backend."""

    async def close(self) -> None:
        """Release backend resources."""

    async def __aenter__(self) -> "SearchBackend":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
