"""
Bounded connection pool.

Callers acquire a connection for exactly one query. When every connection is
in use, a caller blocks up to the acquire timeout and then fails with
``BackendUnavailable`` instead of queuing indefinitely. Connections that
fail with a connection-level error are closed rather than returned.
"""

import threading
from collections import deque
from contextlib import contextmanager
from typing import Any, Callable, Deque, Dict, Generic, Iterator, Optional, TypeVar

import backoff

from stac_search.config.config import PoolConfig
from stac_search.utils.errors import BackendUnavailable, ErrorDetail
from stac_search.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def _never(error: BaseException) -> bool:
    return False


class ConnectionPool(Generic[T]):
    """A fixed-size pool of lazily created connections."""

    def __init__(
        self,
        factory: Callable[[], T],
        config: Optional[PoolConfig] = None,
        close: Optional[Callable[[T], None]] = None,
        is_broken: Callable[[BaseException], bool] = _never,
        name: str = "pool",
    ):
        """
        Initialize the pool.

        Args:
            factory: Opens a new connection
            config: Pool size and acquire timeout
            close: Closes a connection; defaults to calling ``close()``
            is_broken: Tells whether an error leaves the connection unusable
            name: Name used in logs and errors
        """
        self.config = config or PoolConfig()
        self.name = name
        self._factory = factory
        self._close = close or (lambda connection: connection.close())
        self._is_broken = is_broken
        self._slots = threading.BoundedSemaphore(self.config.size)
        self._idle: Deque[T] = deque()
        self._lock = threading.Lock()
        self._closed = False

    @contextmanager
    def acquire(self, timeout: Optional[float] = None) -> Iterator[T]:
        """
        Borrow a connection for the duration of a ``with`` block.

        Raises:
            BackendUnavailable: If no connection frees up within the timeout
                or the pool is closed
        """
        if self._closed:
            raise BackendUnavailable(f"Connection pool {self.name!r} is closed")
        timeout = self.config.acquire_timeout if timeout is None else timeout
        if not self._slots.acquire(timeout=timeout):
            raise BackendUnavailable(
                f"No {self.name} connection available within {timeout:g}s",
                details=[ErrorDetail(param="pool", message="connection pool exhausted")],
            )
        connection = None
        try:
            connection = self._checkout()
            yield connection
        except BaseException as e:
            if connection is not None and self._is_broken(e):
                logger.warning(f"Discarding broken {self.name} connection: {e}")
                self._discard(connection)
                connection = None
            raise
        finally:
            if connection is not None:
                self._checkin(connection)
            self._slots.release()

    def _checkout(self) -> T:
        with self._lock:
            if self._idle:
                return self._idle.popleft()
        logger.debug(f"Opening new {self.name} connection")
        return self._factory()

    def _checkin(self, connection: T) -> None:
        with self._lock:
            if not self._closed:
                self._idle.append(connection)
                return
        self._discard(connection)

    def _discard(self, connection: T) -> None:
        try:
            self._close(connection)
        except Exception as e:
            logger.debug(f"Error closing {self.name} connection: {e}")

    def _log_retry(self, details: Dict[str, Any]) -> None:
        logger.warning(f"Transient {self.name} failure, retrying once: {details['exception']}")

    def run(
        self,
        fn: Callable[[T], R],
        is_transient: Callable[[BaseException], bool] = _never,
    ) -> R:
        """
        Run ``fn`` on a pooled connection, retrying once on a transient error.

        Opening the connection counts as part of the attempt, so a refused
        connect is retried like a dropped one.

        Args:
            fn: Work to run with the borrowed connection
            is_transient: Tells whether an error is worth one retry

        Returns:
            Whatever ``fn`` returns

        Raises:
            BackendUnavailable: If the retry fails transiently as well
        """

        @backoff.on_exception(
            backoff.constant,
            Exception,
            max_tries=2,
            giveup=lambda e: not is_transient(e),
            on_backoff=self._log_retry,
            logger=None,
            interval=self.config.retry_interval,
            jitter=None,
        )
        def attempt() -> R:
            with self.acquire() as connection:
                return fn(connection)

        try:
            return attempt()
        except Exception as e:
            if not is_transient(e):
                raise
            raise BackendUnavailable(
                f"{self.name} is unavailable: {e}",
                details=[ErrorDetail(param="backend", message=str(e).strip())],
            ) from e

    def close(self) -> None:
        """Close idle connections; borrowed ones are closed on return."""
        with self._lock:
            self._closed = True
            idle = list(self._idle)
            self._idle.clear()
        for connection in idle:
            self._discard(connection)
