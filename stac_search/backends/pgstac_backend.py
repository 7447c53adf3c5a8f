"""
Search backend delegating to a pgstac database.

The query is sent as one JSON document to ``pgstac.search``; filtering,
sorting, field selection and paging all happen inside the database. The
tokens pgstac returns are passed through to the caller unchanged apart from
the ``next:``/``prev:`` prefix pgstac expects back.
"""

from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

import psycopg2
import psycopg2.extensions
import psycopg2.extras

from stac_search.backends.base import QueryHandle, SearchBackend
from stac_search.backends.pool import ConnectionPool
from stac_search.config.config import PgstacBackendConfig, SearchSettings
from stac_search.search.query import SearchQuery
from stac_search.search.result import ItemCollection
from stac_search.utils.errors import BackendError, BackendUnavailable, ErrorDetail
from stac_search.utils.logging import get_logger
from stac_search.utils.metrics import MetricsManager

logger = get_logger(__name__)

SEARCH_SQL = "SELECT * FROM pgstac.search(%s::jsonb)"


def _is_transient(error: BaseException) -> bool:
    if isinstance(error, psycopg2.extensions.QueryCanceledError):
        return False
    return isinstance(error, (psycopg2.OperationalError, psycopg2.InterfaceError))


def _is_broken(error: BaseException) -> bool:
    return isinstance(error, (psycopg2.OperationalError, psycopg2.InterfaceError)) and not isinstance(
        error, psycopg2.extensions.QueryCanceledError
    )


def page_token(page: Dict[str, Any], rel: str) -> Optional[str]:
    """
    Extract the continuation token for ``rel`` from a pgstac result page.

    Newer pgstac releases return bare ``next``/``prev`` keys; older ones only
    carry the token inside the link.
    """
    value = page.get(rel)
    if value:
        return f"{rel}:{value}"
    for link in page.get("links") or []:
        if link.get("rel") != rel:
            continue
        body = link.get("body") or {}
        if body.get("token"):
            return body["token"]
        tokens = parse_qs(urlparse(link.get("href") or "").query).get("token")
        if tokens:
            return tokens[0]
    return None


def page_matched(page: Dict[str, Any]) -> Optional[int]:
    if page.get("numberMatched") is not None:
        return page["numberMatched"]
    context = page.get("context") or {}
    return context.get("matched")


class PgstacBackend(SearchBackend):
    """Search backend over a pgstac database."""

    name = "pgstac"
    capabilities = frozenset({"filter", "sort", "fields", "exact-geometry", "count"})

    def __init__(
        self,
        config: PgstacBackendConfig,
        settings: Optional[SearchSettings] = None,
        metrics: Optional[MetricsManager] = None,
    ):
        super().__init__(settings, metrics)
        self.config = config
        self.pool: ConnectionPool = ConnectionPool(
            self._connect, config.pool, is_broken=_is_broken, name="pgstac"
        )

    def _connect(self):
        try:
            connection = psycopg2.connect(self.config.dsn)
        except psycopg2.OperationalError:
            # Refused or dropped connects are retried by the pool
            raise
        except psycopg2.Error as e:
            raise BackendUnavailable(
                f"Cannot connect to pgstac: {e}",
                details=[ErrorDetail(param="dsn", message=str(e).strip())],
            )
        connection.autocommit = True
        if self.config.statement_timeout_ms is not None:
            with connection.cursor() as cursor:
                cursor.execute("SET statement_timeout = %s", (self.config.statement_timeout_ms,))
        return connection

    async def _search(self, query: SearchQuery) -> ItemCollection:
        payload = query.to_payload()
        handle = QueryHandle()
        page = await handle.run(self._run, payload, handle)
        return self._assemble(query, page)

    def _run(self, payload: Dict[str, Any], handle: QueryHandle) -> Dict[str, Any]:
        try:
            return self.pool.run(lambda connection: self._execute(connection, payload, handle), _is_transient)
        except psycopg2.extensions.QueryCanceledError as e:
            if handle.cancelled.is_set():
                raise
            raise BackendUnavailable(
                f"pgstac search timed out: {e}",
                details=[ErrorDetail(param="statement_timeout", message=str(e).strip())],
            )
        except psycopg2.Error as e:
            logger.error(f"pgstac search failed: {e}", extra={"pgcode": e.pgcode})
            raise BackendError(
                f"pgstac search failed: {str(e).strip()}",
                details=[ErrorDetail(param="query", message=str(e).strip())],
                backend_code=e.pgcode,
            )

    def _execute(self, connection, payload: Dict[str, Any], handle: QueryHandle) -> Dict[str, Any]:
        handle.attach(connection.cancel)
        try:
            handle.check()
            with connection.cursor() as cursor:
                logger.debug("pgstac search", extra={"payload": payload})
                cursor.execute(SEARCH_SQL, (psycopg2.extras.Json(payload),))
                row = cursor.fetchone()
        finally:
            handle.detach()
        if row is None or row[0] is None:
            return {"features": []}
        return row[0]

    def _assemble(self, query: SearchQuery, page: Dict[str, Any]) -> ItemCollection:
        features: List[Dict[str, Any]] = page.get("features") or []
        return ItemCollection.assemble(
            features=features,
            limit=query.limit,
            matched=page_matched(page),
            next_token=page_token(page, "next"),
            prev_token=page_token(page, "prev"),
        )

    async def close(self) -> None:
        self.pool.close()
