"""
Parquet search backend running on DuckDB.

Each search compiles to one SELECT over ``read_parquet`` of every
registered href. Ids and collections become IN lists, the spatial
constraint becomes a comparison against the stored bbox struct (plus an
exact ``ST_Intersects`` through the spatial extension unless exact geometry
is disabled), datetimes become range predicates and the filter is compiled
with :class:`DuckDBDialect`. Paging uses LIMIT/OFFSET with offset tokens.
"""

import glob
from pathlib import Path
from typing import Any, List, Optional, Tuple

import duckdb
import pyarrow as pa
import pyarrow.parquet as pq
from shapely.errors import GEOSException, ShapelyError

from stac_search.backends.base import QueryHandle, SearchBackend
from stac_search.backends.pool import ConnectionPool
from stac_search.config.config import DuckDBBackendConfig, SearchSettings
from stac_search.items.geoparquet import RESERVED_COLUMNS, TIMESTAMP_COLUMNS, row_to_item
from stac_search.search.compile import SqlDialect, compile_filter, quote_identifier, quote_literal
from stac_search.search.fields import apply_fields
from stac_search.search.filter import wkt
from stac_search.search.intervals import format_datetime
from stac_search.search.paging import decode_token, encode_token
from stac_search.search.query import SearchQuery, SortDirection
from stac_search.search.result import ItemCollection
from stac_search.utils.errors import (
    BackendError,
    BackendUnavailable,
    DataError,
    ErrorDetail,
    TranslationError,
)
from stac_search.utils.logging import get_logger
from stac_search.utils.metrics import MetricsManager

logger = get_logger(__name__)

MATCHED_COLUMN = "__matched"


def expand_hrefs(hrefs: List[str]) -> List[str]:
    """
    Expand local glob patterns into file paths.

    Raises:
        ValueError: If a local pattern matches nothing
    """
    paths = []
    for href in hrefs:
        if "://" in href or not any(char in href for char in "*?["):
            paths.append(href)
            continue
        matches = sorted(glob.glob(href, recursive=True))
        if not matches:
            raise ValueError(f"No parquet files match {href!r}")
        paths.extend(matches)
    return paths


def infer_schema(hrefs: List[str], hive_partitioning: bool = False) -> pa.Schema:
    """
    Infer the unified schema of a set of parquet files.

    Hive partition keys (``key=value`` path segments) are added as string
    columns when partitioning is enabled.
    """
    paths = expand_hrefs(hrefs)
    schema = pa.unify_schemas([pq.read_schema(path) for path in paths])
    if hive_partitioning:
        for path in paths:
            for segment in Path(path).parts[:-1]:
                key, sep, _ = segment.partition("=")
                if sep and key and schema.get_field_index(key) == -1:
                    schema = schema.append(pa.field(key, pa.string()))
    return schema


class DuckDBDialect(SqlDialect):
    """Routes property paths onto the columns of a parquet schema."""

    name = "duckdb"

    def __init__(self, schema: pa.Schema, exact_geometry: bool = True):
        self.schema = schema
        self.columns = set(schema.names)
        self.exact_geometry = exact_geometry
        index = schema.get_field_index("properties")
        field = schema.field(index) if index != -1 else None
        self.properties = field.type if field is not None and pa.types.is_struct(field.type) else None

    def column_for(self, path: str) -> str:
        name = path[len("properties."):] if path.startswith("properties.") else path
        if name in ("id", "collection") and name in self.columns:
            return quote_identifier(name)
        if name in TIMESTAMP_COLUMNS and name in self.columns:
            return quote_identifier(name)
        if name in self.columns and name not in RESERVED_COLUMNS:
            return quote_identifier(name)
        nested = self._struct_path(name)
        if nested is not None:
            expression = quote_identifier("properties")
            for part in nested:
                expression = f"struct_extract({expression}, {quote_literal(part)})"
            return expression
        return super().column_for(path)

    def _struct_path(self, name: str) -> Optional[List[str]]:
        if self.properties is None:
            return None
        if self.properties.get_field_index(name) != -1:
            return [name]
        parts = name.split(".")
        struct = self.properties
        for position, part in enumerate(parts):
            if struct is None or struct.get_field_index(part) == -1:
                return None
            child = struct.field(part).type
            struct = child if pa.types.is_struct(child) else None
            if struct is None and position != len(parts) - 1:
                return None
        return parts

    def geometry_for(self, path: str) -> str:
        if not self.exact_geometry:
            super().geometry_for(path)
        if path != "geometry" or "geometry" not in self.columns:
            raise TranslationError(
                f"Property {path!r} is not a geometry column",
                details=[ErrorDetail(param="filter", value=path, message="not a geometry")],
            )
        return 'ST_GeomFromWKB("geometry")'

    def temporal_bounds(self, path: str) -> Tuple[str, str]:
        if path not in ("datetime", "properties.datetime"):
            return super().temporal_bounds(path)
        present = {name: self.timestamp(quote_identifier(name)) for name in TIMESTAMP_COLUMNS if name in self.columns}
        if not present:
            raise TranslationError(
                "The parquet schema has no datetime columns",
                details=[ErrorDetail(param="datetime", message="no datetime columns")],
            )
        start = [present[n] for n in ("start_datetime", "datetime", "end_datetime") if n in present]
        end = [present[n] for n in ("end_datetime", "datetime", "start_datetime") if n in present]
        return _coalesce(start), _coalesce(end)


def _coalesce(expressions: List[str]) -> str:
    return expressions[0] if len(expressions) == 1 else f"COALESCE({', '.join(expressions)})"


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, duckdb.IOException)


def _is_broken(error: BaseException) -> bool:
    return isinstance(error, (duckdb.ConnectionException, duckdb.FatalException))


class DuckDBBackend(SearchBackend):
    """Search backend over parquet files."""

    name = "duckdb"

    def __init__(
        self,
        config: DuckDBBackendConfig,
        settings: Optional[SearchSettings] = None,
        metrics: Optional[MetricsManager] = None,
        database: str = ":memory:",
    ):
        """
        Initialize the backend.

        Args:
            config: Parquet hrefs and engine options
            settings: Search limits
            metrics: Metrics manager
            database: DuckDB database the pooled connections share

        Raises:
            ValueError: If the hrefs match no files
            BackendUnavailable: If the spatial extension cannot be loaded
        """
        super().__init__(settings, metrics)
        self.config = config
        self.hrefs = list(config.hrefs)
        self.schema = infer_schema(self.hrefs, config.use_hive_partitioning)
        self.dialect = DuckDBDialect(self.schema, config.exact_geometry)
        self.capabilities = frozenset(
            {"filter", "sort", "fields", "count"} | ({"exact-geometry"} if config.exact_geometry else set())
        )
        self._database = duckdb.connect(database)
        if config.exact_geometry:
            try:
                if config.install_extensions:
                    self._database.execute("INSTALL spatial")
                self._database.execute("LOAD spatial")
            except duckdb.Error as e:
                self._database.close()
                raise BackendUnavailable(
                    f"DuckDB spatial extension is unavailable: {e}; disable exact_geometry to search by bbox only"
                )
        self.pool: ConnectionPool = ConnectionPool(
            self._connect, config.pool, is_broken=_is_broken, name="duckdb"
        )
        logger.info(f"DuckDB backend registered {len(self.hrefs)} href(s)", extra={"hrefs": self.hrefs})

    def _connect(self):
        connection = self._database.cursor()
        try:
            connection.execute("SET TimeZone = 'UTC'")
        except duckdb.Error as e:
            logger.debug(f"DuckDB time zone not set, session timestamps stay UTC: {e}")
        if self.config.exact_geometry:
            connection.execute("LOAD spatial")
        return connection

    def _source(self) -> str:
        hrefs = ", ".join(quote_literal(href) for href in self.hrefs)
        hive = "true" if self.config.use_hive_partitioning else "false"
        union = "true" if self.config.union_by_name else "false"
        return f"read_parquet([{hrefs}], hive_partitioning = {hive}, union_by_name = {union})"

    def _where(self, query: SearchQuery) -> Tuple[List[str], List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []

        if query.ids is not None:
            if not query.ids:
                clauses.append("FALSE")
            else:
                clauses.append(f'"id" IN ({", ".join("?" for _ in query.ids)})')
                params.extend(query.ids)
        if query.collections is not None:
            if not query.collections:
                clauses.append("FALSE")
            else:
                clauses.append(f'"collection" IN ({", ".join("?" for _ in query.collections)})')
                params.extend(query.collections)

        spatial = query.spatial
        if spatial is not None:
            xmin, ymin, xmax, ymax = spatial.bounds
            if "bbox" in self.dialect.columns:
                clauses.append(
                    "struct_extract(\"bbox\", 'xmin') <= ? AND struct_extract(\"bbox\", 'xmax') >= ? "
                    "AND struct_extract(\"bbox\", 'ymin') <= ? AND struct_extract(\"bbox\", 'ymax') >= ?"
                )
                params.extend([xmax, xmin, ymax, ymin])
            elif not self.config.exact_geometry:
                raise TranslationError(
                    "The parquet schema has no bbox column",
                    details=[ErrorDetail(param="bbox", message="no bbox column")],
                )
            if self.config.exact_geometry:
                clauses.append(
                    '("geometry" IS NULL OR ST_Intersects(ST_GeomFromWKB("geometry"), ST_GeomFromText(?)))'
                )
                params.append(wkt(spatial))

        interval = query.interval
        if interval is not None:
            start, end = self.dialect.temporal_bounds("datetime")
            if interval.start is not None:
                clauses.append(f"{end} >= CAST(? AS TIMESTAMPTZ)")
                params.append(format_datetime(interval.start))
            if interval.end is not None:
                clauses.append(f"{start} <= CAST(? AS TIMESTAMPTZ)")
                params.append(format_datetime(interval.end))

        if query.filter is not None:
            compiled = compile_filter(query.filter, self.dialect)
            clauses.append(compiled.sql)
            params.extend(compiled.params)

        return clauses, params

    def _order_by(self, query: SearchQuery) -> str:
        keys = []
        for option in query.sortby:
            column = self.dialect.column_for(option.field)
            if option.direction == SortDirection.DESC:
                keys.append(f"{column} DESC NULLS LAST")
            else:
                keys.append(f"{column} ASC NULLS FIRST")
        keys.append('"id" ASC')
        if "collection" in self.dialect.columns:
            keys.append('"collection" ASC NULLS FIRST')
        return ", ".join(keys)

    def build_query(self, query: SearchQuery, offset: int = 0) -> Tuple[str, List[Any]]:
        """
        Compile a query into one SELECT and its parameters.

        One row more than the limit is requested so that the caller can tell
        whether a next page exists.

        Raises:
            TranslationError: If a path has no column in the parquet schema
            UnsupportedCapability: If the query needs exact geometry and it is
                disabled
        """
        clauses, params = self._where(query)
        matched = f', count(*) OVER () AS "{MATCHED_COLUMN}"' if self.config.count_matched else ""
        sql = f"SELECT *{matched} FROM {self._source()}"
        if clauses:
            sql += " WHERE " + " AND ".join(f"({clause})" for clause in clauses)
        sql += f" ORDER BY {self._order_by(query)} LIMIT ? OFFSET ?"
        params.extend([query.limit + 1, offset])
        return sql, params

    def build_count_query(self, query: SearchQuery) -> Tuple[str, List[Any]]:
        """Compile the matched-count query for a search."""
        clauses, params = self._where(query)
        sql = f"SELECT count(*) AS \"{MATCHED_COLUMN}\" FROM {self._source()}"
        if clauses:
            sql += " WHERE " + " AND ".join(f"({clause})" for clause in clauses)
        return sql, params

    async def _search(self, query: SearchQuery) -> ItemCollection:
        offset = decode_token(query.token, self.name)
        # Translation problems surface before anything runs
        sql, params = self.build_query(query, offset)
        count = self.build_count_query(query) if self.config.count_matched and offset > 0 else None
        handle = QueryHandle()
        table, matched = await handle.run(self._run, sql, params, count, handle)
        return self._assemble(query, offset, table, matched)

    def _run(self, sql: str, params: List[Any], count, handle: QueryHandle):
        try:
            return self.pool.run(lambda connection: self._execute(connection, sql, params, count, handle), _is_transient)
        except duckdb.InterruptException:
            raise
        except duckdb.Error as e:
            logger.error(f"DuckDB query failed: {e}", extra={"sql": sql})
            raise BackendError(
                f"DuckDB query failed: {e}",
                details=[ErrorDetail(param="query", message=str(e))],
                backend_code=type(e).__name__,
            )

    def _execute(self, connection, sql: str, params: List[Any], count, handle: QueryHandle):
        handle.attach(connection.interrupt)
        try:
            handle.check()
            logger.debug(f"DuckDB query: {sql}", extra={"params": params})
            table = connection.execute(sql, params).to_arrow_table()
            matched = None
            if self.config.count_matched:
                if table.num_rows:
                    matched = table.column(MATCHED_COLUMN)[0].as_py()
                elif count is None:
                    matched = 0
                else:
                    matched = connection.execute(*count).fetchone()[0]
            return table, matched
        finally:
            handle.detach()

    def _assemble(self, query: SearchQuery, offset: int, table: pa.Table, matched: Optional[int]) -> ItemCollection:
        has_next = table.num_rows > query.limit
        rows = table.slice(0, query.limit).to_pylist()
        try:
            items = [row_to_item(row) for row in rows]
        except (GEOSException, ShapelyError, ValueError) as e:
            raise DataError(
                f"A stored row could not be decoded: {e}",
                details=[ErrorDetail(location="geometry", message=str(e))],
            )

        next_token = encode_token(self.name, offset + query.limit) if has_next else None
        prev_token = encode_token(self.name, max(0, offset - query.limit)) if offset > 0 else None
        return ItemCollection.assemble(
            features=[apply_fields(item.to_dict(), query.fields) for item in items],
            limit=query.limit,
            matched=matched,
            next_token=next_token,
            prev_token=prev_token,
        )

    async def close(self) -> None:
        self.pool.close()
        self._database.close()
