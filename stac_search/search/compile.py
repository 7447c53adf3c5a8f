"""
Compilation of filter expressions to parameterized SQL.

A dialect decides how property paths become column expressions and which
features the target engine can express. Literals never appear in the SQL
text; they are returned as bound parameters in placeholder order.

Every comparison is wrapped in ``COALESCE(..., FALSE)`` so that SQL NULLs
collapse to false before ``NOT`` sees them, which keeps compiled filters in
agreement with :func:`stac_search.search.evaluate.evaluate`.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Tuple

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
    wkt,
)
from stac_search.search.intervals import format_datetime
from stac_search.utils.errors import ErrorDetail, TranslationError, UnsupportedCapability


@dataclass
class CompiledFilter:
    """A SQL predicate fragment with its bound parameters."""

    sql: str
    params: List[Any] = field(default_factory=list)


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class SqlDialect:
    """
    Base SQL dialect.

    Subclasses override :meth:`column_for` (and usually
    :meth:`temporal_bounds`) to route property paths onto their schema.
    """

    name = "sql"
    placeholder = "?"

    def column_for(self, path: str) -> str:
        """
        Return the column expression for a property path.

        Raises:
            TranslationError: If the path has no column in this schema
        """
        raise TranslationError(
            f"Property {path!r} cannot be mapped onto the {self.name} schema",
            details=[ErrorDetail(param="filter", value=path, message="unknown property")],
        )

    def geometry_for(self, path: str) -> str:
        """Return the geometry expression for a property path."""
        raise UnsupportedCapability(
            f"Spatial predicates are not supported by the {self.name} backend",
            details=[ErrorDetail(param="filter", value=path, message="spatial filters unsupported")],
        )

    def geometry_literal(self) -> str:
        return f"ST_GeomFromText({self.placeholder})"

    def timestamp(self, expression: str) -> str:
        return f"TRY_CAST({expression} AS TIMESTAMPTZ)"

    def timestamp_literal(self) -> str:
        return f"CAST({self.placeholder} AS TIMESTAMPTZ)"

    def date_literal(self) -> str:
        return f"CAST({self.placeholder} AS DATE)"

    def temporal_bounds(self, path: str) -> Tuple[str, str]:
        """Return (start, end) timestamp expressions for a property path."""
        column = self.timestamp(self.column_for(path))
        return column, column


def _bind(value: Any) -> Any:
    if isinstance(value, datetime):
        return format_datetime(value)
    if isinstance(value, date):
        return value.isoformat()
    return value


class _Compiler:
    def __init__(self, dialect: SqlDialect):
        self.dialect = dialect
        self.params: List[Any] = []

    def literal(self, value: Any) -> str:
        self.params.append(_bind(value))
        if isinstance(value, datetime):
            return self.dialect.timestamp_literal()
        if isinstance(value, date):
            return self.dialect.date_literal()
        return self.dialect.placeholder

    def operand(self, path: str, value: Any) -> str:
        """Column expression for ``path`` cast to fit a comparison with ``value``."""
        column = self.dialect.column_for(path)
        if isinstance(value, datetime):
            return self.dialect.timestamp(column)
        if isinstance(value, date):
            return f"CAST({self.dialect.timestamp(column)} AS DATE)"
        return column

    def compile(self, expr: Expr) -> str:
        return _COMPILERS[expr.kind](self, expr)

    def logical(self, expr: Logical) -> str:
        if expr.op == "not":
            return f"(NOT {self.compile(expr.args[0])})"
        joiner = f" {expr.op.upper()} "
        return "(" + joiner.join(self.compile(arg) for arg in expr.args) + ")"

    def comparison(self, expr: Comparison) -> str:
        if isinstance(expr.value, Property):
            left = self.dialect.column_for(expr.property)
            right = self.dialect.column_for(expr.value.name)
            return f"COALESCE({left} {expr.op} {right}, FALSE)"
        left = self.operand(expr.property, expr.value)
        return f"COALESCE({left} {expr.op} {self.literal(expr.value)}, FALSE)"

    def is_null(self, expr: IsNull) -> str:
        return f"({self.dialect.column_for(expr.property)} IS NULL)"

    def like(self, expr: Like) -> str:
        column = self.dialect.column_for(expr.property)
        return f"COALESCE({column} LIKE {self.literal(expr.pattern)} ESCAPE '\\', FALSE)"

    def in_list(self, expr: InList) -> str:
        column = self.operand(expr.property, expr.values[0])
        placeholders = ", ".join(self.literal(value) for value in expr.values)
        return f"COALESCE({column} IN ({placeholders}), FALSE)"

    def between(self, expr: Between) -> str:
        column = self.operand(expr.property, expr.low)
        low = self.literal(expr.low)
        high = self.literal(expr.high)
        return f"COALESCE({column} BETWEEN {low} AND {high}, FALSE)"

    def spatial(self, expr: Spatial) -> str:
        geometry = self.dialect.geometry_for(expr.property)
        function = {
            "s_intersects": "ST_Intersects",
            "s_within": "ST_Within",
            "s_contains": "ST_Contains",
            "s_disjoint": "ST_Disjoint",
        }[expr.op]
        self.params.append(wkt(expr.geometry))
        return f"COALESCE({function}({geometry}, {self.dialect.geometry_literal()}), FALSE)"

    def temporal(self, expr: Temporal) -> str:
        start, end = self.dialect.temporal_bounds(expr.property)
        low, high = expr.value.start, expr.value.end
        if expr.op == "t_before":
            if low is None:
                return "FALSE"
            return f"COALESCE({end} < {self.literal(low)}, FALSE)"
        if expr.op == "t_after":
            if high is None:
                return "FALSE"
            return f"COALESCE({start} > {self.literal(high)}, FALSE)"

        if expr.op == "t_during":
            lower, upper = ">", "<"
        else:
            lower, upper = ">=", "<="
        clauses = [f"({start} IS NOT NULL AND {end} IS NOT NULL)"]
        if low is not None:
            column = end if expr.op == "t_intersects" else start
            clauses.append(f"{column} {lower} {self.literal(low)}")
        if high is not None:
            column = start if expr.op == "t_intersects" else end
            clauses.append(f"{column} {upper} {self.literal(high)}")
        return "COALESCE(" + " AND ".join(clauses) + ", FALSE)"


_COMPILERS: Dict[str, Callable[[_Compiler, Any], str]] = {
    "logical": _Compiler.logical,
    "comparison": _Compiler.comparison,
    "is_null": _Compiler.is_null,
    "like": _Compiler.like,
    "in": _Compiler.in_list,
    "between": _Compiler.between,
    "spatial": _Compiler.spatial,
    "temporal": _Compiler.temporal,
}


def compile_filter(expr: Expr, dialect: SqlDialect) -> CompiledFilter:
    """
    Compile an expression for a SQL dialect.

    Args:
        expr: Filter expression
        dialect: Target dialect

    Returns:
        The predicate fragment and its parameters

    Raises:
        TranslationError: If a property path has no column in the dialect's
            schema
        UnsupportedCapability: If the expression uses a feature the dialect
            cannot express
    """
    compiler = _Compiler(dialect)
    sql = compiler.compile(expr)
    return CompiledFilter(sql=sql, params=compiler.params)
