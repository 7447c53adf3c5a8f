"""
Tests for compiling filters to parameterized SQL.
"""

import unittest
from datetime import date, datetime

import pytest

from stac_search.search.compile import SqlDialect, compile_filter, quote_identifier, quote_literal
from stac_search.search.cql2 import parse_text
from stac_search.search.filter import from_json
from stac_search.utils.errors import TranslationError, UnsupportedCapability


class ColumnDialect(SqlDialect):
    """Maps every known property to a column of the same name."""

    name = "test"

    def __init__(self, columns, spatial=False):
        self.columns = set(columns)
        self.spatial = spatial

    def column_for(self, path: str) -> str:
        if path in self.columns:
            return quote_identifier(path)
        return super().column_for(path)

    def geometry_for(self, path: str) -> str:
        if not self.spatial:
            return super().geometry_for(path)
        return f"ST_GeomFromWKB({quote_identifier(path)})"


class TestCompileFilter(unittest.TestCase):
    """Tests for compile_filter."""

    def setUp(self):
        self.dialect = ColumnDialect(["a", "b", "platform", "updated", "day", "geometry"], spatial=True)

    def compile(self, text: str):
        return compile_filter(parse_text(text), self.dialect)

    def test_comparison(self):
        """Test that literals are bound, never inlined."""
        expr = from_json({"op": "=", "args": [{"property": "a"}, "x'; DROP TABLE items; --"]})
        compiled = compile_filter(expr, self.dialect)

        self.assertEqual(compiled.sql, 'COALESCE("a" = ?, FALSE)')
        self.assertEqual(compiled.params, ["x'; DROP TABLE items; --"])

    def test_property_comparison(self):
        """Test comparing two columns."""
        compiled = self.compile("a < b")
        self.assertEqual(compiled.sql, 'COALESCE("a" < "b", FALSE)')
        self.assertEqual(compiled.params, [])

    def test_logical(self):
        """Test and, or and not."""
        compiled = self.compile("a = 1 AND (b = 2 OR NOT a = 3)")

        self.assertEqual(
            compiled.sql,
            '(COALESCE("a" = ?, FALSE) AND (COALESCE("b" = ?, FALSE) OR (NOT COALESCE("a" = ?, FALSE))))',
        )
        self.assertEqual(compiled.params, [1, 2, 3])

    def test_predicates(self):
        """Test LIKE, IN, BETWEEN and IS NULL."""
        self.assertEqual(self.compile("platform LIKE 'l%'").sql, "COALESCE(\"platform\" LIKE ? ESCAPE '\\', FALSE)")

        compiled = self.compile("platform IN ('a', 'b')")
        self.assertEqual(compiled.sql, 'COALESCE("platform" IN (?, ?), FALSE)')
        self.assertEqual(compiled.params, ["a", "b"])

        compiled = self.compile("a BETWEEN 1 AND 2")
        self.assertEqual(compiled.sql, 'COALESCE("a" BETWEEN ? AND ?, FALSE)')
        self.assertEqual(compiled.params, [1, 2])

        self.assertEqual(self.compile("a IS NULL").sql, '("a" IS NULL)')

    def test_typed_literals(self):
        """Test timestamp and date casts."""
        compiled = self.compile("updated > TIMESTAMP('2020-01-01T00:00:00Z')")
        self.assertEqual(
            compiled.sql,
            'COALESCE(TRY_CAST("updated" AS TIMESTAMPTZ) > CAST(? AS TIMESTAMPTZ), FALSE)',
        )
        self.assertEqual(compiled.params, ["2020-01-01T00:00:00Z"])

        compiled = self.compile("day = DATE('2020-01-02')")
        self.assertEqual(
            compiled.sql,
            'COALESCE(CAST(TRY_CAST("day" AS TIMESTAMPTZ) AS DATE) = CAST(? AS DATE), FALSE)',
        )
        self.assertEqual(compiled.params, ["2020-01-02"])

    def test_spatial(self):
        """Test spatial predicates bind their geometry as WKT."""
        compiled = self.compile("S_WITHIN(geometry, BBOX(0, 0, 1, 1))")

        self.assertEqual(
            compiled.sql,
            'COALESCE(ST_Within(ST_GeomFromWKB("geometry"), ST_GeomFromText(?)), FALSE)',
        )
        self.assertEqual(len(compiled.params), 1)
        self.assertTrue(compiled.params[0].startswith("POLYGON"))

    def test_temporal(self):
        """Test temporal predicates over a single column."""
        compiled = self.compile("T_BEFORE(updated, TIMESTAMP('2020-01-01T00:00:00Z'))")
        self.assertEqual(
            compiled.sql,
            'COALESCE(TRY_CAST("updated" AS TIMESTAMPTZ) < CAST(? AS TIMESTAMPTZ), FALSE)',
        )

        compiled = self.compile("T_AFTER(updated, INTERVAL('2020-01-01T00:00:00Z', '..'))")
        self.assertEqual(compiled.sql, "FALSE")
        self.assertEqual(compiled.params, [])

        compiled = self.compile("T_INTERSECTS(updated, INTERVAL('2020-01-01T00:00:00Z', '2020-02-01T00:00:00Z'))")
        self.assertEqual(compiled.params, ["2020-01-01T00:00:00Z", "2020-02-01T00:00:00Z"])
        self.assertIn('TRY_CAST("updated" AS TIMESTAMPTZ) >= CAST(? AS TIMESTAMPTZ)', compiled.sql)
        self.assertIn('TRY_CAST("updated" AS TIMESTAMPTZ) <= CAST(? AS TIMESTAMPTZ)', compiled.sql)

    def test_unknown_property(self):
        """Test that an unmapped path fails translation."""
        with self.assertRaises(TranslationError):
            self.compile("unknown = 1")

    def test_spatial_unsupported(self):
        """Test a dialect without geometry support."""
        dialect = ColumnDialect(["geometry"], spatial=False)
        with self.assertRaises(UnsupportedCapability):
            compile_filter(parse_text("S_INTERSECTS(geometry, POINT(0 0))"), dialect)


@pytest.mark.parametrize(
    "value, expected",
    [
        ("plain", '"plain"'),
        ('we"ird', '"we""ird"'),
    ],
)
def test_quote_identifier(value, expected):
    """Test identifier quoting."""
    assert quote_identifier(value) == expected


def test_quote_literal():
    """Test string literal quoting."""
    assert quote_literal("it's") == "'it''s'"


def test_bound_values_are_plain():
    """Test that bound parameters are JSON-friendly scalars."""
    dialect = ColumnDialect(["a"])
    expr = parse_text("a IN (TIMESTAMP('2020-01-01T00:00:00Z'), TIMESTAMP('2020-01-02T00:00:00Z'))")
    compiled = compile_filter(expr, dialect)
    assert compiled.params == ["2020-01-01T00:00:00Z", "2020-01-02T00:00:00Z"]
    assert all(not isinstance(p, (datetime, date)) for p in compiled.params)
