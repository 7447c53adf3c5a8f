"""
Tests for the filter expression tree and its cql2-json encoding.
"""

import unittest
from datetime import date, datetime, timezone

import pytest
from shapely.geometry import Point, box

from stac_search.search.filter import (
    Between,
    Comparison,
    InList,
    IsNull,
    Like,
    Logical,
    Property,
    Spatial,
    Temporal,
    and_,
    from_json,
    not_,
    or_,
    parse_filter,
    properties_of,
    to_json,
    walk,
)
from stac_search.search.intervals import DatetimeInterval
from stac_search.utils.errors import MalformedRequest, UnsupportedCapability


class TestFromJson(unittest.TestCase):
    """Tests for decoding cql2-json."""

    def test_comparison(self):
        """Test comparison nodes."""
        expr = from_json({"op": "=", "args": [{"property": "platform"}, "landsat-8"]})
        self.assertEqual(expr, Comparison("=", "platform", "landsat-8"))

        # A literal on the left is mirrored onto the right
        expr = from_json({"op": "<", "args": [10, {"property": "eo:cloud_cover"}]})
        self.assertEqual(expr, Comparison(">", "eo:cloud_cover", 10))

        expr = from_json({"op": "<=", "args": [{"property": "a"}, {"property": "b"}]})
        self.assertEqual(expr, Comparison("<=", "a", Property("b")))

    def test_logical(self):
        """Test and, or and not nodes."""
        expr = from_json(
            {
                "op": "and",
                "args": [
                    {"op": "=", "args": [{"property": "a"}, 1]},
                    {"op": "not", "args": [{"op": "isNull", "args": [{"property": "b"}]}]},
                ],
            }
        )
        self.assertEqual(
            expr,
            Logical("and", (Comparison("=", "a", 1), Logical("not", (IsNull("b"),)))),
        )

        with self.assertRaises(MalformedRequest):
            from_json({"op": "and", "args": [{"op": "=", "args": [{"property": "a"}, 1]}]})
        with self.assertRaises(MalformedRequest):
            from_json({"op": "not", "args": []})

    def test_predicates(self):
        """Test like, in and between nodes."""
        self.assertEqual(
            from_json({"op": "like", "args": [{"property": "platform"}, "landsat%"]}),
            Like("platform", "landsat%"),
        )
        self.assertEqual(
            from_json({"op": "in", "args": [{"property": "platform"}, ["a", "b"]]}),
            InList("platform", ("a", "b")),
        )
        self.assertEqual(
            from_json({"op": "between", "args": [{"property": "gsd"}, 10, 30]}),
            Between("gsd", 10, 30),
        )

    def test_typed_literals(self):
        """Test timestamp and date literals."""
        expr = from_json({"op": ">", "args": [{"property": "updated"}, {"timestamp": "2020-01-01T00:00:00Z"}]})
        self.assertEqual(expr.value, datetime(2020, 1, 1, tzinfo=timezone.utc))

        expr = from_json({"op": "=", "args": [{"property": "day"}, {"date": "2020-01-02"}]})
        self.assertEqual(expr.value, date(2020, 1, 2))

        with self.assertRaises(MalformedRequest):
            from_json({"op": "=", "args": [{"property": "day"}, {"date": "tomorrow"}]})

    def test_spatial(self):
        """Test spatial nodes with GeoJSON and bbox literals."""
        expr = from_json(
            {"op": "s_intersects", "args": [{"property": "geometry"}, {"type": "Point", "coordinates": [1, 2]}]}
        )
        self.assertIsInstance(expr, Spatial)
        self.assertTrue(expr.geometry.equals(Point(1, 2)))

        expr = from_json({"op": "s_within", "args": [{"bbox": [0, 0, 1, 1]}, {"property": "geometry"}]})
        self.assertEqual(expr.op, "s_contains")
        self.assertTrue(expr.geometry.equals(box(0, 0, 1, 1)))

    def test_temporal(self):
        """Test temporal nodes with instants and intervals."""
        expr = from_json(
            {"op": "t_during", "args": [{"property": "datetime"}, {"interval": ["2020-01-01T00:00:00Z", ".."]}]}
        )
        self.assertEqual(
            expr,
            Temporal("t_during", "datetime", DatetimeInterval(datetime(2020, 1, 1, tzinfo=timezone.utc), None)),
        )

    def test_invalid(self):
        """Test documents that are not filters."""
        for document in (
            [],
            {"args": []},
            {"op": "="},
            {"op": "=", "args": [1, 2]},
            {"op": "frobnicate", "args": []},
            {"op": "in", "args": [{"property": "a"}, []]},
            {"op": "=", "args": [{"property": "a"}, [1, 2]]},
        ):
            with self.assertRaises(MalformedRequest, msg=str(document)):
                from_json(document)

    def test_unsupported_operator(self):
        """Test operators that are recognized but not implemented."""
        with self.assertRaises(UnsupportedCapability):
            from_json({"op": "s_touches", "args": [{"property": "geometry"}, {"bbox": [0, 0, 1, 1]}]})


class TestToJson(unittest.TestCase):
    """Tests for encoding cql2-json."""

    def test_round_trip(self):
        """Test that encoding and decoding preserve the tree."""
        document = {
            "op": "or",
            "args": [
                {"op": "between", "args": [{"property": "gsd"}, 10, 30]},
                {"op": "isNull", "args": [{"property": "gsd"}]},
                {"op": ">=", "args": [{"property": "updated"}, {"timestamp": "2020-01-01T00:00:00Z"}]},
            ],
        }
        self.assertEqual(to_json(from_json(document)), document)

    def test_geometry(self):
        """Test that geometries are written as GeoJSON with list coordinates."""
        document = to_json(Spatial("s_intersects", "geometry", Point(1.5, 2)))
        self.assertEqual(
            document,
            {"op": "s_intersects", "args": [{"property": "geometry"}, {"type": "Point", "coordinates": [1.5, 2.0]}]},
        )


def test_helpers():
    """Test the tree helpers."""
    a = Comparison("=", "a", 1)
    b = Comparison("<", "b", Property("c"))

    assert and_(a) is a
    assert or_(a, b) == Logical("or", (a, b))
    assert not_(a) == Logical("not", (a,))
    assert list(walk(and_(a, not_(b)))) == [and_(a, not_(b)), a, not_(b), b]
    assert properties_of(and_(a, b, IsNull("a"))) == ["a", "b", "c"]


def test_parse_filter():
    """Test choosing the encoding of a filter."""
    assert parse_filter(None) is None
    assert parse_filter("  ") is None
    assert parse_filter("a = 1") == Comparison("=", "a", 1)
    assert parse_filter('{"op": "=", "args": [{"property": "a"}, 1]}') == Comparison("=", "a", 1)
    assert parse_filter({"op": "=", "args": [{"property": "a"}, 1]}, "cql2-json") == Comparison("=", "a", 1)


def test_parse_filter_language_mismatch():
    """Test a filter whose encoding contradicts filter-lang."""
    with pytest.raises(MalformedRequest):
        parse_filter({"op": "=", "args": [{"property": "a"}, 1]}, "cql2-text")
    with pytest.raises(MalformedRequest):
        parse_filter("a = 1", "cql3")
