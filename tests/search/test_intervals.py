"""
Tests for datetime expressions.
"""

from datetime import datetime, timezone

import pytest

from stac_search.search.intervals import (
    DatetimeInterval,
    format_datetime,
    parse_interval,
    parse_rfc3339,
)
from stac_search.utils.errors import MalformedRequest


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def test_parse_instant():
    """Test a single instant."""
    interval = parse_interval("2020-01-01T12:30:00Z")

    assert interval.start == utc(2020, 1, 1, 12, 30)
    assert interval.is_instant
    assert interval.to_string() == "2020-01-01T12:30:00Z"


@pytest.mark.parametrize(
    "expression, start, end",
    [
        ("2020", utc(2020, 1, 1), utc(2020, 12, 31, 23, 59, 59)),
        ("2020-02", utc(2020, 2, 1), utc(2020, 2, 29, 23, 59, 59)),
        ("2020-02-03", utc(2020, 2, 3), utc(2020, 2, 3, 23, 59, 59)),
        ("2020-01-01/2020-12-31", utc(2020, 1, 1), utc(2020, 12, 31, 23, 59, 59)),
        ("../2020-12-31T00:00:00Z", None, utc(2020, 12, 31)),
        ("2020-12-31T00:00:00Z/", utc(2020, 12, 31), None),
    ],
)
def test_parse_ranges(expression, start, end):
    """Test partial dates, closed ranges and open ranges."""
    assert parse_interval(expression) == DatetimeInterval(start, end)


@pytest.mark.parametrize(
    "expression",
    ["", "..", "../..", "/", "2020-13", "2020-01-01/2019-01-01", "a/b/c", "not a date"],
)
def test_parse_invalid(expression):
    """Test expressions that cannot be parsed."""
    with pytest.raises(MalformedRequest) as exc_info:
        parse_interval(expression)
    assert exc_info.value.details[0].param == "datetime"


def test_overlaps():
    """Test inclusive overlap with item extents."""
    interval = parse_interval("2020-01-01T00:00:00Z/2020-12-31T00:00:00Z")

    assert interval.overlaps(utc(2020, 1, 1), utc(2020, 1, 1))
    assert interval.overlaps(utc(2020, 12, 31), utc(2020, 12, 31))
    assert interval.overlaps(utc(2019, 1, 1), utc(2021, 1, 1))
    assert not interval.overlaps(utc(2019, 1, 1), utc(2019, 12, 31))
    assert not interval.overlaps(None, None)

    assert parse_interval("2020-06-01T00:00:00Z/..").overlaps(utc(2030, 1, 1), utc(2030, 1, 1))


def test_rfc3339_helpers():
    """Test parsing and formatting of timestamps."""
    assert parse_rfc3339("2020-01-01T00:00:00") == utc(2020, 1, 1)
    assert parse_rfc3339("2020-01-01T01:00:00+01:00") == utc(2020, 1, 1)
    assert format_datetime(utc(2020, 1, 1, 0, 0, 0, 500000)) == "2020-01-01T00:00:00.500000Z"

    with pytest.raises(ValueError):
        parse_rfc3339("2020-01-01 nonsense")


@pytest.mark.parametrize(
    "value, expected",
    [
        ("2020-01-01T00:00:00.1Z", utc(2020, 1, 1, 0, 0, 0, 100000)),
        ("2020-01-01T00:00:00.12345Z", utc(2020, 1, 1, 0, 0, 0, 123450)),
        ("2020-01-01T00:00:00.123456789Z", utc(2020, 1, 1, 0, 0, 0, 123456)),
        ("2020-01-01T02:00:00.5+02:00", utc(2020, 1, 1, 0, 0, 0, 500000)),
    ],
)
def test_fractional_seconds(value, expected):
    """Test fractions of seconds with any number of digits."""
    assert parse_rfc3339(value) == expected
    assert parse_interval(value).start == expected
