"""
Datetime expressions for search requests.

A datetime expression is a single instant, a closed range ``start/end`` or a
half-open range where one side is the open marker ``..`` (or empty). Partial
dates are expanded to the whole period they name, so ``2023`` means every
instant of 2023.
"""

import calendar
import re
from datetime import date, datetime, time, timezone
from typing import NamedTuple, Optional, Tuple

from stac_search.utils.errors import ErrorDetail, MalformedRequest

OPEN_MARKER = ".."

_YEAR = re.compile(r"^\d{4}$")
_YEAR_MONTH = re.compile(r"^(\d{4})-(\d{2})$")
_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
# Fractional seconds of any length; datetime takes exactly six digits
_FRACTION = re.compile(r"(?<=:\d\d)\.(\d+)")


class DatetimeInterval(NamedTuple):
    """An inclusive interval of UTC instants; ``None`` marks an open end."""

    start: Optional[datetime]
    end: Optional[datetime]

    @property
    def is_instant(self) -> bool:
        return self.start is not None and self.start == self.end

    def overlaps(self, start: Optional[datetime], end: Optional[datetime]) -> bool:
        """
        Check whether an item's ``[start, end]`` interval overlaps this one.

        Both bounds are inclusive. An item with no timestamp never matches.
        """
        if start is None and end is None:
            return False
        item_start = start if start is not None else end
        item_end = end if end is not None else start
        if self.start is not None and item_end < self.start:
            return False
        if self.end is not None and item_start > self.end:
            return False
        return True

    def to_string(self) -> str:
        """Render the canonical form of this interval."""
        if self.is_instant:
            return format_datetime(self.start)
        start = format_datetime(self.start) if self.start else OPEN_MARKER
        end = format_datetime(self.end) if self.end else OPEN_MARKER
        return f"{start}/{end}"


def format_datetime(value: datetime) -> str:
    """Format a datetime as RFC 3339 in UTC with a ``Z`` suffix."""
    value = value.astimezone(timezone.utc)
    text = value.isoformat()
    if text.endswith("+00:00"):
        text = text[: -len("+00:00")] + "Z"
    return text


def parse_rfc3339(value: str) -> datetime:
    """
    Parse an RFC 3339 timestamp into an aware UTC datetime.

    Naive timestamps are taken to be UTC.

    Raises:
        ValueError: If the value is not a timestamp
    """
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _expand(value: str) -> Optional[Tuple[datetime, datetime]]:
    """Expand a partial date to the first and last second of its period."""
    text = value.strip()
    if _YEAR.match(text):
        year = int(text)
        first, last = date(year, 1, 1), date(year, 12, 31)
    elif match := _YEAR_MONTH.match(text):
        year, month = int(match.group(1)), int(match.group(2))
        if not 1 <= month <= 12:
            return None
        first = date(year, month, 1)
        last = date(year, month, calendar.monthrange(year, month)[1])
    elif _DATE.match(text):
        try:
            first = last = date.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    start = datetime.combine(first, time(0, 0, 0), tzinfo=timezone.utc)
    end = datetime.combine(last, time(23, 59, 59), tzinfo=timezone.utc)
    return start, end


def _parse_bound(value: str, at_end: bool) -> datetime:
    expanded = _expand(value)
    if expanded is not None:
        return expanded[1] if at_end else expanded[0]
    try:
        return parse_rfc3339(value)
    except ValueError:
        raise MalformedRequest(
            f"Unrecognized datetime: {value!r}",
            details=[ErrorDetail(param="datetime", value=value, message="not an RFC 3339 datetime")],
        )


def parse_interval(expression: str) -> DatetimeInterval:
    """
    Parse a datetime expression.

    Args:
        expression: Instant, ``start/end``, ``../end``, ``start/..`` or a
            partial date such as ``2023-06``

    Returns:
        The normalized interval

    Raises:
        MalformedRequest: If the expression cannot be parsed, both ends are
            open, or the start is after the end
    """
    if expression is None or not expression.strip():
        raise MalformedRequest(
            "Empty datetime expression",
            details=[ErrorDetail(param="datetime", message="datetime cannot be empty")],
        )

    if "/" not in expression:
        expanded = _expand(expression)
        if expanded is not None:
            return DatetimeInterval(*expanded)
        instant = _parse_bound(expression, at_end=False)
        return DatetimeInterval(instant, instant)

    parts = expression.split("/")
    if len(parts) != 2:
        raise MalformedRequest(
            f"Too many '/' in datetime: {expression!r}",
            details=[ErrorDetail(param="datetime", value=expression, message="expected start/end")],
        )
    start_text, end_text = (part.strip() for part in parts)
    start = None if start_text in ("", OPEN_MARKER) else _parse_bound(start_text, at_end=False)
    end = None if end_text in ("", OPEN_MARKER) else _parse_bound(end_text, at_end=True)

    if start is None and end is None:
        raise MalformedRequest(
            "Datetime interval cannot be open on both ends",
            details=[ErrorDetail(param="datetime", value=expression, message="empty interval")],
        )
    if start is not None and end is not None and start > end:
        raise MalformedRequest(
            f"Datetime interval start is after its end: {expression!r}",
            details=[ErrorDetail(param="datetime", value=expression, message="start is after end")],
        )
    return DatetimeInterval(start, end)
