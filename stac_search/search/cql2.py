"""
Textual filter encoding (cql2-text).

Parsing and rendering are delegated to the ``cql2`` library. Text is parsed
into the library's cql2-json form and then built into an expression tree by
:func:`stac_search.search.filter.from_json`, so both encodings go through
the same validation.
"""

import cql2

from stac_search.search.filter import Expr, from_json, to_json
from stac_search.utils.errors import ErrorDetail, MalformedRequest
from stac_search.utils.logging import get_logger

logger = get_logger(__name__)


def parse_text(text: str) -> Expr:
    """
    Parse a cql2-text filter.

    Args:
        text: Filter text, e.g. ``eo:cloud_cover < 10 AND collection = 'a'``

    Returns:
        The expression tree

    Raises:
        MalformedRequest: If the text is not a valid filter
        UnsupportedCapability: If the text uses an unimplemented operator
    """
    try:
        document = cql2.parse_text(text).to_json()
    except (cql2.ParseError, ValueError) as e:
        logger.debug(f"Rejected cql2-text filter {text!r}: {e}")
        message = f"Invalid cql2-text filter: {e}"
        raise MalformedRequest(
            message,
            details=[ErrorDetail(param="filter", value=text, message=message)],
        ) from e
    return from_json(document)


def to_text(expr: Expr) -> str:
    """Render an expression as cql2-text."""
    return cql2.Expr(to_json(expr)).to_text()
