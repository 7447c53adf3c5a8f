"""
Search functionality for catalog items.

This package provides the query model, the filter language with its two
encodings, SQL compilation of filters, continuation tokens and the result
envelope shared by every backend.
"""

from stac_search.search.compile import CompiledFilter, SqlDialect, compile_filter
from stac_search.search.cql2 import parse_text, to_text
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
    from_json,
    parse_filter,
    to_json,
)
from stac_search.search.intervals import DatetimeInterval, parse_interval
from stac_search.search.paging import decode_token, encode_token
from stac_search.search.query import Fields, SearchQuery, SortDirection, SortOption
from stac_search.search.result import ItemCollection, ItemError, Link, SearchContext

__all__ = [
    "SearchQuery",
    "SortOption",
    "SortDirection",
    "Fields",
    "DatetimeInterval",
    "parse_interval",
    "Expr",
    "Logical",
    "Comparison",
    "IsNull",
    "Like",
    "InList",
    "Between",
    "Spatial",
    "Temporal",
    "Property",
    "from_json",
    "to_json",
    "parse_text",
    "to_text",
    "parse_filter",
    "CompiledFilter",
    "SqlDialect",
    "compile_filter",
    "encode_token",
    "decode_token",
    "ItemCollection",
    "ItemError",
    "Link",
    "SearchContext",
]
