#!/usr/bin/env python3
"""
STAC Search - Command Line Entry Point

This module loads the configuration, creates the configured search backend
and runs one search against it, printing the resulting ItemCollection.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from stac_search.backends.factory import create_backend
from stac_search.config.config import Config, load_config, load_config_from_env
from stac_search.search.query import SearchQuery
from stac_search.utils.environment import load_env_file
from stac_search.utils.errors import SearchError
from stac_search.utils.logging import configure_logging, get_logger


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="STAC catalog search")
    parser.add_argument(
        "--config", "-c",
        help="Path to configuration file; environment variables are used when omitted",
        default=None,
    )
    parser.add_argument(
        "--log-level", "-l",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
    )
    parser.add_argument(
        "--env-file", "-e",
        help="Path to .env file",
        default=None,
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    search = subparsers.add_parser("search", help="Run one search and print the results")
    search.add_argument("--ids", help="Comma-separated item ids")
    search.add_argument("--collections", help="Comma-separated collection ids")
    search.add_argument("--bbox", help="xmin,ymin,xmax,ymax[,zmin...]")
    search.add_argument("--intersects", help="GeoJSON geometry")
    search.add_argument("--datetime", help="Instant, closed range or open range (..)")
    search.add_argument("--filter", help="cql2-text or cql2-json filter")
    search.add_argument("--filter-lang", choices=["cql2-text", "cql2-json"], default=None)
    search.add_argument("--sortby", help="Comma-separated fields, prefixed with + or -")
    search.add_argument("--fields", help="Comma-separated fields to include, prefixed with - to exclude")
    search.add_argument("--limit", type=int, help="Page size")
    search.add_argument(
        "--max-pages",
        type=int,
        default=1,
        help="Follow next tokens up to this many pages (0 follows every page)",
    )
    return parser.parse_args(argv)


def build_request(args: argparse.Namespace) -> Dict[str, Any]:
    """Turn search arguments into GET-style parameters."""
    params: Dict[str, Any] = {}
    for name in ("ids", "collections", "bbox", "intersects", "datetime", "filter", "sortby", "fields"):
        value = getattr(args, name)
        if value is not None:
            params[name] = value
    if args.filter_lang is not None:
        params["filter-lang"] = args.filter_lang
    if args.limit is not None:
        params["limit"] = str(args.limit)
    return params


async def run_search(config: Config, params: Dict[str, Any], max_pages: int = 1) -> Dict[str, Any]:
    """
    Run a search, following next tokens.

    Args:
        config: Service configuration
        params: GET-style search parameters
        max_pages: Number of pages to fetch; 0 fetches every page

    Returns:
        The ItemCollection JSON, with the features of every fetched page
    """
    query = SearchQuery.from_params(params, config.search)
    async with create_backend(config) as backend:
        page = await backend.search(query)
        result = page.to_dict()
        pages = 1
        while page.next_token and (max_pages == 0 or pages < max_pages):
            page = await backend.search(query.with_token(page.next_token))
            result["features"].extend(page.to_dict()["features"])
            result["links"] = page.to_dict().get("links", [])
            pages += 1
        result["numberReturned"] = len(result["features"])
        result["context"]["returned"] = result["numberReturned"]
    return result


def main(argv: Optional[List[str]] = None) -> int:
    """Application entry point."""
    args = parse_arguments(argv)

    if args.env_file:
        load_env_file(args.env_file)
    else:
        load_env_file()

    try:
        if args.config:
            config_path = Path(args.config)
            if not config_path.exists():
                print(f"Configuration file not found: {config_path}", file=sys.stderr)
                return 1
            config = load_config(config_path)
        else:
            config = load_config_from_env()
    except ValueError as e:
        print(str(e), file=sys.stderr)
        return 1

    configure_logging(
        config_path=config.logging.config_file,
        log_level=args.log_level or config.logging.level,
        log_file=config.logging.log_file,
    )
    logger = get_logger(__name__)
    logger.debug(f"Using {config.backend.kind} backend")

    try:
        result = asyncio.run(run_search(config, build_request(args), args.max_pages))
    except SearchError as e:
        logger.error(f"Search failed: {e.code.value} - {e.message}")
        print(json.dumps(e.to_response().model_dump(exclude_none=True), indent=2), file=sys.stderr)
        return 2
    except Exception as e:
        logger.exception(f"Error running search: {e}")
        return 1

    json.dump(result, sys.stdout, indent=2, default=str)
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
