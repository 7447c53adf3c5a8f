"""
Tests for the pgstac backend.

psycopg2 connections are replaced with mocks; no database is needed.
"""

import asyncio
import threading
import unittest
from unittest.mock import MagicMock, patch

import psycopg2
import psycopg2.extensions
import pytest

from stac_search.backends.pgstac_backend import SEARCH_SQL, PgstacBackend, page_matched, page_token
from stac_search.config.config import PgstacBackendConfig
from stac_search.search.query import SearchQuery
from stac_search.utils.errors import BackendError, BackendUnavailable


class UndefinedFunction(psycopg2.ProgrammingError):
    pgcode = "42883"


def fake_connection(page):
    """A connection whose search returns ``page``."""
    connection = MagicMock(name="connection")
    cursor = connection.cursor.return_value.__enter__.return_value
    cursor.fetchone.return_value = (page,)
    return connection


class TestPageTokens(unittest.TestCase):
    """Tests for reading tokens and counts from pgstac pages."""

    def test_bare_keys(self):
        page = {"next": "abc", "prev": "xyz"}
        self.assertEqual(page_token(page, "next"), "next:abc")
        self.assertEqual(page_token(page, "prev"), "prev:xyz")

    def test_link_body(self):
        page = {"links": [{"rel": "next", "body": {"token": "next:abc"}}]}
        self.assertEqual(page_token(page, "next"), "next:abc")
        self.assertIsNone(page_token(page, "prev"))

    def test_link_href(self):
        page = {"links": [{"rel": "prev", "href": "http://example.com/search?limit=10&token=prev:abc"}]}
        self.assertEqual(page_token(page, "prev"), "prev:abc")

    def test_no_tokens(self):
        self.assertIsNone(page_token({"features": []}, "next"))

    def test_matched(self):
        self.assertEqual(page_matched({"numberMatched": 5}), 5)
        self.assertEqual(page_matched({"context": {"matched": 7, "returned": 1}}), 7)
        self.assertIsNone(page_matched({}))


@pytest.fixture
def config():
    return PgstacBackendConfig(dsn="postgresql://stac@localhost/stac", statement_timeout_ms=1000)


@pytest.mark.asyncio
async def test_search_sends_payload(config, metrics):
    """Test that the query is sent as one JSON document and the page assembled."""
    page = {
        "features": [{"id": "a"}, {"id": "b"}],
        "numberMatched": 12,
        "next": "collection:a",
    }
    connection = fake_connection(page)
    query = SearchQuery.build({"collections": ["landsat"], "filter": "eo:cloud_cover < 10", "limit": 2})

    with patch("stac_search.backends.pgstac_backend.psycopg2.connect", return_value=connection) as connect:
        backend = PgstacBackend(config, metrics=metrics)
        result = await backend.search(query)
        await backend.close()

    connect.assert_called_once_with(config.dsn)
    assert connection.autocommit is True
    cursor = connection.cursor.return_value.__enter__.return_value
    assert cursor.execute.call_args_list[0].args == ("SET statement_timeout = %s", (1000,))
    sql, (payload,) = cursor.execute.call_args_list[1].args
    assert sql == SEARCH_SQL
    assert payload.adapted == query.to_payload()

    assert result.ids == ["a", "b"]
    assert result.number_matched == 12
    assert result.next_token == "next:collection:a"
    assert result.prev_token is None
    connection.close.assert_called_once()


@pytest.mark.asyncio
async def test_token_is_passed_through(config, metrics):
    """Test that a pgstac token reaches the database unchanged."""
    connection = fake_connection({"features": []})
    query = SearchQuery.build({"token": "next:collection:a"})

    with patch("stac_search.backends.pgstac_backend.psycopg2.connect", return_value=connection):
        result = await PgstacBackend(config, metrics=metrics).search(query)

    cursor = connection.cursor.return_value.__enter__.return_value
    _, (payload,) = cursor.execute.call_args_list[-1].args
    assert payload.adapted["token"] == "next:collection:a"
    assert result.ids == []


@pytest.mark.asyncio
async def test_database_errors_are_wrapped(config, metrics):
    """Test that engine errors keep their SQLSTATE."""
    connection = MagicMock(name="connection")
    connection.cursor.return_value.__enter__.return_value.execute.side_effect = [
        None,
        UndefinedFunction("function pgstac.search(jsonb) does not exist"),
    ]

    with patch("stac_search.backends.pgstac_backend.psycopg2.connect", return_value=connection):
        backend = PgstacBackend(config, metrics=metrics)
        with pytest.raises(BackendError) as exc_info:
            await backend.search(SearchQuery.build({}))

    assert exc_info.value.backend_code == "42883"
    assert "does not exist" in exc_info.value.message
    connection.close.assert_not_called()
    assert metrics.sample("searches_total", {"backend": "pgstac", "outcome": "backend_error"}) == 1


@pytest.mark.asyncio
async def test_transient_failures(metrics):
    """Test one retry on a fresh connection, then BackendUnavailable."""
    config = PgstacBackendConfig(dsn="postgresql://stac@localhost/stac")
    first, second = MagicMock(name="first"), MagicMock(name="second")
    for connection in (first, second):
        connection.cursor.return_value.__enter__.return_value.execute.side_effect = psycopg2.OperationalError(
            "server closed the connection unexpectedly"
        )

    with patch("stac_search.backends.pgstac_backend.psycopg2.connect", side_effect=[first, second]):
        with pytest.raises(BackendUnavailable) as exc_info:
            await PgstacBackend(config, metrics=metrics).search(SearchQuery.build({}))

    assert "server closed the connection" in exc_info.value.message
    first.close.assert_called_once()
    second.close.assert_called_once()


@pytest.mark.asyncio
async def test_statement_timeout(metrics):
    """Test that a server-side timeout is reported as unavailable."""
    config = PgstacBackendConfig(dsn="postgresql://stac@localhost/stac")
    connection = MagicMock(name="connection")
    connection.cursor.return_value.__enter__.return_value.execute.side_effect = (
        psycopg2.extensions.QueryCanceledError("canceling statement due to statement timeout")
    )

    with patch("stac_search.backends.pgstac_backend.psycopg2.connect", return_value=connection):
        with pytest.raises(BackendUnavailable) as exc_info:
            await PgstacBackend(config, metrics=metrics).search(SearchQuery.build({}))

    assert exc_info.value.details[0].param == "statement_timeout"
    connection.close.assert_not_called()


@pytest.mark.asyncio
async def test_connect_failure(metrics):
    """Test that an unreachable database is reported as unavailable after one retry."""
    config = PgstacBackendConfig(dsn="postgresql://stac@nowhere/stac")

    with patch(
        "stac_search.backends.pgstac_backend.psycopg2.connect",
        side_effect=psycopg2.OperationalError("could not translate host name"),
    ) as connect:
        with pytest.raises(BackendUnavailable) as exc_info:
            await PgstacBackend(config, metrics=metrics).search(SearchQuery.build({}))

    assert connect.call_count == 2
    assert "could not translate host name" in exc_info.value.message
    assert exc_info.value.details[0].param == "backend"


@pytest.mark.asyncio
async def test_connect_retried_once(config, metrics):
    """Test that a refused connect is retried and the search still answers."""
    connection = fake_connection({"features": [{"id": "a"}]})

    with patch(
        "stac_search.backends.pgstac_backend.psycopg2.connect",
        side_effect=[psycopg2.OperationalError("connection refused"), connection],
    ) as connect:
        result = await PgstacBackend(config, metrics=metrics).search(SearchQuery.build({}))

    assert connect.call_count == 2
    assert result.ids == ["a"]


@pytest.mark.asyncio
async def test_cancel_stops_running_statement(metrics):
    """Test that cancelling a search cancels the statement and keeps the connection."""
    config = PgstacBackendConfig(dsn="postgresql://stac@localhost/stac")
    started = threading.Event()
    cancelled = threading.Event()
    connection = MagicMock(name="connection")

    def execute(sql, params=None):
        started.set()
        if not cancelled.wait(5):
            raise AssertionError("statement was never cancelled")
        raise psycopg2.extensions.QueryCanceledError("canceling statement due to user request")

    connection.cursor.return_value.__enter__.return_value.execute.side_effect = execute
    connection.cancel.side_effect = cancelled.set
    backend = PgstacBackend(config, metrics=metrics)

    with patch("stac_search.backends.pgstac_backend.psycopg2.connect", return_value=connection):
        task = asyncio.ensure_future(backend.search(SearchQuery.build({})))
        assert await asyncio.to_thread(started.wait, 5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    connection.cancel.assert_called_once()
    connection.close.assert_not_called()
    assert list(backend.pool._idle) == [connection]
    assert metrics.sample("searches_total", {"backend": "pgstac", "outcome": "cancelled"}) == 1
